"""
minimal-aa examples.

Each example runs end to end on an in-process chain, so no node or funded
key is required::

    # Mint a token through an ERC-4337 entry point
    python -m examples.user_operation

    # Run a zkSync native account through the bootloader and deploy a contract
    python -m examples.zksync_transaction

Configuration:
    See examples.common for the environment variables the examples read.
"""
