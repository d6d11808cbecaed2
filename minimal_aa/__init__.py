# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
minimal-aa - Single-owner smart accounts for ERC-4337 entry points and the zkSync bootloader.

A smart account holds funds and acts on behalf of one owner key. Relays submit
signed operations to it; the account checks that the owner signed them,
prevents replay, settles the relay's fee and executes the requested call.

Core Features:
- **Smart Accounts**: :class:`~minimal_aa.smart_account.MinimalAccount`
  (ERC-4337 v0.7) and :class:`~minimal_aa.smart_account.ZkMinimalAccount`
  (zkSync native account abstraction) sharing one authorization core
- **Operation Envelopes**: ``PackedUserOperation`` and the zkSync type-113
  ``Transaction`` with their canonical hashes and JSON forms
- **Signing**: secp256k1 owner keys producing personal-message or EIP-712
  signatures
- **Local Host**: a deterministic in-process chain with atomic call frames,
  an entry point, a bootloader and the zkSync system contracts
- **CLI**: hashing and signing operations from JSON files

Quick Start:
    Mint a token through the entry point::

        from minimal_aa.account import Account
        from minimal_aa.chain import Chain
        from minimal_aa.entry_point import ENTRY_POINT_ADDRESS, EntryPoint
        from minimal_aa.smart_account import MinimalAccount
        from minimal_aa.transactions import CallDescriptor, PackedUserOperation

        chain = Chain()
        owner = Account.generate()
        entry_point = chain.deploy(owner.address(), EntryPoint, address=ENTRY_POINT_ADDRESS)
        account = chain.deploy(owner.address(), MinimalAccount, entry_point.address)
        chain.set_balance(account.address, 10**18)

        call = CallDescriptor(token.address, 0, mint_calldata)
        op = PackedUserOperation.build(account.address, 0, call.encode())
        op = owner.sign_user_operation(op, entry_point.address, chain.chain_id)
        chain.invoke(bundler, entry_point, "handleOps", [op], beneficiary)

Module Overview:
    - **account**: Owner key pairs and operation signing
    - **account_address**: 20-byte addresses and contract address derivation
    - **abi**: Contract ABI codecs for calls, returns and errors
    - **chain**: In-process host with call frames and rollback
    - **smart_account**: The account contracts
    - **environment**: Entry point and bootloader adapters
    - **entry_point** / **bootloader**: Relays driving the accounts
    - **system_contracts**: zkSync NonceHolder and ContractDeployer
    - **transactions**: Operation envelopes and their hashes
    - **config**: Per-network addresses and environment overrides

Requirements:
    - Python 3.8 or higher
    - eth-account, eth-keys, eth-abi, eth-utils and rlp
"""
