# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Mint a token through an ERC-4337 entry point.

The owner never sends a transaction itself. It signs a user operation asking
its smart account to call ``mint`` on a token; a bundler submits the operation
to the entry point, which has the account validate it, collects the prefund
and executes the call.

Expected Output::

    === Addresses ===
    Owner: 0x...
    Smart account: 0x...
    Entry point: 0x0000000071727De22E5E9d8BAf0edAc6f37da032

    User operation hash: 0x...
    Token balance: 1000000000000000000
    Beneficiary fees: ...
"""

from minimal_aa.account_address import AccountAddress
from minimal_aa.chain import Chain
from minimal_aa.entry_point import ENTRY_POINT_ADDRESS, EntryPoint
from minimal_aa.erc20 import ERC20Mock
from minimal_aa.smart_account import MinimalAccount
from minimal_aa.transactions import CallDescriptor, PackedUserOperation

from .common import CHAIN_ID, MINT_AMOUNT, load_owner


def main():
    chain = Chain(CHAIN_ID)
    owner = load_owner()
    bundler = AccountAddress.from_int(0xB0D1E)
    beneficiary = AccountAddress.from_int(0xBE7E)

    entry_point = chain.deploy(bundler, EntryPoint, address=ENTRY_POINT_ADDRESS)
    account = chain.deploy(owner.address(), MinimalAccount, entry_point.address)
    token = chain.deploy(owner.address(), ERC20Mock)
    chain.set_balance(account.address, 10**18)

    print("\n=== Addresses ===")
    print(f"Owner: {owner.address()}")
    print(f"Smart account: {account.address}")
    print(f"Entry point: {entry_point.address}")

    # :!:>section_2
    mint = ERC20Mock.function("mint").encode_input(account.address, MINT_AMOUNT)
    call = CallDescriptor(token.address, 0, mint)
    nonce = chain.view(entry_point, "getNonce", account.address, 0)
    op = PackedUserOperation.build(account.address, nonce, call.encode())
    op = owner.sign_user_operation(op, entry_point.address, chain.chain_id)
    # <:!:section_2

    print(f"\nUser operation hash: 0x{chain.view(entry_point, 'getUserOpHash', op).hex()}")

    # :!:>section_3
    chain.invoke(bundler, entry_point, "handleOps", [op], beneficiary)
    # <:!:section_3

    balance = chain.view(token, "balanceOf", account.address)
    print(f"Token balance: {balance}")
    print(f"Beneficiary fees: {chain.balance_of(beneficiary)}")
    assert balance == MINT_AMOUNT


if __name__ == "__main__":
    main()
