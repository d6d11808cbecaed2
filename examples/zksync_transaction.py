# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Run a zkSync native smart account through the bootloader.

The owner signs two EIP-712 transactions from its smart account: one mints a
token, the other deploys a new token contract through the ContractDeployer
system contract. The bootloader validates each transaction with the account,
collects the fee and executes it.
"""

import os

from eth_utils import keccak

from minimal_aa.account_address import AccountAddress
from minimal_aa.bootloader import install_bootloader
from minimal_aa.chain import Chain
from minimal_aa.config import ZKSYNC_LOCAL_CHAIN_ID
from minimal_aa.erc20 import ERC20Mock
from minimal_aa.smart_account import ZkMinimalAccount
from minimal_aa.system_contracts import CONTRACT_DEPLOYER_SYSTEM_CONTRACT, ContractDeployer
from minimal_aa.transactions import Transaction

from .common import MINT_AMOUNT, load_owner


def main():
    chain = Chain(int(os.getenv("MINIMAL_AA_CHAIN_ID", str(ZKSYNC_LOCAL_CHAIN_ID))))
    bootloader = install_bootloader(chain)
    operator = AccountAddress.from_int(0x0FE7)
    owner = load_owner()

    account = chain.deploy(owner.address(), ZkMinimalAccount)
    token = chain.deploy(owner.address(), ERC20Mock)
    chain.set_balance(account.address, 10**18)

    print("\n=== Addresses ===")
    print(f"Owner: {owner.address()}")
    print(f"Smart account: {account.address}")
    print(f"Bootloader: {bootloader.address}")

    # :!:>section_1
    mint = ERC20Mock.function("mint").encode_input(account.address, MINT_AMOUNT)
    transaction = Transaction.build(account.address, token.address, 0, data=mint)
    transaction = owner.sign_transaction(transaction, chain.chain_id)
    success = chain.invoke(operator, bootloader, "processTransaction", transaction)
    # <:!:section_1

    print(f"\nMint succeeded: {success}")
    print(f"Token balance: {chain.view(token, 'balanceOf', account.address)}")

    # :!:>section_2
    bytecode_hash = chain.register_code(ERC20Mock)
    salt = keccak(text="minimal-aa example")
    deploy = ContractDeployer.function("create2").encode_input(salt, bytecode_hash, b"")
    transaction = Transaction.build(
        account.address,
        CONTRACT_DEPLOYER_SYSTEM_CONTRACT,
        1,
        data=deploy,
        factory_deps=[bytecode_hash],
    )
    transaction = owner.sign_transaction(transaction, chain.chain_id)
    success = chain.invoke(operator, bootloader, "processTransaction", transaction)
    # <:!:section_2

    deployed = AccountAddress.for_zksync_create2(account.address, salt, bytecode_hash, b"")
    print(f"Deployment succeeded: {success}")
    print(f"Deployed token: {deployed} ({chain.code_at(deployed)})")
    print(f"Fees collected by the bootloader: {bootloader.balance}")


if __name__ == "__main__":
    main()
