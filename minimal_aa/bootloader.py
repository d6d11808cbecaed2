# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
zkSync bootloader relay.

Processes one account-abstracted transaction the way the bootloader drives a
native account: validation, fee payment, then execution. A transaction that
fails validation or payment is rejected as a whole (nothing it did persists,
including the nonce advance). A transaction whose execution fails is still
included: its nonce stays used and its fee stays paid.
"""

from __future__ import annotations

import logging
import unittest

from .account import Account
from .account_address import AccountAddress
from .chain import Chain, Contract, Message, Reason, external
from .erc20 import ERC20Mock
from .smart_account import ZkMinimalAccount
from .system_contracts import (
    BOOTLOADER_FORMAL_ADDRESS,
    NONCE_HOLDER_SYSTEM_CONTRACT,
    install_system_contracts,
)
from .transactions import Transaction
from .validator import ACCOUNT_VALIDATION_SUCCESS_MAGIC


class Bootloader(Contract):
    def receive(self, msg: Message):
        pass

    def _call_account(self, name: str, tx_hash: bytes, transaction: Transaction):
        data = ZkMinimalAccount.function(name).encode_input(tx_hash, tx_hash, transaction)
        return self.call(transaction.sender, 0, data)

    @external("processTransaction", inputs=(Transaction,), outputs=("bool",))
    def process_transaction(self, msg: Message, transaction: Transaction) -> bool:
        """Validate, charge and execute ``transaction``.

        Returns:
            Whether execution succeeded.

        Raises:
            Reason: If validation or fee payment failed.
        """
        tx_hash = transaction.encode_hash(self.chain.chain_id)

        result = self._call_account("validateTransaction", tx_hash, transaction)
        if not result.success:
            raise Reason("Account validation error")
        magic = ZkMinimalAccount.function("validateTransaction").decode_output(result.return_data)
        if magic != ACCOUNT_VALIDATION_SUCCESS_MAGIC:
            logging.warning(f"Bootloader: transaction 0x{tx_hash.hex()} rejected by account")
            raise Reason("Account validation returned invalid magic value")

        balance_before = self.balance
        result = self._call_account("payForTransaction", tx_hash, transaction)
        if not result.success:
            raise Reason("Failed to charge fee")
        if self.balance - balance_before < transaction.fee_amount():
            raise Reason("Not enough funds transferred to bootloader")

        result = self._call_account("executeTransaction", tx_hash, transaction)
        if not result.success:
            logging.info(
                f"Bootloader: execution of 0x{tx_hash.hex()} failed: 0x{result.return_data.hex()}"
            )
        self.emit("ExecutionResult", txHash=tx_hash, success=result.success)
        return result.success


def install_bootloader(chain: Chain) -> Bootloader:
    """Install the system contracts and a bootloader at its formal address."""
    install_system_contracts(chain)
    return chain.deploy(BOOTLOADER_FORMAL_ADDRESS, Bootloader, address=BOOTLOADER_FORMAL_ADDRESS)


class Test(unittest.TestCase):
    AMOUNT = 10**18

    def setUp(self):
        self.chain = Chain(260)
        self.bootloader = install_bootloader(self.chain)
        self.operator = AccountAddress.from_int(0x0FE7)
        self.owner = Account.generate()
        self.account = self.chain.deploy(self.owner.address(), ZkMinimalAccount)
        self.token = self.chain.deploy(self.owner.address(), ERC20Mock)

    def transaction(self, nonce: int = 0, data: bytes = b"") -> Transaction:
        data = data or ERC20Mock.function("mint").encode_input(self.account.address, self.AMOUNT)
        transaction = Transaction.build(self.account.address, self.token.address, nonce, data=data)
        self.chain.set_balance(self.account.address, transaction.total_required_balance())
        return transaction

    def process(self, transaction: Transaction) -> bool:
        return self.chain.invoke(self.operator, self.bootloader, "processTransaction", transaction)

    def nonce(self) -> int:
        nonce_holder = self.chain.code_at(NONCE_HOLDER_SYSTEM_CONTRACT)
        return self.chain.view(nonce_holder, "getMinNonce", self.account.address)

    def test_process_transaction(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.assertTrue(self.process(transaction))
        self.assertEqual(self.chain.view(self.token, "balanceOf", self.account.address), self.AMOUNT)
        self.assertEqual(self.bootloader.balance, transaction.fee_amount())
        self.assertEqual(self.nonce(), 1)

    def test_rejected_transaction_is_not_included(self):
        transaction = Account.generate().sign_transaction(self.transaction(), self.chain.chain_id)
        with self.assertRaises(Reason) as cm:
            self.process(transaction)
        self.assertEqual(cm.exception.values, ("Account validation returned invalid magic value",))
        self.assertEqual(self.nonce(), 0)
        self.assertEqual(self.bootloader.balance, 0)

    def test_failed_execution_keeps_nonce_and_fee(self):
        data = ERC20Mock.function("transfer").encode_input(self.owner.address(), 1)
        transaction = self.owner.sign_transaction(self.transaction(data=data), self.chain.chain_id)
        self.assertFalse(self.process(transaction))
        self.assertEqual(self.nonce(), 1)
        self.assertEqual(self.bootloader.balance, transaction.fee_amount())
        (log,) = self.chain.logs(self.bootloader.address, "ExecutionResult")
        self.assertFalse(log.args["success"])

    def test_replay_is_rejected(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.process(transaction)
        self.chain.set_balance(self.account.address, transaction.total_required_balance())
        with self.assertRaises(Reason) as cm:
            self.process(transaction)
        self.assertEqual(cm.exception.values, ("Account validation error",))
