# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
ERC-4337 v0.7 entry point relay.

The entry point is the trusted caller of :class:`~minimal_aa.smart_account.MinimalAccount`.
It keeps per-account deposits and nonces, asks each account to validate its
operations, charges the prefund from the deposit, executes the operations and
pays the collected fees to a beneficiary.

The fee model is simplified: every operation is charged its full
:meth:`~minimal_aa.transactions.PackedUserOperation.required_prefund` and no
unused gas is refunded. Paymasters and aggregators are not supported.

Failures during validation revert the whole bundle with
``FailedOp(opIndex, reason)``, using the reference implementation's ``AAxx``
reason codes. A failing operation execution does not revert the bundle; it is
reported with a ``UserOperationRevertReason`` event.

Examples:
    Submitting a bundle::

        entry_point = chain.deploy(deployer, EntryPoint, address=ENTRY_POINT_ADDRESS)
        op = owner.sign_user_operation(op, entry_point.address, chain.chain_id)
        chain.invoke(bundler, entry_point, "handleOps", [op], beneficiary)
"""

from __future__ import annotations

import logging
import unittest
from typing import Dict, List, Tuple

from .account import Account
from .account_address import ZERO, AccountAddress
from .chain import Chain, Contract, ContractError, Message, Reason, external
from .erc20 import ERC20Mock
from .smart_account import MinimalAccount
from .transactions import CallDescriptor, PackedUserOperation

ENTRY_POINT_ADDRESS = AccountAddress.from_str("0x0000000071727De22E5E9d8BAf0edAc6f37da032")

NONCE_SEQUENCE_BITS = 64


class FailedOp(ContractError):
    abi_inputs = ("uint256", "string")

    @property
    def op_index(self) -> int:
        return self.values[0]

    @property
    def reason(self) -> str:
        return self.values[1]


class EntryPoint(Contract):
    def _deposits(self) -> Dict[AccountAddress, int]:
        return self.storage.setdefault("deposits", {})

    def _nonces(self) -> Dict[Tuple[AccountAddress, int], int]:
        return self.storage.setdefault("nonces", {})

    def receive(self, msg: Message):
        self.deposit_to(msg, msg.sender)

    @external("depositTo", inputs=("address",), payable=True)
    def deposit_to(self, msg: Message, account: AccountAddress):
        deposits = self._deposits()
        deposits[account] = deposits.get(account, 0) + msg.value
        self.emit("Deposited", account=account, totalDeposit=deposits[account])

    @external("withdrawTo", inputs=("address", "uint256"))
    def withdraw_to(self, msg: Message, withdraw_address: AccountAddress, amount: int):
        deposits = self._deposits()
        available = deposits.get(msg.sender, 0)
        if amount > available:
            raise Reason("Withdraw amount too large")
        deposits[msg.sender] = available - amount
        result = self.call(withdraw_address, amount)
        if not result.success:
            raise Reason("failed to withdraw")
        self.emit("Withdrawn", account=msg.sender, withdrawAddress=withdraw_address, amount=amount)

    @external("balanceOf", inputs=("address",), outputs=("uint256",))
    def balance_of(self, msg: Message, account: AccountAddress) -> int:
        return self._deposits().get(account, 0)

    @external("getNonce", inputs=("address", "uint192"), outputs=("uint256",))
    def get_nonce(self, msg: Message, sender: AccountAddress, key: int) -> int:
        return (key << NONCE_SEQUENCE_BITS) | self._nonces().get((sender, key), 0)

    @external("getUserOpHash", inputs=(PackedUserOperation,), outputs=("bytes32",))
    def get_user_op_hash(self, msg: Message, user_op: PackedUserOperation) -> bytes:
        return user_op.hash(self.address, self.chain.chain_id)

    def _validate_and_update_nonce(self, sender: AccountAddress, nonce: int) -> bool:
        key = nonce >> NONCE_SEQUENCE_BITS
        sequence = nonce & ((1 << NONCE_SEQUENCE_BITS) - 1)
        nonces = self._nonces()
        current = nonces.get((sender, key), 0)
        nonces[(sender, key)] = current + 1
        return sequence == current

    def _validate_prepayment(self, op_index: int, user_op: PackedUserOperation) -> int:
        """Run account validation and take the prefund from its deposit."""
        if self.chain.code_at(user_op.sender) is None:
            raise FailedOp(op_index, "AA20 account not deployed")

        required_prefund = user_op.required_prefund()
        deposits = self._deposits()
        missing_account_funds = max(0, required_prefund - deposits.get(user_op.sender, 0))

        function = MinimalAccount.function("validateUserOp")
        result = self.call(
            user_op.sender,
            0,
            function.encode_input(
                user_op, user_op.hash(self.address, self.chain.chain_id), missing_account_funds
            ),
        )
        if not result.success:
            raise FailedOp(op_index, "AA23 reverted")
        validation_data = function.decode_output(result.return_data)

        deposit = deposits.get(user_op.sender, 0)
        if deposit < required_prefund:
            raise FailedOp(op_index, "AA21 didn't pay prefund")
        deposits[user_op.sender] = deposit - required_prefund

        if not self._validate_and_update_nonce(user_op.sender, user_op.nonce):
            raise FailedOp(op_index, "AA25 invalid account nonce")
        if validation_data != 0:
            logging.warning(f"EntryPoint: user operation {op_index} from {user_op.sender} rejected")
            raise FailedOp(op_index, "AA24 signature error")
        return required_prefund

    def _execute_user_op(self, user_op: PackedUserOperation, actual_gas_cost: int) -> bool:
        user_op_hash = user_op.hash(self.address, self.chain.chain_id)
        result = self.call(user_op.sender, 0, user_op.call_data)
        if not result.success:
            logging.info(
                f"EntryPoint: user operation 0x{user_op_hash.hex()} reverted: "
                f"0x{result.return_data.hex()}"
            )
            self.emit(
                "UserOperationRevertReason",
                userOpHash=user_op_hash,
                sender=user_op.sender,
                nonce=user_op.nonce,
                revertReason=result.return_data,
            )
        self.emit(
            "UserOperationEvent",
            userOpHash=user_op_hash,
            sender=user_op.sender,
            paymaster=ZERO,
            nonce=user_op.nonce,
            success=result.success,
            actualGasCost=actual_gas_cost,
        )
        return result.success

    @external("handleOps", inputs=([PackedUserOperation], "address"))
    def handle_ops(
        self, msg: Message, ops: List[PackedUserOperation], beneficiary: AccountAddress
    ):
        """Validate every operation, then execute them in order.

        Raises:
            FailedOp: If any operation fails validation; nothing is executed.
        """
        prefunds = [self._validate_prepayment(i, op) for i, op in enumerate(ops)]

        self.emit("BeforeExecution")
        collected = 0
        for op, prefund in zip(ops, prefunds):
            self._execute_user_op(op, prefund)
            collected += prefund

        if collected:
            result = self.call(beneficiary, collected)
            if not result.success:
                raise Reason("AA91 failed send to beneficiary")


class Test(unittest.TestCase):
    AMOUNT = 10**18

    def setUp(self):
        self.chain = Chain()
        self.bundler = AccountAddress.from_int(0xB0D1E)
        self.beneficiary = AccountAddress.from_int(0xBE7E)
        self.owner = Account.generate()
        self.entry_point = self.chain.deploy(
            self.bundler, EntryPoint, address=ENTRY_POINT_ADDRESS
        )
        self.account = self.chain.deploy(
            self.owner.address(), MinimalAccount, self.entry_point.address
        )
        self.token = self.chain.deploy(self.owner.address(), ERC20Mock)
        self.chain.set_balance(self.account.address, 10**18)

    def user_op(self, nonce: int = 0, payload: bytes = b"") -> PackedUserOperation:
        if not payload:
            payload = ERC20Mock.function("mint").encode_input(self.account.address, self.AMOUNT)
        call = CallDescriptor(self.token.address, 0, payload)
        return PackedUserOperation.build(self.account.address, nonce, call.encode())

    def sign(self, op: PackedUserOperation, signer: Account = None) -> PackedUserOperation:
        signer = signer or self.owner
        return signer.sign_user_operation(op, self.entry_point.address, self.chain.chain_id)

    def handle_ops(self, *ops: PackedUserOperation):
        self.chain.invoke(self.bundler, self.entry_point, "handleOps", list(ops), self.beneficiary)

    def token_balance(self) -> int:
        return self.chain.view(self.token, "balanceOf", self.account.address)

    def test_user_op_hash(self):
        op = self.user_op()
        self.assertEqual(
            self.chain.view(self.entry_point, "getUserOpHash", op),
            op.hash(self.entry_point.address, self.chain.chain_id),
        )

    def test_handle_ops_mints(self):
        op = self.sign(self.user_op())
        self.handle_ops(op)

        self.assertEqual(self.token_balance(), self.AMOUNT)
        self.assertEqual(self.chain.view(self.entry_point, "getNonce", self.account.address, 0), 1)
        self.assertEqual(self.chain.balance_of(self.beneficiary), op.required_prefund())
        (event,) = self.chain.logs(self.entry_point.address, "UserOperationEvent")
        self.assertTrue(event.args["success"])

    def test_prefund_uses_existing_deposit(self):
        op = self.sign(self.user_op())
        self.chain.set_balance(self.bundler, op.required_prefund())
        self.chain.invoke(
            self.bundler,
            self.entry_point,
            "depositTo",
            self.account.address,
            value=op.required_prefund(),
        )
        self.handle_ops(op)
        self.assertEqual(self.chain.balance_of(self.account.address), 10**18)
        self.assertEqual(self.chain.view(self.entry_point, "balanceOf", self.account.address), 0)

    def test_rejected_signature_fails_bundle(self):
        op = self.sign(self.user_op(), Account.generate())
        with self.assertRaises(FailedOp) as cm:
            self.handle_ops(op)
        self.assertEqual(cm.exception.op_index, 0)
        self.assertEqual(cm.exception.reason, "AA24 signature error")
        self.assertEqual(self.token_balance(), 0)
        self.assertEqual(self.chain.balance_of(self.account.address), 10**18)

    def test_replayed_nonce_fails(self):
        op = self.sign(self.user_op())
        self.handle_ops(op)
        with self.assertRaises(FailedOp) as cm:
            self.handle_ops(op)
        self.assertEqual(cm.exception.reason, "AA25 invalid account nonce")
        self.assertEqual(self.token_balance(), self.AMOUNT)

    def test_unfunded_account_fails(self):
        self.chain.set_balance(self.account.address, 0)
        with self.assertRaises(FailedOp) as cm:
            self.handle_ops(self.sign(self.user_op()))
        self.assertEqual(cm.exception.reason, "AA21 didn't pay prefund")

    def test_undeployed_sender_fails(self):
        op = PackedUserOperation.build(AccountAddress.from_int(0xDEAD), 0, b"")
        with self.assertRaises(FailedOp) as cm:
            self.handle_ops(self.sign(op))
        self.assertEqual(cm.exception.reason, "AA20 account not deployed")

    def test_failed_execution_is_reported(self):
        payload = ERC20Mock.function("transfer").encode_input(self.owner.address(), 1)
        op = self.sign(self.user_op(payload=payload))
        self.handle_ops(op)

        (event,) = self.chain.logs(self.entry_point.address, "UserOperationEvent")
        self.assertFalse(event.args["success"])
        self.assertEqual(
            len(self.chain.logs(self.entry_point.address, "UserOperationRevertReason")), 1
        )
        # The prefund is still charged
        self.assertEqual(self.chain.balance_of(self.beneficiary), op.required_prefund())

    def test_second_op_index(self):
        first = self.sign(self.user_op(0))
        second = self.sign(self.user_op(0))
        with self.assertRaises(FailedOp) as cm:
            self.handle_ops(first, second)
        self.assertEqual(cm.exception.op_index, 1)

    def test_withdraw(self):
        self.chain.set_balance(self.bundler, 100)
        self.chain.transact(self.bundler, self.entry_point.address, 100)
        self.assertEqual(self.chain.view(self.entry_point, "balanceOf", self.bundler), 100)
        self.chain.invoke(self.bundler, self.entry_point, "withdrawTo", self.beneficiary, 60)
        self.assertEqual(self.chain.balance_of(self.beneficiary), 60)
        with self.assertRaises(Reason):
            self.chain.invoke(self.bundler, self.entry_point, "withdrawTo", self.beneficiary, 60)
