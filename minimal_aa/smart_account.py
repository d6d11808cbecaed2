# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Single-owner smart accounts.

A smart account is a contract that acts on behalf of one owner key. It is
driven by a trusted caller (the ERC-4337 entry point, or the zkSync
bootloader) which asks it to validate an operation, to pay for it, and then
to execute the call the operation carries. The owner may also call
``execute`` directly.

The shared logic lives in :class:`SmartAccount`:

- **Validation** recovers the signer of the environment's signing digest and
  compares it with the owner. The outcome is a
  :class:`~minimal_aa.validator.ValidationResult`, never an exception.
- **Execution** makes exactly one call and fails with
  :class:`~minimal_aa.errors.ExecutionFailed` carrying the callee's revert
  data when that call fails.
- **Fee settlement** transfers native value to the trusted caller under the
  environment's :class:`~minimal_aa.environment.PaymentPolicy`.

:class:`MinimalAccount` exposes this through the ERC-4337 v0.7 ``IAccount``
interface, :class:`ZkMinimalAccount` through the zkSync ``IAccount``
interface.

Examples:
    Deploying an account behind an entry point::

        chain = Chain()
        account = chain.deploy(owner.address(), MinimalAccount, entry_point_address)

    Owner-initiated execution::

        call = CallDescriptor(token.address, 0, mint_calldata)
        chain.transact(owner.address(), account.address, 0, call.encode())

Note:
    ``validateUserOp`` pays the requested prefund after validation whatever
    the validation outcome, so a relay is paid even for an operation whose
    signature was rejected. The entry point still refuses to execute such an
    operation.
"""

from __future__ import annotations

import logging
import typing
import unittest
from typing import Type

from eth_utils import keccak

from . import secp256k1_ecdsa
from .account import Account
from .account_address import AccountAddress
from .chain import Chain, ContractError, Message, Reason, external
from .environment import BootloaderEnvironment, EntryPointEnvironment, Environment, PaymentPolicy
from .erc20 import ERC20InsufficientBalance, ERC20Mock
from .errors import (
    ExecutionFailed,
    FailedToPayBootloader,
    InsufficientBalance,
    InvalidSignature,
    NotAuthorized,
    NotBootloaderOrOwner,
    NotFromBootloader,
    NotFromEntryPoint,
    NotFromEntryPointOrOwner,
    NotFromTrustedCaller,
)
from .ownable import Ownable
from .system_contracts import (
    BOOTLOADER_FORMAL_ADDRESS,
    CONTRACT_DEPLOYER_SYSTEM_CONTRACT,
    NONCE_HOLDER_SYSTEM_CONTRACT,
    ContractDeployer,
    NonceMismatch,
    install_system_contracts,
)
from .transactions import CallDescriptor, PackedUserOperation, Transaction
from .validator import ValidationResult, validate_signature


class SmartAccount(Ownable):
    """Authorization and execution core shared by every account variant.

    Subclasses select an :class:`Environment` and the errors reported for
    caller checks.
    """

    environment: typing.ClassVar[Environment]
    not_from_trusted_caller: typing.ClassVar[Type[ContractError]] = NotFromTrustedCaller
    not_trusted_caller_or_owner: typing.ClassVar[Type[ContractError]] = NotAuthorized

    def constructor(self, msg: Message, trusted_caller: AccountAddress):
        super().constructor(msg)
        self.storage["trusted_caller"] = trusted_caller

    def receive(self, msg: Message):
        pass

    def trusted_caller(self) -> AccountAddress:
        return self.storage["trusted_caller"]

    def require_from_trusted_caller(self, msg: Message):
        if msg.sender != self.trusted_caller():
            raise self.not_from_trusted_caller()

    def require_from_trusted_caller_or_owner(self, msg: Message):
        if msg.sender != self.trusted_caller() and msg.sender != self.get_owner():
            raise self.not_trusted_caller_or_owner()

    def _validate(self, envelope, supplied_hash: bytes, signature: bytes) -> ValidationResult:
        operation_hash = self.environment.hash(self, envelope, supplied_hash)
        digest = self.environment.signing_digest(operation_hash)
        result = validate_signature(digest, signature, self.get_owner())
        if result is ValidationResult.REJECTED:
            logging.debug(f"{self}: signature rejected for 0x{operation_hash.hex()}")
        return result

    def _execute(self, target: AccountAddress, value: int, data: bytes) -> bytes:
        result = self.environment.call(self, target, value, data)
        if not result.success:
            raise ExecutionFailed(result.return_data)
        return result.return_data

    def _pay(self, amount: int):
        if amount == 0:
            return
        result = self.call(self.trusted_caller(), amount)
        if result.success:
            return
        if self.environment.payment_policy is PaymentPolicy.CHECKED:
            raise FailedToPayBootloader()
        logging.warning(f"{self}: prefund of {amount} to {self.trusted_caller()} failed")

    @external("execute", inputs=("address", "uint256", "bytes"), outputs=("bytes",))
    def execute(self, msg: Message, dest: AccountAddress, value: int, func_data: bytes) -> bytes:
        self.require_from_trusted_caller_or_owner(msg)
        return self._execute(dest, value, func_data)


class MinimalAccount(SmartAccount):
    """ERC-4337 v0.7 account driven by an entry point."""

    environment = EntryPointEnvironment()
    not_from_trusted_caller = NotFromEntryPoint
    not_trusted_caller_or_owner = NotFromEntryPointOrOwner
    constructor_inputs = ("address",)

    @external(
        "validateUserOp",
        inputs=(PackedUserOperation, "bytes32", "uint256"),
        outputs=("uint256",),
    )
    def validate_user_op(
        self,
        msg: Message,
        user_op: PackedUserOperation,
        user_op_hash: bytes,
        missing_account_funds: int,
    ) -> int:
        """Validate ``user_op`` against ``user_op_hash`` and pay the prefund.

        Returns:
            0 when the owner signed the operation, 1 otherwise.
        """
        self.require_from_trusted_caller(msg)
        result = self._validate(user_op, user_op_hash, user_op.signature)
        self.environment.advance_nonce(self, user_op)
        self._pay(missing_account_funds)
        return result.validation_data()

    @external("getEntryPoint", outputs=("address",))
    def get_entry_point(self, msg: Message) -> AccountAddress:
        return self.trusted_caller()


class ZkMinimalAccount(SmartAccount):
    """zkSync native account driven by the bootloader."""

    environment = BootloaderEnvironment()
    not_from_trusted_caller = NotFromBootloader
    not_trusted_caller_or_owner = NotBootloaderOrOwner

    def constructor(
        self, msg: Message, bootloader: AccountAddress = BOOTLOADER_FORMAL_ADDRESS
    ):
        super().constructor(msg, bootloader)

    def _validate_transaction(self, transaction: Transaction) -> ValidationResult:
        self.environment.advance_nonce(self, transaction)
        self.environment.check_balance(self, transaction)
        return self._validate(transaction, b"", transaction.signature)

    @external(
        "validateTransaction",
        inputs=("bytes32", "bytes32", Transaction),
        outputs=("bytes4",),
        payable=True,
    )
    def validate_transaction(
        self, msg: Message, tx_hash: bytes, suggested_signed_hash: bytes, transaction: Transaction
    ) -> bytes:
        """Advance the nonce, check the balance and validate the signature.

        Returns:
            The ``validateTransaction`` selector when the owner signed the
            transaction, four zero bytes otherwise.
        """
        self.require_from_trusted_caller(msg)
        return self._validate_transaction(transaction).magic()

    @external(
        "executeTransaction",
        inputs=("bytes32", "bytes32", Transaction),
        payable=True,
    )
    def execute_transaction(
        self, msg: Message, tx_hash: bytes, suggested_signed_hash: bytes, transaction: Transaction
    ):
        self.require_from_trusted_caller_or_owner(msg)
        self._execute(transaction.to, transaction.value, transaction.data)

    @external("executeTransactionFromOutside", inputs=(Transaction,), payable=True)
    def execute_transaction_from_outside(self, msg: Message, transaction: Transaction):
        if self._validate_transaction(transaction) is not ValidationResult.AUTHORIZED:
            raise InvalidSignature()
        self._execute(transaction.to, transaction.value, transaction.data)

    @external(
        "payForTransaction",
        inputs=("bytes32", "bytes32", Transaction),
        payable=True,
    )
    def pay_for_transaction(
        self, msg: Message, tx_hash: bytes, suggested_signed_hash: bytes, transaction: Transaction
    ):
        self.require_from_trusted_caller(msg)
        self._pay(transaction.fee_amount())

    @external(
        "prepareForPaymaster",
        inputs=("bytes32", "bytes32", Transaction),
        payable=True,
    )
    def prepare_for_paymaster(
        self, msg: Message, tx_hash: bytes, possible_signed_hash: bytes, transaction: Transaction
    ):
        self.require_from_trusted_caller(msg)

    @external("getBootloader", outputs=("address",))
    def get_bootloader(self, msg: Message) -> AccountAddress:
        return self.trusted_caller()


class TestMinimalAccount(unittest.TestCase):
    AMOUNT = 10**18

    def setUp(self):
        self.chain = Chain()
        self.owner = Account.generate()
        self.entry_point = AccountAddress.from_int(0xE7)
        self.account = self.chain.deploy(self.owner.address(), MinimalAccount, self.entry_point)
        self.token = self.chain.deploy(self.owner.address(), ERC20Mock)
        self.mint = CallDescriptor(
            self.token.address,
            0,
            ERC20Mock.function("mint").encode_input(self.account.address, self.AMOUNT),
        )

    def token_balance(self) -> int:
        return self.chain.view(self.token, "balanceOf", self.account.address)

    def signed_op(self, signer: Account) -> PackedUserOperation:
        op = PackedUserOperation.build(self.account.address, 0, self.mint.encode())
        return signer.sign_user_operation(op, self.entry_point, self.chain.chain_id)

    def validate(self, op: PackedUserOperation, missing_funds: int = 0) -> int:
        return self.chain.invoke(
            self.entry_point,
            self.account,
            "validateUserOp",
            op,
            op.hash(self.entry_point, self.chain.chain_id),
            missing_funds,
        )

    def test_construction(self):
        self.assertEqual(self.chain.view(self.account, "owner"), self.owner.address())
        self.assertEqual(self.chain.view(self.account, "getEntryPoint"), self.entry_point)

    def test_owner_can_execute(self):
        self.chain.transact(self.owner.address(), self.account.address, 0, self.mint.encode())
        self.assertEqual(self.token_balance(), self.AMOUNT)

    def test_entry_point_can_execute(self):
        self.chain.invoke(
            self.entry_point,
            self.account,
            "execute",
            self.mint.target,
            self.mint.value,
            self.mint.payload,
        )
        self.assertEqual(self.token_balance(), self.AMOUNT)

    def test_execute_returns_callee_data(self):
        data = ERC20Mock.function("balanceOf").encode_input(self.account.address)
        output = self.chain.invoke(
            self.owner.address(), self.account, "execute", self.token.address, 0, data
        )
        self.assertEqual(ERC20Mock.function("balanceOf").decode_output(output), 0)

    def test_stranger_cannot_execute(self):
        stranger = Account.generate().address()
        with self.assertRaises(NotFromEntryPointOrOwner) as cm:
            self.chain.transact(stranger, self.account.address, 0, self.mint.encode())
        self.assertIsInstance(cm.exception, NotAuthorized)
        self.assertEqual(self.token_balance(), 0)

    def test_failed_call_reverts_with_callee_data(self):
        data = ERC20Mock.function("transfer").encode_input(self.owner.address(), 1)
        with self.assertRaises(ExecutionFailed) as cm:
            self.chain.invoke(
                self.owner.address(), self.account, "execute", self.token.address, 0, data
            )
        self.assertEqual(
            cm.exception.return_data,
            ERC20InsufficientBalance(self.account.address, 0, 1).data,
        )

    def test_value_above_balance_fails_without_transfer(self):
        self.chain.set_balance(self.account.address, 5)
        recipient = AccountAddress.from_int(0xFEE)
        with self.assertRaises(ExecutionFailed):
            self.chain.invoke(
                self.owner.address(), self.account, "execute", recipient, 6, b""
            )
        self.assertEqual(self.chain.balance_of(recipient), 0)
        self.assertEqual(self.chain.balance_of(self.account.address), 5)

    def test_owner_signature_is_authorized(self):
        self.assertEqual(self.validate(self.signed_op(self.owner)), 0)

    def test_other_signature_is_rejected(self):
        self.assertEqual(self.validate(self.signed_op(Account.generate())), 1)

    def test_malformed_signature_is_rejected(self):
        op = self.signed_op(self.owner)
        for signature in (b"", op.signature[:64], b"\x00" * 65):
            self.assertEqual(self.validate(op.with_signature(signature)), 1)

    def test_raw_digest_signature_is_rejected(self):
        op = PackedUserOperation.build(self.account.address, 0, self.mint.encode())
        digest = op.hash(self.entry_point, self.chain.chain_id)
        signed = op.with_signature(self.owner.sign(digest).data())
        self.assertEqual(self.validate(signed), 1)

    def test_only_entry_point_validates(self):
        op = self.signed_op(self.owner)
        with self.assertRaises(NotFromEntryPoint):
            self.chain.invoke(
                self.owner.address(),
                self.account,
                "validateUserOp",
                op,
                op.hash(self.entry_point, self.chain.chain_id),
                0,
            )

    def test_prefund_is_paid(self):
        self.chain.set_balance(self.account.address, 1_000)
        self.validate(self.signed_op(self.owner), missing_funds=300)
        self.assertEqual(self.chain.balance_of(self.entry_point), 300)
        self.assertEqual(self.chain.balance_of(self.account.address), 700)

    def test_prefund_is_paid_for_rejected_signature(self):
        self.chain.set_balance(self.account.address, 1_000)
        self.assertEqual(self.validate(self.signed_op(Account.generate()), missing_funds=300), 1)
        self.assertEqual(self.chain.balance_of(self.entry_point), 300)

    def test_failed_prefund_is_ignored(self):
        self.chain.set_balance(self.account.address, 10)
        with self.assertLogs(level="WARNING"):
            result = self.validate(self.signed_op(self.owner), missing_funds=300)
        self.assertEqual(result, 0)
        self.assertEqual(self.chain.balance_of(self.account.address), 10)

    def test_ownership_transfer_keeps_entry_point(self):
        new_owner = Account.generate()
        self.chain.invoke(
            self.owner.address(), self.account, "transferOwnership", new_owner.address()
        )
        self.chain.transact(new_owner.address(), self.account.address, 0, self.mint.encode())
        self.assertEqual(self.token_balance(), self.AMOUNT)

        with self.assertRaises(NotFromEntryPointOrOwner):
            self.chain.transact(self.owner.address(), self.account.address, 0, self.mint.encode())

        self.chain.transact(self.entry_point, self.account.address, 0, self.mint.encode())
        self.assertEqual(self.token_balance(), 2 * self.AMOUNT)

        self.assertEqual(self.validate(self.signed_op(new_owner)), 0)
        self.assertEqual(self.validate(self.signed_op(self.owner)), 1)

    def test_receive(self):
        self.chain.set_balance(self.owner.address(), 10)
        self.chain.transact(self.owner.address(), self.account.address, 10)
        self.assertEqual(self.account.balance, 10)


class TestZkMinimalAccount(unittest.TestCase):
    AMOUNT = 10**18

    def setUp(self):
        self.chain = Chain(300)
        install_system_contracts(self.chain)
        self.owner = Account.generate()
        self.account = self.chain.deploy(self.owner.address(), ZkMinimalAccount)
        self.token = self.chain.deploy(self.owner.address(), ERC20Mock)
        self.bootloader = BOOTLOADER_FORMAL_ADDRESS

    def transaction(self, nonce: int = 0, **kwargs) -> Transaction:
        data = ERC20Mock.function("mint").encode_input(self.account.address, self.AMOUNT)
        return Transaction.build(
            self.account.address, self.token.address, nonce, data=data, **kwargs
        )

    def fund(self, transaction: Transaction):
        self.chain.set_balance(self.account.address, transaction.total_required_balance())

    def token_balance(self) -> int:
        return self.chain.view(self.token, "balanceOf", self.account.address)

    def nonce(self) -> int:
        nonce_holder = self.chain.code_at(NONCE_HOLDER_SYSTEM_CONTRACT)
        return self.chain.view(nonce_holder, "getMinNonce", self.account.address)

    def validate(self, transaction: Transaction) -> bytes:
        return self.chain.invoke(
            self.bootloader,
            self.account,
            "validateTransaction",
            b"\x00" * 32,
            b"\x00" * 32,
            transaction,
        )

    def test_construction(self):
        self.assertEqual(self.chain.view(self.account, "owner"), self.owner.address())
        self.assertEqual(self.chain.view(self.account, "getBootloader"), self.bootloader)

    def test_owner_signature_is_authorized(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        self.assertEqual(self.validate(transaction).hex(), "202bcce7")
        self.assertEqual(self.nonce(), 1)

    def test_other_signature_is_rejected_and_nonce_advances(self):
        transaction = Account.generate().sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        self.assertEqual(self.validate(transaction), b"\x00" * 4)
        self.assertEqual(self.nonce(), 1)

    def test_personal_message_signature_is_rejected(self):
        transaction = self.transaction()
        digest = transaction.encode_hash(self.chain.chain_id)
        signed = transaction.with_signature(self.owner.sign_message(digest).data())
        self.fund(signed)
        self.assertEqual(self.validate(signed), b"\x00" * 4)

    def test_nonce_cannot_be_reused(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        self.validate(transaction)
        with self.assertRaises(NonceMismatch):
            self.validate(transaction)
        self.assertEqual(self.nonce(), 1)

    def test_insufficient_balance(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        with self.assertRaises(InsufficientBalance) as cm:
            self.validate(transaction)
        self.assertEqual(cm.exception.values, (transaction.total_required_balance(), 0))
        # The nonce advance was rolled back with the rest of the call
        self.assertEqual(self.nonce(), 0)

    def test_only_bootloader_validates(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        with self.assertRaises(NotFromBootloader):
            self.chain.invoke(
                self.owner.address(),
                self.account,
                "validateTransaction",
                b"\x00" * 32,
                b"\x00" * 32,
                transaction,
            )

    def test_execute_transaction(self):
        transaction = self.transaction()
        self.chain.invoke(
            self.bootloader,
            self.account,
            "executeTransaction",
            b"\x00" * 32,
            b"\x00" * 32,
            transaction,
        )
        self.assertEqual(self.token_balance(), self.AMOUNT)

    def test_stranger_cannot_execute_transaction(self):
        with self.assertRaises(NotBootloaderOrOwner):
            self.chain.invoke(
                Account.generate().address(),
                self.account,
                "executeTransaction",
                b"\x00" * 32,
                b"\x00" * 32,
                self.transaction(),
            )
        self.assertEqual(self.token_balance(), 0)

    def test_execute_from_outside(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        relayer = Account.generate().address()
        self.chain.invoke(relayer, self.account, "executeTransactionFromOutside", transaction)
        self.assertEqual(self.token_balance(), self.AMOUNT)
        self.assertEqual(self.nonce(), 1)

    def test_execute_from_outside_requires_owner_signature(self):
        transaction = Account.generate().sign_transaction(self.transaction(), self.chain.chain_id)
        self.fund(transaction)
        with self.assertRaises(InvalidSignature):
            self.chain.invoke(
                self.owner.address(), self.account, "executeTransactionFromOutside", transaction
            )
        self.assertEqual(self.token_balance(), 0)
        self.assertEqual(self.nonce(), 0)

    def test_pay_for_transaction(self):
        transaction = self.transaction()
        self.fund(transaction)
        self.chain.invoke(
            self.bootloader,
            self.account,
            "payForTransaction",
            b"\x00" * 32,
            b"\x00" * 32,
            transaction,
        )
        self.assertEqual(self.chain.balance_of(self.bootloader), transaction.fee_amount())

    def test_pay_for_transaction_is_checked(self):
        with self.assertRaises(FailedToPayBootloader):
            self.chain.invoke(
                self.bootloader,
                self.account,
                "payForTransaction",
                b"\x00" * 32,
                b"\x00" * 32,
                self.transaction(),
            )

    def test_prepare_for_paymaster(self):
        args = (b"\x00" * 32, b"\x00" * 32, self.transaction())
        self.chain.invoke(self.bootloader, self.account, "prepareForPaymaster", *args)
        with self.assertRaises(NotFromBootloader):
            self.chain.invoke(self.owner.address(), self.account, "prepareForPaymaster", *args)

    def test_deployer_calls_are_system_calls(self):
        bytecode_hash = self.chain.register_code(ERC20Mock)
        salt = keccak(b"salt")
        data = ContractDeployer.function("create2").encode_input(salt, bytecode_hash, b"")
        transaction = Transaction.build(
            self.account.address, CONTRACT_DEPLOYER_SYSTEM_CONTRACT, 0, data=data
        )
        self.chain.invoke(
            self.bootloader,
            self.account,
            "executeTransaction",
            b"\x00" * 32,
            b"\x00" * 32,
            transaction,
        )
        address = AccountAddress.for_zksync_create2(self.account.address, salt, bytecode_hash, b"")
        self.assertIsInstance(self.chain.code_at(address), ERC20Mock)

    def test_deployer_failures_propagate(self):
        data = ContractDeployer.function("create2").encode_input(b"\x00" * 32, b"\x01" * 32, b"")
        transaction = Transaction.build(
            self.account.address, CONTRACT_DEPLOYER_SYSTEM_CONTRACT, 0, data=data
        )
        with self.assertRaises(ContractError) as cm:
            self.chain.invoke(
                self.owner.address(),
                self.account,
                "executeTransaction",
                b"\x00" * 32,
                b"\x00" * 32,
                transaction,
            )
        self.assertNotIsInstance(cm.exception, ExecutionFailed)

    def test_custom_bootloader(self):
        bootloader = AccountAddress.from_int(0xB007)
        account = self.chain.deploy(self.owner.address(), ZkMinimalAccount, bootloader)
        self.assertEqual(self.chain.view(account, "getBootloader"), bootloader)

    def test_signature_recovers_owner(self):
        transaction = self.owner.sign_transaction(self.transaction(), self.chain.chain_id)
        self.assertEqual(
            secp256k1_ecdsa.try_recover(
                transaction.encode_hash(self.chain.chain_id), transaction.signature
            ),
            self.owner.address(),
        )

    def test_ownership_transfer_keeps_bootloader(self):
        new_owner = Account.generate()
        self.chain.invoke(
            self.owner.address(), self.account, "transferOwnership", new_owner.address()
        )
        args = (b"\x00" * 32, b"\x00" * 32, self.transaction())
        self.chain.invoke(new_owner.address(), self.account, "executeTransaction", *args)
        self.assertEqual(self.token_balance(), self.AMOUNT)

        with self.assertRaises(NotBootloaderOrOwner):
            self.chain.invoke(self.owner.address(), self.account, "executeTransaction", *args)

        self.chain.invoke(self.bootloader, self.account, "executeTransaction", *args)
        self.assertEqual(self.token_balance(), 2 * self.AMOUNT)

        transaction = new_owner.sign_transaction(self.transaction(0), self.chain.chain_id)
        self.fund(transaction)
        self.assertEqual(self.validate(transaction).hex(), "202bcce7")
        transaction = self.owner.sign_transaction(self.transaction(1), self.chain.chain_id)
        self.fund(transaction)
        self.assertEqual(self.validate(transaction), b"\x00" * 4)

    def test_malformed_deployment_rolls_back(self):
        bytecode_hash = self.chain.register_code(MinimalAccount)
        data = ContractDeployer.function("create2").encode_input(keccak(b"salt"), bytecode_hash, b"")
        transaction = Transaction.build(
            self.account.address, CONTRACT_DEPLOYER_SYSTEM_CONTRACT, 0, data=data
        )
        transaction = self.owner.sign_transaction(transaction, self.chain.chain_id)
        self.fund(transaction)
        relayer = Account.generate().address()
        with self.assertRaises(Reason) as cm:
            self.chain.invoke(relayer, self.account, "executeTransactionFromOutside", transaction)
        self.assertEqual(cm.exception.data, Reason("Malformed constructor input").data)
        self.assertEqual(self.nonce(), 0)
