# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Host environment adapters for the smart-account core.

The authorization and execution logic is the same whichever relay drives the
account. What differs per host is captured by an :class:`Environment`:

============== ============================== ================================
Capability     EntryPointEnvironment          BootloaderEnvironment
============== ============================== ================================
hash           hash supplied by the caller    EIP-712 digest of the tx
signing_digest EIP-191 personal message       identity
advance_nonce  no-op (entry point tracks it)  NonceHolder compare-and-increment
check_balance  no-op                          ``totalRequiredBalance`` check
call           plain call                     deployer target is a system call
payment        BEST_EFFORT                    CHECKED
============== ============================== ================================
"""

from __future__ import annotations

import unittest
from enum import Enum
from typing import Any

from typing_extensions import Protocol

from . import secp256k1_ecdsa
from .account_address import AccountAddress
from .chain import CallResult, Contract, Revert
from .errors import InsufficientBalance
from .system_contracts import (
    CONTRACT_DEPLOYER_SYSTEM_CONTRACT,
    NONCE_HOLDER_SYSTEM_CONTRACT,
    NonceHolder,
)
from .transactions import Transaction


class PaymentPolicy(Enum):
    """How a failed fee transfer to the trusted caller is treated."""

    BEST_EFFORT = "best_effort"
    """The transfer outcome is ignored; a failure is only logged."""
    CHECKED = "checked"
    """A failed transfer aborts the call."""


class Environment(Protocol):
    payment_policy: PaymentPolicy

    def hash(self, account: Contract, envelope: Any, supplied_hash: bytes) -> bytes:
        """Canonical hash of the envelope's authorization-relevant fields."""
        ...

    def signing_digest(self, operation_hash: bytes) -> bytes:
        """Transform the canonical hash into the digest the owner signed."""
        ...

    def advance_nonce(self, account: Contract, envelope: Any):
        """Consume the envelope's nonce, reverting if it was already used."""
        ...

    def check_balance(self, account: Contract, envelope: Any):
        """Revert if the account cannot cover the envelope's value and fees."""
        ...

    def call(
        self, account: Contract, target: AccountAddress, value: int, data: bytes
    ) -> CallResult:
        """Perform the account's outgoing call and capture its outcome."""
        ...


class EntryPointEnvironment:
    """ERC-4337 entry point: the relay hashes, tracks nonces and charges fees."""

    payment_policy = PaymentPolicy.BEST_EFFORT

    def hash(self, account: Contract, envelope: Any, supplied_hash: bytes) -> bytes:
        return supplied_hash

    def signing_digest(self, operation_hash: bytes) -> bytes:
        return secp256k1_ecdsa.to_eth_signed_message_hash(operation_hash)

    def advance_nonce(self, account: Contract, envelope: Any):
        pass

    def check_balance(self, account: Contract, envelope: Any):
        pass

    def call(
        self, account: Contract, target: AccountAddress, value: int, data: bytes
    ) -> CallResult:
        return account.call(target, value, data)


class BootloaderEnvironment:
    """zkSync bootloader: the account advances its own nonce and checks its balance."""

    payment_policy = PaymentPolicy.CHECKED

    def hash(self, account: Contract, envelope: Transaction, supplied_hash: bytes) -> bytes:
        return envelope.encode_hash(account.chain.chain_id)

    def signing_digest(self, operation_hash: bytes) -> bytes:
        return operation_hash

    def advance_nonce(self, account: Contract, envelope: Transaction):
        data = NonceHolder.function("incrementMinNonceIfEquals").encode_input(envelope.nonce)
        system_call_with_propagated_revert(account, NONCE_HOLDER_SYSTEM_CONTRACT, 0, data)

    def check_balance(self, account: Contract, envelope: Transaction):
        required = envelope.total_required_balance()
        if required > account.balance:
            raise InsufficientBalance(required, account.balance)

    def call(
        self, account: Contract, target: AccountAddress, value: int, data: bytes
    ) -> CallResult:
        if target == CONTRACT_DEPLOYER_SYSTEM_CONTRACT:
            return system_call_with_propagated_revert(account, target, value, data)
        return account.call(target, value, data)


def system_call_with_propagated_revert(
    account: Contract, target: AccountAddress, value: int, data: bytes
) -> CallResult:
    """Make a system call and re-raise the callee's error if it fails."""
    result = account.call(target, value, data, is_system=True)
    if not result.success:
        if result.error is not None:
            raise result.error
        raise Revert(result.return_data)
    return result


class Test(unittest.TestCase):
    def test_signing_digests(self):
        operation_hash = b"\x11" * 32
        self.assertEqual(
            EntryPointEnvironment().signing_digest(operation_hash),
            secp256k1_ecdsa.to_eth_signed_message_hash(operation_hash),
        )
        self.assertEqual(BootloaderEnvironment().signing_digest(operation_hash), operation_hash)

    def test_payment_policies(self):
        self.assertIs(EntryPointEnvironment.payment_policy, PaymentPolicy.BEST_EFFORT)
        self.assertIs(BootloaderEnvironment.payment_policy, PaymentPolicy.CHECKED)
