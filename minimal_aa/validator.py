# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Owner signature validation.

Validation is a pure function of the signing digest, the signature and the
current owner. A signature that does not recover to the owner, including any
malformed signature, is a :attr:`ValidationResult.REJECTED` result and never
an exception; the caller decides what a rejection means for its host.
"""

from __future__ import annotations

import unittest
from enum import Enum

from eth_utils import keccak

from . import secp256k1_ecdsa
from .account_address import AccountAddress

SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

ACCOUNT_VALIDATION_SUCCESS_MAGIC = bytes.fromhex("202bcce7")
ACCOUNT_VALIDATION_FAILURE = b"\x00" * 4


class ValidationResult(Enum):
    AUTHORIZED = "authorized"
    REJECTED = "rejected"

    def validation_data(self) -> int:
        """Entry-point encoding: 0 for success, 1 for a signature failure."""
        if self is ValidationResult.AUTHORIZED:
            return SIG_VALIDATION_SUCCESS
        return SIG_VALIDATION_FAILED

    def magic(self) -> bytes:
        """Bootloader encoding: the ``validateTransaction`` selector or zero."""
        if self is ValidationResult.AUTHORIZED:
            return ACCOUNT_VALIDATION_SUCCESS_MAGIC
        return ACCOUNT_VALIDATION_FAILURE


def validate_signature(
    digest: bytes, signature: bytes, owner: AccountAddress
) -> ValidationResult:
    """Check that ``signature`` over ``digest`` was produced by ``owner``."""
    signer = secp256k1_ecdsa.try_recover(digest, signature)
    if signer is None or signer != owner:
        return ValidationResult.REJECTED
    return ValidationResult.AUTHORIZED


class Test(unittest.TestCase):
    def test_owner_is_authorized(self):
        key = secp256k1_ecdsa.PrivateKey.random()
        owner = key.public_key().address()
        digest = keccak(b"op")
        signature = key.sign(digest).data()

        self.assertEqual(validate_signature(digest, signature, owner), ValidationResult.AUTHORIZED)
        self.assertEqual(
            validate_signature(keccak(b"other"), signature, owner), ValidationResult.REJECTED
        )
        stranger = secp256k1_ecdsa.PrivateKey.random().public_key().address()
        self.assertEqual(
            validate_signature(digest, signature, stranger), ValidationResult.REJECTED
        )

    def test_malformed_signature_is_rejected(self):
        owner = AccountAddress.from_int(1)
        for signature in (b"", b"\x01" * 64, b"\x00" * 65, b"\xff" * 65):
            self.assertEqual(
                validate_signature(keccak(b"op"), signature, owner), ValidationResult.REJECTED
            )

    def test_encodings(self):
        self.assertEqual(ValidationResult.AUTHORIZED.validation_data(), 0)
        self.assertEqual(ValidationResult.REJECTED.validation_data(), 1)
        self.assertEqual(ValidationResult.AUTHORIZED.magic().hex(), "202bcce7")
        self.assertEqual(ValidationResult.REJECTED.magic(), b"\x00\x00\x00\x00")
