# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
secp256k1 ECDSA implementation with Ethereum-style public key recovery.

This module provides the key scheme the smart-account core authenticates
against. Signatures are 65 bytes (``r || s || v``) with ``v`` in ``{27, 28}``
so that the signer can be recovered from the digest alone, the way the
``ecrecover`` precompile does it. No public key needs to be stored by the
account: it keeps only the owner's address and compares recovered signers
against it.

Key Features:
- **Recoverable Signatures**: ``try_recover`` returns the signer address or
  ``None``; it never raises on malformed input
- **Signature Normalization**: Only low-``s`` signatures are accepted, which
  rules out the malleable twin of every valid signature
- **Message Transforms**: ``to_eth_signed_message_hash`` implements the
  EIP-191 personal-message transform applied by the EVM entry-point account

Cryptographic Properties:
- Curve: secp256k1
- Hash Function: Keccak-256 (applied by callers, never by the key)
- Key Sizes: 32-byte private keys, 64-byte public keys
- Signature Size: 65 bytes (r, s, v)

Examples:
    Signing and recovering a digest::

        from minimal_aa.secp256k1_ecdsa import PrivateKey, try_recover

        private_key = PrivateKey.random()
        digest = keccak(b"operation")

        signature = private_key.sign(digest)
        signer = try_recover(digest, signature)
        assert signer == private_key.public_key().address()

    Personal-message signatures::

        signature = private_key.sign_message(digest)
        signer = try_recover(to_eth_signed_message_hash(digest), signature)

Note:
    Key handling is delegated to eth-keys and eth-account, the same backends
    used by web3.py.
"""

from __future__ import annotations

import unittest
from typing import Optional, Union

from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.constants import SECPK1_N
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError, keccak

from . import asymmetric_crypto
from .account_address import AccountAddress

PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"


class PrivateKey(asymmetric_crypto.PrivateKey):
    """secp256k1 ECDSA private key.

    Attributes:
        LENGTH: Private key length in bytes (32).
        key: The underlying eth-keys private key.

    Examples:
        >>> private_key = PrivateKey.random()
        >>> signature = private_key.sign(b"\\x00" * 32)
        >>> len(signature.data())
        65
    """

    LENGTH: int = 32

    key: keys.PrivateKey

    def __init__(self, key: keys.PrivateKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.key == other.key

    def __str__(self):
        return self.hex()

    @staticmethod
    def from_hex(value: str | bytes) -> PrivateKey:
        """Create a private key from a hex string or raw bytes.

        Args:
            value: ``0x``-prefixed or bare hex string, or 32 raw bytes.

        Raises:
            ValueError: If the input is not 32 bytes or not a valid scalar.
        """
        raw = PrivateKey.parse_hex_input(value)
        if len(raw) != PrivateKey.LENGTH:
            raise ValueError("Length mismatch")
        try:
            return PrivateKey(keys.PrivateKey(raw))
        except ValidationError as e:
            raise ValueError(f"Invalid secp256k1 private key: {e}") from e

    @staticmethod
    def from_str(value: str) -> PrivateKey:
        return PrivateKey.from_hex(value)

    def hex(self) -> str:
        return f"0x{self.key.to_bytes().hex()}"

    def public_key(self) -> PublicKey:
        return PublicKey(self.key.public_key)

    @staticmethod
    def random() -> PrivateKey:
        """Generate a new random private key using eth-account's key generation."""
        return PrivateKey(keys.PrivateKey(bytes(EthAccount.create().key)))

    def sign(self, data: bytes) -> Signature:
        """Sign a raw 32-byte digest.

        The digest is signed as is. Use :meth:`sign_message` when the
        verifier applies the EIP-191 personal-message transform.

        Returns:
            A normalized (low-``s``) 65-byte signature.
        """
        signature = self.key.sign_msg_hash(data)
        return Signature.from_vrs(signature.v, signature.r, signature.s)

    def sign_message(self, data: bytes) -> Signature:
        """Sign ``data`` as an EIP-191 personal message.

        This is what wallets do for ``personal_sign``; the digest actually
        signed is ``to_eth_signed_message_hash(data)``.
        """
        signed = EthAccount.sign_message(
            encode_defunct(primitive=data), private_key=self.key.to_bytes()
        )
        return Signature(bytes(signed.signature))


class PublicKey(asymmetric_crypto.PublicKey):
    """secp256k1 public key (64 bytes, uncompressed without prefix)."""

    LENGTH: int = 64

    key: keys.PublicKey

    def __init__(self, key: keys.PublicKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.key == other.key

    def __str__(self) -> str:
        return self.hex()

    def hex(self) -> str:
        return f"0x04{self.key.to_bytes().hex()}"

    def to_crypto_bytes(self) -> bytes:
        return self.key.to_bytes()

    def address(self) -> AccountAddress:
        return AccountAddress.from_key(self)

    def verify(self, data: bytes, signature: asymmetric_crypto.Signature) -> bool:
        """Verify that ``signature`` over ``data`` was produced by this key.

        Returns False for any malformed signature instead of raising.
        """
        return try_recover(data, signature) == self.address()


class Signature(asymmetric_crypto.Signature):
    """Recoverable 65-byte ECDSA signature (``r || s || v``)."""

    LENGTH: int = 65

    signature: bytes

    def __init__(self, signature: bytes):
        self.signature = signature

    def __eq__(self, other: object):
        if not isinstance(other, Signature):
            return NotImplemented
        return self.signature == other.signature

    def __str__(self) -> str:
        return self.hex()

    @staticmethod
    def from_vrs(v: int, r: int, s: int) -> Signature:
        """Build a signature from its components, accepting ``v`` as 0/1 or 27/28."""
        if v < 27:
            v += 27
        return Signature(r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v]))

    @staticmethod
    def from_str(value: str) -> Signature:
        if value[0:2] == "0x":
            value = value[2:]
        return Signature(bytes.fromhex(value))

    def hex(self) -> str:
        return f"0x{self.signature.hex()}"

    def data(self) -> bytes:
        return self.signature


def to_eth_signed_message_hash(digest: bytes) -> bytes:
    """Apply the EIP-191 personal-message transform to a 32-byte digest."""
    return keccak(PERSONAL_MESSAGE_PREFIX + digest)


def try_recover(
    digest: bytes, signature: Union[asymmetric_crypto.Signature, bytes]
) -> Optional[AccountAddress]:
    """Recover the address that signed ``digest``.

    Mirrors OpenZeppelin's ``ECDSA.tryRecover``: a signature that is not 65
    bytes long, has an unknown recovery id, a zero or out-of-range ``r``/``s``,
    a high ``s`` value, or does not resolve to a curve point yields ``None``.

    Args:
        digest: The 32-byte digest that was signed.
        signature: A :class:`Signature` or its raw bytes.

    Returns:
        The signer address, or ``None`` if recovery failed.
    """
    raw = bytes(signature) if isinstance(signature, (bytes, bytearray)) else signature.data()
    if len(raw) != Signature.LENGTH or len(digest) != 32:
        return None

    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        return None
    if not 0 < r < SECPK1_N or not 0 < s <= SECPK1_N // 2:
        return None

    try:
        public_key = keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValidationError):
        return None
    return AccountAddress(public_key.to_canonical_address())


class Test(unittest.TestCase):
    KEY_ONE = "0x0000000000000000000000000000000000000000000000000000000000000001"

    def test_vectors(self):
        private_key = PrivateKey.from_str(self.KEY_ONE)
        self.assertEqual(
            private_key.public_key().address(),
            AccountAddress.from_str("0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"),
        )
        self.assertEqual(private_key.hex(), self.KEY_ONE)

    def test_private_key_from_hex(self):
        raw = bytes.fromhex(self.KEY_ONE[2:])
        self.assertEqual(PrivateKey.from_hex(raw), PrivateKey.from_str(self.KEY_ONE[2:]))
        with self.assertRaises(ValueError):
            PrivateKey.from_hex("0x01")
        with self.assertRaises(ValueError):
            PrivateKey.from_hex(b"\xff" * 32)

    def test_sign_and_recover(self):
        digest = keccak(b"test_message")
        private_key = PrivateKey.random()
        public_key = private_key.public_key()

        signature = private_key.sign(digest)
        self.assertEqual(len(signature.data()), Signature.LENGTH)
        self.assertIn(signature.data()[64], (27, 28))
        self.assertTrue(public_key.verify(digest, signature))
        self.assertFalse(public_key.verify(keccak(b"other"), signature))
        self.assertFalse(PrivateKey.random().public_key().verify(digest, signature))

    def test_personal_message_matches_eth_account(self):
        digest = keccak(b"operation hash")
        private_key = PrivateKey.random()
        signature = private_key.sign_message(digest)

        recovered = EthAccount.recover_message(
            encode_defunct(primitive=digest), signature=signature.data()
        )
        self.assertEqual(AccountAddress.from_str(recovered), private_key.public_key().address())
        self.assertEqual(
            try_recover(to_eth_signed_message_hash(digest), signature),
            private_key.public_key().address(),
        )
        # Without the transform the signer does not match
        self.assertNotEqual(try_recover(digest, signature), private_key.public_key().address())

    def test_malformed_signatures_are_not_recovered(self):
        digest = keccak(b"payload")
        signature = PrivateKey.random().sign(digest).data()

        self.assertIsNone(try_recover(digest, b""))
        self.assertIsNone(try_recover(digest, signature[:64]))
        self.assertIsNone(try_recover(digest, signature[:64] + bytes([29])))
        self.assertIsNone(try_recover(digest, b"\x00" * 65))

        r = signature[0:32]
        s = int.from_bytes(signature[32:64], "big")
        high_s = (SECPK1_N - s).to_bytes(32, "big")
        flipped_v = bytes([55 - signature[64]])
        self.assertIsNone(try_recover(digest, r + high_s + flipped_v))

    def test_signature_from_str(self):
        signature = PrivateKey.random().sign(keccak(b"x"))
        self.assertEqual(Signature.from_str(str(signature)), signature)
        self.assertEqual(Signature.from_str(signature.hex()[2:]), signature)
