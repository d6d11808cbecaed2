# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Asymmetric cryptographic interfaces used by the smart-account core.

This module defines the structural protocols that concrete key implementations
must follow. The account core only ever needs three things from a key scheme:
derive a public identity, sign a 32-byte digest, and recover (or verify) the
signer of a digest. Keeping these as protocols lets the validator stay
agnostic of the concrete backend.

Key Components:
- **Protocol Definitions**: Abstract interfaces for private keys, public keys
  and signatures
- **Input Parsing**: A single helper that accepts the common hex encodings of
  a private key (with or without ``0x``, or raw bytes)

Examples:
    Using protocol interfaces::

        def sign_digest(private_key: PrivateKey, digest: bytes) -> Signature:
            return private_key.sign(digest)

        def verify_signature(public_key: PublicKey, digest: bytes, sig: Signature) -> bool:
            return public_key.verify(digest, sig)

Note:
    This module defines protocols only. The concrete implementation lives in
    secp256k1_ecdsa.py.
"""

from __future__ import annotations

from enum import Enum

from typing_extensions import Protocol


class PrivateKeyVariant(Enum):
    """Supported private key schemes."""

    Secp256k1 = "secp256k1"


class PrivateKey(Protocol):
    """Protocol defining the interface for asymmetric private keys.

    Methods:
        hex() -> str: Get hexadecimal representation of the private key
        public_key() -> PublicKey: Derive the corresponding public key
        sign(data: bytes) -> Signature: Sign a 32-byte digest
    """

    LENGTH: int

    def hex(self) -> str:
        """Return the hexadecimal string representation of the private key."""
        ...

    def public_key(self) -> PublicKey:
        """Derive the corresponding public key from this private key."""
        ...

    def sign(self, data: bytes) -> Signature:
        """Sign the given 32-byte digest using this private key.

        Args:
            data: The digest to be signed. No hashing is applied by the key
                itself; callers choose the message transform.

        Returns:
            A recoverable signature over ``data``.
        """
        ...

    @staticmethod
    def parse_hex_input(value: str | bytes) -> bytes:
        """Parse a private key given as a hex string or raw bytes.

        Args:
            value: ``0x``-prefixed or bare hex string, or raw bytes.

        Returns:
            The raw private key bytes.

        Raises:
            ValueError: If the string is not valid hex.
            TypeError: If the input is neither ``str`` nor ``bytes``.

        Examples:
            >>> PrivateKey.parse_hex_input("0x01")
            b'\\x01'
            >>> PrivateKey.parse_hex_input(b"\\x01")
            b'\\x01'
        """
        if isinstance(value, str):
            value = value.strip()
            if value[0:2] == "0x":
                value = value[2:]
            try:
                return bytes.fromhex(value)
            except ValueError as e:
                raise ValueError("Invalid HexString input.") from e
        elif isinstance(value, bytes):
            return value
        else:
            raise TypeError("Input value must be a string or bytes.")


class PublicKey(Protocol):
    """Protocol defining the interface for asymmetric public keys."""

    def to_crypto_bytes(self) -> bytes:
        """Return the raw key bytes used for identity derivation."""
        ...

    def verify(self, data: bytes, signature: Signature) -> bool:
        """Verify a signature over a 32-byte digest.

        Returns:
            True if the signature is valid for this key. Never raises for a
            malformed signature.
        """
        ...


class Signature(Protocol):
    """Protocol for signatures produced by a :class:`PrivateKey`."""

    def data(self) -> bytes:
        """Return the raw signature bytes."""
        ...
