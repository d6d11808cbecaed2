# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Account address management for EVM-style hosts.

This module provides the 20-byte address type used as the identity of every
principal in the smart-account core: owners, trusted callers (entry point or
bootloader), deployed accounts and call targets.

Key features:
- EIP-55 checksummed formatting
- Strict parsing (``0x`` + 40 hex digits, checksum validated when mixed case)
  and relaxed parsing (short forms such as ``0x8001`` for system contracts)
- Address derivation from public keys
- Contract address derivation for ``CREATE`` and for the zkSync deployer's
  ``create``/``create2`` schemes

Examples:
    Basic address operations::

        # Parse from string (strict)
        addr = AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")

        # Parse from string (relaxed)
        bootloader = AccountAddress.from_str_relaxed("0x8001")

        # Derive from public key
        addr = AccountAddress.from_key(public_key)

    Contract addresses::

        # Address of the n-th contract deployed by an EOA
        contract = AccountAddress.for_create(deployer, nonce)

        # Address assigned by the zkSync deployer system contract
        contract = AccountAddress.for_zksync_create2(sender, salt, bytecode_hash, b"")
"""

from __future__ import annotations

import unittest

import rlp
from eth_utils import is_checksum_address, keccak, to_checksum_address

from . import asymmetric_crypto

ZKSYNC_CREATE_PREFIX: bytes = keccak(text="zksyncCreate")
ZKSYNC_CREATE2_PREFIX: bytes = keccak(text="zksyncCreate2")


class ParseAddressError(Exception):
    """Exception raised when there's an error parsing an account address.

    Examples:
        Catching parse errors::

            try:
                addr = AccountAddress.from_str("invalid")
            except ParseAddressError as e:
                print(f"Failed to parse address: {e}")
    """


class AccountAddress:
    """Represents a 20-byte account address.

    Attributes:
        address: The raw 20-byte address data
        LENGTH: The required byte length of all addresses (20)

    Examples:
        Creating addresses::

            addr1 = AccountAddress.from_str("0x" + "11" * 20)
            addr2 = AccountAddress.from_int(0x8001)
            addr3 = AccountAddress(b"\\x00" * 20)

        Address formatting::

            print(addr1)  # EIP-55 checksummed form
    """

    address: bytes
    LENGTH: int = 20

    def __init__(self, address: bytes):
        """Initialize an AccountAddress with raw address bytes.

        Raises:
            ParseAddressError: If the address is not exactly 20 bytes.
        """
        self.address = bytes(address)

        if len(self.address) != AccountAddress.LENGTH:
            raise ParseAddressError("Expected address of length 20")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountAddress):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __str__(self):
        """Get the EIP-55 checksummed representation of this address."""
        return to_checksum_address(self.address)

    def __repr__(self):
        return self.__str__()

    def is_zero(self) -> bool:
        """Check whether this is the zero (null) address."""
        return self.address == b"\x00" * AccountAddress.LENGTH

    def to_int(self) -> int:
        """Return the address as an unsigned integer, as stored in uint256 fields."""
        return int.from_bytes(self.address, "big")

    def to_word(self) -> bytes:
        """Return the address left-padded to a 32-byte word."""
        return self.address.rjust(32, b"\x00")

    @staticmethod
    def from_str(address: str) -> AccountAddress:
        """Create an AccountAddress instance from a strictly formatted string.

        The string must be ``0x`` followed by exactly 40 hex characters. When
        the string mixes upper and lower case it must be a valid EIP-55
        checksum; all-lower and all-upper forms are accepted as is.

        Args:
            address: The address string to parse.

        Returns:
            The parsed AccountAddress.

        Raises:
            ParseAddressError: If the string is malformed or the checksum
                does not match.

        Examples:
            >>> AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
            0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed
        """
        if not isinstance(address, str) or not address.startswith("0x"):
            raise ParseAddressError("Hex string must start with a leading 0x.")

        body = address[2:]
        if len(body) != AccountAddress.LENGTH * 2:
            raise ParseAddressError(
                "Hex string must be 40 characters long, excluding the leading 0x."
            )
        try:
            raw = bytes.fromhex(body)
        except ValueError as e:
            raise ParseAddressError(f"Invalid hex characters in {address}") from e

        if body != body.lower() and body != body.upper():
            if not is_checksum_address(address):
                raise ParseAddressError(f"Invalid EIP-55 checksum: {address}")
        return AccountAddress(raw)

    @staticmethod
    def from_str_relaxed(address: str) -> AccountAddress:
        """Create an AccountAddress from a loosely formatted string.

        Accepts a missing ``0x`` prefix and short forms, which are left-padded
        with zeros (``"0x8001"`` is the bootloader formal address). The
        checksum is not validated.

        Raises:
            ParseAddressError: If the string is empty, too long or not hex.
        """
        body = address[2:] if address.startswith("0x") else address
        if len(body) == 0:
            raise ParseAddressError("Hex string is too short, must be 1 to 40 chars long.")
        if len(body) > AccountAddress.LENGTH * 2:
            raise ParseAddressError("Hex string is too long, must be 1 to 40 chars long.")
        try:
            return AccountAddress(bytes.fromhex(body.rjust(AccountAddress.LENGTH * 2, "0")))
        except ValueError as e:
            raise ParseAddressError(f"Invalid hex characters in {address}") from e

    @staticmethod
    def from_int(value: int) -> AccountAddress:
        """Create an AccountAddress from an integer such as a uint256 field.

        Raises:
            ParseAddressError: If the value does not fit in 160 bits.
        """
        if value < 0 or value >= 1 << 160:
            raise ParseAddressError(f"Value {value} does not fit in an address")
        return AccountAddress(value.to_bytes(AccountAddress.LENGTH, "big"))

    @staticmethod
    def from_key(key: asymmetric_crypto.PublicKey) -> AccountAddress:
        """Derive an account address from a public key.

        The address is the last 20 bytes of the Keccak-256 hash of the
        64-byte uncompressed public key.
        """
        return AccountAddress(keccak(key.to_crypto_bytes())[-AccountAddress.LENGTH :])

    @staticmethod
    def for_create(sender: AccountAddress, nonce: int) -> AccountAddress:
        """Address of a contract deployed by ``sender`` with the ``CREATE`` scheme."""
        encoded = rlp.encode([sender.address, nonce])
        return AccountAddress(keccak(encoded)[-AccountAddress.LENGTH :])

    @staticmethod
    def for_zksync_create(sender: AccountAddress, deployment_nonce: int) -> AccountAddress:
        """Address assigned by the zkSync deployer's ``create`` for a sender nonce."""
        preimage = (
            ZKSYNC_CREATE_PREFIX + sender.to_word() + deployment_nonce.to_bytes(32, "big")
        )
        return AccountAddress(keccak(preimage)[-AccountAddress.LENGTH :])

    @staticmethod
    def for_zksync_create2(
        sender: AccountAddress, salt: bytes, bytecode_hash: bytes, constructor_input: bytes
    ) -> AccountAddress:
        """Address assigned by the zkSync deployer's ``create2``.

        Args:
            sender: The contract requesting the deployment.
            salt: 32-byte salt.
            bytecode_hash: 32-byte hash identifying the code to deploy.
            constructor_input: ABI-encoded constructor arguments.
        """
        preimage = (
            ZKSYNC_CREATE2_PREFIX
            + sender.to_word()
            + salt
            + bytecode_hash
            + keccak(constructor_input)
        )
        return AccountAddress(keccak(preimage)[-AccountAddress.LENGTH :])


ZERO = AccountAddress(b"\x00" * AccountAddress.LENGTH)


class Test(unittest.TestCase):
    def test_checksum_formatting(self):
        addr = AccountAddress.from_str("0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")
        self.assertEqual(str(addr), "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")

    def test_from_str(self):
        AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
        AccountAddress.from_str("0x5AAEB6053F3E94C9B9A09F33669435E7EF1BEAED")

        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str("5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str("0x8001")
        with self.assertRaises(ParseAddressError):
            # Last character case flipped breaks the checksum
            AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAeD")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str("0x" + "zz" * 20)

    def test_from_str_relaxed(self):
        bootloader = AccountAddress.from_str_relaxed("0x8001")
        self.assertEqual(bootloader.to_int(), 0x8001)
        self.assertEqual(bootloader, AccountAddress.from_int(0x8001))
        self.assertEqual(
            AccountAddress.from_str_relaxed("5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"),
            AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"),
        )
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str_relaxed("0x")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str_relaxed("0x" + "1" * 41)

    def test_zero(self):
        self.assertTrue(ZERO.is_zero())
        self.assertFalse(AccountAddress.from_int(1).is_zero())
        with self.assertRaises(ParseAddressError):
            AccountAddress(b"\x00" * 32)

    def test_hashable(self):
        balances = {AccountAddress.from_int(1): 5}
        self.assertEqual(balances[AccountAddress.from_str_relaxed("0x1")], 5)

    def test_for_create(self):
        sender = AccountAddress.from_str("0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0")
        self.assertEqual(
            AccountAddress.for_create(sender, 0),
            AccountAddress.from_str("0xcd234a471b72ba2f1ccf0a70fcaba648a5eecd8d"),
        )
        self.assertEqual(
            AccountAddress.for_create(sender, 1),
            AccountAddress.from_str("0x343c43a37d37dff08ae8c4a11544c718abb4fcf8"),
        )

    def test_zksync_addresses_are_deterministic(self):
        sender = AccountAddress.from_int(0x1234)
        salt = b"\x00" * 32
        code = keccak(b"code")
        first = AccountAddress.for_zksync_create2(sender, salt, code, b"")
        self.assertEqual(first, AccountAddress.for_zksync_create2(sender, salt, code, b""))
        self.assertNotEqual(first, AccountAddress.for_zksync_create2(sender, salt, code, b"\x01"))
        self.assertNotEqual(
            AccountAddress.for_zksync_create(sender, 0),
            AccountAddress.for_zksync_create(sender, 1),
        )
