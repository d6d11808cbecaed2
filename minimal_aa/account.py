# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import json
import tempfile
import unittest

from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct
from eth_utils import keccak

from . import secp256k1_ecdsa
from .account_address import AccountAddress
from .transactions import PackedUserOperation, Transaction


class Account:
    """An externally owned key pair that owns, and signs for, a smart account.

    The smart account never sees this key: it stores only the owner address
    and recovers the signer of every operation it is asked to validate. This
    class produces those signatures in the form each host environment expects.

    Examples:
        Create an owner and sign a user operation::

            from minimal_aa.account import Account

            owner = Account.generate()
            op = PackedUserOperation.build(sender=smart_account, nonce=0, call_data=data)
            signed = owner.sign_user_operation(op, entry_point, chain_id)

        Persistent storage::

            owner.store("./owner.json")
            restored = Account.load("./owner.json")
            assert owner == restored

    Note:
        Addresses are the last 20 bytes of the Keccak-256 hash of the public
        key, so the same private key yields the same address as any Ethereum
        wallet would show.
    """

    account_address: AccountAddress
    private_key: secp256k1_ecdsa.PrivateKey

    def __init__(
        self, account_address: AccountAddress, private_key: secp256k1_ecdsa.PrivateKey
    ):
        self.account_address = account_address
        self.private_key = private_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Account):
            return NotImplemented
        return (
            self.account_address == other.account_address
            and self.private_key == other.private_key
        )

    def __repr__(self) -> str:
        return f"Account({self.account_address})"

    @staticmethod
    def generate() -> Account:
        """Generate a new account with a random secp256k1 private key."""
        private_key = secp256k1_ecdsa.PrivateKey.random()
        account_address = AccountAddress.from_key(private_key.public_key())
        return Account(account_address, private_key)

    @staticmethod
    def load_key(key: str) -> Account:
        """Create an account from a hex-encoded private key.

        Args:
            key: 32-byte private key as hex, with or without ``0x``.

        Raises:
            ValueError: If the key is malformed or not a valid scalar.
        """
        private_key = secp256k1_ecdsa.PrivateKey.from_str(key)
        account_address = AccountAddress.from_key(private_key.public_key())
        return Account(account_address, private_key)

    @staticmethod
    def load(path: str) -> Account:
        """Load an account from a JSON file written by :meth:`store`.

        File Format:
            ``{"account_address": "0x...", "private_key": "0x..."}``

        Raises:
            KeyError: If a field is missing.
            ValueError: If the stored key does not produce the stored address.
        """
        with open(path) as file:
            data = json.load(file)
        account = Account.load_key(data["private_key"])
        if account.account_address != AccountAddress.from_str_relaxed(data["account_address"]):
            raise ValueError(f"{path}: private key does not match account_address")
        return account

    def store(self, path: str):
        """Write the address and private key to ``path`` in plaintext JSON."""
        data = {
            "account_address": str(self.account_address),
            "private_key": str(self.private_key),
        }
        with open(path, "w") as file:
            json.dump(data, file)

    def address(self) -> AccountAddress:
        return self.account_address

    def public_key(self) -> secp256k1_ecdsa.PublicKey:
        return self.private_key.public_key()

    def sign(self, digest: bytes) -> secp256k1_ecdsa.Signature:
        """Sign a raw 32-byte digest, without any message prefix."""
        return self.private_key.sign(digest)

    def sign_message(self, digest: bytes) -> secp256k1_ecdsa.Signature:
        """Sign a 32-byte digest as an EIP-191 personal message."""
        return self.private_key.sign_message(digest)

    def sign_user_operation(
        self, op: PackedUserOperation, entry_point: AccountAddress, chain_id: int
    ) -> PackedUserOperation:
        """Return ``op`` signed for an account behind ``entry_point``.

        The entry-point account validates a personal-message signature over
        the canonical user operation hash.
        """
        signature = self.sign_message(op.hash(entry_point, chain_id))
        return op.with_signature(signature.data())

    def sign_transaction(self, tx: Transaction, chain_id: int) -> Transaction:
        """Return ``tx`` signed for an account running under the bootloader.

        The EIP-712 digest is signed directly.
        """
        signature = self.sign(tx.encode_hash(chain_id))
        return tx.with_signature(signature.data())


class Test(unittest.TestCase):
    def test_load_and_store(self):
        (file, path) = tempfile.mkstemp()
        start = Account.generate()
        start.store(path)
        load = Account.load(path)

        self.assertEqual(start, load)

    def test_load_rejects_mismatched_address(self):
        (file, path) = tempfile.mkstemp()
        with open(path, "w") as f:
            json.dump(
                {
                    "account_address": str(Account.generate().address()),
                    "private_key": str(Account.generate().private_key),
                },
                f,
            )
        with self.assertRaises(ValueError):
            Account.load(path)

    def test_address_matches_eth_account(self):
        account = Account.generate()
        expected = EthAccount.from_key(account.private_key.hex()).address
        self.assertEqual(str(account.address()), expected)

    def test_key(self):
        digest = keccak(b"test message")
        account = Account.generate()
        signature = account.sign(digest)
        self.assertTrue(account.public_key().verify(digest, signature))

    def test_sign_user_operation(self):
        owner = Account.generate()
        entry_point = AccountAddress.from_int(0xE7)
        op = PackedUserOperation.build(AccountAddress.from_int(0xAA), 0, b"")
        signed = owner.sign_user_operation(op, entry_point, 1)

        recovered = EthAccount.recover_message(
            encode_defunct(primitive=op.hash(entry_point, 1)), signature=signed.signature
        )
        self.assertEqual(AccountAddress.from_str(recovered), owner.address())

    def test_sign_transaction(self):
        owner = Account.generate()
        tx = Transaction.build(AccountAddress.from_int(0xAA), AccountAddress.from_int(0xBB), 0)
        signed = owner.sign_transaction(tx, 300)
        self.assertEqual(
            secp256k1_ecdsa.try_recover(tx.encode_hash(300), signed.signature),
            owner.address(),
        )
