# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Command-line interface for hashing and signing account operations.

Operations are exchanged as RPC-shaped JSON files (see
:meth:`PackedUserOperation.to_json` and :meth:`Transaction.to_json`), so the
output can be handed to a bundler or a zkSync node as is.

Supported Commands:
- hash-user-op: Print the canonical hash of a user operation
- sign-user-op: Sign a user operation for an entry-point account
- hash-transaction: Print the EIP-712 digest of a zkSync transaction
- sign-transaction: Sign a zkSync transaction for a bootloader account

Examples:
    Signing a user operation for Sepolia::

        python -m minimal_aa.cli sign-user-op \
            --input ./user_op.json \
            --private-key-path ./owner_key.txt \
            --chain-id 11155111

    Signing a zkSync transaction::

        python -m minimal_aa.cli sign-transaction \
            --input ./transaction.json \
            --private-key-path ./owner_key.txt \
            --chain-id 300 \
            --output ./signed.json

Environment Variables:
    MINIMAL_AA_CHAIN_ID, MINIMAL_AA_ENTRY_POINT: Defaults for ``--chain-id``
    and ``--entry-point``, see :mod:`minimal_aa.config`.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from io import StringIO
from typing import Any, Dict, List, Optional

from eth_utils import keccak

from . import secp256k1_ecdsa
from .account import Account
from .account_address import AccountAddress
from .config import ZKSYNC_SEPOLIA_CHAIN_ID, get_config
from .transactions import CallDescriptor, PackedUserOperation, Transaction

COMMANDS = ["hash-user-op", "sign-user-op", "hash-transaction", "sign-transaction"]


def read_json(path: str) -> Dict[str, Any]:
    if path == "-":
        return json.load(sys.stdin)
    with open(path) as file:
        return json.load(file)


def write_json(data: Dict[str, Any], path: Optional[str]):
    if path is None:
        print(json.dumps(data, indent=2))
        return
    with open(path, "w") as file:
        json.dump(data, file, indent=2)
    logging.info(f"Wrote {path}")


def load_signer(path: str) -> Account:
    with open(path) as file:
        return Account.load_key(file.read().strip())


def main(args: List[str]):
    """Parse ``args`` and run the selected command.

    Raises:
        SystemExit: On invalid or missing arguments.
    """
    parser = argparse.ArgumentParser(description="Minimal account abstraction CLI")
    parser.add_argument("command", type=str, help="The command to execute", choices=COMMANDS)
    parser.add_argument(
        "--input", help="Path to the operation JSON, or '-' for stdin", type=str, default="-"
    )
    parser.add_argument(
        "--output", help="Where to write the signed JSON (default: stdout)", type=str
    )
    parser.add_argument(
        "--private-key-path", help="Path to a file containing the owner's private key", type=str
    )
    parser.add_argument("--chain-id", help="Chain id the operation is bound to", type=int)
    parser.add_argument(
        "--entry-point",
        help="Entry point address (user operations only)",
        type=AccountAddress.from_str,
    )
    parser.add_argument("--verbose", help="Log progress to stderr", action="store_true")
    parsed_args = parser.parse_args(args)

    logging.basicConfig(level=logging.INFO if parsed_args.verbose else logging.WARNING)

    try:
        config = get_config(parsed_args.chain_id)
    except ValueError as e:
        parser.error(str(e))
    entry_point = parsed_args.entry_point or config.entry_point

    signer = None
    if parsed_args.command.startswith("sign-"):
        if parsed_args.private_key_path is None:
            parser.error("Missing required argument '--private-key-path'")
        try:
            signer = load_signer(parsed_args.private_key_path)
        except FileNotFoundError:
            parser.error(f"Private key file not found: {parsed_args.private_key_path}")
        except ValueError as e:
            parser.error(f"Failed to load private key: {e}")

    try:
        data = read_json(parsed_args.input)
    except FileNotFoundError:
        parser.error(f"Input file not found: {parsed_args.input}")

    if parsed_args.command.endswith("user-op"):
        user_op = PackedUserOperation.from_json(data)
        user_op_hash = user_op.hash(entry_point, config.chain_id)
        logging.info(f"User operation hash 0x{user_op_hash.hex()}")
        if signer is None:
            print(f"0x{user_op_hash.hex()}")
            return
        if user_op.sender == signer.address():
            logging.warning("Signer is the sender; it should be the smart account's owner")
        write_json(
            signer.sign_user_operation(user_op, entry_point, config.chain_id).to_json(),
            parsed_args.output,
        )
    else:
        transaction = Transaction.from_json(data)
        tx_hash = transaction.encode_hash(config.chain_id)
        logging.info(f"Transaction hash 0x{tx_hash.hex()}")
        if signer is None:
            print(f"0x{tx_hash.hex()}")
            return
        write_json(
            signer.sign_transaction(transaction, config.chain_id).to_json(), parsed_args.output
        )


class Test(unittest.TestCase):
    def setUp(self):
        self.owner = Account.generate()
        self.directory = tempfile.TemporaryDirectory()
        self.key_path = os.path.join(self.directory.name, "key.txt")
        with open(self.key_path, "w") as file:
            file.write(str(self.owner.private_key))

    def tearDown(self):
        self.directory.cleanup()

    def write(self, data: Dict[str, Any]) -> str:
        path = os.path.join(self.directory.name, "input.json")
        with open(path, "w") as file:
            json.dump(data, file)
        return path

    def test_hash_user_op(self):
        config = get_config(31337)
        user_op = PackedUserOperation.build(
            AccountAddress.from_int(0xAA), 3, CallDescriptor(AccountAddress.from_int(0xBB)).encode()
        )
        output = StringIO()
        with redirect_stdout(output):
            main(["hash-user-op", "--input", self.write(user_op.to_json()), "--chain-id", "31337"])
        self.assertEqual(
            output.getvalue().strip(),
            f"0x{user_op.hash(config.entry_point, 31337).hex()}",
        )

    def test_sign_user_op(self):
        entry_point = AccountAddress.from_int(0xE7)
        user_op = PackedUserOperation.build(AccountAddress.from_int(0xAA), 0, b"")
        signed_path = os.path.join(self.directory.name, "signed.json")
        main(
            [
                "sign-user-op",
                "--input",
                self.write(user_op.to_json()),
                "--private-key-path",
                self.key_path,
                "--chain-id",
                "31337",
                "--entry-point",
                str(entry_point),
                "--output",
                signed_path,
            ]
        )
        signed = PackedUserOperation.from_json(read_json(signed_path))
        digest = secp256k1_ecdsa.to_eth_signed_message_hash(user_op.hash(entry_point, 31337))
        self.assertEqual(
            secp256k1_ecdsa.try_recover(digest, signed.signature), self.owner.address()
        )

    def test_sign_transaction(self):
        transaction = Transaction.build(
            AccountAddress.from_int(0xAA), AccountAddress.from_int(0xBB), 0, data=keccak(b"x")
        )
        output = StringIO()
        with redirect_stdout(output):
            main(
                [
                    "sign-transaction",
                    "--input",
                    self.write(transaction.to_json()),
                    "--private-key-path",
                    self.key_path,
                    "--chain-id",
                    str(ZKSYNC_SEPOLIA_CHAIN_ID),
                ]
            )
        signed = Transaction.from_json(json.loads(output.getvalue()))
        self.assertEqual(
            secp256k1_ecdsa.try_recover(
                transaction.encode_hash(ZKSYNC_SEPOLIA_CHAIN_ID), signed.signature
            ),
            self.owner.address(),
        )

    def test_missing_private_key(self):
        with self.assertRaises(SystemExit):
            main(["sign-transaction", "--input", self.write({}), "--chain-id", "300"])


def console_main():
    main(sys.argv[1:])


if __name__ == "__main__":
    console_main()
