# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Operation envelopes accepted by the smart accounts.

Two envelope shapes exist, one per host environment:

- :class:`PackedUserOperation` is the ERC-4337 v0.7 user operation handed to
  ``validateUserOp`` by an entry point. Its canonical hash commits to every
  field except the signature, to the entry point address and to the chain id.
- :class:`Transaction` is the zkSync type-113 (EIP-712) transaction handed to
  ``validateTransaction`` by the bootloader. Its canonical hash is the EIP-712
  digest over the ``zkSync`` v2 domain.

Both carry a call: the user operation in its ``callData`` (an ABI-encoded
``execute(address,uint256,bytes)``, see :class:`CallDescriptor`), the
transaction directly in ``to``, ``value`` and ``data``.

Gas and fee fields are opaque to the account. They only matter to the
privileged caller's accounting and, for the bootloader, to the balance the
account must hold (:meth:`Transaction.total_required_balance`).

Examples:
    Building and hashing a user operation::

        call = CallDescriptor(token, 0, mint_calldata)
        op = PackedUserOperation.build(sender=account, nonce=0, call_data=call.encode())
        op_hash = op.hash(entry_point, chain_id)

    Building and hashing a bootloader transaction::

        tx = Transaction.build(sender=account, to=token, nonce=0, data=mint_calldata)
        tx_hash = tx.encode_hash(chain_id)
"""

from __future__ import annotations

import dataclasses
import typing
import unittest
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from eth_abi import encode
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from . import abi
from .account_address import ZERO, AccountAddress

EXECUTE_FUNCTION = abi.Function("execute", ("address", "uint256", "bytes"), ("bytes",))

# Gas defaults used when assembling operations for tests and local chains.
DEFAULT_VERIFICATION_GAS_LIMIT = 16_777_216
DEFAULT_CALL_GAS_LIMIT = DEFAULT_VERIFICATION_GAS_LIMIT
DEFAULT_MAX_PRIORITY_FEE_PER_GAS = 256
DEFAULT_MAX_FEE_PER_GAS = DEFAULT_MAX_PRIORITY_FEE_PER_GAS
DEFAULT_GAS_PER_PUBDATA_BYTE_LIMIT = 50_000

EIP712_TX_TYPE = 0x71
EIP712_DOMAIN_TYPEHASH = keccak(text="EIP712Domain(string name,string version,uint256 chainId)")
EIP712_TRANSACTION_TYPEHASH = keccak(
    text="Transaction(uint256 txType,uint256 from,uint256 to,uint256 gasLimit,"
    "uint256 gasPerPubdataByteLimit,uint256 maxFeePerGas,uint256 maxPriorityFeePerGas,"
    "uint256 paymaster,uint256 nonce,uint256 value,bytes data,bytes32[] factoryDeps,"
    "bytes paymasterInput)"
)


def pack_uint128_pair(high: int, low: int) -> bytes:
    """Pack two 128-bit values into one 32-byte word, ``high`` first."""
    return ((high << 128) | low).to_bytes(32, "big")


def unpack_uint128_pair(word: bytes) -> Tuple[int, int]:
    value = int.from_bytes(word, "big")
    return value >> 128, value & ((1 << 128) - 1)


def _hex(data: bytes) -> str:
    return f"0x{data.hex()}"


def _unhex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


@dataclass(frozen=True)
class CallDescriptor:
    """The ``{target, value, payload}`` triple an operation asks to execute."""

    target: AccountAddress
    value: int = 0
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode as ``execute(address,uint256,bytes)`` calldata."""
        return EXECUTE_FUNCTION.encode_input(self.target, self.value, self.payload)

    @staticmethod
    def decode(call_data: bytes) -> CallDescriptor:
        """Decode ``execute`` calldata.

        Raises:
            ValueError: If ``call_data`` is not an ``execute`` call.
        """
        if call_data[:4] != EXECUTE_FUNCTION.selector:
            raise ValueError("callData is not an execute(address,uint256,bytes) call")
        target, value, payload = EXECUTE_FUNCTION.decode_input(call_data[4:])
        return CallDescriptor(target, value, payload)


@dataclass
class PackedUserOperation:
    """ERC-4337 v0.7 packed user operation.

    ``account_gas_limits`` packs ``verificationGasLimit`` (high 128 bits) and
    ``callGasLimit`` (low 128 bits); ``gas_fees`` packs
    ``maxPriorityFeePerGas`` (high) and ``maxFeePerGas`` (low).
    """

    ABI_TYPE: typing.ClassVar[str] = (
        "(address,uint256,bytes,bytes,bytes32,uint256,bytes32,bytes,bytes)"
    )

    sender: AccountAddress
    nonce: int = 0
    init_code: bytes = b""
    call_data: bytes = b""
    account_gas_limits: bytes = b"\x00" * 32
    pre_verification_gas: int = 0
    gas_fees: bytes = b"\x00" * 32
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @staticmethod
    def build(
        sender: AccountAddress,
        nonce: int,
        call_data: bytes,
        verification_gas_limit: int = DEFAULT_VERIFICATION_GAS_LIMIT,
        call_gas_limit: int = DEFAULT_CALL_GAS_LIMIT,
        max_priority_fee_per_gas: int = DEFAULT_MAX_PRIORITY_FEE_PER_GAS,
        max_fee_per_gas: int = DEFAULT_MAX_FEE_PER_GAS,
        pre_verification_gas: typing.Optional[int] = None,
    ) -> PackedUserOperation:
        """Assemble an unsigned user operation with packed gas fields."""
        return PackedUserOperation(
            sender=sender,
            nonce=nonce,
            call_data=call_data,
            account_gas_limits=pack_uint128_pair(verification_gas_limit, call_gas_limit),
            pre_verification_gas=(
                verification_gas_limit if pre_verification_gas is None else pre_verification_gas
            ),
            gas_fees=pack_uint128_pair(max_priority_fee_per_gas, max_fee_per_gas),
        )

    @property
    def verification_gas_limit(self) -> int:
        return unpack_uint128_pair(self.account_gas_limits)[0]

    @property
    def call_gas_limit(self) -> int:
        return unpack_uint128_pair(self.account_gas_limits)[1]

    @property
    def max_priority_fee_per_gas(self) -> int:
        return unpack_uint128_pair(self.gas_fees)[0]

    @property
    def max_fee_per_gas(self) -> int:
        return unpack_uint128_pair(self.gas_fees)[1]

    def required_prefund(self) -> int:
        """Maximum fee the operation can cost, reserved before validation."""
        gas = self.verification_gas_limit + self.call_gas_limit + self.pre_verification_gas
        return gas * self.max_fee_per_gas

    def call(self) -> CallDescriptor:
        return CallDescriptor.decode(self.call_data)

    def with_signature(self, signature: bytes) -> PackedUserOperation:
        return dataclasses.replace(self, signature=signature)

    def pack(self) -> bytes:
        """ABI-encode every authorization-relevant field (no signature)."""
        return encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                self.sender.address,
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                self.account_gas_limits,
                self.pre_verification_gas,
                self.gas_fees,
                keccak(self.paymaster_and_data),
            ],
        )

    def hash(self, entry_point: AccountAddress, chain_id: int) -> bytes:
        """Canonical user operation hash, as ``EntryPoint.getUserOpHash`` computes it."""
        return keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [keccak(self.pack()), entry_point.address, chain_id],
            )
        )

    def to_abi(self) -> Tuple[Any, ...]:
        return (
            self.sender.address,
            self.nonce,
            self.init_code,
            self.call_data,
            self.account_gas_limits,
            self.pre_verification_gas,
            self.gas_fees,
            self.paymaster_and_data,
            self.signature,
        )

    @staticmethod
    def from_abi(value: Tuple[Any, ...]) -> PackedUserOperation:
        return PackedUserOperation(
            sender=AccountAddress.from_str_relaxed(value[0]),
            nonce=value[1],
            init_code=value[2],
            call_data=value[3],
            account_gas_limits=value[4],
            pre_verification_gas=value[5],
            gas_fees=value[6],
            paymaster_and_data=value[7],
            signature=value[8],
        )

    def to_json(self) -> Dict[str, Any]:
        """RPC-shaped representation (camelCase keys, hex values)."""
        return {
            "sender": str(self.sender),
            "nonce": hex(self.nonce),
            "initCode": _hex(self.init_code),
            "callData": _hex(self.call_data),
            "accountGasLimits": _hex(self.account_gas_limits),
            "preVerificationGas": hex(self.pre_verification_gas),
            "gasFees": _hex(self.gas_fees),
            "paymasterAndData": _hex(self.paymaster_and_data),
            "signature": _hex(self.signature),
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> PackedUserOperation:
        """Parse :meth:`to_json` output.

        Raises:
            KeyError: If ``sender`` is missing.
            ValueError: If a field is not valid hex.
        """
        return PackedUserOperation(
            sender=AccountAddress.from_str_relaxed(data["sender"]),
            nonce=int(data.get("nonce", "0x0"), 16),
            init_code=_unhex(data.get("initCode", "0x")),
            call_data=_unhex(data.get("callData", "0x")),
            account_gas_limits=_unhex(data.get("accountGasLimits", _hex(b"\x00" * 32))),
            pre_verification_gas=int(data.get("preVerificationGas", "0x0"), 16),
            gas_fees=_unhex(data.get("gasFees", _hex(b"\x00" * 32))),
            paymaster_and_data=_unhex(data.get("paymasterAndData", "0x")),
            signature=_unhex(data.get("signature", "0x")),
        )


@dataclass
class Transaction:
    """zkSync transaction as passed by the bootloader to account hooks.

    Addresses are carried as ``uint256`` words on the wire; on the Python side
    they are :class:`AccountAddress` values.
    """

    ABI_TYPE: typing.ClassVar[str] = (
        "(uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256,"
        "uint256,uint256[4],bytes,bytes,bytes32[],bytes,bytes)"
    )

    sender: AccountAddress
    to: AccountAddress
    nonce: int = 0
    value: int = 0
    data: bytes = b""
    tx_type: int = EIP712_TX_TYPE
    gas_limit: int = DEFAULT_VERIFICATION_GAS_LIMIT
    gas_per_pubdata_byte_limit: int = DEFAULT_GAS_PER_PUBDATA_BYTE_LIMIT
    max_fee_per_gas: int = DEFAULT_MAX_FEE_PER_GAS
    max_priority_fee_per_gas: int = DEFAULT_MAX_PRIORITY_FEE_PER_GAS
    paymaster: AccountAddress = ZERO
    reserved: Tuple[int, int, int, int] = (0, 0, 0, 0)
    signature: bytes = b""
    factory_deps: List[bytes] = field(default_factory=list)
    paymaster_input: bytes = b""
    reserved_dynamic: bytes = b""

    @staticmethod
    def build(
        sender: AccountAddress,
        to: AccountAddress,
        nonce: int,
        value: int = 0,
        data: bytes = b"",
        factory_deps: typing.Optional[List[bytes]] = None,
    ) -> Transaction:
        """Assemble an unsigned type-113 transaction with default fee fields."""
        return Transaction(
            sender=sender,
            to=to,
            nonce=nonce,
            value=value,
            data=data,
            factory_deps=list(factory_deps or []),
        )

    def fee_amount(self) -> int:
        """Fee the account pays the bootloader, ``maxFeePerGas * gasLimit``."""
        return self.max_fee_per_gas * self.gas_limit

    def total_required_balance(self) -> int:
        """Balance the account must hold: value plus fees unless a paymaster pays."""
        if not self.paymaster.is_zero():
            return self.value
        return self.fee_amount() + self.value

    def call(self) -> CallDescriptor:
        return CallDescriptor(self.to, self.value, self.data)

    def with_signature(self, signature: bytes) -> Transaction:
        return dataclasses.replace(self, signature=signature)

    @staticmethod
    def domain_separator(chain_id: int) -> bytes:
        return keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256"],
                [EIP712_DOMAIN_TYPEHASH, keccak(text="zkSync"), keccak(text="2"), chain_id],
            )
        )

    def struct_hash(self) -> bytes:
        return keccak(
            encode(
                ["bytes32"] + ["uint256"] * 10 + ["bytes32"] * 3,
                [
                    EIP712_TRANSACTION_TYPEHASH,
                    self.tx_type,
                    self.sender.to_int(),
                    self.to.to_int(),
                    self.gas_limit,
                    self.gas_per_pubdata_byte_limit,
                    self.max_fee_per_gas,
                    self.max_priority_fee_per_gas,
                    self.paymaster.to_int(),
                    self.nonce,
                    self.value,
                    keccak(self.data),
                    keccak(b"".join(self.factory_deps)),
                    keccak(self.paymaster_input),
                ],
            )
        )

    def encode_hash(self, chain_id: int) -> bytes:
        """Canonical EIP-712 digest of the transaction (signature excluded)."""
        return keccak(b"\x19\x01" + Transaction.domain_separator(chain_id) + self.struct_hash())

    def to_abi(self) -> Tuple[Any, ...]:
        return (
            self.tx_type,
            self.sender.to_int(),
            self.to.to_int(),
            self.gas_limit,
            self.gas_per_pubdata_byte_limit,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster.to_int(),
            self.nonce,
            self.value,
            list(self.reserved),
            self.data,
            self.signature,
            list(self.factory_deps),
            self.paymaster_input,
            self.reserved_dynamic,
        )

    @staticmethod
    def from_abi(value: Tuple[Any, ...]) -> Transaction:
        return Transaction(
            tx_type=value[0],
            sender=AccountAddress.from_int(value[1]),
            to=AccountAddress.from_int(value[2]),
            gas_limit=value[3],
            gas_per_pubdata_byte_limit=value[4],
            max_fee_per_gas=value[5],
            max_priority_fee_per_gas=value[6],
            paymaster=AccountAddress.from_int(value[7]),
            nonce=value[8],
            value=value[9],
            reserved=tuple(value[10]),
            data=value[11],
            signature=value[12],
            factory_deps=list(value[13]),
            paymaster_input=value[14],
            reserved_dynamic=value[15],
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "txType": self.tx_type,
            "from": str(self.sender),
            "to": str(self.to),
            "gasLimit": self.gas_limit,
            "gasPerPubdataByteLimit": self.gas_per_pubdata_byte_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "paymaster": str(self.paymaster),
            "nonce": self.nonce,
            "value": self.value,
            "reserved": list(self.reserved),
            "data": _hex(self.data),
            "signature": _hex(self.signature),
            "factoryDeps": [_hex(dep) for dep in self.factory_deps],
            "paymasterInput": _hex(self.paymaster_input),
            "reservedDynamic": _hex(self.reserved_dynamic),
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> Transaction:
        return Transaction(
            tx_type=int(data.get("txType", EIP712_TX_TYPE)),
            sender=AccountAddress.from_str_relaxed(data["from"]),
            to=AccountAddress.from_str_relaxed(data["to"]),
            gas_limit=int(data.get("gasLimit", DEFAULT_VERIFICATION_GAS_LIMIT)),
            gas_per_pubdata_byte_limit=int(
                data.get("gasPerPubdataByteLimit", DEFAULT_GAS_PER_PUBDATA_BYTE_LIMIT)
            ),
            max_fee_per_gas=int(data.get("maxFeePerGas", DEFAULT_MAX_FEE_PER_GAS)),
            max_priority_fee_per_gas=int(
                data.get("maxPriorityFeePerGas", DEFAULT_MAX_PRIORITY_FEE_PER_GAS)
            ),
            paymaster=AccountAddress.from_str_relaxed(data.get("paymaster", "0x0")),
            nonce=int(data.get("nonce", 0)),
            value=int(data.get("value", 0)),
            reserved=tuple(data.get("reserved", (0, 0, 0, 0))),
            data=_unhex(data.get("data", "0x")),
            signature=_unhex(data.get("signature", "0x")),
            factory_deps=[_unhex(dep) for dep in data.get("factoryDeps", [])],
            paymaster_input=_unhex(data.get("paymasterInput", "0x")),
            reserved_dynamic=_unhex(data.get("reservedDynamic", "0x")),
        )


class Test(unittest.TestCase):
    def setUp(self):
        self.sender = AccountAddress.from_int(0x5E7DE4)
        self.target = AccountAddress.from_int(0x7A46E7)
        self.entry_point = AccountAddress.from_str("0x0000000071727De22E5E9d8BAf0edAc6f37da032")

    def test_call_descriptor(self):
        call = CallDescriptor(self.target, 3, b"\xca\xfe")
        self.assertEqual(CallDescriptor.decode(call.encode()), call)
        with self.assertRaises(ValueError):
            CallDescriptor.decode(b"\x00\x00\x00\x00")

    def test_packed_gas_fields(self):
        op = PackedUserOperation.build(
            self.sender, 0, b"", verification_gas_limit=100, call_gas_limit=200,
            max_priority_fee_per_gas=3, max_fee_per_gas=4,
        )
        self.assertEqual(op.verification_gas_limit, 100)
        self.assertEqual(op.call_gas_limit, 200)
        self.assertEqual(op.pre_verification_gas, 100)
        self.assertEqual(op.max_priority_fee_per_gas, 3)
        self.assertEqual(op.max_fee_per_gas, 4)
        self.assertEqual(op.required_prefund(), (100 + 200 + 100) * 4)

    def test_user_op_hash_excludes_signature(self):
        op = PackedUserOperation.build(self.sender, 1, CallDescriptor(self.target).encode())
        signed = op.with_signature(b"\x01" * 65)
        self.assertEqual(op.hash(self.entry_point, 1), signed.hash(self.entry_point, 1))
        self.assertNotEqual(op.hash(self.entry_point, 1), op.hash(self.entry_point, 2))
        self.assertNotEqual(
            op.hash(self.entry_point, 1), op.hash(AccountAddress.from_int(1), 1)
        )
        bumped = dataclasses.replace(op, nonce=2)
        self.assertNotEqual(op.hash(self.entry_point, 1), bumped.hash(self.entry_point, 1))

    def test_user_op_json(self):
        op = PackedUserOperation.build(self.sender, 7, b"\x01\x02").with_signature(b"\x03")
        self.assertEqual(PackedUserOperation.from_json(op.to_json()), op)

    def test_user_op_abi(self):
        op = PackedUserOperation.build(self.sender, 7, b"\x01\x02")
        function = abi.Function("f", (PackedUserOperation,))
        (decoded,) = function.decode_input(function.encode_input(op)[4:])
        self.assertEqual(decoded, op)

    def test_transaction_hash_matches_eip712(self):
        tx = Transaction.build(
            self.sender, self.target, nonce=4, value=9, data=b"\xab",
            factory_deps=[keccak(b"dep")],
        )
        chain_id = 300
        signable = encode_typed_data(
            full_message={
                "types": {
                    "EIP712Domain": [
                        {"name": "name", "type": "string"},
                        {"name": "version", "type": "string"},
                        {"name": "chainId", "type": "uint256"},
                    ],
                    "Transaction": [
                        {"name": "txType", "type": "uint256"},
                        {"name": "from", "type": "uint256"},
                        {"name": "to", "type": "uint256"},
                        {"name": "gasLimit", "type": "uint256"},
                        {"name": "gasPerPubdataByteLimit", "type": "uint256"},
                        {"name": "maxFeePerGas", "type": "uint256"},
                        {"name": "maxPriorityFeePerGas", "type": "uint256"},
                        {"name": "paymaster", "type": "uint256"},
                        {"name": "nonce", "type": "uint256"},
                        {"name": "value", "type": "uint256"},
                        {"name": "data", "type": "bytes"},
                        {"name": "factoryDeps", "type": "bytes32[]"},
                        {"name": "paymasterInput", "type": "bytes"},
                    ],
                },
                "primaryType": "Transaction",
                "domain": {"name": "zkSync", "version": "2", "chainId": chain_id},
                "message": {
                    "txType": tx.tx_type,
                    "from": tx.sender.to_int(),
                    "to": tx.to.to_int(),
                    "gasLimit": tx.gas_limit,
                    "gasPerPubdataByteLimit": tx.gas_per_pubdata_byte_limit,
                    "maxFeePerGas": tx.max_fee_per_gas,
                    "maxPriorityFeePerGas": tx.max_priority_fee_per_gas,
                    "paymaster": tx.paymaster.to_int(),
                    "nonce": tx.nonce,
                    "value": tx.value,
                    "data": tx.data,
                    "factoryDeps": tx.factory_deps,
                    "paymasterInput": tx.paymaster_input,
                },
            }
        )
        self.assertEqual(signable.header, Transaction.domain_separator(chain_id))
        self.assertEqual(signable.body, tx.struct_hash())
        self.assertEqual(
            tx.encode_hash(chain_id),
            keccak(b"\x19" + signable.version + signable.header + signable.body),
        )

    def test_transaction_hash_excludes_signature(self):
        tx = Transaction.build(self.sender, self.target, nonce=0)
        self.assertEqual(tx.encode_hash(1), tx.with_signature(b"\x01" * 65).encode_hash(1))

    def test_total_required_balance(self):
        tx = Transaction.build(self.sender, self.target, nonce=0, value=10)
        self.assertEqual(tx.total_required_balance(), tx.max_fee_per_gas * tx.gas_limit + 10)
        sponsored = dataclasses.replace(tx, paymaster=AccountAddress.from_int(0x9A7))
        self.assertEqual(sponsored.total_required_balance(), 10)

    def test_transaction_abi_and_json(self):
        tx = Transaction.build(
            self.sender, self.target, nonce=2, value=1, data=b"\x01",
            factory_deps=[keccak(b"dep")],
        ).with_signature(b"\x02" * 65)
        function = abi.Function("f", (Transaction,))
        (decoded,) = function.decode_input(function.encode_input(tx)[4:])
        self.assertEqual(decoded, tx)
        self.assertEqual(Transaction.from_json(tx.to_json()), tx)
