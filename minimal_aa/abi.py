# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Contract ABI encoding for calls, return values and custom errors.

Everything that crosses a call boundary on the host (calldata, return data,
revert data) is encoded with the Solidity contract ABI. This module wraps
eth-abi with the small amount of structure the host needs:

- :class:`Function` describes an external function (name, parameter and
  return types, payability) and owns the selector and the codecs.
- Parameter types are ABI type strings, struct classes (anything exposing
  ``ABI_TYPE``, ``to_abi()`` and ``from_abi()``), or a one-element list
  ``[StructClass]`` for a dynamic array of structs.
- ``address`` values are exchanged as :class:`AccountAddress` on the Python
  side and as 20 raw bytes on the wire.
- :func:`encode_error` builds custom-error revert data,
  ``selector(Name(types)) ++ abi.encode(values)``.

Examples:
    Encoding calldata::

        execute = Function("execute", ("address", "uint256", "bytes"), ("bytes",))
        calldata = execute.encode_input(target, 0, payload)
        target, value, payload = execute.decode_input(calldata[4:])

    Struct parameters::

        validate = Function(
            "validateUserOp", (PackedUserOperation, "bytes32", "uint256"), ("uint256",)
        )
"""

from __future__ import annotations

import typing
import unittest
from typing import Any, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector

from .account_address import AccountAddress

ERROR_STRING_SELECTOR = function_signature_to_4byte_selector("Error(string)")

ParamSpec = typing.Union[str, type, list]


def type_string(spec: ParamSpec) -> str:
    """Return the canonical ABI type string of a parameter spec."""
    if isinstance(spec, str):
        return spec
    if isinstance(spec, list):
        return f"{type_string(spec[0])}[]"
    return spec.ABI_TYPE


def to_abi_value(spec: ParamSpec, value: Any) -> Any:
    """Convert a Python-side value to what eth-abi expects for ``spec``."""
    if isinstance(spec, list):
        return [to_abi_value(spec[0], item) for item in value]
    if not isinstance(spec, str):
        return value.to_abi()
    if spec == "address":
        return value.address if isinstance(value, AccountAddress) else value
    if spec == "address[]":
        return [to_abi_value("address", item) for item in value]
    return value


def from_abi_value(spec: ParamSpec, value: Any) -> Any:
    """Convert a decoded eth-abi value back to its Python-side form."""
    if isinstance(spec, list):
        return [from_abi_value(spec[0], item) for item in value]
    if not isinstance(spec, str):
        return spec.from_abi(value)
    if spec == "address":
        return AccountAddress.from_str_relaxed(value)
    if spec == "address[]":
        return [AccountAddress.from_str_relaxed(item) for item in value]
    return value


def encode_values(specs: Sequence[ParamSpec], values: Sequence[Any]) -> bytes:
    return encode(
        [type_string(spec) for spec in specs],
        [to_abi_value(spec, value) for spec, value in zip(specs, values)],
    )


def decode_values(specs: Sequence[ParamSpec], data: bytes) -> Tuple[Any, ...]:
    raw = decode([type_string(spec) for spec in specs], data)
    return tuple(from_abi_value(spec, value) for spec, value in zip(specs, raw))


class Function:
    """An external contract function.

    Attributes:
        name: Function name.
        inputs: Parameter specs.
        outputs: Return value specs.
        payable: Whether the function accepts native value.
    """

    name: str
    inputs: Tuple[ParamSpec, ...]
    outputs: Tuple[ParamSpec, ...]
    payable: bool

    def __init__(
        self,
        name: str,
        inputs: Sequence[ParamSpec] = (),
        outputs: Sequence[ParamSpec] = (),
        payable: bool = False,
    ):
        self.name = name
        self.inputs = tuple(inputs)
        self.outputs = tuple(outputs)
        self.payable = payable

    def __repr__(self) -> str:
        return f"Function({self.signature})"

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(type_string(spec) for spec in self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode_input(self, *args: Any) -> bytes:
        if len(args) != len(self.inputs):
            raise TypeError(
                f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}"
            )
        return self.selector + encode_values(self.inputs, args)

    def decode_input(self, data: bytes) -> Tuple[Any, ...]:
        """Decode calldata arguments (without the selector)."""
        return decode_values(self.inputs, data)

    def encode_output(self, result: Any) -> bytes:
        if not self.outputs:
            return b""
        if len(self.outputs) == 1:
            return encode_values(self.outputs, [result])
        return encode_values(self.outputs, result)

    def decode_output(self, data: bytes) -> Any:
        """Decode return data; single values are unwrapped, no outputs gives None."""
        if not self.outputs:
            return None
        values = decode_values(self.outputs, data)
        if len(values) == 1:
            return values[0]
        return values


def encode_error(name: str, specs: Sequence[ParamSpec], values: Sequence[Any]) -> bytes:
    """Encode revert data for the custom error ``name(specs)``."""
    return Function(name, specs).encode_input(*values)


def decode_error_string(data: bytes) -> typing.Optional[str]:
    """Return the reason of ``Error(string)`` revert data, or None for other data."""
    if data[:4] != ERROR_STRING_SELECTOR:
        return None
    (reason,) = decode(["string"], data[4:])
    return reason


class Test(unittest.TestCase):
    def test_selector(self):
        transfer = Function("transfer", ("address", "uint256"), ("bool",))
        self.assertEqual(transfer.selector.hex(), "a9059cbb")
        self.assertEqual(transfer.signature, "transfer(address,uint256)")

    def test_call_round_trip(self):
        execute = Function("execute", ("address", "uint256", "bytes"), ("bytes",))
        target = AccountAddress.from_int(0xBEEF)
        calldata = execute.encode_input(target, 5, b"\x01\x02")

        self.assertEqual(calldata[:4], execute.selector)
        self.assertEqual(execute.decode_input(calldata[4:]), (target, 5, b"\x01\x02"))
        self.assertEqual(execute.decode_output(execute.encode_output(b"ok")), b"ok")

    def test_argument_count_is_checked(self):
        with self.assertRaises(TypeError):
            Function("f", ("uint256",)).encode_input()

    def test_no_outputs(self):
        function = Function("f")
        self.assertEqual(function.encode_output(None), b"")
        self.assertIsNone(function.decode_output(b""))

    def test_error_string(self):
        data = encode_error("Error", ("string",), ("boom",))
        self.assertEqual(data[:4], ERROR_STRING_SELECTOR)
        self.assertEqual(decode_error_string(data), "boom")
        self.assertIsNone(decode_error_string(encode_error("Other", (), ())))
