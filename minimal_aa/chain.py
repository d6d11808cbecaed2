# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Deterministic in-process host for running account contracts.

The smart-account core is a contract: it is only ever entered through a call
carrying a sender, an amount of native value and ABI-encoded calldata, and it
relies on the host to make every call atomic. This module provides exactly
that host and nothing more:

- **State**: native balances, per-contract storage, deployed code, event logs
  and per-sender transaction nonces.
- **Call frames**: :meth:`Chain.call` snapshots the state, transfers value,
  dispatches calldata to the target contract and either commits or restores
  the snapshot. The result is a :class:`CallResult` carrying the success flag
  and the returned bytes, the same shape as a low-level EVM ``call``.
- **Transactions**: :meth:`Chain.transact` is a top-level call that re-raises
  the original :class:`Revert` of a failed frame so callers can branch on
  error types.
- **Contracts**: subclasses of :class:`Contract` declare external functions
  with the :func:`external` decorator; dispatch, payability and ABI decoding
  are handled by the base class.

Examples:
    Declaring and calling a contract::

        class Counter(Contract):
            @external("increment", outputs=("uint256",))
            def increment(self, msg: Message) -> int:
                self.storage["count"] = self.storage.get("count", 0) + 1
                return self.storage["count"]

        chain = Chain()
        counter = chain.deploy(alice, Counter)
        chain.invoke(alice, counter, "increment")  # -> 1

Note:
    Execution is single-threaded. A frame runs to completion (commit or full
    rollback) before control returns to its caller, and nested frames roll
    back independently of the frame that called them.
"""

from __future__ import annotations

import copy
import logging
import typing
import unittest
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from . import abi
from .account_address import ZERO, AccountAddress

LOCAL_CHAIN_ID = 31337
MAX_CALL_DEPTH = 1024


class Revert(Exception):
    """Abort the current call frame.

    Attributes:
        data: Raw revert data returned to the caller of the frame.
    """

    data: bytes

    def __init__(self, data: bytes = b""):
        super().__init__(data)
        self.data = data


class ContractError(Revert):
    """A Solidity-style custom error, ``Name(types)``.

    Subclasses declare ``abi_inputs`` (and optionally ``abi_name``); the
    positional constructor arguments are the error values.
    """

    abi_name: Optional[str] = None
    abi_inputs: Tuple[abi.ParamSpec, ...] = ()

    values: Tuple[Any, ...]

    def __init__(self, *values: Any):
        self.values = values
        super().__init__(abi.encode_error(self.error_name(), self.abi_inputs, values))

    @classmethod
    def error_name(cls) -> str:
        return cls.abi_name or cls.__name__

    @classmethod
    def selector(cls) -> bytes:
        return abi.Function(cls.error_name(), cls.abi_inputs).selector

    def __str__(self) -> str:
        return f"{self.error_name()}({', '.join(str(value) for value in self.values)})"


class Reason(ContractError):
    """Revert with a plain reason string, ``Error(string)``."""

    abi_name = "Error"
    abi_inputs = ("string",)


@dataclass(frozen=True)
class Message:
    """The context a contract function is entered with."""

    sender: AccountAddress
    value: int = 0
    data: bytes = b""
    is_system: bool = False


@dataclass(frozen=True)
class CallResult:
    """Outcome of a call frame: success flag and returned (or revert) bytes."""

    success: bool
    return_data: bytes = b""
    error: Optional[Revert] = None


@dataclass(frozen=True)
class Log:
    address: AccountAddress
    event: str
    args: Dict[str, Any] = field(default_factory=dict)


def external(
    name: str,
    inputs: typing.Sequence[abi.ParamSpec] = (),
    outputs: typing.Sequence[abi.ParamSpec] = (),
    payable: bool = False,
) -> Callable:
    """Mark a contract method as an externally callable function.

    The decorated method is called as ``method(msg, *decoded_args)`` and its
    return value is ABI-encoded according to ``outputs``.
    """

    def decorate(method: Callable) -> Callable:
        method.__abi__ = abi.Function(name, inputs, outputs, payable)  # type: ignore[attr-defined]
        return method

    return decorate


class Contract:
    """Base class of every contract running on a :class:`Chain`.

    Attributes:
        chain: The host the contract is deployed on.
        address: The contract's address.
        functions: Selector to (function, method name) table, built per class.
        constructor_inputs: ABI specs of the constructor arguments, used when
            the contract is deployed from encoded constructor input.
    """

    functions: Dict[bytes, Tuple[abi.Function, str]] = {}
    constructor_inputs: Tuple[abi.ParamSpec, ...] = ()

    chain: Chain
    address: AccountAddress

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        functions: Dict[bytes, Tuple[abi.Function, str]] = {}
        for attr in dir(cls):
            function = getattr(getattr(cls, attr, None), "__abi__", None)
            if isinstance(function, abi.Function):
                functions[function.selector] = (function, attr)
        cls.functions = functions

    def __init__(self, chain: Chain, address: AccountAddress):
        self.chain = chain
        self.address = address

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address})"

    @classmethod
    def function(cls, name: str) -> abi.Function:
        for function, _ in cls.functions.values():
            if function.name == name:
                return function
        raise KeyError(f"{cls.__name__} has no external function {name}")

    @classmethod
    def bytecode_hash(cls) -> bytes:
        """Stable 32-byte identifier of this contract's code."""
        return keccak(text=f"{cls.__module__}.{cls.__qualname__}")

    @property
    def storage(self) -> Dict[str, Any]:
        return self.chain.state.storage.setdefault(self.address, {})

    @property
    def balance(self) -> int:
        return self.chain.balance_of(self.address)

    def constructor(self, msg: Message, *args: Any):
        pass

    def receive(self, msg: Message):
        # No receive function: plain value transfers are rejected.
        raise Revert()

    def call(
        self, to: AccountAddress, value: int = 0, data: bytes = b"", is_system: bool = False
    ) -> CallResult:
        """Perform a call from this contract and capture its outcome."""
        return self.chain.call(self.address, to, value, data, is_system)

    def emit(self, event: str, **args: Any):
        self.chain.state.logs.append(Log(self.address, event, args))

    def handle(self, msg: Message) -> bytes:
        if not msg.data:
            self.receive(msg)
            return b""

        entry = type(self).functions.get(msg.data[:4])
        if entry is None:
            logging.debug(f"{self}: unknown selector 0x{msg.data[:4].hex()}")
            raise Revert()
        function, attr = entry
        if msg.value and not function.payable:
            raise Revert()
        try:
            args = function.decode_input(msg.data[4:])
        except DecodingError as e:
            logging.debug(f"{self}: malformed calldata for {function.signature}: {e}")
            raise Revert()
        result = getattr(self, attr)(msg, *args)
        return function.encode_output(result)


@dataclass
class State:
    balances: Dict[AccountAddress, int] = field(default_factory=dict)
    storage: Dict[AccountAddress, Dict[str, Any]] = field(default_factory=dict)
    code: Dict[AccountAddress, Contract] = field(default_factory=dict)
    nonces: Dict[AccountAddress, int] = field(default_factory=dict)
    logs: List[Log] = field(default_factory=list)

    def snapshot(self) -> State:
        return State(
            balances=dict(self.balances),
            storage=copy.deepcopy(self.storage),
            code=dict(self.code),
            nonces=dict(self.nonces),
            logs=list(self.logs),
        )


class Chain:
    """An in-process EVM-style host.

    Attributes:
        chain_id: Chain id used by envelope hashing.
        state: The current world state.
        known_code: Contract classes addressable by bytecode hash, the
            equivalent of published factory dependencies.
    """

    chain_id: int
    state: State
    known_code: Dict[bytes, Type[Contract]]

    def __init__(self, chain_id: int = LOCAL_CHAIN_ID):
        self.chain_id = chain_id
        self.state = State()
        self.known_code = {}
        self._depth = 0

    def balance_of(self, address: AccountAddress) -> int:
        return self.state.balances.get(address, 0)

    def set_balance(self, address: AccountAddress, amount: int):
        """Overwrite a balance, for funding accounts in tests and examples."""
        self.state.balances[address] = amount

    def code_at(self, address: AccountAddress) -> Optional[Contract]:
        return self.state.code.get(address)

    def nonce_of(self, address: AccountAddress) -> int:
        return self.state.nonces.get(address, 0)

    def logs(self, address: Optional[AccountAddress] = None, event: Optional[str] = None) -> List[Log]:
        return [
            log
            for log in self.state.logs
            if (address is None or log.address == address)
            and (event is None or log.event == event)
        ]

    def register_code(self, cls: Type[Contract]) -> bytes:
        """Make ``cls`` deployable by bytecode hash and return the hash."""
        bytecode_hash = cls.bytecode_hash()
        self.known_code[bytecode_hash] = cls
        return bytecode_hash

    def install(
        self,
        address: AccountAddress,
        cls: Type[Contract],
        deployer: AccountAddress,
        args: typing.Sequence[Any] = (),
        value: int = 0,
    ) -> Contract:
        """Create ``cls`` at ``address`` inside the current frame.

        Raises:
            Revert: If code already exists at ``address``, the deployer
                cannot fund ``value``, or the constructor reverts.
        """
        if address in self.state.code:
            raise Reason(f"Code already deployed at {address}")
        self._transfer(deployer, address, value)
        contract = cls(self, address)
        self.state.code[address] = contract
        contract.constructor(Message(deployer, value), *args)
        logging.debug(f"Deployed {contract} from {deployer}")
        return contract

    def deploy(
        self,
        deployer: AccountAddress,
        cls: Type[Contract],
        *args: Any,
        value: int = 0,
        address: Optional[AccountAddress] = None,
    ) -> Any:
        """Deploy a contract in its own transaction.

        The address follows the ``CREATE`` scheme from the deployer's nonce
        unless an explicit ``address`` is given (system contracts, canonical
        singletons).

        Raises:
            Revert: The original error if deployment fails; state is unchanged.
        """
        if address is None:
            address = AccountAddress.for_create(deployer, self.nonce_of(deployer))
        self.state.nonces[deployer] = self.nonce_of(deployer) + 1

        snapshot = self.state.snapshot()
        try:
            return self.install(address, cls, deployer, args, value)
        except Revert:
            self.state = snapshot
            raise

    def _transfer(self, sender: AccountAddress, to: AccountAddress, value: int):
        if value < 0:
            raise Revert()
        if value == 0:
            return
        balance = self.balance_of(sender)
        if balance < value:
            raise Revert()
        self.state.balances[sender] = balance - value
        self.state.balances[to] = self.balance_of(to) + value

    def call(
        self,
        sender: AccountAddress,
        to: AccountAddress,
        value: int = 0,
        data: bytes = b"",
        is_system: bool = False,
    ) -> CallResult:
        """Run one call frame and capture its outcome.

        Value is moved first; a call to an address without code is a plain
        transfer. Any :class:`Revert` raised inside the frame (including by
        nested frames that were re-raised) restores the state to what it was
        when the frame started. Any other exception also restores the state
        and propagates unchanged.

        Returns:
            ``CallResult(True, return_data)`` on success, or
            ``CallResult(False, revert_data, error)`` on failure.
        """
        if self._depth >= MAX_CALL_DEPTH:
            return CallResult(False, b"", Revert())

        snapshot = self.state.snapshot()
        self._depth += 1
        try:
            self._transfer(sender, to, value)
            contract = self.state.code.get(to)
            output = b"" if contract is None else contract.handle(Message(sender, value, data, is_system))
        except Revert as error:
            self.state = snapshot
            logging.debug(f"Call {sender} -> {to} reverted: 0x{error.data.hex()}")
            return CallResult(False, error.data, error)
        except Exception:
            self.state = snapshot
            raise
        finally:
            self._depth -= 1
        return CallResult(True, output)

    def transact(
        self, sender: AccountAddress, to: AccountAddress, value: int = 0, data: bytes = b""
    ) -> bytes:
        """Submit a top-level transaction.

        Returns:
            The return data of the call.

        Raises:
            Revert: The original error object of the failed frame.
        """
        snapshot = self.state.snapshot()
        self.state.nonces[sender] = self.nonce_of(sender) + 1
        try:
            result = self.call(sender, to, value, data)
        except Exception:
            self.state = snapshot
            raise
        if not result.success:
            raise result.error if result.error is not None else Revert(result.return_data)
        return result.return_data

    def invoke(
        self, sender: AccountAddress, contract: Contract, name: str, *args: Any, value: int = 0
    ) -> Any:
        """Encode, transact and decode a call to ``contract.name(*args)``."""
        function = contract.function(name)
        output = self.transact(sender, contract.address, value, function.encode_input(*args))
        return function.decode_output(output)

    def view(self, contract: Contract, name: str, *args: Any, sender: AccountAddress = ZERO) -> Any:
        """Call ``contract.name(*args)`` and discard every state change."""
        function = contract.function(name)
        snapshot = self.state.snapshot()
        try:
            result = self.call(sender, contract.address, 0, function.encode_input(*args))
        finally:
            self.state = snapshot
        if not result.success:
            raise result.error if result.error is not None else Revert(result.return_data)
        return function.decode_output(result.return_data)


class Test(unittest.TestCase):
    class Store(Contract):
        class Broken(ContractError):
            abi_inputs = ("uint256",)

        @external("set", inputs=("uint256",))
        def set(self, msg: Message, value: int):
            self.storage["value"] = value
            self.emit("Set", value=value)

        @external("get", outputs=("uint256",))
        def get(self, msg: Message) -> int:
            return self.storage.get("value", 0)

        @external("setThenFail", inputs=("uint256",))
        def set_then_fail(self, msg: Message, value: int):
            self.storage["value"] = value
            raise Test.Store.Broken(value)

        @external("setThenCrash", inputs=("uint256",))
        def set_then_crash(self, msg: Message, value: int):
            self.storage["value"] = value
            raise RuntimeError("crash")

        @external("deposit", payable=True)
        def deposit(self, msg: Message):
            pass

        @external("forward", inputs=("address", "bytes"), outputs=("bool", "bytes"))
        def forward(self, msg: Message, to: AccountAddress, data: bytes):
            self.storage["forwarded"] = True
            result = self.call(to, 0, data)
            return (result.success, result.return_data)

    def setUp(self):
        self.chain = Chain()
        self.alice = AccountAddress.from_int(0xA11CE)
        self.chain.set_balance(self.alice, 1_000)
        self.store = self.chain.deploy(self.alice, Test.Store)

    def test_deploy_uses_create_addresses(self):
        self.assertEqual(self.store.address, AccountAddress.for_create(self.alice, 0))
        second = self.chain.deploy(self.alice, Test.Store)
        self.assertEqual(second.address, AccountAddress.for_create(self.alice, 1))
        self.assertIs(self.chain.code_at(second.address), second)

    def test_invoke_and_view(self):
        self.chain.invoke(self.alice, self.store, "set", 7)
        self.assertEqual(self.chain.view(self.store, "get"), 7)
        self.assertEqual(self.chain.logs(self.store.address, "Set")[0].args, {"value": 7})

    def test_failed_transaction_rolls_back(self):
        self.chain.invoke(self.alice, self.store, "set", 1)
        with self.assertRaises(Test.Store.Broken) as cm:
            self.chain.invoke(self.alice, self.store, "setThenFail", 2)
        self.assertEqual(cm.exception.values, (2,))
        self.assertEqual(self.chain.view(self.store, "get"), 1)

    def test_unexpected_error_rolls_back(self):
        self.chain.invoke(self.alice, self.store, "set", 1)
        nonce = self.chain.nonce_of(self.alice)
        with self.assertRaises(RuntimeError):
            self.chain.invoke(self.alice, self.store, "setThenCrash", 2)
        self.assertEqual(self.chain.view(self.store, "get"), 1)
        self.assertEqual(self.chain.nonce_of(self.alice), nonce)

    def test_nested_failure_is_captured(self):
        other = self.chain.deploy(self.alice, Test.Store)
        data = Test.Store.function("setThenFail").encode_input(9)
        success, return_data = self.chain.invoke(
            self.alice, self.store, "forward", other.address, data
        )
        self.assertFalse(success)
        self.assertEqual(return_data, Test.Store.Broken(9).data)
        self.assertEqual(self.chain.view(other, "get"), 0)
        # The outer frame committed
        self.assertTrue(self.store.storage["forwarded"])

    def test_value_transfers(self):
        bob = AccountAddress.from_int(0xB0B)
        self.chain.transact(self.alice, bob, 100)
        self.assertEqual(self.chain.balance_of(bob), 100)
        self.assertEqual(self.chain.balance_of(self.alice), 900)

        with self.assertRaises(Revert):
            self.chain.transact(self.alice, bob, 10_000)
        self.assertEqual(self.chain.balance_of(bob), 100)

    def test_payability(self):
        self.chain.invoke(self.alice, self.store, "deposit", value=10)
        self.assertEqual(self.store.balance, 10)
        with self.assertRaises(Revert):
            self.chain.invoke(self.alice, self.store, "set", 1, value=1)
        # No receive function
        with self.assertRaises(Revert):
            self.chain.transact(self.alice, self.store.address, 1)

    def test_unknown_selector_and_bad_calldata(self):
        with self.assertRaises(Revert):
            self.chain.transact(self.alice, self.store.address, 0, b"\xde\xad\xbe\xef")
        selector = Test.Store.function("set").selector
        with self.assertRaises(Revert):
            self.chain.transact(self.alice, self.store.address, 0, selector + b"\x01")

    def test_registered_code(self):
        bytecode_hash = self.chain.register_code(Test.Store)
        self.assertIs(self.chain.known_code[bytecode_hash], Test.Store)
        self.assertEqual(len(bytecode_hash), 32)
