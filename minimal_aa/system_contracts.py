# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
zkSync system contracts used by accounts running under the bootloader.

Only the surface the account relies on is provided:

- :class:`NonceHolder` keeps one minimum nonce per account and advances it
  with an atomic compare-and-increment.
- :class:`ContractDeployer` deploys registered code by bytecode hash with the
  zkSync ``create``/``create2`` address schemes.

Both only accept system calls (``Message.is_system``), the way the real
contracts require the ``isSystem`` call flag.
"""

from __future__ import annotations

import logging
import unittest
from typing import Dict

from eth_abi.exceptions import DecodingError

from . import abi
from .account_address import AccountAddress
from .chain import Chain, Contract, ContractError, Message, Reason, external

BOOTLOADER_FORMAL_ADDRESS = AccountAddress.from_int(0x8001)
NONCE_HOLDER_SYSTEM_CONTRACT = AccountAddress.from_int(0x8003)
CONTRACT_DEPLOYER_SYSTEM_CONTRACT = AccountAddress.from_int(0x8006)


class NotSystemCall(ContractError):
    """The call did not carry the system call flag."""


class NonceMismatch(ContractError):
    """``incrementMinNonceIfEquals`` was asked for a nonce other than the current one."""

    abi_inputs = ("uint256", "uint256")


class NonceHolder(Contract):
    def _min_nonces(self) -> Dict[AccountAddress, int]:
        return self.storage.setdefault("min_nonce", {})

    @external("getMinNonce", inputs=("address",), outputs=("uint256",))
    def get_min_nonce(self, msg: Message, address: AccountAddress) -> int:
        return self._min_nonces().get(address, 0)

    @external("incrementMinNonceIfEquals", inputs=("uint256",))
    def increment_min_nonce_if_equals(self, msg: Message, expected_nonce: int):
        if not msg.is_system:
            raise NotSystemCall()
        nonces = self._min_nonces()
        current = nonces.get(msg.sender, 0)
        if current != expected_nonce:
            raise NonceMismatch(expected_nonce, current)
        nonces[msg.sender] = current + 1


class ContractDeployer(Contract):
    """Deploys contracts whose code was published with :meth:`Chain.register_code`."""

    def _deployment_nonces(self) -> Dict[AccountAddress, int]:
        return self.storage.setdefault("deployment_nonce", {})

    @external("getDeploymentNonce", inputs=("address",), outputs=("uint256",))
    def get_deployment_nonce(self, msg: Message, address: AccountAddress) -> int:
        return self._deployment_nonces().get(address, 0)

    @external(
        "create", inputs=("bytes32", "bytes32", "bytes"), outputs=("address",), payable=True
    )
    def create(self, msg: Message, salt: bytes, bytecode_hash: bytes, call_data: bytes):
        if not msg.is_system:
            raise NotSystemCall()
        nonces = self._deployment_nonces()
        nonce = nonces.get(msg.sender, 0)
        nonces[msg.sender] = nonce + 1
        address = AccountAddress.for_zksync_create(msg.sender, nonce)
        return self._perform_deploy(msg, address, bytecode_hash, call_data)

    @external(
        "create2", inputs=("bytes32", "bytes32", "bytes"), outputs=("address",), payable=True
    )
    def create2(self, msg: Message, salt: bytes, bytecode_hash: bytes, call_data: bytes):
        if not msg.is_system:
            raise NotSystemCall()
        address = AccountAddress.for_zksync_create2(msg.sender, salt, bytecode_hash, call_data)
        return self._perform_deploy(msg, address, bytecode_hash, call_data)

    def _perform_deploy(
        self, msg: Message, address: AccountAddress, bytecode_hash: bytes, call_data: bytes
    ) -> AccountAddress:
        cls = self.chain.known_code.get(bytecode_hash)
        if cls is None:
            raise Reason("The code hash is not known")
        try:
            args = abi.decode_values(cls.constructor_inputs, call_data)
        except DecodingError:
            raise Reason("Malformed constructor input")
        if msg.value:
            result = self.call(address, msg.value)
            if not result.success:
                raise Reason("Failed to forward deployment value")
        self.chain.install(address, cls, msg.sender, args)
        logging.info(f"ContractDeployer: {msg.sender} deployed {cls.__name__} at {address}")
        return address


def install_system_contracts(chain: Chain):
    """Place the system contracts at their reserved addresses on ``chain``."""
    deployer = BOOTLOADER_FORMAL_ADDRESS
    chain.deploy(deployer, NonceHolder, address=NONCE_HOLDER_SYSTEM_CONTRACT)
    chain.deploy(deployer, ContractDeployer, address=CONTRACT_DEPLOYER_SYSTEM_CONTRACT)


class Test(unittest.TestCase):
    class Stored(Contract):
        constructor_inputs = ("uint256",)

        def constructor(self, msg: Message, value: int):
            self.storage["value"] = value
            self.storage["deployer"] = msg.sender

    class Caller(Contract):
        @external("systemCall", inputs=("address", "bytes"), outputs=("bool", "bytes"))
        def system_call(self, msg: Message, to: AccountAddress, data: bytes):
            result = self.call(to, 0, data, is_system=True)
            return (result.success, result.return_data)

    def setUp(self):
        self.chain = Chain()
        install_system_contracts(self.chain)
        self.alice = AccountAddress.from_int(0xA11CE)
        self.caller = self.chain.deploy(self.alice, Test.Caller)
        self.nonce_holder = self.chain.code_at(NONCE_HOLDER_SYSTEM_CONTRACT)
        self.deployer = self.chain.code_at(CONTRACT_DEPLOYER_SYSTEM_CONTRACT)

    def system_call(self, contract: Contract, name: str, *args):
        data = contract.function(name).encode_input(*args)
        return self.chain.invoke(self.alice, self.caller, "systemCall", contract.address, data)

    def test_nonce_increment(self):
        self.assertEqual(self.system_call(self.nonce_holder, "incrementMinNonceIfEquals", 0)[0], True)
        success, data = self.system_call(self.nonce_holder, "incrementMinNonceIfEquals", 0)
        self.assertFalse(success)
        self.assertEqual(data, NonceMismatch(0, 1).data)
        self.assertEqual(
            self.chain.view(self.nonce_holder, "getMinNonce", self.caller.address), 1
        )

    def test_nonce_requires_system_call(self):
        with self.assertRaises(NotSystemCall):
            self.chain.invoke(self.alice, self.nonce_holder, "incrementMinNonceIfEquals", 0)

    def test_create2(self):
        bytecode_hash = self.chain.register_code(Test.Stored)
        salt = b"\x01" * 32
        call_data = abi.encode_values(("uint256",), (42,))
        success, data = self.system_call(self.deployer, "create2", salt, bytecode_hash, call_data)
        self.assertTrue(success)

        address = ContractDeployer.function("create2").decode_output(data)
        self.assertEqual(
            address,
            AccountAddress.for_zksync_create2(self.caller.address, salt, bytecode_hash, call_data),
        )
        deployed = self.chain.code_at(address)
        self.assertEqual(deployed.storage["value"], 42)
        self.assertEqual(deployed.storage["deployer"], self.caller.address)

        # Same salt and input collide
        success, _ = self.system_call(self.deployer, "create2", salt, bytecode_hash, call_data)
        self.assertFalse(success)

    def test_create_uses_deployment_nonce(self):
        bytecode_hash = self.chain.register_code(Test.Stored)
        call_data = abi.encode_values(("uint256",), (1,))
        for nonce in range(2):
            success, data = self.system_call(
                self.deployer, "create", b"\x00" * 32, bytecode_hash, call_data
            )
            self.assertTrue(success)
            self.assertEqual(
                ContractDeployer.function("create").decode_output(data),
                AccountAddress.for_zksync_create(self.caller.address, nonce),
            )

    def test_unknown_code(self):
        success, data = self.system_call(
            self.deployer, "create2", b"\x00" * 32, b"\x02" * 32, b""
        )
        self.assertFalse(success)
        self.assertEqual(abi.decode_error_string(data), "The code hash is not known")

    def test_malformed_constructor_input(self):
        bytecode_hash = self.chain.register_code(Test.Stored)
        success, data = self.system_call(
            self.deployer, "create", b"\x00" * 32, bytecode_hash, b""
        )
        self.assertFalse(success)
        self.assertEqual(abi.decode_error_string(data), "Malformed constructor input")
        self.assertEqual(
            self.chain.view(self.deployer, "getDeploymentNonce", self.caller.address), 0
        )
