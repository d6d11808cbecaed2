# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Minimal ERC-20 token with open minting, used as a call target in tests and examples.
"""

from __future__ import annotations

import unittest
from typing import Dict

from .account_address import ZERO, AccountAddress
from .chain import Chain, Contract, ContractError, Message, external


class ERC20InsufficientBalance(ContractError):
    abi_inputs = ("address", "uint256", "uint256")


class ERC20Mock(Contract):
    def _balances(self) -> Dict[AccountAddress, int]:
        return self.storage.setdefault("balances", {})

    @external("totalSupply", outputs=("uint256",))
    def total_supply(self, msg: Message) -> int:
        return self.storage.get("total_supply", 0)

    @external("balanceOf", inputs=("address",), outputs=("uint256",))
    def balance_of(self, msg: Message, owner: AccountAddress) -> int:
        return self._balances().get(owner, 0)

    @external("mint", inputs=("address", "uint256"))
    def mint(self, msg: Message, to: AccountAddress, amount: int):
        balances = self._balances()
        balances[to] = balances.get(to, 0) + amount
        self.storage["total_supply"] = self.storage.get("total_supply", 0) + amount
        self.emit("Transfer", sender=ZERO, to=to, value=amount)

    @external("transfer", inputs=("address", "uint256"), outputs=("bool",))
    def transfer(self, msg: Message, to: AccountAddress, amount: int) -> bool:
        balances = self._balances()
        available = balances.get(msg.sender, 0)
        if available < amount:
            raise ERC20InsufficientBalance(msg.sender, available, amount)
        balances[msg.sender] = available - amount
        balances[to] = balances.get(to, 0) + amount
        self.emit("Transfer", sender=msg.sender, to=to, value=amount)
        return True


class Test(unittest.TestCase):
    def test_mint_and_transfer(self):
        chain = Chain()
        alice = AccountAddress.from_int(0xA11CE)
        bob = AccountAddress.from_int(0xB0B)
        token = chain.deploy(alice, ERC20Mock)

        chain.invoke(alice, token, "mint", alice, 100)
        self.assertTrue(chain.invoke(alice, token, "transfer", bob, 40))
        self.assertEqual(chain.view(token, "balanceOf", alice), 60)
        self.assertEqual(chain.view(token, "balanceOf", bob), 40)
        self.assertEqual(chain.view(token, "totalSupply"), 100)

        with self.assertRaises(ERC20InsufficientBalance) as cm:
            chain.invoke(bob, token, "transfer", alice, 41)
        self.assertEqual(cm.exception.values, (bob, 40, 41))
