# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Single-owner access control for contracts.

The owner is the deployer until ownership is transferred. It is never the
zero address: construction takes a real sender and :meth:`transferOwnership`
rejects zero.
"""

from __future__ import annotations

import unittest

from .account_address import ZERO, AccountAddress
from .chain import Chain, Contract, Message, external
from .errors import NotAuthorized, OwnableInvalidOwner, OwnableUnauthorizedAccount


class Ownable(Contract):
    def constructor(self, msg: Message, *args):
        self._set_owner(msg.sender)

    def _set_owner(self, new_owner: AccountAddress):
        previous_owner = self.storage.get("owner", ZERO)
        self.storage["owner"] = new_owner
        self.emit("OwnershipTransferred", previousOwner=previous_owner, newOwner=new_owner)

    def get_owner(self) -> AccountAddress:
        return self.storage.get("owner", ZERO)

    def only_owner(self, msg: Message):
        if msg.sender != self.get_owner():
            raise OwnableUnauthorizedAccount(msg.sender)

    @external("owner", outputs=("address",))
    def owner(self, msg: Message) -> AccountAddress:
        return self.get_owner()

    @external("transferOwnership", inputs=("address",))
    def transfer_ownership(self, msg: Message, new_owner: AccountAddress):
        self.only_owner(msg)
        if new_owner.is_zero():
            raise OwnableInvalidOwner(new_owner)
        self._set_owner(new_owner)


class Test(unittest.TestCase):
    def setUp(self):
        self.chain = Chain()
        self.alice = AccountAddress.from_int(0xA11CE)
        self.bob = AccountAddress.from_int(0xB0B)
        self.contract = self.chain.deploy(self.alice, Ownable)

    def test_deployer_is_owner(self):
        self.assertEqual(self.chain.view(self.contract, "owner"), self.alice)
        (log,) = self.chain.logs(self.contract.address, "OwnershipTransferred")
        self.assertEqual(log.args, {"previousOwner": ZERO, "newOwner": self.alice})

    def test_transfer_ownership(self):
        self.chain.invoke(self.alice, self.contract, "transferOwnership", self.bob)
        self.assertEqual(self.chain.view(self.contract, "owner"), self.bob)

        with self.assertRaises(OwnableUnauthorizedAccount) as cm:
            self.chain.invoke(self.alice, self.contract, "transferOwnership", self.alice)
        self.assertEqual(cm.exception.values, (self.alice,))
        self.assertIsInstance(cm.exception, NotAuthorized)

    def test_zero_owner_is_rejected(self):
        with self.assertRaises(OwnableInvalidOwner):
            self.chain.invoke(self.alice, self.contract, "transferOwnership", ZERO)
        self.assertEqual(self.chain.view(self.contract, "owner"), self.alice)
