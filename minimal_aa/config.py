# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Network configuration.

Each supported chain id maps to a :class:`NetworkConfig` naming the trusted
callers an account is deployed against. Every value can be overridden from
the environment:

- ``MINIMAL_AA_CHAIN_ID``: chain id to resolve when none is given
- ``MINIMAL_AA_ENTRY_POINT``: ERC-4337 entry point address
- ``MINIMAL_AA_BOOTLOADER``: zkSync bootloader address
- ``MINIMAL_AA_ACCOUNT``: address of an already deployed smart account
"""

from __future__ import annotations

import dataclasses
import os
import unittest
from dataclasses import dataclass
from typing import Dict, Optional
from unittest import mock

from .account_address import AccountAddress
from .chain import LOCAL_CHAIN_ID
from .entry_point import ENTRY_POINT_ADDRESS
from .system_contracts import BOOTLOADER_FORMAL_ADDRESS

ETH_SEPOLIA_CHAIN_ID = 11155111
ZKSYNC_SEPOLIA_CHAIN_ID = 300
ZKSYNC_LOCAL_CHAIN_ID = 260


@dataclass(frozen=True)
class NetworkConfig:
    chain_id: int
    entry_point: AccountAddress
    bootloader: AccountAddress
    account: Optional[AccountAddress] = None

    def is_zksync(self) -> bool:
        return self.chain_id in (ZKSYNC_SEPOLIA_CHAIN_ID, ZKSYNC_LOCAL_CHAIN_ID)


NETWORKS: Dict[int, NetworkConfig] = {
    chain_id: NetworkConfig(chain_id, ENTRY_POINT_ADDRESS, BOOTLOADER_FORMAL_ADDRESS)
    for chain_id in (
        LOCAL_CHAIN_ID,
        ETH_SEPOLIA_CHAIN_ID,
        ZKSYNC_SEPOLIA_CHAIN_ID,
        ZKSYNC_LOCAL_CHAIN_ID,
    )
}


def get_config(chain_id: Optional[int] = None) -> NetworkConfig:
    """Resolve the configuration of ``chain_id`` with environment overrides applied.

    Raises:
        ValueError: If the chain id is not supported.
    """
    if chain_id is None:
        chain_id = int(os.getenv("MINIMAL_AA_CHAIN_ID", str(LOCAL_CHAIN_ID)))
    if chain_id not in NETWORKS:
        raise ValueError(f"Unsupported chain id {chain_id}")

    config = NETWORKS[chain_id]
    overrides = {}
    for field, variable in (
        ("entry_point", "MINIMAL_AA_ENTRY_POINT"),
        ("bootloader", "MINIMAL_AA_BOOTLOADER"),
        ("account", "MINIMAL_AA_ACCOUNT"),
    ):
        value = os.getenv(variable)
        if value:
            overrides[field] = AccountAddress.from_str_relaxed(value)
    return dataclasses.replace(config, **overrides)


class Test(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = get_config()
        self.assertEqual(config.chain_id, LOCAL_CHAIN_ID)
        self.assertEqual(config.entry_point, ENTRY_POINT_ADDRESS)
        self.assertIsNone(config.account)
        self.assertFalse(config.is_zksync())

    def test_zksync(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = get_config(ZKSYNC_SEPOLIA_CHAIN_ID)
        self.assertTrue(config.is_zksync())
        self.assertEqual(config.bootloader, BOOTLOADER_FORMAL_ADDRESS)

    def test_overrides(self):
        environ = {
            "MINIMAL_AA_CHAIN_ID": str(ETH_SEPOLIA_CHAIN_ID),
            "MINIMAL_AA_ENTRY_POINT": "0x1",
            "MINIMAL_AA_ACCOUNT": "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
        }
        with mock.patch.dict(os.environ, environ, clear=True):
            config = get_config()
        self.assertEqual(config.chain_id, ETH_SEPOLIA_CHAIN_ID)
        self.assertEqual(config.entry_point, AccountAddress.from_int(1))
        self.assertEqual(
            config.account, AccountAddress.from_str("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
        )

    def test_unsupported_chain(self):
        with self.assertRaises(ValueError):
            get_config(1)
