# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Common configuration for the minimal-aa examples.

Environment Variables:
    MINIMAL_AA_CHAIN_ID: Chain id of the local chain the examples run on
    MINIMAL_AA_OWNER_KEY: Hex private key of the account owner; a random key
        is generated when unset
    MINIMAL_AA_MINT_AMOUNT: Amount of tokens minted through the account

Usage Examples:
    Running with a fixed owner::

        export MINIMAL_AA_OWNER_KEY=0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d
        python -m examples.user_operation
"""

import os

from minimal_aa.account import Account

# :!:>section_1
CHAIN_ID = int(os.getenv("MINIMAL_AA_CHAIN_ID", "31337"))

OWNER_KEY = os.getenv("MINIMAL_AA_OWNER_KEY")

MINT_AMOUNT = int(os.getenv("MINIMAL_AA_MINT_AMOUNT", str(10**18)))
# <:!:section_1


def load_owner() -> Account:
    if OWNER_KEY:
        return Account.load_key(OWNER_KEY)
    return Account.generate()
