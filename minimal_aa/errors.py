# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Errors raised by the smart-account contracts.

Every error is a :class:`~minimal_aa.chain.ContractError`: raising it aborts
the current call frame and returns ``selector(Name(types)) ++ args`` as revert
data. Caller-identity errors share the :class:`NotAuthorized` base so callers
can catch the whole family at once.

A signature that does not belong to the owner is deliberately absent from
this module: it is reported as a validation result, not raised.
"""

from __future__ import annotations

from .chain import ContractError


class NotAuthorized(ContractError):
    """The caller is not allowed to use this entry point."""


class NotFromTrustedCaller(NotAuthorized):
    """The caller is not the account's entry point or bootloader."""


class NotFromEntryPoint(NotFromTrustedCaller):
    pass


class NotFromBootloader(NotFromTrustedCaller):
    pass


class NotFromEntryPointOrOwner(NotAuthorized):
    pass


class NotBootloaderOrOwner(NotAuthorized):
    pass


class ExecutionFailed(ContractError):
    """The inner call reverted; ``values[0]`` is the callee's revert data."""

    abi_inputs = ("bytes",)

    @property
    def return_data(self) -> bytes:
        return self.values[0]


class InsufficientBalance(ContractError):
    """The account cannot cover ``required`` with its ``available`` balance."""

    abi_inputs = ("uint256", "uint256")


class FailedToPayBootloader(ContractError):
    pass


class InvalidSignature(ContractError):
    """A transaction submitted from outside was not signed by the owner."""


class OwnableUnauthorizedAccount(NotAuthorized):
    abi_inputs = ("address",)


class OwnableInvalidOwner(ContractError):
    abi_inputs = ("address",)
