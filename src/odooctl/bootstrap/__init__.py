"""Helpers used by the ``system provision`` workflow."""
from __future__ import annotations

from .provision import HostProvisioner, ProvisionError, ProvisionPlan, ProvisionStep
from .service_accounts import AccountPlan, AccountState, ServiceAccount, plan_account

__all__ = [
    "AccountPlan",
    "AccountState",
    "HostProvisioner",
    "ProvisionError",
    "ProvisionPlan",
    "ProvisionStep",
    "ServiceAccount",
    "plan_account",
]
