"""The OS account every Odoo instance runs as.

One system user (``odoo`` by default) owns the base source tree in
``odoo_home``, every instance directory and config file, and is the
``User=``/``Group=`` of every unit. Provisioning creates it without a home
directory so the ``odoo.home`` step can create ``odoo_home`` empty and the
source clone can land directly in it.
"""
from __future__ import annotations

import grp
import pwd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..config import AppConfig

SERVICE_SHELL = "/bin/bash"
# Debian's adduser --system allocates below this; login accounts start here.
FIRST_LOGIN_UID = 1000


@dataclass(frozen=True, slots=True)
class ServiceAccount:
    """Desired service user, group and home."""

    user: str
    group: str
    home: Path
    shell: str = SERVICE_SHELL

    @classmethod
    def from_config(cls, config: AppConfig) -> ServiceAccount:
        return cls(user=config.service_user, group=config.service_group, home=config.odoo_home)


@dataclass(slots=True)
class AccountState:
    """What the passwd and group databases say about the account."""

    user_exists: bool = False
    group_exists: bool = False
    uid: int | None = None
    home: Path | None = None
    shell: str | None = None
    primary_group: str | None = None

    @classmethod
    def observe(cls, account: ServiceAccount) -> AccountState:
        state = cls()
        try:
            grp.getgrnam(account.group)
        except KeyError:
            pass
        else:
            state.group_exists = True

        try:
            entry = pwd.getpwnam(account.user)
        except KeyError:
            return state
        state.user_exists = True
        state.uid = entry.pw_uid
        state.home = Path(entry.pw_dir)
        state.shell = entry.pw_shell
        try:
            state.primary_group = grp.getgrgid(entry.pw_gid).gr_name
        except KeyError:
            state.primary_group = None
        return state


@dataclass(slots=True)
class AccountCommand:
    kind: Literal["ensure-group", "create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class AccountPlan:
    """Commands to run and mismatches to report for the service account."""

    account: ServiceAccount
    state: AccountState
    commands: list[AccountCommand] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return not self.commands


def plan_account(account: ServiceAccount, state: AccountState | None = None) -> AccountPlan:
    """Return what provisioning must do for *account*.

    Missing users and groups are created. An existing account is never
    modified; differences that affect instances are reported as warnings.
    """
    state = state if state is not None else AccountState.observe(account)
    plan = AccountPlan(account=account, state=state)

    if not state.group_exists:
        plan.commands.append(
            AccountCommand(
                kind="ensure-group",
                description=f"Create system group '{account.group}'.",
                command=["groupadd", "--system", account.group],
            )
        )

    if not state.user_exists:
        plan.commands.append(
            AccountCommand(
                kind="create-user",
                description=f"Create system user '{account.user}' with home {account.home}.",
                command=[
                    "useradd",
                    "--system",
                    "--home-dir",
                    str(account.home),
                    "--no-create-home",
                    "--shell",
                    account.shell,
                    "--gid",
                    account.group,
                    account.user,
                ],
            )
        )
    else:
        plan.warnings.extend(_existing_account_warnings(account, state))

    blocker = _clone_blocker(account.home)
    if blocker:
        plan.warnings.append(blocker)
    return plan


def _existing_account_warnings(account: ServiceAccount, state: AccountState) -> list[str]:
    warnings: list[str] = []
    if state.primary_group and state.primary_group != account.group:
        warnings.append(
            f"User '{account.user}' has primary group '{state.primary_group}'; "
            f"instance files and units use group '{account.group}'."
        )
    if state.home and state.home != account.home:
        warnings.append(
            f"User '{account.user}' has home {state.home}; Odoo is installed in {account.home}."
        )
    if state.shell and state.shell != account.shell:
        warnings.append(
            f"User '{account.user}' has shell {state.shell}; expected {account.shell}."
        )
    if state.uid is not None and state.uid >= FIRST_LOGIN_UID:
        warnings.append(
            f"User '{account.user}' is a login account (uid {state.uid}), not a system account."
        )
    return warnings


def _clone_blocker(home: Path) -> str | None:
    """Describe why the source clone into *home* would fail, if it would."""
    if not home.is_dir() or (home / ".git").exists():
        return None
    if any(home.iterdir()):
        return f"{home} is not empty and not a git checkout; the Odoo clone will fail."
    return None


__all__ = [
    "AccountCommand",
    "AccountPlan",
    "AccountState",
    "FIRST_LOGIN_UID",
    "SERVICE_SHELL",
    "ServiceAccount",
    "plan_account",
]
