"""One-time host preparation for running Odoo instances.

The provisioner builds an ordered plan of shell commands from the host
configuration and what is already present, then runs it step by step. Every
step is safe to re-run, so ``system provision`` can be repeated after a
partial failure.
"""
from __future__ import annotations

import getpass
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field

from ..config import AppConfig
from ..errors import ExternalToolError, ValidationError
from ..instances import validate_name
from ..providers.commands import run_command
from .service_accounts import ServiceAccount, plan_account

ENABLED_SERVICES = ("postgresql", "nginx", "fail2ban")


class ProvisionError(ExternalToolError):
    """Raised when a provisioning command fails."""


@dataclass(slots=True)
class ProvisionStep:
    """A single command the provisioner runs."""

    name: str
    description: str
    command: list[str]
    user: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "description": self.description,
            "command": list(self.command),
            "user": self.user,
        }


@dataclass(slots=True)
class ProvisionPlan:
    """Ordered steps plus anything the operator should know about."""

    steps: list[ProvisionStep] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


StepCallback = Callable[[ProvisionStep], None]


class HostProvisioner:
    """Plan and apply host provisioning for *config*."""

    def __init__(
        self,
        config: AppConfig,
        *,
        which: Callable[[str], str | None] = shutil.which,
        admin_role: str | None = None,
    ) -> None:
        """Bind the provisioner to *config*.

        *admin_role* names the PostgreSQL superuser role created for odooctl;
        it defaults to the configured ``database.admin_user`` or the current
        OS user.
        """
        self._config = config
        self._which = which
        self._admin_role = admin_role or config.database.admin_user or getpass.getuser()

    def plan(self) -> ProvisionPlan:
        """Return the steps needed to bring the host up to date."""
        config = self._config
        plan = ProvisionPlan()

        plan.steps.append(
            ProvisionStep("apt.update", "Refresh package lists.", ["apt-get", "update"])
        )
        if config.provision.apt_packages:
            plan.steps.append(
                ProvisionStep(
                    "apt.install",
                    "Install system packages.",
                    [
                        "apt-get",
                        "install",
                        "-y",
                        "--no-install-recommends",
                        *config.provision.apt_packages,
                    ],
                )
            )

        python = config.python_bin
        if self._which(python) is None:
            self._plan_python(plan, python)
        else:
            plan.skipped.append(f"{python} already installed.")

        if config.provision.npm_packages:
            if self._which("lessc") is None:
                plan.steps.append(
                    ProvisionStep(
                        "npm.install",
                        "Install global npm packages.",
                        ["npm", "install", "-g", *config.provision.npm_packages],
                    )
                )
            else:
                plan.skipped.append("lessc already installed.")

        plan.steps.append(
            ProvisionStep(
                "services.enable",
                "Enable and start PostgreSQL, nginx and fail2ban.",
                [config.systemd.systemctl_bin, "enable", "--now", *ENABLED_SERVICES],
            )
        )

        self._plan_admin_role(plan)
        self._plan_service_account(plan)

        home = config.odoo_home
        plan.steps.append(
            ProvisionStep(
                "odoo.home",
                f"Ensure {home} exists and belongs to {config.service_user}.",
                [
                    "install",
                    "-d",
                    "-o",
                    config.service_user,
                    "-g",
                    config.service_group,
                    "-m",
                    "0755",
                    str(home),
                ],
            )
        )
        if (home / ".git").exists():
            plan.skipped.append(f"Odoo source already present in {home}.")
        else:
            plan.steps.append(
                ProvisionStep(
                    "odoo.clone",
                    f"Clone Odoo {config.sources.branch} into {home}.",
                    [
                        config.sources.git_bin,
                        "clone",
                        "--depth",
                        "1",
                        "--branch",
                        config.sources.branch,
                        "--single-branch",
                        config.sources.odoo_repo,
                        str(home),
                    ],
                    user=config.service_user,
                )
            )

        plan.steps.append(
            ProvisionStep(
                "logs.dir",
                f"Ensure {config.logs_dir} is writable by {config.service_user}.",
                [
                    "install",
                    "-d",
                    "-o",
                    config.service_user,
                    "-g",
                    config.service_group,
                    "-m",
                    "0750",
                    str(config.logs_dir),
                ],
            )
        )
        return plan

    def apply(
        self,
        plan: ProvisionPlan,
        *,
        dry_run: bool = False,
        on_step: StepCallback | None = None,
    ) -> list[ProvisionStep]:
        """Run every step of *plan* in order, stopping at the first failure."""
        applied: list[ProvisionStep] = []
        for step in plan.steps:
            if on_step is not None:
                on_step(step)
            run_command(
                step.command,
                error_cls=ProvisionError,
                error_prefix=step.name,
                timeout=self._config.command_timeout,
                dry_run=dry_run,
                user=step.user,
            )
            applied.append(step)
        return applied

    # ------------------------------------------------------------------
    def _plan_python(self, plan: ProvisionPlan, python: str) -> None:
        ppa = self._config.provision.python_ppa
        if ppa:
            plan.steps.append(
                ProvisionStep(
                    "python.ppa",
                    f"Add {ppa} for {python}.",
                    ["add-apt-repository", "-y", ppa],
                )
            )
            plan.steps.append(
                ProvisionStep("python.update", "Refresh package lists.", ["apt-get", "update"])
            )
        plan.steps.append(
            ProvisionStep(
                "python.install",
                f"Install {python} with venv support.",
                ["apt-get", "install", "-y", python, f"{python}-venv", f"{python}-dev"],
            )
        )

    def _plan_admin_role(self, plan: ProvisionPlan) -> None:
        role = self._admin_role
        if role == "postgres":
            plan.skipped.append("PostgreSQL admin role is the built-in postgres role.")
            return
        if not validate_name(role):
            raise ValidationError(f"Cannot create PostgreSQL role for OS user {role!r}.")
        statement = (
            "DO $$ BEGIN "
            f"IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = '{role}') THEN "
            f'CREATE ROLE "{role}" LOGIN SUPERUSER; '
            "END IF; END $$;"
        )
        plan.steps.append(
            ProvisionStep(
                "postgres.admin-role",
                f"Ensure PostgreSQL superuser role '{role}' exists.",
                ["psql", "-v", "ON_ERROR_STOP=1", "-c", statement],
                user="postgres",
            )
        )

    def _plan_service_account(self, plan: ProvisionPlan) -> None:
        account = plan_account(ServiceAccount.from_config(self._config))
        for command in account.commands:
            plan.steps.append(
                ProvisionStep(f"account.{command.kind}", command.description, command.command)
            )
        if account.satisfied:
            plan.skipped.append(f"Service user '{account.account.user}' already present.")
        plan.warnings.extend(account.warnings)


__all__ = ["HostProvisioner", "ProvisionError", "ProvisionPlan", "ProvisionStep"]
