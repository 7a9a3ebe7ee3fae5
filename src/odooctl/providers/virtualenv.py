"""Per-instance Python virtual environments."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..errors import DependencyError
from ..instances import InstancePaths
from .commands import run_command

DEFAULT_EXTRA_PACKAGES = ("gevent",)


class VirtualenvError(DependencyError):
    """Raised when a virtualenv cannot be created or populated."""


@dataclass(slots=True)
class VirtualenvProvider:
    """Create an instance venv and install the Odoo requirements into it."""

    python_bin: str = "python3"
    extra_packages: tuple[str, ...] = field(default=DEFAULT_EXTRA_PACKAGES)
    timeout: float | None = None

    def create(self, paths: InstancePaths, *, user: str | None = None) -> bool:
        """Create the venv at ``paths.venv``; return False when it already exists."""
        if paths.python_bin.exists():
            return False
        self._run([self.python_bin, "-m", "venv", str(paths.venv)], user=user)
        return True

    def install(
        self,
        paths: InstancePaths,
        requirements: Path,
        *,
        user: str | None = None,
    ) -> list[str]:
        """Install pip tooling, *requirements* and extra packages; return the steps run."""
        if not requirements.is_file():
            raise VirtualenvError(f"Requirements file {requirements} does not exist.")
        pip = [str(paths.python_bin), "-m", "pip", "install", "--no-cache-dir"]
        steps: list[tuple[str, list[str]]] = [
            ("pip", [*pip, "--upgrade", "pip", "wheel"]),
            ("requirements", [*pip, "-r", str(requirements)]),
        ]
        if self.extra_packages:
            steps.append(("extras", [*pip, *self.extra_packages]))
        completed: list[str] = []
        for label, command in steps:
            self._run(command, user=user, prefix=f"pip install ({label})")
            completed.append(label)
        return completed

    def _run(self, command: list[str], *, user: str | None, prefix: str | None = None) -> None:
        run_command(
            command,
            error_cls=VirtualenvError,
            error_prefix=prefix or " ".join(command[:3]),
            timeout=self.timeout,
            user=user,
        )


__all__ = ["VirtualenvError", "VirtualenvProvider"]
