"""Git provider for cloning Odoo source trees."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError
from .commands import run_command


class GitError(ExternalToolError):
    """Raised when a git operation fails."""


@dataclass(slots=True)
class GitProvider:
    """Shallow-clone repositories on behalf of the service user."""

    git_bin: str = "git"
    timeout: float | None = None

    def clone(
        self,
        repository: str,
        destination: Path,
        *,
        branch: str,
        user: str | None = None,
        depth: int = 1,
    ) -> bool:
        """Clone *branch* of *repository* into *destination*.

        Returns False without touching anything when *destination* already
        holds a checkout. A non-empty directory that is not a checkout is an
        error, since git refuses to clone into it.
        """
        if (destination / ".git").exists():
            return False
        if destination.exists() and any(destination.iterdir()):
            raise GitError(f"{destination} exists and is not a git checkout.")
        run_command(
            [
                self.git_bin,
                "clone",
                "--depth",
                str(depth),
                "--branch",
                branch,
                "--single-branch",
                repository,
                str(destination),
            ],
            error_cls=GitError,
            error_prefix=f"{self.git_bin} clone {repository}",
            timeout=self.timeout,
            user=user,
        )
        return True


__all__ = ["GitError", "GitProvider"]
