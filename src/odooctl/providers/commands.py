"""Subprocess execution shared by the providers."""
from __future__ import annotations

import os
import pwd
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..errors import ExternalToolError


def as_user(command: Sequence[str], user: str | None) -> list[str]:
    """Prefix *command* with ``sudo -u <user> -H`` when running as another user.

    The prefix is only added when the current process is root and *user* is
    not root itself; otherwise the command runs as the current user.
    """
    args = [str(part) for part in command]
    if not user or os.geteuid() != 0:
        return args
    try:
        current = pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        current = "root"
    if user == current:
        return args
    return ["sudo", "-u", user, "-H", *args]


def run_command(
    args: Sequence[str | os.PathLike[str]],
    *,
    error_cls: type[ExternalToolError] | type[Exception] = ExternalToolError,
    error_prefix: str | None = None,
    timeout: float | None = None,
    check: bool = True,
    dry_run: bool = False,
    user: str | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and raise *error_cls* when it cannot run or exits non-zero."""
    command = as_user([str(part) for part in args], user)
    prefix = error_prefix or " ".join(str(part) for part in args[:2])
    if dry_run:
        return subprocess.CompletedProcess(command, returncode=0, stdout="", stderr="")
    try:
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{command[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{prefix} timed out after {exc.timeout} seconds") from exc
    if check and result.returncode != 0:
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["as_user", "run_command"]
