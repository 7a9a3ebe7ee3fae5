"""Systemd provider for managing instance service units."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass

from ..errors import ExternalToolError
from ..instances import InstancePaths
from ..templates import TemplateEngine
from .commands import run_command


class SystemdError(ExternalToolError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and drive the systemd unit of each instance."""

    templates: TemplateEngine
    systemctl_bin: str = "systemctl"
    timeout: float | None = None

    def render_unit(self, paths: InstancePaths, context: Mapping[str, object]) -> bool:
        """Render the unit file for *paths* and reload systemd when it changed."""
        changed = self.templates.render_to_path(
            "systemd/service.j2", paths.unit_file, context, mode=0o644
        )
        if changed:
            self.daemon_reload()
        return changed

    def enable(self, paths: InstancePaths, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable the instance unit."""
        return self._systemctl("enable", paths.service_name, dry_run=dry_run)

    def disable(self, paths: InstancePaths, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Disable the instance unit."""
        return self._systemctl("disable", paths.service_name, dry_run=dry_run)

    def start(self, paths: InstancePaths, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start the instance unit."""
        return self._systemctl("start", paths.service_name, dry_run=dry_run)

    def stop(self, paths: InstancePaths, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop the instance unit."""
        return self._systemctl("stop", paths.service_name, dry_run=dry_run)

    def is_loaded(self, paths: InstancePaths) -> bool:
        """Return True when systemd has the unit loaded from a unit file.

        A unit whose file is gone but which sits in the ``failed`` state is
        still listed, with ``not-found`` in the LOAD column; that row does not
        count as loaded.
        """
        result = self._systemctl(
            "list-units", "--all", "--full", "--no-legend", "--plain", paths.service_name,
        )
        for line in (result.stdout or "").splitlines():
            columns = line.split()
            if len(columns) >= 2 and columns[0] == paths.service_name:
                return columns[1] != "not-found"
        return False

    def is_active(self, paths: InstancePaths) -> bool:
        """Return True when the unit is running."""
        result = self._systemctl("is-active", paths.service_name, check=False)
        return result.returncode == 0

    def is_enabled(self, paths: InstancePaths) -> bool:
        """Return True when the unit is enabled."""
        result = self._systemctl("is-enabled", paths.service_name, check=False)
        return result.returncode == 0

    def reset_failed(self, paths: InstancePaths) -> bool:
        """Clear a ``failed`` state so the unit drops out of listings."""
        result = self._systemctl("reset-failed", paths.service_name, check=False)
        return result.returncode == 0

    def remove(self, paths: InstancePaths) -> bool:
        """Delete the unit file; return False when it was already gone."""
        try:
            paths.unit_file.unlink()
        except FileNotFoundError:
            return False
        self.daemon_reload()
        return True

    def daemon_reload(self) -> None:
        """Ask systemd to re-read unit files."""
        self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.systemctl_bin, command, *args],
            error_cls=SystemdError,
            error_prefix=f"{self.systemctl_bin} {command}",
            timeout=self.timeout,
            check=check,
            dry_run=dry_run,
        )


__all__ = ["SystemdError", "SystemdProvider"]
