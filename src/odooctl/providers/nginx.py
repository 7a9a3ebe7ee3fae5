"""Nginx provider for managing instance site configurations."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass

from ..errors import ExternalToolError
from ..instances import InstancePaths
from ..templates import TemplateEngine
from .commands import run_command

SITE_TEMPLATE = "nginx/site.conf.j2"


class NginxError(ExternalToolError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxApplyResult:
    """Outcome of rendering and activating an nginx site."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render, enable and remove nginx sites for instances."""

    templates: TemplateEngine
    nginx_bin: str = "nginx"
    timeout: float | None = None

    def write_site(self, paths: InstancePaths, context: Mapping[str, object]) -> bool:
        """Render the site file; return True when its content changed."""
        return self.templates.render_to_path(
            SITE_TEMPLATE, paths.nginx_available, context, mode=0o644
        )

    def apply(self, paths: InstancePaths, context: Mapping[str, object]) -> NginxApplyResult:
        """Render, enable, validate and reload the site for *paths*.

        If ``nginx -t`` rejects the new configuration the previous site file
        is restored (or the new one removed along with its symlink) before the
        :class:`NginxError` propagates, so other sites keep reloading cleanly.
        """
        destination = paths.nginx_available
        previous: str | None = None
        if destination.exists():
            previous = destination.read_text(encoding="utf-8")

        changed = self.write_site(paths, context)
        was_enabled = self.is_enabled(paths)
        self.enable(paths)
        if not changed and was_enabled:
            return NginxApplyResult(changed=False)

        try:
            validation = self.test_config()
        except NginxError:
            if previous is None:
                self.remove(paths)
            else:
                destination.write_text(previous, encoding="utf-8")
                if not was_enabled:
                    self.disable(paths)
            raise

        return NginxApplyResult(changed=True, validation=validation, reload=self.reload())

    def enable(self, paths: InstancePaths) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        source = paths.nginx_available
        target = paths.nginx_enabled
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                pass
            target.unlink()
        target.symlink_to(source)

    def disable(self, paths: InstancePaths) -> bool:
        """Remove the sites-enabled symlink; return False when absent."""
        target = paths.nginx_enabled
        if not (target.exists() or target.is_symlink()):
            return False
        target.unlink()
        return True

    def remove(self, paths: InstancePaths) -> bool:
        """Remove the site and its symlink; return True when anything was deleted."""
        removed = self.disable(paths)
        try:
            paths.nginx_available.unlink()
        except FileNotFoundError:
            return removed
        return True

    def site_exists(self, paths: InstancePaths) -> bool:
        """Return True when the rendered site configuration exists."""
        return paths.nginx_available.exists()

    def is_enabled(self, paths: InstancePaths) -> bool:
        """Return True when sites-enabled links to the rendered site."""
        target = paths.nginx_enabled
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == paths.nginx_available.resolve()
        except FileNotFoundError:
            return False

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx("-t")

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        return self._run_nginx("-s", "reload")

    # ------------------------------------------------------------------
    def _run_nginx(self, *args: str) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.nginx_bin, *args],
            error_cls=NginxError,
            error_prefix=f"{self.nginx_bin} {' '.join(args)}",
            timeout=self.timeout,
        )


__all__ = ["NginxApplyResult", "NginxError", "NginxProvider"]
