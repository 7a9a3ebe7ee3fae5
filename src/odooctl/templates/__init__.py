"""Jinja2 rendering for instance configuration, units and nginx sites.

Built-in templates ship inside this package. Operators may drop files with
the same relative name into the configured ``templates_dir`` to shadow them.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


class TemplateEngine:
    """Render templates with strict variables and optional overrides."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 *environment*."""
        self._env = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose *override_dir* templates take precedence."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("odooctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self._env.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return True when content changed.

        The file is replaced atomically. *mode* is applied on every call so an
        unchanged file still ends up with the requested permissions.
        """
        content = self.render_to_string(name, context)
        destination = Path(destination)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return True


__all__ = ["TemplateEngine"]
