"""Instance metadata store.

The registry directory (``/var/lib/odooctl/registry`` by default) holds
``instances.yml``, a record of what ``instance create`` produced: domain,
ports, flags and derived paths. The instance config directory remains the
authority on which instances exist; this file only enriches listings.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..errors import OdooctlError
from ..exit_codes import ExitCode

INSTANCES_FILE = "instances.yml"


class StateRegistryError(OdooctlError):
    """Raised when the metadata store cannot be read or written."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class StateRegistry:
    """Read and atomically rewrite YAML files under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise StateRegistryError(f"Cannot read registry file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        try:
            self.ensure_root()
            path = self.path_for(name)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Cannot write registry file {name}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StateRegistryError(f"Cannot write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Instance helpers -------------------------------------------------
    def list_entries(self) -> list[dict[str, Any]]:
        """Return every mapping stored in ``instances.yml``."""
        data = self.read(INSTANCES_FILE, default={"instances": []})
        raw = data.get("instances", []) if isinstance(data, Mapping) else []
        if not isinstance(raw, list):
            return []
        return [dict(entry) for entry in raw if isinstance(entry, Mapping) and entry.get("name")]

    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the metadata for *name* if recorded."""
        for entry in self.list_entries():
            if entry.get("name") == name:
                return entry
        return None

    def upsert_instance(self, name: str, metadata: Mapping[str, object]) -> None:
        """Record *metadata* for *name*, replacing any previous entry."""
        entry = {"name": name, **{k: v for k, v in metadata.items() if k != "name"}}
        entries = [item for item in self.list_entries() if item.get("name") != name]
        entries.append(entry)
        entries.sort(key=lambda item: str(item.get("name")))
        self.write(INSTANCES_FILE, {"instances": entries})

    def remove_instance(self, name: str) -> bool:
        """Drop *name* from the store; return False when it was not recorded."""
        entries = self.list_entries()
        remaining = [item for item in entries if item.get("name") != name]
        if len(remaining) == len(entries):
            return False
        self.write(INSTANCES_FILE, {"instances": remaining})
        return True


__all__ = ["INSTANCES_FILE", "StateRegistry", "StateRegistryError"]
