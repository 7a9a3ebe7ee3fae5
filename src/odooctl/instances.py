"""Instance naming conventions and discovery.

Every artifact an instance owns on the host is derived from its name and the
host configuration. The registry enumerates instances by scanning the
instance config directory for ``<service_user>-<name>.conf`` files.
"""
from __future__ import annotations

import configparser
import re
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .errors import NotFoundError, ValidationError

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9.-]+$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MAX_DOMAIN_LENGTH = 253
CONFIG_SUFFIX = ".conf"


def validate_name(candidate: str) -> bool:
    """Return True when *candidate* is a usable instance name."""
    return bool(candidate) and NAME_PATTERN.fullmatch(candidate) is not None


def validate_domain(candidate: str) -> bool:
    """Return True for a syntactically plausible host name."""
    if not candidate or len(candidate) > MAX_DOMAIN_LENGTH:
        return False
    if DOMAIN_PATTERN.fullmatch(candidate) is None:
        return False
    if candidate[0] in ".-" or candidate[-1] in ".-":
        return False
    return ".." not in candidate


def validate_email(candidate: str) -> bool:
    """Return True for a syntactically plausible e-mail address."""
    return bool(candidate) and EMAIL_PATTERN.fullmatch(candidate) is not None


def require_name(candidate: str) -> str:
    """Return the stripped *candidate* or raise :class:`ValidationError`."""
    value = (candidate or "").strip()
    if not validate_name(value):
        raise ValidationError(
            f"Invalid instance name {candidate!r}: use letters, digits, '_' or '-'."
        )
    return value


def require_domain(candidate: str) -> str:
    """Return the normalised *candidate* domain or raise :class:`ValidationError`."""
    value = (candidate or "").strip().lower()
    if not validate_domain(value):
        raise ValidationError(f"Invalid domain {candidate!r}.")
    return value


def require_email(candidate: str) -> str:
    """Return the stripped *candidate* e-mail or raise :class:`ValidationError`."""
    value = (candidate or "").strip()
    if not validate_email(value):
        raise ValidationError(f"Invalid e-mail address {candidate!r}.")
    return value


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem locations and identifiers owned by one instance."""

    name: str
    root: Path
    custom_addons: Path
    enterprise_root: Path
    enterprise_addons: Path
    venv: Path
    python_bin: Path
    config_file: Path
    service_name: str
    unit_file: Path
    log_file: Path
    nginx_available: Path
    nginx_enabled: Path
    nginx_access_log: Path
    nginx_error_log: Path

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "custom_addons": str(self.custom_addons),
            "enterprise_addons": str(self.enterprise_addons),
            "venv": str(self.venv),
            "config_file": str(self.config_file),
            "service": self.service_name,
            "unit_file": str(self.unit_file),
            "log_file": str(self.log_file),
            "nginx_available": str(self.nginx_available),
            "nginx_enabled": str(self.nginx_enabled),
        }


class InstanceRegistry:
    """Single source of truth for instance names and derived paths."""

    def __init__(self, config: AppConfig) -> None:
        """Bind the registry to the host layout described by *config*."""
        self._config = config

    @property
    def prefix(self) -> str:
        """Return the file-name prefix shared by every instance artifact."""
        return f"{self._config.service_user}-"

    def artifact_name(self, name: str) -> str:
        """Return ``<service_user>-<name>``, used for config, unit and site names."""
        return f"{self.prefix}{name}"

    def resolve(self, name: str) -> InstancePaths:
        """Derive every path for *name* without touching the filesystem."""
        config = self._config
        artifact = self.artifact_name(name)
        root = config.odoo_home / name
        venv = root / "venv"
        enterprise_root = root / "enterprise"
        return InstancePaths(
            name=name,
            root=root,
            custom_addons=root / "custom" / "addons",
            enterprise_root=enterprise_root,
            enterprise_addons=enterprise_root / "addons",
            venv=venv,
            python_bin=venv / "bin" / "python",
            config_file=config.instance_config_dir / f"{artifact}{CONFIG_SUFFIX}",
            service_name=f"{artifact}.service",
            unit_file=config.systemd.unit_dir / f"{artifact}.service",
            log_file=config.logs_dir / f"{name}.log",
            nginx_available=config.nginx.sites_available / f"{artifact}.conf",
            nginx_enabled=config.nginx.sites_enabled / f"{artifact}.conf",
            nginx_access_log=config.nginx.log_dir / f"{name}.access.log",
            nginx_error_log=config.nginx.log_dir / f"{name}.error.log",
        )

    def list_instances(self) -> list[str]:
        """Return the sorted names of instances with a config file on disk."""
        directory = self._config.instance_config_dir
        if not directory.is_dir():
            return []
        names: list[str] = []
        for path in directory.glob(f"{self.prefix}*{CONFIG_SUFFIX}"):
            if not path.is_file():
                continue
            name = path.name[len(self.prefix) : -len(CONFIG_SUFFIX)]
            if validate_name(name):
                names.append(name)
        return sorted(names)

    def exists(self, name: str) -> bool:
        """Return True when *name* is part of the current listing."""
        return name in self.list_instances()

    def require(self, name: str) -> str:
        """Return *name* if listed, otherwise raise :class:`NotFoundError`."""
        normalized = require_name(name)
        if not self.exists(normalized):
            raise NotFoundError(f"Instance '{normalized}' not found.")
        return normalized

    def select(self, index: int) -> str:
        """Return the instance at zero-based *index* in the current listing."""
        names = self.list_instances()
        if not names:
            raise NotFoundError("No instances found.")
        if not 0 <= index < len(names):
            raise NotFoundError(
                f"Selection {index} is out of range (0-{len(names) - 1})."
            )
        return names[index]

    def read_config(self, name: str) -> dict[str, str]:
        """Return the ``[options]`` section of the instance config file."""
        path = self.resolve(name).config_file
        parser = configparser.ConfigParser(interpolation=None)
        try:
            with path.open(encoding="utf-8") as handle:
                parser.read_file(handle)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Config file {path} does not exist.") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise ValidationError(f"Cannot read {path}: {exc}") from exc
        except configparser.Error as exc:
            raise ValidationError(f"Cannot parse {path}: {exc}") from exc
        if not parser.has_section("options"):
            return {}
        return dict(parser.items("options"))

    def used_ports(self) -> set[int]:
        """Return every port recorded in existing instance config files."""
        ports: set[int] = set()
        for name in self.list_instances():
            try:
                options = self.read_config(name)
            except (NotFoundError, ValidationError):
                continue
            for key in ("http_port", "gevent_port", "longpolling_port"):
                value = options.get(key, "").strip()
                if value.isdigit():
                    ports.add(int(value))
        return ports


__all__ = [
    "InstancePaths",
    "InstanceRegistry",
    "require_domain",
    "require_email",
    "require_name",
    "validate_domain",
    "validate_email",
    "validate_name",
]
