"""Configuration loader for odooctl.

Configuration values are merged from multiple sources, lowest precedence
first:

1. Built-in defaults.
2. ``/etc/odooctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ODOOCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ODOOCTL_PORTS__HTTP_BASE=9069
    export ODOOCTL_DATABASE__ADMIN_PASSWORD=secret

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load odooctl configuration. Install with "
        "`pip install odooctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ODOOCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
MAX_TCP_PORT = 65535


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Base ports probed when allocating instance ports."""

    http_base: int = 8069
    gevent_base: int = 8072
    max: int = MAX_TCP_PORT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"http_base": self.http_base, "gevent_base": self.gevent_base, "max": self.max}


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection used to administer instance roles.

    ``host`` of ``None`` connects over the local Unix socket. ``instance_host``
    is what gets written to each instance config as ``db_host``.
    ``admin_user`` of ``None`` connects as the current OS user.
    """

    host: str | None = None
    port: int = 5432
    admin_user: str | None = None
    admin_password: str | None = None
    admin_database: str = "postgres"
    instance_host: str = "localhost"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "host": self.host,
            "port": self.port,
            "admin_user": self.admin_user,
            "admin_password": "***" if self.admin_password else None,
            "admin_database": self.admin_database,
            "instance_host": self.instance_host,
        }


@dataclass(frozen=True)
class LimitsConfig:
    """Odoo worker and resource limits written to every instance config."""

    memory_hard: int = 2677721600
    memory_soft: int = 1829145600
    request: int = 8192
    time_cpu: int = 600
    time_real: int = 1200
    max_cron_threads: int = 1
    workers: int = 2

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "memory_hard": self.memory_hard,
            "memory_soft": self.memory_soft,
            "request": self.request,
            "time_cpu": self.time_cpu,
            "time_real": self.time_real,
            "max_cron_threads": self.max_cron_threads,
            "workers": self.workers,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class NginxConfig:
    """Nginx site locations and real-time routing."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    log_dir: Path = Path("/var/log/nginx")
    realtime_path: str = "/websocket"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
            "log_dir": str(self.log_dir),
            "realtime_path": self.realtime_path,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance via certbot and the Let's Encrypt live directory."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certbot_bin": self.certbot_bin,
            "live_dir": str(self.live_dir),
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class SourcesConfig:
    """Git repositories cloned for the base and enterprise source trees."""

    odoo_repo: str = "https://www.github.com/odoo/odoo"
    enterprise_repo: str = "https://www.github.com/odoo/enterprise"
    branch: str = "18.0"
    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "odoo_repo": self.odoo_repo,
            "enterprise_repo": self.enterprise_repo,
            "branch": self.branch,
            "git_bin": self.git_bin,
        }


@dataclass(frozen=True)
class ProvisionConfig:
    """Host packages installed by ``system provision``."""

    apt_packages: tuple[str, ...] = ()
    npm_packages: tuple[str, ...] = ()
    python_ppa: str = "ppa:deadsnakes/ppa"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_packages": list(self.apt_packages),
            "npm_packages": list(self.npm_packages),
            "python_ppa": self.python_ppa,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for odooctl."""

    config_file: Path
    service_user: str
    service_group: str
    odoo_home: Path
    instance_config_dir: Path
    logs_dir: Path
    state_dir: Path
    registry_dir: Path
    tool_logs_dir: Path
    templates_dir: Path
    python_version: str
    secret_length: int
    command_timeout: float | None
    ports: PortsConfig
    database: DatabaseConfig
    limits: LimitsConfig
    systemd: SystemdConfig
    nginx: NginxConfig
    tls: TLSConfig
    sources: SourcesConfig
    provision: ProvisionConfig

    @property
    def python_bin(self) -> str:
        """Return the interpreter used to create instance virtualenvs."""
        return f"python{self.python_version}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "service_user": self.service_user,
            "service_group": self.service_group,
            "odoo_home": str(self.odoo_home),
            "instance_config_dir": str(self.instance_config_dir),
            "logs_dir": str(self.logs_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "tool_logs_dir": str(self.tool_logs_dir),
            "templates_dir": str(self.templates_dir),
            "python_version": self.python_version,
            "secret_length": self.secret_length,
            "command_timeout": self.command_timeout,
            "ports": self.ports.to_dict(),
            "database": self.database.to_dict(),
            "limits": self.limits.to_dict(),
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "tls": self.tls.to_dict(),
            "sources": self.sources.to_dict(),
            "provision": self.provision.to_dict(),
        }


DEFAULT_APT_PACKAGES = (
    "python3-pip",
    "python3-dev",
    "python3-venv",
    "libxml2-dev",
    "libxslt1-dev",
    "zlib1g-dev",
    "libsasl2-dev",
    "libldap2-dev",
    "build-essential",
    "libssl-dev",
    "libffi-dev",
    "libjpeg-dev",
    "libpq-dev",
    "liblcms2-dev",
    "libblas-dev",
    "libatlas-base-dev",
    "git",
    "nodejs",
    "npm",
    "node-less",
    "postgresql",
    "nginx",
    "certbot",
    "python3-certbot-nginx",
    "fail2ban",
    "wkhtmltopdf",
)

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/odooctl/config.yml",
    "service_user": "odoo",
    "service_group": None,  # defaults to service_user
    "odoo_home": "/odoo",
    "instance_config_dir": "/etc",
    "logs_dir": "/var/log/odoo",
    "state_dir": "/var/lib/odooctl",
    "registry_dir": None,  # derived from state_dir when absent
    "tool_logs_dir": "/var/log/odooctl",
    "templates_dir": "/etc/odooctl/templates",
    "python_version": "3.11",
    "secret_length": 16,
    "command_timeout": None,
    "ports": {
        "http_base": 8069,
        "gevent_base": 8072,
        "max": MAX_TCP_PORT,
    },
    "database": {
        "host": None,
        "port": 5432,
        "admin_user": None,
        "admin_password": None,
        "admin_database": "postgres",
        "instance_host": "localhost",
    },
    "limits": {
        "memory_hard": 2677721600,
        "memory_soft": 1829145600,
        "request": 8192,
        "time_cpu": 600,
        "time_real": 1200,
        "max_cron_threads": 1,
        "workers": 2,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
        "log_dir": "/var/log/nginx",
        "realtime_path": "/websocket",
    },
    "tls": {
        "certbot_bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "warn_expiry_days": 30,
    },
    "sources": {
        "odoo_repo": "https://www.github.com/odoo/odoo",
        "enterprise_repo": "https://www.github.com/odoo/enterprise",
        "branch": "18.0",
        "git_bin": "git",
    },
    "provision": {
        "apt_packages": list(DEFAULT_APT_PACKAGES),
        "npm_packages": ["less", "less-plugin-clean-css"],
        "python_ppa": "ppa:deadsnakes/ppa",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    maximum = _expect_int(ports_map.get("max"), "ports.max", default=MAX_TCP_PORT)
    if not 1 <= maximum <= MAX_TCP_PORT:
        raise ConfigError(f"ports.max must be between 1 and {MAX_TCP_PORT}.")
    for key in ("http_base", "gevent_base"):
        base = _expect_int(ports_map.get(key), f"ports.{key}", default=1)
        if not 1 <= base <= maximum:
            raise ConfigError(f"ports.{key} must be between 1 and ports.max ({maximum}).")

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    realtime = nginx_map.get("realtime_path")
    if realtime is not None and not str(realtime).startswith("/"):
        raise ConfigError("nginx.realtime_path must start with '/'.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    service_user = str(raw.get("service_user") or "").strip()
    if not service_user:
        raise ConfigError("service_user must be a non-empty string.")
    group_value = raw.get("service_group")
    service_group = str(group_value).strip() if group_value else service_user

    secret_length = _expect_int(raw.get("secret_length"), "secret_length", default=16)
    if secret_length < 8:
        raise ConfigError("secret_length must be at least 8.")

    timeout_value = raw.get("command_timeout")
    command_timeout = (
        None
        if timeout_value is None
        else _expect_positive_float(timeout_value, "command_timeout", default=900.0)
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        http_base=_expect_int(ports_mapping.get("http_base"), "ports.http_base", default=8069),
        gevent_base=_expect_int(
            ports_mapping.get("gevent_base"), "ports.gevent_base", default=8072
        ),
        max=_expect_int(ports_mapping.get("max"), "ports.max", default=MAX_TCP_PORT),
    )

    db_mapping = _as_dict(raw.get("database"), "database")
    db_host = db_mapping.get("host")
    db_password = db_mapping.get("admin_password")
    db_admin = db_mapping.get("admin_user")
    database = DatabaseConfig(
        host=str(db_host) if db_host not in (None, "") else None,
        port=_expect_int(db_mapping.get("port"), "database.port", default=5432),
        admin_user=str(db_admin) if db_admin not in (None, "") else None,
        admin_password=str(db_password) if db_password not in (None, "") else None,
        admin_database=str(db_mapping.get("admin_database", "postgres")),
        instance_host=str(db_mapping.get("instance_host", "localhost")),
    )

    limits_mapping = _as_dict(raw.get("limits"), "limits")
    default_limits = LimitsConfig()
    limits = LimitsConfig(
        **{
            key: _expect_int(limits_mapping.get(key), f"limits.{key}", default=default)
            for key, default in default_limits.to_dict().items()
            if isinstance(default, int)
        }
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
        log_dir=_to_path(nginx_mapping.get("log_dir", "/var/log/nginx")),
        realtime_path=str(nginx_mapping.get("realtime_path", "/websocket")),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    warn_expiry_days = _expect_int(
        tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
    )
    if warn_expiry_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    tls = TLSConfig(
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        live_dir=_to_path(tls_mapping.get("live_dir", "/etc/letsencrypt/live")),
        warn_expiry_days=warn_expiry_days,
    )

    sources_mapping = _as_dict(raw.get("sources"), "sources")
    defaults_sources = SourcesConfig()
    sources = SourcesConfig(
        odoo_repo=str(sources_mapping.get("odoo_repo", defaults_sources.odoo_repo)),
        enterprise_repo=str(
            sources_mapping.get("enterprise_repo", defaults_sources.enterprise_repo)
        ),
        branch=str(sources_mapping.get("branch", defaults_sources.branch)),
        git_bin=str(sources_mapping.get("git_bin", defaults_sources.git_bin)),
    )

    provision_mapping = _as_dict(raw.get("provision"), "provision")
    provision = ProvisionConfig(
        apt_packages=_as_str_tuple(
            provision_mapping.get("apt_packages", []), "provision.apt_packages"
        ),
        npm_packages=_as_str_tuple(
            provision_mapping.get("npm_packages", []), "provision.npm_packages"
        ),
        python_ppa=str(provision_mapping.get("python_ppa", "ppa:deadsnakes/ppa")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        service_user=service_user,
        service_group=service_group,
        odoo_home=_to_path(raw.get("odoo_home")),
        instance_config_dir=_to_path(raw.get("instance_config_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        tool_logs_dir=_to_path(raw.get("tool_logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        python_version=str(raw.get("python_version", "3.11")),
        secret_length=secret_length,
        command_timeout=command_timeout,
        ports=ports,
        database=database,
        limits=limits,
        systemd=systemd,
        nginx=nginx,
        tls=tls,
        sources=sources,
        provision=provision,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list of strings.")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        items.append(item.strip())
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "LimitsConfig",
    "NginxConfig",
    "PortsConfig",
    "ProvisionConfig",
    "SourcesConfig",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
