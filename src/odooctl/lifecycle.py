"""Create, list and remove Odoo instances.

:class:`InstanceManager` sequences the database, filesystem, runtime,
systemd and nginx steps for one instance. Every collaborator lives on a
:class:`HostEnvironment`, so tests can swap the real host for fakes.

Creation is fail-fast: the first failing step raises and earlier steps are
left in place. ``remove`` deletes whatever exists and can clean up after a
partial creation.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from . import credentials
from .config import AppConfig
from .errors import NotFoundError, ValidationError
from .instances import (
    InstancePaths,
    InstanceRegistry,
    require_domain,
    require_email,
    require_name,
)
from .logging import OperationScope
from .ports import PortAllocator
from .providers.certbot import CertbotError, CertbotProvider, CertificatePaths
from .providers.git import GitProvider
from .providers.nginx import NginxApplyResult, NginxProvider
from .providers.postgres import PostgresProvider
from .providers.systemd import SystemdProvider
from .providers.virtualenv import VirtualenvProvider
from .state import StateRegistry
from .templates import TemplateEngine
from .tls import CertificateReport, inspect_certificate

CONFIG_TEMPLATE = "odoo/instance.conf.j2"
CONFIG_MODE = 0o600


class DatabaseAdmin(Protocol):
    """Role and database administration."""

    def role_exists(self, role: str) -> bool: ...
    def create_role(self, role: str, password: str) -> None: ...
    def databases_owned_by(self, role: str) -> list[str]: ...
    def terminate_connections(self, database: str) -> int: ...
    def drop_database(self, database: str) -> None: ...
    def drop_role(self, role: str) -> None: ...
    def is_system_database(self, database: str) -> bool: ...


class ServiceManager(Protocol):
    """Unit file rendering and service control."""

    def render_unit(self, paths: InstancePaths, context: Mapping[str, object]) -> bool: ...
    def enable(self, paths: InstancePaths) -> object: ...
    def start(self, paths: InstancePaths) -> object: ...
    def stop(self, paths: InstancePaths) -> object: ...
    def disable(self, paths: InstancePaths) -> object: ...
    def is_loaded(self, paths: InstancePaths) -> bool: ...
    def reset_failed(self, paths: InstancePaths) -> bool: ...
    def remove(self, paths: InstancePaths) -> bool: ...


class ProxyManager(Protocol):
    """Reverse-proxy site management."""

    def apply(self, paths: InstancePaths, context: Mapping[str, object]) -> NginxApplyResult: ...
    def remove(self, paths: InstancePaths) -> bool: ...
    def reload(self) -> object: ...


class CertificateIssuer(Protocol):
    """ACME certificate issuance."""

    def obtain(self, domain: str, email: str) -> CertificatePaths: ...


class RuntimeInstaller(Protocol):
    """Per-instance Python environment setup."""

    def create(self, paths: InstancePaths, *, user: str | None = None) -> bool: ...
    def install(
        self, paths: InstancePaths, requirements: Path, *, user: str | None = None
    ) -> list[str]: ...


class SourceFetcher(Protocol):
    """Source tree checkout."""

    def clone(
        self, repository: str, destination: Path, *, branch: str, user: str | None = None
    ) -> bool: ...


def _chown(path: Path, user: str, group: str) -> None:
    shutil.chown(path, user=user, group=group)


@dataclass
class HostEnvironment:
    """Everything the lifecycle manager touches on the host."""

    config: AppConfig
    registry: InstanceRegistry
    templates: TemplateEngine
    database: DatabaseAdmin
    services: ServiceManager
    proxy: ProxyManager
    certificates: CertificateIssuer
    runtime: RuntimeInstaller
    sources: SourceFetcher
    ports: PortAllocator
    state: StateRegistry
    secret_factory: Callable[[int], str] = credentials.generate
    chown: Callable[[Path, str, str], None] = _chown
    verify_certificate: Callable[..., CertificateReport] = inspect_certificate

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        templates: TemplateEngine | None = None,
    ) -> HostEnvironment:
        """Wire the real providers for *config*."""
        templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        timeout = config.command_timeout
        db = config.database
        return cls(
            config=config,
            registry=InstanceRegistry(config),
            templates=templates,
            database=PostgresProvider(
                host=db.host,
                port=db.port,
                user=db.admin_user,
                password=db.admin_password,
                dbname=db.admin_database,
            ),
            services=SystemdProvider(
                templates=templates,
                systemctl_bin=config.systemd.systemctl_bin,
                timeout=timeout,
            ),
            proxy=NginxProvider(
                templates=templates,
                nginx_bin=config.nginx.nginx_bin,
                timeout=timeout,
            ),
            certificates=CertbotProvider(
                certbot_bin=config.tls.certbot_bin,
                live_dir=config.tls.live_dir,
                timeout=timeout,
            ),
            runtime=VirtualenvProvider(python_bin=config.python_bin, timeout=timeout),
            sources=GitProvider(git_bin=config.sources.git_bin, timeout=timeout),
            ports=PortAllocator(max_port=config.ports.max),
            state=StateRegistry(config.registry_dir),
        )


@dataclass(frozen=True)
class CreateRequest:
    """Operator input for a new instance."""

    name: str
    domain: str
    enterprise: bool = False
    ssl: bool = False
    email: str | None = None


@dataclass
class CreateResult:
    """Everything produced by a successful create."""

    name: str
    domain: str
    paths: InstancePaths
    http_port: int
    gevent_port: int
    admin_secret: str
    db_secret: str
    enterprise: bool
    ssl: bool
    certificate: CertificateReport | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def url(self) -> str:
        """Return the public URL of the instance."""
        scheme = "https" if self.ssl else "http"
        return f"{scheme}://{self.domain}"

    def to_dict(self, *, include_secrets: bool = True) -> dict[str, object]:
        """Return a serialisable representation; secrets only when asked."""
        data: dict[str, object] = {
            "name": self.name,
            "domain": self.domain,
            "url": self.url,
            "http_port": self.http_port,
            "gevent_port": self.gevent_port,
            "enterprise": self.enterprise,
            "ssl": self.ssl,
            "service": self.paths.service_name,
            "paths": self.paths.to_dict(),
            "warnings": list(self.warnings),
        }
        if self.certificate is not None:
            data["certificate"] = self.certificate.to_dict()
        if include_secrets:
            data["admin_secret"] = self.admin_secret
            data["db_user"] = self.name
            data["db_secret"] = self.db_secret
        return data


@dataclass
class RemoveResult:
    """What ``remove`` actually deleted."""

    name: str
    service_stopped: bool = False
    unit_removed: bool = False
    databases_dropped: list[str] = field(default_factory=list)
    databases_skipped: list[str] = field(default_factory=list)
    role_dropped: bool = False
    files_removed: list[str] = field(default_factory=list)
    proxy_removed: bool = False
    proxy_reloaded: bool = False
    metadata_removed: bool = False

    @property
    def changed(self) -> int:
        """Return the number of artifacts deleted."""
        return (
            int(self.unit_removed)
            + len(self.databases_dropped)
            + int(self.role_dropped)
            + len(self.files_removed)
            + int(self.proxy_removed)
            + int(self.metadata_removed)
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "service_stopped": self.service_stopped,
            "unit_removed": self.unit_removed,
            "databases_dropped": list(self.databases_dropped),
            "databases_skipped": list(self.databases_skipped),
            "role_dropped": self.role_dropped,
            "files_removed": list(self.files_removed),
            "proxy_removed": self.proxy_removed,
            "proxy_reloaded": self.proxy_reloaded,
            "metadata_removed": self.metadata_removed,
            "changed": self.changed,
        }


@dataclass
class InstanceSummary:
    """Listing row for one instance."""

    name: str
    domain: str | None
    http_port: int | None
    gevent_port: int | None
    service: str
    enterprise: bool | None
    ssl: bool | None
    config_file: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "domain": self.domain,
            "http_port": self.http_port,
            "gevent_port": self.gevent_port,
            "service": self.service,
            "enterprise": self.enterprise,
            "ssl": self.ssl,
            "config_file": str(self.config_file),
        }


class InstanceManager:
    """Sequence the create, list and remove operations."""

    def __init__(self, host: HostEnvironment) -> None:
        """Bind the manager to *host*."""
        self._host = host

    @property
    def host(self) -> HostEnvironment:
        """Return the host environment in use."""
        return self._host

    # ------------------------------------------------------------------
    def list_instances(self) -> list[InstanceSummary]:
        """Return a summary for every instance with a config file."""
        return [self.show(name) for name in self._host.registry.list_instances()]

    def show(self, name: str) -> InstanceSummary:
        """Return the summary for *name* or raise :class:`NotFoundError`."""
        registry = self._host.registry
        name = registry.require(name)
        paths = registry.resolve(name)
        try:
            options = registry.read_config(name)
        except (NotFoundError, ValidationError):
            options = {}
        metadata = self._host.state.get_instance(name) or {}
        return InstanceSummary(
            name=name,
            domain=_as_optional_str(metadata.get("domain")),
            http_port=_as_optional_int(options.get("http_port")),
            gevent_port=_as_optional_int(options.get("gevent_port")),
            service=paths.service_name,
            enterprise=_as_optional_bool(metadata.get("enterprise")),
            ssl=_as_optional_bool(metadata.get("ssl")),
            config_file=paths.config_file,
        )

    # ------------------------------------------------------------------
    def create(self, request: CreateRequest, op: OperationScope | None = None) -> CreateResult:
        """Create the instance described by *request*.

        Raises :class:`ValidationError` for bad input,
        :class:`~odooctl.errors.DatabaseError` when the role already exists and
        the provider specific error of whichever later step fails.
        """
        host = self._host
        config = host.config
        name = require_name(request.name)
        domain = require_domain(request.domain)
        email: str | None = None
        if request.ssl:
            if not request.email:
                raise ValidationError("An e-mail address is required to request a certificate.")
            email = require_email(request.email)
        paths = host.registry.resolve(name)
        user = config.service_user

        admin_secret = host.secret_factory(config.secret_length)
        db_secret = host.secret_factory(config.secret_length)

        host.database.create_role(name, db_secret)
        _step(op, "postgres.role", detail={"role": name})

        self._create_directories(paths, enterprise=request.enterprise)
        _step(op, "filesystem.directories", detail={"root": paths.root})
        if request.enterprise:
            host.sources.clone(
                config.sources.enterprise_repo,
                paths.enterprise_addons,
                branch=config.sources.branch,
                user=user,
            )
            _step(op, "git.enterprise", detail={"path": paths.enterprise_addons})

        host.runtime.create(paths, user=user)
        installed = host.runtime.install(paths, config.odoo_home / "requirements.txt", user=user)
        _step(op, "virtualenv", detail={"path": paths.venv, "steps": installed})

        taken = host.registry.used_ports()
        http_port = host.ports.find_free_port(config.ports.http_base, exclude=taken)
        gevent_port = host.ports.find_free_port(
            config.ports.gevent_base, exclude=taken | {http_port}
        )
        _step(op, "ports", detail={"http": http_port, "gevent": gevent_port})

        self._write_config(
            paths,
            admin_secret=admin_secret,
            db_secret=db_secret,
            http_port=http_port,
            gevent_port=gevent_port,
            enterprise=request.enterprise,
            ssl=request.ssl,
        )
        _step(op, "config.write", detail={"path": paths.config_file})

        host.services.render_unit(paths, self._unit_context(paths))
        host.services.enable(paths)
        host.services.start(paths)
        _step(op, "systemd.start", detail={"unit": paths.service_name})

        host.proxy.apply(paths, self._site_context(paths, domain, http_port, gevent_port))
        _step(op, "nginx.site", detail={"path": paths.nginx_available, "ssl": False})

        result = CreateResult(
            name=name,
            domain=domain,
            paths=paths,
            http_port=http_port,
            gevent_port=gevent_port,
            admin_secret=admin_secret,
            db_secret=db_secret,
            enterprise=request.enterprise,
            ssl=request.ssl,
        )

        if request.ssl and email is not None:
            issued = host.certificates.obtain(domain, email)
            _step(op, "certbot.obtain", detail={"certificate": issued.fullchain})
            report = host.verify_certificate(
                issued.fullchain,
                domain,
                warn_expiry_days=config.tls.warn_expiry_days,
            )
            if report.has_errors:
                raise CertbotError(
                    f"Certificate for {domain} failed verification: " + "; ".join(report.errors)
                )
            result.certificate = report
            result.warnings.extend(report.warnings)
            host.proxy.apply(
                paths,
                self._site_context(paths, domain, http_port, gevent_port, certificate=issued),
            )
            _step(op, "nginx.site", detail={"path": paths.nginx_available, "ssl": True})

        host.state.upsert_instance(
            name,
            {
                "domain": domain,
                "http_port": http_port,
                "gevent_port": gevent_port,
                "enterprise": request.enterprise,
                "ssl": request.ssl,
                "email": email,
                "created_at": datetime.now(UTC).isoformat(timespec="seconds"),
                "paths": paths.to_dict(),
            },
        )
        _step(op, "state.record", detail={"name": name})
        return result

    # ------------------------------------------------------------------
    def remove(
        self,
        name: str,
        op: OperationScope | None = None,
        *,
        missing_ok: bool = True,
    ) -> RemoveResult:
        """Delete every artifact derivable from *name*.

        With ``missing_ok=False`` an instance absent from the listing raises
        :class:`NotFoundError` before anything is touched. Each deletion checks
        for existence first, so repeating a remove changes nothing.
        """
        host = self._host
        name = require_name(name)
        if not missing_ok and not host.registry.exists(name):
            raise NotFoundError(f"Instance '{name}' not found.")
        paths = host.registry.resolve(name)
        result = RemoveResult(name=name)

        if host.services.is_loaded(paths):
            host.services.stop(paths)
            if paths.unit_file.exists():
                host.services.disable(paths)
            result.service_stopped = True
            _step(op, "systemd.stop", detail={"unit": paths.service_name})
        result.unit_removed = host.services.remove(paths)
        if result.unit_removed:
            _step(op, "systemd.remove", detail={"path": paths.unit_file})
        host.services.reset_failed(paths)

        for database in host.database.databases_owned_by(name):
            if host.database.is_system_database(database):
                result.databases_skipped.append(database)
                _step(op, "postgres.drop", status="skipped", detail={"database": database})
                continue
            host.database.terminate_connections(database)
            host.database.drop_database(database)
            result.databases_dropped.append(database)
            _step(op, "postgres.drop", detail={"database": database})

        if host.database.role_exists(name):
            host.database.drop_role(name)
            result.role_dropped = True
            _step(op, "postgres.role.drop", detail={"role": name})

        for path in (paths.config_file, paths.log_file):
            if path.is_file() or path.is_symlink():
                path.unlink()
                result.files_removed.append(str(path))
        if paths.root.is_dir():
            shutil.rmtree(paths.root)
            result.files_removed.append(str(paths.root))
        if result.files_removed:
            _step(op, "filesystem.remove", detail={"paths": result.files_removed})

        result.proxy_removed = host.proxy.remove(paths)
        if result.proxy_removed:
            host.proxy.reload()
            result.proxy_reloaded = True
            _step(op, "nginx.remove", detail={"path": paths.nginx_available})

        result.metadata_removed = host.state.remove_instance(name)
        return result

    # ------------------------------------------------------------------
    def _create_directories(self, paths: InstancePaths, *, enterprise: bool) -> None:
        config = self._host.config
        user, group = config.service_user, config.service_group
        targets = [paths.root, paths.custom_addons.parent, paths.custom_addons]
        if enterprise:
            targets.append(paths.enterprise_root)
        for directory in targets:
            directory.mkdir(parents=True, exist_ok=True)
            self._host.chown(directory, user, group)

    def _write_config(
        self,
        paths: InstancePaths,
        *,
        admin_secret: str,
        db_secret: str,
        http_port: int,
        gevent_port: int,
        enterprise: bool,
        ssl: bool,
    ) -> None:
        config = self._host.config
        addons_path = [str(config.odoo_home / "addons"), str(paths.custom_addons)]
        if enterprise:
            addons_path.append(str(paths.enterprise_addons))
        context: dict[str, object] = {
            "instance_name": paths.name,
            "admin_secret": admin_secret,
            "db_host": config.database.instance_host,
            "db_port": config.database.port,
            "db_user": paths.name,
            "db_secret": db_secret,
            "addons_path": addons_path,
            "http_port": http_port,
            "gevent_port": gevent_port,
            "logfile": str(paths.log_file),
            "limits": config.limits.to_dict(),
            "ssl": ssl,
        }
        _require_single_line(context)

        logs_dir = paths.log_file.parent
        logs_dir.mkdir(parents=True, exist_ok=True)
        self._host.chown(logs_dir, config.service_user, config.service_group)

        self._host.templates.render_to_path(
            CONFIG_TEMPLATE, paths.config_file, context, mode=CONFIG_MODE
        )
        self._host.chown(paths.config_file, config.service_user, config.service_group)

    def _unit_context(self, paths: InstancePaths) -> dict[str, object]:
        config = self._host.config
        return {
            "instance_name": paths.name,
            "service_name": paths.service_name.removesuffix(".service"),
            "service_user": config.service_user,
            "service_group": config.service_group,
            "working_directory": str(config.odoo_home),
            "python_bin": str(paths.python_bin),
            "odoo_bin": str(config.odoo_home / "odoo-bin"),
            "config_file": str(paths.config_file),
        }

    def _site_context(
        self,
        paths: InstancePaths,
        domain: str,
        http_port: int,
        gevent_port: int,
        *,
        certificate: CertificatePaths | None = None,
    ) -> dict[str, object]:
        return {
            "instance_name": paths.name,
            "domain": domain,
            "http_port": http_port,
            "gevent_port": gevent_port,
            "realtime_path": self._host.config.nginx.realtime_path,
            "access_log": str(paths.nginx_access_log),
            "error_log": str(paths.nginx_error_log),
            "ssl": certificate is not None,
            "ssl_certificate": str(certificate.fullchain) if certificate else "",
            "ssl_certificate_key": str(certificate.privkey) if certificate else "",
        }


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _require_single_line(context: Mapping[str, object]) -> None:
    for key, value in context.items():
        values = value if isinstance(value, list) else [value]
        for item in values:
            if isinstance(item, str) and ("\n" in item or "\r" in item):
                raise ValidationError(f"Config value for {key} must be a single line.")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_optional_str(value: object) -> str | None:
    return str(value) if value not in (None, "") else None


def _as_optional_bool(value: object) -> bool | None:
    return value if isinstance(value, bool) else None


__all__ = [
    "CertificateIssuer",
    "CreateRequest",
    "CreateResult",
    "DatabaseAdmin",
    "HostEnvironment",
    "InstanceManager",
    "InstanceSummary",
    "ProxyManager",
    "RemoveResult",
    "RuntimeInstaller",
    "ServiceManager",
    "SourceFetcher",
]
