"""Shared fixtures: a temporary host layout with fake database and installers."""

from __future__ import annotations

import grp
import os
import pwd
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from odooctl.config import AppConfig, load_config
from odooctl.instances import InstancePaths, InstanceRegistry
from odooctl.lifecycle import HostEnvironment
from odooctl.ports import PortAllocator
from odooctl.providers.certbot import CertificatePaths
from odooctl.providers.nginx import NginxProvider
from odooctl.providers.postgres import SYSTEM_DATABASES, PostgresError
from odooctl.providers.systemd import SystemdProvider
from odooctl.state import StateRegistry
from odooctl.templates import TemplateEngine

CURRENT_USER = pwd.getpwuid(os.getuid()).pw_name
CURRENT_GROUP = grp.getgrgid(os.getgid()).gr_name

SYSTEMCTL_STUB = """#!/bin/sh
echo "$*" >> "{log}"
if [ "$1" = "list-units" ]; then
  for last; do :; done
  if [ -f "{unit_dir}/$last" ]; then
    echo "$last loaded active running Odoo"
  fi
fi
exit 0
"""

RECORDING_STUB = """#!/bin/sh
echo "$*" >> "{log}"
exit 0
"""


def create_certificate(
    directory: Path,
    domain: str,
    *,
    days: int = 90,
    names: list[str] | None = None,
) -> tuple[Path, Path]:
    """Write a self-signed certificate and key for *domain* into *directory*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=2))
        .not_valid_after(now + timedelta(days=days))
    )
    alt_names = names if names is not None else [domain]
    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in alt_names]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


class FakeDatabase:
    """In-memory stand-in for :class:`PostgresProvider`."""

    def __init__(self) -> None:
        """Start with no roles and only the system databases."""
        self.roles: dict[str, str] = {}
        self.databases: dict[str, str] = {name: "postgres" for name in SYSTEM_DATABASES}
        self.terminated: list[str] = []

    def role_exists(self, role: str) -> bool:
        return role in self.roles

    def create_role(self, role: str, password: str) -> None:
        if role in self.roles:
            raise PostgresError(f"Database role '{role}' already exists.")
        self.roles[role] = password

    def databases_owned_by(self, role: str) -> list[str]:
        return sorted(name for name, owner in self.databases.items() if owner == role)

    def terminate_connections(self, database: str) -> int:
        self.terminated.append(database)
        return 0

    def drop_database(self, database: str) -> None:
        self.databases.pop(database, None)

    def drop_role(self, role: str) -> None:
        self.roles.pop(role, None)

    def is_system_database(self, database: str) -> bool:
        return database in SYSTEM_DATABASES


class FakeRuntime:
    """Creates the venv interpreter path without running pip."""

    def __init__(self) -> None:
        """Record installs per instance."""
        self.installed: list[str] = []

    def create(self, paths: InstancePaths, *, user: str | None = None) -> bool:
        paths.python_bin.parent.mkdir(parents=True, exist_ok=True)
        paths.python_bin.write_text("", encoding="utf-8")
        return True

    def install(
        self, paths: InstancePaths, requirements: Path, *, user: str | None = None
    ) -> list[str]:
        self.installed.append(paths.name)
        return ["pip", "requirements", "extras"]


class FakeSources:
    """Pretends to clone by creating the destination directory."""

    def __init__(self) -> None:
        """Record clone requests."""
        self.clones: list[tuple[str, Path, str]] = []

    def clone(
        self, repository: str, destination: Path, *, branch: str, user: str | None = None
    ) -> bool:
        destination.mkdir(parents=True, exist_ok=True)
        self.clones.append((repository, destination, branch))
        return True


class FakeCertificates:
    """Issues self-signed certificates into the configured live directory."""

    def __init__(self, live_dir: Path) -> None:
        """Bind to *live_dir*."""
        self.live_dir = live_dir
        self.requests: list[tuple[str, str]] = []

    def obtain(self, domain: str, email: str) -> CertificatePaths:
        self.requests.append((domain, email))
        fullchain, privkey = create_certificate(self.live_dir / domain, domain)
        return CertificatePaths(domain=domain, fullchain=fullchain, privkey=privkey)


def write_stub(bin_dir: Path, name: str, content: str) -> Path:
    """Write an executable shell stub named *name*."""
    bin_dir.mkdir(parents=True, exist_ok=True)
    path = bin_dir / name
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


def host_config_payload(tmp_path: Path) -> dict[str, object]:
    """Return a config mapping that keeps every path under *tmp_path*."""
    bin_dir = tmp_path / "bin"
    return {
        "service_user": CURRENT_USER,
        "service_group": CURRENT_GROUP,
        "odoo_home": str(tmp_path / "odoo"),
        "instance_config_dir": str(tmp_path / "etc"),
        "logs_dir": str(tmp_path / "log" / "odoo"),
        "state_dir": str(tmp_path / "state"),
        "tool_logs_dir": str(tmp_path / "log" / "odooctl"),
        "templates_dir": str(tmp_path / "templates"),
        "systemd": {
            "unit_dir": str(tmp_path / "systemd"),
            "systemctl_bin": str(bin_dir / "systemctl"),
        },
        "nginx": {
            "sites_available": str(tmp_path / "nginx" / "sites-available"),
            "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
            "nginx_bin": str(bin_dir / "nginx"),
            "log_dir": str(tmp_path / "log" / "nginx"),
        },
        "tls": {
            "certbot_bin": str(bin_dir / "certbot"),
            "live_dir": str(tmp_path / "letsencrypt" / "live"),
        },
        "sources": {"git_bin": str(bin_dir / "git")},
    }


def prepare_host(tmp_path: Path) -> Path:
    """Create stub binaries and the base source tree; return the config file."""
    bin_dir = tmp_path / "bin"
    write_stub(
        bin_dir,
        "systemctl",
        SYSTEMCTL_STUB.format(log=tmp_path / "systemctl.log", unit_dir=tmp_path / "systemd"),
    )
    write_stub(bin_dir, "nginx", RECORDING_STUB.format(log=tmp_path / "nginx.log"))
    write_stub(bin_dir, "certbot", RECORDING_STUB.format(log=tmp_path / "certbot.log"))
    write_stub(bin_dir, "git", RECORDING_STUB.format(log=tmp_path / "git.log"))

    odoo_home = tmp_path / "odoo"
    odoo_home.mkdir(parents=True, exist_ok=True)
    (odoo_home / "requirements.txt").write_text("psycopg2\n", encoding="utf-8")

    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(host_config_payload(tmp_path)), encoding="utf-8")
    return config_file


def build_host(config: AppConfig, database: FakeDatabase) -> HostEnvironment:
    """Wire a host with real file-based providers and in-memory fakes."""
    templates = TemplateEngine.with_overrides(config.templates_dir)
    return HostEnvironment(
        config=config,
        registry=InstanceRegistry(config),
        templates=templates,
        database=database,
        services=SystemdProvider(templates=templates, systemctl_bin=config.systemd.systemctl_bin),
        proxy=NginxProvider(templates=templates, nginx_bin=config.nginx.nginx_bin),
        certificates=FakeCertificates(config.tls.live_dir),
        runtime=FakeRuntime(),
        sources=FakeSources(),
        ports=PortAllocator(probe=lambda port: False),
        state=StateRegistry(config.registry_dir),
    )


@pytest.fixture
def host_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted in a temporary directory."""
    config_file = prepare_host(tmp_path)
    return load_config(config_file=config_file, env={})


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Return an empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def host(host_config: AppConfig, fake_db: FakeDatabase) -> HostEnvironment:
    """Return a host environment suitable for lifecycle tests."""
    return build_host(host_config, fake_db)
