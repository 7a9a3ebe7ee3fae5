"""Tests for the instance lifecycle manager."""
from __future__ import annotations

import configparser
from pathlib import Path

import pytest
from conftest import FakeDatabase, FakeSources, build_host, create_certificate, write_stub

from odooctl.config import AppConfig
from odooctl.errors import DatabaseError, NotFoundError, ValidationError
from odooctl.lifecycle import CreateRequest, HostEnvironment, InstanceManager
from odooctl.logging import StructuredLogger
from odooctl.ports import PortAllocator
from odooctl.providers.certbot import CertbotError, CertificatePaths
from odooctl.providers.nginx import NginxError


def _read_options(path: Path) -> configparser.SectionProxy:
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path, encoding="utf-8")
    return parser["options"]


def _create_demo(manager: InstanceManager, **kwargs: object) -> object:
    request = CreateRequest(name="demo", domain="demo.example.com", **kwargs)  # type: ignore[arg-type]
    return manager.create(request)


def test_create_demo_end_to_end(host: HostEnvironment, tmp_path: Path) -> None:
    """Config, nginx site and enabled unit exist after creating an instance."""
    manager = InstanceManager(host)
    result = _create_demo(manager)
    paths = host.registry.resolve("demo")

    options = _read_options(paths.config_file)
    http_port = int(options["http_port"])
    gevent_port = int(options["gevent_port"])
    assert http_port != gevent_port
    assert http_port >= host.config.ports.http_base
    assert gevent_port >= host.config.ports.gevent_base
    assert options["db_user"] == "demo"
    assert options["db_password"] == host.database.roles["demo"]  # type: ignore[attr-defined]
    assert options["admin_passwd"] == result.admin_secret  # type: ignore[attr-defined]
    assert options["addons_path"] == f"{host.config.odoo_home / 'addons'},{paths.custom_addons}"
    assert "proxy_mode" not in options
    assert oct(paths.config_file.stat().st_mode & 0o777) == "0o600"

    site = paths.nginx_available.read_text(encoding="utf-8")
    assert "server_name demo.example.com;" in site
    assert f"server 127.0.0.1:{http_port};" in site
    assert f"server 127.0.0.1:{gevent_port};" in site
    assert "location /websocket" in site
    assert "listen 443" not in site
    assert paths.nginx_enabled.is_symlink()

    assert paths.unit_file.exists()
    unit = paths.unit_file.read_text(encoding="utf-8")
    assert f"ExecStart={paths.python_bin} {host.config.odoo_home / 'odoo-bin'} -c {paths.config_file}" in unit
    assert "Restart=on-failure" in unit
    calls = (tmp_path / "systemctl.log").read_text(encoding="utf-8").splitlines()
    assert f"enable {paths.service_name}" in calls
    assert f"start {paths.service_name}" in calls

    nginx_calls = (tmp_path / "nginx.log").read_text(encoding="utf-8").splitlines()
    assert nginx_calls == ["-t", "-s reload"]

    assert paths.custom_addons.is_dir()
    assert not paths.enterprise_root.exists()
    assert host.registry.list_instances() == ["demo"]

    metadata = host.state.get_instance("demo")
    assert metadata is not None
    assert metadata["domain"] == "demo.example.com"
    assert metadata["http_port"] == http_port


def test_create_twice_fails_with_database_error(host: HostEnvironment) -> None:
    """Creating the same instance again fails because the role exists."""
    manager = InstanceManager(host)
    _create_demo(manager)

    with pytest.raises(DatabaseError):
        _create_demo(manager)


def test_create_rejects_invalid_input_before_touching_database(
    host: HostEnvironment,
    fake_db: FakeDatabase,
) -> None:
    """Malformed names, domains and e-mails raise ValidationError."""
    manager = InstanceManager(host)

    with pytest.raises(ValidationError):
        manager.create(CreateRequest(name="bad name", domain="demo.example.com"))
    with pytest.raises(ValidationError):
        manager.create(CreateRequest(name="demo", domain="-bad-.example"))
    with pytest.raises(ValidationError):
        manager.create(
            CreateRequest(name="demo", domain="demo.example.com", ssl=True, email="nope")
        )
    with pytest.raises(ValidationError):
        manager.create(CreateRequest(name="demo", domain="demo.example.com", ssl=True))

    assert fake_db.roles == {}


def test_second_instance_gets_distinct_ports(host: HostEnvironment) -> None:
    """Ports recorded by existing instances are not handed out again."""
    manager = InstanceManager(host)
    first = _create_demo(manager)
    second = manager.create(CreateRequest(name="other", domain="other.example.com"))

    used = {first.http_port, first.gevent_port}  # type: ignore[attr-defined]
    assert second.http_port not in used
    assert second.gevent_port not in used
    assert second.http_port != second.gevent_port


def test_create_skips_busy_ports(host_config: AppConfig, fake_db: FakeDatabase) -> None:
    """Ports with a listener are skipped."""
    busy = {8069, 8070, 8072}
    host = build_host(host_config, fake_db)
    host.ports = PortAllocator(probe=lambda port: port in busy)

    result = InstanceManager(host).create(
        CreateRequest(name="demo", domain="demo.example.com")
    )

    assert result.http_port == 8071
    assert result.gevent_port == 8073


def test_create_with_enterprise_clones_and_extends_addons_path(host: HostEnvironment) -> None:
    """The enterprise tree is cloned and appended to addons_path."""
    manager = InstanceManager(host)
    _create_demo(manager, enterprise=True)
    paths = host.registry.resolve("demo")

    sources = host.sources
    assert isinstance(sources, FakeSources)
    assert sources.clones == [
        (host.config.sources.enterprise_repo, paths.enterprise_addons, host.config.sources.branch)
    ]
    options = _read_options(paths.config_file)
    assert options["addons_path"].split(",")[-1] == str(paths.enterprise_addons)


def test_create_with_ssl_renders_https_site(host: HostEnvironment) -> None:
    """SSL creation issues a certificate and re-renders the site for HTTPS."""
    manager = InstanceManager(host)
    result = _create_demo(manager, ssl=True, email="admin@example.com")
    paths = host.registry.resolve("demo")

    site = paths.nginx_available.read_text(encoding="utf-8")
    live = host.config.tls.live_dir / "demo.example.com"
    assert f"ssl_certificate {live / 'fullchain.pem'};" in site
    assert "rewrite ^(.*) https://$host$1 permanent;" in site
    assert "Strict-Transport-Security" in site
    assert "proxy_cookie_flags session_id samesite=lax secure;" in site
    assert "gzip on;" in site

    options = _read_options(paths.config_file)
    assert options["proxy_mode"] == "True"
    assert options["dbfilter"] == "^%h$"
    assert result.url == "https://demo.example.com"  # type: ignore[attr-defined]
    assert result.certificate is not None  # type: ignore[attr-defined]


def test_create_with_ssl_rejects_certificate_for_other_domain(host: HostEnvironment) -> None:
    """A certificate that does not cover the domain aborts creation."""

    class WrongIssuer:
        def obtain(self, domain: str, email: str) -> CertificatePaths:
            cert, key = create_certificate(host.config.tls.live_dir / domain, "other.example.com")
            return CertificatePaths(domain=domain, fullchain=cert, privkey=key)

    host.certificates = WrongIssuer()
    manager = InstanceManager(host)

    with pytest.raises(CertbotError, match="do not cover demo.example.com"):
        _create_demo(manager, ssl=True, email="admin@example.com")


def test_create_fails_fast_when_nginx_rejects_config(
    host: HostEnvironment,
    tmp_path: Path,
) -> None:
    """A failing ``nginx -t`` aborts creation and leaves earlier steps in place."""
    nginx_bin = Path(host.config.nginx.nginx_bin)
    nginx_bin.write_text("#!/bin/sh\necho 'bad config' >&2\nexit 1\n", encoding="utf-8")
    manager = InstanceManager(host)

    with pytest.raises(NginxError, match="bad config"):
        _create_demo(manager)

    paths = host.registry.resolve("demo")
    assert paths.config_file.exists()
    assert paths.unit_file.exists()
    assert not paths.nginx_available.exists()
    assert not paths.nginx_enabled.is_symlink()
    assert host.state.get_instance("demo") is None


def test_create_records_steps_without_secrets(host: HostEnvironment, tmp_path: Path) -> None:
    """Operation steps are logged and never contain generated secrets."""
    logger = StructuredLogger(tmp_path / "oplog")
    manager = InstanceManager(host)

    with logger.operation("instance create") as op:
        result = manager.create(CreateRequest(name="demo", domain="demo.example.com"), op)
        op.success("done", context=result.to_dict(include_secrets=False))

    record = (tmp_path / "oplog" / "operations.jsonl").read_text(encoding="utf-8")
    step_names = [step["name"] for step in op.steps]
    assert step_names[:2] == ["postgres.role", "filesystem.directories"]
    assert "nginx.site" in step_names
    assert result.admin_secret not in record
    assert result.db_secret not in record


def test_remove_deletes_every_artifact(host: HostEnvironment, fake_db: FakeDatabase) -> None:
    """Remove drops owned databases, the role and every file."""
    manager = InstanceManager(host)
    _create_demo(manager)
    paths = host.registry.resolve("demo")
    paths.log_file.write_text("log", encoding="utf-8")
    fake_db.databases["demo_prod"] = "demo"
    fake_db.databases["demo_test"] = "demo"
    fake_db.databases["unrelated"] = "someone"

    result = manager.remove("demo", missing_ok=False)

    assert result.service_stopped is True
    assert result.unit_removed is True
    assert result.databases_dropped == ["demo_prod", "demo_test"]
    assert fake_db.terminated == ["demo_prod", "demo_test"]
    assert "unrelated" in fake_db.databases
    assert result.role_dropped is True
    assert "demo" not in fake_db.roles
    assert result.proxy_removed is True
    assert result.proxy_reloaded is True
    assert result.metadata_removed is True
    for path in (paths.config_file, paths.log_file, paths.root, paths.unit_file):
        assert not path.exists()
    assert not paths.nginx_available.exists()
    assert not paths.nginx_enabled.is_symlink()


def test_remove_then_list_omits_instance(host: HostEnvironment) -> None:
    """After removal the instance no longer appears in the listing."""
    manager = InstanceManager(host)
    _create_demo(manager)
    manager.create(CreateRequest(name="other", domain="other.example.com"))

    manager.remove("demo")

    assert host.registry.list_instances() == ["other"]
    assert [summary.name for summary in manager.list_instances()] == ["other"]


def test_remove_is_idempotent(host: HostEnvironment, tmp_path: Path) -> None:
    """A second remove deletes nothing and does not fail."""
    manager = InstanceManager(host)
    _create_demo(manager)
    manager.remove("demo")
    nginx_calls_before = (tmp_path / "nginx.log").read_text(encoding="utf-8")

    again = manager.remove("demo")

    assert again.changed == 0
    assert again.service_stopped is False
    assert (tmp_path / "nginx.log").read_text(encoding="utf-8") == nginx_calls_before


def test_remove_skips_system_database(host: HostEnvironment, fake_db: FakeDatabase) -> None:
    """The administrative database is never dropped even if owned by the role."""
    fake_db.roles["demo"] = "secret"
    fake_db.databases["postgres"] = "demo"

    result = InstanceManager(host).remove("demo")

    assert result.databases_skipped == ["postgres"]
    assert "postgres" in fake_db.databases
    assert result.role_dropped is True


def test_remove_unknown_instance_requires_listing(host: HostEnvironment) -> None:
    """Without missing_ok an unlisted instance raises NotFoundError."""
    with pytest.raises(NotFoundError):
        InstanceManager(host).remove("ghost", missing_ok=False)


def test_show_reports_ports_and_metadata(host: HostEnvironment) -> None:
    """Show combines the config file with recorded metadata."""
    manager = InstanceManager(host)
    created = _create_demo(manager)

    summary = manager.show("demo")

    assert summary.domain == "demo.example.com"
    assert summary.http_port == created.http_port  # type: ignore[attr-defined]
    assert summary.gevent_port == created.gevent_port  # type: ignore[attr-defined]
    assert summary.ssl is False
    with pytest.raises(NotFoundError):
        manager.show("ghost")


def test_list_survives_unreadable_and_undecodable_configs(
    host: HostEnvironment,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A config the operator cannot read still appears, without ports."""
    manager = InstanceManager(host)
    created = _create_demo(manager)
    garbled = host.registry.resolve("garbled").config_file
    garbled.write_bytes(b"[options]\nhttp_port = \xff\xfe\n")
    locked = host.registry.resolve("locked").config_file
    locked.write_text("[options]\nhttp_port = 8099\n", encoding="utf-8")

    original_open = Path.open

    def _open(self: Path, *args: object, **kwargs: object):  # type: ignore[no-untyped-def]
        if self == locked:
            raise PermissionError(13, "Permission denied", str(self))
        return original_open(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "open", _open)

    summaries = {summary.name: summary for summary in manager.list_instances()}

    assert sorted(summaries) == ["demo", "garbled", "locked"]
    assert summaries["demo"].http_port == created.http_port  # type: ignore[attr-defined]
    assert summaries["garbled"].http_port is None
    assert summaries["locked"].http_port is None
    assert summaries["locked"].domain is None


FAILED_UNIT_SYSTEMCTL = """#!/bin/sh
echo "$*" >> "{log}"
for last; do :; done
case "$1" in
  list-units)
    if [ -f "{unit_dir}/$last" ]; then
      echo "$last loaded failed failed Odoo"
    elif [ -f "{marker}" ]; then
      echo "$last not-found failed failed $last"
    fi
    ;;
  disable)
    if [ ! -f "{unit_dir}/$last" ]; then
      echo "Failed to disable unit: Unit file $last does not exist." >&2
      exit 1
    fi
    ;;
  reset-failed)
    rm -f "{marker}"
    ;;
esac
exit 0
"""


def test_remove_twice_after_failed_unit(
    host: HostEnvironment,
    tmp_path: Path,
) -> None:
    """A failed unit left listed as not-found does not break a repeated remove."""
    marker = tmp_path / "unit-failed"
    write_stub(
        tmp_path / "bin",
        "systemctl",
        FAILED_UNIT_SYSTEMCTL.format(
            log=tmp_path / "systemctl.log", unit_dir=tmp_path / "systemd", marker=marker
        ),
    )
    manager = InstanceManager(host)
    _create_demo(manager)
    paths = host.registry.resolve("demo")
    marker.write_text("", encoding="utf-8")

    first = manager.remove("demo")

    assert first.service_stopped is True
    assert not marker.exists()
    calls = (tmp_path / "systemctl.log").read_text(encoding="utf-8").splitlines()
    assert f"disable {paths.service_name}" in calls
    assert f"reset-failed {paths.service_name}" in calls

    marker.write_text("", encoding="utf-8")
    again = manager.remove("demo")

    assert again.changed == 0
    assert again.service_stopped is False
    assert not marker.exists()
