"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from odooctl.state import INSTANCES_FILE, StateRegistry, StateRegistryError


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read(INSTANCES_FILE, default={"instances": []})

    assert result == {"instances": []}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "registry")
    payload = {"instances": [{"name": "primary"}]}

    registry.write(INSTANCES_FILE, payload)

    path = tmp_path / "registry" / INSTANCES_FILE
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read(INSTANCES_FILE) == payload
    assert [p.name for p in path.parent.iterdir()] == [INSTANCES_FILE]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / INSTANCES_FILE).write_text("instances: [unclosed\n", encoding="utf-8")

    with pytest.raises(StateRegistryError):
        registry.read(INSTANCES_FILE)


def test_upsert_get_and_remove_instance(tmp_path: Path) -> None:
    """Instance metadata is kept sorted, replaced on upsert and removable."""
    registry = StateRegistry(tmp_path)

    registry.upsert_instance("zeta", {"domain": "zeta.example.com", "http_port": 8070})
    registry.upsert_instance("alpha", {"domain": "alpha.example.com", "http_port": 8069})
    registry.upsert_instance("zeta", {"domain": "z.example.com", "http_port": 8071})

    assert [entry["name"] for entry in registry.list_entries()] == ["alpha", "zeta"]
    zeta = registry.get_instance("zeta")
    assert zeta == {"name": "zeta", "domain": "z.example.com", "http_port": 8071}
    assert registry.get_instance("missing") is None

    assert registry.remove_instance("zeta") is True
    assert registry.remove_instance("zeta") is False
    assert [entry["name"] for entry in registry.list_entries()] == ["alpha"]


def test_list_entries_ignores_malformed_content(tmp_path: Path) -> None:
    """Entries without a name or of the wrong type are skipped."""
    registry = StateRegistry(tmp_path)
    registry.write(
        INSTANCES_FILE,
        {"instances": [{"name": "ok"}, {"domain": "nameless"}, "junk"]},
    )

    assert registry.list_entries() == [{"name": "ok"}]

    registry.write(INSTANCES_FILE, {"instances": "not-a-list"})
    assert registry.list_entries() == []


def test_write_failure_raises_state_error(tmp_path: Path) -> None:
    """An unwritable registry location surfaces as StateRegistryError."""
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    registry = StateRegistry(blocker / "registry")

    with pytest.raises(StateRegistryError):
        registry.write(INSTANCES_FILE, {"instances": []})


def test_undecodable_file_raises_state_error(tmp_path: Path) -> None:
    registry = StateRegistry(tmp_path)
    (tmp_path / INSTANCES_FILE).write_bytes(b"instances:\n  - name: \xff\xfe\n")

    with pytest.raises(StateRegistryError, match="Cannot read"):
        registry.read(INSTANCES_FILE)
