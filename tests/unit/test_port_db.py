# tests/unit/test_port_db.py

from pathlib import Path

from testrelay.runtime.port_db import PortDatabase


def test_record_lookup_forget(tmp_path: Path):
    db = PortDatabase(tmp_path / "db" / "ports.json")
    workspace = tmp_path / "ws"
    workspace.mkdir()

    db.record(workspace, 5123)
    assert db.lookup(workspace) == 5123

    db.forget(workspace, 5123)
    assert db.lookup(workspace) is None


def test_forget_keeps_a_newer_port(tmp_path: Path):
    db = PortDatabase(tmp_path / "ports.json")
    db.record(tmp_path, 1111)
    db.record(tmp_path, 2222)

    db.forget(tmp_path, 1111)

    assert db.lookup(tmp_path) == 2222


def test_unreadable_database_is_empty(tmp_path: Path):
    path = tmp_path / "ports.json"
    path.write_text("{broken")
    assert PortDatabase(path).read() == {}

    path.write_text('{"/a": "not a port", "/b": 9}')
    assert PortDatabase(path).read() == {"/b": 9}
