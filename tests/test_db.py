from __future__ import annotations

from dataclasses import replace

import pytest

from mcpfleet.db import RecordStore
from mcpfleet.errors import RecordNotFound
from mcpfleet.models import RECREATE_DANGLING, ConfiguredServer, InstalledServer, ServerDefaults


def _configured(i: int, **kw) -> ConfiguredServer:
    return ConfiguredServer(id=f"c{i}", name=f"srv{i}", container_name=f"srv{i}", port=8000 + i, **kw)


def test_configured_round_trip_keeps_insertion_order(store):
    for i in (3, 1, 2):
        store.upsert_configured(_configured(i, environment={"K": str(i)}, volumes={"/h": "/c"}))

    rows = store.list_configured()
    assert [r.id for r in rows] == ["c3", "c1", "c2"]
    assert rows[0].environment == {"K": "3"}
    assert rows[0].volumes == {"/h": "/c"}

    # updating keeps the stored position
    store.upsert_configured(replace(rows[0], port=9999, recreate_state=RECREATE_DANGLING))
    rows = store.list_configured()
    assert [r.id for r in rows] == ["c3", "c1", "c2"]
    assert rows[0].port == 9999
    assert rows[0].recreate_state == RECREATE_DANGLING


def test_remove_missing_raises(store):
    with pytest.raises(RecordNotFound):
        store.remove_configured("nope")
    with pytest.raises(RecordNotFound):
        store.remove_installed("nope")


def test_installed_round_trip(store):
    srv = InstalledServer(
        id="fs-1",
        name="Filesystem",
        docker_image="mcp/fs:1.0",
        tags=["files"],
        ports={"mcp": 8080},
        environment_variables={"ROOT": {"default": "/data"}},
        is_official=True,
    )
    store.upsert_installed(srv)
    got = store.get_installed("fs-1")
    assert got == srv
    assert got.mcp_port() == 8080
    assert store.get_installed("other") is None


def test_server_defaults(store):
    assert store.get_server_defaults() == ServerDefaults()
    store.save_server_defaults(ServerDefaults(default_port=9000, max_memory_mb=256, restart_on_failure=False))
    d = store.get_server_defaults()
    assert d.default_port == 9000
    assert d.restart_policy == "no"


def test_events_table(store):
    store.log_event("info", "hello")
    store.log_event("WARN", "careful")
    rows = store.latest_events(10)
    assert [(r["level"], r["message"]) for r in rows] == [("WARN", "careful"), ("INFO", "hello")]


def test_memory_database_persists_across_calls():
    s = RecordStore(":memory:")
    s.upsert_configured(_configured(1))
    assert [r.id for r in s.list_configured()] == ["c1"]


def test_directory_path_gets_db_file(tmp_path):
    s = RecordStore(str(tmp_path))
    assert s.db_path == str(tmp_path / "mcpfleet.db")
