from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import fields
from datetime import datetime
from typing import Any

from .errors import RecordNotFound
from .models import ConfiguredServer, InstalledServer, ServerDefaults
from .settings import settings


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a missing
    bind-mounted file path is used), the DB file is placed inside it.
    """
    if path == ":memory:":
        return path

    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "mcpfleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


# Columns stored as JSON text; everything else maps 1:1 onto the dataclass.
_INSTALLED_JSON = {"tags", "health_check", "resource_requirements", "ports", "environment_variables", "volumes"}
_CONFIGURED_JSON = {"environment", "volumes"}
_BOOL_COLUMNS = {"is_official", "auto_start"}

_DEFAULTS_KEY = "server_defaults"


def _to_row(obj: Any, json_cols: set[str]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for f in fields(obj):
        v = getattr(obj, f.name)
        if f.name in json_cols:
            v = json.dumps(v)
        elif f.name in _BOOL_COLUMNS:
            v = 1 if v else 0
        row[f.name] = v
    return row


def _from_row(row: sqlite3.Row, cls: Any, json_cols: set[str]) -> Any:
    data = dict(row)
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        v = data[f.name]
        if f.name in json_cols:
            v = json.loads(v) if v else None
            if v is None:
                continue
        elif f.name in _BOOL_COLUMNS:
            v = bool(v)
        kwargs[f.name] = v
    return cls(**kwargs)


class RecordStore:
    """sqlite-backed store for installed/configured servers and defaults.

    Each call opens its own connection, so the store can be shared between
    the API threads and the reconciler.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = _resolve_db_path(db_path or settings.db_path)
        # A private in-memory database only lives as long as its connection.
        self._memory_conn: sqlite3.Connection | None = None
        if self.db_path == ":memory:":
            self._memory_conn = self._open()
        self.init_db()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def connect(self) -> sqlite3.Connection:
        if self._memory_conn is not None:
            return self._memory_conn
        return self._open()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS installed_servers (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  docker_image TEXT NOT NULL,
                  version TEXT NOT NULL DEFAULT '',
                  description TEXT NOT NULL DEFAULT '',
                  tags TEXT,
                  health_check TEXT,
                  resource_requirements TEXT,
                  ports TEXT,
                  docker_command TEXT NOT NULL DEFAULT '',
                  environment_variables TEXT,
                  volumes TEXT,
                  install_date TEXT NOT NULL DEFAULT '',
                  last_updated TEXT NOT NULL DEFAULT '',
                  source_registry TEXT NOT NULL DEFAULT '',
                  is_official INTEGER NOT NULL DEFAULT 0,
                  position INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS configured_servers (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  container_name TEXT NOT NULL,
                  container_id TEXT NOT NULL DEFAULT '',
                  installed_server_id TEXT NOT NULL DEFAULT '',
                  docker_image TEXT NOT NULL DEFAULT '',
                  docker_command TEXT NOT NULL DEFAULT '',
                  version TEXT NOT NULL DEFAULT '',
                  port INTEGER NOT NULL DEFAULT 0,
                  container_port INTEGER NOT NULL DEFAULT 0,
                  environment TEXT,
                  volumes TEXT,
                  created_date TEXT NOT NULL DEFAULT '',
                  last_started TEXT NOT NULL DEFAULT '',
                  auto_start INTEGER NOT NULL DEFAULT 0,
                  recreate_state TEXT NOT NULL DEFAULT '',
                  position INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kv (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    # --- shared upsert ----------------------------------------------------

    def _upsert(self, table: str, row: dict[str, Any]) -> None:
        cols = list(row.keys())
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols if c != "id")
        with self.connect() as conn:
            pos = conn.execute(f"SELECT COALESCE(MAX(position), -1) + 1 FROM {table}").fetchone()[0]
            conn.execute(
                f"""
                INSERT INTO {table} ({", ".join(cols)}, position)
                VALUES ({", ".join("?" for _ in cols)}, ?)
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                (*[row[c] for c in cols], pos),
            )

    def _delete(self, table: str, record_id: str, what: str) -> None:
        with self.connect() as conn:
            cur = conn.execute(f"DELETE FROM {table} WHERE id=?", (record_id,))
            if cur.rowcount == 0:
                raise RecordNotFound(f"{what} with ID {record_id} not found")

    # --- installed servers ------------------------------------------------

    def list_installed(self) -> list[InstalledServer]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM installed_servers ORDER BY position").fetchall()
            return [_from_row(r, InstalledServer, _INSTALLED_JSON) for r in rows]

    def get_installed(self, server_id: str) -> InstalledServer | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM installed_servers WHERE id=?", (server_id,)).fetchone()
            return _from_row(row, InstalledServer, _INSTALLED_JSON) if row else None

    def upsert_installed(self, server: InstalledServer) -> None:
        self._upsert("installed_servers", _to_row(server, _INSTALLED_JSON))

    def remove_installed(self, server_id: str) -> None:
        self._delete("installed_servers", server_id, "installed server")

    # --- configured servers -----------------------------------------------

    def list_configured(self) -> list[ConfiguredServer]:
        """Configured servers in stored (insertion) order."""
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM configured_servers ORDER BY position").fetchall()
            return [_from_row(r, ConfiguredServer, _CONFIGURED_JSON) for r in rows]

    def get_configured(self, server_id: str) -> ConfiguredServer | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM configured_servers WHERE id=?", (server_id,)).fetchone()
            return _from_row(row, ConfiguredServer, _CONFIGURED_JSON) if row else None

    def upsert_configured(self, server: ConfiguredServer) -> None:
        self._upsert("configured_servers", _to_row(server, _CONFIGURED_JSON))

    def remove_configured(self, server_id: str) -> None:
        self._delete("configured_servers", server_id, "configured server")

    # --- server defaults --------------------------------------------------

    def get_server_defaults(self) -> ServerDefaults:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key=?", (_DEFAULTS_KEY,)).fetchone()
        if not row:
            return ServerDefaults()
        data = json.loads(row["value"])
        known = {f.name for f in fields(ServerDefaults)}
        return ServerDefaults(**{k: v for k, v in data.items() if k in known})

    def save_server_defaults(self, defaults: ServerDefaults) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (_DEFAULTS_KEY, json.dumps(defaults.to_dict())),
            )

    # --- events -----------------------------------------------------------

    def log_event(self, level: str, message: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, message) VALUES (?, ?, ?)",
                (utc_now(), level.upper(), message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
