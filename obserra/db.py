"""Database initialisation for Obserra.

Creates the SQLite schema backing the instance registry.  The database path
is taken from the ``OBSERRA_DATA_DIR`` environment variable (default:
``./data``); pass ``":memory:"`` to :func:`init_db` for a throwaway,
process-local registry.

Usage::

    from obserra.db import get_db, init_db
    init_db()                  # idempotent
    conn = get_db()            # per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

MEMORY = ":memory:"

_DB_PATH: Path | str | None = None
_LOCAL = threading.local()
_SHARED_MEMORY: sqlite3.Connection | None = None


def _db_path() -> Path | str:
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(os.environ.get("OBSERRA_DATA_DIR", "./data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / "obserra.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL, _SHARED_MEMORY
    _DB_PATH = MEMORY if str(path) == MEMORY else Path(path)
    _LOCAL = threading.local()
    _SHARED_MEMORY = None


def connect(path: str | Path) -> sqlite3.Connection:
    """Open a new connection with the pragmas the registry relies on.

    The parent directory of a file-backed database is created if missing.
    """
    if str(path) != MEMORY:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if str(path) != MEMORY:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode, FK enabled).

    An in-memory database only exists inside the connection that created
    it, so that case hands out one shared connection instead.
    """
    global _SHARED_MEMORY
    path = _db_path()
    if path == MEMORY:
        if _SHARED_MEMORY is None:
            _SHARED_MEMORY = connect(MEMORY)
        return _SHARED_MEMORY
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        conn = connect(path)
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create any missing tables; safe to call repeatedly."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
-- ───────── Instances ─────────

CREATE TABLE IF NOT EXISTS instances (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id                TEXT UNIQUE,
    workload_name         TEXT,
    namespace             TEXT NOT NULL DEFAULT 'default',
    name                  TEXT NOT NULL,
    version               TEXT NOT NULL DEFAULT 'unknown',
    source                TEXT NOT NULL,
    status                TEXT NOT NULL DEFAULT 'UNKNOWN'
                          CHECK (status IN ('UP', 'DOWN', 'WARNING', 'UNKNOWN')),
    base_url              TEXT NOT NULL,
    cluster_dns           TEXT,
    pod_name              TEXT,
    host                  TEXT,
    port                  INTEGER,
    context_path          TEXT NOT NULL DEFAULT '',
    health_path           TEXT NOT NULL DEFAULT '/health',
    info_path             TEXT NOT NULL DEFAULT '/info',
    metrics_path          TEXT NOT NULL DEFAULT '/metrics',
    logs_path             TEXT NOT NULL DEFAULT '/logfile',
    config_path           TEXT NOT NULL DEFAULT '/env',
    health_check_interval INTEGER NOT NULL DEFAULT 30,
    auto_register         BOOLEAN NOT NULL DEFAULT FALSE,
    created_at            TEXT NOT NULL,
    last_updated          TEXT NOT NULL,
    last_seen             TEXT,
    UNIQUE(workload_name, namespace)
);
CREATE INDEX IF NOT EXISTS idx_instances_status   ON instances(status);
CREATE INDEX IF NOT EXISTS idx_instances_workload ON instances(workload_name);

-- ───────── History ─────────

CREATE TABLE IF NOT EXISTS metrics (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id  INTEGER NOT NULL,
    timestamp    TEXT NOT NULL,
    memory_used  REAL NOT NULL DEFAULT 0,
    memory_max   REAL NOT NULL DEFAULT 0,
    cpu_usage    REAL NOT NULL DEFAULT 0,
    error_count  INTEGER NOT NULL DEFAULT 0,
    metric_data  TEXT NOT NULL DEFAULT '{}',
    FOREIGN KEY (instance_id) REFERENCES instances(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_metrics_instance ON metrics(instance_id, timestamp);

CREATE TABLE IF NOT EXISTS logs (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id  INTEGER NOT NULL,
    timestamp    TEXT NOT NULL,
    level        TEXT NOT NULL DEFAULT 'INFO',
    message      TEXT NOT NULL,
    FOREIGN KEY (instance_id) REFERENCES instances(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_logs_instance ON logs(instance_id, timestamp);

-- ───────── Configuration ─────────

CREATE TABLE IF NOT EXISTS config_properties (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id  INTEGER NOT NULL,
    key          TEXT NOT NULL,
    value        TEXT NOT NULL,
    type         TEXT NOT NULL DEFAULT 'STRING',
    description  TEXT,
    source       TEXT NOT NULL DEFAULT 'application.properties',
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    last_updated TEXT NOT NULL,
    FOREIGN KEY (instance_id) REFERENCES instances(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_config_instance ON config_properties(instance_id);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one transaction."""
    conn.executescript(_SCHEMA_SQL)
