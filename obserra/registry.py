"""Instance registry: the canonical table of monitored instances.

Persists instances plus their metric, log and config-property history to
SQLite.  Identity is either a direct ``app_id`` or a platform
``(workload_name, namespace)`` pair; both are backed by unique constraints so
:meth:`InstanceRegistry.upsert_by_identity` is a single atomic statement.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable

from obserra.errors import ConfigPropertyNotFoundError, InstanceNotFoundError
from obserra.models import (
    ConfigPropertyData,
    Identity,
    InstanceData,
    InstanceStatus,
    LogLine,
    MetricSample,
    PropertyType,
    to_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_RETENTION_DAYS = 7

_INSTANCE_FIELDS = tuple(InstanceData.__dataclass_fields__)
_CONFIG_UPDATABLE = {"key", "value", "type", "description", "source", "is_active"}
_HISTORY_TABLES = ("metrics", "logs")


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class InstanceRegistry:
    """CRUD and bounded-retention wrapper around the ``instances`` tables.

    Args:
        conn:           An open :class:`sqlite3.Connection` with foreign keys on.
        max_entries:    Metric/log rows kept per instance.
        retention_days: Metric/log rows older than this are dropped on append.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self._conn = conn
        self.max_entries = max_entries
        self.retention_days = retention_days

    # ------------------------------------------------------------------ #
    # Instances                                                            #
    # ------------------------------------------------------------------ #

    def upsert_by_identity(self, identity: Identity, data: InstanceData) -> dict[str, Any]:
        """Create or merge the instance identified by *identity*.

        An existing record has every mutable field replaced and
        ``last_updated`` bumped; ``last_seen`` and ``created_at`` survive.

        Returns:
            The stored instance row.
        """
        values = {k: _db_value(v) for k, v in asdict(data).items()}
        if identity.is_direct:
            values["app_id"] = identity.app_id
            values["workload_name"] = None
            target = "app_id"
        else:
            values["app_id"] = None
            values["workload_name"] = identity.workload_name
            values["namespace"] = identity.namespace
            target = "workload_name, namespace"

        now = to_timestamp()
        values["created_at"] = now
        values["last_updated"] = now

        columns = list(values)
        updates = [c for c in _INSTANCE_FIELDS if c != "namespace" or identity.is_direct]
        updates.append("last_updated")
        sql = (
            f"INSERT INTO instances ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({target}) DO UPDATE SET "
            + ", ".join(f"{c} = excluded.{c}" for c in updates)
        )
        self._conn.execute(sql, [values[c] for c in columns])
        self._conn.commit()

        row = self._get_by_identity(identity)
        if row is None:
            raise RuntimeError(f"Instance vanished after upsert: {identity}")
        logger.debug(
            "upsert_by_identity id=%d identity=%s status=%s", row["id"], identity, row["status"]
        )
        return row

    def get(self, instance_id: int) -> dict[str, Any] | None:
        """Return the instance with handle *instance_id*, or ``None``."""
        cur = self._conn.execute("SELECT * FROM instances WHERE id = ?", (instance_id,))
        return self._instance(cur.fetchone())

    def require(self, instance_id: int) -> dict[str, Any]:
        """Like :meth:`get` but raises :class:`InstanceNotFoundError`."""
        row = self.get(instance_id)
        if row is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return row

    def get_by_app_id(self, app_id: str) -> dict[str, Any] | None:
        cur = self._conn.execute("SELECT * FROM instances WHERE app_id = ?", (app_id,))
        return self._instance(cur.fetchone())

    def get_by_workload(self, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        """Return the platform instance for workload *name* (optionally namespaced)."""
        if namespace is None:
            cur = self._conn.execute(
                "SELECT * FROM instances WHERE workload_name = ? ORDER BY id LIMIT 1", (name,)
            )
        else:
            cur = self._conn.execute(
                "SELECT * FROM instances WHERE workload_name = ? AND namespace = ?",
                (name, namespace),
            )
        return self._instance(cur.fetchone())

    def list(self) -> list[dict[str, Any]]:
        cur = self._conn.execute("SELECT * FROM instances ORDER BY id")
        return [self._instance(row) for row in cur.fetchall()]

    def set_status(self, instance_id: int, status: InstanceStatus) -> None:
        """Record *status* for *instance_id* without touching ``last_seen``."""
        self._update(instance_id, status=InstanceStatus(status).value)

    def touch_last_seen(self, instance_id: int) -> None:
        """Mark a successful contact (probe or heartbeat) with *instance_id*."""
        self._update(instance_id, last_seen=to_timestamp())

    def apply_probe_result(
        self,
        instance_id: int,
        *,
        status: InstanceStatus,
        observed_at: str,
        version: str | None = None,
        seen: bool = False,
    ) -> bool:
        """Write a probe outcome unless a newer mutation already landed.

        The write is a check-and-set on ``last_updated``: when the stored
        value is later than *observed_at* (the probe start time) the result
        is stale and dropped.

        Returns:
            ``True`` when written, ``False`` when dropped as stale.
        """
        now = to_timestamp()
        fields: dict[str, Any] = {"status": InstanceStatus(status).value, "last_updated": now}
        if version is not None:
            fields["version"] = version
        if seen:
            fields["last_seen"] = now
        sets = ", ".join(f"{k} = ?" for k in fields)
        cur = self._conn.execute(
            f"UPDATE instances SET {sets} WHERE id = ? AND last_updated <= ?",
            [*fields.values(), instance_id, observed_at],
        )
        self._conn.commit()
        if cur.rowcount == 0:
            logger.debug("Dropped stale probe result for instance %d", instance_id)
            return False
        return True

    def delete(self, instance_id: int) -> None:
        """Remove an instance; metrics, logs and config cascade with it."""
        cur = self._conn.execute("DELETE FROM instances WHERE id = ?", (instance_id,))
        self._conn.commit()
        if cur.rowcount == 0:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        logger.info("Deleted instance %d", instance_id)

    # ------------------------------------------------------------------ #
    # Metrics                                                              #
    # ------------------------------------------------------------------ #

    def append_metric(self, instance_id: int, sample: MetricSample) -> dict[str, Any]:
        self.require(instance_id)
        cur = self._conn.execute(
            """
            INSERT INTO metrics
                (instance_id, timestamp, memory_used, memory_max, cpu_usage,
                 error_count, metric_data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instance_id,
                to_timestamp(sample.timestamp),
                sample.memory_used,
                sample.memory_max,
                sample.cpu_usage,
                sample.error_count,
                json.dumps(sample.metric_data, default=str),
            ),
        )
        self._apply_retention("metrics", instance_id)
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM metrics WHERE id = ?", (cur.lastrowid,)).fetchone()
        return self._metric(row) if row else {}

    def list_metrics(self, instance_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to *limit* samples for *instance_id*, newest first."""
        cur = self._conn.execute(
            "SELECT * FROM metrics WHERE instance_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (instance_id, limit),
        )
        return [self._metric(row) for row in cur.fetchall()]

    def latest_metric(self, instance_id: int) -> dict[str, Any] | None:
        rows = self.list_metrics(instance_id, 1)
        return rows[0] if rows else None

    # ------------------------------------------------------------------ #
    # Logs                                                                 #
    # ------------------------------------------------------------------ #

    def append_log(self, instance_id: int, line: LogLine) -> dict[str, Any]:
        rows = self.append_logs(instance_id, [line])
        return rows[0] if rows else {}

    def append_logs(self, instance_id: int, lines: Iterable[LogLine]) -> list[dict[str, Any]]:
        """Append *lines* in order; returns the rows that survived retention."""
        self.require(instance_id)
        ids: list[int] = []
        for line in lines:
            cur = self._conn.execute(
                "INSERT INTO logs (instance_id, timestamp, level, message) VALUES (?, ?, ?, ?)",
                (instance_id, to_timestamp(line.timestamp), line.level, line.message),
            )
            ids.append(int(cur.lastrowid))
        if not ids:
            return []
        self._apply_retention("logs", instance_id)
        self._conn.commit()
        placeholders = ", ".join("?" for _ in ids)
        cur = self._conn.execute(
            f"SELECT * FROM logs WHERE id IN ({placeholders}) ORDER BY id", ids
        )
        return [dict(row) for row in cur.fetchall()]

    def list_logs(self, instance_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to *limit* log lines for *instance_id*, newest first."""
        cur = self._conn.execute(
            "SELECT * FROM logs WHERE instance_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (instance_id, limit),
        )
        return [dict(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------ #
    # Config properties                                                    #
    # ------------------------------------------------------------------ #

    def list_config(self, instance_id: int) -> list[dict[str, Any]]:
        self.require(instance_id)
        cur = self._conn.execute(
            "SELECT * FROM config_properties WHERE instance_id = ? ORDER BY id", (instance_id,)
        )
        return [self._config(row) for row in cur.fetchall()]

    def get_config(self, instance_id: int, property_id: int) -> dict[str, Any]:
        self.require(instance_id)
        cur = self._conn.execute(
            "SELECT * FROM config_properties WHERE id = ? AND instance_id = ?",
            (property_id, instance_id),
        )
        row = cur.fetchone()
        if row is None:
            raise ConfigPropertyNotFoundError(
                f"Config property {property_id} not found on instance {instance_id}"
            )
        return self._config(row)

    def create_config(self, instance_id: int, prop: ConfigPropertyData) -> dict[str, Any]:
        self.require(instance_id)
        cur = self._conn.execute(
            """
            INSERT INTO config_properties
                (instance_id, key, value, type, description, source, is_active, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instance_id,
                prop.key,
                prop.value,
                PropertyType(prop.type).value,
                prop.description,
                prop.source,
                prop.is_active,
                to_timestamp(),
            ),
        )
        self._conn.commit()
        return self.get_config(instance_id, int(cur.lastrowid))

    def update_config(self, instance_id: int, property_id: int, **fields: Any) -> dict[str, Any]:
        """Replace the given fields of a property and bump its timestamp."""
        self.get_config(instance_id, property_id)
        updates = {k: _db_value(v) for k, v in fields.items() if k in _CONFIG_UPDATABLE}
        if "type" in updates:
            updates["type"] = PropertyType(updates["type"]).value
        updates["last_updated"] = to_timestamp()
        sets = ", ".join(f"{k} = ?" for k in updates)
        self._conn.execute(
            f"UPDATE config_properties SET {sets} WHERE id = ?",
            [*updates.values(), property_id],
        )
        self._conn.commit()
        return self.get_config(instance_id, property_id)

    def delete_config(self, instance_id: int, property_id: int) -> None:
        self.get_config(instance_id, property_id)
        self._conn.execute("DELETE FROM config_properties WHERE id = ?", (property_id,))
        self._conn.commit()

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _update(self, instance_id: int, **fields: Any) -> None:
        fields["last_updated"] = to_timestamp()
        sets = ", ".join(f"{k} = ?" for k in fields)
        cur = self._conn.execute(
            f"UPDATE instances SET {sets} WHERE id = ?", [*fields.values(), instance_id]
        )
        self._conn.commit()
        if cur.rowcount == 0:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")

    def _get_by_identity(self, identity: Identity) -> dict[str, Any] | None:
        if identity.is_direct:
            return self.get_by_app_id(identity.app_id or "")
        return self.get_by_workload(identity.workload_name or "", identity.namespace)

    def _apply_retention(self, table: str, instance_id: int) -> None:
        """Trim *table* for one instance by count, then by age."""
        if table not in _HISTORY_TABLES:
            raise ValueError(f"Not a history table: {table}")
        self._conn.execute(
            f"""
            DELETE FROM {table}
             WHERE instance_id = ?
               AND id NOT IN (
                   SELECT id FROM {table} WHERE instance_id = ?
                    ORDER BY timestamp DESC, id DESC LIMIT ?
               )
            """,
            (instance_id, instance_id, self.max_entries),
        )
        if self.retention_days > 0:
            cutoff = to_timestamp(utcnow() - timedelta(days=self.retention_days))
            self._conn.execute(
                f"DELETE FROM {table} WHERE instance_id = ? AND timestamp < ?",
                (instance_id, cutoff),
            )

    @staticmethod
    def _instance(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        data = dict(row)
        data["auto_register"] = bool(data["auto_register"])
        return data

    @staticmethod
    def _metric(row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        try:
            data["metric_data"] = json.loads(data["metric_data"] or "{}")
        except ValueError:
            data["metric_data"] = {}
        return data

    @staticmethod
    def _config(row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        return data
