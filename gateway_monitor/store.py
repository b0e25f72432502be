from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from gateway_monitor.errors import PersistenceFailure
from gateway_monitor.models import MonitoredService, Property
from gateway_monitor.snapshot import snapshot_from_json, snapshot_to_json


SCHEMA_VERSION = 1

_SERVICE_SELECT = """
SELECT s.id, s.application_type, s.source_id, src.name AS source_name,
       s.is_alive, s.is_alive_transition_at_ts, s.is_alive_transition_notified,
       s.last_snapshot_json, s.is_active
FROM monitored_services s
LEFT JOIN sources src ON src.id = s.source_id
"""


def _utc_ts() -> float:
    return float(time.time())


def _ts_to_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _dt_to_ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return float(value.timestamp())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the status API read while a cycle writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _row_to_service(row: sqlite3.Row) -> MonitoredService:
    return MonitoredService(
        id=int(row["id"]),
        application_type=str(row["application_type"]),
        source_id=int(row["source_id"]),
        source_name=str(row["source_name"]) if row["source_name"] is not None else None,
        is_alive=bool(row["is_alive"]),
        is_alive_transition_at=_ts_to_dt(row["is_alive_transition_at_ts"]),
        last_notified_transition=bool(row["is_alive_transition_notified"]),
        last_snapshot=snapshot_from_json(row["last_snapshot_json"]),
        is_active=bool(row["is_active"]),
    )


class ServiceStore:
    """SQLite-backed registry of monitored services and their last known state."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        try:
            return _connect(self.db_path)
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceFailure(f"Cannot open database path={self.db_path}: {exc}") from exc

    def ensure_schema(self) -> None:
        try:
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to prepare schema path={self.db_path}: {exc}") from exc

    def _ensure_schema(self) -> None:
        conn = self._conn()
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
            row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
            cur = int(row["v"]) if row and row["v"] else 0
            if cur >= SCHEMA_VERSION:
                return
            if cur == 0:
                _apply_v1(conn)
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),)
                )
                return
            raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")
        finally:
            conn.close()

    def register_source(self, name: str) -> int:
        name = str(name or "").strip()
        if not name:
            raise ValueError("Source name must not be empty")
        conn = self._conn()
        try:
            conn.execute("INSERT OR IGNORE INTO sources (name) VALUES (?)", (name,))
            row = conn.execute("SELECT id FROM sources WHERE name=?", (name,)).fetchone()
            return int(row["id"])
        finally:
            conn.close()

    def register_service(
        self,
        *,
        application_type: str,
        source_id: int,
        is_alive: bool = False,
        is_active: bool = True,
        notified: bool = False,
    ) -> int:
        """New services start with their initial state pending announcement unless notified=True."""
        now = _utc_ts()
        conn = self._conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO monitored_services (
                  application_type, source_id, is_alive, is_alive_transition_at_ts,
                  is_alive_transition_notified, last_snapshot_json, is_active, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, NULL, ?, ?, ?)
                """,
                (
                    str(application_type),
                    int(source_id),
                    int(bool(is_alive)),
                    now,
                    int(bool(notified)),
                    int(bool(is_active)),
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)
        finally:
            conn.close()

    def set_service_active(self, service_id: int, active: bool) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE monitored_services SET is_active=?, updated_at_ts=? WHERE id=?",
                (int(bool(active)), _utc_ts(), int(service_id)),
            )
        finally:
            conn.close()

    def get_service(self, service_id: int) -> MonitoredService | None:
        conn = self._conn()
        try:
            row = conn.execute(_SERVICE_SELECT + " WHERE s.id=?", (int(service_id),)).fetchone()
            return _row_to_service(row) if row else None
        finally:
            conn.close()

    def list_services(self) -> list[MonitoredService]:
        conn = self._conn()
        try:
            rows = conn.execute(_SERVICE_SELECT + " ORDER BY s.id").fetchall()
            return [_row_to_service(r) for r in rows]
        finally:
            conn.close()

    def list_active_services(self) -> list[MonitoredService]:
        try:
            conn = self._conn()
            try:
                rows = conn.execute(_SERVICE_SELECT + " WHERE s.is_active=1 ORDER BY s.id").fetchall()
                return [_row_to_service(r) for r in rows]
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to load active services: {exc}") from exc

    def persist_state(
        self,
        service_id: int,
        *,
        is_alive: bool,
        transition_at: datetime | None,
        snapshot: Mapping[str, Property] | None,
    ) -> None:
        """Single-row update; marks the current availability state as announced."""
        try:
            conn = self._conn()
            try:
                cur = conn.execute(
                    """
                    UPDATE monitored_services
                    SET is_alive=?, is_alive_transition_at_ts=?, is_alive_transition_notified=1,
                        last_snapshot_json=?, updated_at_ts=?
                    WHERE id=?
                    """,
                    (
                        int(bool(is_alive)),
                        _dt_to_ts(transition_at),
                        snapshot_to_json(snapshot),
                        _utc_ts(),
                        int(service_id),
                    ),
                )
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to persist service_id={service_id}: {exc}") from exc
        if cur.rowcount == 0:
            raise PersistenceFailure(f"Service not found service_id={service_id}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL UNIQUE
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitored_services (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          application_type TEXT NOT NULL,
          source_id INTEGER NOT NULL,
          is_alive INTEGER NOT NULL DEFAULT 0,
          is_alive_transition_at_ts REAL,
          is_alive_transition_notified INTEGER NOT NULL DEFAULT 1,
          last_snapshot_json TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_monitored_services_active ON monitored_services(is_active);"
    )
