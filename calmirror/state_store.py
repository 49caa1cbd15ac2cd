from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calmirror.models import MappingRecord

LAST_RUN_STATUS = "last_run_status"
LAST_SUCCESSFUL_SYNC_TS = "last_successful_sync_ts"

_MAPPING_COLUMNS = (
    "subscription_id, source_event_id, destination_event_id, destination_etag, series_id, "
    "source_last_modified, payload_hash, last_synced_at"
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mapping_from_row(row: sqlite3.Row) -> MappingRecord:
    return MappingRecord(
        subscription_id=str(row["subscription_id"]),
        source_event_id=str(row["source_event_id"]),
        destination_event_id=str(row["destination_event_id"]),
        destination_etag=row["destination_etag"],
        series_id=row["series_id"],
        source_last_modified=row["source_last_modified"],
        payload_hash=str(row["payload_hash"] or ""),
        last_synced_at=str(row["last_synced_at"] or ""),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS event_mappings (
            subscription_id TEXT NOT NULL,
            source_event_id TEXT NOT NULL,
            destination_event_id TEXT NOT NULL,
            destination_etag TEXT,
            series_id TEXT,
            source_last_modified TEXT,
            payload_hash TEXT NOT NULL DEFAULT '',
            last_synced_at TEXT NOT NULL,
            PRIMARY KEY (subscription_id, source_event_id)
        );

        CREATE TABLE IF NOT EXISTS sync_state (
            subscription_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (subscription_id, key)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            failures INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            subscription_id TEXT NOT NULL,
            source_event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def get_mapping(self, subscription_id: str, source_event_id: str) -> MappingRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_MAPPING_COLUMNS}
                    FROM event_mappings
                    WHERE subscription_id = ? AND source_event_id = ?
                    """,
                    (subscription_id, source_event_id),
                ).fetchone()
        return _mapping_from_row(row) if row else None

    def list_mappings(self, subscription_id: str) -> list[MappingRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_MAPPING_COLUMNS}
                    FROM event_mappings
                    WHERE subscription_id = ?
                    ORDER BY source_event_id
                    """,
                    (subscription_id,),
                ).fetchall()
        return [_mapping_from_row(row) for row in rows]

    def upsert_mapping(self, mapping: MappingRecord) -> None:
        synced_at = mapping.last_synced_at or _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO event_mappings({_MAPPING_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(subscription_id, source_event_id) DO UPDATE SET
                        destination_event_id = excluded.destination_event_id,
                        destination_etag = excluded.destination_etag,
                        series_id = excluded.series_id,
                        source_last_modified = excluded.source_last_modified,
                        payload_hash = excluded.payload_hash,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (
                        mapping.subscription_id,
                        mapping.source_event_id,
                        mapping.destination_event_id,
                        mapping.destination_etag,
                        mapping.series_id,
                        mapping.source_last_modified,
                        mapping.payload_hash,
                        synced_at,
                    ),
                )
                conn.commit()

    def delete_mapping(self, subscription_id: str, source_event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM event_mappings WHERE subscription_id = ? AND source_event_id = ?",
                    (subscription_id, source_event_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def set_state(self, subscription_id: str, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_state(subscription_id, key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(subscription_id, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(subscription_id), str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_state(self, subscription_id: str, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM sync_state WHERE subscription_id = ? AND key = ?",
                    (str(subscription_id), str(key)),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def subscription_states(self) -> dict[str, dict[str, str]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT subscription_id, key, value FROM sync_state ORDER BY subscription_id, key"
                ).fetchall()
        states: dict[str, dict[str, str]] = {}
        for row in rows:
            states.setdefault(str(row["subscription_id"]), {})[str(row["key"])] = str(row["value"])
        return states

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        failures: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, changes_applied, failures)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, changes_applied, failures),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
            changes_applied=0,
            failures=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        failures: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, failures = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(changes_applied), int(failures), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, failures
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        subscription_id: str,
        source_event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, subscription_id, source_event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        subscription_id,
                        source_event_id,
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_id, created_at, subscription_id, source_event_id, action, details_json
            FROM audit_events
        """
        params: tuple[Any, ...] = (max(1, limit),)
        if run_id is not None:
            query += " WHERE run_id = ?"
            params = (int(run_id), max(1, limit))
        query += " ORDER BY id DESC LIMIT ?"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
