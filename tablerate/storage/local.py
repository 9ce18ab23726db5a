"""
Local embedded store used while the network path is down.

Uses SQLite: one file per device, one connection per transaction so the
methods can run in worker threads. Tables:

- aggregate_cache: last known aggregate per restaurant, with an expiry stamp
- offline_ratings: append log of ratings submitted while offline
- sync_queue: pending write operations, drained in insertion order
- identity: the device's pseudonymous identity record
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS aggregate_cache (
    restaurant_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    cached_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_aggregate_cache_expires ON aggregate_cache(expires_at);

CREATE TABLE IF NOT EXISTS offline_ratings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_ref TEXT NOT NULL UNIQUE,
    restaurant_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at REAL NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_offline_ratings_restaurant ON offline_ratings(restaurant_id);
CREATE INDEX IF NOT EXISTS idx_offline_ratings_created ON offline_ratings(created_at);

CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    op_type TEXT NOT NULL,
    action TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at REAL NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_enqueued ON sync_queue(enqueued_at);

CREATE TABLE IF NOT EXISTS identity (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""


class LocalStore:
    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.info("Initialized LocalStore at %s", path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Aggregate cache
    # ------------------------------------------------------------------

    def put_aggregate(self, restaurant_id: str, payload: dict, cached_at: float, expires_at: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO aggregate_cache (restaurant_id, payload, cached_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (restaurant_id, json.dumps(payload), cached_at, expires_at),
            )

    def get_aggregate(self, restaurant_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload, cached_at, expires_at FROM aggregate_cache WHERE restaurant_id = ?",
                (restaurant_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "payload": json.loads(row["payload"]),
            "cached_at": row["cached_at"],
            "expires_at": row["expires_at"],
        }

    def purge_expired_aggregates(self, now: float) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM aggregate_cache WHERE expires_at <= ?", (now,))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Offline rating log + sync queue
    # ------------------------------------------------------------------

    def record_offline_rating(
        self,
        client_ref: str,
        restaurant_id: str,
        payload: dict,
        created_at: float,
        op_type: str = "rating",
        action: str = "create",
    ) -> int:
        """Append to the offline log and enqueue its sync operation atomically.

        Returns the sync queue id.
        """
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO offline_ratings (client_ref, restaurant_id, payload, created_at) VALUES (?, ?, ?, ?)",
                (client_ref, restaurant_id, json.dumps(payload), created_at),
            )
            cursor = conn.execute(
                "INSERT INTO sync_queue (op_type, action, payload, enqueued_at) VALUES (?, ?, ?, ?)",
                (op_type, action, json.dumps(payload), created_at),
            )
            return cursor.lastrowid

    def offline_ratings(self, restaurant_id: str, unsynced_only: bool = True) -> list[dict[str, Any]]:
        sql = "SELECT payload FROM offline_ratings WHERE restaurant_id = ?"
        if unsynced_only:
            sql += " AND synced = 0"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", (restaurant_id,)).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def pending_operations(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE status = 'pending' ORDER BY id"
            ).fetchall()
        return [_operation(row) for row in rows]

    def rejected_operations(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE status = 'rejected' ORDER BY id"
            ).fetchall()
        return [_operation(row) for row in rows]

    def resolve_operation(self, operation_id: int, client_ref: Optional[str]) -> None:
        """Drop a written queue entry and retire its offline log row together."""
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (operation_id,))
            if client_ref:
                conn.execute("UPDATE offline_ratings SET synced = 1 WHERE client_ref = ?", (client_ref,))

    def record_failure(self, operation_id: int, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sync_queue SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, operation_id),
            )

    def mark_rejected(self, operation_id: int, error: str, client_ref: Optional[str] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sync_queue SET status = 'rejected', attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, operation_id),
            )
            if client_ref:
                conn.execute("UPDATE offline_ratings SET synced = 1 WHERE client_ref = ?", (client_ref,))

    def counts(self) -> dict[str, int]:
        with self._connect() as conn:
            return {
                "cached_aggregates": conn.execute("SELECT COUNT(*) FROM aggregate_cache").fetchone()[0],
                "offline_ratings": conn.execute(
                    "SELECT COUNT(*) FROM offline_ratings WHERE synced = 0"
                ).fetchone()[0],
                "pending_sync": conn.execute(
                    "SELECT COUNT(*) FROM sync_queue WHERE status = 'pending'"
                ).fetchone()[0],
                "rejected_sync": conn.execute(
                    "SELECT COUNT(*) FROM sync_queue WHERE status = 'rejected'"
                ).fetchone()[0],
            }

    def clear(self) -> None:
        with self._connect() as conn:
            for table in ("aggregate_cache", "offline_ratings", "sync_queue"):
                conn.execute(f"DELETE FROM {table}")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_identity(self, key: str = "current") -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM identity WHERE key = ?", (key,)).fetchone()
        return json.loads(row["payload"]) if row else None

    def put_identity(self, payload: dict, updated_at: float, key: str = "current") -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO identity (key, payload, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(payload), updated_at),
            )

    def delete_identity(self, key: str = "current") -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM identity WHERE key = ?", (key,))


def _operation(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "op_type": row["op_type"],
        "action": row["action"],
        "payload": json.loads(row["payload"]),
        "enqueued_at": row["enqueued_at"],
        "attempts": row["attempts"],
        "last_error": row["last_error"],
        "status": row["status"],
    }
