"""Database operations for the CasiListo sync server.

This module provides all server-side data access using SQLite.
The schema has three tables:

    accounts(code PK, created_at)
    devices(id PK, account_code FK, name, last_seen, created_at)
    sync_state(account_code PK, items, categories, master_list,
               favorites, baco_mode, updated_at)

JSON-valued columns store serialized blobs whose shape matches SyncData.
All timestamps are epoch milliseconds.

One connection is shared by all request threads and guarded by a lock.
Writes that must be atomic (account creation, push read-merge-write) run
inside transaction(), which issues BEGIN IMMEDIATE so that other processes
using the same file are serialized as well.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union

from .models import Device, SyncData
from .timestamp_utils import now_ms

logger = logging.getLogger(__name__)

__all__ = ["Database"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    code TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    account_code TEXT NOT NULL,
    name TEXT NOT NULL,
    last_seen INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (account_code) REFERENCES accounts(code) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sync_state (
    account_code TEXT PRIMARY KEY,
    items TEXT NOT NULL DEFAULT '[]',
    categories TEXT NOT NULL DEFAULT '{}',
    master_list TEXT NOT NULL DEFAULT '[]',
    favorites TEXT NOT NULL DEFAULT '[]',
    baco_mode INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY (account_code) REFERENCES accounts(code) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_devices_account ON devices(account_code);
CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices(last_seen);
"""


class Database:
    """SQLite storage for accounts, devices and sync state."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        path_str = str(db_path)
        if path_str != ":memory:":
            Path(path_str).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = path_str
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(
            path_str,
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if path_str != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)
        self._migrate()
        logger.info(f"Opened database at {path_str}")

    def _migrate(self) -> None:
        """Bring databases created by older servers up to date."""
        columns = {
            row["name"] for row in self._conn.execute("PRAGMA table_info(sync_state)")
        }
        if "baco_mode" not in columns:
            logger.info("Migrating sync_state: adding baco_mode column")
            self._conn.execute(
                "ALTER TABLE sync_state ADD COLUMN baco_mode INTEGER NOT NULL DEFAULT 0"
            )

    def close(self) -> None:
        """Close the connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one serialized write transaction.

        Nested calls join the outer transaction.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _query_all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            return self._conn.execute(sql, params).rowcount

    # ===== Accounts =====

    def create_account(self, code: str) -> bool:
        """Insert an account together with its empty sync state.

        Returns:
            True if created, False if the code already exists
        """
        now = now_ms()
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO accounts (code, created_at) VALUES (?, ?)",
                    (code, now),
                )
                conn.execute(
                    "INSERT INTO sync_state (account_code, updated_at) VALUES (?, ?)",
                    (code, now),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def account_exists(self, code: str) -> bool:
        """Check whether an account code is registered."""
        return self._query_one("SELECT 1 FROM accounts WHERE code = ?", (code,)) is not None

    def count_accounts(self) -> int:
        row = self._query_one("SELECT COUNT(*) AS n FROM accounts")
        return int(row["n"])

    # ===== Sync state =====

    def get_sync_state(self, code: str) -> Optional[SyncData]:
        """Get the canonical dataset of an account, or None if unknown."""
        row = self._query_one(
            """
            SELECT items, categories, master_list, favorites, baco_mode, updated_at
            FROM sync_state
            WHERE account_code = ?
            """,
            (code,),
        )
        if row is None:
            return None
        return SyncData(
            items=_load_json(row["items"], []),
            categories=_load_json(row["categories"], {}),
            master_list=_load_json(row["master_list"], []),
            favorites=_load_json(row["favorites"], []),
            baco_mode=row["baco_mode"] == 1,
            updated_at=int(row["updated_at"]),
        )

    def get_updated_at(self, code: str) -> int:
        """Get the last update timestamp of an account (0 if unknown)."""
        row = self._query_one(
            "SELECT updated_at FROM sync_state WHERE account_code = ?", (code,)
        )
        return int(row["updated_at"]) if row else 0

    def save_sync_state(self, code: str, data: SyncData, updated_at: int) -> None:
        """Replace the canonical dataset of an account."""
        self._execute(
            """
            UPDATE sync_state
            SET items = ?,
                categories = ?,
                master_list = ?,
                favorites = ?,
                baco_mode = ?,
                updated_at = ?
            WHERE account_code = ?
            """,
            (
                json.dumps(data.items),
                json.dumps(data.categories),
                json.dumps(data.master_list),
                json.dumps(data.favorites),
                1 if data.baco_mode else 0,
                updated_at,
                code,
            ),
        )

    # ===== Devices =====

    def get_device(self, device_id: str) -> Optional[Device]:
        row = self._query_one(
            "SELECT id, account_code, name, last_seen, created_at FROM devices WHERE id = ?",
            (device_id,),
        )
        return _row_to_device(row) if row else None

    def count_devices(self, code: str) -> int:
        row = self._query_one(
            "SELECT COUNT(*) AS n FROM devices WHERE account_code = ?", (code,)
        )
        return int(row["n"])

    def upsert_device(self, code: str, device_id: str, name: str, seen_at: int) -> None:
        """Insert a device or refresh its name, account and last_seen."""
        self._execute(
            """
            INSERT INTO devices (id, account_code, name, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                account_code = excluded.account_code,
                name = excluded.name,
                last_seen = excluded.last_seen
            """,
            (device_id, code, name, seen_at, seen_at),
        )

    def list_devices(self, code: str) -> List[Device]:
        rows = self._query_all(
            """
            SELECT id, account_code, name, last_seen, created_at
            FROM devices
            WHERE account_code = ?
            ORDER BY last_seen DESC, created_at DESC
            """,
            (code,),
        )
        return [_row_to_device(row) for row in rows]

    def delete_device(self, code: str, device_id: str) -> bool:
        """Delete a device linked to an account. Returns False if not linked."""
        return self._execute(
            "DELETE FROM devices WHERE id = ? AND account_code = ?", (device_id, code)
        ) > 0

    def delete_devices_seen_before(self, cutoff: int) -> int:
        """Delete devices whose last_seen is older than cutoff. Returns count."""
        return self._execute("DELETE FROM devices WHERE last_seen < ?", (cutoff,))


def _row_to_device(row: sqlite3.Row) -> Device:
    return Device(
        id=row["id"],
        account_code=row["account_code"],
        name=row["name"],
        last_seen=int(row["last_seen"]),
        created_at=int(row["created_at"]),
    )


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.error(f"Corrupt JSON column in sync_state, using empty value: {raw[:80]!r}")
        return default
