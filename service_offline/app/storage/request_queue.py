"""
Durable queue of mutating requests waiting for background sync.

Records live in a versioned SQLite database in the offline data directory.
Every operation runs in its own transaction; there are no multi-record
transactions apart from moving a record to the dead-letter table.
"""

import asyncio
import json
import secrets
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from shared.errors import OfflineQueueError
from shared.logging import get_logger
from ..models import PendingRequest, RequestOptions


OFFLINE_DB_NAME = "property-management-pos-offline"
OFFLINE_DB_VERSION = 1
OFFLINE_STORE = "pending_requests"
DEAD_LETTER_STORE = "dead_letter_requests"

_COLUMNS = "id, url, options, created_at, attempts, last_error"


def generate_request_id() -> str:
    """Epoch milliseconds plus a random hex suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def _row_to_record(row) -> PendingRequest:
    record_id, url, options, created_at, attempts, last_error = row
    return PendingRequest(
        id=record_id,
        url=url,
        options=RequestOptions(**json.loads(options)),
        created_at=created_at,
        attempts=attempts,
        last_error=last_error,
    )


class OfflineRequestQueue:
    """Pending request store owned by the offline worker."""

    def __init__(self, data_dir: Union[str, Path], db_name: str = OFFLINE_DB_NAME):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / f"{db_name}.db"
        self.logger = get_logger("offline.request_queue")
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=5.0)

    def _init_db(self) -> None:
        """Create or verify the version 1 schema."""
        try:
            with closing(self._connect()) as conn:
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version > OFFLINE_DB_VERSION:
                    raise OfflineQueueError(
                        "Offline store was written by a newer version",
                        details={"version": version, "supported": OFFLINE_DB_VERSION},
                    )
                if version == OFFLINE_DB_VERSION:
                    return

                with conn:
                    for table in (OFFLINE_STORE, DEAD_LETTER_STORE):
                        conn.execute(f"""
                            CREATE TABLE IF NOT EXISTS {table} (
                                id TEXT PRIMARY KEY,
                                url TEXT NOT NULL,
                                options TEXT NOT NULL,
                                created_at INTEGER NOT NULL,
                                attempts INTEGER NOT NULL DEFAULT 0,
                                last_error TEXT
                            )
                        """)
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{OFFLINE_STORE}_created "
                        f"ON {OFFLINE_STORE}(created_at)"
                    )
                    conn.execute(f"PRAGMA user_version = {OFFLINE_DB_VERSION}")
        except sqlite3.Error as exc:
            raise OfflineQueueError("Failed to open offline store", details={"error": str(exc)}) from exc

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            self.logger.error("Offline store operation failed", operation=func.__name__, error=str(exc))
            raise OfflineQueueError(details={"error": str(exc)}) from exc

    async def add(self, url: str, options: RequestOptions) -> str:
        """Persist a request and return its id."""
        record = PendingRequest(
            id=generate_request_id(),
            url=url,
            options=options,
            created_at=int(time.time() * 1000),
        )
        await self._run(self._insert, record)
        self.logger.info("Queued offline request", request_id=record.id, url=url, method=options.method)
        return record.id

    async def get(self, record_id: str) -> Optional[PendingRequest]:
        return await self._run(self._select_one, record_id)

    async def get_all(self) -> List[PendingRequest]:
        """All pending records in the order they were queued."""
        return await self._run(self._select_all, OFFLINE_STORE)

    async def remove(self, record_id: str) -> bool:
        return await self._run(self._delete, record_id)

    async def record_failure(self, record_id: str, error: str) -> int:
        """Count a failed replay and return the record's attempt total."""
        return await self._run(self._increment_attempts, record_id, error)

    async def dead_letter(self, record_id: str) -> bool:
        """Move a record out of the pending store."""
        moved = await self._run(self._move_to_dead_letter, record_id)
        if moved:
            self.logger.warning("Moved offline request to dead letter store", request_id=record_id)
        return moved

    async def get_dead_letters(self) -> List[PendingRequest]:
        return await self._run(self._select_all, DEAD_LETTER_STORE)

    async def count(self) -> int:
        return await self._run(self._count)

    def _insert(self, record: PendingRequest) -> None:
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    f"INSERT INTO {OFFLINE_STORE} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.url,
                        record.options.model_dump_json(),
                        record.created_at,
                        record.attempts,
                        record.last_error,
                    ),
                )

    def _select_one(self, record_id: str) -> Optional[PendingRequest]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM {OFFLINE_STORE} WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def _select_all(self, table: str) -> List[PendingRequest]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM {table} ORDER BY created_at, rowid"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def _delete(self, record_id: str) -> bool:
        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(f"DELETE FROM {OFFLINE_STORE} WHERE id = ?", (record_id,))
                return cursor.rowcount > 0

    def _increment_attempts(self, record_id: str, error: str) -> int:
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    f"UPDATE {OFFLINE_STORE} SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                    (error, record_id),
                )
                row = conn.execute(
                    f"SELECT attempts FROM {OFFLINE_STORE} WHERE id = ?", (record_id,)
                ).fetchone()
        return row[0] if row else 0

    def _move_to_dead_letter(self, record_id: str) -> bool:
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {DEAD_LETTER_STORE} ({_COLUMNS}) "
                    f"SELECT {_COLUMNS} FROM {OFFLINE_STORE} WHERE id = ?",
                    (record_id,),
                )
                cursor = conn.execute(f"DELETE FROM {OFFLINE_STORE} WHERE id = ?", (record_id,))
                return cursor.rowcount > 0

    def _count(self) -> int:
        with closing(self._connect()) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {OFFLINE_STORE}").fetchone()[0]
