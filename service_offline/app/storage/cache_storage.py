"""
Persistent named response caches for the offline worker.

All named caches share one SQLite database in the offline data directory.
Each entry holds the full response (status, headers, body bytes) for a GET
request URL, along with the request header values named by the response's
Vary header so later lookups can honour it.
"""

import asyncio
import json
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import httpx

from shared.logging import get_logger


STATIC_CACHE = "static-v1"
DYNAMIC_CACHE = "dynamic-v1"
API_CACHE = "api-v1"
KNOWN_CACHES = (STATIC_CACHE, DYNAMIC_CACHE, API_CACHE)

CACHE_DB_NAME = "caches.db"

# Stored bodies are already decoded; framing headers are recomputed on load
_UNSTORED_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}

RequestLike = Union[httpx.Request, str]


def _vary_names(headers: httpx.Headers) -> List[str]:
    vary = headers.get("vary", "")
    return [name.strip().lower() for name in vary.split(",") if name.strip()]


class NamedCache:
    """One named key/response store, keyed by request URL."""

    def __init__(self, storage: "CacheStorage", name: str):
        self.storage = storage
        self.name = name

    async def match(self, request: RequestLike, *, ignore_vary: bool = False) -> Optional[httpx.Response]:
        """Return the stored response for a GET request, if any."""
        request = self.storage.as_request(request)
        if request.method != "GET":
            return None
        row = await asyncio.to_thread(self._load, str(request.url))
        if row is None:
            return None
        return self.storage.row_to_response(row, request, ignore_vary=ignore_vary)

    async def put(self, request: RequestLike, response: httpx.Response) -> None:
        """Store a response for a GET request, replacing any existing entry."""
        request = self.storage.as_request(request)
        if request.method != "GET":
            raise ValueError(f"Only GET requests can be cached, got {request.method}")

        body = await response.aread()
        vary = {name: request.headers.get(name) for name in _vary_names(response.headers)}
        headers = [
            [name, value]
            for name, value in response.headers.multi_items()
            if name.lower() not in _UNSTORED_HEADERS
        ]
        await asyncio.to_thread(
            self._store,
            str(request.url),
            json.dumps(vary),
            response.status_code,
            json.dumps(headers),
            body,
        )

    async def delete(self, request: RequestLike) -> bool:
        request = self.storage.as_request(request)
        return await asyncio.to_thread(self._delete, str(request.url))

    async def keys(self) -> List[httpx.Request]:
        """Requests for every stored entry, oldest first."""
        urls = await asyncio.to_thread(self._urls)
        return [httpx.Request("GET", url) for url in urls]

    def _load(self, url: str) -> Optional[Tuple]:
        with closing(self.storage.connect()) as conn:
            return conn.execute(
                "SELECT url, vary, status, headers, body FROM cache_entries "
                "WHERE cache_name = ? AND url = ?",
                (self.name, url),
            ).fetchone()

    def _store(self, url: str, vary: str, status: int, headers: str, body: bytes) -> None:
        with closing(self.storage.connect()) as conn:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries
                    (cache_name, url, vary, status, headers, body, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (self.name, url, vary, status, headers, body, time.time()),
                )

    def _delete(self, url: str) -> bool:
        with closing(self.storage.connect()) as conn:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE cache_name = ? AND url = ?",
                    (self.name, url),
                )
                return cursor.rowcount > 0

    def _urls(self) -> List[str]:
        with closing(self.storage.connect()) as conn:
            rows = conn.execute(
                "SELECT url FROM cache_entries WHERE cache_name = ? ORDER BY stored_at, url",
                (self.name,),
            ).fetchall()
        return [row[0] for row in rows]


class CacheStorage:
    """Registry of named caches backed by a single SQLite file."""

    def __init__(self, data_dir: Union[str, Path], db_name: str = CACHE_DB_NAME):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / db_name
        self.logger = get_logger("offline.cache_storage")
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=5.0)

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with closing(self.connect()) as conn:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS caches (
                        name TEXT PRIMARY KEY,
                        created_at REAL NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        cache_name TEXT NOT NULL,
                        url TEXT NOT NULL,
                        vary TEXT NOT NULL,
                        status INTEGER NOT NULL,
                        headers TEXT NOT NULL,
                        body BLOB NOT NULL,
                        stored_at REAL NOT NULL,
                        PRIMARY KEY (cache_name, url)
                    )
                """)

    @staticmethod
    def as_request(request: RequestLike) -> httpx.Request:
        if isinstance(request, httpx.Request):
            return request
        return httpx.Request("GET", request)

    @staticmethod
    def row_to_response(row: Tuple, request: httpx.Request, *, ignore_vary: bool = False) -> Optional[httpx.Response]:
        """Rebuild a stored response, or None when Vary headers disagree."""
        url, vary, status, headers, body = row
        stored_vary: Dict[str, Optional[str]] = json.loads(vary)
        if not ignore_vary:
            if "*" in stored_vary:
                return None
            for name, value in stored_vary.items():
                if request.headers.get(name) != value:
                    return None

        return httpx.Response(
            status,
            headers=[tuple(pair) for pair in json.loads(headers)],
            content=body,
            request=httpx.Request("GET", url),
        )

    async def open(self, name: str) -> NamedCache:
        """Open a named cache, creating it when missing."""
        await asyncio.to_thread(self._create, name)
        return NamedCache(self, name)

    async def has(self, name: str) -> bool:
        return name in await self.keys()

    async def keys(self) -> List[str]:
        """Cache names in creation order."""
        return await asyncio.to_thread(self._names)

    async def delete(self, name: str) -> bool:
        """Delete a named cache and all of its entries."""
        deleted = await asyncio.to_thread(self._drop, name)
        if deleted:
            self.logger.info("Deleted cache", cache_name=name)
        return deleted

    async def match(self, request: RequestLike) -> Optional[httpx.Response]:
        """First matching response across all caches, in creation order."""
        request = self.as_request(request)
        for name in await self.keys():
            response = await NamedCache(self, name).match(request)
            if response is not None:
                return response
        return None

    def _create(self, name: str) -> None:
        with closing(self.connect()) as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (name, time.time()),
                )

    def _names(self) -> List[str]:
        with closing(self.connect()) as conn:
            rows = conn.execute("SELECT name FROM caches ORDER BY created_at, rowid").fetchall()
        return [row[0] for row in rows]

    def _drop(self, name: str) -> bool:
        with closing(self.connect()) as conn:
            with conn:
                conn.execute("DELETE FROM cache_entries WHERE cache_name = ?", (name,))
                cursor = conn.execute("DELETE FROM caches WHERE name = ?", (name,))
                return cursor.rowcount > 0
