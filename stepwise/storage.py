"""
KeyValueStorage interface for pluggable storage backends.

Memory entries, conversations, messages and indexed documents are stored as
flat, independently addressable JSON records. Storage is OPTIONAL: every
component that persists can run purely in memory, and a backend that fails
is treated as "unavailable" (warning logged, operation continues in memory).

Three included implementations:
1. InMemoryStorage - Dict-based storage, data lost on exit (testing, prototyping)
2. JsonFileStorage - One JSON file per key, human-readable (single-user desktop use)
3. PostgresStorage - One ``records`` table with a JSONB value column (shared deployments)

Key scheme:
    mem:<id>                 memory entries
    conv:<id>                conversation metadata
    msg:<conv_id>:<index>    conversation messages
    vector:<document_id>     indexed document chunks
    active_conversation      id of the active conversation

Usage pattern:
    storage = JsonFileStorage(Config.DATA_DIR)
    await storage.initialize()
    await storage.put("mem:mem_1", entry.model_dump(mode="json"))
    records = await storage.scan("mem:")
    await storage.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from .config import Config
from .exceptions import StorageUnavailableError

try:  # Optional dependency (only needed for PostgresStorage)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg may not be installed for json/memory usage
    asyncpg = None


Record = Dict[str, Any]


def key_prefix(key: str) -> str:
    """Return the record family of a key (``mem``, ``conv``, ...)."""

    return key.split(":", 1)[0] if ":" in key else key


class KeyValueStorage(ABC):
    """Abstract base class for record storage.

    All methods are async so database and file backends never block the
    event loop. ``initialize()`` and ``close()`` manage connection pools and
    directories; both are no-ops for the in-memory backend.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Records: put(), get(), delete()
    3. Listing: scan() by key prefix, query() by a field of the stored value
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create tables, directories, pools)."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def put(self, key: str, value: Record) -> None:
        """Insert or replace the record stored under ``key``.

        Args:
            key: Record key, e.g. ``mem:mem_1700000000000_abc123``
            value: JSON-compatible dict
        """

    @abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        """Return the record stored under ``key`` or None."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    @abstractmethod
    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        """Return ``(key, value)`` pairs whose key starts with ``prefix``, sorted by key."""

    async def query(self, prefix: str, field: str, value: Any) -> List[Tuple[str, Record]]:
        """Return records under ``prefix`` whose ``field`` equals ``value``.

        Backends with an index override this; the default filters a scan.
        """

        return [(key, record) for key, record in await self.scan(prefix) if record.get(field) == value]

    async def delete_prefix(self, prefix: str) -> int:
        records = await self.scan(prefix)
        for key, _ in records:
            await self.delete(key)
        return len(records)


class InMemoryStorage(KeyValueStorage):
    """Dict-backed storage.

    ``fail=True`` makes every call raise ``StorageUnavailableError`` so tests
    can exercise the degraded path; ``writes`` counts successful puts.
    """

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.writes = 0
        self._records: Dict[str, Record] = {}

    def _check(self) -> None:
        if self.fail:
            raise StorageUnavailableError("In-memory storage is switched to failure mode")

    async def initialize(self) -> None:
        self._check()

    async def close(self) -> None:
        pass

    async def put(self, key: str, value: Record) -> None:
        self._check()
        # Store a JSON copy so callers cannot mutate persisted state
        self._records[key] = json.loads(json.dumps(value))
        self.writes += 1

    async def get(self, key: str) -> Optional[Record]:
        self._check()
        record = self._records.get(key)
        return json.loads(json.dumps(record)) if record is not None else None

    async def delete(self, key: str) -> None:
        self._check()
        self._records.pop(key, None)

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        self._check()
        return [
            (key, json.loads(json.dumps(self._records[key])))
            for key in sorted(self._records)
            if key.startswith(prefix)
        ]

    def keys(self) -> List[str]:
        return sorted(self._records)


class JsonFileStorage(KeyValueStorage):
    """One JSON file per key under ``base_path``.

    Keys are percent-encoded into file names so ``msg:conv_1:0`` becomes
    ``msg%3Aconv_1%3A0.json``. All file I/O runs in a worker thread
    (``asyncio.to_thread``).
    """

    def __init__(self, base_path: Optional[Path] = None) -> None:
        self.base_path = Path(base_path) if base_path is not None else Config.DATA_DIR

    def _path(self, key: str) -> Path:
        return self.base_path / f"{quote(key, safe='')}.json"

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot create {self.base_path}: {exc}") from exc

    async def close(self) -> None:
        pass

    async def put(self, key: str, value: Record) -> None:
        path = self._path(key)
        text = json.dumps(value, indent=2, ensure_ascii=False)
        try:
            await asyncio.to_thread(path.write_text, text, "utf-8")
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot write {path}: {exc}") from exc

    async def get(self, key: str) -> Optional[Record]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            text = await asyncio.to_thread(path.read_text, "utf-8")
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot read {path}: {exc}") from exc
        return json.loads(text)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            await asyncio.to_thread(path.unlink)

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        if not self.base_path.exists():
            return []

        def _scan() -> List[Tuple[str, Record]]:
            results = []
            for path in sorted(self.base_path.glob("*.json")):
                key = unquote(path.stem)
                if key.startswith(prefix):
                    results.append((key, json.loads(path.read_text("utf-8"))))
            results.sort(key=lambda item: item[0])
            return results

        try:
            return await asyncio.to_thread(_scan)
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot scan {self.base_path}: {exc}") from exc


class PostgresStorage(KeyValueStorage):
    """PostgreSQL-backed storage using asyncpg.

    Records live in a single table::

        CREATE TABLE IF NOT EXISTS records (
            key    TEXT PRIMARY KEY,
            prefix TEXT NOT NULL,
            value  JSONB NOT NULL
        );
        CREATE INDEX IF NOT EXISTS records_prefix_idx ON records (prefix);

    ``query()`` uses a JSONB field lookup (``value ->> field``) instead of
    filtering in Python. Requires the ``postgres`` extra (``asyncpg``).
    """

    _SCHEMA = [
        """
        CREATE TABLE IF NOT EXISTS records (
            key TEXT PRIMARY KEY,
            prefix TEXT NOT NULL,
            value JSONB NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS records_prefix_idx ON records (prefix)",
    ]

    def __init__(self, database_url: Optional[str] = None) -> None:
        if asyncpg is None:  # pragma: no cover - environment without asyncpg
            raise RuntimeError(
                "asyncpg is required for PostgresStorage; install stepwise[postgres]"
            )
        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(self.database_url)
            except (OSError, asyncpg.PostgresError) as exc:
                raise StorageUnavailableError(f"Cannot connect to {self.database_url}: {exc}") from exc
        async with self.pool.acquire() as conn:
            for statement in self._SCHEMA:
                await conn.execute(statement)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def put(self, key: str, value: Record) -> None:
        assert self.pool is not None, "Storage not initialized"

        query = """
            INSERT INTO records (key, prefix, value)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (key) DO UPDATE SET value = $3::jsonb
        """

        async with self.pool.acquire() as conn:
            await conn.execute(query, key, key_prefix(key), json.dumps(value))

    async def get(self, key: str) -> Optional[Record]:
        assert self.pool is not None, "Storage not initialized"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT value FROM records WHERE key = $1", key)

        if not row:
            return None
        return json.loads(row["value"])

    async def delete(self, key: str) -> None:
        assert self.pool is not None, "Storage not initialized"

        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM records WHERE key = $1", key)

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        assert self.pool is not None, "Storage not initialized"

        query = """
            SELECT key, value
            FROM records
            WHERE key LIKE $1 || '%'
            ORDER BY key
        """

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, _escape_like(prefix))

        return [(row["key"], json.loads(row["value"])) for row in rows]

    async def query(self, prefix: str, field: str, value: Any) -> List[Tuple[str, Record]]:
        assert self.pool is not None, "Storage not initialized"

        query = """
            SELECT key, value
            FROM records
            WHERE key LIKE $1 || '%' AND value ->> $2 = $3
            ORDER BY key
        """

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, _escape_like(prefix), field, str(value))

        return [(row["key"], json.loads(row["value"])) for row in rows]


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


__all__ = [
    "KeyValueStorage",
    "InMemoryStorage",
    "JsonFileStorage",
    "PostgresStorage",
    "key_prefix",
]
