# ============================================================================
# carindex/data/store.py
# Block Store - Record Persistence
# ============================================================================
#
# PURPOSE:
# Persists BlockRecords and ArchiveRecords. Callers only see two operations:
#
#   get(table, key_field, key) -> record dict or None
#   put(full_overwrite, table, key_field, key, fields)
#
# full_overwrite=True replaces the whole record; False merges the given fields
# into the existing record and leaves every other field alone.
#
# IMPLEMENTATIONS:
# - **MemoryBlockStore**: dict of tables, used by tests and dry runs
# - **SqliteBlockStore**: aiosqlite, one JSON document per key
#
# CONSISTENCY:
# A merge is a read followed by a write. Two ingestions touching the same
# record at the same time can lose one of the updates. Nothing here locks
# across records.
#
# ============================================================================

from __future__ import annotations

import asyncio
import base64
import copy
import json
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiosqlite

from carindex.base.config import IndexerConfig
from carindex.data.models import ContentID
from carindex.errors import ErrorCode, StoreIOError

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class BlockStore(ABC):
    """Key/value record store addressed by (table, key_field, key)."""

    @abstractmethod
    async def get(self, table: str, key_field: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(
        self,
        full_overwrite: bool,
        table: str,
        key_field: str,
        key: str,
        fields: Dict[str, Any],
    ) -> None:
        ...

    async def close(self) -> None:
        """Release resources. No-op by default."""


# ============================================================================
# In-memory store
# ============================================================================

class MemoryBlockStore(BlockStore):
    """
    Dict-backed store. Records are deep-copied on the way in and out, so
    callers never share state with the store.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.reads = 0
        self.writes = 0

    async def get(self, table: str, key_field: str, key: str) -> Optional[Dict[str, Any]]:
        self.reads += 1
        record = self.tables.get(table, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(
        self,
        full_overwrite: bool,
        table: str,
        key_field: str,
        key: str,
        fields: Dict[str, Any],
    ) -> None:
        self.writes += 1
        rows = self.tables.setdefault(table, {})
        fields = copy.deepcopy(fields)
        if full_overwrite or key not in rows:
            rows[key] = {key_field: key, **fields}
        else:
            rows[key].update(fields)


# ============================================================================
# SQLite store
# ============================================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"/": {"bytes": base64.b64encode(bytes(value)).decode("ascii")}}
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, ContentID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    # {"/": {"bytes": ...}} is the dag-json spelling of a byte string
    if len(obj) == 1 and "/" in obj:
        inner = obj["/"]
        if isinstance(inner, dict) and len(inner) == 1 and "bytes" in inner:
            return base64.b64decode(inner["bytes"])
    return obj


def encode_document(record: Dict[str, Any]) -> str:
    return json.dumps(record, default=_json_default, sort_keys=True)


def decode_document(text: str) -> Dict[str, Any]:
    return json.loads(text, object_hook=_json_object_hook)


class SqliteBlockStore(BlockStore):
    """
    Stores every logical table as its own SQLite table of JSON documents.

    Tables are created on first use. The connection is opened lazily under an
    asyncio lock and every statement runs under a second lock, because one
    aiosqlite connection must not interleave cursors.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()
        self._db_lock = asyncio.Lock()
        self._tables: set = set()

    async def init(self) -> None:
        if self._connection is not None:
            return
        async with self._init_lock:
            if self._connection is not None:
                return
            try:
                connection = await aiosqlite.connect(self.db_path, timeout=5.0)
                await connection.execute("PRAGMA journal_mode=WAL;")
                await connection.execute("PRAGMA synchronous=NORMAL;")
                await connection.execute("PRAGMA busy_timeout=5000;")
                await connection.commit()
            except (sqlite3.Error, aiosqlite.Error, OSError) as e:
                logger.error(f"[SqliteBlockStore] Init failed for {self.db_path}: {e}")
                raise StoreIOError(
                    ErrorCode.STORE_INIT_FAILED,
                    f"Cannot open block store at {self.db_path}: {e}",
                    details={"db_path": self.db_path},
                ) from e
            self._connection = connection
            logger.info(f"[SqliteBlockStore] Opened {self.db_path} (WAL mode)")

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        self._tables.clear()
        logger.info("[SqliteBlockStore] Connection closed.")

    async def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        if not _TABLE_NAME.match(table):
            raise StoreIOError(
                ErrorCode.STORE_WRITE_FAILED,
                f"Invalid table name {table!r}",
                details={"table": table},
                retryable=False,
            )
        await self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS "{table}" (
                key TEXT PRIMARY KEY,
                doc JSON NOT NULL CHECK(json_valid(doc))
            )
        """)
        await self._connection.commit()
        self._tables.add(table)

    async def get(self, table: str, key_field: str, key: str) -> Optional[Dict[str, Any]]:
        await self.init()
        try:
            async with self._db_lock:
                await self._ensure_table(table)
                async with self._connection.execute(
                    f'SELECT doc FROM "{table}" WHERE key = ?', (key,)
                ) as cursor:
                    row = await cursor.fetchone()
        except (sqlite3.Error, aiosqlite.Error, ValueError) as e:
            raise StoreIOError(
                ErrorCode.STORE_READ_FAILED,
                f"Cannot read {table}[{key_field}={key}]: {e}",
                details={"table": table, "key": key},
            ) from e
        if row is None:
            return None
        return decode_document(row[0])

    async def put(
        self,
        full_overwrite: bool,
        table: str,
        key_field: str,
        key: str,
        fields: Dict[str, Any],
    ) -> None:
        await self.init()
        try:
            async with self._db_lock:
                await self._ensure_table(table)
                record = {key_field: key, **fields}
                if not full_overwrite:
                    async with self._connection.execute(
                        f'SELECT doc FROM "{table}" WHERE key = ?', (key,)
                    ) as cursor:
                        row = await cursor.fetchone()
                    if row is not None:
                        record = {**decode_document(row[0]), **fields}
                await self._connection.execute(
                    f'INSERT OR REPLACE INTO "{table}" (key, doc) VALUES (?, ?)',
                    (key, encode_document(record)),
                )
                await self._connection.commit()
        except (sqlite3.Error, aiosqlite.Error, TypeError, ValueError) as e:
            raise StoreIOError(
                ErrorCode.STORE_WRITE_FAILED,
                f"Cannot write {table}[{key_field}={key}]: {e}",
                details={"table": table, "key": key, "full_overwrite": full_overwrite},
            ) from e


def create_store(config: IndexerConfig) -> BlockStore:
    """Build the BlockStore selected by configuration."""
    if config.storage.backend == "memory":
        return MemoryBlockStore()
    config.storage.base_dir.mkdir(parents=True, exist_ok=True)
    return SqliteBlockStore(str(config.storage.db_path))
