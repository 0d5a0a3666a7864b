from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .identity import document_extension


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    settings_json TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    section_id TEXT NOT NULL,
    id TEXT NOT NULL,
    nombre TEXT NOT NULL,
    ruta TEXT NOT NULL,
    extension TEXT NOT NULL DEFAULT '',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (section_id, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_section_nombre
ON documents(section_id, nombre COLLATE NOCASE);

CREATE INDEX IF NOT EXISTS idx_documents_section_ruta
ON documents(section_id, ruta);

-- No foreign key to documents: metadata outlives re-indexes of its section.
CREATE TABLE IF NOT EXISTS document_metadata (
    section_id TEXT NOT NULL,
    document_id TEXT NOT NULL,
    metadata_json TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (section_id, document_id)
);

CREATE INDEX IF NOT EXISTS idx_document_metadata_section
ON document_metadata(section_id);

CREATE TABLE IF NOT EXISTS search_stats (
    section_id TEXT NOT NULL,
    query_key TEXT NOT NULL,
    query TEXT NOT NULL,
    count INTEGER NOT NULL,
    last_searched INTEGER NOT NULL,
    PRIMARY KEY (section_id, query_key)
);

CREATE INDEX IF NOT EXISTS idx_search_stats_section_count
ON search_stats(section_id, count DESC, last_searched DESC);
"""

BACKFILL_BATCH_SIZE = 500

SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


def now_ms() -> int:
    return int(time.time() * 1000)


def fits_sqlite_integer(value: int) -> bool:
    return SQLITE_INT_MIN <= value <= SQLITE_INT_MAX


def _unicode_lower(value: Any) -> Any:
    # SQLite's LOWER() only folds ASCII; names here are often accented.
    if isinstance(value, str):
        return value.lower()
    return value


async def fetchone(db: aiosqlite.Connection, sql: str, parameters: Sequence[Any] = ()) -> Any:
    async with db.execute(sql, tuple(parameters)) as cursor:
        return await cursor.fetchone()


def safe_load_json_object(raw: Optional[str], *, context: str) -> Dict[str, Any]:
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logging.warning("Failed to decode stored JSON for %s", context, exc_info=True)
        return {}
    if not isinstance(parsed, dict):
        logging.warning("Stored JSON for %s is not an object", context)
        return {}
    return parsed


def ensure_db_permissions(db_path: str) -> None:
    db_path = os.path.abspath(db_path)
    db_dir = os.path.dirname(db_path)
    os.makedirs(db_dir, exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


class _ConnectionPool:
    def __init__(
        self,
        db_path: str,
        *,
        maxsize: int = 5,
        timeout_s: float = 30.0,
        busy_timeout_s: float = 30.0,
    ) -> None:
        self.db_path = db_path
        self.maxsize = maxsize
        self.timeout_s = timeout_s
        self.busy_timeout_s = busy_timeout_s
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(maxsize)
        self._closing = False

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,
            timeout=self.busy_timeout_s,
        )
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_s * 1000)};")
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise RuntimeError("Connection pool is closing")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("Timed out waiting for database connection") from exc

        # A failed connect must give its semaphore slot back.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                should_create = False
                async with self._lock:
                    if self._created < self.maxsize:
                        self._created += 1
                        should_create = True
                if should_create:
                    try:
                        conn = await self._open()
                    except Exception:
                        async with self._lock:
                            self._created -= 1
                        raise
                    self._all.add(conn)
                    return conn
                return await self._queue.get()
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Failed to rollback or return pooled connection; closing.", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logging.warning("Failed to close connection during release", exc_info=True)
            self._all.discard(conn)
            if self._created > 0:
                self._created -= 1
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        self._closing = True
        for _ in range(self.maxsize):
            await self._semaphore.acquire()
        conns = list(self._all)
        self._all.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in conns:
            await conn.close()


class Database:
    """Owns the connection pool for one SQLite file.

    Constructed once per process and handed to every store component.
    """

    def __init__(
        self,
        db_path: str,
        *,
        pool_size: int = 5,
        pool_timeout_s: float = 30.0,
        busy_timeout_s: float = 30.0,
    ) -> None:
        self.db_path = os.path.abspath(db_path)
        self._pool_size = max(1, int(pool_size))
        self._pool_timeout_s = float(pool_timeout_s)
        self._busy_timeout_s = float(busy_timeout_s)
        self._pool: Optional[_ConnectionPool] = None

    def _get_pool(self) -> _ConnectionPool:
        if self._pool is None:
            ensure_db_permissions(self.db_path)
            self._pool = _ConnectionPool(
                self.db_path,
                maxsize=self._pool_size,
                timeout_s=self._pool_timeout_s,
                busy_timeout_s=self._busy_timeout_s,
            )
        return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        pool = self._get_pool()
        conn = await pool.acquire()
        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction: BEGIN IMMEDIATE, COMMIT, ROLLBACK on any error.

        The rollback runs before the connection goes back to the pool so a
        failed statement cannot leave an open transaction on a reused
        connection. The error is then re-raised unchanged.
        """
        async with self.connection() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                try:
                    await db.rollback()
                except Exception:
                    logging.warning("Rollback failed", exc_info=True)
                raise
            else:
                await db.commit()

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read transaction so several SELECTs observe the same data."""
        async with self.connection() as db:
            await db.execute("BEGIN")
            try:
                yield db
            finally:
                await db.rollback()

    async def init_schema(self) -> None:
        async with self.connection() as db:
            await db.executescript(SCHEMA_SQL)
            await _ensure_documents_schema(db)
            await db.commit()

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()


async def _ensure_documents_schema(db: aiosqlite.Connection) -> None:
    """Add and backfill the indexed extension column on older databases."""
    rows = await db.execute_fetchall("PRAGMA table_info(documents)")
    columns = {r[1] for r in rows}
    if "extension" not in columns:
        await db.execute("BEGIN IMMEDIATE")
        try:
            await db.execute("ALTER TABLE documents ADD COLUMN extension TEXT NOT NULL DEFAULT ''")
            existing = await db.execute_fetchall("SELECT section_id, id, nombre FROM documents")
            updates: List[Tuple[str, str, str]] = [
                (document_extension(str(nombre)), section_id, document_id)
                for section_id, document_id, nombre in existing
            ]
            for start in range(0, len(updates), BACKFILL_BATCH_SIZE):
                await db.executemany(
                    "UPDATE documents SET extension = ? WHERE section_id = ? AND id = ?",
                    updates[start : start + BACKFILL_BATCH_SIZE],
                )
            backfilled = len(updates)
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
        logging.info("Backfilled document extensions for %s rows", backfilled)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_section_extension ON documents(section_id, extension)"
    )


async def get_meta_value(db: aiosqlite.Connection, key: str) -> Optional[str]:
    row = await fetchone(db, "SELECT value FROM app_meta WHERE key = ?", (key,))
    if row is None:
        return None
    value = row[0]
    return value if isinstance(value, str) else None


async def set_meta_value(db: aiosqlite.Connection, key: str, value: str) -> None:
    await db.execute(
        """
        INSERT INTO app_meta(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )
