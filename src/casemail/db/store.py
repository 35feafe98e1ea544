"""Key-value stores backed by SQLite.

The pipeline only depends on the KVStore protocol (get/put/list/delete with
opaque string values). SqliteKVStore implements it on top of aiosqlite, with
one namespace per logical store. StoreRegistry resolves every store the
pipeline needs once, at startup.

Usage:
    from casemail.db.store import KVDatabase, StoreRegistry

    database = KVDatabase("data/casemail.db")
    await database.initialize()
    registry = StoreRegistry.from_config(database, config)

    await registry.raw.put(key, value)
    page = await registry.matched.list(limit=100)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import aiosqlite

from casemail.core.errors import StorageError
from casemail.core.logging import get_logger
from casemail.db.models import init_database

if TYPE_CHECKING:
    from casemail.config_schema import AppConfig

logger = get_logger(__name__)

# Page size used when no limit is given, and the hard upper bound per page
DEFAULT_LIST_LIMIT = 1000


@dataclass(frozen=True)
class ListResult:
    """One page of keys from a store listing.

    Attributes:
        keys: Keys in ascending order
        cursor: Pass back to list() to get the next page (None when complete)
        complete: True when there are no more keys after this page
    """

    keys: list[str] = field(default_factory=list)
    cursor: str | None = None
    complete: bool = True


class KVStore(Protocol):
    """Storage contract consumed by the router, triage engine and orchestrator."""

    name: str

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def list(
        self,
        prefix: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ListResult: ...

    async def delete(self, key: str) -> None: ...


async def iter_keys(store: KVStore, prefix: str | None = None) -> AsyncIterator[str]:
    """Yield every key in a store, following list() cursors page by page."""
    cursor: str | None = None
    while True:
        page = await store.list(prefix=prefix, cursor=cursor)
        for key in page.keys:
            yield key
        if page.complete or page.cursor is None:
            return
        cursor = page.cursor


async def purge_store(store: KVStore) -> int:
    """Delete every record in a store.

    Keys are collected first so deletions don't disturb cursor paging.

    Returns:
        Number of records deleted
    """
    keys = [key async for key in iter_keys(store)]
    for key in keys:
        await store.delete(key)
    logger.info("store_purged", store=store.name, deleted=len(keys))
    return len(keys)


class KVDatabase:
    """SQLite database holding every namespace.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create the database and tables if needed. Call before use."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with database.connect() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    def namespace(self, name: str) -> SqliteKVStore:
        """Return a store handle for one namespace."""
        return SqliteKVStore(self, name)

    async def count_by_namespace(self) -> dict[str, int]:
        """Count records per namespace (namespaces with no records are absent)."""
        try:
            async with self.connect() as db:
                cursor = await db.execute(
                    "SELECT namespace, COUNT(*) AS n FROM kv_records GROUP BY namespace"
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("namespace_count_failed", error=str(e))
            raise StorageError(f"Failed to count records: {e}") from e
        return {row["namespace"]: row["n"] for row in rows}


class SqliteKVStore:
    """KVStore implementation for one namespace of a KVDatabase.

    Writes are unconditional upserts. Listing is ordered by key and paged
    with an opaque cursor (the last key of the previous page).
    """

    def __init__(self, database: KVDatabase, name: str):
        self.database = database
        self.name = name

    def __repr__(self) -> str:
        return f"SqliteKVStore(name={self.name!r})"

    async def get(self, key: str) -> str | None:
        try:
            async with self.database.connect() as db:
                cursor = await db.execute(
                    "SELECT value FROM kv_records WHERE namespace = ? AND key = ?",
                    (self.name, key),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("kv_get_failed", store=self.name, key=key, error=str(e))
            raise StorageError(f"Failed to read {key}: {e}", store=self.name, key=key) from e
        return row["value"] if row else None

    async def put(self, key: str, value: str) -> None:
        try:
            async with self.database.connect() as db:
                await db.execute(
                    """
                    INSERT INTO kv_records (namespace, key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (self.name, key, value, datetime.now(UTC).isoformat()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("kv_put_failed", store=self.name, key=key, error=str(e))
            raise StorageError(f"Failed to write {key}: {e}", store=self.name, key=key) from e

    async def list(
        self,
        prefix: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ListResult:
        """List keys in ascending order.

        Args:
            prefix: Only return keys starting with this string
            cursor: Cursor from a previous page
            limit: Page size (defaults to DEFAULT_LIST_LIMIT, capped at it)
        """
        page_size = min(limit or DEFAULT_LIST_LIMIT, DEFAULT_LIST_LIMIT)
        clauses = ["namespace = ?"]
        params: list[object] = [self.name]
        if prefix:
            # substr() instead of LIKE: keys are full of '_' wildcards
            clauses.append("substr(key, 1, ?) = ?")
            params.extend([len(prefix), prefix])
        if cursor:
            clauses.append("key > ?")
            params.append(cursor)
        params.append(page_size + 1)

        try:
            async with self.database.connect() as db:
                rows = await db.execute_fetchall(
                    f"SELECT key FROM kv_records WHERE {' AND '.join(clauses)} "  # noqa: S608
                    "ORDER BY key LIMIT ?",
                    params,
                )
        except aiosqlite.Error as e:
            logger.error("kv_list_failed", store=self.name, error=str(e))
            raise StorageError(f"Failed to list keys: {e}", store=self.name) from e

        keys = [row["key"] for row in rows]
        if len(keys) > page_size:
            keys = keys[:page_size]
            return ListResult(keys=keys, cursor=keys[-1], complete=False)
        return ListResult(keys=keys, cursor=None, complete=True)

    async def delete(self, key: str) -> None:
        try:
            async with self.database.connect() as db:
                await db.execute(
                    "DELETE FROM kv_records WHERE namespace = ? AND key = ?",
                    (self.name, key),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("kv_delete_failed", store=self.name, key=key, error=str(e))
            raise StorageError(f"Failed to delete {key}: {e}", store=self.name, key=key) from e


@dataclass(frozen=True)
class StoreRegistry:
    """Every store handle the pipeline writes to, resolved once.

    Attributes:
        raw: Holds every retrieved message
        matched: Holds every message that matched at least one category
        state: Holds the watermark, run summary and health reports
        categories: Category name -> store
    """

    raw: KVStore
    matched: KVStore
    state: KVStore
    categories: dict[str, KVStore] = field(default_factory=dict)

    @classmethod
    def from_config(cls, database: KVDatabase, config: AppConfig) -> StoreRegistry:
        """Build the registry from the configured store and category names."""
        return cls(
            raw=database.namespace(config.storage.raw_store),
            matched=database.namespace(config.storage.matched_store),
            state=database.namespace(config.storage.state_store),
            categories={name: database.namespace(name) for name in config.category_names()},
        )

    def category(self, name: str) -> KVStore:
        """Return the store for a category.

        Raises:
            KeyError: If no rule routes to this category
        """
        try:
            return self.categories[name]
        except KeyError:
            raise KeyError(
                f"No store registered for category '{name}'. "
                "Check the category name against config.yaml."
            ) from None

    def message_stores(self) -> dict[str, KVStore]:
        """Every store holding message records (raw, matched, categories) by name."""
        stores: dict[str, KVStore] = {self.raw.name: self.raw, self.matched.name: self.matched}
        stores.update(self.categories)
        return stores

    def resolve(self, name: str) -> KVStore:
        """Look up any message store by name (raw, matched, or a category).

        Raises:
            KeyError: If the name is unknown
        """
        stores = self.message_stores()
        if name not in stores:
            raise KeyError(f"Unknown store '{name}'. Known stores: {', '.join(sorted(stores))}")
        return stores[name]
