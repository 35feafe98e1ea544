"""Storage layer for casemail.

SQLite-backed key-value stores behind the KVStore protocol.

Usage:
    from casemail.db import KVDatabase, StoreRegistry

    database = KVDatabase("data/casemail.db")
    await database.initialize()
    registry = StoreRegistry.from_config(database, config)
"""

from casemail.db.models import SCHEMA_VERSION, init_database, verify_schema
from casemail.db.store import (
    DEFAULT_LIST_LIMIT,
    KVDatabase,
    KVStore,
    ListResult,
    SqliteKVStore,
    StoreRegistry,
    iter_keys,
    purge_store,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DEFAULT_LIST_LIMIT",
    "KVDatabase",
    "KVStore",
    "ListResult",
    "SqliteKVStore",
    "StoreRegistry",
    "iter_keys",
    "purge_store",
]
