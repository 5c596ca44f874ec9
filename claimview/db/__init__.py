"""
Database Layer for the claimview indexer

Provides:
- DerivedStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema
- Connection configuration
"""

from .store import (
    ApplyResult,
    ApplyStatus,
    DerivedStore,
    EdgeChange,
    InMemoryDerivedStore,
    PostgresDerivedStore,
    ReferenceEdge,
    SourceRow,
    StoredClaim,
    StoreError,
)
from .config import DatabaseConfig, StoreDriver, database_configured, get_database_url, get_store_driver

__all__ = [
    "ApplyResult",
    "ApplyStatus",
    "DerivedStore",
    "EdgeChange",
    "InMemoryDerivedStore",
    "PostgresDerivedStore",
    "ReferenceEdge",
    "SourceRow",
    "StoredClaim",
    "StoreError",
    "DatabaseConfig",
    "StoreDriver",
    "database_configured",
    "get_database_url",
    "get_store_driver",
]
