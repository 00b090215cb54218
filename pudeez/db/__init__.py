"""
Database Layer for the Escrow Reconciliation Core

Provides:
- PostgreSQL schema
- EscrowStore abstraction (InMemory for dev, Postgres for prod)
- Environment-based configuration
"""

from .store import (
    EscrowStore,
    InMemoryEscrowStore,
    PostgresEscrowStore,
    EscrowStoreError,
    LockTimeoutError,
    BaselineAlreadyCapturedError,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "EscrowStore",
    "InMemoryEscrowStore",
    "PostgresEscrowStore",
    "EscrowStoreError",
    "LockTimeoutError",
    "BaselineAlreadyCapturedError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
