"""
Persistence Layer for the Adnet Ledger

Provides:
- LedgerStore abstraction (InMemory for dev, File for prod)
- Environment-based store configuration
"""

from .store import (
    FileLedgerStore,
    InMemoryLedgerStore,
    LedgerStore,
    StoreCorruptedError,
    StoreError,
)
from .config import StoreConfig, StoreDriver, create_store

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "FileLedgerStore",
    "StoreError",
    "StoreCorruptedError",
    "StoreConfig",
    "StoreDriver",
    "create_store",
]
