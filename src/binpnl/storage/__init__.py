"""Reference position stores.

This package provides:
- DuckDBStore: file-backed store shared across processes
- InMemoryStore: process-local store with the same ordering rules
"""

from binpnl.storage.duckdb_store import DuckDBStore
from binpnl.storage.memory import InMemoryStore

__all__ = [
    "DuckDBStore",
    "InMemoryStore",
]
