"""
Адаптеры хранилища для Storage API.
"""

from .storage_adapter import StorageAdapter, Mutator
from .memory_adapter import MemoryStorageAdapter
from .sqlite_adapter import SQLiteAdapter

__all__ = [
    "StorageAdapter",
    "Mutator",
    "MemoryStorageAdapter",
    "SQLiteAdapter",
]
