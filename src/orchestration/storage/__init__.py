"""Persistence: SQLite database and key/value document stores."""

from orchestration.storage.database import Database
from orchestration.storage.documents import (
    DocumentStore,
    MemoryDocumentStore,
    SqliteDocumentStore,
)

__all__ = [
    "Database",
    "DocumentStore",
    "MemoryDocumentStore",
    "SqliteDocumentStore",
]
