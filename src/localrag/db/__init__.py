"""localrag storage layer."""

from localrag.db.connection import open_connection
from localrag.db.migrations import SchemaMigrator
from localrag.db.models import (
    DocumentMetadata,
    ListItem,
    ListOptions,
    QueryFilters,
    QueryResult,
    StatusReport,
    VectorChunk,
    WatchedPath,
)
from localrag.db.store import VectorStore

__all__ = [
    "open_connection",
    "SchemaMigrator",
    "VectorStore",
    "DocumentMetadata",
    "ListItem",
    "ListOptions",
    "QueryFilters",
    "QueryResult",
    "StatusReport",
    "VectorChunk",
    "WatchedPath",
]
