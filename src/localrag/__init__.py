"""localrag: a private, local retrieval-augmented-generation engine."""

import logging

from localrag.config import ConfigError, LocalRAGConfig, load_config
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
from localrag.errors import (
    DatabaseError,
    EmbeddingError,
    FileOperationError,
    LocalRAGError,
    ValidationError,
)
from localrag.rag.engine import LocalRAG

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ConfigError",
    "DatabaseError",
    "DocumentMetadata",
    "EmbeddingError",
    "FileOperationError",
    "ListItem",
    "ListOptions",
    "LocalRAG",
    "LocalRAGConfig",
    "LocalRAGError",
    "QueryFilters",
    "QueryResult",
    "StatusReport",
    "ValidationError",
    "VectorChunk",
    "WatchedPath",
    "load_config",
]
