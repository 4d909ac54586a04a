"""Error taxonomy shared by every localrag component.

Callers can catch ``LocalRAGError`` for anything raised by the engine, or one
of the specific subclasses:

  ValidationError     bad input (label, TTL, limit, unsupported file type)
  FileOperationError  reading or stat-ing a file / fetching a URL failed
  EmbeddingError      model priming or inference failed, worker crashed
  DatabaseError       search / insert / delete / migrate / optimize failed

The original exception is always chained (``raise ... from exc``).
"""

from __future__ import annotations


class LocalRAGError(Exception):
    """Base class for all localrag errors."""


class ValidationError(LocalRAGError, ValueError):
    """Raised for invalid user input or configuration. Never retried."""


class FileOperationError(LocalRAGError):
    """Raised when a file system or network read fails."""


class EmbeddingError(LocalRAGError):
    """Raised when an embedding cannot be produced."""


class DatabaseError(LocalRAGError):
    """Raised when the vector database rejects an operation."""
