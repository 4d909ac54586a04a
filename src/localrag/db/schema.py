"""Database schema DDL and row ↔ model mapping.

The documents table is the single source of truth for chunk storage. Each
metadata field is its own column so the migrator can detect stale schemas
with ``PRAGMA table_info``; ``tags`` holds a JSON array.
"""

from __future__ import annotations

import json
import sqlite3
import struct
from typing import Any

import sqlite_vec

from localrag.db.models import DocumentMetadata, QueryResult, VectorChunk

DOCUMENTS_TABLE = "documents"
FTS_TABLE = "documents_fts"
WATCHED_PATHS_TABLE = "watched_paths"

# Metadata columns in storage order. Appending here requires a matching
# entry in REQUIRED_COLUMNS if older tables must be migrated.
METADATA_COLUMNS: tuple[str, ...] = (
    "file_name",
    "file_size",
    "file_type",
    "language",
    "memory_type",
    "tags",
    "project",
    "expires_at",
    "created_at",
    "updated_at",
    "source_url",
    "author",
    "file_created_at",
    "file_modified_at",
)

# Columns introduced by newer schema versions; a table lacking any of them
# is migrated on startup.
REQUIRED_COLUMNS: frozenset[str] = frozenset(
    ["char_offset", "created_at", "updated_at", "tags", "file_modified_at"]
)

CHUNK_COLUMNS: tuple[str, ...] = (
    "id",
    "file_path",
    "chunk_index",
    "char_offset",
    "text",
    "vector",
    "timestamp",
    *METADATA_COLUMNS,
)

# Columns returned by searches and listings (everything but the vector blob).
RESULT_COLUMNS: str = ", ".join(
    f"d.{c}" for c in CHUNK_COLUMNS if c != "vector"
)

CREATE_DOCUMENTS = f"""
CREATE TABLE {DOCUMENTS_TABLE} (
    seq              INTEGER PRIMARY KEY,
    id               TEXT NOT NULL UNIQUE,
    file_path        TEXT NOT NULL,
    chunk_index      INTEGER NOT NULL,
    char_offset      INTEGER,
    text             TEXT NOT NULL,
    vector           BLOB NOT NULL,
    timestamp        TEXT NOT NULL,
    file_name        TEXT NOT NULL DEFAULT '',
    file_size        INTEGER NOT NULL DEFAULT 0,
    file_type        TEXT NOT NULL DEFAULT '',
    language         TEXT,
    memory_type      TEXT,
    tags             TEXT NOT NULL DEFAULT '[]',
    project          TEXT,
    expires_at       TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    source_url       TEXT,
    author           TEXT,
    file_created_at  TEXT,
    file_modified_at TEXT
)
"""

CREATE_DOCUMENTS_INDEX = f"""
CREATE INDEX IF NOT EXISTS idx_{DOCUMENTS_TABLE}_file_path ON {DOCUMENTS_TABLE}(file_path)
"""

# FTS5 table for BM25 keyword search. Rows are inserted explicitly
# (rowid = documents.seq) by the store.
CREATE_FTS = f"""
CREATE VIRTUAL TABLE {FTS_TABLE} USING fts5(text, tokenize='porter ascii')
"""

CREATE_WATCHED_PATHS = f"""
CREATE TABLE IF NOT EXISTS {WATCHED_PATHS_TABLE} (
    path        TEXT PRIMARY KEY,
    type        TEXT NOT NULL,
    recursive   INTEGER NOT NULL DEFAULT 0,
    added_at    TEXT NOT NULL
)
"""

INSERT_CHUNK = (
    f"INSERT INTO {DOCUMENTS_TABLE} ({', '.join(CHUNK_COLUMNS)}) "
    f"VALUES ({', '.join('?' * len(CHUNK_COLUMNS))})"
)


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    return (
        conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
        ).fetchone()
        is not None
    )


def table_columns(conn: sqlite3.Connection, name: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({name})").fetchall()}


def create_documents_table(conn: sqlite3.Connection) -> None:
    """Create the canonical documents table and its file_path index."""
    conn.execute(CREATE_DOCUMENTS)
    conn.execute(CREATE_DOCUMENTS_INDEX)


# ------------------------------------------------------------------
# Vector encoding
# ------------------------------------------------------------------


def serialize_vector(vector: list[float]) -> bytes:
    return sqlite_vec.serialize_float32(vector)


def deserialize_vector(blob: bytes | None) -> list[float]:
    if not blob:
        return []
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def decode_tags(raw: Any) -> list[str]:
    """Normalise a stored tag list.

    Accepts the current JSON-array encoding plus the legacy encodings found
    in older tables: a comma-separated string or an already-decoded list.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(t) for t in raw]
    text = str(raw).strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return [str(t) for t in decoded]
    return [t.strip() for t in text.split(",") if t.strip()]


def row_to_metadata(row: sqlite3.Row) -> DocumentMetadata:
    return DocumentMetadata(
        file_name=row["file_name"] or "",
        file_size=int(row["file_size"] or 0),
        file_type=row["file_type"] or "",
        language=row["language"],
        tags=decode_tags(row["tags"]),
        project=row["project"],
        memory_type=row["memory_type"],
        expires_at=row["expires_at"],
        created_at=row["created_at"] or "",
        updated_at=row["updated_at"] or "",
        source_url=row["source_url"],
        author=row["author"],
        file_created_at=row["file_created_at"],
        file_modified_at=row["file_modified_at"],
    )


def row_to_chunk(row: sqlite3.Row) -> VectorChunk:
    return VectorChunk(
        id=row["id"],
        file_path=row["file_path"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        char_offset=row["char_offset"],
        vector=deserialize_vector(row["vector"]) if "vector" in row.keys() else [],
        metadata=row_to_metadata(row),
        timestamp=row["timestamp"],
    )


def row_to_query_result(row: sqlite3.Row, score: float) -> QueryResult:
    return QueryResult(
        file_path=row["file_path"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        score=score,
        metadata=row_to_metadata(row),
    )


def chunk_to_params(chunk: VectorChunk) -> tuple[Any, ...]:
    """Return INSERT_CHUNK parameters for *chunk*, in CHUNK_COLUMNS order."""
    m = chunk.metadata
    return (
        chunk.id,
        chunk.file_path,
        chunk.chunk_index,
        chunk.char_offset,
        chunk.text,
        serialize_vector(chunk.vector),
        chunk.timestamp,
        m.file_name,
        m.file_size,
        m.file_type,
        m.language,
        m.memory_type,
        json.dumps(list(m.tags or [])),
        m.project,
        m.expires_at,
        m.created_at or chunk.timestamp,
        m.updated_at or chunk.timestamp,
        m.source_url,
        m.author,
        m.file_created_at,
        m.file_modified_at,
    )
