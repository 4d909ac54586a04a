"""Administrative queries over the documents table: listing, expiry, per-path reads."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone

from localrag.db.filters import build_where_clause
from localrag.db.models import DocumentMetadata, ListItem, ListOptions, VectorChunk
from localrag.db.schema import DOCUMENTS_TABLE, row_to_chunk, row_to_metadata
from localrag.errors import DatabaseError

logger = logging.getLogger(__name__)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StoreManager:
    """Listing, expiry sweeps, and exact-path reads for the vector store.

    Args:
        conn: Open connection owned by the VectorStore.
        delete_document: Callback that removes every chunk of one document key
            (the store's ``delete_chunks``, which also keeps the FTS index in sync).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        delete_document: Callable[[str], None],
    ) -> None:
        self._conn = conn
        self._delete_document = delete_document

    def list_files(self, options: ListOptions | None = None) -> list[ListItem]:
        """Aggregate chunks into documents, newest first, then paginate.

        Filters are applied in SQL; grouping happens in memory so that the
        latest chunk's metadata can represent its document. ``offset`` and
        ``limit`` apply to the aggregated list, not to chunk rows.
        """
        options = options or ListOptions()
        where, params = build_where_clause(options.filters)
        sql = f"SELECT d.* FROM {DOCUMENTS_TABLE} d"
        if where:
            sql += f" WHERE {where}"

        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to list documents.") from exc

        grouped: dict[str, ListItem] = {}
        for row in rows:
            file_path = row["file_path"]
            timestamp = row["timestamp"]
            item = grouped.get(file_path)
            if item is None:
                grouped[file_path] = ListItem(
                    file_path=file_path,
                    chunk_count=1,
                    timestamp=timestamp,
                    metadata=row_to_metadata(row),
                )
                continue
            item.chunk_count += 1
            if timestamp > item.timestamp:
                item.timestamp = timestamp
                item.metadata = row_to_metadata(row)

        items = sorted(grouped.values(), key=lambda i: i.timestamp, reverse=True)
        return items[options.offset : options.offset + options.limit]

    def count_documents(self) -> int:
        try:
            return self._conn.execute(
                f"SELECT COUNT(DISTINCT file_path) FROM {DOCUMENTS_TABLE}"
            ).fetchone()[0]
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to count documents.") from exc

    def cleanup_expired(self) -> int:
        """Delete every document whose ``expires_at`` has passed.

        Only rows that declare an expiry are fetched; the comparison is done
        in Python on parsed timestamps. Returns the number of distinct
        document keys removed.
        """
        try:
            candidates = self._conn.execute(
                f"SELECT file_path, expires_at FROM {DOCUMENTS_TABLE} WHERE expires_at IS NOT NULL"
            ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to read expiry candidates.") from exc

        now = datetime.now(timezone.utc)
        expired: set[str] = set()
        for row in candidates:
            expires_at = _parse_timestamp(row["expires_at"])
            if expires_at is None:
                logger.warning(
                    "Ignoring unparseable expires_at '%s' on %s", row["expires_at"], row["file_path"]
                )
                continue
            if expires_at < now:
                expired.add(row["file_path"])

        for file_path in sorted(expired):
            self._delete_document(file_path)
            logger.info("Removed expired document %s", file_path)

        return len(expired)

    def get_chunks_by_path(self, file_path: str) -> list[VectorChunk]:
        """Return every chunk stored under *file_path*, ordered by chunk index."""
        try:
            rows = self._conn.execute(
                f"SELECT * FROM {DOCUMENTS_TABLE} WHERE file_path = ? ORDER BY chunk_index",
                (file_path,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to read chunks for {file_path}.") from exc
        return [row_to_chunk(r) for r in rows]

    def get_latest_metadata(self, file_path: str) -> DocumentMetadata | None:
        """Return the metadata of the most recently written chunk of *file_path*."""
        try:
            row = self._conn.execute(
                f"SELECT * FROM {DOCUMENTS_TABLE} WHERE file_path = ? "
                "ORDER BY timestamp DESC LIMIT 1",
                (file_path,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to read metadata for {file_path}.") from exc
        return row_to_metadata(row) if row else None
