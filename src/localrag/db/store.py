"""VectorStore: the persistent chunk store behind LocalRAG.

Opening a store connects to SQLite (sqlite-vec loaded), migrates or creates
the documents table, makes a best-effort attempt at the FTS5 index, and wires
the Retriever and StoreManager onto the same connection.
"""

from __future__ import annotations

import logging
import os
import resource
import sqlite3
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from localrag.config import RetrievalCfg
from localrag.db.connection import open_connection
from localrag.db.manager import StoreManager
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
from localrag.db.schema import (
    CREATE_FTS,
    CREATE_WATCHED_PATHS,
    DOCUMENTS_TABLE,
    FTS_TABLE,
    INSERT_CHUNK,
    WATCHED_PATHS_TABLE,
    chunk_to_params,
    create_documents_table,
    table_exists,
)
from localrag.errors import DatabaseError, EmbeddingError
from localrag.rag.retriever import Retriever

logger = logging.getLogger(__name__)


_STATM_PATH = Path("/proc/self/statm")


def _memory_usage_mb() -> float:
    """Current resident set size of this process in MiB.

    Read from /proc where available. Elsewhere (macOS) only the peak RSS is
    exposed, so that is reported instead.
    """
    try:
        resident_pages = int(_STATM_PATH.read_text().split()[1])
    except (OSError, IndexError, ValueError):
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is bytes on macOS, kilobytes elsewhere.
        if sys.platform == "darwin":
            return peak / (1024 * 1024)
        return peak / 1024
    return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)


class VectorStore:
    """Chunk storage, search, and watched-path persistence.

    Use :meth:`open` rather than the constructor; it prepares the schema.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        dimensions: int,
        retrieval: RetrievalCfg,
    ) -> None:
        self._conn = conn
        self._dimensions = dimensions
        self._retrieval = retrieval
        self._fts_enabled = False
        self._started_at = time.monotonic()
        self._retriever = Retriever(conn, retrieval, fts_enabled=False)
        self._manager = StoreManager(conn, self.delete_chunks)

    @classmethod
    def open(
        cls,
        db_path: Path | str,
        dimensions: int,
        retrieval: RetrievalCfg | None = None,
    ) -> VectorStore:
        """Connect to *db_path* and bring the schema up to date.

        Args:
            db_path: SQLite file path (created if missing).
            dimensions: Required vector length for every inserted chunk.
            retrieval: Search tuning; defaults to RetrievalCfg().

        Raises:
            DatabaseError: If the connection, migration, or table creation fails.
        """
        conn = open_connection(db_path)

        store = cls(conn, dimensions, retrieval or RetrievalCfg())
        try:
            store._initialize()
        except Exception:
            conn.close()
            raise
        return store

    def _initialize(self) -> None:
        table_ready = SchemaMigrator(self._conn).run()
        try:
            if not table_ready:
                logger.info("Creating '%s' table.", DOCUMENTS_TABLE)
                create_documents_table(self._conn)
            self._conn.execute(CREATE_WATCHED_PATHS)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to create store tables.") from exc
        self._ensure_fts_index()

    def _ensure_fts_index(self) -> None:
        try:
            self._conn.execute(CREATE_FTS)
            self._conn.execute(
                f"INSERT INTO {FTS_TABLE}(rowid, text) SELECT seq, text FROM {DOCUMENTS_TABLE}"
            )
            self._conn.commit()
            self._fts_enabled = True
            logger.info("FTS index is active.")
        except sqlite3.OperationalError as exc:
            self._conn.rollback()
            if "already exists" in str(exc):
                self._fts_enabled = True
                logger.info("FTS index already exists and is active.")
            else:
                self._fts_enabled = False
                logger.error(
                    "FTS index creation failed. Hybrid search will be disabled.", exc_info=True
                )
        self._retriever.set_fts_enabled(self._fts_enabled)

    @property
    def fts_enabled(self) -> bool:
        return self._fts_enabled

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunks(self, chunks: list[VectorChunk]) -> None:
        """Insert *chunks* and their FTS rows in one transaction.

        Raises:
            EmbeddingError: If any vector has the wrong dimensionality.
            DatabaseError: If the insert fails.
        """
        if not chunks:
            return
        for chunk in chunks:
            if len(chunk.vector) != self._dimensions:
                raise EmbeddingError(
                    f"Chunk {chunk.chunk_index} of {chunk.file_path} has "
                    f"{len(chunk.vector)} dimensions, expected {self._dimensions}."
                )
        try:
            for chunk in chunks:
                cur = self._conn.execute(INSERT_CHUNK, chunk_to_params(chunk))
                if self._fts_enabled:
                    self._conn.execute(
                        f"INSERT INTO {FTS_TABLE}(rowid, text) VALUES (?, ?)",
                        (cur.lastrowid, chunk.text),
                    )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise DatabaseError(f"Failed to insert chunks for {chunks[0].file_path}.") from exc

    def delete_chunks(self, file_path: str) -> None:
        """Delete every chunk stored under *file_path* (no-op if there are none)."""
        try:
            if self._fts_enabled:
                self._conn.execute(
                    f"DELETE FROM {FTS_TABLE} WHERE rowid IN "
                    f"(SELECT seq FROM {DOCUMENTS_TABLE} WHERE file_path = ?)",
                    (file_path,),
                )
            self._conn.execute(
                f"DELETE FROM {DOCUMENTS_TABLE} WHERE file_path = ?", (file_path,)
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise DatabaseError(f"Failed to delete chunks for {file_path}.") from exc

    def search(
        self,
        query_vector: list[float],
        query_text: str,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> list[QueryResult]:
        return self._retriever.search(query_vector, query_text, limit, filters)

    def list_files(self, options: ListOptions | None = None) -> list[ListItem]:
        return self._manager.list_files(options)

    def get_chunks_by_path(self, file_path: str) -> list[VectorChunk]:
        return self._manager.get_chunks_by_path(file_path)

    def get_latest_metadata(self, file_path: str) -> DocumentMetadata | None:
        return self._manager.get_latest_metadata(file_path)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_status(self) -> StatusReport:
        try:
            chunk_count = self._conn.execute(
                f"SELECT COUNT(*) FROM {DOCUMENTS_TABLE}"
            ).fetchone()[0]
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to read store status.") from exc

        hybrid = self._fts_enabled and self._retrieval.hybrid_weight > 0
        return StatusReport(
            document_count=self._manager.count_documents(),
            chunk_count=chunk_count,
            memory_usage_mb=_memory_usage_mb(),
            uptime_seconds=time.monotonic() - self._started_at,
            fts_index_enabled=self._fts_enabled,
            search_mode="hybrid" if hybrid else "vector-only",
        )

    def cleanup_expired(self) -> int:
        """Delete expired documents; optimize afterwards if anything was removed."""
        deleted = self._manager.cleanup_expired()
        if deleted > 0:
            logger.info("Triggering optimization after deleting %d documents.", deleted)
            self.optimize()
        return deleted

    def optimize(self) -> None:
        """Merge FTS segments and refresh SQLite planner statistics."""
        try:
            if not table_exists(self._conn, DOCUMENTS_TABLE):
                logger.info("Skipping optimization as table does not exist.")
                return
            logger.info("Starting database optimization...")
            if self._fts_enabled:
                self._conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('optimize')")
            self._conn.execute("PRAGMA optimize")
            self._conn.commit()
            logger.info("Database optimization complete.")
        except sqlite3.Error as exc:
            logger.error("Database optimization failed.", exc_info=True)
            raise DatabaseError("Failed to optimize the database.") from exc

    # ------------------------------------------------------------------
    # Watched paths
    # ------------------------------------------------------------------

    def get_watched_paths(self) -> list[WatchedPath]:
        try:
            rows = self._conn.execute(
                f"SELECT path, type, recursive, added_at FROM {WATCHED_PATHS_TABLE} ORDER BY added_at"
            ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to read watched paths.") from exc
        return [
            WatchedPath(
                path=r["path"],
                type=r["type"],
                recursive=bool(r["recursive"]),
                added_at=r["added_at"],
            )
            for r in rows
        ]

    def add_watched_path(self, path: str, type: str, recursive: bool) -> None:
        """Persist *path* as watched; re-adding an existing path replaces its entry."""
        try:
            self._conn.execute(
                f"INSERT INTO {WATCHED_PATHS_TABLE} (path, type, recursive, added_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(path) DO UPDATE SET "
                "type = excluded.type, recursive = excluded.recursive, added_at = excluded.added_at",
                (path, type, int(recursive), datetime.now(timezone.utc).isoformat()),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to persist watched path {path}.") from exc

    def remove_watched_path(self, path: str) -> None:
        try:
            self._conn.execute(f"DELETE FROM {WATCHED_PATHS_TABLE} WHERE path = ?", (path,))
            self._conn.commit()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to remove watched path {path}.") from exc

    def close(self) -> None:
        self._conn.close()
