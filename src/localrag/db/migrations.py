"""Detect-and-migrate runner for the documents table.

A table is stale when it lacks any column listed in
``REQUIRED_COLUMNS``. Stale tables are rewritten: every row is read,
its metadata normalised into the current shape, and the table recreated with
the canonical schema inside one transaction. Rows without a vector cannot be
searched and are skipped with a warning.

Two outcomes are deliberately kept apart in the logs:
  * the legacy table genuinely held no rows → dropped, ``run()`` returns False;
  * rows were counted but could not be carried over → ``DatabaseError``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from localrag.db.models import DocumentMetadata, VectorChunk
from localrag.db.schema import (
    DOCUMENTS_TABLE,
    FTS_TABLE,
    INSERT_CHUNK,
    REQUIRED_COLUMNS,
    chunk_to_params,
    create_documents_table,
    decode_tags,
    deserialize_vector,
    table_columns,
    table_exists,
)
from localrag.errors import DatabaseError

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class SchemaMigrator:
    """Bring an existing documents table up to the current schema."""

    def __init__(self, conn: sqlite3.Connection, table_name: str = DOCUMENTS_TABLE) -> None:
        self._conn = conn
        self._table = table_name

    def run(self) -> bool:
        """Check the table and migrate it if needed.

        Returns:
            True if an up-to-date table exists afterwards; False if there is
            no table and the caller must create one.

        Raises:
            DatabaseError: If the migration fails or would lose rows.
        """
        if not table_exists(self._conn, self._table):
            logger.info("Table '%s' does not exist yet; it will be created.", self._table)
            return False

        if not self.needs_migration():
            logger.info("Table '%s' schema is up-to-date.", self._table)
            return True

        logger.warning("Table '%s' schema is outdated. Starting migration...", self._table)
        return self._migrate()

    def needs_migration(self) -> bool:
        columns = table_columns(self._conn, self._table)
        return not REQUIRED_COLUMNS <= columns

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def _migrate(self) -> bool:
        try:
            expected = self._conn.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()[0]
            rows = self._conn.execute(f"SELECT * FROM {self._table}").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to read table '{self._table}' for migration.") from exc

        logger.info("Read %d of %d records for migration.", len(rows), expected)

        if not rows:
            if expected:
                raise DatabaseError(
                    f"Migration read 0 rows but table '{self._table}' reports {expected}; "
                    "refusing to drop it."
                )
            self._drop_empty()
            logger.warning(
                "Legacy table '%s' was empty; dropped it. It will be recreated with the "
                "current schema.",
                self._table,
            )
            return False

        now = datetime.now(timezone.utc).isoformat()
        migrated: list[VectorChunk] = []
        for row in rows:
            chunk = self._normalize_row(row, now)
            if not chunk.vector:
                # Unsearchable: sqlite-vec rejects distance on a zero-length vector.
                logger.warning(
                    "Skipping legacy chunk %s of %s: it has no vector.",
                    chunk.chunk_index,
                    chunk.file_path,
                )
                continue
            migrated.append(chunk)

        try:
            self._conn.commit()
            self._conn.execute("BEGIN")
            self._conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")
            self._conn.execute(f"DROP TABLE {self._table}")
            create_documents_table(self._conn)
            self._conn.executemany(INSERT_CHUNK, [chunk_to_params(c) for c in migrated])
            written = self._conn.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()[0]
            if written != len(migrated):
                raise DatabaseError(
                    f"Migration wrote {written} rows but {len(migrated)} were read; rolled back."
                )
            self._conn.commit()
        except DatabaseError:
            self._conn.rollback()
            raise
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise DatabaseError("Failed to migrate table schema.") from exc

        logger.info("Migrated %d records to the current schema.", len(migrated))
        return True

    def _drop_empty(self) -> None:
        try:
            self._conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")
            self._conn.execute(f"DROP TABLE {self._table}")
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise DatabaseError(f"Failed to drop empty table '{self._table}'.") from exc

    @staticmethod
    def _normalize_row(row: sqlite3.Row, now: str) -> VectorChunk:
        """Coerce a legacy row into a VectorChunk with current-shape metadata.

        Metadata may live in dedicated columns, in a legacy JSON ``metadata``
        column (camelCase or snake_case keys), or be missing entirely.
        """
        keys = set(row.keys())
        legacy: dict[str, Any] = {}
        if "metadata" in keys and row["metadata"]:
            try:
                decoded = json.loads(row["metadata"])
            except (TypeError, json.JSONDecodeError):
                decoded = None
            if isinstance(decoded, dict):
                legacy = decoded

        def get(name: str) -> Any:
            for key in (name, _camel(name)):
                if key in keys and row[key] is not None:
                    return row[key]
            for key in (name, _camel(name)):
                if legacy.get(key) is not None:
                    return legacy[key]
            return None

        timestamp = get("timestamp") or now
        raw_vector = get("vector")
        if isinstance(raw_vector, (bytes, bytearray)):
            vector = deserialize_vector(bytes(raw_vector))
        elif isinstance(raw_vector, str):
            vector = [float(v) for v in json.loads(raw_vector)]
        else:
            vector = []

        metadata = DocumentMetadata(
            file_name=str(get("file_name") or "unknown"),
            file_size=int(get("file_size") or 0),
            file_type=str(get("file_type") or "unknown"),
            language=get("language") or None,
            tags=decode_tags(get("tags")),
            project=get("project") or None,
            memory_type=get("memory_type") or None,
            expires_at=get("expires_at") or None,
            created_at=str(get("created_at") or timestamp),
            updated_at=str(get("updated_at") or timestamp),
            source_url=get("source_url") or None,
            author=get("author") or None,
            file_created_at=get("file_created_at") or None,
            file_modified_at=get("file_modified_at") or None,
        )
        return VectorChunk(
            id=str(get("id") or uuid.uuid4()),
            file_path=str(get("file_path") or ""),
            chunk_index=int(get("chunk_index") or 0),
            char_offset=_optional_int(get("char_offset")),
            text=str(get("text") or ""),
            vector=vector,
            metadata=metadata,
            timestamp=str(timestamp),
        )


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None
