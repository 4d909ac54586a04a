"""Tests for schema helpers: tag decoding and row mapping."""

from __future__ import annotations

import pytest

from localrag.db.schema import (
    DOCUMENTS_TABLE,
    INSERT_CHUNK,
    chunk_to_params,
    create_documents_table,
    decode_tags,
    row_to_chunk,
    table_columns,
)

from conftest import make_chunk


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, []),
        ("", []),
        ('["a", "b"]', ["a", "b"]),
        ("a, b,,c", ["a", "b", "c"]),
        (["x", 1], ["x", "1"]),
        ("[not json", ["[not json"]),
    ],
)
def test_decode_tags(raw, expected):
    assert decode_tags(raw) == expected


def test_documents_table_has_metadata_columns(tmp_db):
    create_documents_table(tmp_db)
    columns = table_columns(tmp_db, DOCUMENTS_TABLE)
    assert {"seq", "id", "file_path", "char_offset", "vector", "tags", "expires_at", "source_url"} <= columns


def test_chunk_row_mapping_preserves_metadata(tmp_db):
    create_documents_table(tmp_db)
    chunk = make_chunk(
        "/docs/a.md",
        index=2,
        text="mapped text",
        tags=["one", "two"],
        project="proj",
        author="Ada",
    )
    chunk.char_offset = 17
    tmp_db.execute(INSERT_CHUNK, chunk_to_params(chunk))

    row = tmp_db.execute(f"SELECT * FROM {DOCUMENTS_TABLE}").fetchone()
    restored = row_to_chunk(row)

    assert restored.id == chunk.id
    assert restored.chunk_index == 2
    assert restored.char_offset == 17
    assert restored.metadata.tags == ["one", "two"]
    assert restored.metadata.project == "proj"
    assert restored.metadata.author == "Ada"
    assert restored.vector == pytest.approx(chunk.vector)
