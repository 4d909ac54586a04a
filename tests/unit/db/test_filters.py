"""Tests for filter → WHERE clause construction."""

from __future__ import annotations

from localrag.db.filters import build_where_clause
from localrag.db.models import QueryFilters


def test_no_filters():
    assert build_where_clause(None) == ("", [])
    assert build_where_clause(QueryFilters()) == ("", [])


def test_scalar_filters_are_parameterised():
    sql, params = build_where_clause(QueryFilters(type="text", project="p1", file_name="a.md"))
    assert sql == "d.memory_type = ? AND d.project = ? AND d.file_name = ?"
    assert params == ["text", "p1", "a.md"]


def test_each_tag_adds_a_condition():
    sql, params = build_where_clause(QueryFilters(tags=["a", "b"]))
    assert sql.count("json_each(d.tags)") == 2
    assert params == ["a", "b"]


def test_values_never_inlined():
    sql, _ = build_where_clause(QueryFilters(project="x'; DROP TABLE documents; --"))
    assert "DROP" not in sql
