"""WHERE-clause construction for search and listing filters.

Every value is a bound parameter; the clause references the documents
table through the alias ``d``.
"""

from __future__ import annotations

from typing import Any

from localrag.db.models import QueryFilters


def build_where_clause(filters: QueryFilters | None) -> tuple[str, list[Any]]:
    """Return ``(sql, params)`` for *filters*; ``("", [])`` when there is nothing to filter.

    ``tags`` uses AND semantics: every listed tag must be present.
    """
    if filters is None:
        return "", []

    conditions: list[str] = []
    params: list[Any] = []

    if filters.type:
        conditions.append("d.memory_type = ?")
        params.append(filters.type)
    if filters.project:
        conditions.append("d.project = ?")
        params.append(filters.project)
    if filters.file_name:
        conditions.append("d.file_name = ?")
        params.append(filters.file_name)
    for tag in filters.tags or []:
        conditions.append("EXISTS (SELECT 1 FROM json_each(d.tags) WHERE json_each.value = ?)")
        params.append(tag)

    return " AND ".join(conditions), params
