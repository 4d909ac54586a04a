"""Hybrid retriever over the documents table: cosine distance (sqlite-vec) + BM25 (FTS5).

Hybrid scoring, used when the FTS index is available and the query has text:
  vector candidate  : max(0, 1 - distance / 2) * (1 - w)
  keyword candidate : (1 - rank / n) * w
  Contributions for the same (file_path, chunk_index) are summed; the reported
  score is 1 - composite, so lower is better just like a raw distance.

After ranking, results beyond ``max_distance`` are dropped and relevance-gap
grouping may cut the list at the first ('similar') or second ('related')
unusually large jump in score.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import statistics

from localrag.config import RetrievalCfg
from localrag.db.filters import build_where_clause
from localrag.db.models import QueryFilters, QueryResult
from localrag.db.schema import (
    DOCUMENTS_TABLE,
    FTS_TABLE,
    RESULT_COLUMNS,
    row_to_query_result,
    serialize_vector,
)
from localrag.errors import DatabaseError, ValidationError

logger = logging.getLogger(__name__)

_MIN_LIMIT = 1
_MAX_LIMIT = 50
_GROUPING_STD_MULTIPLIER = 1.5
_CANDIDATE_MULTIPLIER = 3
# Cosine distance on unit vectors spans [0, 2].
_MAX_DISTANCE = 2.0


class Retriever:
    """Run searches against an open store connection.

    Args:
        conn: Connection with sqlite-vec loaded.
        config: Retrieval tuning (hybrid weight, distance cutoff, grouping).
        fts_enabled: Whether the FTS5 index exists and can be queried.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: RetrievalCfg,
        fts_enabled: bool = False,
    ) -> None:
        self._conn = conn
        self._config = config
        self._fts_enabled = fts_enabled

    @property
    def fts_enabled(self) -> bool:
        return self._fts_enabled

    def set_fts_enabled(self, enabled: bool) -> None:
        self._fts_enabled = enabled

    def search(
        self,
        query_vector: list[float],
        query_text: str,
        limit: int = 10,
        filters: QueryFilters | None = None,
    ) -> list[QueryResult]:
        """Return up to *limit* results, best (lowest score) first.

        Args:
            query_vector: Embedding of the query.
            query_text: Raw query text, used for the keyword channel.
            limit: Maximum number of results, 1-50.
            filters: Optional conjunctive metadata filters.

        Raises:
            ValidationError: If *limit* is outside 1-50.
            DatabaseError: If a query fails.
        """
        if not _MIN_LIMIT <= limit <= _MAX_LIMIT:
            raise ValidationError(
                f"Invalid limit: expected {_MIN_LIMIT}-{_MAX_LIMIT}, got {limit}"
            )

        where, params = build_where_clause(filters)
        try:
            if self._use_hybrid(query_text):
                results = self._hybrid_search(query_vector, query_text, limit, where, params)
            else:
                results = self._vector_search(query_vector, limit, where, params)
        except sqlite3.Error as exc:
            raise DatabaseError("Failed to search vectors.") from exc

        logger.debug("Search returned %d candidates before filtering", len(results))
        results = self._apply_distance_filter(results)
        return self._apply_grouping(results)

    def _use_hybrid(self, query_text: str) -> bool:
        return (
            self._fts_enabled
            and bool(query_text.strip())
            and self._config.hybrid_weight > 0
        )

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _vector_search(
        self,
        query_vector: list[float],
        limit: int,
        where: str,
        params: list,
    ) -> list[QueryResult]:
        sql = (
            f"SELECT {RESULT_COLUMNS}, vec_distance_cosine(d.vector, ?) AS distance "
            f"FROM {DOCUMENTS_TABLE} d"
        )
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY distance LIMIT ?"
        rows = self._conn.execute(
            sql, [serialize_vector(query_vector), *params, limit]
        ).fetchall()
        return [row_to_query_result(r, float(r["distance"])) for r in rows]

    def _keyword_search(
        self,
        query_text: str,
        limit: int,
        where: str,
        params: list,
    ) -> list[QueryResult]:
        fts_query = _to_fts_query(query_text)
        if not fts_query:
            return []
        sql = (
            f"SELECT {RESULT_COLUMNS}, bm25({FTS_TABLE}) AS bm25_score "
            f"FROM {FTS_TABLE} JOIN {DOCUMENTS_TABLE} d ON d.seq = {FTS_TABLE}.rowid "
            f"WHERE {FTS_TABLE} MATCH ?"
        )
        if where:
            sql += f" AND {where}"
        sql += " ORDER BY bm25_score LIMIT ?"
        rows = self._conn.execute(sql, [fts_query, *params, limit]).fetchall()
        return [row_to_query_result(r, float(r["bm25_score"])) for r in rows]

    def _hybrid_search(
        self,
        query_vector: list[float],
        query_text: str,
        limit: int,
        where: str,
        params: list,
    ) -> list[QueryResult]:
        candidates = limit * _CANDIDATE_MULTIPLIER
        keyword_results = self._keyword_search(query_text, candidates, where, params)
        vector_results = self._vector_search(query_vector, candidates, where, params)
        return self._hybrid_rerank(keyword_results, vector_results, limit)

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _hybrid_rerank(
        self,
        keyword_results: list[QueryResult],
        vector_results: list[QueryResult],
        limit: int,
    ) -> list[QueryResult]:
        keyword_weight = self._config.hybrid_weight
        vector_weight = 1.0 - keyword_weight

        scored: dict[tuple[str, int], tuple[QueryResult, float]] = {}
        for result in vector_results:
            vector_score = max(0.0, 1.0 - result.score / _MAX_DISTANCE)
            scored[(result.file_path, result.chunk_index)] = (result, vector_score * vector_weight)

        n = len(keyword_results) or 1
        for i, result in enumerate(keyword_results):
            key = (result.file_path, result.chunk_index)
            contribution = (1.0 - i / n) * keyword_weight
            if key in scored:
                existing, score = scored[key]
                scored[key] = (existing, score + contribution)
            else:
                scored[key] = (result, contribution)

        ranked = sorted(scored.values(), key=lambda item: item[1], reverse=True)[:limit]
        for result, composite in ranked:
            result.score = 1.0 - composite
        return [result for result, _ in ranked]

    def _apply_distance_filter(self, results: list[QueryResult]) -> list[QueryResult]:
        max_distance = self._config.max_distance
        if max_distance is None:
            return results
        return [r for r in results if r.score <= max_distance]

    def _apply_grouping(self, results: list[QueryResult]) -> list[QueryResult]:
        """Cut *results* at a statistically large gap between adjacent scores.

        A boundary is a gap greater than mean + 1.5 * population std of all
        gaps. 'similar' keeps everything before the first boundary, 'related'
        everything before the second. Too few boundaries leaves the list as is.
        """
        mode = self._config.grouping
        if not mode or len(results) < 2:
            return results

        gaps = [results[i + 1].score - results[i].score for i in range(len(results) - 1)]
        threshold = statistics.fmean(gaps) + _GROUPING_STD_MULTIPLIER * statistics.pstdev(gaps)
        boundaries = [i + 1 for i, gap in enumerate(gaps) if gap > threshold]

        groups = 1 if mode == "similar" else 2
        if len(boundaries) < groups:
            return results
        return results[: boundaries[groups - 1]]


def _to_fts_query(text: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms.

    FTS5 MATCH rejects punctuation like commas as syntax errors, so anything
    that is not a word character is treated as a separator.
    """
    terms = re.sub(r"[^\w\s]", " ", text).split()
    return " OR ".join(f'"{t}"' for t in terms)
