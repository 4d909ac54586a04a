"""Domain models for the localrag database layer."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class DocumentMetadata:
    file_name: str = ""
    file_size: int = 0
    file_type: str = ""
    language: str | None = None
    tags: list[str] = field(default_factory=list)
    project: str | None = None
    memory_type: str | None = None  # file | text | url
    expires_at: str | None = None
    created_at: str = ""
    updated_at: str = ""
    source_url: str | None = None
    author: str | None = None
    file_created_at: str | None = None
    file_modified_at: str | None = None


@dataclass
class VectorChunk:
    """One stored chunk. All chunks sharing ``file_path`` form one document."""

    id: str
    file_path: str  # absolute path or synthetic key like memory://<label>
    chunk_index: int
    text: str
    vector: list[float]
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    timestamp: str = ""
    char_offset: int | None = None  # where ``text`` starts in the source text


@dataclass
class QueryResult:
    file_path: str
    chunk_index: int
    text: str
    score: float  # distance, lower is better
    metadata: DocumentMetadata | None = None


@dataclass
class QueryFilters:
    """Conjunctive search filters. ``tags`` uses AND semantics."""

    type: str | None = None
    project: str | None = None
    file_name: str | None = None
    tags: list[str] | None = None


@dataclass
class ListOptions:
    limit: int = 20
    offset: int = 0
    filters: QueryFilters | None = None


@dataclass
class ListItem:
    file_path: str
    chunk_count: int
    timestamp: str  # latest chunk timestamp
    metadata: DocumentMetadata | None = None


@dataclass
class WatchedPath:
    path: str
    type: str  # file | folder
    recursive: bool
    added_at: str


@dataclass
class StatusReport:
    document_count: int
    chunk_count: int
    memory_usage_mb: float
    uptime_seconds: float
    fts_index_enabled: bool
    search_mode: str  # hybrid | vector-only
