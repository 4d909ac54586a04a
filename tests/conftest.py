"""Shared pytest fixtures."""

from __future__ import annotations

import math
import zlib

import pytest

from localrag.config import (
    ChunkingCfg,
    EmbeddingCfg,
    IngestCfg,
    LocalRAGConfig,
    PoolCfg,
    RetrievalCfg,
    StorageCfg,
    WatchCfg,
)
from localrag.db.connection import open_connection
from localrag.db.models import DocumentMetadata, VectorChunk
from localrag.db.store import VectorStore
from localrag.embedding.embedder import Embedder
from localrag.embedding.worker import thread_worker_factory
from localrag.rag.engine import LocalRAG

DIM = 16


def fake_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vec = [0.0] * dim
    for word in text.lower().split():
        vec[zlib.crc32(word.encode()) % dim] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        vec[0] = 1.0
        return vec
    return [v / norm for v in vec]


class FakeEmbeddingService:
    """Stands in for EmbeddingService inside ThreadWorkers.

    Texts containing ``__crash__`` kill the worker thread; texts containing
    ``__fail__`` make the task fail normally.
    """

    def __init__(self, calls: list | None = None, dim: int = DIM) -> None:
        self.calls = calls if calls is not None else []
        self.dim = dim

    def handle(self, kind, payload):
        texts = [payload] if kind == "embed" else list(payload)
        if any("__crash__" in t for t in texts):
            raise SystemExit("simulated worker crash")
        if any("__fail__" in t for t in texts):
            raise RuntimeError("simulated task failure")
        self.calls.append((kind, len(texts)))
        vectors = [fake_vector(t, self.dim) for t in texts]
        return vectors[0] if kind == "embed" else vectors


def make_chunk(
    file_path: str,
    index: int = 0,
    text: str = "hello world",
    *,
    vector: list[float] | None = None,
    timestamp: str = "2024-01-01T00:00:00+00:00",
    **metadata,
) -> VectorChunk:
    meta = DocumentMetadata(
        file_name=metadata.pop("file_name", file_path.rsplit("/", 1)[-1]),
        file_size=len(text),
        file_type=metadata.pop("file_type", "md"),
        memory_type=metadata.pop("memory_type", "file"),
        created_at=timestamp,
        updated_at=timestamp,
        **metadata,
    )
    return VectorChunk(
        id=f"{file_path}#{index}",
        file_path=file_path,
        chunk_index=index,
        text=text,
        vector=vector if vector is not None else fake_vector(text),
        metadata=meta,
        timestamp=timestamp,
    )


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with sqlite-vec loaded, closed after test."""
    conn = open_connection(tmp_path / "localrag.db")
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_path):
    """A VectorStore on a fresh database with default retrieval settings."""
    s = VectorStore.open(tmp_path / "store.db", DIM, RetrievalCfg())
    yield s
    s.close()


@pytest.fixture
def embed_calls() -> list:
    """Every (kind, text_count) handled by fake embedding workers."""
    return []


@pytest.fixture
def fake_worker_factory(embed_calls):
    return thread_worker_factory(lambda: FakeEmbeddingService(embed_calls))


@pytest.fixture
def rag_config(tmp_path) -> LocalRAGConfig:
    base = tmp_path.resolve()
    return LocalRAGConfig(
        storage=StorageCfg(db_path=str(base / ".localrag" / "rag.db")),
        embedding=EmbeddingCfg(model="fake-model", dimensions=DIM, batch_size=4, worker_mode="thread"),
        pool=PoolCfg(max_workers=2, min_workers=0, idle_timeout_ms=0),
        chunking=ChunkingCfg(chunk_size=200, chunk_overlap=50, min_chunk_length=20),
        retrieval=RetrievalCfg(),
        ingest=IngestCfg(base_dir=str(base)),
        watch=WatchCfg(debounce_ms=0, poll_interval_ms=20),
    )


@pytest.fixture
def make_embedder(rag_config, fake_worker_factory):
    """Async factory for an Embedder backed by fake thread workers."""

    async def _make(pool: PoolCfg | None = None) -> Embedder:
        return await Embedder.create(
            rag_config.embedding,
            pool or rag_config.pool,
            worker_factory=fake_worker_factory,
        )

    return _make


@pytest.fixture
def make_rag(rag_config, make_embedder):
    """Async factory for a LocalRAG wired to fake embedding workers."""

    async def _make(config: LocalRAGConfig | None = None) -> LocalRAG:
        cfg = config or rag_config
        embedder = await make_embedder(cfg.pool)
        return await LocalRAG.create(cfg, embedder=embedder)

    return _make
