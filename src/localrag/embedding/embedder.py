"""Embedder: the async front door to the embedding worker pool."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from localrag.config import EmbeddingCfg, PoolCfg
from localrag.embedding.pool import EmbeddingTask, WorkerPool
from localrag.embedding.service import EmbeddingService
from localrag.embedding.worker import (
    WorkerHandle,
    process_worker_factory,
    thread_worker_factory,
)
from localrag.errors import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder:
    """Turn text into vectors by submitting tasks to a WorkerPool.

    Build instances with :meth:`create`.
    """

    def __init__(self, pool: WorkerPool, dimensions: int, batch_size: int = 32) -> None:
        self._pool = pool
        self._dimensions = dimensions
        self._batch_size = batch_size

    @classmethod
    async def create(
        cls,
        config: EmbeddingCfg | None = None,
        pool_config: PoolCfg | None = None,
        *,
        worker_factory: Callable[[], WorkerHandle] | None = None,
    ) -> Embedder:
        """Prime the model cache, then start the worker pool.

        Priming finishes before any worker exists so that workers never race
        to download the model. Passing *worker_factory* skips priming and
        uses the given workers instead of the configured ones.

        Raises:
            EmbeddingError: If the model cannot be primed.
        """
        config = config or EmbeddingCfg()
        if worker_factory is None:
            await asyncio.to_thread(EmbeddingService.prime_cache, config.model, config.cache_dir)
            if config.worker_mode == "thread":
                worker_factory = thread_worker_factory(
                    lambda: EmbeddingService(config.model, config.cache_dir, config.dimensions)
                )
            else:
                worker_factory = process_worker_factory(
                    config.model, config.cache_dir, config.dimensions
                )

        pool = WorkerPool(worker_factory, pool_config)
        logger.info(
            "Embedder ready (model=%s, max_workers=%d).", config.model, pool.max_workers
        )
        return cls(pool, config.dimensions, config.batch_size)

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            EmbeddingError: If *text* is blank, the worker fails, or the
                vector has the wrong dimensionality.
        """
        if not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text.")
        vector = await self._pool.run_task(EmbeddingTask("embed", text))
        self._check_dimensions(vector)
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, preserving order.

        Texts are split into batches of ``batch_size``; batches run
        concurrently on the pool and are concatenated in submission order.
        """
        if not texts:
            return []
        if any(not t.strip() for t in texts):
            raise EmbeddingError("Cannot generate embedding for empty text.")

        batches = [
            texts[i : i + self._batch_size] for i in range(0, len(texts), self._batch_size)
        ]
        results = await asyncio.gather(
            *(self._pool.run_task(EmbeddingTask("embed_batch", batch)) for batch in batches)
        )

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, received {len(vectors)}."
            )
        for vector in vectors:
            self._check_dimensions(vector)
        return vectors

    async def destroy(self) -> None:
        await self._pool.destroy()

    def _check_dimensions(self, vector: list[float]) -> None:
        if len(vector) != self._dimensions:
            raise EmbeddingError(
                f"Unexpected vector size. Expected {self._dimensions}, got {len(vector)}."
            )
