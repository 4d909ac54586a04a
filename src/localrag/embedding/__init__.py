"""localrag embedding layer: model service, worker handles, pool, and embedder."""

from localrag.embedding.embedder import Embedder
from localrag.embedding.pool import EmbeddingTask, WorkerPool, WorkerState
from localrag.embedding.service import EmbeddingService
from localrag.embedding.worker import ProcessWorker, ThreadWorker

__all__ = [
    "Embedder",
    "EmbeddingService",
    "EmbeddingTask",
    "ProcessWorker",
    "ThreadWorker",
    "WorkerPool",
    "WorkerState",
]
