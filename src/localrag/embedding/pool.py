"""Self-scaling pool of embedding workers driven from the asyncio event loop.

Dispatch runs on every submission, completion, and crash:
  1. an idle worker takes the oldest queued task (FIFO);
  2. otherwise, below ``max_workers``, a new worker is started for it;
  3. otherwise the task waits in the queue.

Each worker has a listener task that blocks on the worker's ``recv`` in a
dedicated thread and turns replies and EOFs into state changes on the loop.
Workers idle longer than ``idle_timeout_ms`` are reaped, never below
``min_workers``.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import functools
import itertools
import logging
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from localrag.config import PoolCfg
from localrag.embedding.worker import WorkerHandle
from localrag.errors import EmbeddingError

logger = logging.getLogger(__name__)


class WorkerState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    TERMINATED = "terminated"


@dataclass
class EmbeddingTask:
    """A unit of work: ``kind`` is 'embed' (payload: str) or 'embed_batch' (payload: list[str])."""

    kind: str
    payload: Any


@dataclass
class _QueuedTask:
    task_id: int
    task: EmbeddingTask
    future: asyncio.Future


@dataclass
class TrackedWorker:
    id: int
    handle: WorkerHandle
    state: WorkerState = WorkerState.IDLE
    current_task_id: int | None = None
    last_used: float = field(default_factory=time.monotonic)
    listener: asyncio.Task | None = None


class WorkerPool:
    """Run embedding tasks on up to ``max_workers`` workers.

    Must be constructed inside a running event loop.

    Args:
        worker_factory: Zero-argument callable that starts a worker and
            returns its handle.
        config: Pool sizing and idle timeout.
    """

    def __init__(
        self,
        worker_factory: Callable[[], WorkerHandle],
        config: PoolCfg | None = None,
    ) -> None:
        config = config or PoolCfg()
        self._worker_factory = worker_factory
        self._max_workers = config.resolved_max_workers()
        self._min_workers = config.min_workers
        self._idle_timeout = config.idle_timeout_ms / 1000

        self._loop = asyncio.get_running_loop()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers * 2 + 1,
            thread_name_prefix="localrag-pool-listener",
        )
        self._workers: dict[int, TrackedWorker] = {}
        self._queue: deque[_QueuedTask] = deque()
        self._active: dict[int, asyncio.Future] = {}
        self._task_ids = itertools.count()
        self._worker_ids = itertools.count(1)
        self._destroyed = False
        self._retiring: set[asyncio.Task] = set()

        self._reaper: asyncio.Task | None = None
        if self._idle_timeout > 0:
            self._reaper = self._loop.create_task(self._reap_periodically())

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def run_task(self, task: EmbeddingTask) -> Any:
        """Queue *task* and wait for its result.

        Raises:
            EmbeddingError: If the task fails, its worker crashes, or the pool
                has been destroyed.
        """
        if self._destroyed:
            raise EmbeddingError("Worker pool has been destroyed.")
        task_id = next(self._task_ids)
        future = self._loop.create_future()
        self._queue.append(_QueuedTask(task_id, task, future))
        self._dispatch()
        return await future

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self) -> None:
        while self._queue:
            worker = next(
                (w for w in self._workers.values() if w.state is WorkerState.IDLE), None
            )
            if worker is None:
                if len(self._workers) >= self._max_workers:
                    return
                try:
                    worker = self._create_worker()
                except Exception as exc:
                    queued = self._queue.popleft()
                    logger.error("Failed to start embedding worker.", exc_info=True)
                    if not queued.future.done():
                        queued.future.set_exception(
                            _chained(EmbeddingError("Failed to start embedding worker."), exc)
                        )
                    continue

            queued = self._queue.popleft()
            if queued.future.done():
                continue  # caller went away
            self._assign(worker, queued)

    def _create_worker(self) -> TrackedWorker:
        handle = self._worker_factory()
        worker = TrackedWorker(id=next(self._worker_ids), handle=handle)
        self._workers[worker.id] = worker
        worker.listener = self._loop.create_task(self._listen(worker))
        logger.info("Scaling up workers to %d to handle load...", len(self._workers))
        return worker

    def _assign(self, worker: TrackedWorker, queued: _QueuedTask) -> None:
        worker.state = WorkerState.BUSY
        worker.current_task_id = queued.task_id
        self._active[queued.task_id] = queued.future
        try:
            worker.handle.send((queued.task_id, queued.task.kind, queued.task.payload))
        except OSError as exc:
            self._handle_crash(worker, exc, redispatch=False)

    # ------------------------------------------------------------------
    # Worker events
    # ------------------------------------------------------------------

    async def _listen(self, worker: TrackedWorker) -> None:
        while True:
            try:
                message = await self._loop.run_in_executor(self._executor, worker.handle.recv)
            except (EOFError, OSError) as exc:
                if worker.state is not WorkerState.TERMINATED:
                    self._handle_crash(worker, exc)
                return
            self._handle_message(worker, message)

    def _handle_message(self, worker: TrackedWorker, message: tuple) -> None:
        status, task_id, *rest = message
        future = self._active.pop(task_id, None)
        if future is not None and not future.done():
            if status == "ok":
                future.set_result(rest[0])
            else:
                name, text = rest
                future.set_exception(EmbeddingError(f"{name}: {text}"))

        if worker.state is WorkerState.TERMINATED:
            return
        worker.state = WorkerState.IDLE
        worker.current_task_id = None
        worker.last_used = time.monotonic()
        self._dispatch()

    def _handle_crash(
        self,
        worker: TrackedWorker,
        exc: BaseException,
        *,
        redispatch: bool = True,
    ) -> None:
        logger.error("Worker #%d crashed.", worker.id, exc_info=exc)
        if worker.current_task_id is not None:
            future = self._active.pop(worker.current_task_id, None)
            if future is not None and not future.done():
                future.set_exception(
                    _chained(
                        EmbeddingError(f"Worker #{worker.id} crashed while processing task."),
                        exc,
                    )
                )
        self._retire(worker)
        if redispatch:
            self._dispatch()

    def _retire(self, worker: TrackedWorker) -> None:
        worker.state = WorkerState.TERMINATED
        worker.current_task_id = None
        self._workers.pop(worker.id, None)
        # terminate() may block on a process join; keep it off the loop thread.
        stopping = self._loop.create_task(asyncio.to_thread(worker.handle.terminate))
        self._retiring.add(stopping)
        stopping.add_done_callback(functools.partial(self._on_retired, worker))

    def _on_retired(self, worker: TrackedWorker, stopping: asyncio.Task) -> None:
        self._retiring.discard(stopping)
        if not stopping.cancelled() and stopping.exception() is not None:
            logger.error(
                "Failed to stop worker #%d.", worker.id, exc_info=stopping.exception()
            )

    # ------------------------------------------------------------------
    # Idle reaping
    # ------------------------------------------------------------------

    async def _reap_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._idle_timeout / 2)
            self._reap_idle_workers()

    def _reap_idle_workers(self) -> None:
        now = time.monotonic()
        idle = [w for w in self._workers.values() if w.state is WorkerState.IDLE]
        for worker in idle:
            if len(self._workers) <= self._min_workers:
                break
            if now - worker.last_used > self._idle_timeout:
                logger.info("Scaling down: terminating idle worker #%d.", worker.id)
                self._retire(worker)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def destroy(self) -> None:
        """Stop all workers and fail every task that has not completed."""
        if self._destroyed:
            return
        self._destroyed = True

        if self._reaper is not None:
            self._reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper

        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.state = WorkerState.TERMINATED
        await asyncio.gather(*(asyncio.to_thread(w.handle.terminate) for w in workers))
        if self._retiring:
            await asyncio.wait(list(self._retiring))
        for worker in workers:
            if worker.listener is not None:
                worker.listener.cancel()

        pending = [q.future for q in self._queue] + list(self._active.values())
        self._queue.clear()
        self._active.clear()
        for future in pending:
            if not future.done():
                future.set_exception(
                    EmbeddingError("Worker pool was destroyed before the task completed.")
                )

        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Worker pool destroyed.")


def _chained(error: EmbeddingError, cause: BaseException) -> EmbeddingError:
    error.__cause__ = cause
    return error
