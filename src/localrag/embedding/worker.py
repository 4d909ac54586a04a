"""Embedding worker handles and the loop that runs inside each worker.

Wire protocol (parent ↔ worker), plain picklable tuples:
  parent → worker : (task_id, kind, payload)  or  None to stop
  worker → parent : ("ok", task_id, result)
                    ("error", task_id, exception_name, message)

A handle exposes blocking ``send``/``recv`` plus ``terminate``. ``recv``
raises EOFError (or OSError) once the worker has gone away, which the pool
treats as a crash unless it asked the worker to stop.
"""

from __future__ import annotations

import functools
import itertools
import logging
import multiprocessing
import queue
import threading
from collections.abc import Callable
from typing import Any, Protocol

from localrag.embedding.service import EmbeddingService

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_S = 5.0
_CLOSED = object()
_thread_ids = itertools.count(1)


class TaskHandler(Protocol):
    def handle(self, kind: str, payload: Any) -> Any: ...


class Channel(Protocol):
    def send(self, message: Any) -> None: ...

    def recv(self) -> Any: ...


class WorkerHandle(Protocol):
    def send(self, message: Any) -> None: ...

    def recv(self) -> Any: ...

    def terminate(self) -> None: ...


def serve(channel: Channel, handler: TaskHandler) -> None:
    """Answer task messages from *channel* until told to stop or the channel closes.

    Task failures are reported back to the parent; they never end the loop.
    """
    while True:
        try:
            message = channel.recv()
        except EOFError:
            return
        if message is None:
            return
        task_id, kind, payload = message
        try:
            result = handler.handle(kind, payload)
        except Exception as exc:
            channel.send(("error", task_id, type(exc).__name__, str(exc)))
        else:
            channel.send(("ok", task_id, result))


# ---------------------------------------------------------------------------
# Process workers
# ---------------------------------------------------------------------------


def _process_main(
    conn: Any,
    model_name: str,
    cache_dir: str | None,
    dimensions: int,
) -> None:
    service = EmbeddingService(model_name, cache_dir=cache_dir, dimensions=dimensions)
    try:
        serve(conn, service)
    finally:
        conn.close()


class ProcessWorker:
    """An embedding worker running in its own OS process (spawn start method)."""

    def __init__(self, model_name: str, cache_dir: str | None, dimensions: int) -> None:
        ctx = multiprocessing.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        self._process = ctx.Process(
            target=_process_main,
            args=(child_conn, model_name, cache_dir, dimensions),
            daemon=True,
        )
        self._process.start()
        # Only the child may hold its end, so recv() sees EOF when it dies.
        child_conn.close()
        self._conn = parent_conn

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def send(self, message: Any) -> None:
        self._conn.send(message)

    def recv(self) -> Any:
        return self._conn.recv()

    def terminate(self) -> None:
        try:
            self._conn.send(None)
        except OSError:
            pass  # already gone
        self._process.join(_JOIN_TIMEOUT_S)
        if self._process.is_alive():
            logger.warning("Worker process %s did not stop; killing it.", self._process.pid)
            self._process.kill()
            self._process.join()
        self._conn.close()


# ---------------------------------------------------------------------------
# Thread workers
# ---------------------------------------------------------------------------


class _QueueChannel:
    def __init__(self, inbox: queue.Queue, outbox: queue.Queue) -> None:
        self._inbox = inbox
        self._outbox = outbox

    def send(self, message: Any) -> None:
        self._outbox.put(message)

    def recv(self) -> Any:
        return self._inbox.get()


class ThreadWorker:
    """An in-process embedding worker backed by a daemon thread.

    Used for ``worker_mode: thread`` and in tests. If the serve loop ends for
    any reason other than a stop request, ``recv`` raises EOFError exactly as
    a dead process pipe would.
    """

    def __init__(self, handler: TaskHandler) -> None:
        self._to_worker: queue.Queue = queue.Queue()
        self._from_worker: queue.Queue = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            args=(handler,),
            name=f"localrag-embed-{next(_thread_ids)}",
            daemon=True,
        )
        self._thread.start()

    def _run(self, handler: TaskHandler) -> None:
        try:
            serve(_QueueChannel(self._to_worker, self._from_worker), handler)
        except BaseException:
            # The pool learns about the crash from the closed marker below.
            logger.exception("Embedding worker thread %s died.", threading.current_thread().name)
        finally:
            self._from_worker.put(_CLOSED)

    def send(self, message: Any) -> None:
        if not self._thread.is_alive():
            raise BrokenPipeError("embedding worker thread has exited")
        self._to_worker.put(message)

    def recv(self) -> Any:
        message = self._from_worker.get()
        if message is _CLOSED:
            # Keep the marker so later recv() calls fail the same way.
            self._from_worker.put(_CLOSED)
            raise EOFError("embedding worker thread has exited")
        return message

    def terminate(self) -> None:
        self._to_worker.put(None)
        self._thread.join(_JOIN_TIMEOUT_S)
        # Unblock a listener even if the thread is stuck in a task.
        self._from_worker.put(_CLOSED)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def process_worker_factory(
    model_name: str,
    cache_dir: str | None,
    dimensions: int,
) -> Callable[[], WorkerHandle]:
    return functools.partial(ProcessWorker, model_name, cache_dir, dimensions)


def thread_worker_factory(
    handler_factory: Callable[[], TaskHandler],
) -> Callable[[], WorkerHandle]:
    """Return a factory that starts a ThreadWorker around a fresh handler each time."""

    def create() -> ThreadWorker:
        return ThreadWorker(handler_factory())

    return create
