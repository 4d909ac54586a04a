"""Tests for the worker serve loop and the thread/process worker handles."""

from __future__ import annotations

import pytest

from localrag.embedding.worker import ProcessWorker, ThreadWorker, serve, thread_worker_factory

from conftest import DIM, FakeEmbeddingService, fake_vector


class _ListChannel:
    def __init__(self, incoming: list) -> None:
        self._incoming = list(incoming)
        self.sent: list = []

    def recv(self):
        if not self._incoming:
            raise EOFError
        return self._incoming.pop(0)

    def send(self, message) -> None:
        self.sent.append(message)


# ---------------------------------------------------------------------------
# serve()
# ---------------------------------------------------------------------------


def test_serve_replies_until_stop():
    channel = _ListChannel([(1, "embed", "hello"), (2, "embed_batch", ["a", "b"]), None, (3, "embed", "never")])
    serve(channel, FakeEmbeddingService())

    assert channel.sent == [
        ("ok", 1, fake_vector("hello")),
        ("ok", 2, [fake_vector("a"), fake_vector("b")]),
    ]


def test_serve_reports_task_errors_and_continues():
    channel = _ListChannel([(1, "embed", "__fail__"), (2, "embed", "fine")])
    serve(channel, FakeEmbeddingService())

    status, task_id, name, message = channel.sent[0]
    assert (status, task_id, name) == ("error", 1, "RuntimeError")
    assert "simulated" in message
    assert channel.sent[1][0] == "ok"


def test_serve_returns_on_eof():
    channel = _ListChannel([])
    serve(channel, FakeEmbeddingService())
    assert channel.sent == []


# ---------------------------------------------------------------------------
# ThreadWorker
# ---------------------------------------------------------------------------


def test_thread_worker_round_trip():
    worker = thread_worker_factory(FakeEmbeddingService)()
    try:
        worker.send((7, "embed", "round trip"))
        assert worker.recv() == ("ok", 7, fake_vector("round trip"))
    finally:
        worker.terminate()


def test_thread_worker_crash_looks_like_closed_pipe():
    worker = ThreadWorker(FakeEmbeddingService())
    worker.send((1, "embed", "__crash__"))

    with pytest.raises(EOFError):
        worker.recv()
    # Every later recv fails the same way.
    with pytest.raises(EOFError):
        worker.recv()

    worker._thread.join(1.0)
    with pytest.raises(BrokenPipeError):
        worker.send((2, "embed", "after crash"))
    worker.terminate()


def test_thread_worker_terminate_unblocks_recv():
    worker = ThreadWorker(FakeEmbeddingService())
    worker.terminate()
    with pytest.raises(EOFError):
        worker.recv()


# ---------------------------------------------------------------------------
# ProcessWorker
# ---------------------------------------------------------------------------


def test_process_worker_reports_unknown_task_and_stops():
    worker = ProcessWorker("unused-model", None, DIM)
    try:
        assert worker.pid is not None
        worker.send((1, "bogus", None))
        status, task_id, name, message = worker.recv()
        assert (status, task_id, name) == ("error", 1, "EmbeddingError")
        assert "bogus" in message
    finally:
        worker.terminate()
    assert not worker._process.is_alive()
