"""Polling file watcher that runs on the asyncio event loop.

Every ``poll_interval_ms`` each watched root is rescanned and compared with
its previous snapshot (path → mtime). Additions and changes become pending
events that fire once the file's mtime has been stable for ``debounce_ms``;
deletions fire immediately. A newly watched root starts from an empty
snapshot, so its existing files are reported as additions.

Only files with a supported extension are reported, and dot-files and
dot-directories are skipped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

FileCallback = Callable[[str], Awaitable[None]]

ADDED = "added"
CHANGED = "changed"
DELETED = "deleted"


@dataclass
class _Root:
    path: str
    recursive: bool
    snapshot: dict[str, float] = field(default_factory=dict)


@dataclass
class _Pending:
    event: str
    mtime: float
    stable_since: float


class DirectoryWatcher:
    """Report additions, changes, and deletions of supported files.

    Args:
        supported_extensions: Lower-case extensions (with dot) to report.
        on_added: Coroutine called with the absolute path of a new file.
        on_changed: Coroutine called with the path of a modified file.
        on_deleted: Coroutine called with the path of a removed file.
        debounce_ms: Quiet period before an add/change is reported.
        poll_interval_ms: Time between rescans.
    """

    def __init__(
        self,
        supported_extensions: Iterable[str],
        *,
        on_added: FileCallback,
        on_changed: FileCallback,
        on_deleted: FileCallback,
        debounce_ms: int = 5_000,
        poll_interval_ms: int = 1_000,
    ) -> None:
        self._extensions = frozenset(e.lower() for e in supported_extensions)
        self._callbacks: dict[str, FileCallback] = {
            ADDED: on_added,
            CHANGED: on_changed,
            DELETED: on_deleted,
        }
        self._debounce = debounce_ms / 1000
        self._interval = poll_interval_ms / 1000

        self._roots: dict[str, _Root] = {}
        self._pending: dict[str, _Pending] = {}
        self._poller: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._closed = False

    def watch(self, path: str, recursive: bool = True) -> None:
        """Start watching *path* (a file or a directory). Must be called on the event loop."""
        if self._closed:
            raise RuntimeError("DirectoryWatcher is closed")
        key = str(Path(path).resolve())
        if key in self._roots:
            return
        self._roots[key] = _Root(path=key, recursive=recursive)
        logger.info("Watcher: watching %s (recursive=%s)", key, recursive)
        if self._poller is None:
            self._poller = asyncio.get_running_loop().create_task(self._poll_forever())

    def unwatch(self, path: str) -> None:
        key = str(Path(path).resolve())
        root = self._roots.pop(key, None)
        if root is None:
            return
        for file_path in list(self._pending):
            if not self._covered(file_path):
                del self._pending[file_path]
        logger.info("Watcher: stopped watching %s", key)

    def is_watching(self, path: str) -> bool:
        return str(Path(path).resolve()) in self._roots

    @property
    def watched_paths(self) -> list[str]:
        return list(self._roots)

    async def close(self) -> None:
        """Stop polling and cancel callbacks that are still running."""
        self._closed = True
        if self._poller is not None:
            self._poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poller
            self._poller = None
        for task in list(self._in_flight):
            task.cancel()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self._pending.clear()
        self._roots.clear()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_forever(self) -> None:
        while True:
            try:
                await self.poll()
            except Exception:
                logger.exception("Watcher: scan failed.")
            await asyncio.sleep(self._interval)

    async def poll(self) -> None:
        """Run one scan of every root and fire any events that are due."""
        now = time.monotonic()
        deleted: set[str] = set()

        for root in list(self._roots.values()):
            current = await asyncio.to_thread(self._scan, root)
            if root.path not in self._roots:
                continue  # unwatched while scanning
            previous = root.snapshot
            for file_path, mtime in current.items():
                old = previous.get(file_path)
                if old is None:
                    self._mark(file_path, ADDED, mtime, now)
                elif old != mtime:
                    self._mark(file_path, CHANGED, mtime, now)
            for file_path in previous.keys() - current.keys():
                deleted.add(file_path)
            root.snapshot = current

        for file_path in sorted(deleted):
            self._pending.pop(file_path, None)
            logger.info("Watcher: detected deletion for: %s", file_path)
            self._fire(DELETED, file_path)

        for file_path, pending in list(self._pending.items()):
            if now - pending.stable_since >= self._debounce:
                del self._pending[file_path]
                logger.info(
                    "Watcher: detected %s for: %s",
                    "addition" if pending.event == ADDED else "change",
                    file_path,
                )
                self._fire(pending.event, file_path)

    def _mark(self, file_path: str, event: str, mtime: float, now: float) -> None:
        pending = self._pending.get(file_path)
        if pending is None:
            self._pending[file_path] = _Pending(event=event, mtime=mtime, stable_since=now)
        elif pending.mtime != mtime:
            # Still being written; restart the quiet period, keep the first event kind.
            pending.mtime = mtime
            pending.stable_since = now

    def _fire(self, event: str, file_path: str) -> None:
        task = asyncio.get_running_loop().create_task(self._run_callback(event, file_path))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_callback(self, event: str, file_path: str) -> None:
        try:
            await self._callbacks[event](file_path)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Watcher: %s handler failed for %s", event, file_path)

    # ------------------------------------------------------------------
    # Scanning (runs in a worker thread)
    # ------------------------------------------------------------------

    def _scan(self, root: _Root) -> dict[str, float]:
        found: dict[str, float] = {}
        if os.path.isfile(root.path):
            self._record(root.path, found)
            return found
        if not os.path.isdir(root.path):
            return found

        if root.recursive:
            for dirpath, dirnames, filenames in os.walk(root.path):
                dirnames[:] = [d for d in dirnames if not d.startswith(".")]
                for name in filenames:
                    self._record(os.path.join(dirpath, name), found)
        else:
            with os.scandir(root.path) as entries:
                for entry in entries:
                    if entry.is_file():
                        self._record(entry.path, found)
        return found

    def _record(self, file_path: str, found: dict[str, float]) -> None:
        name = os.path.basename(file_path)
        if name.startswith(".") or os.path.splitext(name)[1].lower() not in self._extensions:
            return
        try:
            found[file_path] = os.stat(file_path).st_mtime
        except FileNotFoundError:
            return

    def _covered(self, file_path: str) -> bool:
        for root in self._roots.values():
            if file_path == root.path:
                return True
            parent = os.path.dirname(file_path)
            if root.recursive and (parent + os.sep).startswith(root.path + os.sep):
                return True
            if not root.recursive and parent == root.path:
                return True
        return False
