"""LocalRAG: the orchestrator that ties parsing, chunking, embedding and storage together.

Ingestion: file/text/URL → DocumentParser → DocumentChunker → Embedder →
VectorStore (delete-then-insert per document key). Query: text → Embedder →
VectorStore.search (hybrid rerank, distance cutoff, grouping).

All SQLite work happens on the event loop thread. Blocking file parsing,
URL fetching and directory scans are pushed to threads; embedding runs in
the worker pool.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import re
import stat
import time
import urllib.parse
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from localrag.config import LocalRAGConfig, validate_config
from localrag.db.models import (
    DocumentMetadata,
    ListItem,
    ListOptions,
    QueryFilters,
    QueryResult,
    StatusReport,
    VectorChunk,
)
from localrag.db.store import VectorStore
from localrag.embedding.embedder import Embedder
from localrag.errors import FileOperationError, ValidationError
from localrag.ingest.chunker import DocumentChunker
from localrag.ingest.parser import DocumentParser
from localrag.ingest.watcher import DirectoryWatcher
from localrag.ingest.web import fetch_url_text

logger = logging.getLogger(__name__)

_TTL_RE = re.compile(r"^(\d+)([dhy])$")
_LABEL_RE = re.compile(r"^[\w.-]+$")
_UPDATE_MODES = frozenset(["replace", "append", "prepend"])

MEMORY_PREFIX = "memory://"
URL_PREFIX = "url://"


class LocalRAG:
    """A private, local retrieval-augmented-generation engine.

    Build instances with :meth:`create` and release them with :meth:`shutdown`.
    One instance per database file.
    """

    def __init__(
        self,
        config: LocalRAGConfig,
        embedder: Embedder,
        store: VectorStore,
    ) -> None:
        self._config = config
        self._embedder = embedder
        self._store = store
        self._parser = DocumentParser(
            base_dir=config.ingest.base_dir,
            max_file_size=config.ingest.max_file_size,
        )
        self._chunker = DocumentChunker(
            chunk_size=config.chunking.chunk_size,
            chunk_overlap=config.chunking.chunk_overlap,
            min_chunk_length=config.chunking.min_chunk_length,
        )
        self._watcher = DirectoryWatcher(
            self._parser.supported_extensions(),
            on_added=self._on_file_changed,
            on_changed=self._on_file_changed,
            on_deleted=self._on_file_deleted,
            debounce_ms=config.watch.debounce_ms,
            poll_interval_ms=config.watch.poll_interval_ms,
        )
        self._periodic_tasks: list[asyncio.Task] = []
        self._shut_down = False

    @classmethod
    async def create(
        cls,
        config: LocalRAGConfig | None = None,
        *,
        embedder: Embedder | None = None,
        store: VectorStore | None = None,
    ) -> LocalRAG:
        """Build the embedder and store, reattach persisted watches, start periodic jobs.

        Args:
            config: Engine configuration (defaults to LocalRAGConfig()).
            embedder: Pre-built embedder; built from ``config`` when omitted.
            store: Pre-opened store; opened at ``config.storage.db_path`` when omitted.

        Raises:
            ConfigError: If *config* is invalid.
            EmbeddingError: If the embedding model cannot be prepared.
            DatabaseError: If the store cannot be opened.
        """
        config = config or LocalRAGConfig()
        validate_config(config)

        owns_embedder = embedder is None
        if embedder is None:
            embedder = await Embedder.create(config.embedding, config.pool)
        try:
            if store is None:
                store = VectorStore.open(
                    config.storage.db_path,
                    config.embedding.dimensions,
                    config.retrieval,
                )
        except Exception:
            if owns_embedder:
                await embedder.destroy()
            raise

        rag = cls(config, embedder, store)
        rag._initialize()
        return rag

    def _initialize(self) -> None:
        watched = self._store.get_watched_paths()
        for item in watched:
            self._watcher.watch(item.path, recursive=item.recursive)
        logger.info("Watcher initialized and now monitoring %d persisted paths.", len(watched))
        self._start_periodic_jobs()

    async def shutdown(self) -> None:
        """Stop periodic jobs, the watcher, the embedder pool, then close the store."""
        if self._shut_down:
            return
        self._shut_down = True

        for task in self._periodic_tasks:
            task.cancel()
        for task in self._periodic_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._periodic_tasks.clear()

        await self._watcher.close()
        await self._embedder.destroy()
        self._store.close()
        logger.info("LocalRAG shutdown complete.")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_file(
        self,
        file_path: str,
        tags: list[str] | None = None,
        project: str | None = None,
        watch: bool = False,
    ) -> None:
        """Index one file, skipping it when its modification time is unchanged.

        Raises:
            ValidationError: Path outside the base directory, file too large,
                or unsupported format.
            FileOperationError: The file cannot be read.
            EmbeddingError: Embedding failed.
            DatabaseError: Storage failed.
        """
        absolute = str(Path(file_path).resolve())
        stats = self._parser.validate_and_get_file_stats(absolute)
        existing = self._store.get_latest_metadata(absolute)

        if existing is not None and existing.file_modified_at == stats.file_modified_at:
            logger.info("Skipping ingestion for unchanged file: %s", absolute)
        else:
            logger.info("Ingesting changed or new file: %s", absolute)
            parsed = await asyncio.to_thread(self._parser.parse_file, absolute)
            path = Path(absolute)
            metadata = DocumentMetadata(
                file_name=path.name,
                file_size=parsed.file_size,
                file_type=path.suffix[1:],
                language=parsed.language,
                tags=list(tags or []),
                project=project,
                memory_type="file",
                created_at=existing.created_at if existing is not None else "",
                author=parsed.metadata.get("author"),
                file_created_at=parsed.metadata.get("file_created_at"),
                file_modified_at=parsed.metadata.get("file_modified_at"),
            )
            chunks = await self._create_vector_chunks(parsed.text, metadata, absolute)

            self._store.delete_chunks(absolute)
            if chunks:
                self._store.insert_chunks(chunks)
            else:
                logger.warning(
                    "Skipping ingestion for %s as it produced no valid chunks "
                    "(file might be empty or too short).",
                    absolute,
                )

        if watch and not self._watcher.is_watching(absolute):
            await self.watch(absolute)

    async def ingest_folder(
        self,
        folder_path: str,
        tags: list[str] | None = None,
        project: str | None = None,
        watch: bool = False,
        recursive: bool = False,
    ) -> None:
        """Index every supported file in a folder, or hand the folder to the watcher.

        With ``watch=True`` the watcher's first scan reports existing files,
        which are then ingested through the same idempotent path as changes.
        """
        absolute = str(Path(folder_path).resolve())
        if watch:
            logger.info(
                "Attaching watcher to %s. It will process existing and new files (recursive: %s).",
                absolute,
                recursive,
            )
            await self.watch(absolute, recursive=recursive)
            return

        logger.info("Performing one-time ingestion for %s (recursive: %s).", absolute, recursive)
        files = await asyncio.to_thread(self._find_supported_files, absolute, recursive)
        logger.info("Found %d supported files to ingest.", len(files))
        await asyncio.gather(
            *(self.ingest_file(f, tags=tags, project=project) for f in files)
        )

    async def ingest_text(
        self,
        text: str,
        label: str,
        language: str | None = None,
        tags: list[str] | None = None,
        project: str | None = None,
        ttl: str | None = None,
    ) -> None:
        """Store a text snippet under ``memory://<label>``, replacing any previous one.

        Raises:
            ValidationError: Bad label or TTL.
        """
        if not _LABEL_RE.match(label):
            raise ValidationError(
                "Label must contain only alphanumeric characters, hyphens, underscores, and dots."
            )
        key = f"{MEMORY_PREFIX}{label}"
        metadata = DocumentMetadata(
            file_name=label,
            file_size=len(text),
            file_type="text-snippet",
            language=language,
            tags=list(tags or []),
            project=project,
            memory_type="text",
            expires_at=self._calculate_expires_at(ttl) if ttl else None,
        )
        await self._replace_document(key, text, metadata)

    async def ingest_url(
        self,
        url: str,
        tags: list[str] | None = None,
        project: str | None = None,
        ttl: str | None = None,
    ) -> None:
        """Fetch a web page and store its readable text under ``url://<name>``.

        Raises:
            ValidationError: Disallowed URL (scheme, private address, content
                type, size) or bad TTL.
            FileOperationError: The page could not be fetched.
        """
        expires_at = self._calculate_expires_at(ttl) if ttl else None
        label = os.path.basename(urllib.parse.urlparse(url).path) or f"web-{int(time.time() * 1000)}"
        text = await asyncio.to_thread(fetch_url_text, url)

        key = f"{URL_PREFIX}{label}"
        metadata = DocumentMetadata(
            file_name=label,
            file_size=len(text),
            file_type="web-page",
            tags=list(tags or []),
            project=project,
            memory_type="url",
            expires_at=expires_at,
            source_url=url,
        )
        await self._replace_document(key, text, metadata)

    async def _replace_document(self, key: str, text: str, metadata: DocumentMetadata) -> None:
        chunks = await self._create_vector_chunks(text, metadata, key)
        self._store.delete_chunks(key)
        if chunks:
            self._store.insert_chunks(chunks)

    # ------------------------------------------------------------------
    # Query & maintenance
    # ------------------------------------------------------------------

    async def query(
        self,
        query: str,
        limit: int | None = None,
        filters: QueryFilters | None = None,
    ) -> list[QueryResult]:
        """Return the chunks most relevant to *query*, best first.

        Raises:
            ValidationError: If *limit* is outside 1-50.
            EmbeddingError: If *query* is blank or embedding fails.
            DatabaseError: If the search fails.
        """
        if limit is None:
            limit = self._config.retrieval.default_limit
        query_vector = await self._embedder.embed(query)
        return self._store.search(query_vector, query, limit, filters)

    async def update_memory(
        self,
        label: str,
        mode: str = "replace",
        text: str | None = None,
        tags: list[str] | None = None,
        add_tags: list[str] | None = None,
        remove_tags: list[str] | None = None,
    ) -> None:
        """Rewrite the text and/or tags of an existing ``memory://`` snippet.

        Args:
            label: Label the snippet was stored under.
            mode: How *text* is combined with the current text:
                'replace', 'append', or 'prepend'.
            text: New text; when omitted only tags change.
            tags: Replaces the tag list.
            add_tags: Added after *tags* is applied.
            remove_tags: Removed last.

        Raises:
            ValidationError: Unknown label or mode.
        """
        if mode not in _UPDATE_MODES:
            raise ValidationError(
                f"Invalid update mode '{mode}'. Use one of {sorted(_UPDATE_MODES)}."
            )
        key = f"{MEMORY_PREFIX}{label}"
        existing = self._store.get_chunks_by_path(key)
        if not existing:
            raise ValidationError(f'Memory with label "{label}" not found.')

        old_metadata = existing[-1].metadata
        full_text = _reconstruct_text(existing)
        if text:
            if mode == "append":
                full_text += text
            elif mode == "prepend":
                full_text = text + full_text
            else:
                full_text = text

        new_tags = list(old_metadata.tags)
        if tags is not None:
            new_tags = list(tags)
        if add_tags:
            new_tags += [t for t in dict.fromkeys(add_tags) if t not in new_tags]
        if remove_tags:
            new_tags = [t for t in new_tags if t not in remove_tags]

        metadata = dataclasses.replace(
            old_metadata,
            tags=new_tags,
            file_size=len(full_text),
            updated_at="",
        )
        await self._replace_document(key, full_text, metadata)

    async def delete(self, path: str) -> None:
        """Remove a document: an absolute file path or a key like ``memory://label``."""
        key = path if "://" in path else str(Path(path).resolve())
        self._store.delete_chunks(key)

    async def list(self, options: ListOptions | None = None) -> list[ListItem]:
        return self._store.list_files(options)

    async def get_status(self) -> StatusReport:
        return self._store.get_status()

    async def cleanup_expired(self) -> int:
        """Delete documents whose TTL has passed; returns how many were removed."""
        return self._store.cleanup_expired()

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    async def watch(self, path: str, recursive: bool = False) -> None:
        """Persist *path* as watched and start watching it (no-op if already watched).

        Raises:
            FileOperationError: If *path* does not exist.
        """
        absolute = str(Path(path).resolve())
        if self._watcher.is_watching(absolute):
            return
        try:
            st = os.stat(absolute)
        except OSError as exc:
            raise FileOperationError(f"Cannot watch {absolute}: {exc}") from exc

        is_dir = stat.S_ISDIR(st.st_mode)
        kind = "folder" if is_dir else "file"
        recursive = recursive if is_dir else False
        self._store.add_watched_path(absolute, kind, recursive)
        self._watcher.watch(absolute, recursive=recursive)
        logger.info("Now watching path: %s", absolute)

    async def unwatch(self, path: str) -> None:
        absolute = str(Path(path).resolve())
        self._store.remove_watched_path(absolute)
        self._watcher.unwatch(absolute)
        logger.info("Stopped watching path: %s", absolute)

    def is_watching(self, path: str) -> bool:
        return self._watcher.is_watching(path)

    async def _on_file_changed(self, file_path: str) -> None:
        try:
            await self.ingest_file(file_path)
        except ValidationError as exc:
            if "Unsupported file format" in str(exc):
                logger.debug("Watcher ignored unsupported file: %s", file_path)
            else:
                logger.exception("Watcher failed to process file %s.", file_path)
        except Exception:
            logger.exception("Watcher failed to process file %s.", file_path)

    async def _on_file_deleted(self, file_path: str) -> None:
        try:
            await self.delete(file_path)
        except Exception:
            logger.exception("Watcher failed to delete file: %s", file_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_periodic_jobs(self) -> None:
        jobs = self._config.jobs
        if jobs.cleanup_interval_ms > 0:
            logger.info("Starting periodic cleanup job every %dms.", jobs.cleanup_interval_ms)
            self._periodic_tasks.append(
                asyncio.create_task(
                    self._run_periodically("cleanup", jobs.cleanup_interval_ms, self._cleanup_job)
                )
            )
        if jobs.optimize_interval_ms > 0:
            logger.info("Starting periodic DB optimization every %dms.", jobs.optimize_interval_ms)
            self._periodic_tasks.append(
                asyncio.create_task(
                    self._run_periodically("optimize", jobs.optimize_interval_ms, self._optimize_job)
                )
            )

    @staticmethod
    async def _run_periodically(
        name: str,
        interval_ms: int,
        job: Callable[[], Awaitable[None]],
    ) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                await job()
            except Exception:
                logger.exception("Periodic %s job failed.", name)

    async def _cleanup_job(self) -> None:
        logger.info("Running periodic cleanup job...")
        deleted = await self.cleanup_expired()
        if deleted > 0:
            logger.info("Periodic cleanup job finished. Removed %d expired items.", deleted)

    async def _optimize_job(self) -> None:
        self._store.optimize()

    @staticmethod
    def _calculate_expires_at(ttl: str, now: datetime | None = None) -> str:
        """Turn a TTL like '7d', '12h' or '1y' into an ISO-8601 UTC expiry time.

        Raises:
            ValidationError: If *ttl* is malformed or out of range.
        """
        match = _TTL_RE.match(ttl)
        if not match:
            raise ValidationError(f"Invalid TTL format: {ttl}. Use '1d', '7h', '1y' etc.")

        value = int(match.group(1))
        unit = match.group(2)
        moment = now or datetime.now(timezone.utc)
        try:
            if unit == "d":
                expires = moment + timedelta(days=value)
            elif unit == "h":
                expires = moment + timedelta(hours=value)
            else:
                expires = _add_years(moment, value)
        except (OverflowError, ValueError) as exc:
            raise ValidationError(f"TTL out of range: {ttl}") from exc
        return expires.isoformat()

    async def _create_vector_chunks(
        self,
        text: str,
        metadata: DocumentMetadata,
        key: str,
    ) -> list[VectorChunk]:
        chunks = self._chunker.chunk_text(text)
        if not chunks:
            return []

        vectors = await self._embedder.embed_batch([c.text for c in chunks])
        now = datetime.now(timezone.utc).isoformat()
        stamped = dataclasses.replace(
            metadata,
            created_at=metadata.created_at or now,
            updated_at=metadata.updated_at or now,
        )
        return [
            VectorChunk(
                id=str(uuid.uuid4()),
                file_path=key,
                chunk_index=chunk.index,
                char_offset=chunk.start,
                text=chunk.text,
                vector=vector,
                metadata=dataclasses.replace(stamped, tags=list(stamped.tags)),
                timestamp=now,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    def _find_supported_files(self, folder_path: str, recursive: bool) -> list[str]:
        found: list[str] = []
        try:
            with os.scandir(folder_path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise FileOperationError(f"Failed to read folder: {folder_path}") from exc
        for entry in entries:
            if entry.is_dir():
                if recursive:
                    found.extend(self._find_supported_files(entry.path, True))
            elif entry.is_file() and self._parser.is_supported(entry.name):
                found.append(entry.path)
        return found


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year.
        return moment.replace(year=moment.year + years, day=28)


def _reconstruct_text(chunks: list[VectorChunk]) -> str:
    """Rejoin chunks (in index order) into one text.

    Neighbours whose stored offsets overlap are spliced at the overlap.
    Otherwise, including rows stored without offsets, they are joined with
    a newline, so no text is ever dropped.
    """
    text = ""
    previous: VectorChunk | None = None
    for chunk in chunks:
        if previous is None:
            text = chunk.text
        else:
            overlap = _offset_overlap(previous, chunk)
            text += chunk.text[overlap:] if overlap else "\n" + chunk.text
        previous = chunk
    return text


def _offset_overlap(head: VectorChunk, tail: VectorChunk) -> int:
    if head.char_offset is None or tail.char_offset is None:
        return 0
    overlap = head.char_offset + len(head.text) - tail.char_offset
    if 0 < overlap <= len(tail.text) and head.text.endswith(tail.text[:overlap]):
        return overlap
    return 0
