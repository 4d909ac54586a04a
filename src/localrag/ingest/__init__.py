"""localrag ingest pipeline: parsing, chunking, URL fetching, and file watching."""

from localrag.ingest.chunker import DocumentChunker, TextChunk
from localrag.ingest.parser import DocumentParser, FileStats, ParsedFile
from localrag.ingest.watcher import DirectoryWatcher
from localrag.ingest.web import fetch_url_text

__all__ = [
    "DirectoryWatcher",
    "DocumentChunker",
    "DocumentParser",
    "FileStats",
    "ParsedFile",
    "TextChunk",
    "fetch_url_text",
]
