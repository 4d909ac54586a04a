"""Format-aware text extraction for ingested files.

Code and plain-text formats are read as UTF-8. PDFs go through pypdf,
Word documents through python-docx. JSON is pretty-printed and CSV rows are
rendered as ``header: value`` pairs so each chunk keeps its column context.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import docx
import pypdf

from localrag.errors import FileOperationError, ValidationError

logger = logging.getLogger(__name__)

# Code file extensions mapped to a language name.
CODE_EXTENSIONS: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".sh": "bash",
    ".sql": "sql",
    ".json": "json",
    ".csv": "csv",
}

DOCUMENT_EXTENSIONS: tuple[str, ...] = (
    ".pdf",
    ".docx",
    ".txt",
    ".md",
    ".markdown",
    ".json",
    ".csv",
)

_PLAIN_TEXT_EXTENSIONS = frozenset([".txt", ".md", ".markdown"])


@dataclass
class FileStats:
    file_size: int
    file_created_at: str
    file_modified_at: str


@dataclass
class ParsedFile:
    """Extracted text plus what the parser learned about the file.

    ``metadata`` holds DocumentMetadata field names (``file_created_at``,
    ``file_modified_at``, ``author``) to merge into the stored metadata.
    """

    text: str
    language: str | None
    file_size: int
    metadata: dict[str, Any] = field(default_factory=dict)


def _iso_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class DocumentParser:
    """Parse supported files below *base_dir*.

    Args:
        base_dir: Only files inside this directory may be read (None = CWD).
        max_file_size: Files larger than this many bytes are rejected.
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        max_file_size: int = 100 * 1024 * 1024,
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self.max_file_size = max_file_size

    def parse_file(self, file_path: str) -> ParsedFile:
        """Extract text from *file_path*, detecting the format by extension.

        Raises:
            ValidationError: Path outside ``base_dir``, file too large, or
                unsupported format.
            FileOperationError: The file cannot be read or decoded.
        """
        self.validate_file_path(file_path)
        stats = self.validate_and_get_file_stats(file_path)

        path = Path(file_path)
        ext = path.suffix.lower()
        language = CODE_EXTENSIONS.get(ext)
        metadata: dict[str, Any] = {
            "file_created_at": stats.file_created_at,
            "file_modified_at": stats.file_modified_at,
        }

        if language and ext not in (".json", ".csv"):
            text = self._read_text(path)
        elif ext == ".pdf":
            text, author = self._parse_pdf(path)
            if author:
                metadata["author"] = author
        elif ext == ".docx":
            text, author = self._parse_docx(path)
            if author:
                metadata["author"] = author
        elif ext == ".json":
            text = self._parse_json(path)
        elif ext == ".csv":
            text = self._parse_csv(path)
        elif ext in _PLAIN_TEXT_EXTENSIONS:
            text = self._read_text(path)
        else:
            raise ValidationError(f"Unsupported file format: {ext}")

        return ParsedFile(text=text, language=language, file_size=stats.file_size, metadata=metadata)

    def supported_extensions(self) -> list[str]:
        """Return every extension parse_file() accepts, e.g. ['.pdf', '.ts', '.md']."""
        return list(dict.fromkeys([*DOCUMENT_EXTENSIONS, *CODE_EXTENSIONS]))

    def is_supported(self, file_path: str | Path) -> bool:
        return Path(file_path).suffix.lower() in self.supported_extensions()

    def validate_file_path(self, file_path: str) -> None:
        """Require an absolute path that resolves inside ``base_dir``.

        Raises:
            ValidationError: If the path is relative or escapes ``base_dir``.
        """
        path = Path(file_path)
        if not path.is_absolute():
            raise ValidationError(f"File path must be absolute. Received: {file_path}")

        base = self.base_dir.resolve()
        if not path.resolve().is_relative_to(base):
            raise ValidationError(
                f"File path is outside the allowed base directory. Base: {base}, Path: {file_path}"
            )

    def validate_and_get_file_stats(self, file_path: str) -> FileStats:
        """Stat *file_path* and enforce ``max_file_size``.

        Raises:
            ValidationError: If the file exceeds ``max_file_size``.
            FileOperationError: If the file cannot be stat'ed.
        """
        try:
            st = os.stat(file_path)
        except OSError as exc:
            raise FileOperationError(f"Failed to get file stats: {file_path}") from exc

        if st.st_size > self.max_file_size:
            raise ValidationError(
                f"File size {st.st_size} exceeds limit of {self.max_file_size} bytes."
            )
        created = getattr(st, "st_birthtime", st.st_ctime)
        return FileStats(
            file_size=st.st_size,
            file_created_at=_iso_utc(created),
            file_modified_at=_iso_utc(st.st_mtime),
        )

    # ------------------------------------------------------------------
    # Format readers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise FileOperationError(f"Failed to read text file: {path}") from exc

    @staticmethod
    def _parse_pdf(path: Path) -> tuple[str, str | None]:
        """Extract page text and the document author from a PDF."""
        try:
            reader = pypdf.PdfReader(path)
            parts: list[str] = []
            for page in reader.pages:
                page_text = (page.extract_text() or "").strip()
                if page_text:
                    parts.append(page_text)
            info = reader.metadata
            author = (info.author or "").strip() if info is not None else ""
        except (OSError, pypdf.errors.PyPdfError) as exc:
            raise FileOperationError(f"Failed to parse PDF: {path}") from exc
        return "\n\n".join(parts), author or None

    @staticmethod
    def _parse_docx(path: Path) -> tuple[str, str | None]:
        try:
            document = docx.Document(str(path))
        except Exception as exc:
            raise FileOperationError(f"Failed to parse DOCX: {path}") from exc
        text = "\n".join(p.text for p in document.paragraphs)
        author = (document.core_properties.author or "").strip()
        return text, author or None

    @staticmethod
    def _parse_json(path: Path) -> str:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise FileOperationError(f"Failed to parse JSON: {path}") from exc
        return json.dumps(data, indent=2, ensure_ascii=False)

    @staticmethod
    def _parse_csv(path: Path) -> str:
        """Render each CSV row as ``header: value, header: value``."""
        try:
            with path.open(encoding="utf-8", newline="") as fh:
                rows = list(csv.DictReader(fh))
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise FileOperationError(f"Failed to parse CSV: {path}") from exc

        lines = []
        for row in rows:
            if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
                continue
            lines.append(
                ", ".join(
                    f"{(key or '').strip()}: {(value or '').strip() if isinstance(value, str) else ''}"
                    for key, value in row.items()
                )
            )
        return "\n".join(lines)
