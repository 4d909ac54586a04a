"""sentence-transformers model wrapper used inside embedding workers."""

from __future__ import annotations

import logging
from typing import Any

from localrag.errors import EmbeddingError

logger = logging.getLogger(__name__)


def _load_model(model_name: str, cache_dir: str | None) -> Any:
    # Imported lazily: torch is heavy and only worker processes need it.
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name, cache_folder=cache_dir)


class EmbeddingService:
    """Encode text with a sentence-transformers model.

    The model is loaded on first use. Vectors are L2-normalised so cosine
    distance in the store ranges over [0, 2].

    Args:
        model_name: sentence-transformers model identifier.
        cache_dir: Model cache directory (None = library default).
        dimensions: Expected vector length.
    """

    def __init__(
        self,
        model_name: str,
        cache_dir: str | None = None,
        dimensions: int = 384,
    ) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.dimensions = dimensions
        self._model: Any = None

    @staticmethod
    def prime_cache(model_name: str, cache_dir: str | None = None) -> None:
        """Download *model_name* into the cache if it is not there yet.

        Called once before any worker starts so that workers never race to
        download the same files. The loaded model is discarded.

        Raises:
            EmbeddingError: If the model cannot be fetched or loaded.
        """
        logger.info("Priming model cache for '%s'...", model_name)
        try:
            _load_model(model_name, cache_dir)
        except Exception as exc:
            raise EmbeddingError("Failed to prime the model cache.") from exc
        logger.info("Model cache is ready.")

    def ensure_initialized(self) -> None:
        if self._model is not None:
            return
        try:
            self._model = _load_model(self.model_name, self.cache_dir)
        except Exception as exc:
            raise EmbeddingError("Worker failed to initialize embedding model.") from exc

    def handle(self, kind: str, payload: Any) -> Any:
        """Dispatch one worker task: 'embed' → vector, 'embed_batch' → vectors."""
        if kind == "embed":
            return self.embed(payload)
        if kind == "embed_batch":
            return self.embed_batch(payload)
        raise EmbeddingError(f"Unknown embedding task kind: {kind}")

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if any(not t.strip() for t in texts):
            raise EmbeddingError("Cannot generate embedding for empty text.")
        self.ensure_initialized()
        try:
            output = self._model.encode(
                texts,
                normalize_embeddings=True,
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as exc:
            raise EmbeddingError("Worker failed to generate embedding for text.") from exc

        vectors = [[float(v) for v in row] for row in output]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Unexpected vector size. Expected {self.dimensions}, got {len(vector)}."
                )
        return vectors
