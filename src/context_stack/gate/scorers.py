# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Similarity scorers consumed by the gate and the curator.

The semantic model itself is an external collaborator. This module only
defines the async scoring interface and two adapters:
- WordOverlapScorer: Jaccard word overlap, no model required
- EmbeddingScorer: cosine similarity over an embedding model's vectors
  (sentence-transformers by default, loaded lazily)
"""

import logging
import math
import re
from typing import Optional, Protocol, cast, runtime_checkable

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9_]+")


@runtime_checkable
class SimilarityScorer(Protocol):
    """Protocol for similarity scoring services.

    Implementations return a score in [0, 1]; callers clamp anyway.
    """

    async def score(self, text_a: str, text_b: str) -> float:
        ...


class EmbeddingModel(Protocol):
    """Protocol for embedding models."""

    def encode(
        self,
        sentences: list[str] | str,
        batch_size: int = 32,
        show_progress_bar: bool = False,
        normalize_embeddings: bool = True,
    ) -> NDArray[np.float32]: ...


def clamp_score(value: float) -> float:
    """Clamp a raw score into [0, 1]; NaN counts as 0."""
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def word_set(text: str) -> set[str]:
    return set(_TOKEN.findall(text.lower()))


class WordOverlapScorer:
    """Jaccard similarity over lowercase word sets.

    Fast approximation of semantic similarity; identical word sets score 1.0
    and texts without words score 0.0.

    Example:
        >>> scorer = WordOverlapScorer()
        >>> await scorer.score("Prefers tabs over spaces", "Prefers tabs over spaces")
        1.0
    """

    async def score(self, text_a: str, text_b: str) -> float:
        return self.similarity(text_a, text_b)

    @staticmethod
    def similarity(text_a: str, text_b: str) -> float:
        words_a = word_set(text_a)
        words_b = word_set(text_b)
        if not words_a or not words_b:
            return 0.0
        return len(words_a & words_b) / len(words_a | words_b)


class EmbeddingScorer:
    """Cosine similarity between embeddings from an external model.

    Negative cosine values are clamped to 0.

    Attributes:
        model_name: sentence-transformers model used when no model is injected
    """

    DEFAULT_MODEL = "all-MiniLM-L6-v2"

    def __init__(
        self,
        model: Optional[EmbeddingModel] = None,
        model_name: str = DEFAULT_MODEL,
    ) -> None:
        self.model_name = model_name
        self._model = model

    @property
    def model(self) -> EmbeddingModel:
        if self._model is None:
            self._model = self._load_model()
        return self._model

    def _load_model(self) -> EmbeddingModel:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for EmbeddingScorer without an "
                "injected model. Install with: pip install 'context-stack[embeddings]'"
            ) from e

        logger.info(f"Loading embedding model: {self.model_name}")
        return cast(EmbeddingModel, SentenceTransformer(self.model_name))

    def embed(self, texts: list[str]) -> NDArray[np.float32]:
        embeddings = np.asarray(
            self.model.encode(
                texts,
                batch_size=32,
                show_progress_bar=False,
                normalize_embeddings=True,
            ),
            dtype=np.float32,
        )
        if embeddings.ndim == 1:
            embeddings = embeddings.reshape(1, -1)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return embeddings / norms

    async def score(self, text_a: str, text_b: str) -> float:
        embeddings = self.embed([text_a, text_b])
        return clamp_score(float(np.dot(embeddings[0], embeddings[1])))
