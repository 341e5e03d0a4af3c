"""
Embedding providers.

SentenceTransformerEmbeddings is the real model; DeterministicEmbeddings is a
reproducible stand-in that is structurally valid but not semantically
meaningful. The `semantic` flag travels with every vector so downstream
analyses can tell them apart.
"""
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import numpy as np

from .errors import ProviderUnavailable
from .logging_config import logger


@dataclass
class Embedding:
    vector: List[float]
    semantic: bool = True


class EmbeddingProvider(ABC):
    name = "abstract"

    def __init__(self, dimension: int = 768):
        self.dimension = dimension

    @abstractmethod
    def embed(self, text: str) -> Embedding:
        """Return a `dimension`-length vector for text."""

    def warm_up(self) -> None:
        """Load whatever the provider needs before the first request."""


class DeterministicEmbeddings(EmbeddingProvider):
    """
    Pseudo-random vector seeded from the text length and character sum.

    Identical input always yields an identical, L2-normalized vector.
    """
    name = "deterministic"

    def embed(self, text: str) -> Embedding:
        text = text or ""
        seed = len(text) % 100
        char_sum = sum(ord(c) for c in text)
        i = np.arange(self.dimension, dtype=float)
        values = np.clip(np.sin(seed + i + char_sum / 1000.0) * np.cos(i / 10.0), -1.0, 1.0)
        norm = float(np.linalg.norm(values))
        if norm == 0.0 or not math.isfinite(norm):
            values = np.zeros(self.dimension)
            values[0] = 1.0
        else:
            values = values / norm
        return Embedding(vector=values.tolist(), semantic=False)


class SentenceTransformerEmbeddings(EmbeddingProvider):
    """Local sentence-transformers model, loaded lazily on first use."""
    name = "sentence-transformers"

    def __init__(self, model_name: str, dimension: int = 768):
        super().__init__(dimension)
        self.model_name = model_name
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer
                    logger.info("Loading embedding model", model=self.model_name)
                    self._model = SentenceTransformer(
                        self.model_name,
                        tokenizer_kwargs={"clean_up_tokenization_spaces": False},
                    )
                    logger.info("Embedding model loaded", model=self.model_name)
        return self._model

    def warm_up(self) -> None:
        self._get_model().encode(["test"], normalize_embeddings=True, show_progress_bar=False)

    def embed(self, text: str) -> Embedding:
        vecs = self._get_model().encode([text], normalize_embeddings=True, show_progress_bar=False)
        vector = vecs[0].tolist() if isinstance(vecs, np.ndarray) else list(vecs[0])
        if len(vector) != self.dimension:
            raise ProviderUnavailable(
                f"Embedding model {self.model_name} returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return Embedding(vector=[float(v) for v in vector], semantic=True)


class FallbackEmbeddingProvider(EmbeddingProvider):
    """
    Wraps a primary provider and substitutes the fallback's vector whenever
    the primary raises or returns the wrong dimension.
    """

    def __init__(self, primary: EmbeddingProvider, fallback: EmbeddingProvider):
        super().__init__(primary.dimension)
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    def warm_up(self) -> None:
        try:
            self.primary.warm_up()
        except Exception as e:
            logger.warning("Embedding warm-up failed; fallback vectors will be used", error=str(e))

    def embed(self, text: str) -> Embedding:
        try:
            result = self.primary.embed(text)
            if len(result.vector) != self.dimension:
                raise ProviderUnavailable(
                    f"Expected {self.dimension} dimensions, got {len(result.vector)}"
                )
            return result
        except Exception as e:
            logger.warning("Embedding provider failed, using fallback", provider=self.primary.name, error=str(e))
            return self.fallback.embed(text)


def build_embedding_provider(settings) -> EmbeddingProvider:
    """Select the embedding provider named by COGNIVAULT_EMBEDDING_PROVIDER."""
    fallback = DeterministicEmbeddings(settings.embed_dimension)
    if settings.embedding_provider == "sentence-transformers":
        primary = SentenceTransformerEmbeddings(settings.embed_model, settings.embed_dimension)
        return FallbackEmbeddingProvider(primary, fallback)
    return fallback
