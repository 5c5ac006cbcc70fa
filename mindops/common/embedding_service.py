"""
Embedding Service

Wraps a provider adapter (OpenAI by default) behind a batch-first interface.
Query embeddings fail loudly; document embeddings degrade to zero vectors so
a single bad chunk never aborts an ingestion.
"""

import logging
import time
from typing import Any, Callable, List, Optional

import numpy as np

from .config import EmbeddingConfig
from .errors import EmbeddingError, InputValidationError
from .retry import BackoffKind, RetryPolicy, run_with_retry

logger = logging.getLogger("mindops.common.embedding_service")


class OpenAIEmbeddingAdapter:
    """Calls the OpenAI embeddings endpoint."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small"):
        from openai import OpenAI

        self._client = OpenAI(api_key=api_key)
        self.model = model

    def get_embedding(self, texts: List[str]) -> List[List[float]]:
        response = self._client.embeddings.create(model=self.model, input=texts)
        data = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]


class EmbeddingService:
    """
    Embedding service for MindOps ingestion and query flows.

    The adapter is any object exposing ``get_embedding(texts) -> vectors``.
    """

    def __init__(self, adapter=None, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._adapter = adapter
        if self._adapter is None and self.config.api_key:
            self._adapter = OpenAIEmbeddingAdapter(self.config.api_key, self.config.model)
            logger.info("Initialized with provider=%s, model=%s", self.config.provider, self.config.model)

        self.policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.retry_base_delay,
            backoff=BackoffKind.LINEAR,
        )
        self.rate_limit_policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.rate_limit_base_delay,
            max_delay=self.config.rate_limit_max_delay,
            backoff=BackoffKind.EXPONENTIAL,
        )

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._adapter is not None

    def zero_vector(self) -> List[float]:
        return [0.0] * self.config.dimensions

    def _truncate(self, text: str) -> str:
        limit = self.config.max_input_chars
        if len(text) > limit:
            logger.warning("Truncating embedding input from %d to %d chars", len(text), limit)
            return text[:limit]
        return text

    def _call(self, texts: List[str]) -> List[List[float]]:
        if not self._adapter:
            raise RuntimeError("Embedding adapter not initialized")
        vectors = self._adapter.get_embedding(texts)
        if isinstance(vectors, np.ndarray):
            vectors = vectors.tolist()
        if len(vectors) != len(texts):
            raise RuntimeError(f"Provider returned {len(vectors)} vectors for {len(texts)} inputs")
        return vectors

    def embed_query(self, text: str, sleep: Callable[[float], Any] = time.sleep) -> List[float]:
        """
        Embed a single query string.

        Raises:
            InputValidationError: empty text
            EmbeddingError: provider failed after all retries
        """
        if not text or not text.strip():
            raise InputValidationError("Cannot embed empty text")

        outcome = run_with_retry(
            lambda: self._call([self._truncate(text)])[0],
            self.policy,
            self.rate_limit_policy,
            sleep=sleep,
            label="query embedding",
        )
        if not outcome.ok:
            raise EmbeddingError(f"Error generating query embedding: {outcome.error_message}")
        return outcome.value

    def embed_documents(
        self,
        texts: List[str],
        sleep: Callable[[float], Any] = time.sleep,
    ) -> List[Optional[List[float]]]:
        """
        Embed texts in batches, preserving input order.

        A failed batch is retried item by item. Items that still fail come
        back as ``None`` so the caller can substitute a zero vector and
        record the failure.
        """
        results: List[Optional[List[float]]] = []
        batch_size = max(1, self.config.batch_size)

        for start in range(0, len(texts), batch_size):
            if start > 0 and self.config.batch_delay > 0:
                sleep(self.config.batch_delay)

            batch = [self._truncate(t) for t in texts[start:start + batch_size]]
            outcome = run_with_retry(
                lambda: self._call(batch),
                self.policy,
                self.rate_limit_policy,
                sleep=sleep,
                label=f"embedding batch {start // batch_size + 1}",
            )
            if outcome.ok:
                results.extend(outcome.value)
                continue

            if len(batch) == 1:
                results.append(None)
                continue

            logger.warning("Batch starting at %d failed, retrying items individually", start)
            for offset, item in enumerate(batch):
                single = run_with_retry(
                    lambda: self._call([item])[0],
                    self.policy,
                    self.rate_limit_policy,
                    sleep=sleep,
                    label=f"embedding item {start + offset}",
                )
                results.append(single.value if single.ok else None)

        return results

    @staticmethod
    def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
        """
        Cosine similarity between two vectors.

        Provider vectors are not assumed normalized, so norms are computed.
        A zero-norm vector scores 0.0.
        """
        v1 = np.asarray(vec1, dtype=float)
        v2 = np.asarray(vec2, dtype=float)

        if v1.shape != v2.shape:
            raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

        denom = np.linalg.norm(v1) * np.linalg.norm(v2)
        if denom == 0:
            return 0.0
        return float(np.dot(v1, v2) / denom)

    @staticmethod
    def batch_cosine_similarity(
        query_vec: List[float],
        vectors: List[List[float]]
    ) -> List[float]:
        """
        Cosine similarity between a query and multiple vectors.

        Rows with zero norm (failed embeddings) score 0.0.
        """
        if not vectors:
            return []

        query = np.asarray(query_vec, dtype=float)
        matrix = np.asarray(vectors, dtype=float)

        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise ValueError(f"Vector dimension mismatch: {matrix.shape} vs {query.shape}")

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(norms > 0, dots / norms, 0.0)

        return similarities.tolist()
