# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Embedding client – texts in, vectors out, order preserved.

Providers:
- "openai": OpenAI embeddings API (or any compatible endpoint via base URL)
- "local":  sentence-transformers model through ChromaDB's embedding function

Rate limits and connection errors are retried with exponential backoff,
honoring the server's Retry-After header. Anything else, or running out of
retries, raises EmbeddingError.
"""
import sys
import time
from typing import Callable, Optional

import openai

from .config import Config

EmbeddingFn = Callable[[list[str]], list]


class EmbeddingError(Exception):
    pass


class _Transient(Exception):
    """Retryable upstream failure, with the server-requested wait if any."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


def _retry_after(exc: openai.APIStatusError) -> Optional[float]:
    try:
        value = exc.response.headers.get("retry-after")
        return float(value) if value is not None else None
    except (AttributeError, TypeError, ValueError):
        return None


class EmbeddingClient:
    def __init__(
        self,
        config: Config,
        embedding_fn: Optional[EmbeddingFn] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self._external_fn = embedding_fn
        self._sleep = sleep
        self._openai: Optional[openai.OpenAI] = None
        self._local_fn: Optional[EmbeddingFn] = None

    @property
    def model(self) -> str:
        return self.config.embedding_model

    # ── Providers ────────────────────────────────────────

    def _request(self, texts: list[str]) -> list[list[float]]:
        if self._external_fn is not None:
            return [list(map(float, v)) for v in self._external_fn(texts)]
        if self.config.embedding_provider == "local":
            return self._request_local(texts)
        return self._request_openai(texts)

    def _openai_client(self) -> openai.OpenAI:
        if self._openai is None:
            if not self.config.openai_api_key:
                raise EmbeddingError("OPENAI_API_KEY not set. Check your .env file.")
            self._openai = openai.OpenAI(
                api_key=self.config.openai_api_key,
                base_url=self.config.openai_base_url or None,
                max_retries=0,
            )
        return self._openai

    def _request_openai(self, texts: list[str]) -> list[list[float]]:
        client = self._openai_client()
        try:
            res = client.embeddings.create(model=self.config.embedding_model, input=texts)
        except openai.RateLimitError as e:
            raise _Transient(f"rate limited: {e}", _retry_after(e)) from e
        except openai.APIConnectionError as e:
            raise _Transient(f"connection error: {e}") from e
        except openai.APIStatusError as e:
            raise EmbeddingError(f"OpenAI API error {e.status_code}: {e.message}") from e
        except openai.OpenAIError as e:
            raise EmbeddingError(f"OpenAI error: {e}") from e
        return [d.embedding for d in sorted(res.data, key=lambda d: d.index)]

    def _request_local(self, texts: list[str]) -> list[list[float]]:
        if self._local_fn is None:
            try:
                from chromadb.utils import embedding_functions
                self._local_fn = embedding_functions.SentenceTransformerEmbeddingFunction(
                    model_name=self.config.embedding_model
                )
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load local embedding model '{self.config.embedding_model}': {e}"
                ) from e
        try:
            return [list(map(float, v)) for v in self._local_fn(texts)]
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e

    # ── Public API ───────────────────────────────────────

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in a single upstream call, retrying transient failures."""
        if not texts:
            return []
        max_retries = self.config.embedding_max_retries
        for attempt in range(max_retries + 1):
            try:
                vectors = self._request(texts)
            except _Transient as e:
                if attempt >= max_retries:
                    raise EmbeddingError(
                        f"Embedding failed after {max_retries} retries: {e}"
                    ) from e
                delay = self.config.embedding_retry_base_delay * (2 ** attempt)
                wait = e.retry_after if e.retry_after is not None else delay
                print(f"  Embedding {e}, retrying in {wait:.1f}s...", file=sys.stderr)
                self._sleep(wait)
                continue
            if len(vectors) != len(texts):
                raise EmbeddingError(
                    f"Expected {len(texts)} embeddings, got {len(vectors)}"
                )
            return vectors
        raise EmbeddingError("Embedding failed")

    def embed_all(
        self, texts: list[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> list[list[float]]:
        """Embed any number of texts in batches of embedding_batch_size."""
        size = max(1, self.config.embedding_batch_size)
        out: list[list[float]] = []
        for i in range(0, len(texts), size):
            out.extend(self.embed_batch(texts[i : i + size]))
            if on_progress:
                on_progress(min(i + size, len(texts)), len(texts))
        return out

    def embed_query(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]
