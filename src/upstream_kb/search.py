# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Hybrid retrieval: vector + keyword results merged by Reciprocal Rank Fusion.

  score(d) = 1 / (k + vector_rank(d)) + 1 / (k + text_rank(d))

Ranks are 1-based; a document missing from one list gets 0 from it. Each
primitive is asked for twice the requested limit so fusion has candidates
to reorder.
"""
from dataclasses import replace
from typing import Optional

from .config import Config
from .embedder import EmbeddingClient
from .store import IndexStore, SearchHit
from .synonyms import expand_query

RRF_K = 60


def rrf_fuse(
    vector_results: list[SearchHit], keyword_results: list[SearchHit],
    limit: int, k: int = RRF_K,
) -> list[SearchHit]:
    """Reciprocal Rank Fusion of two ranked lists, merged by chunk id."""
    merged: dict[str, SearchHit] = {}
    scores: dict[str, float] = {}

    for rank, hit in enumerate(vector_results, 1):
        if hit.id in merged:
            continue
        merged[hit.id] = replace(hit, vector_score=hit.score, text_score=0.0)
        scores[hit.id] = 1 / (k + rank)

    seen_text: set[str] = set()
    for rank, hit in enumerate(keyword_results, 1):
        if hit.id in seen_text:
            continue
        seen_text.add(hit.id)
        if hit.id in merged:
            merged[hit.id].text_score = hit.score
        else:
            merged[hit.id] = replace(hit, vector_score=0.0, text_score=hit.score)
            scores[hit.id] = 0.0
        scores[hit.id] += 1 / (k + rank)

    for cid, hit in merged.items():
        hit.score = scores[cid]
    # sorted() is stable: ties keep first-appearance order, vector list first
    ranked = sorted(merged.values(), key=lambda h: h.score, reverse=True)
    return ranked[:limit]


def hybrid_search(
    store: IndexStore,
    query_vector: Optional[list[float]],
    query_text: str,
    limit: int = 8,
    source: Optional[str] = None,
    content_type: Optional[str] = None,
    k: int = RRF_K,
) -> list[SearchHit]:
    if limit <= 0:
        return []
    fetch = limit * 2
    vector_hits = (
        store.search_vector(query_vector, fetch, source, content_type)
        if query_vector is not None else []
    )
    keyword_hits = store.search_keyword(query_text, fetch, source, content_type)
    return rrf_fuse(vector_hits, keyword_hits, limit, k)


class Searcher:
    """Query pipeline: synonym expansion -> query embedding -> hybrid search."""

    def __init__(self, store: IndexStore, embedder: Optional[EmbeddingClient], config: Config):
        self.store = store
        self.embedder = embedder
        self.config = config
        self._model_checked = False

    def search(
        self,
        query: str,
        limit: Optional[int] = None,
        source: Optional[str] = None,
        content_type: Optional[str] = None,
        expand: bool = True,
    ) -> list[SearchHit]:
        limit = limit if limit is not None else self.config.default_top_k
        text = expand_query(query) if expand else query
        vector = self.embed_query(text)
        return hybrid_search(
            self.store, vector, text, limit, source, content_type, self.config.rrf_k,
        )

    def embed_query(self, text: str) -> Optional[list[float]]:
        """Query embedding, or None when there is nothing to compare it with."""
        if self.embedder is None or not self.store.vector_available:
            return None
        if not self._model_checked:
            self.store.ensure_embedding_model(self.embedder.model)
            self._model_checked = True
        return self.embedder.embed_query(text)
