# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Vector index – one embedding per chunk id in a persistent ChromaDB
collection (cosine space). Embeddings are always supplied by the caller;
the collection has no embedding function of its own.

If ChromaDB cannot be opened the index is simply absent and the store
runs keyword-only.
"""
import sys
from typing import Optional

import chromadb


class VectorIndex:
    def __init__(self, path: str, collection_name: str):
        self._path = path
        self._collection_name = collection_name
        self.chroma = chromadb.PersistentClient(path=path)
        self.collection = self._get_collection()

    def _get_collection(self):
        return self.chroma.get_or_create_collection(
            self._collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    def count(self) -> int:
        return self.collection.count()

    def dimension(self) -> Optional[int]:
        """Dimension of the stored vectors, or None when empty."""
        if self.collection.count() == 0:
            return None
        probe = self.collection.get(limit=1, include=["embeddings"])
        embs = probe.get("embeddings")
        if embs is None or len(embs) == 0 or embs[0] is None:
            return None
        return len(embs[0])

    def upsert(self, ids: list[str], embeddings: list[list[float]]):
        self.collection.upsert(ids=ids, embeddings=[list(map(float, e)) for e in embeddings])

    def delete(self, ids: list[str]):
        if not ids:
            return
        for i in range(0, len(ids), 5000):
            self.collection.delete(ids=ids[i : i + 5000])

    def query(self, embedding: list[float], n: int) -> list[tuple[str, float]]:
        """Nearest neighbours as (id, cosine distance), closest first."""
        total = self.collection.count()
        if total == 0 or n <= 0:
            return []
        results = self.collection.query(
            query_embeddings=[list(map(float, embedding))],
            n_results=min(n, total),
            include=["distances"],
        )
        if not results["ids"] or not results["ids"][0]:
            return []
        return list(zip(results["ids"][0], results["distances"][0]))

    def reset(self):
        """Drop every vector (embedding model changed)."""
        self.chroma.delete_collection(self._collection_name)
        self.collection = self._get_collection()


def open_vector_index(path: str, collection_name: str) -> Optional[VectorIndex]:
    try:
        return VectorIndex(path, collection_name)
    except Exception as e:
        print(f"Warning: vector index not available ({e}). Vector search disabled.", file=sys.stderr)
        return None
