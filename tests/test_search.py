"""Tests for Reciprocal Rank Fusion and the hybrid query pipeline."""
from unittest.mock import MagicMock

import pytest

from upstream_kb.embedder import EmbeddingClient
from upstream_kb.search import RRF_K, Searcher, hybrid_search, rrf_fuse
from upstream_kb.store import EmbeddingModelMismatch, SearchHit

from conftest import fake_embed


def _hit(cid, score=0.5):
    return SearchHit(
        id=cid, path=f"docs/{cid}.md", source="docs", content_type="docs",
        language="markdown", category="documentation",
        start_line=1, end_line=5, text=f"// File: docs/{cid}.md (lines 1-4)\n{cid}",
        score=score,
    )


class TestRrfFuse:
    def test_scores(self):
        fused = rrf_fuse([_hit("a", 0.9), _hit("b", 0.8)], [_hit("b", 0.7), _hit("c", 0.6)], 10)
        by_id = {h.id: h for h in fused}
        assert by_id["a"].score == pytest.approx(1 / (RRF_K + 1))
        assert by_id["b"].score == pytest.approx(1 / (RRF_K + 2) + 1 / (RRF_K + 1))
        assert by_id["c"].score == pytest.approx(1 / (RRF_K + 2))
        assert [h.id for h in fused] == ["b", "a", "c"]

    def test_debug_scores_kept(self):
        fused = rrf_fuse([_hit("a", 0.9)], [_hit("a", 0.4), _hit("b", 0.3)], 10)
        by_id = {h.id: h for h in fused}
        assert by_id["a"].vector_score == 0.9
        assert by_id["a"].text_score == 0.4
        assert by_id["b"].vector_score == 0.0
        assert by_id["b"].text_score == 0.3

    def test_ties_keep_first_appearance(self):
        # same rank in one list each: vector result first
        fused = rrf_fuse([_hit("v")], [_hit("k")], 10)
        assert [h.id for h in fused] == ["v", "k"]
        fused = rrf_fuse([_hit("v1"), _hit("v2")], [], 10)
        assert [h.id for h in fused] == ["v1", "v2"]

    def test_monotonic_in_rank(self):
        others = [_hit(f"x{i}") for i in range(5)]
        low = rrf_fuse(others + [_hit("t")], [], 10)
        high = rrf_fuse([_hit("t")] + others, [], 10)
        score = lambda hits: next(h.score for h in hits if h.id == "t")
        assert score(high) > score(low)

    def test_both_lists_beats_one(self):
        fused = rrf_fuse([_hit("one"), _hit("both")], [_hit("both")], 10)
        assert fused[0].id == "both"

    def test_truncates_to_limit(self):
        fused = rrf_fuse([_hit(f"v{i}") for i in range(8)], [_hit(f"k{i}") for i in range(8)], 5)
        assert len(fused) == 5

    def test_inputs_not_mutated(self):
        v = [_hit("a", 0.9)]
        rrf_fuse(v, [_hit("a", 0.4)], 10)
        assert v[0].score == 0.9
        assert v[0].text_score == 0.0

    def test_empty(self):
        assert rrf_fuse([], [], 10) == []


def _index(store, path, content):
    from upstream_kb.chunker import chunk_file

    chunks = chunk_file(content, path, "docs")
    embeddings = fake_embed([c.text for c in chunks]) if store.vector_available else None
    store.replace_file(path, "docs", path, chunks, embeddings)


class TestHybridSearch:
    def test_asks_each_primitive_for_twice_the_limit(self):
        store = MagicMock()
        store.search_vector.return_value = []
        store.search_keyword.return_value = []
        hybrid_search(store, [0.1], "query", limit=4, source="docs", content_type="docs")
        store.search_vector.assert_called_once_with([0.1], 8, "docs", "docs")
        store.search_keyword.assert_called_once_with("query", 8, "docs", "docs")

    def test_without_query_vector_is_keyword_only(self, store):
        _index(store, "docs/a.md", "# Sandbox\n\nDocker container isolation.\n")
        hits = hybrid_search(store, None, "docker", limit=3)
        assert [h.path for h in hits] == ["docs/a.md"]
        assert hits[0].vector_score == 0.0

    def test_degrades_without_vector_backend(self, keyword_store):
        _index(keyword_store, "docs/a.md", "# Sandbox\n\nDocker container isolation.\n")
        hits = hybrid_search(keyword_store, [0.1] * 64, "docker", limit=3)
        assert [h.path for h in hits] == ["docs/a.md"]

    def test_combines_both_sources(self, store):
        _index(store, "docs/a.md", "# Sandbox\n\nDocker container isolation.\n")
        _index(store, "docs/b.md", "# Sessions\n\nConversation threads are persisted.\n")
        vector = fake_embed(["docker container sandbox"])[0]
        hits = hybrid_search(store, vector, "docker", limit=2)
        assert hits[0].path == "docs/a.md"
        assert hits[0].vector_score > 0
        assert hits[0].text_score > 0


class TestSearcher:
    def test_end_to_end(self, store, embedder, config):
        _index(store, "docs/a.md", "# Sandbox\n\nDocker container isolation.\n")
        _index(store, "docs/b.md", "# Sessions\n\nConversation threads are persisted.\n")
        hits = Searcher(store, embedder, config).search("sandbox", limit=2)
        assert hits[0].path == "docs/a.md"

    def test_synonym_expansion_reaches_keyword_search(self, store, embedder, config):
        _index(store, "docs/b.md", "# Sessions\n\nConversation threads are persisted.\n")
        # "session" alone is not in the text; its synonym "conversation" is
        hits = Searcher(store, embedder, config).search("session", limit=3)
        assert hits and hits[0].path == "docs/b.md"

    def test_skips_embedding_without_vectors(self, keyword_store, keyword_config):
        _index(keyword_store, "docs/a.md", "# Sandbox\n\nDocker container isolation.\n")
        embedder = MagicMock(spec=EmbeddingClient)
        hits = Searcher(keyword_store, embedder, keyword_config).search("docker", limit=3)
        assert hits
        embedder.embed_query.assert_not_called()

    def test_embedding_error_propagates(self, store, config):
        from upstream_kb.embedder import EmbeddingError

        def broken(texts):
            raise EmbeddingError("quota exceeded")

        searcher = Searcher(store, EmbeddingClient(config, embedding_fn=broken), config)
        with pytest.raises(EmbeddingError):
            searcher.search("anything")

    def test_model_mismatch_refused(self, store, embedder, config):
        store.ensure_embedding_model("some-other-model")
        with pytest.raises(EmbeddingModelMismatch):
            Searcher(store, embedder, config).search("docker")

    def test_default_limit_from_config(self, store, embedder, config):
        for i in range(12):
            _index(store, f"docs/n{i}.md", f"# Note {i}\n\nDocker note number {i}.\n")
        hits = Searcher(store, embedder, config).search("docker note")
        assert len(hits) == config.default_top_k
