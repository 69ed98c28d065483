"""Tests for the incremental Indexer."""
from unittest.mock import MagicMock

import pytest

from upstream_kb.embedder import EmbeddingClient, EmbeddingError
from upstream_kb.indexer import IndexOutcome, Indexer, IndexReport, content_hash
from upstream_kb.releases import Changelog, ReleaseRecord

from conftest import FAKE_DIM, fake_embed

EXPECTED_PATHS = [
    "docs/channels/telegram.md",
    "docs/gateway.md",
    "skills/weather/SKILL.md",
    "src/config/types.gateway.ts",
    "src/gateway/server.ts",
]


def _all_ids(store):
    return {p: store.chunk_ids(p) for p in store.all_file_paths()}


class TestContentHash:
    def test_str_and_bytes_agree(self):
        assert content_hash("héllo") == content_hash("héllo".encode("utf-8"))

    def test_differs(self):
        assert content_hash("a") != content_hash("b")


class TestIndexReport:
    def test_counts_and_dict(self):
        r = IndexReport(release="v1")
        r.record(IndexOutcome.NEW, None)
        r.record(IndexOutcome.SKIPPED, None)
        d = r.to_dict()
        assert d["files"] == 2
        assert d["new"] == 1
        assert d["skipped"] == 1
        assert d["release"] == "v1"


class TestIndexAll:
    def test_first_run(self, indexer, store):
        report = indexer.index_all(release="v1.0.0")
        assert report.new == len(EXPECTED_PATHS)
        assert report.updated == 0
        assert report.skipped == 0
        assert report.failed == []
        assert store.all_file_paths() == EXPECTED_PATHS
        stats = store.stats()
        assert stats["chunks"] == report.chunks
        assert stats["vectors"] == report.chunks
        assert stats["embedding_model"] == "fake-embed"
        assert stats["vector_dimension"] == FAKE_DIM

    def test_excluded_files_not_indexed(self, indexer, store):
        indexer.index_all(release="v1.0.0")
        paths = store.all_file_paths()
        assert "docs/drafts/wip.md" not in paths
        assert "src/gateway/server.test.ts" not in paths

    def test_sources_recorded(self, indexer, store):
        indexer.index_all(release="v1.0.0")
        hits = store.search_keyword("GatewayConfig")
        assert hits[0].source == "config"
        assert hits[0].content_type == "config"

    def test_second_run_is_noop(self, indexer, store):
        indexer.index_all(release="v1.0.0")
        before = _all_ids(store)
        report = indexer.index_all(release="v1.0.0")
        assert report.skipped == len(EXPECTED_PATHS)
        assert report.new == report.updated == report.deleted == 0
        assert report.chunks == 0
        assert _all_ids(store) == before

    def test_modified_file_updated(self, indexer, store, upstream):
        indexer.index_all(release="v1.0.0")
        (upstream / "docs/gateway.md").write_text("# Gateway\n\nRewritten description.\n")
        report = indexer.index_all(release="v1.1.0")
        assert report.updated == 1
        assert report.skipped == len(EXPECTED_PATHS) - 1
        assert store.search_keyword("Rewritten")[0].path == "docs/gateway.md"
        assert store.search_keyword("18789") == []
        since = store.get_chunks_since_release("v1.1.0")
        assert {c.path for c in since} == {"docs/gateway.md"}

    def test_deleted_file_removed(self, indexer, store, upstream):
        indexer.index_all(release="v1.0.0")
        (upstream / "docs/channels/telegram.md").unlink()
        report = indexer.index_all(release="v1.0.0")
        assert report.deleted == 1
        assert "docs/channels/telegram.md" not in store.all_file_paths()
        assert store.search_keyword("telegram") == []
        assert store.vectors.count() == store.stats()["chunks"]

    def test_empty_upstream_keeps_index(self, indexer, store, config, upstream):
        indexer.index_all(release="v1.0.0")
        empty = upstream.parent / "empty"
        empty.mkdir()
        config.upstream_dir = str(empty)
        report = indexer.index_all(release="v1.0.0")
        assert report.deleted == 0
        assert store.all_file_paths() == EXPECTED_PATHS

    def test_force_reembeds(self, config, store, upstream):
        calls = []

        def counting(texts):
            calls.append(len(texts))
            return fake_embed(texts)

        indexer = Indexer(config, store, EmbeddingClient(config, embedding_fn=counting))
        indexer.index_all(release="v1.0.0")
        first = sum(calls)
        indexer.index_all(release="v1.0.0")
        assert sum(calls) == first
        report = indexer.index_all(force=True, release="v1.0.0")
        assert report.updated == len(EXPECTED_PATHS)
        assert sum(calls) == 2 * first

    def test_release_detected_when_not_given(self, indexer, monkeypatch):
        monkeypatch.setattr(indexer, "current_release", lambda: "abc1234")
        report = indexer.index_all()
        assert report.release == "abc1234"

    def test_embedding_failure_isolated(self, config, store, upstream):
        Indexer(config, store, EmbeddingClient(config, embedding_fn=fake_embed)).index_all(release="v1")
        old_hash = store.get_file_hash("docs/channels/telegram.md")
        (upstream / "docs/channels/telegram.md").write_text("# Telegram\n\nPOISON text.\n")
        (upstream / "docs/gateway.md").write_text("# Gateway\n\nStill fine.\n")

        def picky(texts):
            if any("POISON" in t for t in texts):
                raise EmbeddingError("quota exceeded")
            return fake_embed(texts)

        report = Indexer(config, store, EmbeddingClient(config, embedding_fn=picky)).index_all(release="v2")
        assert [f["path"] for f in report.failed] == ["docs/channels/telegram.md"]
        assert "quota exceeded" in report.failed[0]["error"]
        assert report.updated == 1
        assert store.get_file_hash("docs/channels/telegram.md") == old_hash
        assert store.search_keyword("Still fine")[0].path == "docs/gateway.md"

    def test_keyword_only_never_embeds(self, keyword_config, keyword_store):
        embedder = MagicMock(spec=EmbeddingClient)
        report = Indexer(keyword_config, keyword_store, embedder).index_all(release="v1")
        assert report.new == len(EXPECTED_PATHS)
        embedder.embed_all.assert_not_called()
        assert keyword_store.search_keyword("forecast")[0].path == "skills/weather/SKILL.md"

    def test_model_change_requires_force(self, indexer, store, config):
        from upstream_kb.store import EmbeddingModelMismatch

        store.ensure_embedding_model("older-model")
        with pytest.raises(EmbeddingModelMismatch):
            indexer.index_all(release="v1")
        report = indexer.index_all(force=True, release="v1")
        assert report.new == len(EXPECTED_PATHS)
        assert store.get_meta("embedding_model") == "fake-embed"


class TestIndexPath:
    def test_outcomes(self, indexer, store):
        content = "# Notes\n\nSome notes.\n"
        assert indexer.index_path(content, "docs/notes.md", "docs") is IndexOutcome.NEW
        assert indexer.index_path(content, "docs/notes.md", "docs") is IndexOutcome.SKIPPED
        assert indexer.index_path(content, "docs/notes.md", "docs", force=True) is IndexOutcome.UPDATED
        assert indexer.index_path(content + "more\n", "docs/notes.md", "docs") is IndexOutcome.UPDATED

    def test_bytes_with_invalid_utf8(self, indexer, store):
        outcome = indexer.index_path(b"# Bin\n\nok \xff\xfe text\n", "docs/bin.md", "docs")
        assert outcome is IndexOutcome.NEW
        assert store.search_keyword("text")[0].path == "docs/bin.md"

    def test_empty_file_tracked(self, indexer, store):
        assert indexer.index_path("", "docs/empty.md", "docs") is IndexOutcome.NEW
        assert store.get_file_hash("docs/empty.md") == content_hash("")
        assert store.chunk_ids("docs/empty.md") == []

    def test_embedding_error_propagates(self, config, store):
        def broken(texts):
            raise EmbeddingError("down")

        indexer = Indexer(config, store, EmbeddingClient(config, embedding_fn=broken))
        with pytest.raises(EmbeddingError):
            indexer.index_path("# X\n\ny\n", "docs/x.md", "docs")
        assert store.get_file_hash("docs/x.md") is None


class TestChangelogs:
    def _release(self, store):
        store.insert_release(ReleaseRecord(
            tag="v1.1.0", date="2026-02-01T10:00:00+00:00", previous_tag="v1.0.0",
            commits_count=2,
            changelog=Changelog(features=["feat: webhook retries"], fixes=["fix(gateway): crash"]),
        ))

    def test_changelogs_indexed(self, indexer, store):
        self._release(store)
        report = indexer.index_all(release="v1.1.0")
        assert report.new == len(EXPECTED_PATHS) + 1
        hits = store.search_keyword("webhook retries", source="releases")
        assert hits[0].path == "releases/v1.1.0"
        assert hits[0].category == "release-notes"

    def test_changelogs_survive_sweep(self, indexer, store):
        self._release(store)
        indexer.index_all(release="v1.1.0")
        report = indexer.index_all(release="v1.1.0")
        assert report.deleted == 0
        assert "releases/v1.1.0" in store.all_file_paths()

    def test_index_release_changelogs(self, indexer, store):
        self._release(store)
        report = indexer.index_release_changelogs()
        assert report.new == 1
        chunks = store.get_chunks_since_release("v1.1.0")
        assert {c.path for c in chunks} == {"releases/v1.1.0"}

    def test_changelog_keeps_its_own_release(self, indexer, store):
        store.insert_release(ReleaseRecord(
            tag="v1.0.0", date="2026-01-01T10:00:00+00:00",
            changelog=Changelog(fixes=["fix: first crash"]),
        ))
        indexer.index_all(force=True, release="v1.1.0")
        since = store.get_chunks_since_release("v1.1.0")
        assert "releases/v1.0.0" not in {c.path for c in since}
        older = store.get_chunks_since_release("v1.0.0")
        assert {c.indexed_release for c in older if c.path == "releases/v1.0.0"} == {"v1.0.0"}
