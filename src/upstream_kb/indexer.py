# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Upstream tree -> Chunks -> Embeddings -> Index Store

Hash-gated and incremental: a file is re-chunked and re-embedded only when
the sha256 of its raw bytes differs from the manifest. Each file is written
in its own store transaction, so a failure leaves that file's previous
state (and hash) in place and the sweep moves on to the next one.

Release changelogs are indexed alongside the tree as pseudo-files
"releases/<tag>" so they are searchable with the same tools.
"""
import hashlib
import sys
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .chunker import chunk_file
from .config import Config
from .discovery import discover_files
from .embedder import EmbeddingClient
from .releases import detect_current_release, format_changelog_markdown
from .store import IndexStore, WriteReport


class IndexOutcome(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class IndexReport:
    new: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    chunks: int = 0
    release: Optional[str] = None
    failed: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def files(self) -> int:
        return self.new + self.updated + self.skipped

    def record(self, outcome: IndexOutcome, write: Optional[WriteReport]):
        if outcome is IndexOutcome.NEW:
            self.new += 1
        elif outcome is IndexOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1
        if write is not None:
            self.chunks += write.chunks_written
            self.warnings.extend(write.warnings)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["files"] = self.files
        return d


def content_hash(content: Union[str, bytes]) -> str:
    raw = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(raw).hexdigest()


class Indexer:
    def __init__(self, config: Config, store: IndexStore, embedder: Optional[EmbeddingClient] = None):
        self.config = config
        self.store = store
        self.embedder = embedder
        self._lock = threading.Lock()
        self._model_checked = False

    # ── Single file ──────────────────────────────────────

    def index_path(
        self,
        content: Union[str, bytes],
        path: str,
        source: str,
        force: bool = False,
        release: Optional[str] = None,
    ) -> IndexOutcome:
        """Index one file's content unless its hash is unchanged.

        Embedding and storage errors propagate; the file's previous chunks
        and hash are left untouched in that case.
        """
        outcome, _ = self._index(content, path, source, force, release)
        return outcome

    def _index(
        self, content: Union[str, bytes], path: str, source: str,
        force: bool, release: Optional[str],
    ) -> tuple[IndexOutcome, Optional[WriteReport]]:
        file_hash = content_hash(content)
        stored = self.store.get_file_hash(path)
        if not force and stored == file_hash:
            return IndexOutcome.SKIPPED, None

        text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
        chunks = chunk_file(
            text, path, source,
            max_chars=self.config.chunk_max_chars,
            code_max_chars=self.config.code_chunk_max_chars,
            overlap_chars=self.config.chunk_overlap,
        )

        embeddings = None
        if chunks and self.embedder is not None and self.store.vector_available:
            self._check_model()
            embeddings = self.embedder.embed_all([c.text for c in chunks])

        write = self.store.replace_file(path, source, file_hash, chunks, embeddings, release)
        return (IndexOutcome.NEW if stored is None else IndexOutcome.UPDATED), write

    def _check_model(self, rebuild: bool = False):
        if self._model_checked and not rebuild:
            return
        if self.embedder is not None and self.store.vector_available:
            self.store.ensure_embedding_model(self.embedder.model, rebuild=rebuild)
        self._model_checked = True

    # ── Full sweep ───────────────────────────────────────

    def index_all(self, force: bool = False, release: Optional[str] = None) -> IndexReport:
        """Incremental sweep over every configured source.

        force=True re-embeds every file (and accepts an embedding model
        change). Paths that are no longer discovered are removed, except
        when nothing at all was discovered.
        """
        with self._lock:
            self._check_model(rebuild=force)
            root = Path(self.config.upstream_dir)
            report = IndexReport(release=release or self.current_release())
            seen: set[str] = set()

            for spec in self.config.sources:
                files = discover_files(root, spec)
                print(f"[{spec.name}] {len(files)} files")
                for f in files:
                    # a file matched by several sources belongs to the first one
                    if f.rel_path in seen:
                        continue
                    seen.add(f.rel_path)
                    try:
                        outcome, write = self._index(
                            f.abs_path.read_bytes(), f.rel_path, spec.name, force, report.release,
                        )
                    except Exception as e:
                        print(f"Warning: failed to index {f.rel_path}: {e}", file=sys.stderr)
                        report.failed.append({"path": f.rel_path, "error": str(e)})
                        continue
                    report.record(outcome, write)

            self._sweep(seen, report)
            self._index_changelogs(force, report)

            print(
                f"Index: {report.files} files ({report.new} new, {report.updated} updated, "
                f"{report.skipped} skipped, {report.deleted} deleted, {len(report.failed)} failed)"
                f" -> {report.chunks} chunks written"
            )
            if report.warnings:
                print(f"  {len(report.warnings)} warnings", file=sys.stderr)
            return report

    def _sweep(self, seen: set[str], report: IndexReport):
        known = self.store.all_file_paths(exclude_sources=(self.config.release_source,))
        stale = [p for p in known if p not in seen]
        if not stale:
            return
        if not seen:
            print(f"Safety: 0 files discovered but {len(known)} files in the index "
                  f"- skipping stale removal (upstream may not be checked out)")
            return
        for path in stale:
            try:
                self.store.delete_path(path)
                report.deleted += 1
            except Exception as e:
                print(f"Warning: failed to remove {path}: {e}", file=sys.stderr)
                report.failed.append({"path": path, "error": str(e)})

    # ── Release changelogs ───────────────────────────────

    def index_release_changelogs(self, release: Optional[str] = None, force: bool = False) -> IndexReport:
        report = IndexReport(release=release)
        self._index_changelogs(force, report)
        return report

    def _index_changelogs(self, force: bool, report: IndexReport):
        source = self.config.release_source
        for record in self.store.get_release_history(limit=None):
            path = f"{source}/{record.tag}"
            try:
                outcome, write = self._index(
                    format_changelog_markdown(record), path, source, force, record.tag,
                )
            except Exception as e:
                print(f"Warning: failed to index changelog {record.tag}: {e}", file=sys.stderr)
                report.failed.append({"path": path, "error": str(e)})
                continue
            report.record(outcome, write)

    def current_release(self) -> Optional[str]:
        return detect_current_release(Path(self.config.upstream_dir))
