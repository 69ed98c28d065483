# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Index store – the only owner of persisted state.

SQLite (WAL) holds the file manifest, chunk records, the FTS5 keyword index
and release metadata; embeddings live in the vector index (ChromaDB). A
file's chunks are always replaced as a whole inside one SQLite transaction:

  vectors upserted -> BEGIN -> delete old rows -> insert chunks + keyword
  rows + manifest -> COMMIT -> drop vectors no longer referenced

Chunk rows are mandatory (any failure rolls the file back and the vectors
written for it are discarded). Keyword and vector entries are best effort:
failures are returned as warnings in the WriteReport.

The vector index is optional. Without it every vector operation is a no-op
and search degrades to keyword-only.
"""
import json
import math
import re
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .chunker import Chunk
from .config import Config
from .releases import ReleaseRecord
from .vectors import VectorIndex, open_vector_index

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    path TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    hash TEXT NOT NULL,
    indexed_at INTEGER NOT NULL,
    indexed_release TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    source TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    hash TEXT NOT NULL,
    text TEXT NOT NULL,
    content_type TEXT DEFAULT 'unknown',
    language TEXT,
    category TEXT,
    indexed_release TEXT DEFAULT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);
CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source);
CREATE INDEX IF NOT EXISTS idx_chunks_content_type ON chunks(content_type);
CREATE INDEX IF NOT EXISTS idx_chunks_language ON chunks(language);
CREATE INDEX IF NOT EXISTS idx_chunks_category ON chunks(category);
CREATE INDEX IF NOT EXISTS idx_chunks_indexed_release ON chunks(indexed_release);

CREATE TABLE IF NOT EXISTS releases (
    tag TEXT PRIMARY KEY,
    date TEXT NOT NULL,
    commit_hash TEXT NOT NULL,
    previous_tag TEXT,
    commits_count INTEGER,
    files_changed INTEGER,
    kb_files_changed INTEGER,
    kb_impact TEXT,
    changelog_json TEXT,
    appcast_notes TEXT,
    indexed_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_releases_date ON releases(date DESC);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    text,
    id UNINDEXED,
    path UNINDEXED,
    source UNINDEXED,
    content_type UNINDEXED,
    language UNINDEXED,
    indexed_release UNINDEXED
);
"""

CANDIDATE_FACTOR = 3  # over-fetch for post-filtering

_TOKEN = re.compile(r"[A-Za-z0-9_]+")


class StoreError(Exception):
    pass


class EmbeddingModelMismatch(StoreError):
    pass


@dataclass
class SearchHit:
    id: str
    path: str
    source: str
    content_type: str
    language: Optional[str]
    category: Optional[str]
    start_line: int
    end_line: int
    text: str
    score: float
    vector_score: float = 0.0
    text_score: float = 0.0

    @property
    def lines(self) -> str:
        """Inclusive line range for display."""
        return f"{self.start_line}-{max(self.start_line, self.end_line - 1)}"


@dataclass
class WriteReport:
    path: str
    chunks_written: int = 0
    keyword_written: int = 0
    vectors_written: int = 0
    warnings: list[str] = field(default_factory=list)


def build_fts_query(raw: str) -> Optional[str]:
    """OR of the quoted alphanumeric tokens of raw, None if there are none."""
    tokens = _TOKEN.findall(raw or "")
    if not tokens:
        return None
    return " OR ".join(f'"{t}"' for t in tokens)


def bm25_rank_to_score(rank) -> float:
    normalized = abs(rank) if isinstance(rank, (int, float)) and math.isfinite(rank) else 999
    return 1 / (1 + normalized)


class IndexStore:
    def __init__(self, config: Config, vector_index: Optional[VectorIndex] = None):
        self.config = config
        self.vectors: Optional[VectorIndex] = vector_index
        self.keyword_available = False
        self._conn: Optional[sqlite3.Connection] = None
        # one connection shared by the MCP tools and the sync thread;
        # readers and writers both hold this lock
        self._lock = threading.RLock()

    # ── Lifecycle ────────────────────────────────────────

    def open(self) -> "IndexStore":
        if self._conn is not None:
            return self
        db_path = Path(self.config.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(db_path), isolation_level=None, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.executescript(SCHEMA)
        try:
            self._conn.executescript(FTS_SCHEMA)
            self.keyword_available = True
        except sqlite3.Error as e:
            print(f"Warning: FTS5 not available ({e}). Keyword search disabled.", file=sys.stderr)

        if self.vectors is None and self.config.vector_enabled:
            self.vectors = open_vector_index(
                self.config.vectorstore_path, self.config.vector_collection,
            )
        return self

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "IndexStore":
        return self.open()

    def __exit__(self, *exc):
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Index store is not open")
        return self._conn

    @property
    def vector_available(self) -> bool:
        return self.vectors is not None

    # ── Index metadata ───────────────────────────────────

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str):
        with self._lock:
            self.conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def ensure_embedding_model(self, model: str, rebuild: bool = False):
        """Guard against mixing vectors of different embedding models.

        The first model to touch the index is recorded. A different model
        is refused unless rebuild is set, in which case all vectors and
        file hashes are dropped so the next sweep re-embeds everything.
        """
        with self._lock:
            stored = self.get_meta("embedding_model")
            if stored == model:
                return
            if stored is not None and not rebuild:
                raise EmbeddingModelMismatch(
                    f"Index was built with embedding model '{stored}' but '{model}' "
                    f"is configured. Rebuild with `upstream-kb index --force`."
                )
            if stored is not None:
                print(f"Embedding model changed ({stored} -> {model}): dropping vectors and file hashes")
                if self.vectors is not None:
                    self.vectors.reset()
                self.conn.execute("UPDATE files SET hash = ''")
            self.set_meta("embedding_model", model)

    # ── File manifest ────────────────────────────────────

    def get_file_hash(self, path: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT hash FROM files WHERE path = ?", (path,)).fetchone()
        return row["hash"] if row else None

    def all_file_paths(self, exclude_sources: tuple[str, ...] = ()) -> list[str]:
        with self._lock:
            rows = self.conn.execute("SELECT path, source FROM files ORDER BY path").fetchall()
        return [r["path"] for r in rows if r["source"] not in exclude_sources]

    def chunk_ids(self, path: str) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id FROM chunks WHERE path = ? ORDER BY start_line", (path,),
            ).fetchall()
        return [r["id"] for r in rows]

    # ── Writes ───────────────────────────────────────────

    def replace_file(
        self,
        path: str,
        source: str,
        file_hash: str,
        chunks: list[Chunk],
        embeddings: Optional[list[list[float]]] = None,
        release: Optional[str] = None,
    ) -> WriteReport:
        """Atomically replace every chunk of path and record its new hash."""
        if embeddings is not None and len(embeddings) != len(chunks):
            raise StoreError(
                f"{path}: got {len(embeddings)} embeddings for {len(chunks)} chunks"
            )
        report = WriteReport(path=path)
        with self._lock:
            old_ids = set(self.chunk_ids(path))
            new_ids = {c.id for c in chunks}
            written = self._write_vectors(chunks, embeddings, report)

            try:
                self.conn.execute("BEGIN")
                self.conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
                if self.keyword_available:
                    self.conn.execute("DELETE FROM chunks_fts WHERE path = ?", (path,))
                for c in chunks:
                    c.indexed_release = release
                    self._insert_chunk(c)
                    report.chunks_written += 1
                    if self._insert_keyword(c, report):
                        report.keyword_written += 1
                self.conn.execute(
                    """
                    INSERT INTO files (path, source, hash, indexed_at, indexed_release)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        source = excluded.source, hash = excluded.hash,
                        indexed_at = excluded.indexed_at,
                        indexed_release = excluded.indexed_release
                    """,
                    (path, source, file_hash, int(time.time() * 1000), release),
                )
                self.conn.execute("COMMIT")
            except Exception:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                self._discard_vectors([i for i in written if i not in old_ids], report)
                raise

            self._discard_vectors(sorted(old_ids - new_ids), report)
        return report

    def _insert_chunk(self, c: Chunk):
        self.conn.execute(
            """
            INSERT OR REPLACE INTO chunks (
                id, path, source, start_line, end_line, hash, text,
                content_type, language, category, indexed_release
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                c.id, c.path, c.source, c.start_line, c.end_line, c.hash, c.text,
                c.content_type or "unknown", c.language, c.category, c.indexed_release,
            ),
        )

    def _insert_keyword(self, c: Chunk, report: WriteReport) -> bool:
        if not self.keyword_available:
            return False
        try:
            self.conn.execute(
                """
                INSERT INTO chunks_fts (text, id, path, source, content_type, language, indexed_release)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (c.text, c.id, c.path, c.source, c.content_type or "unknown", c.language, c.indexed_release),
            )
            return True
        except sqlite3.Error as e:
            msg = f"keyword index write failed for chunk {c.id} ({c.path}): {e}"
            print(f"Warning: {msg}", file=sys.stderr)
            report.warnings.append(msg)
            return False

    def _write_vectors(
        self, chunks: list[Chunk], embeddings: Optional[list[list[float]]],
        report: WriteReport,
    ) -> list[str]:
        """Upsert vectors, one by one if the batch fails. Returns written ids."""
        if self.vectors is None or not embeddings or not chunks:
            return []
        ids = [c.id for c in chunks]
        try:
            self.vectors.upsert(ids, embeddings)
            report.vectors_written += len(ids)
            return ids
        except Exception:
            pass  # retry one by one to isolate the failing chunk

        written = []
        for chunk_id, emb in zip(ids, embeddings):
            try:
                self.vectors.upsert([chunk_id], [emb])
                written.append(chunk_id)
                report.vectors_written += 1
            except Exception as e:
                msg = f"vector index write failed for chunk {chunk_id}: {e}"
                print(f"Warning: {msg}", file=sys.stderr)
                report.warnings.append(msg)
        return written

    def _discard_vectors(self, ids: list[str], report: Optional[WriteReport] = None):
        if self.vectors is None or not ids:
            return
        try:
            self.vectors.delete(ids)
        except Exception as e:
            msg = f"failed to remove {len(ids)} stale vectors: {e}"
            print(f"Warning: {msg}", file=sys.stderr)
            if report is not None:
                report.warnings.append(msg)

    def delete_path(self, path: str):
        """Remove a file's manifest entry, chunks and both index entries."""
        with self._lock:
            ids = self.chunk_ids(path)
            try:
                self.conn.execute("BEGIN")
                self.conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
                if self.keyword_available:
                    self.conn.execute("DELETE FROM chunks_fts WHERE path = ?", (path,))
                self.conn.execute("DELETE FROM files WHERE path = ?", (path,))
                self.conn.execute("COMMIT")
            except Exception:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise
            self._discard_vectors(ids)

    # ── Search primitives ────────────────────────────────

    def search_keyword(
        self, query: str, limit: int = 10,
        source: Optional[str] = None, content_type: Optional[str] = None,
    ) -> list[SearchHit]:
        """FTS5 BM25 search. Queries without usable tokens return []."""
        fts_query = build_fts_query(query)
        if not fts_query or not self.keyword_available or limit <= 0:
            return []

        sql = "SELECT id, rank FROM chunks_fts WHERE chunks_fts MATCH ?"
        params: list = [fts_query]
        if source:
            sql += " AND source = ?"
            params.append(source)
        if content_type:
            sql += " AND content_type = ?"
            params.append(content_type)
        sql += " ORDER BY rank, id LIMIT ?"
        params.append(limit * CANDIDATE_FACTOR)

        with self._lock:
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Keyword search failed: {e}") from e
            by_id = self._chunks_by_ids([r["id"] for r in rows])

        hits: list[SearchHit] = []
        for r in rows:
            row = by_id.get(r["id"])
            if row is None:
                continue
            hits.append(self._to_hit(row, bm25_rank_to_score(r["rank"])))
            if len(hits) >= limit:
                break
        return hits

    def search_vector(
        self, embedding: list[float], limit: int = 10,
        source: Optional[str] = None, content_type: Optional[str] = None,
    ) -> list[SearchHit]:
        """Nearest chunks by cosine distance. [] without a vector index."""
        if self.vectors is None or limit <= 0 or embedding is None:
            return []
        with self._lock:
            try:
                neighbours = self.vectors.query(embedding, limit * CANDIDATE_FACTOR)
            except Exception as e:
                raise StoreError(f"Vector search failed: {e}") from e
            by_id = self._chunks_by_ids([cid for cid, _ in neighbours])

        hits: list[SearchHit] = []
        for cid, distance in neighbours:
            row = by_id.get(cid)
            if row is None:
                continue
            if source and row["source"] != source:
                continue
            if content_type and row["content_type"] != content_type:
                continue
            hits.append(self._to_hit(row, 1 - distance))
            if len(hits) >= limit:
                break
        return hits

    def _chunks_by_ids(self, ids: list[str]) -> dict[str, sqlite3.Row]:
        out: dict[str, sqlite3.Row] = {}
        for i in range(0, len(ids), 500):
            batch = ids[i : i + 500]
            marks = ",".join("?" * len(batch))
            for row in self.conn.execute(f"SELECT * FROM chunks WHERE id IN ({marks})", batch):
                out[row["id"]] = row
        return out

    @staticmethod
    def _to_hit(row: sqlite3.Row, score: float) -> SearchHit:
        return SearchHit(
            id=row["id"],
            path=row["path"],
            source=row["source"],
            content_type=row["content_type"],
            language=row["language"],
            category=row["category"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            text=row["text"],
            score=score,
        )

    # ── Revision queries ─────────────────────────────────

    def get_chunks_since_release(self, tag: str, limit: int = 100) -> list[Chunk]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM chunks
                WHERE indexed_release >= ?
                ORDER BY indexed_release DESC, path ASC, start_line ASC
                LIMIT ?
                """,
                (tag, limit),
            ).fetchall()
        return [
            Chunk(
                id=r["id"], path=r["path"], source=r["source"],
                start_line=r["start_line"], end_line=r["end_line"],
                text=r["text"], hash=r["hash"], content_type=r["content_type"],
                language=r["language"], category=r["category"],
                indexed_release=r["indexed_release"],
            )
            for r in rows
        ]

    # ── Releases ─────────────────────────────────────────

    def insert_release(self, record: ReleaseRecord):
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO releases (
                    tag, date, commit_hash, previous_tag, commits_count,
                    files_changed, kb_files_changed, kb_impact, changelog_json,
                    appcast_notes, indexed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.tag, record.date, record.commit_hash, record.previous_tag,
                    record.commits_count, record.files_changed, record.kb_files_changed,
                    record.kb_impact, record.changelog.model_dump_json(),
                    record.appcast_notes, int(time.time() * 1000),
                ),
            )

    @staticmethod
    def _to_release(row: sqlite3.Row) -> ReleaseRecord:
        return ReleaseRecord(
            tag=row["tag"],
            commit_hash=row["commit_hash"],
            date=row["date"],
            previous_tag=row["previous_tag"],
            commits_count=row["commits_count"] or 0,
            files_changed=row["files_changed"] or 0,
            kb_files_changed=row["kb_files_changed"] or 0,
            kb_impact=row["kb_impact"] or "unknown",
            changelog=json.loads(row["changelog_json"]) if row["changelog_json"] else {},
            appcast_notes=row["appcast_notes"],
        )

    def get_release(self, tag: str) -> Optional[ReleaseRecord]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM releases WHERE tag = ?", (tag,)).fetchone()
        return self._to_release(row) if row else None

    def get_latest_release(self) -> Optional[ReleaseRecord]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM releases ORDER BY date DESC LIMIT 1").fetchone()
        return self._to_release(row) if row else None

    def get_release_history(self, limit: Optional[int] = 10) -> list[ReleaseRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM releases ORDER BY date DESC LIMIT ?",
                (-1 if limit is None else limit,),
            ).fetchall()
        return [self._to_release(r) for r in rows]

    # ── Stats ────────────────────────────────────────────

    def stats(self) -> dict:
        with self._lock:
            return self._stats()

    def _stats(self) -> dict:
        c = self.conn
        files = c.execute("SELECT COUNT(*) AS n FROM files").fetchone()["n"]
        chunks = c.execute("SELECT COUNT(*) AS n FROM chunks").fetchone()["n"]
        keyword_rows = (
            c.execute("SELECT COUNT(*) AS n FROM chunks_fts").fetchone()["n"]
            if self.keyword_available else 0
        )
        sources = [
            {"source": r["source"], "chunks": r["n"]}
            for r in c.execute(
                "SELECT source, COUNT(*) AS n FROM chunks GROUP BY source ORDER BY source"
            )
        ]
        languages = [
            {
                "language": r["language"] or "null",
                "chunks": r["n"],
                "avg_chars": round(r["avg_size"] or 0),
                "max_chars": r["max_size"] or 0,
            }
            for r in c.execute(
                """
                SELECT language, COUNT(*) AS n, AVG(LENGTH(text)) AS avg_size,
                       MAX(LENGTH(text)) AS max_size
                FROM chunks GROUP BY language ORDER BY n DESC
                """
            )
        ]
        vectors = dimension = None
        if self.vectors is not None:
            try:
                vectors = self.vectors.count()
                dimension = self.vectors.dimension()
            except Exception as e:
                print(f"Warning: vector index stats unavailable: {e}", file=sys.stderr)
        return {
            "files": files,
            "chunks": chunks,
            "keyword_rows": keyword_rows,
            "vectors": vectors,
            "vector_search": self.vectors is not None,
            "vector_dimension": dimension,
            "embedding_model": self.get_meta("embedding_model"),
            "sources": sources,
            "languages": languages,
        }
