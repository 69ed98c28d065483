# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
MCP Server factory – creates a FastMCP instance with tools that share the
store/searcher/indexer of the main process.

Tools:
  - search_knowledge_base: Hybrid search across everything (optional filters)
  - search_code / search_docs / search_skills: Search one content type
  - search_releases: Search release changelogs only
  - get_index_stats: Index statistics
  - get_latest_release / get_release_history: Tracked upstream releases
  - get_changes_since_release: Chunks indexed at or after a release
  - reindex: Incremental (or forced) re-index
"""
import contextlib
import sys
from typing import Optional

import uvicorn
from mcp.server.fastmcp import FastMCP

from .config import Config
from .embedder import EmbeddingError
from .health import HealthTracker
from .indexer import Indexer
from .releases import ReleaseRecord, format_changelog_markdown
from .search import Searcher
from .store import IndexStore, SearchHit, StoreError

SNIPPET_CHARS = 1500


def format_hits(hits: list[SearchHit], header: Optional[str] = None) -> str:
    output = [header] if header else []
    for h in hits:
        text = h.text if len(h.text) <= SNIPPET_CHARS else h.text[:SNIPPET_CHARS] + "\n..."
        output.append(
            f"**{h.path}:{h.lines}** ({h.source}, {h.content_type}, score {h.score:.3f})\n\n"
            f"{text}\n\n---"
        )
    return "\n".join(output)


def format_release_line(r: ReleaseRecord) -> str:
    c = r.changelog
    counts = (
        f"{len(c.security)} security, {len(c.breaking)} breaking, "
        f"{len(c.features)} features, {len(c.fixes)} fixes"
    )
    return (
        f"- **{r.tag}** ({r.day}): {r.commits_count} commits, "
        f"{r.kb_files_changed} KB files, impact {r.kb_impact} ({counts})"
    )


def create_mcp_server(
    config: Config,
    store: IndexStore,
    searcher: Searcher,
    indexer: Indexer,
    health: Optional[HealthTracker] = None,
) -> FastMCP:
    """Factory: returns a configured FastMCP server sharing the given state."""

    mcp = FastMCP(
        "upstream-kb",
        instructions=(
            "Hybrid (semantic + keyword) search over the upstream source tree: "
            "docs, code, config schemas, skills and release changelogs.\n\n"
            "WORKFLOW for the agent:\n"
            "1. search_docs() to learn how a feature is meant to work\n"
            "2. search_code() to find the implementation\n"
            "3. get_latest_release() / get_changes_since_release() to check what moved\n"
            "4. Prefer 2-3 targeted searches over one vague query"
        ),
    )

    def _search(
        tool: str, query: str, top_k: int,
        source: Optional[str] = None, content_type: Optional[str] = None,
    ) -> str:
        try:
            hits = searcher.search(query, limit=top_k, source=source, content_type=content_type)
        except (EmbeddingError, StoreError) as e:
            return f"Search failed: {e}"
        if health:
            health.record_search(tool, bool(hits))
        if not hits:
            return "No results found. Try a different or more specific query."
        return format_hits(hits, f"Found {len(hits)} results for {query!r}\n")

    @mcp.tool()
    def search_knowledge_base(
        query: str, top_k: int = 8,
        source: Optional[str] = None, content_type: Optional[str] = None,
    ) -> str:
        """Hybrid search over the whole upstream knowledge base.

        Args:
            query: What you want to know (natural language or identifiers)
            top_k: Number of results (default: 8)
            source: Optional source filter, e.g. "docs", "gateway", "releases"
            content_type: Optional filter: "docs", "skill", "code", "config"
        """
        return _search("search_knowledge_base", query, top_k, source, content_type)

    @mcp.tool()
    def search_code(query: str, top_k: int = 8) -> str:
        """Search implementation code only (TypeScript / JavaScript / Python)."""
        return _search("search_code", query, top_k, content_type="code")

    @mcp.tool()
    def search_docs(query: str, top_k: int = 8) -> str:
        """Search documentation only."""
        return _search("search_docs", query, top_k, content_type="docs")

    @mcp.tool()
    def search_skills(query: str, top_k: int = 8) -> str:
        """Search skill definitions (SKILL.md) only."""
        return _search("search_skills", query, top_k, content_type="skill")

    @mcp.tool()
    def search_releases(query: str, top_k: int = 5) -> str:
        """Search upstream release changelogs."""
        return _search("search_releases", query, top_k, source=config.release_source)

    @mcp.tool()
    def get_index_stats() -> str:
        """Show statistics about the current index."""
        s = store.stats()
        sources = "\n".join(
            f"  - {x['source']}: {x['chunks']} chunks" for x in s["sources"]
        ) or "  (empty)"
        languages = "\n".join(
            f"  - {x['language']}: {x['chunks']} chunks (avg {x['avg_chars']} chars)"
            for x in s["languages"]
        ) or "  (empty)"
        vectors = s["vectors"] if s["vector_search"] else "disabled"
        return (
            f"**Index Statistics**\n\n"
            f"- **Files:** {s['files']}\n"
            f"- **Chunks:** {s['chunks']}\n"
            f"- **Keyword rows:** {s['keyword_rows']}\n"
            f"- **Vectors:** {vectors}\n"
            f"- **Embedding:** {config.embedding_provider} ({s['embedding_model'] or config.embedding_model})\n"
            f"- **Upstream:** {config.upstream_dir}\n\n"
            f"**Sources:**\n{sources}\n\n"
            f"**Languages:**\n{languages}"
        )

    @mcp.tool()
    def get_latest_release() -> str:
        """Most recent tracked upstream release with its changelog."""
        r = store.get_latest_release()
        if r is None:
            return "No releases tracked yet. Run `upstream-kb sync` first."
        return f"{format_changelog_markdown(r)}\nCommit: {r.commit_hash}"

    @mcp.tool()
    def get_release_history(limit: int = 10) -> str:
        """Recent tracked upstream releases, newest first."""
        releases = store.get_release_history(limit)
        if not releases:
            return "No releases tracked yet."
        return "**Release History**\n\n" + "\n".join(format_release_line(r) for r in releases)

    @mcp.tool()
    def get_changes_since_release(tag: str, limit: int = 50) -> str:
        """Chunks indexed at or after the given release tag (e.g. "v2026.2.1")."""
        chunks = store.get_chunks_since_release(tag, limit)
        if not chunks:
            return f"No chunks indexed since {tag}."
        lines = [f"{len(chunks)} chunks indexed since {tag}\n"]
        for c in chunks:
            lines.append(
                f"- [{c.indexed_release}] {c.path}:{c.lines} "
                f"({c.source}, {c.content_type})"
            )
        return "\n".join(lines)

    @mcp.tool()
    def reindex(force: bool = False) -> str:
        """Re-index the upstream tree. Incremental by default (only changed files).
        Set force=True to re-embed everything (required after a model change).

        Args:
            force: If True, re-embed all files regardless of changes (default: False)
        """
        try:
            with contextlib.redirect_stdout(sys.stderr):
                report = indexer.index_all(force=force)
        except (EmbeddingError, StoreError) as e:
            if health:
                health.record_index(ok=False, error=str(e))
            return f"Re-index failed: {e}"
        if health:
            health.record_index(
                ok=not report.failed, chunks=report.chunks, files=report.files,
                error=f"{len(report.failed)} files failed" if report.failed else None,
            )
        return (
            f"Re-index complete!\n"
            f"  Files: {report.files} ({report.new} new, {report.updated} updated, "
            f"{report.skipped} skipped)\n"
            f"  Deleted: {report.deleted}\n"
            f"  Failed: {len(report.failed)}\n"
            f"  Chunks written: {report.chunks}\n"
            f"  Warnings: {len(report.warnings)}"
        )

    return mcp


def run_mcp_server(mcp_server: FastMCP, config: Config):
    if config.transport == "sse":
        uvicorn.run(
            mcp_server.sse_app(), host=config.sse_host, port=config.sse_port,
            log_level="warning",
        )
    else:
        mcp_server.run(transport="stdio")
