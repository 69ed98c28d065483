# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Centralized health/status tracker – shared across indexer runs, release
tracker and MCP tools. Thread-safe, no external dependencies.
"""
import threading
from datetime import datetime, timezone
from typing import Optional

SEARCH_TOOLS = (
    "search_knowledge_base",
    "search_code",
    "search_docs",
    "search_skills",
    "search_releases",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._data = {
            "last_index_at": None,
            "last_index_ok": False,
            "last_index_chunks": 0,
            "last_index_files": 0,
            "last_index_error": None,

            "last_sync_at": None,
            "last_sync_ok": False,
            "last_sync_tag": None,
            "last_sync_upgraded": False,
            "last_sync_error": None,

            "started_at": _now(),

            "searches_total": 0,
            "searches_hits": 0,
            "searches_misses": 0,
            "searches_by_tool": {tool: 0 for tool in SEARCH_TOOLS},
            "last_search_at": None,
        }

    def record_index(self, ok: bool, chunks: int = 0, files: int = 0, error: Optional[str] = None):
        with self._lock:
            self._data["last_index_at"] = _now()
            self._data["last_index_ok"] = ok
            self._data["last_index_chunks"] = chunks
            self._data["last_index_files"] = files
            self._data["last_index_error"] = error

    def record_sync(
        self, ok: bool, tag: Optional[str] = None, upgraded: bool = False,
        error: Optional[str] = None,
    ):
        with self._lock:
            self._data["last_sync_at"] = _now()
            self._data["last_sync_ok"] = ok
            if tag is not None:
                self._data["last_sync_tag"] = tag
            self._data["last_sync_upgraded"] = upgraded
            self._data["last_sync_error"] = error

    def record_search(self, tool: str, hit: bool):
        with self._lock:
            self._data["searches_total"] += 1
            if hit:
                self._data["searches_hits"] += 1
            else:
                self._data["searches_misses"] += 1
            by_tool = self._data["searches_by_tool"]
            if tool in by_tool:
                by_tool[tool] += 1
            self._data["last_search_at"] = _now()

    @property
    def status(self) -> dict:
        with self._lock:
            d = dict(self._data)
            d["searches_by_tool"] = dict(self._data["searches_by_tool"])
            return d

    @property
    def is_healthy(self) -> bool:
        with self._lock:
            return self._data["last_index_ok"]
