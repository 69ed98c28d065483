# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Release tracker – keeps the upstream checkout on the newest release tag.

One sync:
  fetch tags -> newest tag matching the pattern -> already there? done
  -> stash local changes -> checkout tag -> no KB-relevant path changed?
  done -> store release metadata -> reindex with the tag -> sync log line

Can run once (CLI / cron) or as a background daemon thread.
"""
import contextlib
import subprocess
import sys
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import Config
from .health import HealthTracker
from .indexer import Indexer
from .releases import changed_files, extract_release_metadata
from .store import IndexStore

SYNC_LOG_MAX_LINES = 1000


class SyncError(Exception):
    pass


@dataclass
class SyncResult:
    status: str  # up-to-date | skipped | upgraded
    latest_tag: str
    previous_tag: Optional[str] = None
    changed_files: int = 0
    relevant_files: int = 0
    index: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


def append_sync_log(log_path: Path, message: str, max_lines: int = SYNC_LOG_MAX_LINES):
    """Append a timestamped line, keeping only the last max_lines lines."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    with log_path.open("a", encoding="utf-8") as fh:
        fh.write(f"{ts} | {message}\n")
    lines = log_path.read_text(encoding="utf-8").splitlines(keepends=True)
    if len(lines) > max_lines:
        log_path.write_text("".join(lines[-max_lines:]), encoding="utf-8")


class ReleaseSyncer:
    def __init__(
        self,
        config: Config,
        indexer: Indexer,
        store: IndexStore,
        health: Optional[HealthTracker] = None,
    ):
        self.config = config
        self.indexer = indexer
        self.store = store
        self.health = health
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def repo_dir(self) -> Path:
        return Path(self.config.upstream_dir)

    def _git(self, *args: str, timeout: int = 30, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", "-C", str(self.repo_dir), *args],
            capture_output=True, text=True, timeout=timeout, check=check,
        )

    # ── Git state ────────────────────────────────────

    def fetch_tags(self):
        try:
            self._git("fetch", self.config.git_remote, "--tags", "--quiet", timeout=120)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            # stale local tags are still usable
            print(f"Warning: git fetch failed: {e}", file=sys.stderr)

    def latest_tag(self) -> Optional[str]:
        out = self._git(
            "tag", "--list", self.config.release_tag_pattern, "--sort=-v:refname",
        ).stdout
        tags = [t.strip() for t in out.splitlines() if t.strip()]
        return tags[0] if tags else None

    def current_tag(self) -> Optional[str]:
        result = self._git("describe", "--tags", "--exact-match", check=False, timeout=10)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _stash_if_dirty(self, target: str):
        status = self._git("status", "--porcelain", "--untracked-files=no").stdout.strip()
        if status:
            print("Stashing local changes...")
            self._git("stash", "push", "-m", f"upstream-kb: stash before {target}", "--quiet")

    # ── Sync ─────────────────────────────────────────

    def sync_once(self) -> SyncResult:
        if not (self.repo_dir / ".git").exists():
            raise SyncError(f"{self.repo_dir} is not a git repository")

        self.fetch_tags()
        latest = self.latest_tag()
        if not latest:
            raise SyncError(f"No tags matching '{self.config.release_tag_pattern}' found")

        current = self.current_tag()
        if current == latest:
            print(f"Already on latest release ({latest})")
            return SyncResult(status="up-to-date", latest_tag=latest, previous_tag=current)

        print(f"Upgrading {current or 'none'} -> {latest}")
        try:
            changed = changed_files("HEAD", latest, self.repo_dir)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            print(f"Warning: failed to diff against {latest}: {e}", file=sys.stderr)
            changed = []
        relevant = [f for f in changed if f.startswith(tuple(self.config.kb_prefixes))]

        self._stash_if_dirty(latest)
        self._git("checkout", latest, "--quiet")

        result = SyncResult(
            status="skipped", latest_tag=latest, previous_tag=current,
            changed_files=len(changed), relevant_files=len(relevant),
        )
        if not relevant:
            print("No KB-relevant files changed, skipping reindex")
            return result

        print(f"{len(relevant)} KB-relevant file(s) changed")
        record = extract_release_metadata(latest, current, self.repo_dir, self.config.kb_prefixes)
        self.store.insert_release(record)

        report = self.indexer.index_all(release=latest)
        if self.health:
            self.health.record_index(
                ok=not report.failed, chunks=report.chunks, files=report.files,
                error=f"{len(report.failed)} files failed" if report.failed else None,
            )
        result.status = "upgraded"
        result.index = report.to_dict()

        commits = record.commits_count if current else "?"
        append_sync_log(
            Path(self.config.sync_log_path),
            f"{current or 'none'} -> {latest} | {commits} commits | "
            f"{len(relevant)} KB files | reindexed",
        )
        print(f"KB upgraded to {latest}")
        return result

    # ── Background loop ──────────────────────────────

    def start(self):
        if self.config.sync_interval <= 0:
            print("Sync interval = 0, release tracking disabled")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._sync_loop, daemon=True)
        self._thread.start()
        print(f"Release tracker started (every {self.config.sync_interval}s)")

    def stop(self):
        self._stop.set()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def _sync_loop(self):
        while not self._stop.wait(self.config.sync_interval):
            # stdout may carry the MCP stdio transport
            with contextlib.redirect_stdout(sys.stderr):
                self.run_once_safely()

    def run_once_safely(self) -> Optional[SyncResult]:
        """sync_once() with errors recorded instead of raised."""
        try:
            result = self.sync_once()
        except Exception as e:
            if self.health:
                self.health.record_sync(ok=False, error=str(e))
            print(f"Warning: release sync error: {e}", file=sys.stderr)
            return None
        if self.health:
            self.health.record_sync(
                ok=True, tag=result.latest_tag, upgraded=result.status == "upgraded",
            )
        return result
