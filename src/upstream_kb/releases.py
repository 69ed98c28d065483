# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Release metadata from the upstream git history: tag info, categorized
commit log, appcast notes and the KB impact of a release. The result is
stored in the releases table and rendered to markdown so changelogs are
searchable like any other document.

Git failures never raise: they degrade to placeholder values with a warning.
"""
import re
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class Changelog(BaseModel):
    security: list[str] = []
    breaking: list[str] = []
    features: list[str] = []
    fixes: list[str] = []
    other: list[str] = []


class ReleaseRecord(BaseModel):
    tag: str
    commit_hash: str = "unknown"
    date: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    previous_tag: Optional[str] = None
    commits_count: int = 0
    files_changed: int = 0
    kb_files_changed: int = 0
    kb_impact: str = "unknown"
    changelog: Changelog = Field(default_factory=Changelog)
    appcast_notes: Optional[str] = None

    @property
    def day(self) -> str:
        return self.date.split("T")[0]


def _git(repo_dir: Path, *args: str, timeout: int = 30) -> str:
    result = subprocess.run(
        ["git", "-C", str(repo_dir), *args],
        capture_output=True, text=True, timeout=timeout, check=True,
    )
    return result.stdout


def extract_release_metadata(
    tag: str, previous_tag: Optional[str], repo_dir: Path,
    kb_prefixes: list[str],
) -> ReleaseRecord:
    commit, date = get_tag_info(tag, repo_dir)
    commits = get_commit_log(previous_tag, tag, repo_dir) if previous_tag else []
    impact = calculate_kb_impact(previous_tag, tag, repo_dir, kb_prefixes) if previous_tag else {}
    return ReleaseRecord(
        tag=tag,
        commit_hash=commit,
        date=date,
        previous_tag=previous_tag,
        commits_count=len(commits),
        files_changed=impact.get("total_files", 0),
        kb_files_changed=impact.get("kb_files", 0),
        kb_impact=impact.get("impact_level", "unknown"),
        changelog=categorize_commits(commits),
        appcast_notes=extract_appcast_notes(tag, repo_dir),
    )


def get_tag_info(tag: str, repo_dir: Path) -> tuple[str, str]:
    """(commit hash, ISO author date) of a tag."""
    try:
        out = _git(repo_dir, "show", tag, "--format=%H|%aI", "--no-patch").strip()
        commit, date = out.splitlines()[-1].split("|")[:2]
        return commit, date
    except Exception as e:
        print(f"Warning: failed to get tag info for {tag}: {e}", file=sys.stderr)
        return "unknown", datetime.now(timezone.utc).isoformat()


def get_commit_log(from_tag: str, to_tag: str, repo_dir: Path) -> list[str]:
    """One-line commit messages (with abbreviated hash) between two tags."""
    try:
        out = _git(repo_dir, "log", f"{from_tag}..{to_tag}", "--oneline")
        return [line for line in out.strip().split("\n") if line]
    except Exception as e:
        print(f"Warning: failed to get commit log: {e}", file=sys.stderr)
        return []


def categorize_commits(commits: list[str]) -> Changelog:
    changelog = Changelog()
    for commit in commits:
        message = commit.split(" ", 1)[1] if " " in commit else commit
        if re.search(r"^security|security:", message, re.IGNORECASE):
            changelog.security.append(message)
        elif re.search(r"BREAKING|breaking change", message, re.IGNORECASE):
            changelog.breaking.append(message)
        elif re.match(r"^feat[:(]", message, re.IGNORECASE):
            changelog.features.append(message)
        elif re.match(r"^fix[:(]", message, re.IGNORECASE):
            changelog.fixes.append(message)
        else:
            changelog.other.append(message)
    return changelog


def extract_appcast_notes(tag: str, repo_dir: Path) -> Optional[str]:
    appcast = Path(repo_dir) / "appcast.xml"
    if not appcast.exists():
        return None
    try:
        content = appcast.read_text(encoding="utf-8", errors="ignore")
        version = re.escape(tag.removeprefix("v"))
        match = re.search(
            rf"<title>{version}</title>.*?<description><!\[CDATA\[(.*?)\]\]></description>",
            content, re.DOTALL,
        )
        return match.group(1).strip() if match else None
    except Exception as e:
        print(f"Warning: failed to extract appcast notes: {e}", file=sys.stderr)
        return None


def classify_impact(kb_files: int) -> str:
    if kb_files > 20:
        return "high"
    if kb_files >= 5:
        return "medium"
    if kb_files > 0:
        return "low"
    return "none"


def changed_files(from_ref: str, to_ref: str, repo_dir: Path) -> list[str]:
    out = _git(repo_dir, "diff", "--name-only", f"{from_ref}..{to_ref}")
    return [f for f in out.strip().split("\n") if f]


def calculate_kb_impact(
    from_tag: str, to_tag: str, repo_dir: Path, kb_prefixes: list[str],
) -> dict:
    try:
        files = changed_files(from_tag, to_tag, repo_dir)
    except Exception as e:
        print(f"Warning: failed to calculate KB impact: {e}", file=sys.stderr)
        return {
            "total_files": 0, "docs_changed": 0, "code_changed": 0,
            "kb_files": 0, "impact_level": "unknown",
        }
    kb_files = sum(1 for f in files if f.startswith(tuple(kb_prefixes)))
    return {
        "total_files": len(files),
        "docs_changed": sum(1 for f in files if f.startswith("docs/")),
        "code_changed": sum(1 for f in files if f.startswith("src/")),
        "kb_files": kb_files,
        "impact_level": classify_impact(kb_files),
    }


def detect_current_release(repo_dir: Path) -> Optional[str]:
    """Exact tag of HEAD, else its short commit hash, else None."""
    for args in (("describe", "--tags", "--exact-match"), ("rev-parse", "--short", "HEAD")):
        try:
            out = _git(repo_dir, *args, timeout=10).strip()
            if out:
                return out
        except Exception:
            continue
    return None


def format_changelog_markdown(record: ReleaseRecord) -> str:
    """Render a release as searchable markdown."""
    md = f"# Release {record.tag} ({record.day})\n\n"
    if record.previous_tag:
        md += f"{record.commits_count} commits since {record.previous_tag}\n\n"

    sections = [
        ("Security Fixes", record.changelog.security),
        ("Breaking Changes", record.changelog.breaking),
        ("Features", record.changelog.features),
        ("Bug Fixes", record.changelog.fixes),
    ]
    # "other" is mostly chores; only worth listing when short
    if 0 < len(record.changelog.other) <= 10:
        sections.append(("Other Changes", record.changelog.other))

    for title, commits in sections:
        if not commits:
            continue
        md += f"## {title}\n\n"
        md += "".join(f"- {c}\n" for c in commits)
        md += "\n"

    md += "## Knowledge Base Impact\n\n"
    md += f"- {record.kb_files_changed} KB-relevant files changed\n"
    md += f"- Impact level: {record.kb_impact}\n"

    if record.appcast_notes:
        md += f"\n## Release Notes\n\n{record.appcast_notes}\n"
    return md
