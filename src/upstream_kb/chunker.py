# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
File content -> line-based chunks with overlap.

Boundaries:
- code (typescript / javascript / python): break only at a declaration
  (function, class, interface/type/enum, const-assigned function)
- everything else: break at a markdown heading or a blank line
- any file: force a break once the chunk exceeds 1.2x the size budget

Chunk IDs are content-based (sha256 of the header + text, plus the start
line) so re-chunking an unchanged file yields the same IDs.
"""
import hashlib
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

CHUNK_MAX_CHARS = 1600       # ~400 tokens
CODE_CHUNK_MAX_CHARS = 1200  # code is denser per character
CHUNK_OVERLAP_CHARS = 200    # ~50 tokens
HARD_LIMIT_FACTOR = 1.2

CONTENT_TYPES = ["docs", "skill", "code", "config", "unknown"]

LANGUAGES: dict[str, str] = {
    ".md": "markdown",
    ".mdx": "markdown",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
}

CODE_LANGUAGES = {"typescript", "javascript", "python"}

# Substrings marking a code file as a schema / type definition module
SCHEMA_MARKERS = ("zod-schema", "types.", "schema.")

CATEGORIES: dict[str, str] = {
    "docs": "documentation",
    "config": "config-schema",
    "gateway": "core",
    "telegram": "channels",
    "channels": "channels",
    "skills": "skills",
    "skill-examples": "skills",
    "agents": "core",
    "memory": "core",
    "infra": "infrastructure",
    "security": "security",
    "hooks": "automation",
    "sessions": "core",
    "providers": "integrations",
    "plugins": "plugins",
    "releases": "release-notes",
}

_HEADING = re.compile(r"^#{1,4}\s")
_DECLARATIONS = [
    re.compile(r"^(export\s+)?(default\s+)?(async\s+)?function\*?\s+\w+"),
    re.compile(r"^(export\s+)?(default\s+)?(abstract\s+)?class\s+\w+"),
    re.compile(r"^(export\s+)?(declare\s+)?(interface|type|enum)\s+\w+"),
    re.compile(r"^(export\s+)?const\s+\w+\s*=\s*(async\s+)?\("),
    re.compile(r"^(async\s+)?def\s+\w+"),
]


@dataclass
class Chunk:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int  # exclusive
    text: str
    hash: str
    content_type: str
    language: Optional[str]
    category: str
    indexed_release: Optional[str] = None

    @property
    def lines(self) -> str:
        """Inclusive line range for display."""
        return f"{self.start_line}-{max(self.start_line, self.end_line - 1)}"


def derive_metadata(rel_path: str, source: str) -> dict:
    """Classify a file for filtering: content type, language and category."""
    p = rel_path.replace("\\", "/")
    category = CATEGORIES.get(source, source)
    language = LANGUAGES.get(PurePosixPath(p).suffix.lower())
    if category == "release-notes":
        # rendered changelogs, path is releases/<tag>
        language = "markdown"

    if language == "markdown":
        content_type = "skill" if "skills/" in p else "docs"
    elif language in CODE_LANGUAGES:
        name = PurePosixPath(p).name
        content_type = "config" if any(m in name for m in SCHEMA_MARKERS) else "code"
    elif language in ("json", "yaml"):
        content_type = "config"
    else:
        content_type = "unknown"

    return {
        "content_type": content_type,
        "language": language,
        "category": category,
    }


def is_declaration(line: str) -> bool:
    return any(p.match(line) for p in _DECLARATIONS)


def is_weak_boundary(line: str) -> bool:
    return bool(_HEADING.match(line)) or line.strip() == ""


def make_chunk_id(text: str, start_line: int) -> tuple[str, str]:
    """Return (id, hash) for a chunk text starting at start_line."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{digest[:12]}-{start_line}", digest


def chunk_header(rel_path: str, start_line: int, end_line: int) -> str:
    return f"// File: {rel_path} (lines {start_line}-{end_line - 1})"


def chunk_file(
    content: str,
    rel_path: str,
    source: str,
    max_chars: int = CHUNK_MAX_CHARS,
    code_max_chars: int = CODE_CHUNK_MAX_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> list[Chunk]:
    """Split a file into overlapping chunks at meaningful boundaries.

    Lines are never split: a single line longer than the budget becomes an
    oversized chunk of its own.
    """
    if not content:
        return []

    lines = content.split("\n")
    meta = derive_metadata(rel_path, source)
    is_code = meta["language"] in CODE_LANGUAGES
    budget = code_max_chars if is_code else max_chars

    chunks: list[Chunk] = []
    chunk_lines: list[str] = []
    chunk_start = 1
    char_count = 0

    for i, line in enumerate(lines):
        line_len = len(line) + 1

        if char_count + line_len > budget and chunk_lines:
            if is_code:
                should_break = is_declaration(line)
            else:
                should_break = is_weak_boundary(line)
            if should_break or char_count > budget * HARD_LIMIT_FACTOR:
                # current line i (0-based) is line i + 1, so the chunk ends before it
                chunks.append(_build_chunk(chunk_lines, chunk_start, i + 1, rel_path, source, meta))
                chunk_lines = _overlap(chunk_lines, overlap_chars)
                chunk_start = i + 1 - len(chunk_lines)
                char_count = sum(len(l) + 1 for l in chunk_lines)

        chunk_lines.append(line)
        char_count += line_len

    if chunk_lines:
        chunks.append(_build_chunk(chunk_lines, chunk_start, len(lines) + 1, rel_path, source, meta))

    return chunks


def _overlap(chunk_lines: list[str], overlap_chars: int) -> list[str]:
    """Trailing lines of the emitted chunk that fit in the overlap budget."""
    total = 0
    start = len(chunk_lines)
    for j in range(len(chunk_lines) - 1, -1, -1):
        total += len(chunk_lines[j]) + 1
        if total > overlap_chars:
            break
        start = j
    return chunk_lines[start:]


def _build_chunk(
    lines: list[str], start_line: int, end_line: int,
    rel_path: str, source: str, meta: dict,
) -> Chunk:
    text = chunk_header(rel_path, start_line, end_line) + "\n" + "\n".join(lines)
    chunk_id, digest = make_chunk_id(text, start_line)
    return Chunk(
        id=chunk_id,
        path=rel_path,
        source=source,
        start_line=start_line,
        end_line=end_line,
        text=text,
        hash=digest,
        content_type=meta["content_type"],
        language=meta["language"],
        category=meta["category"],
    )


def body_lines(chunk: Chunk) -> list[str]:
    """The chunk's source lines, without the synthetic header."""
    return chunk.text.split("\n")[1:]
