"""Tests for the line-based chunker."""
import pytest

from upstream_kb.chunker import (
    CHUNK_OVERLAP_CHARS,
    CODE_CHUNK_MAX_CHARS,
    HARD_LIMIT_FACTOR,
    body_lines,
    chunk_file,
    derive_metadata,
    is_declaration,
    make_chunk_id,
)


def _line(i: int, width: int = 99) -> str:
    prefix = f"line {i:03d} "
    return prefix + "x" * (width - len(prefix))


def _covered(chunks) -> set[int]:
    covered = set()
    for c in chunks:
        covered.update(range(c.start_line, c.end_line))
    return covered


def _markdown(n_lines: int) -> str:
    return "\n".join(_line(i) for i in range(1, n_lines + 1))


class TestEdgeCases:
    def test_empty_content_no_chunks(self):
        assert chunk_file("", "docs/empty.md", "docs") == []

    def test_small_file_single_chunk(self):
        chunks = chunk_file("# Title\n\nHello.", "docs/a.md", "docs")
        assert len(chunks) == 1
        assert chunks[0].start_line == 1
        assert chunks[0].end_line == 4

    def test_header_line(self):
        chunk = chunk_file("# Title\n\nHello.", "docs/a.md", "docs")[0]
        assert chunk.text.split("\n")[0] == "// File: docs/a.md (lines 1-3)"
        assert body_lines(chunk) == ["# Title", "", "Hello."]

    def test_oversized_line_never_split(self):
        giant = "y" * 5000
        content = f"intro\n{giant}\nafter"
        chunks = chunk_file(content, "docs/big.md", "docs")
        assert any(giant in body_lines(c) for c in chunks)
        for c in chunks:
            for line in body_lines(c):
                assert line in content.split("\n")
        assert _covered(chunks) == {1, 2, 3}


class TestCoverage:
    @pytest.mark.parametrize("n_lines", [1, 10, 40, 120])
    def test_every_line_covered(self, n_lines):
        lines = [_line(i) if i % 7 else "" for i in range(1, n_lines + 1)]
        chunks = chunk_file("\n".join(lines), "docs/long.md", "docs")
        assert _covered(chunks) == set(range(1, n_lines + 1))

    def test_body_matches_line_range(self):
        lines = [_line(i) if i % 5 else "" for i in range(1, 80)]
        chunks = chunk_file("\n".join(lines), "docs/long.md", "docs")
        for c in chunks:
            assert body_lines(c) == lines[c.start_line - 1 : c.end_line - 1]

    def test_overlap_bound(self):
        lines = [_line(i, width=60) if i % 4 else "" for i in range(1, 150)]
        chunks = chunk_file("\n".join(lines), "docs/long.md", "docs")
        assert len(chunks) > 2
        for prev, nxt in zip(chunks, chunks[1:]):
            shared = lines[nxt.start_line - 1 : prev.end_line - 1]
            assert sum(len(l) + 1 for l in shared) <= CHUNK_OVERLAP_CHARS
            assert nxt.start_line <= prev.end_line


class TestBoundaries:
    def test_markdown_splits_at_heading(self):
        # 16 lines of 100 chars put the heading at character 1600
        first = [_line(i) for i in range(1, 17)]
        second = [_line(i) for i in range(18, 31)]
        content = "\n".join(first + ["## Second part"] + second)
        assert 2900 < len(content) < 3100

        chunks = chunk_file(content, "docs/guide.md", "docs")

        assert len(chunks) == 2
        assert chunks[0].start_line == 1
        assert chunks[0].end_line == 17
        assert "## Second part" not in body_lines(chunks[0])
        # two trailing 100-char lines fit the 200-char overlap
        assert chunks[1].start_line == 15
        assert body_lines(chunks[1])[2] == "## Second part"
        assert _covered(chunks) == set(range(1, 31))

    def test_code_breaks_at_declarations(self):
        parts = []
        for n in range(10):
            parts.append(f"export function handler{n}(req, res) {{")
            parts.extend(f"  const value{k} = compute(req, {k}); // step" for k in range(7))
            parts.append("}")
        content = "\n".join(parts)
        lines = content.split("\n")

        chunks = chunk_file(content, "src/gateway/handlers.ts", "gateway")

        assert len(chunks) > 1
        for c in chunks[:-1]:
            assert is_declaration(lines[c.end_line - 1])

    def test_code_ignores_blank_lines_and_headings(self):
        parts = []
        for n in range(60):
            parts.append(f"  registry.set('key{n}', build({n}));")
            parts.append("")
        content = "export function build(n) {\n" + "\n".join(parts) + "\n}"
        lines = content.split("\n")
        chunks = chunk_file(content, "src/gateway/registry.ts", "gateway")
        for c in chunks[:-1]:
            # no declaration inside: only the hard limit can cut
            assert not is_declaration(lines[c.end_line - 1])
            body = body_lines(c)
            size = sum(len(l) + 1 for l in body)
            assert size > CODE_CHUNK_MAX_CHARS * HARD_LIMIT_FACTOR

    def test_hard_limit_bounds_chunk_size(self):
        content = "\n".join(f"  total += items[{i}].price * rate;" for i in range(300))
        chunks = chunk_file(content, "src/gateway/sum.ts", "gateway")
        longest = max(len(l) for l in content.split("\n")) + 1
        assert len(chunks) > 1
        for c in chunks:
            size = sum(len(l) + 1 for l in body_lines(c))
            assert size <= CODE_CHUNK_MAX_CHARS * HARD_LIMIT_FACTOR + longest


class TestChunkIds:
    def test_deterministic(self):
        content = _markdown(60)
        a = chunk_file(content, "docs/a.md", "docs")
        b = chunk_file(content, "docs/a.md", "docs")
        assert [c.id for c in a] == [c.id for c in b]

    def test_id_format(self):
        chunk = chunk_file("# Hi", "docs/a.md", "docs")[0]
        chunk_id, digest = make_chunk_id(chunk.text, 1)
        assert chunk.id == chunk_id == f"{digest[:12]}-1"
        assert chunk.hash == digest

    def test_edit_changes_only_affected_chunks(self):
        lines = [_line(i) if i % 6 else "" for i in range(1, 100)]
        before = chunk_file("\n".join(lines), "docs/a.md", "docs")
        lines[-2] = "edited near the end"
        after = chunk_file("\n".join(lines), "docs/a.md", "docs")
        assert before[0].id == after[0].id
        assert before[-1].id != after[-1].id


class TestMetadata:
    @pytest.mark.parametrize("path,source,content_type,language,category", [
        ("docs/gateway.md", "docs", "docs", "markdown", "documentation"),
        ("skills/weather/SKILL.md", "skills", "skill", "markdown", "skills"),
        ("src/gateway/server.ts", "gateway", "code", "typescript", "core"),
        ("src/config/types.gateway.ts", "config", "config", "typescript", "config-schema"),
        ("src/config/zod-schema.core.ts", "config", "config", "typescript", "config-schema"),
        ("src/infra/net/fetch.js", "infra", "code", "javascript", "infrastructure"),
        ("tools/gen.py", "tools", "code", "python", "tools"),
        ("config/app.yaml", "config", "config", "yaml", "config-schema"),
        ("package.json", "misc", "config", "json", "misc"),
        ("LICENSE", "misc", "unknown", None, "misc"),
        ("releases/v2026.2.1", "releases", "docs", "markdown", "release-notes"),
    ])
    def test_derive_metadata(self, path, source, content_type, language, category):
        meta = derive_metadata(path, source)
        assert meta == {"content_type": content_type, "language": language, "category": category}

    def test_chunks_carry_metadata(self):
        chunk = chunk_file("export const x = 1;", "src/gateway/x.ts", "gateway")[0]
        assert chunk.content_type == "code"
        assert chunk.language == "typescript"
        assert chunk.category == "core"
        assert chunk.source == "gateway"
        assert chunk.indexed_release is None
