# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Command line entry point: upstream-kb <command> / python -m upstream_kb

  index            incremental (or --force) index of the upstream tree
  query            hybrid search (human or --json output)
  stats            index statistics as JSON
  latest-release   most recent tracked release
  release-history  recent tracked releases
  since-release    chunks indexed at or after a release tag
  sync             move the upstream checkout to the newest release and reindex
  serve            run the MCP server (stdio or SSE)
  eval / compare   retrieval quality evaluation and comparison of runs
"""
import argparse
import contextlib
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .config import Config
from .embedder import EmbeddingClient, EmbeddingError
from .health import HealthTracker
from .indexer import Indexer
from .search import Searcher
from .store import IndexStore, SearchHit, StoreError
from .sync import ReleaseSyncer, SyncError


class App:
    """Wires config, store, embedder, searcher and indexer for one process."""

    def __init__(self, config: Config):
        self.config = config
        self.store = IndexStore(config).open()
        self.embedder = EmbeddingClient(config)
        self.searcher = Searcher(self.store, self.embedder, config)
        self.indexer = Indexer(config, self.store, self.embedder)
        self.health = HealthTracker()

    def close(self):
        self.store.close()


def _load_config(args: argparse.Namespace) -> Config:
    return Config.load(Path(args.config) if args.config else None)


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _snippet(text: str, n: int = 3) -> list[str]:
    out = []
    for line in text.split("\n")[1 : 1 + n]:
        out.append(line if len(line) <= 120 else line[:117] + "...")
    return out


def _print_hits(hits: list[SearchHit]):
    for h in hits:
        tag = f"[{h.content_type}]" if h.content_type else ""
        print(f"[{h.score:.3f}] {tag} {h.path}:{h.lines} ({h.source})")
        for line in _snippet(h.text):
            print(f"  {line}")
        print("")


# ── Commands ─────────────────────────────────────────

def cmd_index(app: App, args: argparse.Namespace) -> int:
    out = sys.stderr if args.json else sys.stdout
    with contextlib.redirect_stdout(out):
        report = app.indexer.index_all(force=args.force, release=args.release)
    if args.json:
        _print_json(report.to_dict())
    return 0


def cmd_query(app: App, args: argparse.Namespace) -> int:
    source = app.config.release_source if args.releases else args.source
    content_type = None
    if args.docs:
        content_type = "docs"
    elif args.code:
        content_type = "code"
    elif args.skills:
        content_type = "skill"

    hits = app.searcher.search(
        args.text, limit=args.top, source=source, content_type=content_type,
        expand=not args.no_expand,
    )
    related: list[SearchHit] = []
    if args.verify and hits:
        related = app.searcher.search(args.text, limit=5, content_type="code", expand=False)

    if args.json:
        payload = {
            "query": args.text,
            "results": [
                {
                    "score": round(h.score, 3),
                    "path": h.path,
                    "lines": h.lines,
                    "source": h.source,
                    "content_type": h.content_type,
                    "language": h.language,
                    "category": h.category,
                    "snippet": h.text[:800],
                }
                for h in hits
            ],
        }
        if args.verify:
            payload["related_code"] = [
                {"score": round(h.score, 3), "path": h.path, "lines": h.lines, "source": h.source}
                for h in related
            ]
        _print_json(payload)
        return 0

    if not hits:
        print("No results found.")
        return 0
    print(f'Query: "{args.text}"')
    if source:
        print(f"Filter: source={source}")
    if content_type:
        print(f"Filter: type={content_type}")
    print(f"Results: {len(hits)}\n")
    _print_hits(hits)

    if args.verify:
        print("--- Related Implementation (Code) ---\n")
        if related:
            _print_hits(related)
        else:
            print("No related code found.\n")
    return 0


def cmd_stats(app: App, args: argparse.Namespace) -> int:
    stats = app.store.stats()
    stats["config"] = app.config.to_safe_dict()
    _print_json(stats)
    return 0


def cmd_latest_release(app: App, args: argparse.Namespace) -> int:
    r = app.store.get_latest_release()
    if args.json:
        _print_json(r.model_dump() if r else None)
        return 0
    if r is None:
        print("No releases tracked yet. Run `upstream-kb sync` first.")
        return 0
    print(f"Latest release: {r.tag} ({r.day})")
    print(f"Commit: {r.commit_hash}")
    if r.previous_tag:
        print(f"Previous: {r.previous_tag} ({r.commits_count} commits)")
    print(f"KB impact: {r.kb_impact} ({r.kb_files_changed} of {r.files_changed} files)")
    c = r.changelog
    for title, items in (
        ("Security", c.security), ("Breaking", c.breaking),
        ("Features", c.features), ("Fixes", c.fixes),
    ):
        if items:
            print(f"\n{title}:")
            for item in items:
                print(f"  - {item}")
    return 0


def cmd_release_history(app: App, args: argparse.Namespace) -> int:
    releases = app.store.get_release_history(args.limit)
    if args.json:
        _print_json([r.model_dump() for r in releases])
        return 0
    if not releases:
        print("No releases tracked yet.")
        return 0
    for r in releases:
        print(f"{r.tag:<20} {r.day}  {r.commits_count:>4} commits  "
              f"{r.kb_files_changed:>4} KB files  impact={r.kb_impact}")
    return 0


def cmd_since_release(app: App, args: argparse.Namespace) -> int:
    chunks = app.store.get_chunks_since_release(args.tag, args.top)
    if args.json:
        _print_json({
            "since": args.tag,
            "results": [
                {
                    "path": c.path,
                    "lines": c.lines,
                    "source": c.source,
                    "content_type": c.content_type,
                    "indexed_release": c.indexed_release,
                }
                for c in chunks
            ],
        })
        return 0
    if not chunks:
        print(f"No chunks indexed since {args.tag}.")
        return 0
    print(f"{len(chunks)} chunks indexed since {args.tag}\n")
    for c in chunks:
        print(f"[{c.indexed_release}] {c.path}:{c.lines} ({c.source}, {c.content_type})")
    return 0


def cmd_sync(app: App, args: argparse.Namespace) -> int:
    syncer = ReleaseSyncer(app.config, app.indexer, app.store, app.health)
    if args.loop:
        if app.config.sync_interval <= 0:
            print("Error: --loop needs KB_SYNC_INTERVAL > 0", file=sys.stderr)
            return 1
        syncer.start()
        try:
            syncer.join()
        except KeyboardInterrupt:
            syncer.stop()
        return 0
    with contextlib.redirect_stdout(sys.stderr if args.json else sys.stdout):
        result = syncer.sync_once()
    if args.json:
        _print_json(result.to_dict())
    return 0


def cmd_serve(app: App, args: argparse.Namespace) -> int:
    from .server import create_mcp_server, run_mcp_server

    if args.transport:
        app.config.transport = args.transport
    mcp_server = create_mcp_server(app.config, app.store, app.searcher, app.indexer, app.health)
    syncer = ReleaseSyncer(app.config, app.indexer, app.store, app.health)

    # stdout is the MCP channel for the stdio transport
    with contextlib.redirect_stdout(sys.stderr):
        syncer.start()
        print(f"MCP server starting ({app.config.transport} transport)...")
    try:
        run_mcp_server(mcp_server, app.config)
    finally:
        syncer.stop()
    return 0


def cmd_eval(app: App, args: argparse.Namespace) -> int:
    from .evaluate import evaluate, load_queries, save_report

    queries = load_queries(Path(args.queries))
    print(f"Testing model: {app.config.embedding_model}")
    print(f"Running {len(queries)} test queries...\n")
    report = evaluate(app.searcher, queries, limit=args.top, verbose=args.verbose)

    m = report.metrics
    print("\n=== Results Summary ===\n")
    print(f"Model: {report.model}")
    print(f"Queries: {report.successful}/{len(queries)} successful")
    print(f"Avg MRR: {m.avg_mrr:.3f}")
    print(f"Avg Recall@5: {m.avg_recall5:.3f}")
    print(f"Avg Top Score: {m.avg_top_score:.4f}")

    out = save_report(report, Path(args.out))
    print(f"\nResults saved to: {out}")
    return 0


def cmd_compare(args: argparse.Namespace) -> int:
    from .evaluate import category_breakdown, compare_reports, load_report

    reports = [load_report(Path(f)) for f in args.files]
    print("=== Embedding Model Comparison ===\n")
    print(f"{'Model':<32}| Avg MRR | Avg Recall@5 | Avg Top Score | File")
    for f, r in zip(args.files, reports):
        m = r.metrics
        print(f"{r.model:<32}| {m.avg_mrr:.3f}   | {m.avg_recall5:.3f}        "
              f"| {m.avg_top_score:.4f}        | {Path(f).name[:40]}")

    if len(reports) > 1:
        cmp = compare_reports(reports, args.baseline)
        print(f"\n=== Improvement vs Baseline ({cmp['baseline']}) ===\n")
        for imp in cmp["improvements"]:
            print(f"{imp['model']}:")
            for key, label in (("mrr", "MRR"), ("recall5", "Recall@5"), ("top_score", "Top Score")):
                value = imp[key]
                shown = "n/a" if value is None else f"{value:+.1f}%"
                print(f"  {label + ':':<11}{shown}")
            print("")

    if args.detailed:
        print("=== Per-Category Breakdown ===")
        for r in reports:
            print(f"\n{r.model}:")
            for cat, m in category_breakdown(r).items():
                print(f"  {cat:<15}: MRR={m['mrr']:.3f}, Recall@5={m['recall5']:.3f}")
    return 0


# ── Parser ───────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upstream-kb",
        description="Hybrid search knowledge base for an upstream source tree.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="JSON config overrides (default: kb.config.json).")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Index the upstream tree.")
    p_index.add_argument("--force", action="store_true", help="Re-embed every file.")
    p_index.add_argument("--release", default=None, help="Release tag to record on new chunks.")
    p_index.add_argument("--json", action="store_true")
    p_index.set_defaults(func=cmd_index)

    p_query = sub.add_parser("query", help="Hybrid search.")
    p_query.add_argument("text")
    p_query.add_argument("--top", type=int, default=8)
    p_query.add_argument("--source", default=None)
    kind = p_query.add_mutually_exclusive_group()
    kind.add_argument("--docs", action="store_true")
    kind.add_argument("--code", action="store_true")
    kind.add_argument("--skills", action="store_true")
    kind.add_argument("--releases", action="store_true")
    p_query.add_argument("--verify", action="store_true", help="Also show related code.")
    p_query.add_argument("--no-expand", action="store_true", help="Disable synonym expansion.")
    p_query.add_argument("--json", action="store_true")
    p_query.set_defaults(func=cmd_query)

    p_stats = sub.add_parser("stats", help="Index statistics.")
    p_stats.set_defaults(func=cmd_stats)

    p_latest = sub.add_parser("latest-release", help="Most recent tracked release.")
    p_latest.add_argument("--json", action="store_true")
    p_latest.set_defaults(func=cmd_latest_release)

    p_hist = sub.add_parser("release-history", help="Recent tracked releases.")
    p_hist.add_argument("--limit", type=int, default=10)
    p_hist.add_argument("--json", action="store_true")
    p_hist.set_defaults(func=cmd_release_history)

    p_since = sub.add_parser("since-release", help="Chunks indexed at or after a release.")
    p_since.add_argument("tag")
    p_since.add_argument("--top", type=int, default=100)
    p_since.add_argument("--json", action="store_true")
    p_since.set_defaults(func=cmd_since_release)

    p_sync = sub.add_parser("sync", help="Upgrade to the newest release tag and reindex.")
    p_sync.add_argument("--loop", action="store_true", help="Keep running every KB_SYNC_INTERVAL seconds.")
    p_sync.add_argument("--json", action="store_true")
    p_sync.set_defaults(func=cmd_sync)

    p_serve = sub.add_parser("serve", help="Run the MCP server.")
    p_serve.add_argument("--transport", choices=["stdio", "sse"], default=None)
    p_serve.set_defaults(func=cmd_serve)

    p_eval = sub.add_parser("eval", help="Evaluate retrieval quality on a query set.")
    p_eval.add_argument("queries", help="JSON file with test queries.")
    p_eval.add_argument("--top", type=int, default=10)
    p_eval.add_argument("--out", default="test-results")
    p_eval.add_argument("--verbose", action="store_true")
    p_eval.set_defaults(func=cmd_eval)

    p_cmp = sub.add_parser("compare", help="Compare saved evaluation runs.")
    p_cmp.add_argument("files", nargs="+")
    p_cmp.add_argument("--baseline", default="text-embedding-3-small")
    p_cmp.add_argument("--detailed", action="store_true")
    p_cmp.set_defaults(func=cmd_compare, standalone=True)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "standalone", False):
        try:
            return int(args.func(args))
        except (OSError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    app = App(_load_config(args))
    try:
        return int(args.func(app, args))
    except (EmbeddingError, StoreError, SyncError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    raise SystemExit(main())
