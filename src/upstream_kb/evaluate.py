# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Retrieval quality evaluation against a fixed query set.

Queries file (JSON):
  {"queries": [{"id": "q1", "text": "...", "category": "config",
                "expectedResults": ["src/config/types.ts", ...]}]}

Metrics per query:
- MRR:       1 / rank of the first result whose path contains any expected fragment
- Recall@5:  fraction of expected fragments found in the top 5 paths
- top score: fused score of the first result

Reports are saved as JSON so runs with different embedding models can be
compared later.
"""
import json
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .search import Searcher
from .store import SearchHit

DEFAULT_BASELINE = "text-embedding-3-small"


class EvalQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    category: str = "general"
    expected: list[str] = Field(default_factory=list, alias="expectedResults")


class QueryResult(BaseModel):
    query_id: str
    text: str
    category: str
    mrr: float = 0.0
    recall5: float = 0.0
    top_score: float = 0.0
    top_results: list[dict] = []
    error: Optional[str] = None


class EvalMetrics(BaseModel):
    avg_mrr: float = 0.0
    avg_recall5: float = 0.0
    avg_top_score: float = 0.0


class EvalReport(BaseModel):
    model: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    metrics: EvalMetrics = Field(default_factory=EvalMetrics)
    results: list[QueryResult] = []

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.error is None)


def load_queries(path: Path) -> list[EvalQuery]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    items = data["queries"] if isinstance(data, dict) else data
    return [EvalQuery.model_validate(q) for q in items]


def calculate_metrics(hits: list[SearchHit], expected: list[str]) -> dict:
    reciprocal_rank = 0.0
    for i, hit in enumerate(hits):
        if any(e in hit.path for e in expected):
            reciprocal_rank = 1 / (i + 1)
            break

    top5 = [h.path for h in hits[:5]]
    found = sum(1 for e in expected if any(e in p for p in top5))
    recall5 = found / len(expected) if expected else 0.0

    return {
        "mrr": reciprocal_rank,
        "recall5": recall5,
        "top_score": hits[0].score if hits else 0.0,
    }


def evaluate(
    searcher: Searcher, queries: list[EvalQuery], limit: int = 10,
    verbose: bool = False,
) -> EvalReport:
    report = EvalReport(model=searcher.config.embedding_model)
    for i, q in enumerate(queries, 1):
        if verbose:
            print(f"[{i}/{len(queries)}] {q.id}: {q.text!r}")
        try:
            hits = searcher.search(q.text, limit=limit, expand=False)
        except Exception as e:
            print(f"  Error on query {q.id}: {e}", file=sys.stderr)
            report.results.append(
                QueryResult(query_id=q.id, text=q.text, category=q.category, error=str(e))
            )
            continue
        metrics = calculate_metrics(hits, q.expected)
        report.results.append(QueryResult(
            query_id=q.id,
            text=q.text,
            category=q.category,
            top_results=[
                {
                    "path": h.path,
                    "score": round(h.score, 4),
                    "lines": h.lines,
                    "content_type": h.content_type,
                }
                for h in hits[:5]
            ],
            **metrics,
        ))
        if verbose:
            print(f"  MRR: {metrics['mrr']:.3f}, Recall@5: {metrics['recall5']:.3f}, "
                  f"Top Score: {metrics['top_score']:.4f}")

    ok = [r for r in report.results if r.error is None]
    if ok:
        report.metrics = EvalMetrics(
            avg_mrr=sum(r.mrr for r in ok) / len(ok),
            avg_recall5=sum(r.recall5 for r in ok) / len(ok),
            avg_top_score=sum(r.top_score for r in ok) / len(ok),
        )
    return report


# ── Persistence ──────────────────────────────────────

def save_report(report: EvalReport, out_dir: Path) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = re.sub(r"[:.]", "-", report.timestamp)[:19]
    name = re.sub(r"[/:]", "-", report.model)
    path = out_dir / f"model-{name}-{stamp}.json"
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    return path


def load_report(path: Path) -> EvalReport:
    return EvalReport.model_validate_json(Path(path).read_text(encoding="utf-8"))


# ── Comparison ───────────────────────────────────────

def _relative(value: float, base: float) -> Optional[float]:
    if base == 0:
        return None
    return (value - base) / base * 100


def compare_reports(reports: list[EvalReport], baseline_model: str = DEFAULT_BASELINE) -> dict:
    """Relative change (in percent) of each report's metrics vs the baseline.

    The baseline is the first report built with baseline_model, else the
    first report. A zero baseline metric yields None for that metric.
    """
    if not reports:
        return {"baseline": None, "improvements": []}
    baseline = next((r for r in reports if r.model == baseline_model), reports[0])
    b = baseline.metrics
    improvements = []
    for r in reports:
        if r is baseline:
            continue
        improvements.append({
            "model": r.model,
            "mrr": _relative(r.metrics.avg_mrr, b.avg_mrr),
            "recall5": _relative(r.metrics.avg_recall5, b.avg_recall5),
            "top_score": _relative(r.metrics.avg_top_score, b.avg_top_score),
        })
    return {"baseline": baseline.model, "improvements": improvements}


def category_breakdown(report: EvalReport) -> dict[str, dict]:
    """Average MRR / Recall@5 per query category (errors count as 0)."""
    groups: dict[str, list[QueryResult]] = {}
    for r in report.results:
        groups.setdefault(r.category, []).append(r)
    return {
        cat: {
            "mrr": sum(r.mrr for r in rs) / len(rs),
            "recall5": sum(r.recall5 for r in rs) / len(rs),
        }
        for cat, rs in groups.items()
    }
