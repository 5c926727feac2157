# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Flat-file output: per-query ranked TSVs, distance CSVs and markdown summaries.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .analysis.metrics import QueryScore, ScoreDistribution, TypeAggregate, aggregate_by_type
from .analysis.sensitivity import ScaleAnalysis, StabilityResult
from .models import Candidate, ClusterMap, DistanceRecord, QueryType, Relation

logger = logging.getLogger(__name__)

CONTENT_WIDTH = 80

TYPE_TITLES = {
    QueryType.DIRECT: "Direct-vocabulary queries",
    QueryType.PARAPHRASE: "Paraphrase queries",
    QueryType.NEGATIVE: "Negative queries",
}

# Columns per ranked-list kind; "rank", "entry_id" and "cluster" always lead
# and "content" always trails.
TSV_COLUMNS = {
    "keyword": [],
    "vector": ["distance"],
    "union": ["channels"],
    "rrf": ["rrf_score", "channels"],
    "rerank": ["rerank_score", "rrf_score", "channels"],
    "scores": ["rerank_score", "rrf_score", "channels"],
}


def truncate_content(text: str, width: int = CONTENT_WIDTH) -> str:
    return text.replace("\t", " ").replace("\n", " ")[:width]


def _fmt(value: Optional[float], digits: int = 6) -> str:
    return "" if value is None else f"{value:.{digits}f}"


def _column_value(candidate: Candidate, column: str) -> str:
    if column == "distance":
        return _fmt(candidate.distance)
    if column == "rrf_score":
        return _fmt(candidate.fusion_score)
    if column == "rerank_score":
        return _fmt(candidate.rerank_score, 4)
    if column == "channels":
        return candidate.channel_label
    raise KeyError(column)


def ranked_rows(kind: str, candidates: Sequence[Candidate], cluster_map: ClusterMap) -> List[List[str]]:
    extra = TSV_COLUMNS[kind]
    rows = [["rank", "entry_id", "cluster", *extra, "content"]]
    for rank, candidate in enumerate(candidates, start=1):
        cluster = cluster_map.cluster_of(candidate.entry_id)
        rows.append(
            [
                str(rank),
                str(candidate.entry_id),
                "?" if cluster is None else str(cluster),
                *(_column_value(candidate, column) for column in extra),
                truncate_content(candidate.entry.content),
            ]
        )
    return rows


def render_tsv(rows: Iterable[Sequence[str]]) -> str:
    return "".join("\t".join(row) + "\n" for row in rows)


def write_ranked_tsv(
    path: Path, kind: str, candidates: Sequence[Candidate], cluster_map: ClusterMap
) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_tsv(ranked_rows(kind, candidates, cluster_map)), encoding="utf-8")


def write_relations_tsv(path: Path, relations: Sequence[Relation]) -> None:
    rows = [["subject", "predicate", "object", "source_entry_id"]]
    rows.extend(
        [r.subject, r.predicate, r.object, "" if r.source_entry_id is None else str(r.source_entry_id)]
        for r in relations
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_tsv(rows), encoding="utf-8")


# =============================================================================
# Distance CSV
# =============================================================================

DISTANCE_HEADER = ["query_id", "entry_id", "cosine_dist", "l2_dist", "relevant"]


def write_distance_csv(path: Path, records: Iterable[DistanceRecord]) -> int:
    """Write one row per query-entry pair; returns the row count."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh, lineterminator="\n")
        writer.writerow(DISTANCE_HEADER)
        for record in records:
            writer.writerow(
                [
                    record.query_id,
                    record.entry_id,
                    repr(record.distance),
                    "" if record.l2_distance is None else repr(record.l2_distance),
                    1 if record.relevant else 0,
                ]
            )
            count += 1
    return count


def read_distance_csv(path: Path) -> List[DistanceRecord]:
    with Path(path).open(newline="", encoding="utf-8") as fh:
        return [
            DistanceRecord(
                query_id=row["query_id"],
                entry_id=int(row["entry_id"]),
                distance=float(row["cosine_dist"]),
                relevant=row["relevant"] == "1",
                l2_distance=float(row["l2_dist"]) if row.get("l2_dist") else None,
            )
            for row in csv.DictReader(fh)
        ]


# =============================================================================
# Markdown Summaries
# =============================================================================

def markdown_table(header: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    lines = ["| " + " | ".join(header) + " |", "|" + "|".join("---" for _ in header) + "|"]
    lines.extend("| " + " | ".join(str(cell) for cell in row) + " |" for row in rows)
    return "\n".join(lines) + "\n"


def _delta(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


def metadata_block(title: str, meta: Dict[str, object]) -> str:
    lines = [f"# {title}", "", f"Date: {datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}"]
    lines.extend(f"{key}: {value}" for key, value in meta.items())
    return "\n".join(lines) + "\n\n"


@dataclass
class ComparisonRow:
    """One query's before/after scores plus channel diagnostics."""
    query_id: str
    query_type: QueryType
    before: QueryScore
    after: QueryScore
    keyword_count: int = 0
    vector_count: int = 0
    both_channels: int = 0
    both_fused: int = 0
    distribution: Optional[ScoreDistribution] = None

    @property
    def delta(self) -> int:
        return self.after.relevant - self.before.relevant


def render_comparison(
    rows: Sequence[ComparisonRow],
    before_label: str,
    after_label: str,
    k: int,
    show_channels: bool = False,
) -> str:
    """Per-type comparison tables followed by the aggregate table."""
    out = []
    for query_type in (QueryType.DIRECT, QueryType.PARAPHRASE):
        typed = [row for row in rows if row.query_type is query_type]
        if not typed:
            continue
        header = ["Query"]
        if show_channels:
            header += ["Keyword", "Vector", "Both", "Both (fused)"]
        header += [f"{before_label} P@{k}", f"{after_label} P@{k}", "Delta"]
        table_rows = []
        for row in typed:
            cells = [row.query_id]
            if show_channels:
                cells += [row.keyword_count, row.vector_count, row.both_channels, row.both_fused]
            cells += [f"{row.before.relevant}/{k}", f"{row.after.relevant}/{k}", _delta(row.delta)]
            table_rows.append(cells)
        out.append(f"## {TYPE_TITLES[query_type]}\n\n" + markdown_table(header, table_rows))

    negatives = [row for row in rows if row.query_type is QueryType.NEGATIVE]
    if negatives:
        if any(row.distribution is not None for row in negatives):
            table = markdown_table(
                ["Query", "Candidates", "Mean Score", "Max Score", "Scores > 0.5"],
                [
                    [row.query_id, d.n, f"{d.mean:.3f}", f"{d.max:.3f}", d.above_half]
                    for row in negatives
                    for d in [row.distribution or ScoreDistribution(0, 0.0, 0.0, 0)]
                ],
            )
            out.append(f"## {TYPE_TITLES[QueryType.NEGATIVE]}: rerank score distribution\n\n" + table)
        else:
            table = markdown_table(
                ["Query", "Keyword", "Vector", f"{after_label} returned"],
                [[row.query_id, row.keyword_count, row.vector_count, row.after.returned] for row in negatives],
            )
            out.append(f"## {TYPE_TITLES[QueryType.NEGATIVE]}\n\n" + table)

    out.append("## Aggregate\n\n" + render_aggregate(rows, before_label, after_label, k))
    return "\n".join(out)


def render_aggregate(rows: Sequence[ComparisonRow], before_label: str, after_label: str, k: int) -> str:
    before = aggregate_by_type([row.before for row in rows])
    after = aggregate_by_type([row.after for row in rows])
    table_rows = []
    for query_type in (QueryType.DIRECT, QueryType.PARAPHRASE):
        if query_type not in before:
            continue
        b: TypeAggregate = before[query_type]
        a: TypeAggregate = after[query_type]
        table_rows.append(
            [
                TYPE_TITLES[query_type].split()[0],
                b.n,
                f"{b.mean_relevant:.2f}/{k}",
                f"{a.mean_relevant:.2f}/{k}",
                f"{a.mean_relevant - b.mean_relevant:+.2f}",
                f"{b.mrr:.3f} -> {a.mrr:.3f}",
                f"{b.mean_ndcg:.3f} -> {a.mean_ndcg:.3f}",
            ]
        )
    return markdown_table(
        ["Query type", "N", f"Mean {before_label} P@{k}", f"Mean {after_label} P@{k}", "Mean Delta", "MRR", f"NDCG@{k}"],
        table_rows,
    )


def render_example(title: str, note: str, sections: Dict[str, str]) -> str:
    """A hero or regression example with each ranking inlined verbatim."""
    parts = [f"## {title}\n\n{note}\n"]
    for heading, body in sections.items():
        parts.append(f"### {heading}\n\n~~~\n{body}~~~\n")
    return "\n".join(parts)


def render_skips(skips: Dict[str, int]) -> str:
    nonzero = {name: count for name, count in skips.items() if count}
    if not nonzero:
        return "## Skips\n\nNone. Every batch and query completed.\n"
    return "## Skips\n\n" + markdown_table(["Item", "Count"], sorted(nonzero.items()))


# =============================================================================
# Sensitivity Summary
# =============================================================================

def _stats_rows(analysis: ScaleAnalysis) -> List[List[object]]:
    rows = []
    for relevant in (True, False):
        for metric, stats in (("cosine", analysis.cosine), ("l2", analysis.l2)):
            s = stats.get(relevant)
            if s is not None:
                rows.append([s.label, metric, s.n, f"{s.min:.4f}", f"{s.mean:.4f}", f"{s.max:.4f}"])
    return rows


def _ratio(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.3f}"


def render_scale_section(analysis: ScaleAnalysis) -> str:
    out = [f"## Scale {analysis.scale} ({analysis.corpus_size} entries)\n"]
    out.append("### Distance by class\n\n" + markdown_table(
        ["Class", "Metric", "N", "Min", "Mean", "Max"], _stats_rows(analysis)
    ))
    out.append("### Threshold sweep (cosine)\n\n" + markdown_table(
        ["Threshold", "Recall", "Precision", "True pos", "False pos"],
        [[f"{p.threshold:.2f}", _ratio(p.recall), _ratio(p.precision), p.true_pos, p.false_pos] for p in analysis.sweep],
    ))
    if analysis.nearest_negative:
        out.append("### Nearest neighbour of queries with no relevant entries\n\n" + markdown_table(
            ["Query", "Nearest cosine"],
            [[qid, f"{dist:.4f}"] for qid, dist in analysis.nearest_negative.items()],
        ))
    separations = [s for s in (analysis.separation, analysis.l2_separation) if s is not None]
    if separations:
        out.append("### Separation\n\n" + markdown_table(
            ["Metric", "Max relevant", "Min irrelevant", "Separation", "Midpoint"],
            [[s.metric, f"{s.max_relevant:.4f}", f"{s.min_irrelevant:.4f}", s.label, f"{s.midpoint:.4f}"] for s in separations],
        ))
    type_rows = []
    for query_type, stats in analysis.by_type.items():
        for s in stats.values():
            type_rows.append([query_type.value, s.label, s.n, f"{s.min:.4f}", f"{s.mean:.4f}", f"{s.max:.4f}"])
    if type_rows:
        out.append("### By query type (cosine)\n\n" + markdown_table(
            ["Type", "Class", "N", "Min", "Mean", "Max"], type_rows
        ))
    if analysis.skipped_queries:
        out.append(f"Skipped queries: {', '.join(analysis.skipped_queries)}\n")
    return "\n".join(out)


def render_stability(analyses: Sequence[ScaleAnalysis], stability: StabilityResult) -> str:
    ordered = sorted(analyses, key=lambda a: (a.corpus_size, a.scale))
    out = ["## Cross-scale analysis\n"]
    rows = []
    for a in ordered:
        for relevant in (True, False):
            s = a.cosine.get(relevant)
            if s is not None:
                rows.append([a.scale, s.label, s.n, f"{s.min:.4f}", f"{s.mean:.4f}", f"{s.max:.4f}"])
    out.append("### Cosine distance by scale\n\n" + markdown_table(
        ["Scale", "Class", "N", "Min", "Mean", "Max"], rows
    ))

    negative_ids = sorted({qid for a in ordered for qid in a.nearest_negative})
    if negative_ids:
        out.append("### Nearest neighbour by scale\n\n" + markdown_table(
            ["Query", *[str(a.scale) for a in ordered], "Non-increasing"],
            [
                [
                    qid,
                    *[f"{a.nearest_negative[qid]:.4f}" if qid in a.nearest_negative else "" for a in ordered],
                    "yes" if stability.negative_nearest_decreasing.get(qid) else "no",
                ]
                for qid in negative_ids
            ],
        ))

    out.append(f"### Fixed threshold {stability.threshold:.2f} by scale\n\n" + markdown_table(
        ["Scale", "True pos", "Recall", "False pos", "Precision"],
        [
            [a.scale, a.fixed_threshold.true_pos, _ratio(a.fixed_threshold.recall),
             a.fixed_threshold.false_pos, _ratio(a.fixed_threshold.precision)]
            for a in ordered
        ],
    ))

    spread = "n/a" if stability.relevant_mean_spread is None else f"{stability.relevant_mean_spread:.4f}"
    out.append(
        "### Verdict\n\n"
        f"- Relevant mean spread across scales: {spread} "
        f"({'stable' if stability.relevant_mean_stable else 'unstable'})\n"
        f"- Minimum irrelevant distance non-increasing with scale: "
        f"{'yes' if stability.min_irrelevant_decreasing else 'no'}\n"
        f"- False positives at {stability.threshold:.2f}: "
        f"{', '.join(str(fp) for fp in stability.false_positives)}\n"
        f"- Fixed threshold scale-invariant: {'yes' if stability.threshold_scale_invariant else 'no'}\n"
    )
    return "\n".join(out)


# =============================================================================
# Channel Isolation Summary
# =============================================================================

def render_channel_table(
    hits: Dict[str, Dict[str, bool]], texts: Dict[str, str], channels: Sequence[str]
) -> str:
    rows = []
    for query_id, by_channel in hits.items():
        rows.append([query_id, texts[query_id][:55], *("HIT" if by_channel.get(ch) else "-" for ch in channels)])
    return markdown_table(["ID", "Query", *[ch.capitalize() for ch in channels]], rows)


def exclusive_hits(hits: Dict[str, Dict[str, bool]], channels: Sequence[str]) -> Dict[str, int]:
    """Queries answered by exactly one of ``channels``."""
    counts = {channel: 0 for channel in channels}
    for by_channel in hits.values():
        found = [channel for channel in channels if by_channel.get(channel)]
        if len(found) == 1:
            counts[found[0]] += 1
    return counts


def write_summary(path: Path, text: str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logger.info(f"Summary written to {path}")
