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
Threshold and scale sensitivity analysis.

For every query the distance to every entry is computed by brute force and
tagged relevant or irrelevant through the ClusterMap. The resulting distance
records are summarized per corpus scale (class statistics, a threshold sweep,
nearest-neighbour distance of queries with no relevant entries) and then
compared across scales.

The cross-scale result makes threshold instability explicit: the mean
distance to relevant entries stays roughly where it is while the closest
irrelevant entry keeps getting closer as the corpus grows, so a fixed
cutoff admits more false positives at every scale step.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..inference import InferenceBackend
from ..models import ClusterMap, DistanceRecord, QueryType
from ..queries import QuerySet
from ..storage import SearchStore

logger = logging.getLogger(__name__)

COSINE = "cosine"
L2 = "l2"

# Spread of relevant-mean distance across scales still considered stable
DEFAULT_STABILITY_TOLERANCE = 0.05


def _distance(record: DistanceRecord, metric: str) -> Optional[float]:
    return record.distance if metric == COSINE else record.l2_distance


# =============================================================================
# Distance Collection
# =============================================================================

def collect_distances(
    query_set: QuerySet,
    store: SearchStore,
    backend: InferenceBackend,
    cluster_map: ClusterMap,
) -> Tuple[List[DistanceRecord], List[str]]:
    """
    Distance from every query to every entry.

    Returns the records and the ids of queries skipped because their
    embedding failed.
    """
    records: List[DistanceRecord] = []
    skipped: List[str] = []
    for index, query in enumerate(query_set, start=1):
        embeddings = backend.embed([query.text])
        if not embeddings:
            logger.warning(f"[{index}/{len(query_set)}] {query.id}: embedding failed, skipping")
            skipped.append(query.id)
            continue
        rows = store.scan_distances(embeddings[0])
        for entry_id, cosine, l2 in rows:
            records.append(
                DistanceRecord(
                    query_id=query.id,
                    entry_id=entry_id,
                    distance=cosine,
                    relevant=cluster_map.is_relevant(entry_id, query),
                    l2_distance=l2,
                )
            )
        logger.debug(f"[{index}/{len(query_set)}] {query.id}: {len(rows)} distances")
    return records, skipped


# =============================================================================
# Per-Scale Summaries
# =============================================================================

@dataclass(frozen=True)
class ClassStats:
    """Distance distribution of one relevance class."""
    relevant: bool
    n: int
    min: float
    mean: float
    max: float

    @property
    def label(self) -> str:
        return "relevant" if self.relevant else "irrelevant"


def class_stats(records: Iterable[DistanceRecord], metric: str = COSINE) -> Dict[bool, ClassStats]:
    """Min/mean/max distance split by relevance class (classes with no records are omitted)."""
    values: Dict[bool, List[float]] = {True: [], False: []}
    for record in records:
        value = _distance(record, metric)
        if value is not None:
            values[record.relevant].append(value)

    stats = {}
    for relevant, distances in values.items():
        if not distances:
            continue
        arr = np.asarray(distances, dtype=float)
        stats[relevant] = ClassStats(
            relevant=relevant, n=len(arr), min=float(arr.min()), mean=float(arr.mean()), max=float(arr.max())
        )
    return stats


@dataclass(frozen=True)
class SweepPoint:
    """Retrieval quality if every entry within ``threshold`` were returned."""
    threshold: float
    recall: Optional[float]
    precision: Optional[float]
    true_pos: int
    false_pos: int


def sweep_point(records: Sequence[DistanceRecord], threshold: float, metric: str = COSINE) -> SweepPoint:
    true_pos = false_pos = relevant_total = 0
    for record in records:
        value = _distance(record, metric)
        if value is None:
            continue
        if record.relevant:
            relevant_total += 1
        if value <= threshold:
            if record.relevant:
                true_pos += 1
            else:
                false_pos += 1
    retrieved = true_pos + false_pos
    return SweepPoint(
        threshold=threshold,
        recall=true_pos / relevant_total if relevant_total else None,
        precision=true_pos / retrieved if retrieved else None,
        true_pos=true_pos,
        false_pos=false_pos,
    )


def threshold_sweep(
    records: Sequence[DistanceRecord], thresholds: Iterable[float], metric: str = COSINE
) -> List[SweepPoint]:
    """Recall and precision at each threshold, narrowest first."""
    return [sweep_point(records, threshold, metric) for threshold in sorted(thresholds)]


def nearest_without_relevant(records: Iterable[DistanceRecord], metric: str = COSINE) -> Dict[str, float]:
    """
    Nearest-neighbour distance for every query that has no relevant entry.

    This is the distance a fixed threshold must stay below for such a query
    to correctly return nothing.
    """
    nearest: Dict[str, float] = {}
    has_relevant = set()
    for record in records:
        if record.relevant:
            has_relevant.add(record.query_id)
        value = _distance(record, metric)
        if value is None:
            continue
        if record.query_id not in nearest or value < nearest[record.query_id]:
            nearest[record.query_id] = value
    return {qid: dist for qid, dist in sorted(nearest.items()) if qid not in has_relevant}


@dataclass(frozen=True)
class Separation:
    """Gap between the farthest relevant and the closest irrelevant entry."""
    metric: str
    max_relevant: float
    min_irrelevant: float

    @property
    def clean(self) -> bool:
        return self.max_relevant < self.min_irrelevant

    @property
    def label(self) -> str:
        return "clean" if self.clean else "overlap"

    @property
    def midpoint(self) -> float:
        return (self.max_relevant + self.min_irrelevant) / 2


def separation(records: Iterable[DistanceRecord], metric: str = COSINE) -> Optional[Separation]:
    stats = class_stats(records, metric)
    if True not in stats or False not in stats:
        return None
    return Separation(metric=metric, max_relevant=stats[True].max, min_irrelevant=stats[False].min)


def class_stats_by_type(
    records: Iterable[DistanceRecord], query_set: QuerySet, metric: str = COSINE
) -> Dict[QueryType, Dict[bool, ClassStats]]:
    types = {query.id: query.query_type for query in query_set}
    grouped: Dict[QueryType, List[DistanceRecord]] = {}
    for record in records:
        query_type = types.get(record.query_id)
        if query_type is not None:
            grouped.setdefault(query_type, []).append(record)
    return {qt: class_stats(grouped[qt], metric) for qt in QueryType if qt in grouped}


@dataclass
class ScaleAnalysis:
    """Everything measured at one corpus scale."""
    scale: int
    corpus_size: int
    cosine: Dict[bool, ClassStats]
    l2: Dict[bool, ClassStats]
    sweep: List[SweepPoint]
    nearest_negative: Dict[str, float]
    separation: Optional[Separation]
    l2_separation: Optional[Separation]
    by_type: Dict[QueryType, Dict[bool, ClassStats]]
    fixed_threshold: SweepPoint
    skipped_queries: List[str] = field(default_factory=list)


def analyze_scale(
    scale: int,
    corpus_size: int,
    records: Sequence[DistanceRecord],
    query_set: QuerySet,
    thresholds: Iterable[float],
    fixed_threshold: float = 0.5,
    skipped_queries: Optional[List[str]] = None,
) -> ScaleAnalysis:
    analysis = ScaleAnalysis(
        scale=scale,
        corpus_size=corpus_size,
        cosine=class_stats(records, COSINE),
        l2=class_stats(records, L2),
        sweep=threshold_sweep(records, thresholds),
        nearest_negative=nearest_without_relevant(records),
        separation=separation(records, COSINE),
        l2_separation=separation(records, L2),
        by_type=class_stats_by_type(records, query_set),
        fixed_threshold=sweep_point(records, fixed_threshold),
        skipped_queries=list(skipped_queries or []),
    )
    log_scale_analysis(analysis)
    return analysis


def log_scale_analysis(analysis: ScaleAnalysis) -> None:
    logger.info(f"Scale {analysis.scale}: {analysis.corpus_size} entries")
    for stats in analysis.cosine.values():
        logger.info(
            f"  {stats.label:<10} n={stats.n} min={stats.min:.4f} mean={stats.mean:.4f} max={stats.max:.4f}"
        )
    for query_id, dist in analysis.nearest_negative.items():
        logger.info(f"  {query_id} nearest neighbour: {dist:.4f}")
    if analysis.separation:
        logger.info(
            f"  separation: {analysis.separation.label} "
            f"(max relevant {analysis.separation.max_relevant:.4f}, "
            f"min irrelevant {analysis.separation.min_irrelevant:.4f})"
        )
    if analysis.skipped_queries:
        logger.warning(f"  {len(analysis.skipped_queries)} queries skipped: {', '.join(analysis.skipped_queries)}")


# =============================================================================
# Cross-Scale Stability
# =============================================================================

def _non_increasing(values: Sequence[float]) -> bool:
    return all(later <= earlier for earlier, later in zip(values, values[1:]))


@dataclass(frozen=True)
class StabilityResult:
    """
    Cross-scale verdict.

    ``relevant_mean_stable`` holds when the mean relevant distance varies by
    at most the tolerance across scales. ``min_irrelevant_decreasing`` holds
    when the closest irrelevant entry never moves farther away as the corpus
    grows. A fixed threshold is scale-invariant only if its false-positive
    count does not grow with the corpus.
    """
    scales: Tuple[int, ...]
    relevant_means: Tuple[Optional[float], ...]
    min_irrelevant: Tuple[Optional[float], ...]
    false_positives: Tuple[int, ...]
    threshold: float
    relevant_mean_spread: Optional[float]
    relevant_mean_stable: bool
    min_irrelevant_decreasing: bool
    negative_nearest_decreasing: Dict[str, bool]

    @property
    def threshold_scale_invariant(self) -> bool:
        return len(set(self.false_positives)) <= 1

    @property
    def demonstrates_instability(self) -> bool:
        return self.relevant_mean_stable and self.min_irrelevant_decreasing and not self.threshold_scale_invariant


def cross_scale_stability(
    analyses: Sequence[ScaleAnalysis], tolerance: float = DEFAULT_STABILITY_TOLERANCE
) -> StabilityResult:
    ordered = sorted(analyses, key=lambda a: (a.corpus_size, a.scale))
    relevant_means = tuple(a.cosine[True].mean if True in a.cosine else None for a in ordered)
    min_irrelevant = tuple(a.cosine[False].min if False in a.cosine else None for a in ordered)

    present_means = [m for m in relevant_means if m is not None]
    spread = float(np.ptp(present_means)) if present_means else None
    present_minima = [m for m in min_irrelevant if m is not None]

    negative_ids = sorted({qid for a in ordered for qid in a.nearest_negative})
    negative_trend = {}
    for qid in negative_ids:
        series = [a.nearest_negative[qid] for a in ordered if qid in a.nearest_negative]
        negative_trend[qid] = _non_increasing(series)

    threshold = ordered[0].fixed_threshold.threshold if ordered else 0.0
    result = StabilityResult(
        scales=tuple(a.scale for a in ordered),
        relevant_means=relevant_means,
        min_irrelevant=min_irrelevant,
        false_positives=tuple(a.fixed_threshold.false_pos for a in ordered),
        threshold=threshold,
        relevant_mean_spread=spread,
        relevant_mean_stable=spread is not None and spread <= tolerance,
        min_irrelevant_decreasing=len(present_minima) >= 2 and _non_increasing(present_minima),
        negative_nearest_decreasing=negative_trend,
    )
    logger.info(
        f"Cross-scale: relevant mean spread={spread}, min irrelevant {present_minima}, "
        f"false positives at {threshold} {list(result.false_positives)}"
    )
    return result
