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
Ranking quality metrics.

All metrics use binary relevance: an entry is relevant to a query iff its
cluster (looked up in the ClusterMap) is one of the query's relevant
clusters. Precision@k divides by k even when fewer than k results came back,
so a channel that returns nothing scores 0 rather than being skipped.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models import Candidate, ClusterMap, Query, QueryType

DEFAULT_K = 10


def relevance_flags(candidates: Sequence[Candidate], query: Query, cluster_map: ClusterMap) -> List[bool]:
    return [cluster_map.is_relevant(c.entry_id, query) for c in candidates]


def relevant_at_k(flags: Sequence[bool], k: int = DEFAULT_K) -> int:
    return sum(1 for flag in flags[:k] if flag)


def precision_at_k(flags: Sequence[bool], k: int = DEFAULT_K) -> float:
    """Fraction of the top ``k`` positions holding a relevant result."""
    if k <= 0:
        raise ValueError("k must be positive")
    return relevant_at_k(flags, k) / k


def recall(flags: Sequence[bool], total_relevant: int) -> float:
    """Fraction of all relevant entries that were returned."""
    if total_relevant <= 0:
        return 0.0
    return min(sum(1 for flag in flags if flag) / total_relevant, 1.0)


def hit_rate(flags: Sequence[bool], k: int = DEFAULT_K) -> float:
    """1.0 if any relevant result appears in the top ``k``."""
    return 1.0 if any(flags[:k]) else 0.0


def reciprocal_rank(flags: Sequence[bool]) -> float:
    """1 / position of the first relevant result."""
    for i, flag in enumerate(flags):
        if flag:
            return 1.0 / (i + 1)
    return 0.0


def ndcg_at_k(flags: Sequence[bool], total_relevant: int, k: int = DEFAULT_K) -> float:
    """Normalized discounted cumulative gain with binary relevance."""
    dcg = sum(1.0 / math.log2(i + 2) for i, flag in enumerate(flags[:k]) if flag)
    ideal_dcg = sum(1.0 / math.log2(i + 2) for i in range(min(total_relevant, k)))
    return dcg / ideal_dcg if ideal_dcg > 0 else 0.0


@dataclass(frozen=True)
class QueryScore:
    """Ranking quality of one result list for one query."""
    query_id: str
    query_type: QueryType
    returned: int
    relevant: int
    k: int
    precision: float
    recall: float
    hit_rate: float
    reciprocal_rank: float
    ndcg: float


def score_ranking(
    query: Query, candidates: Sequence[Candidate], cluster_map: ClusterMap, k: int = DEFAULT_K
) -> QueryScore:
    flags = relevance_flags(candidates, query, cluster_map)
    total_relevant = cluster_map.relevant_count(query)
    return QueryScore(
        query_id=query.id,
        query_type=query.query_type,
        returned=len(candidates),
        relevant=relevant_at_k(flags, k),
        k=k,
        precision=precision_at_k(flags, k),
        recall=recall(flags[:k], total_relevant),
        hit_rate=hit_rate(flags, k),
        reciprocal_rank=reciprocal_rank(flags[:k]),
        ndcg=ndcg_at_k(flags, total_relevant, k),
    )


@dataclass(frozen=True)
class TypeAggregate:
    """Mean metrics over the queries of one type."""
    query_type: QueryType
    n: int
    mean_relevant: float
    mean_precision: float
    mean_recall: float
    mean_hit_rate: float
    mrr: float
    mean_ndcg: float


def aggregate_by_type(scores: Sequence[QueryScore]) -> Dict[QueryType, TypeAggregate]:
    grouped: Dict[QueryType, List[QueryScore]] = {}
    for score in scores:
        grouped.setdefault(score.query_type, []).append(score)

    aggregates = {}
    for query_type in QueryType:
        group = grouped.get(query_type)
        if not group:
            continue
        aggregates[query_type] = TypeAggregate(
            query_type=query_type,
            n=len(group),
            mean_relevant=float(np.mean([s.relevant for s in group])),
            mean_precision=float(np.mean([s.precision for s in group])),
            mean_recall=float(np.mean([s.recall for s in group])),
            mean_hit_rate=float(np.mean([s.hit_rate for s in group])),
            mrr=float(np.mean([s.reciprocal_rank for s in group])),
            mean_ndcg=float(np.mean([s.ndcg for s in group])),
        )
    return aggregates


def largest_change(
    before: Sequence[QueryScore], after: Sequence[QueryScore]
) -> Tuple[Optional[Tuple[str, int]], Optional[Tuple[str, int]]]:
    """
    Queries with the largest gain and the largest loss in relevant@k.

    Returns ``(best, worst)`` as ``(query_id, delta)`` pairs, each None when
    no query improved (or regressed). Earlier queries win ties.
    """
    after_by_id = {s.query_id: s for s in after}
    best = None
    worst = None
    for score in before:
        other = after_by_id.get(score.query_id)
        if other is None:
            continue
        delta = other.relevant - score.relevant
        if delta > 0 and (best is None or delta > best[1]):
            best = (score.query_id, delta)
        if delta < 0 and (worst is None or delta < worst[1]):
            worst = (score.query_id, delta)
    return best, worst


@dataclass(frozen=True)
class ScoreDistribution:
    """Summary of rerank scores over a candidate pool."""
    n: int
    mean: float
    max: float
    above_half: int


def score_distribution(scores: Sequence[float]) -> ScoreDistribution:
    if not scores:
        return ScoreDistribution(n=0, mean=0.0, max=0.0, above_half=0)
    values = np.asarray(scores, dtype=float)
    return ScoreDistribution(
        n=len(values),
        mean=float(values.mean()),
        max=float(values.max()),
        above_half=int((values > 0.5).sum()),
    )
