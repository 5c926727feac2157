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
Reciprocal Rank Fusion

Combines channel rankings using only rank positions, so keyword relevance
and embedding distance never need to be put on a common scale:

    score(entry) = sum over lists containing entry of 1 / (k + rank + 1)

with ``rank`` 0-indexed and k=60 by default.

Ties in fused score keep list precedence: entries are ordered as first seen
walking the first list, then entries that appear only in later lists in
their own order. The sort is stable, so equal scores never reorder.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..models import Candidate, Channel

DEFAULT_RRF_K = 60
DEFAULT_TOP_N = 10


def rrf_score(rank: int, k: int = DEFAULT_RRF_K) -> float:
    """
    Reciprocal rank term for a 0-indexed rank.

    Args:
        rank: Position in a ranked list (0 = top result)
        k: Smoothing constant (default 60)

    Returns:
        1 / (k + rank + 1)
    """
    if rank < 0:
        raise ValueError(f"rank must be >= 0, got {rank}")
    return 1.0 / (k + rank + 1)


def rrf_scores(ranked_ids: Sequence[Sequence[int]], k: int = DEFAULT_RRF_K) -> list[tuple[int, float]]:
    """
    Fused scores for every distinct id across ``ranked_ids``.

    Returns ``(id, score)`` pairs sorted by descending score with ties in list
    precedence order. A repeated id within one list only counts once, at its
    best rank.
    """
    scores: dict[int, float] = {}
    for ids in ranked_ids:
        seen: set[int] = set()
        for rank, entry_id in enumerate(ids):
            if entry_id in seen:
                continue
            seen.add(entry_id)
            scores[entry_id] = scores.get(entry_id, 0.0) + rrf_score(rank, k)
    return sorted(scores.items(), key=lambda item: item[1], reverse=True)


def fuse_rrf(
    ranked_lists: Sequence[Sequence[Candidate]],
    k: int = DEFAULT_RRF_K,
    limit: int = DEFAULT_TOP_N,
) -> list[Candidate]:
    """
    Fuse channel candidate lists into one ranking.

    Args:
        ranked_lists: Candidate lists, best first, in precedence order
        k: RRF smoothing constant
        limit: Maximum number of fused candidates returned

    Returns:
        Candidates with ``fusion_score`` set and the union of their
        originating channels and per-channel ranks, best first.
    """
    merged: dict[int, dict] = {}
    id_lists = []
    for candidates in ranked_lists:
        ids = []
        for rank, candidate in enumerate(candidates):
            if Channel.STRUCTURED in candidate.channels:
                raise ValueError("Structured-relation results cannot be fused")
            entry_id = candidate.entry_id
            ids.append(entry_id)
            info = merged.setdefault(
                entry_id,
                {"entry": candidate.entry, "channels": [], "ranks": {}, "distance": candidate.distance},
            )
            for channel in candidate.channels:
                if channel not in info["channels"]:
                    info["channels"].append(channel)
                    info["ranks"][channel] = candidate.ranks.get(channel, rank)
            if info["distance"] is None:
                info["distance"] = candidate.distance
        id_lists.append(ids)

    fused = []
    for entry_id, score in rrf_scores(id_lists, k)[:limit]:
        info = merged[entry_id]
        fused.append(
            Candidate(
                entry=info["entry"],
                channels=tuple(info["channels"]),
                ranks=dict(info["ranks"]),
                fusion_score=score,
                distance=info["distance"],
            )
        )
    return fused


def union_merge(
    keyword: Sequence[Candidate], vector: Sequence[Candidate], limit: int = DEFAULT_TOP_N
) -> list[Candidate]:
    """
    Pre-fusion baseline: de-duplicated union ordered by recency, newest first.
    """
    merged: dict[int, Candidate] = {}
    for candidate in list(keyword) + list(vector):
        existing = merged.get(candidate.entry_id)
        if existing is None:
            merged[candidate.entry_id] = candidate
            continue
        channels = existing.channels + tuple(c for c in candidate.channels if c not in existing.channels)
        merged[candidate.entry_id] = Candidate(
            entry=existing.entry,
            channels=channels,
            ranks={**candidate.ranks, **existing.ranks},
            distance=existing.distance if existing.distance is not None else candidate.distance,
        )
    ordered = sorted(
        merged.values(), key=lambda c: (c.entry.created_at or "", c.entry_id), reverse=True
    )
    return ordered[:limit]


def overlap(first: Sequence[Candidate], second: Sequence[Candidate]) -> int:
    """Number of entries present in both lists."""
    return len({c.entry_id for c in first} & {c.entry_id for c in second})


def count_multi_channel(candidates: Sequence[Candidate]) -> int:
    """Fused candidates found by more than one channel."""
    return sum(1 for c in candidates if len(c.channels) > 1)
