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
Core data model for retrieval evaluation.

Entries are immutable once stored. Relevance is never stored on an entry:
it is looked up through the ClusterMap side table, so the labels can be
swapped without touching the corpus.
"""

import csv
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, Optional, Tuple

# Cluster identifiers at or below zero never count as relevant.
NOISE_CLUSTER = 0
BACKGROUND_CLUSTER = -1


class QueryType(str, Enum):
    """Query categories reported separately in every summary."""
    DIRECT = "direct"
    PARAPHRASE = "paraphrase"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value: str) -> "QueryType":
        value = value.strip().lower()
        # Older ground-truth files label direct queries "single".
        if value == "single":
            return cls.DIRECT
        return cls(value)


class Channel(str, Enum):
    """Retrieval channels a candidate can originate from."""
    KEYWORD = "keyword"
    VECTOR = "vector"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class Entry:
    """A unit of retrievable content.

    ``id`` and ``created_at`` are assigned by the store on insert.
    """
    content: str
    cluster_id: int
    entry_type: str = "note"
    id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def is_labeled(self) -> bool:
        return self.cluster_id > NOISE_CLUSTER


@dataclass(frozen=True)
class Query:
    """An experiment input with its ground truth."""
    id: str
    query_type: QueryType
    relevant_clusters: FrozenSet[int]
    text: str

    def __post_init__(self):
        if self.query_type is QueryType.NEGATIVE and self.relevant_clusters:
            raise ValueError(f"Negative query {self.id} cannot list relevant clusters")
        if self.query_type is not QueryType.NEGATIVE and not self.relevant_clusters:
            raise ValueError(f"Query {self.id} ({self.query_type.value}) needs at least one relevant cluster")

    @property
    def is_negative(self) -> bool:
        return self.query_type is QueryType.NEGATIVE


@dataclass(frozen=True)
class Candidate:
    """An entry annotated with retrieval metadata for one query."""
    entry: Entry
    channels: Tuple[Channel, ...]
    ranks: Dict[Channel, int] = field(default_factory=dict)
    fusion_score: Optional[float] = None
    rerank_score: Optional[float] = None
    distance: Optional[float] = None

    def __post_init__(self):
        if not self.channels:
            raise ValueError("A candidate needs at least one originating channel")
        if len(set(self.channels)) != len(self.channels):
            raise ValueError(f"Duplicate channels on candidate: {self.channels}")
        for channel in self.channels:
            if not isinstance(channel, Channel):
                raise ValueError(f"Unknown channel: {channel!r}")

    @property
    def entry_id(self) -> int:
        return self.entry.id

    @property
    def channel_label(self) -> str:
        """Joined channel names, e.g. ``keyword+vector``."""
        return "+".join(channel.value for channel in self.channels)


@dataclass(frozen=True)
class Relation:
    """A subject-predicate-object triple from the structured channel."""
    subject: str
    predicate: str
    object: str
    source_entry_id: Optional[int] = None
    id: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.subject} {self.predicate} {self.object}"


@dataclass(frozen=True)
class DistanceRecord:
    """One query-to-entry distance from a brute-force scan."""
    query_id: str
    entry_id: int
    distance: float
    relevant: bool
    l2_distance: Optional[float] = None


class ClusterMap:
    """Entry id to cluster id index built during synthesis."""

    def __init__(self, assignments: Optional[Dict[int, int]] = None):
        self._clusters: Dict[int, int] = dict(assignments or {})

    def assign(self, entry_id: int, cluster_id: int) -> None:
        if entry_id in self._clusters and self._clusters[entry_id] != cluster_id:
            raise ValueError(
                f"Entry {entry_id} already mapped to cluster {self._clusters[entry_id]}, not {cluster_id}"
            )
        self._clusters[entry_id] = cluster_id

    def cluster_of(self, entry_id: int) -> Optional[int]:
        return self._clusters.get(entry_id)

    def is_relevant(self, entry_id: int, query: Query) -> bool:
        cluster_id = self._clusters.get(entry_id)
        return cluster_id is not None and cluster_id in query.relevant_clusters

    def relevant_count(self, query: Query) -> int:
        return sum(1 for cluster_id in self._clusters.values() if cluster_id in query.relevant_clusters)

    def clusters(self) -> FrozenSet[int]:
        return frozenset(self._clusters.values())

    def counts(self) -> Dict[int, int]:
        totals: Dict[int, int] = {}
        for cluster_id in self._clusters.values():
            totals[cluster_id] = totals.get(cluster_id, 0) + 1
        return totals

    def items(self) -> Iterable[Tuple[int, int]]:
        return sorted(self._clusters.items())

    def save(self, path: Path) -> None:
        """Write ``entry_id<TAB>cluster_id`` lines."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh, delimiter="\t", lineterminator="\n")
            writer.writerows(self.items())

    @classmethod
    def load(cls, path: Path) -> "ClusterMap":
        cluster_map = cls()
        with Path(path).open(encoding="utf-8") as fh:
            for row in csv.reader(fh, delimiter="\t"):
                if row:
                    cluster_map.assign(int(row[0]), int(row[1]))
        return cluster_map

    def __contains__(self, entry_id: int) -> bool:
        return entry_id in self._clusters

    def __iter__(self) -> Iterator[int]:
        return iter(self._clusters)

    def __len__(self) -> int:
        return len(self._clusters)
