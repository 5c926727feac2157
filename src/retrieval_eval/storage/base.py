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
Search store interface consumed by the channel adapters and the analyzer.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models import ClusterMap, Entry, Relation


class SearchStore(ABC):
    """Abstract base class for the store under evaluation."""

    @abstractmethod
    def insert_batch(self, entries: Sequence[Entry], embeddings: Sequence[Sequence[float]]) -> List[Entry]:
        """Insert entries with their embeddings in one transaction.

        Returns the stored entries with ``id`` and ``created_at`` assigned.
        """
        pass

    @abstractmethod
    def keyword_search(self, terms: Sequence[str], limit: int) -> List[Entry]:
        """Disjunctive full-text match over ``terms``, newest entries first."""
        pass

    @abstractmethod
    def vector_search(self, embedding: Sequence[float], limit: int) -> List[Tuple[Entry, float]]:
        """Nearest neighbours as ``(entry, distance)`` sorted by ascending distance."""
        pass

    @abstractmethod
    def scan_distances(self, embedding: Sequence[float]) -> List[Tuple[int, float, float]]:
        """Distance from ``embedding`` to every entry as ``(entry_id, cosine, l2)``."""
        pass

    @abstractmethod
    def add_relation(
        self, subject: str, predicate: str, obj: str, source_entry_id: Optional[int] = None
    ) -> Relation:
        """Store a subject-predicate-object triple."""
        pass

    @abstractmethod
    def find_relations(self, terms: Iterable[str], limit: int) -> List[Relation]:
        """Active relations whose subject or object name contains any term."""
        pass

    @abstractmethod
    def get_entries(self, entry_ids: Optional[Iterable[int]] = None) -> List[Entry]:
        """Stored entries by id, or all entries when ``entry_ids`` is None."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def cluster_map(self) -> ClusterMap:
        """Cluster labels of every stored entry."""
        return ClusterMap({entry.id: entry.cluster_id for entry in self.get_entries()})

    def close(self) -> None:
        """Release resources. Default implementation does nothing."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
