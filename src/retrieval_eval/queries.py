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
Query set loading and validation.

The query set is a TSV file with ``query_id``, ``type``, relevant clusters
(comma-separated, or ``none``) and the query text. Lines starting with ``#``
are comments. A missing or malformed file is a setup error.
"""

import csv
import logging
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import GroundTruthError
from .models import ClusterMap, Query, QueryType

logger = logging.getLogger(__name__)


def _parse_clusters(value: str) -> frozenset:
    value = value.strip().lower()
    if value in ("", "none"):
        return frozenset()
    return frozenset(int(part) for part in value.split(",") if part.strip())


def parse_query_line(fields: List[str], line_no: int) -> Query:
    if len(fields) != 4:
        raise GroundTruthError(f"line {line_no}: expected 4 tab-separated fields, got {len(fields)}")
    query_id, query_type, clusters, text = (field.strip() for field in fields)
    try:
        return Query(
            id=query_id,
            query_type=QueryType.parse(query_type),
            relevant_clusters=_parse_clusters(clusters),
            text=text,
        )
    except ValueError as e:
        raise GroundTruthError(f"line {line_no}: {e}") from e


class QuerySet:
    """A fixed, ordered list of queries with their relevant clusters."""

    def __init__(self, queries: List[Query], source: str = "<memory>"):
        self.queries = list(queries)
        self.source = source
        ids = [q.id for q in self.queries]
        duplicates = sorted({qid for qid in ids if ids.count(qid) > 1})
        if duplicates:
            raise GroundTruthError(f"{source}: duplicate query ids {', '.join(duplicates)}")
        if not self.queries:
            raise GroundTruthError(f"{source}: no queries")

    @classmethod
    def from_text(cls, text: str, source: str = "<memory>") -> "QuerySet":
        queries = []
        rows = csv.reader(text.splitlines(), delimiter="\t", quoting=csv.QUOTE_NONE)
        for line_no, fields in enumerate(rows, start=1):
            if not fields or not "".join(fields).strip() or fields[0].startswith("#"):
                continue
            try:
                queries.append(parse_query_line(fields, line_no))
            except GroundTruthError as e:
                raise GroundTruthError(f"{source}: {e}") from e
        return cls(queries, source=source)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "QuerySet":
        """Load from ``path``, or the packaged query set when ``path`` is None."""
        if path is None:
            text = resources.files("retrieval_eval").joinpath("ground_truth.tsv").read_text(encoding="utf-8")
            query_set = cls.from_text(text, source="ground_truth.tsv")
        else:
            try:
                text = Path(path).read_text(encoding="utf-8")
            except OSError as e:
                raise GroundTruthError(f"Cannot read ground truth {path}: {e}") from e
            query_set = cls.from_text(text, source=str(path))
        logger.info(f"Loaded {len(query_set)} queries from {query_set.source}")
        return query_set

    def by_type(self, query_type: QueryType) -> List[Query]:
        return [q for q in self.queries if q.query_type is query_type]

    def get(self, query_id: str) -> Query:
        for query in self.queries:
            if query.id == query_id:
                return query
        raise KeyError(query_id)

    def relevant_clusters(self) -> frozenset:
        clusters = set()
        for query in self.queries:
            clusters |= query.relevant_clusters
        return frozenset(clusters)

    def validate_against(self, clusters: Iterable[int]) -> None:
        """
        Every referenced cluster must be labeled in the seed corpus.

        Checked before seeding so a bad query set fails before any work.
        """
        missing = sorted(self.relevant_clusters() - frozenset(clusters))
        if missing:
            raise GroundTruthError(
                f"{self.source}: clusters {missing} are referenced by queries but absent from the seed corpus"
            )

    def unanswerable(self, cluster_map: ClusterMap) -> List[str]:
        """Ids of positive queries whose relevant clusters all lost every entry."""
        present = cluster_map.clusters()
        return [q.id for q in self.queries if q.relevant_clusters and not q.relevant_clusters & present]

    def type_counts(self) -> Dict[QueryType, int]:
        return {qt: len(self.by_type(qt)) for qt in QueryType}

    def __iter__(self) -> Iterator[Query]:
        return iter(self.queries)

    def __len__(self) -> int:
        return len(self.queries)
