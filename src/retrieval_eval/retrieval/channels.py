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
Channel adapters: keyword, vector and structured-relation retrieval.

Each adapter maps ``(query text, limit)`` to an ordered result list. An empty
list is a normal outcome, never an error.
"""

import logging
from typing import List, Optional, Sequence

from ..inference import InferenceBackend
from ..models import Candidate, Channel, Relation
from ..storage import SearchStore
from .keywords import build_match_query, extract_query_keywords

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_LIMIT = 20


class KeywordChannel:
    """Disjunctive full-text match, newest entries first."""

    channel = Channel.KEYWORD

    def __init__(self, store: SearchStore, limit: int = DEFAULT_CHANNEL_LIMIT):
        self.store = store
        self.limit = limit

    def search(self, text: str, limit: Optional[int] = None) -> List[Candidate]:
        keywords = extract_query_keywords(text)
        if not keywords:
            logger.debug(f"No keywords in query {text!r}")
            return []
        logger.debug(f"Keyword match: {build_match_query(keywords)}")
        entries = self.store.keyword_search(keywords, limit or self.limit)
        return [
            Candidate(entry=entry, channels=(Channel.KEYWORD,), ranks={Channel.KEYWORD: rank})
            for rank, entry in enumerate(entries)
        ]


class VectorChannel:
    """
    Nearest-neighbour search under cosine distance.

    Without a threshold the k nearest entries are always returned, relevant
    or not. With one, candidates farther than the threshold are dropped.
    """

    channel = Channel.VECTOR

    def __init__(
        self,
        store: SearchStore,
        backend: InferenceBackend,
        threshold: Optional[float] = None,
        limit: int = DEFAULT_CHANNEL_LIMIT,
    ):
        self.store = store
        self.backend = backend
        self.threshold = threshold
        self.limit = limit

    def embed_query(self, text: str) -> Optional[List[float]]:
        embeddings = self.backend.embed([text])
        if not embeddings:
            logger.warning(f"Could not embed query {text!r}")
            return None
        return embeddings[0]

    def search(
        self,
        text: str,
        limit: Optional[int] = None,
        embedding: Optional[Sequence[float]] = None,
        threshold: Optional[float] = None,
    ) -> List[Candidate]:
        if embedding is None:
            embedding = self.embed_query(text)
            if embedding is None:
                return []
        cutoff = threshold if threshold is not None else self.threshold

        neighbours = self.store.vector_search(embedding, limit or self.limit)
        if cutoff is not None:
            neighbours = [(entry, distance) for entry, distance in neighbours if distance <= cutoff]
        neighbours.sort(key=lambda pair: pair[1])

        return [
            Candidate(
                entry=entry,
                channels=(Channel.VECTOR,),
                ranks={Channel.VECTOR: rank},
                distance=distance,
            )
            for rank, (entry, distance) in enumerate(neighbours)
        ]


class StructuredChannel:
    """
    Substring match of query keywords against entity names.

    Returns relations, not entries, so its results are reported on their own
    and never fused with the other channels.
    """

    channel = Channel.STRUCTURED

    def __init__(self, store: SearchStore, limit: int = DEFAULT_CHANNEL_LIMIT):
        self.store = store
        self.limit = limit

    def search(self, text: str, limit: Optional[int] = None) -> List[Relation]:
        keywords = extract_query_keywords(text)
        if not keywords:
            return []
        return self.store.find_relations(keywords, limit or self.limit)
