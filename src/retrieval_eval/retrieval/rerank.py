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
Cross-encoder reranking from first-token log-probabilities.

The rerank model is asked a binary relevance question per (query, document)
pair and generates a single token. The relevance score is a softmax
restricted to the "yes" and "no" tokens:

    score = exp(lp_yes) / (exp(lp_yes) + exp(lp_no))

If only "yes" appears in the returned top-k the score is 1.0; if only "no",
or neither, it is 0.0. A failed request also scores 0.0 so one bad call
never aborts a batch.
"""

import logging
import math
from dataclasses import replace
from typing import List, Optional, Sequence

from ..inference import InferenceBackend, TokenLogprob
from ..models import Candidate

logger = logging.getLogger(__name__)

DEFAULT_RERANK_CANDIDATES = 20
DEFAULT_TOP_N = 10

RERANK_PROMPT = (
    'Judge whether the Document is relevant to the Query. Answer exactly "yes" or "no", '
    "nothing else.\n\nQuery: {query}\n\nDocument: {document}"
)


def build_rerank_prompt(query: str, document: str) -> str:
    return RERANK_PROMPT.format(query=query, document=document)


def extract_relevance_score(top_logprobs: Optional[Sequence[TokenLogprob]]) -> float:
    """
    Relevance probability from ranked first-token log-probabilities.

    Tokens are compared after stripping whitespace and lower-casing. The list
    is ordered by descending probability, so only the first occurrence of
    "yes" and of "no" counts.
    """
    if not top_logprobs:
        return 0.0

    yes_lp = None
    no_lp = None
    for item in top_logprobs:
        token = item.token.strip().lower()
        if token == "yes" and yes_lp is None:
            yes_lp = item.logprob
        elif token == "no" and no_lp is None:
            no_lp = item.logprob

    if yes_lp is not None and no_lp is not None:
        # Shift by the max for numerical stability
        peak = max(yes_lp, no_lp)
        yes_p = math.exp(yes_lp - peak)
        no_p = math.exp(no_lp - peak)
        return yes_p / (yes_p + no_p)
    if yes_lp is not None:
        return 1.0
    return 0.0


class CrossEncoderReranker:
    """Re-scores fused candidates with a yes/no relevance judgment."""

    def __init__(
        self,
        backend: InferenceBackend,
        model: Optional[str] = None,
        candidates: int = DEFAULT_RERANK_CANDIDATES,
        top_n: int = DEFAULT_TOP_N,
    ):
        self.backend = backend
        self.model = model
        self.candidates = candidates
        self.top_n = top_n
        self.failed_calls = 0

    def score(self, query: str, document: str) -> float:
        """Relevance of one document; 0.0 when the model call fails."""
        try:
            ranked = self.backend.top_logprobs(build_rerank_prompt(query, document), model=self.model)
        except Exception as e:
            logger.warning(f"Rerank call raised {type(e).__name__}: {e}")
            ranked = None
        if ranked is None:
            self.failed_calls += 1
            return 0.0
        return extract_relevance_score(ranked)

    def score_all(self, query: str, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Every candidate (up to the candidate pool) with ``rerank_score`` set, input order."""
        pool = list(candidates)[: self.candidates]
        scored = []
        for index, candidate in enumerate(pool, start=1):
            scored.append(replace(candidate, rerank_score=self.score(query, candidate.entry.content)))
            logger.debug(f"Reranked {index}/{len(pool)}")
        return scored

    def rerank(self, query: str, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Candidates re-sorted by descending rerank score, truncated to top-N."""
        return self.rerank_scored(self.score_all(query, candidates))

    def rerank_scored(self, scored: Sequence[Candidate]) -> List[Candidate]:
        return sort_by_rerank(scored)[: self.top_n]


def sort_by_rerank(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Stable sort by descending rerank score; equal scores keep fused order."""
    return sorted(candidates, key=lambda c: c.rerank_score or 0.0, reverse=True)
