"""
Unit tests for the logprob-based cross-encoder reranker.
"""

import math
from unittest.mock import MagicMock

import pytest

from conftest import StubBackend, make_candidates, make_entry
from retrieval_eval.inference import TokenLogprob
from retrieval_eval.models import Candidate, Channel
from retrieval_eval.retrieval import CrossEncoderReranker, extract_relevance_score
from retrieval_eval.retrieval.rerank import build_rerank_prompt, sort_by_rerank


class TestExtractRelevanceScore:
    """Tests for the yes/no softmax over first-token log-probabilities."""

    def test_yes_and_no_present(self):
        score = extract_relevance_score([TokenLogprob("yes", math.log(0.8)), TokenLogprob("no", math.log(0.2))])
        assert math.isclose(score, 0.8, rel_tol=1e-9)

    def test_only_yes_present(self):
        assert extract_relevance_score([TokenLogprob("Yes", -0.1), TokenLogprob("maybe", -2.0)]) == 1.0

    def test_only_no_present(self):
        assert extract_relevance_score([TokenLogprob("no", -0.1), TokenLogprob("perhaps", -2.0)]) == 0.0

    def test_neither_present(self):
        assert extract_relevance_score([TokenLogprob("the", -0.1), TokenLogprob("a", -0.2)]) == 0.0

    def test_empty_or_missing(self):
        assert extract_relevance_score([]) == 0.0
        assert extract_relevance_score(None) == 0.0

    def test_first_occurrence_wins(self):
        """A lower-ranked variant of a token does not override the first one."""
        ranked = [
            TokenLogprob(" Yes", math.log(0.6)),
            TokenLogprob("no", math.log(0.3)),
            TokenLogprob("yes", math.log(0.05)),
        ]
        assert math.isclose(extract_relevance_score(ranked), 0.6 / 0.9, rel_tol=1e-9)

    def test_whitespace_and_case_normalized(self):
        ranked = [TokenLogprob("\nNO ", math.log(0.9)), TokenLogprob(" yes", math.log(0.1))]
        assert math.isclose(extract_relevance_score(ranked), 0.1, rel_tol=1e-9)

    def test_extreme_logprobs_do_not_overflow(self):
        score = extract_relevance_score([TokenLogprob("yes", -1000.0), TokenLogprob("no", -1001.0)])
        assert 0.7 < score < 0.75


class TestCrossEncoderReranker:
    """Tests for scoring and re-sorting fused candidates."""

    def _candidates(self, texts):
        return [
            Candidate(
                entry=make_entry(index + 1, content=text),
                channels=(Channel.KEYWORD,),
                ranks={Channel.KEYWORD: index},
                fusion_score=1 / (61 + index),
            )
            for index, text in enumerate(texts)
        ]

    def test_relevant_candidates_move_up(self):
        reranker = CrossEncoderReranker(StubBackend(), candidates=20, top_n=2)
        candidates = self._candidates(
            ["grocery list for the weekend", "sqlite locking under load", "sqlite wal checkpoint tuning"]
        )

        reranked = reranker.rerank("sqlite tuning", candidates)

        assert [c.entry_id for c in reranked] == [2, 3]
        assert all(c.rerank_score > 0.9 for c in reranked)

    def test_truncates_candidate_pool(self):
        backend = StubBackend()
        reranker = CrossEncoderReranker(backend, candidates=3, top_n=2)

        scored = reranker.score_all("anything", self._candidates([f"doc {i}" for i in range(10)]))

        assert len(scored) == 3
        assert backend.logprob_calls == 3

    def test_failed_call_scores_zero(self):
        backend = StubBackend()
        backend.fail_logprobs = True
        reranker = CrossEncoderReranker(backend)

        scored = reranker.score_all("sqlite", self._candidates(["sqlite notes", "more sqlite notes"]))

        assert [c.rerank_score for c in scored] == [0.0, 0.0]
        assert reranker.failed_calls == 2

    def test_exception_scores_zero(self):
        backend = StubBackend()
        backend.raise_logprobs = True
        reranker = CrossEncoderReranker(backend)

        assert reranker.score("sqlite", "sqlite notes") == 0.0
        assert reranker.failed_calls == 1

    def test_all_zero_keeps_fused_order(self):
        backend = StubBackend()
        backend.fail_logprobs = True
        reranker = CrossEncoderReranker(backend, top_n=3)

        reranked = reranker.rerank("q", self._candidates(["a", "b", "c", "d"]))

        assert [c.entry_id for c in reranked] == [1, 2, 3]

    def test_negative_query_scores_stay_near_zero(self):
        """Candidates unrelated to the query are all scored below 0.1."""
        reranker = CrossEncoderReranker(StubBackend())
        candidates = self._candidates(
            [
                "spill stores every tool log in a single sqlite database",
                "hooker evaluates gates before transforms",
                "the dispatcher crashed on a single quote in the payload",
            ]
        )

        scored = reranker.score_all("kubernetes pod autoscaling thresholds", candidates)

        assert max(c.rerank_score for c in scored) < 0.1

    def test_repeat_scoring_is_stable(self):
        reranker = CrossEncoderReranker(StubBackend())
        first = reranker.score("sqlite locking", "sqlite locking notes")
        second = reranker.score("sqlite locking", "sqlite locking notes")
        assert math.isclose(first, second, abs_tol=1e-6)

    def test_prompt_carries_query_and_document(self):
        backend = MagicMock()
        backend.top_logprobs.return_value = [TokenLogprob("yes", -0.1)]
        reranker = CrossEncoderReranker(backend, model="judge")

        reranker.score("my query", "my document")

        prompt = backend.top_logprobs.call_args.args[0]
        assert prompt == build_rerank_prompt("my query", "my document")
        assert "Query: my query" in prompt
        assert "Document: my document" in prompt
        assert backend.top_logprobs.call_args.kwargs["model"] == "judge"


class TestSortByRerank:
    def test_stable_for_equal_scores(self):
        candidates = [
            Candidate(entry=make_entry(i), channels=(Channel.VECTOR,), rerank_score=score)
            for i, score in [(1, 0.5), (2, 0.9), (3, 0.5)]
        ]
        assert [c.entry_id for c in sort_by_rerank(candidates)] == [2, 1, 3]

    def test_missing_score_sorts_last(self):
        scored = make_candidates([1], Channel.KEYWORD)
        ranked = [Candidate(entry=make_entry(2), channels=(Channel.KEYWORD,), rerank_score=0.3)]
        assert [c.entry_id for c in sort_by_rerank(scored + ranked)] == [2, 1]


@pytest.mark.parametrize("top_n", [1, 5, 10])
def test_rerank_never_exceeds_top_n(top_n):
    reranker = CrossEncoderReranker(StubBackend(), candidates=20, top_n=top_n)
    candidates = make_candidates(list(range(1, 21)), Channel.VECTOR)
    assert len(reranker.rerank("entry", candidates)) <= top_n
