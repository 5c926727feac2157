"""
Unit tests for query set loading and ground-truth validation.
"""

import pytest

from retrieval_eval.errors import GroundTruthError
from retrieval_eval.models import ClusterMap, QueryType
from retrieval_eval.queries import QuerySet


class TestPackagedQuerySet:
    """The query set shipped with the package."""

    def test_loads_twenty_queries(self):
        query_set = QuerySet.load()
        assert len(query_set) == 20

    def test_type_counts(self):
        counts = QuerySet.load().type_counts()
        assert counts == {QueryType.DIRECT: 10, QueryType.PARAPHRASE: 5, QueryType.NEGATIVE: 5}

    def test_negative_queries_have_no_clusters(self):
        for query in QuerySet.load().by_type(QueryType.NEGATIVE):
            assert query.relevant_clusters == frozenset()
            assert query.is_negative

    def test_multi_cluster_paraphrase(self):
        assert QuerySet.load().get("Q15").relevant_clusters == frozenset({8, 5})

    def test_references_only_labeled_seed_clusters(self):
        assert QuerySet.load().relevant_clusters() <= frozenset(range(1, 11))


class TestParsing:
    def test_comments_and_blank_lines_skipped(self):
        text = "# header\n\nQ01\tdirect\t1\tsqlite\n"
        assert [q.id for q in QuerySet.from_text(text)] == ["Q01"]

    def test_single_is_direct(self):
        query_set = QuerySet.from_text("Q01\tsingle\t3\tfts tokenizer\n")
        assert query_set.get("Q01").query_type is QueryType.DIRECT

    def test_wrong_field_count(self):
        with pytest.raises(GroundTruthError, match="expected 4"):
            QuerySet.from_text("Q01\tdirect\t1\n")

    def test_unknown_type(self):
        with pytest.raises(GroundTruthError):
            QuerySet.from_text("Q01\tfuzzy\t1\tsqlite\n")

    def test_negative_with_clusters_rejected(self):
        with pytest.raises(GroundTruthError):
            QuerySet.from_text("Q01\tnegative\t2\tkubernetes\n")

    def test_direct_without_clusters_rejected(self):
        with pytest.raises(GroundTruthError):
            QuerySet.from_text("Q01\tdirect\tnone\tsqlite\n")

    def test_bad_cluster_number(self):
        with pytest.raises(GroundTruthError):
            QuerySet.from_text("Q01\tdirect\tone\tsqlite\n")

    def test_duplicate_ids(self):
        with pytest.raises(GroundTruthError, match="duplicate"):
            QuerySet.from_text("Q01\tdirect\t1\ta\nQ01\tdirect\t2\tb\n")

    def test_empty_file(self):
        with pytest.raises(GroundTruthError, match="no queries"):
            QuerySet.from_text("# only a comment\n")

    def test_missing_file(self, tmp_path):
        with pytest.raises(GroundTruthError, match="Cannot read"):
            QuerySet.load(str(tmp_path / "missing.tsv"))

    def test_load_from_path(self, tmp_path):
        path = tmp_path / "queries.tsv"
        path.write_text("Q01\tdirect\t1\tsqlite\nQ02\tnegative\tnone\tkubernetes\n", encoding="utf-8")
        query_set = QuerySet.load(str(path))
        assert len(query_set) == 2
        assert query_set.source == str(path)


class TestValidateAgainst:
    def test_all_clusters_present(self):
        query_set = QuerySet.from_text("Q01\tdirect\t1\ta\nQ02\tparaphrase\t2,3\tb\n")
        query_set.validate_against([1, 2, 3, -1])

    def test_missing_cluster_is_fatal(self):
        query_set = QuerySet.from_text("Q01\tdirect\t1\ta\nQ02\tparaphrase\t7\tb\n")
        with pytest.raises(GroundTruthError, match=r"\[7\]"):
            query_set.validate_against(ClusterMap({1: 1, 2: 2}).clusters())

    def test_unanswerable_after_partial_seeding(self):
        """Queries lose answerability only when every relevant cluster is gone."""
        query_set = QuerySet.from_text(
            "Q01\tdirect\t1\ta\nQ02\tparaphrase\t2,3\tb\nQ03\tdirect\t4\tc\nQ04\tnegative\tnone\td\n"
        )
        assert query_set.unanswerable(ClusterMap({10: 1, 11: 3})) == ["Q03"]
        assert query_set.unanswerable(ClusterMap()) == ["Q01", "Q02", "Q03"]

    def test_get_unknown_id(self):
        with pytest.raises(KeyError):
            QuerySet.from_text("Q01\tdirect\t1\ta\n").get("Q99")
