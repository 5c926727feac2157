"""
Unit tests for core records and the cluster map.
"""

import pytest

from retrieval_eval.models import ClusterMap, Entry, Query, QueryType


class TestClusterMap:
    def test_assign_and_lookup(self):
        cluster_map = ClusterMap()
        cluster_map.assign(1, 3)
        assert cluster_map.cluster_of(1) == 3
        assert cluster_map.cluster_of(2) is None
        assert 1 in cluster_map
        assert len(cluster_map) == 1

    def test_reassigning_to_another_cluster_fails(self):
        cluster_map = ClusterMap({1: 3})
        cluster_map.assign(1, 3)
        with pytest.raises(ValueError):
            cluster_map.assign(1, 4)

    def test_relevance(self):
        cluster_map = ClusterMap({1: 3, 2: 0, 3: -1, 4: 5})
        query = Query("Q01", QueryType.PARAPHRASE, frozenset({3, 5}), "text")
        assert cluster_map.is_relevant(1, query)
        assert not cluster_map.is_relevant(2, query)
        assert not cluster_map.is_relevant(99, query)
        assert cluster_map.relevant_count(query) == 2

    def test_counts(self):
        assert ClusterMap({1: 1, 2: 1, 3: -1}).counts() == {1: 2, -1: 1}

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "cluster-map.tsv"
        ClusterMap({2: 1, 1: -1}).save(path)

        assert path.read_text(encoding="utf-8") == "1\t-1\n2\t1\n"
        assert ClusterMap.load(path).counts() == {-1: 1, 1: 1}


class TestEntry:
    def test_labeled(self):
        assert Entry("x", 4).is_labeled
        assert not Entry("x", 0).is_labeled
        assert not Entry("x", -1).is_labeled


class TestQueryType:
    @pytest.mark.parametrize(
        "raw, expected",
        [("direct", QueryType.DIRECT), ("Single", QueryType.DIRECT), (" paraphrase ", QueryType.PARAPHRASE)],
    )
    def test_parse(self, raw, expected):
        assert QueryType.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            QueryType.parse("fuzzy")
