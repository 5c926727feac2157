"""
Integration tests for the sqlite-vec entry store and the channel adapters.

Skipped when the sqlite-vec extension cannot be loaded.
"""

import math
import os

import pytest

from conftest import STUB_DIMENSION, StubBackend, hashed_embedding
from retrieval_eval.models import Channel, Entry
from retrieval_eval.retrieval import KeywordChannel, StructuredChannel, VectorChannel
from retrieval_eval.storage import SQLITE_VEC_AVAILABLE, EntryStore, close_all_stores

pytestmark = pytest.mark.integration


def unit(index, weight=1.0, base=0.0):
    """Vector with ``base`` on axis 0 and ``weight`` on ``index``."""
    vector = [0.0] * STUB_DIMENSION
    vector[0] = base
    vector[index] += weight
    return vector


class FixedBackend(StubBackend):
    """Embeds every query to the first axis."""

    def embed(self, texts):
        return [unit(0) for _ in texts]


class TestVectorThreshold:
    """One relevant entry among ten, with and without a distance cutoff."""

    @pytest.fixture
    def seeded(self, entry_store):
        entries = [Entry("the relevant entry", cluster_id=1)]
        embeddings = [unit(1, weight=0.1, base=1.0)]
        for i in range(9):
            entries.append(Entry(f"irrelevant entry {i}", cluster_id=2))
            embeddings.append(unit(i + 2, weight=1.0, base=0.5))
        stored = entry_store.insert_batch(entries, embeddings)
        return entry_store, stored

    def test_no_threshold_returns_all(self, seeded):
        store, stored = seeded
        results = VectorChannel(store, FixedBackend(), threshold=None, limit=20).search("q")

        assert len(results) == 10
        assert results[0].entry_id == stored[0].id
        assert results[0].ranks == {Channel.VECTOR: 0}
        distances = [c.distance for c in results]
        assert distances == sorted(distances)

    def test_threshold_between_classes_returns_one(self, seeded):
        store, stored = seeded
        results = VectorChannel(store, FixedBackend(), threshold=0.3, limit=20).search("q")

        assert [c.entry_id for c in results] == [stored[0].id]
        assert results[0].distance < 0.01

    def test_distances_match_cosine(self, seeded):
        store, _ = seeded
        results = VectorChannel(store, FixedBackend(), limit=20).search("q")
        expected = 1 - 0.5 / math.sqrt(1.25)
        assert results[-1].distance == pytest.approx(expected, abs=1e-4)

    def test_failed_query_embedding_returns_empty(self, seeded):
        store, _ = seeded
        backend = StubBackend()
        backend.fail_embed = True
        assert VectorChannel(store, backend).search("q") == []


class TestKeywordSearch:
    def test_disjunctive_match_newest_first(self, entry_store):
        texts = ["sqlite write ahead log", "vector search tuning", "sqlite fts tokenizer", "grocery list"]
        stored = entry_store.insert_batch(
            [Entry(text, cluster_id=1) for text in texts], [hashed_embedding(t) for t in texts]
        )

        results = KeywordChannel(entry_store).search("sqlite vector")

        assert [c.entry_id for c in results] == [stored[2].id, stored[1].id, stored[0].id]
        assert [c.ranks[Channel.KEYWORD] for c in results] == [0, 1, 2]

    def test_porter_stemming(self, entry_store):
        entry_store.insert_batch([Entry("the dispatcher crashed twice", 1)], [hashed_embedding("dispatcher")])
        assert len(KeywordChannel(entry_store).search("crashing dispatchers")) == 1

    def test_quotes_in_terms_do_not_break_match(self, entry_store):
        entry_store.insert_batch([Entry("book dispatcher", 1)], [hashed_embedding("book")])
        assert KeywordChannel(entry_store).search('what about "book') != []

    def test_no_keywords(self, entry_store):
        assert KeywordChannel(entry_store).search("what is the") == []


class TestRelations:
    def test_substring_match_on_entity_names(self, entry_store):
        stored = entry_store.insert_batch([Entry("spill notes", 1)], [hashed_embedding("spill")])
        entry_store.add_relation("spill", "uses", "SQLite database", source_entry_id=stored[0].id)
        entry_store.add_relation("prophet", "discovers", "sibling tools")

        relations = StructuredChannel(entry_store).search("what database does spill use?")

        assert len(relations) == 1
        assert relations[0].subject == "spill"
        assert relations[0].source_entry_id == stored[0].id
        assert entry_store.relation_count() == 2

    def test_no_match(self, entry_store):
        entry_store.add_relation("core", "holds", "IDENTITY.md")
        assert StructuredChannel(entry_store).search("kubernetes autoscaling") == []


class TestStoreLifecycle:
    def test_scan_distances_covers_every_entry(self, entry_store):
        texts = ["alpha note", "beta note", "gamma note"]
        entry_store.insert_batch([Entry(t, 1) for t in texts], [hashed_embedding(t) for t in texts])

        rows = entry_store.scan_distances(hashed_embedding("alpha note"))

        assert len(rows) == 3
        assert rows[0][1] == pytest.approx(0.0, abs=1e-6)
        assert all(l2 >= 0 for _, _, l2 in rows)

    def test_cluster_map_and_count(self, entry_store):
        entry_store.insert_batch(
            [Entry("a note here", 3), Entry("another note", -1)], [hashed_embedding("a"), hashed_embedding("b")]
        )
        assert entry_store.count() == 2
        assert entry_store.cluster_map().counts() == {3: 1, -1: 1}

    def test_dimension_mismatch_rejected(self, entry_store):
        with pytest.raises(ValueError):
            entry_store.insert_batch([Entry("x", 1)], [[0.1, 0.2]])

    def test_close_removes_temporary_directory(self):
        if not SQLITE_VEC_AVAILABLE:
            pytest.skip("sqlite-vec not installed")
        store = EntryStore(embedding_dimension=STUB_DIMENSION)
        directory = os.path.dirname(store.db_path)
        assert os.path.isdir(directory)

        store.close()

        assert not os.path.exists(directory)

    def test_close_all_stores(self):
        if not SQLITE_VEC_AVAILABLE:
            pytest.skip("sqlite-vec not installed")
        store = EntryStore(embedding_dimension=STUB_DIMENSION)
        directory = os.path.dirname(store.db_path)

        close_all_stores()

        assert not os.path.exists(directory)
