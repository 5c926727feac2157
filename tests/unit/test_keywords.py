"""
Unit tests for full-text keyword extraction.
"""

from retrieval_eval.retrieval import STOP_WORDS, extract_query_keywords
from retrieval_eval.retrieval.keywords import build_match_query


class TestExtractQueryKeywords:
    """Tests for extract_query_keywords function."""

    def test_basic_tokenization(self):
        """Should tokenize and lowercase query."""
        result = extract_query_keywords("Rathole Project Architecture")
        assert result == ["rathole", "project", "architecture"]

    def test_stop_word_removal(self):
        result = extract_query_keywords("what does the dispatcher do")
        assert result == ["dispatcher"]

    def test_punctuation_deleted_not_split(self):
        """Hyphenated and dotted words collapse into one token."""
        result = extract_query_keywords("consolidation-on-write, IDENTITY.md?")
        assert result == ["consolidationonwrite", "identitymd"]

    def test_short_tokens_removed(self):
        result = extract_query_keywords("an ok db is up to go python")
        assert result == ["python"]

    def test_three_character_tokens_kept(self):
        assert extract_query_keywords("sql api") == ["sql", "api"]

    def test_empty_query(self):
        assert extract_query_keywords("") == []

    def test_only_stop_words(self):
        assert extract_query_keywords("what is the and") == []

    def test_deduplication_preserves_order(self):
        result = extract_query_keywords("sqlite vector sqlite fts vector")
        assert result == ["sqlite", "vector", "fts"]

    def test_underscores_survive(self):
        assert extract_query_keywords("valid_until store_result") == ["valid_until", "store_result"]

    def test_stop_words_are_lowercase(self):
        assert all(word == word.lower() for word in STOP_WORDS)


class TestBuildMatchQuery:
    def test_or_joined(self):
        assert build_match_query(["sqlite", "vector"]) == "sqlite OR vector"

    def test_single(self):
        assert build_match_query(["sqlite"]) == "sqlite"
