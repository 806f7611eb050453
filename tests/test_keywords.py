"""
Unit tests for agent_recall.keywords
"""

from __future__ import annotations

from agent_recall.keywords import extract_keywords, keywords_from_branch


class TestExtractKeywords:

    def test_filters_stop_words_short_words_and_numbers(self):
        assert extract_keywords("Add the proof verification for 2024 badges") == [
            "proof", "verification", "badges",
        ]

    def test_strips_markup_and_dedupes(self):
        assert extract_keywords("`parser` **parser** [graph](link)") == ["parser", "graph", "link"]

    def test_caps_count(self):
        words = extract_keywords("alpha beta gamma delta epsilon zeta eta", max_words=3)
        assert words == ["alpha", "beta", "gamma"]

    def test_empty(self):
        assert extract_keywords("") == []
        assert extract_keywords(None) == []


class TestBranchKeywords:

    def test_tokenises_branch(self):
        assert keywords_from_branch("feat/issue-84-proof-verification") == [
            "proof", "verification",
        ]

    def test_default_branches_yield_nothing(self):
        assert keywords_from_branch("main") == []
        assert keywords_from_branch("master") == []
        assert keywords_from_branch(None) == []

    def test_underscores_split(self):
        assert keywords_from_branch("fix/session_context_builder") == [
            "session", "context", "builder",
        ]
