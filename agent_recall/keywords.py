"""
Keyword extraction for search terms derived from goal titles, issue text
and branch names.
"""

from __future__ import annotations

import re
from typing import Optional

_STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "need",
    "this", "that", "these", "those", "it", "its", "add", "update", "fix",
    "remove", "change", "make", "use", "new", "into", "when", "what", "how",
    "why", "where", "which", "who", "whom", "all", "any", "some", "most",
    "other", "each", "every", "both", "few", "more", "less", "such", "no",
    "not", "only", "own", "same", "than", "too", "very", "just", "also",
    "now", "here", "there", "then", "so", "if", "else", "because", "about",
    "through", "during", "before", "after", "above", "below", "between",
    "under", "again", "further", "once", "feat", "chore", "refactor",
    "docs", "test", "tests", "issue",
})

_MARKUP_RE = re.compile(r"[#*`\[\](){}|\\<>]")
_NON_WORD_RE = re.compile(r"[^a-z0-9\-\s]")
_NUMBER_RE = re.compile(r"^\d+$")

_DEFAULT_BRANCHES = frozenset({"main", "master"})


def extract_keywords(text: Optional[str], max_words: int = 5) -> list[str]:
    """
    Return up to *max_words* unique significant lowercase words from *text*.

    Words of two characters or fewer, stop words and pure numbers are dropped;
    first-occurrence order is preserved.
    """
    if not text:
        return []
    cleaned = _NON_WORD_RE.sub(" ", _MARKUP_RE.sub(" ", text.lower()))
    seen: list[str] = []
    for word in cleaned.split():
        word = word.strip("-")
        if (
            len(word) > 2
            and word not in _STOP_WORDS
            and not _NUMBER_RE.match(word)
            and word not in seen
        ):
            seen.append(word)
            if len(seen) >= max_words:
                break
    return seen


def keywords_from_branch(branch: Optional[str], max_words: int = 5) -> list[str]:
    """Tokenise a branch name like ``feat/issue-84-proof-verification``."""
    if not branch or branch in _DEFAULT_BRANCHES:
        return []
    return extract_keywords(re.sub(r"[/\-_]", " ", branch), max_words)
