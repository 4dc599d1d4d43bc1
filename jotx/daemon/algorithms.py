"""Ranking algorithms for literal and merged search.

Literal relevance is tiered. Within a tier, a match closer to the start of
the content scores higher; across equal scores, newer entries win.

    exact      1.00
    prefix     0.90
    word       0.80 - 0.20 * position
    substring  0.60 - 0.30 * position
    fuzzy      0.40 * token overlap

``position`` is the match offset divided by the content length.
"""

import os
import re
from difflib import SequenceMatcher
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import MatchKind, SearchResult


WORD_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "can", "did", "do",
    "for", "from", "how", "i", "in", "is", "it", "me", "my", "of", "on",
    "or", "that", "the", "this", "to", "was", "what", "when", "where",
    "which", "who", "with", "you",
})

FUZZY_TOKEN_RATIO = 0.8
FUZZY_MIN_OVERLAP = 0.5

CWD_EXACT_BOOST = 0.15
CWD_NESTED_BOOST = 0.08


def tokenize(text: str, drop_stop_words: bool = True) -> List[str]:
    """Lowercased word tokens, splitting paths and hosts into their parts."""
    tokens = WORD_RE.findall(text.casefold())
    if drop_stop_words:
        tokens = [t for t in tokens if t not in STOP_WORDS]
    return tokens


def _is_word_boundary(haystack: str, start: int, end: int) -> bool:
    before = haystack[start - 1] if start > 0 else " "
    after = haystack[end] if end < len(haystack) else " "
    return not before.isalnum() and not after.isalnum()


def literal_score(query: str, content: str, case_sensitive: bool = False) -> Optional[Tuple[MatchKind, float]]:
    """Score a substring match of ``query`` in ``content``; None if absent."""
    if not query:
        return None
    if not case_sensitive:
        query = query.casefold()
        content = content.casefold()

    stripped = content.strip()
    if stripped == query.strip():
        return MatchKind.EXACT, 1.0
    if stripped.startswith(query):
        return MatchKind.PREFIX, 0.9

    pos = content.find(query)
    if pos < 0:
        return None

    length = max(len(content), 1)
    search_from = pos
    while search_from >= 0:
        if _is_word_boundary(content, search_from, search_from + len(query)):
            return MatchKind.WORD, 0.8 - (search_from / length) * 0.2
        search_from = content.find(query, search_from + 1)

    return MatchKind.SUBSTRING, 0.6 - (pos / length) * 0.3


def _token_matches(token: str, candidates: Set[str]) -> bool:
    if token in candidates:
        return True
    for candidate in candidates:
        if abs(len(candidate) - len(token)) > max(2, len(token) // 3):
            continue
        if SequenceMatcher(None, token, candidate).ratio() >= FUZZY_TOKEN_RATIO:
            return True
    return False


def fuzzy_score(query_tokens: List[str], content: str) -> Optional[float]:
    """
    Typo-tolerant token overlap.

    Returns the fuzzy-tier score when at least half of the query tokens
    approximately occur in ``content``.
    """
    if not query_tokens:
        return None
    content_tokens = set(tokenize(content, drop_stop_words=False))
    if not content_tokens:
        return None
    hits = sum(1 for token in query_tokens if _token_matches(token, content_tokens))
    overlap = hits / len(query_tokens)
    if overlap < FUZZY_MIN_OVERLAP:
        return None
    return 0.4 * overlap


def cwd_boost(entry_context: Optional[Dict], cwd: Optional[str]) -> float:
    """Boost entries captured in (or under) the caller's working directory."""
    if not cwd or not entry_context:
        return 0.0
    entry_cwd = entry_context.get("cwd")
    if not entry_cwd:
        return 0.0
    entry_cwd = os.path.normpath(entry_cwd)
    cwd = os.path.normpath(cwd)
    if entry_cwd == cwd:
        return CWD_EXACT_BOOST
    if entry_cwd.startswith(cwd.rstrip(os.sep) + os.sep):
        return CWD_NESTED_BOOST
    return 0.0


def rank(results: Iterable[SearchResult], limit: int) -> List[SearchResult]:
    """Order by score, newest first among equal scores."""
    ordered = sorted(results, key=lambda r: (-r.score, -(r.entry.id or 0)))
    return ordered[:limit]


def dedupe_by_content(results: Iterable[SearchResult]) -> List[SearchResult]:
    """Keep the first (best ranked) result for each distinct content."""
    seen: Set[str] = set()
    unique = []
    for result in results:
        key = result.entry.content.strip()
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def merge_with_baseline(
    semantic: List[SearchResult],
    literal: List[SearchResult],
    baseline: float,
    limit: int,
) -> List[SearchResult]:
    """
    Merge semantic and literal hits, de-duplicated by entry id.

    Literal hits not already found semantically get the fixed ``baseline``
    score and keep their literal order behind every semantic hit, including
    one that scores exactly ``baseline``.
    """
    merged: Dict[int, SearchResult] = {}
    for result in semantic:
        merged.setdefault(result.entry.id, result)
    literal_ids = set()
    for result in literal:
        if result.entry.id in merged:
            continue
        literal_ids.add(result.entry.id)
        merged[result.entry.id] = SearchResult(
            entry=result.entry,
            score=baseline,
            match=result.match,
        )
    # sorted() is stable, so literal hits keep their relevance order
    ordered = sorted(merged.values(), key=lambda r: (-r.score, r.entry.id in literal_ids))
    return ordered[:limit]
