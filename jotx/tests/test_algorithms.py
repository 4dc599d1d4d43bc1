"""Unit tests for ranking algorithms - literal tiers, fuzzy overlap, merging."""

from jotx.daemon.algorithms import (
    cwd_boost,
    dedupe_by_content,
    fuzzy_score,
    literal_score,
    merge_with_baseline,
    rank,
    tokenize,
)
from jotx.daemon.models import Entry, MatchKind, SearchResult, SourceType


def result(entry_id, score, content=None, match=MatchKind.SEMANTIC):
    entry = Entry(id=entry_id, content=content or f"entry {entry_id}", source_type=SourceType.SHELL)
    return SearchResult(entry=entry, score=score, match=match)


class TestLiteralScore:
    """Test the literal relevance tiers."""

    def test_exact(self):
        assert literal_score("git status", "  git status ") == (MatchKind.EXACT, 1.0)

    def test_prefix(self):
        assert literal_score("git", "git status") == (MatchKind.PREFIX, 0.9)

    def test_word_boundary_decays_with_position(self):
        early = literal_score("status", "git status --short")
        late = literal_score("status", "cd repo && git status")
        assert early[0] is late[0] is MatchKind.WORD
        assert early[1] > late[1]
        assert 0.6 <= late[1] <= 0.8

    def test_substring(self):
        kind, score = literal_score("stat", "git status")
        assert kind is MatchKind.SUBSTRING
        assert 0.3 <= score <= 0.6

    def test_later_word_match_beats_substring(self):
        # First occurrence is inside a word, second one stands alone
        kind, _ = literal_score("log", "catalog log")
        assert kind is MatchKind.WORD

    def test_case_handling(self):
        assert literal_score("README", "cat readme.md")[0] is MatchKind.WORD
        assert literal_score("README", "cat readme.md", case_sensitive=True) is None

    def test_absent(self):
        assert literal_score("docker", "podman ps") is None
        assert literal_score("", "anything") is None


class TestFuzzy:

    def test_tokenize_drops_stop_words(self):
        assert tokenize("How did I SSH to the staging box?") == ["ssh", "staging", "box"]
        assert "the" in tokenize("the end", drop_stop_words=False)

    def test_typo_tolerance(self):
        assert fuzzy_score(["dokcer", "compose"], "docker compose up") == 0.4

    def test_partial_overlap(self):
        assert fuzzy_score(["kubectl", "rollout", "restart", "deployment"], "kubectl rollout status") == 0.2

    def test_insufficient_overlap(self):
        assert fuzzy_score(["terraform", "apply", "plan"], "terraform init") is None
        assert fuzzy_score([], "anything") is None


def test_cwd_boost():
    context = {"cwd": "/work/api/src"}
    assert cwd_boost(context, "/work/api/src") > cwd_boost(context, "/work/api") > 0
    assert cwd_boost(context, "/work/web") == 0.0
    assert cwd_boost(None, "/work") == 0.0
    assert cwd_boost(context, None) == 0.0


def test_rank_breaks_ties_by_recency():
    ranked = rank([result(1, 0.8), result(3, 0.8), result(2, 0.9)], limit=10)
    assert [r.entry.id for r in ranked] == [2, 3, 1]
    assert len(rank([result(i, 0.5) for i in range(5)], limit=2)) == 2


def test_dedupe_keeps_first():
    deduped = dedupe_by_content([result(5, 0.9, "ls -la"), result(4, 0.9, "ls -la "), result(3, 0.7, "pwd")])
    assert [r.entry.id for r in deduped] == [5, 3]


class TestMerge:

    def test_semantic_first_then_baseline(self):
        semantic = [result(10, 0.92), result(11, 0.61)]
        literal = [result(12, 1.0, match=MatchKind.EXACT), result(10, 0.9, match=MatchKind.PREFIX)]

        merged = merge_with_baseline(semantic, literal, baseline=0.45, limit=10)

        assert [r.entry.id for r in merged] == [10, 11, 12]
        assert merged[2].score == 0.45
        assert merged[2].match is MatchKind.EXACT

    def test_literal_order_is_preserved(self):
        literal = [result(3, 1.0), result(1, 0.9), result(2, 0.6)]
        merged = merge_with_baseline([], literal, baseline=0.45, limit=10)
        assert [r.entry.id for r in merged] == [3, 1, 2]

    def test_limit(self):
        merged = merge_with_baseline([result(1, 0.9)], [result(2, 1.0), result(3, 1.0)], baseline=0.45, limit=2)
        assert [r.entry.id for r in merged] == [1, 2]

    def test_zero_baseline_still_ranks_literal_last(self):
        semantic = [result(1, 0.0)]
        literal = [result(2, 1.0, match=MatchKind.EXACT), result(3, 0.9, match=MatchKind.PREFIX)]

        merged = merge_with_baseline(semantic, literal, baseline=0.0, limit=10)

        assert [r.entry.id for r in merged] == [1, 2, 3]
        assert [r.score for r in merged] == [0.0, 0.0, 0.0]
