"""Tests for the SQLite entry store."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from jotx.daemon import storage
from jotx.daemon.errors import StorageError
from jotx.daemon.models import Entry, MatchKind, SourceType
from jotx.daemon.storage import EntryStore, fts_phrase


def add(store, content, source=SourceType.SHELL, context=None, timestamp=None):
    entry = Entry(id=None, content=content, source_type=source, context=context)
    if timestamp is not None:
        entry.timestamp = timestamp
    return store.append(entry)


class TestWrites:

    def test_append_assigns_monotonic_ids(self, store):
        ids = [add(store, f"echo {i}") for i in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_get_round_trips_fields(self, store):
        entry_id = add(store, "git status", context={"cwd": "/repo", "user": "u", "host": "h"})
        entry = store.get(entry_id)

        assert entry.content == "git status"
        assert entry.source_type is SourceType.SHELL
        assert entry.context == {"cwd": "/repo", "user": "u", "host": "h"}
        assert entry.timestamp.tzinfo is not None
        assert entry.embedding is None

    def test_append_is_durable(self, tmp_path):
        path = tmp_path / "durable.db"
        first = EntryStore(path)
        entry_id = add(first, "make deploy")
        first.close()

        reopened = EntryStore(path)
        try:
            assert reopened.get(entry_id).content == "make deploy"
        finally:
            reopened.close()

    def test_ids_not_reused_after_delete_all(self, store):
        first = add(store, "one")
        store.delete_all()
        assert add(store, "two") > first

    def test_closed_store_raises_storage_error(self, tmp_path):
        closed = EntryStore(tmp_path / "closed.db")
        closed.close()
        with pytest.raises(StorageError):
            add(closed, "too late")

    def test_embedding_set_only_once(self, store):
        entry_id = add(store, "docker ps")
        assert store.set_embedding(entry_id, np.ones(4, dtype=np.float32))
        assert not store.set_embedding(entry_id, np.zeros(4, dtype=np.float32))

        stored = store.get(entry_id).embedding
        assert np.allclose(stored, np.ones(4))

    def test_set_embedding_on_missing_entry(self, store):
        assert not store.set_embedding(12345, np.ones(4, dtype=np.float32))


class TestRetention:

    def test_evict_over_limit_keeps_newest(self, store):
        ids = [add(store, f"clip {i}", SourceType.CLIPBOARD) for i in range(5)]
        shell_id = add(store, "ls", SourceType.SHELL)

        evicted = store.evict_over_limit(SourceType.CLIPBOARD, 3)

        assert sorted(evicted) == ids[:2]
        assert [store.exists(i) for i in ids] == [False, False, True, True, True]
        assert store.exists(shell_id)

    def test_evict_under_limit_is_noop(self, store):
        add(store, "clip", SourceType.CLIPBOARD)
        assert store.evict_over_limit(SourceType.CLIPBOARD, 3) == []

    def test_delete_before(self, store):
        now = datetime.now(timezone.utc)
        old = add(store, "old", timestamp=now - timedelta(days=10))
        new = add(store, "new", timestamp=now)

        deleted = store.delete_before(now - timedelta(days=1))

        assert deleted == [old]
        assert store.exists(new)
        assert not store.exists(old)

    def test_delete_all(self, store):
        for i in range(3):
            add(store, f"entry {i}")
        assert store.delete_all() == 3
        assert store.counts()["shell"] == 0


class TestLiteralQuery:

    def test_exact_substring_is_found(self, store):
        entry_id = add(store, "kubectl get pods -n staging")
        results = store.query_literal("get pods")
        assert [r.entry.id for r in results] == [entry_id]

    def test_case_insensitive_by_default(self, store):
        add(store, "Docker Compose Up")
        assert store.query_literal("docker compose")
        assert not store.query_literal("docker compose", case_sensitive=True)
        assert store.query_literal("Docker Compose", case_sensitive=True)

    def test_relevance_tiers(self, store):
        substring = add(store, "pnpm install")
        word = add(store, "cd app && npm install")
        prefix = add(store, "npm install react")
        exact = add(store, "npm install")

        results = store.query_literal("npm install", limit=10)
        assert [r.entry.id for r in results] == [exact, prefix, word, substring]
        assert [r.match for r in results] == [
            MatchKind.EXACT, MatchKind.PREFIX, MatchKind.WORD, MatchKind.SUBSTRING,
        ]

    def test_recency_breaks_ties(self, store):
        older = add(store, "git push")
        newer = add(store, "git push")
        results = store.query_literal("git push")
        assert [r.entry.id for r in results] == [newer, older]

    def test_fuzzy_tolerates_typos(self, store):
        entry_id = add(store, "docker compose up -d")
        assert store.query_literal("dokcer compose") == []

        results = store.query_literal("dokcer compose", fuzzy=True)
        assert [r.entry.id for r in results] == [entry_id]
        assert results[0].match is MatchKind.FUZZY

    def test_source_filter(self, store):
        add(store, "secret plan", SourceType.CLIPBOARD)
        shell_id = add(store, "echo secret plan", SourceType.SHELL)
        results = store.query_literal("secret plan", sources=[SourceType.SHELL])
        assert [r.entry.id for r in results] == [shell_id]

    def test_cwd_boost(self, store):
        here = add(store, "run make test", context={"cwd": "/work/api"})
        add(store, "run make test", context={"cwd": "/work/web"})
        results = store.query_literal("make test", cwd="/work/api")
        assert results[0].entry.id == here
        assert results[0].score > results[1].score

    def test_old_exact_hit_beats_newer_substring_hits(self, store, monkeypatch):
        monkeypatch.setattr(storage, "CANDIDATE_LIMIT", 5)
        exact = add(store, "ls")
        for i in range(10):
            add(store, f"cat notes{i}.txt | grep -v false")

        results = store.query_literal("ls", limit=3)

        assert results[0].entry.id == exact
        assert results[0].match is MatchKind.EXACT
        assert [r.match for r in results[1:]] == [MatchKind.SUBSTRING, MatchKind.SUBSTRING]

    def test_old_word_hits_found_beyond_recent_window(self, store, monkeypatch):
        monkeypatch.setattr(storage, "CANDIDATE_LIMIT", 2)
        prefix = add(store, "git status --short")
        word = add(store, "cd repo && git status")
        for i in range(5):
            add(store, f"legit statusbar {i}")

        results = store.query_literal("git status", limit=10)

        assert [r.entry.id for r in results[:2]] == [prefix, word]
        assert [r.match for r in results[:2]] == [MatchKind.PREFIX, MatchKind.WORD]

    def test_deleted_entries_leave_text_index(self, store):
        entry_id = add(store, "terraform apply")
        store.delete_all()
        assert store.query_literal("terraform apply") == []
        assert entry_id not in [r.entry.id for r in store.query_literal("terraform")]

    def test_text_index_rebuilt_for_existing_database(self, tmp_path):
        path = tmp_path / "legacy.db"
        legacy = EntryStore(path)
        entry_id = add(legacy, "helm upgrade api")
        legacy._writer.executescript(
            "DROP TRIGGER entries_fts_insert; DROP TRIGGER entries_fts_delete;"
            "DROP TRIGGER entries_fts_update; DROP TABLE entries_fts;"
        )
        legacy.close()

        reopened = EntryStore(path)
        try:
            rows = reopened._read(
                "SELECT rowid FROM entries_fts WHERE entries_fts MATCH ?", [fts_phrase("helm upgrade")]
            )
            assert [row["rowid"] for row in rows] == [entry_id]
        finally:
            reopened.close()

    def test_fts_phrase(self):
        assert fts_phrase("git st") == '"git st" *'
        assert fts_phrase("./deploy.sh --force") == '"deploy sh force" *'
        assert fts_phrase('say "hi"') == '"say hi" *'
        assert fts_phrase("-- |") is None

    def test_punctuation_only_query_still_matches(self, store):
        entry_id = add(store, "echo a | tee b")
        assert [r.entry.id for r in store.query_literal("|")] == [entry_id]

    def test_limit_and_empty_query(self, store):
        for i in range(5):
            add(store, f"echo {i}")
        assert len(store.query_literal("echo", limit=2)) == 2
        assert store.query_literal("   ") == []


class TestIndexBookkeeping:

    def test_unembedded_and_failed(self, store):
        a = add(store, "a")
        b = add(store, "b")
        c = add(store, "c")
        store.set_embedding(a, np.ones(3, dtype=np.float32))
        store.mark_index_failed(c)

        assert store.unembedded_ids() == [b]
        assert store.index_state_counts() == {"pending": 1, "indexed": 1, "failed": 1}

    def test_record_attempts(self, store):
        entry_id = add(store, "x")
        assert store.record_index_attempt(entry_id) == 1
        assert store.record_index_attempt(entry_id) == 2

    def test_iter_embeddings(self, store):
        ids = [add(store, f"e{i}") for i in range(3)]
        for entry_id in ids[:2]:
            store.set_embedding(entry_id, np.full(3, entry_id, dtype=np.float32))
        assert [entry_id for entry_id, _ in store.iter_embeddings(batch_size=1)] == ids[:2]

    def test_optimize(self, store):
        add(store, "x")
        store.optimize()
        assert store.counts()["shell"] == 1
