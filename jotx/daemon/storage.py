"""SQLite entry store.

Single-writer discipline: every mutation goes through one connection
guarded by a lock, so ids are assigned in commit order. Reads use
per-thread connections and run concurrently with writes (WAL mode).
"""

import json
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .algorithms import cwd_boost, fuzzy_score, literal_score, rank, tokenize
from .errors import StorageError
from .models import Entry, MatchKind, SearchResult, SourceType


SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_type TEXT NOT NULL CHECK (source_type IN ('clipboard', 'shell', 'file', 'note')),
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    context TEXT,
    embedding BLOB,
    index_state TEXT NOT NULL DEFAULT 'pending' CHECK (index_state IN ('pending', 'indexed', 'failed')),
    index_attempts INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_entries_source ON entries(source_type, id);
CREATE INDEX IF NOT EXISTS idx_entries_timestamp ON entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_entries_index_state ON entries(index_state, id);

CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    content, content='entries', content_rowid='id', tokenize='unicode61'
);
CREATE TRIGGER IF NOT EXISTS entries_fts_insert AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, content) VALUES (new.id, new.content);
END;
CREATE TRIGGER IF NOT EXISTS entries_fts_delete AFTER DELETE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, content) VALUES ('delete', old.id, old.content);
END;
CREATE TRIGGER IF NOT EXISTS entries_fts_update AFTER UPDATE OF content ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, content) VALUES ('delete', old.id, old.content);
    INSERT INTO entries_fts(rowid, content) VALUES (new.id, new.content);
END;
"""

ENTRY_COLUMNS = "id, source_type, content, timestamp, context, embedding"

# Tokens as the full-text index sees them; underscores separate words
FTS_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)

# Substring-only hits are collected from at most this many of the newest rows
CANDIDATE_LIMIT = 2000
FUZZY_WINDOW = 2000


def format_timestamp(ts: datetime) -> str:
    """UTC ISO-8601 with fixed precision so text order equals time order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _row_to_entry(row: sqlite3.Row) -> Entry:
    embedding = None
    if row["embedding"] is not None:
        embedding = np.frombuffer(row["embedding"], dtype=np.float32)
    return Entry(
        id=row["id"],
        content=row["content"],
        source_type=SourceType(row["source_type"]),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        context=json.loads(row["context"]) if row["context"] else None,
        embedding=embedding,
    )


def _source_clause(sources: Optional[Sequence[SourceType]]) -> Tuple[str, List[str]]:
    if not sources:
        return "", []
    placeholders = ", ".join("?" for _ in sources)
    return f" AND source_type IN ({placeholders})", [SourceType(s).value for s in sources]


def fts_phrase(text: str) -> Optional[str]:
    """
    Full-text query matching ``text`` as a run of consecutive tokens.

    The last token matches as a prefix so a query that stops mid-word still
    finds its exact, prefix and word-boundary hits. None when the text has
    no indexable token.
    """
    tokens = FTS_TOKEN_RE.findall(text)
    if not tokens:
        return None
    return '"' + " ".join(tokens) + '" *'


class EntryStore:
    """Durable, append-oriented repository of entries."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False

        try:
            self._writer = self._connect()
            had_fts = self._writer.execute(
                "SELECT 1 FROM sqlite_master WHERE name = 'entries_fts'"
            ).fetchone() is not None
            self._writer.executescript(SCHEMA)
            if not had_fts:
                # Databases created before the full-text index existed
                self._writer.execute("INSERT INTO entries_fts(entries_fts) VALUES ('rebuild')")
            self._writer.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        logger.info(f"Entry store opened at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        with self._connections_lock:
            self._connections.append(conn)
        return conn

    def _reader(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageError("Entry store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StorageError("Entry store is closed")
        with self._write_lock:
            try:
                yield self._writer
                self._writer.commit()
            except sqlite3.Error as e:
                self._writer.rollback()
                logger.error(f"Storage write failed: {e}")
                raise StorageError(str(e)) from e

    def _read(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        try:
            return self._reader().execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    # Writes

    def append(self, entry: Entry) -> int:
        """Persist an entry; durable once this returns."""
        context = json.dumps(entry.context) if entry.context else None
        with self._write() as conn:
            cursor = conn.execute(
                "INSERT INTO entries (source_type, content, timestamp, context) VALUES (?, ?, ?, ?)",
                (SourceType(entry.source_type).value, entry.content,
                 format_timestamp(entry.timestamp), context),
            )
            entry_id = cursor.lastrowid
        entry.id = entry_id
        return entry_id

    def evict_over_limit(self, source_type: SourceType, limit: int) -> List[int]:
        """Delete the oldest entries of ``source_type`` beyond ``limit``."""
        with self._write() as conn:
            rows = conn.execute(
                "SELECT id FROM entries WHERE source_type = ? ORDER BY id DESC LIMIT -1 OFFSET ?",
                (SourceType(source_type).value, limit),
            ).fetchall()
            ids = [row["id"] for row in rows]
            if ids:
                conn.executemany("DELETE FROM entries WHERE id = ?", [(i,) for i in ids])
        if ids:
            logger.debug(f"Evicted {len(ids)} {SourceType(source_type).value} entries over limit {limit}")
        return ids

    def delete_before(self, timestamp: datetime) -> List[int]:
        cutoff = format_timestamp(timestamp)
        with self._write() as conn:
            rows = conn.execute("SELECT id FROM entries WHERE timestamp < ?", (cutoff,)).fetchall()
            ids = [row["id"] for row in rows]
            conn.execute("DELETE FROM entries WHERE timestamp < ?", (cutoff,))
        logger.info(f"Deleted {len(ids)} entries captured before {cutoff}")
        return ids

    def delete_all(self) -> int:
        with self._write() as conn:
            count = conn.execute("DELETE FROM entries").rowcount
        logger.info(f"Deleted all {count} entries")
        return count

    def set_embedding(self, entry_id: int, vector: np.ndarray) -> bool:
        """Attach an embedding. Succeeds at most once per entry."""
        blob = np.asarray(vector, dtype=np.float32).tobytes()
        with self._write() as conn:
            cursor = conn.execute(
                "UPDATE entries SET embedding = ?, index_state = 'indexed' "
                "WHERE id = ? AND embedding IS NULL",
                (blob, entry_id),
            )
        return cursor.rowcount == 1

    def record_index_attempt(self, entry_id: int) -> int:
        with self._write() as conn:
            conn.execute(
                "UPDATE entries SET index_attempts = index_attempts + 1 WHERE id = ?",
                (entry_id,),
            )
            row = conn.execute(
                "SELECT index_attempts FROM entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return row["index_attempts"] if row else 0

    def mark_index_failed(self, entry_id: int) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE entries SET index_state = 'failed' WHERE id = ? AND embedding IS NULL",
                (entry_id,),
            )

    def optimize(self) -> None:
        """Periodic maintenance: checkpoint the WAL and compact the file."""
        with self._write() as conn:
            conn.execute("INSERT INTO entries_fts(entries_fts) VALUES ('optimize')")
            conn.execute("PRAGMA optimize")
        with self._write_lock:
            try:
                self._writer.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                self._writer.execute("VACUUM")
            except sqlite3.Error as e:
                raise StorageError(f"Maintenance failed: {e}") from e
        logger.info("Database maintenance completed")

    # Reads

    def get(self, entry_id: int) -> Optional[Entry]:
        rows = self._read(f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = ?", (entry_id,))
        return _row_to_entry(rows[0]) if rows else None

    def get_many(self, entry_ids: Sequence[int]) -> Dict[int, Entry]:
        entries: Dict[int, Entry] = {}
        ids = list(entry_ids)
        # Stay under SQLite's host parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            for row in self._read(
                f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id IN ({placeholders})", chunk
            ):
                entries[row["id"]] = _row_to_entry(row)
        return entries

    def exists(self, entry_id: int) -> bool:
        return bool(self._read("SELECT 1 FROM entries WHERE id = ?", (entry_id,)))

    def query_literal(
        self,
        text: str,
        sources: Optional[Sequence[SourceType]] = None,
        case_sensitive: bool = False,
        fuzzy: bool = False,
        limit: int = 10,
        cwd: Optional[str] = None,
    ) -> List[SearchResult]:
        """
        Substring search over content, ranked by relevance tier then recency.

        Candidates come from two places. The full-text index yields every
        entry whose tokens line up with the query, which covers all exact,
        prefix and word-boundary hits however old they are. Matches inside
        a word are not tokenized, so those are picked up by scanning the
        newest ``CANDIDATE_LIMIT`` rows. With ``fuzzy`` the newest entries
        that lack a substring hit are also scored by typo-tolerant token
        overlap.
        """
        if not text or not text.strip() or limit < 1:
            return []

        clause, params = _source_clause(sources)
        rows: List[sqlite3.Row] = []
        phrase = fts_phrase(text)
        if phrase is not None:
            rows.extend(self._read(
                f"SELECT {ENTRY_COLUMNS} FROM entries "
                f"WHERE id IN (SELECT rowid FROM entries_fts WHERE entries_fts MATCH ?){clause} "
                f"ORDER BY id DESC",
                [phrase] + params,
            ))

        if case_sensitive:
            where, needle = "instr(content, ?) > 0", text
        else:
            where, needle = "instr(casefold(content), ?) > 0", text.casefold()
        rows.extend(self._read(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE {where}{clause} ORDER BY id DESC LIMIT ?",
            [needle] + params + [CANDIDATE_LIMIT],
        ))

        results: List[SearchResult] = []
        seen = set()
        for row in rows:
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            entry = _row_to_entry(row)
            scored = literal_score(text, entry.content, case_sensitive)
            if scored is None:
                continue
            kind, score = scored
            results.append(SearchResult(entry, min(score + cwd_boost(entry.context, cwd), 1.0), kind))
        matched = {result.entry.id for result in results}

        if fuzzy and len(results) < limit:
            query_tokens = tokenize(text)
            window = self._read(
                f"SELECT {ENTRY_COLUMNS} FROM entries WHERE 1 = 1{clause} ORDER BY id DESC LIMIT ?",
                params + [FUZZY_WINDOW],
            )
            for row in window:
                if row["id"] in matched:
                    continue
                entry = _row_to_entry(row)
                score = fuzzy_score(query_tokens, entry.content)
                if score is None:
                    continue
                results.append(SearchResult(entry, score + cwd_boost(entry.context, cwd), MatchKind.FUZZY))

        return rank(results, limit)

    def unembedded_ids(self, limit: int = 1000) -> List[int]:
        """Entries still waiting for an embedding, oldest first."""
        rows = self._read(
            "SELECT id FROM entries WHERE index_state = 'pending' ORDER BY id LIMIT ?", (limit,)
        )
        return [row["id"] for row in rows]

    def iter_embeddings(self, batch_size: int = 1000) -> Iterator[Tuple[int, np.ndarray]]:
        last_id = 0
        while True:
            rows = self._read(
                "SELECT id, embedding FROM entries WHERE embedding IS NOT NULL AND id > ? "
                "ORDER BY id LIMIT ?",
                (last_id, batch_size),
            )
            if not rows:
                return
            for row in rows:
                yield row["id"], np.frombuffer(row["embedding"], dtype=np.float32)
            last_id = rows[-1]["id"]

    def counts(self) -> Dict[str, int]:
        rows = self._read("SELECT source_type, COUNT(*) AS n FROM entries GROUP BY source_type")
        counts = {source.value: 0 for source in SourceType}
        counts.update({row["source_type"]: row["n"] for row in rows})
        return counts

    def index_state_counts(self) -> Dict[str, int]:
        rows = self._read("SELECT index_state, COUNT(*) AS n FROM entries GROUP BY index_state")
        counts = {"pending": 0, "indexed": 0, "failed": 0}
        counts.update({row["index_state"]: row["n"] for row in rows})
        return counts

    def close(self) -> None:
        with self._write_lock:
            self._closed = True
            with self._connections_lock:
                for conn in self._connections:
                    try:
                        conn.close()
                    except sqlite3.Error as e:
                        logger.warning(f"Error closing connection: {e}")
                self._connections.clear()
        logger.info("Entry store closed")
