"""Data models for the jotx daemon."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class SourceType(str, Enum):
    CLIPBOARD = "clipboard"
    SHELL = "shell"
    FILE = "file"
    NOTE = "note"


# Only these carry a working directory or path in their context
CONTEXT_SOURCES = (SourceType.SHELL, SourceType.FILE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Entry:
    """A single captured unit. Immutable once written, except for ``embedding``."""
    id: Optional[int]
    content: str
    source_type: SourceType
    timestamp: datetime = field(default_factory=utcnow)
    context: Optional[Dict[str, Any]] = None
    embedding: Optional[np.ndarray] = None

    @property
    def is_indexed(self) -> bool:
        return self.embedding is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'content': self.content,
            'source_type': self.source_type.value,
            'timestamp': self.timestamp.isoformat(),
            'context': self.context,
            'indexed': self.is_indexed,
        }


class CaptureStatus(str, Enum):
    STORED = "stored"
    DROPPED = "dropped"
    DISABLED = "disabled"
    FAILED = "failed"


@dataclass
class CaptureOutcome:
    """Result of a capture. Capture never raises, so failures are outcomes too."""
    status: CaptureStatus
    entry_id: Optional[int] = None
    reason: Optional[str] = None
    evicted: List[int] = field(default_factory=list)

    @classmethod
    def stored(cls, entry_id: int, evicted: Optional[List[int]] = None) -> "CaptureOutcome":
        return cls(CaptureStatus.STORED, entry_id=entry_id, evicted=list(evicted or []))

    @classmethod
    def dropped(cls, reason: str) -> "CaptureOutcome":
        return cls(CaptureStatus.DROPPED, reason=reason)

    @classmethod
    def disabled(cls, reason: str) -> "CaptureOutcome":
        return cls(CaptureStatus.DISABLED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "CaptureOutcome":
        return cls(CaptureStatus.FAILED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'id': self.entry_id,
            'reason': self.reason,
            'evicted': self.evicted,
        }


class SearchMode(str, Enum):
    LITERAL = "literal"
    SEMANTIC = "semantic"
    AUTO = "auto"


class MatchKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    WORD = "word"
    SUBSTRING = "substring"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


@dataclass
class SearchResult:
    entry: Entry
    score: float
    match: MatchKind

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data['score'] = round(self.score, 4)
        data['match'] = self.match.value
        return data


class SearchStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass
class SearchResponse:
    """Search outcome that tells "no results" apart from "search failed"."""
    query: str
    mode: SearchMode
    status: SearchStatus
    results: List[SearchResult] = field(default_factory=list)
    error: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def ids(self) -> List[int]:
        return [r.entry.id for r in self.results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'mode': self.mode.value,
            'status': self.status.value,
            'results': [r.to_dict() for r in self.results],
            'error': self.error,
            'latency_ms': round(self.latency_ms, 2),
        }


@dataclass
class Answer:
    text: str
    used_entries: List[int] = field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None
    results: List[SearchResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'used_entries': self.used_entries,
            'degraded': self.degraded,
            'error': self.error,
            'results': [r.to_dict() for r in self.results],
        }


class IndexResult(str, Enum):
    INDEXED = "indexed"
    ALREADY_INDEXED = "already_indexed"
    MISSING = "missing"
