"""Pre-write privacy filter.

Rules are compiled once per configuration snapshot into an immutable
``PrivacyRules`` object; evaluation is pure and never raises.

Normalization:
- ``contains``, ``starts_with`` and ``ends_with`` compare ``str.casefold()``
  of both pattern and text. ``starts_with`` ignores leading whitespace of the
  text and ``ends_with`` ignores trailing whitespace.
- ``regex`` patterns are applied with ``re.search`` to the raw text, as
  written. Use ``(?i)`` for case-insensitive regex rules.
- ``exclude_folders`` compares ``~``-expanded, symlink-resolved absolute
  paths. A folder written without a path separator (``.git``) matches any
  path component with that exact name.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from loguru import logger

from .config import PRIVACY_CATEGORIES, PrivacyConfig
from .errors import ConfigError
from .models import CONTEXT_SOURCES, SourceType


class Decision(Enum):
    KEEP = "keep"
    DROP = "drop"


@dataclass(frozen=True)
class RuleMatch:
    """The rule responsible for a drop. Never carries the dropped text."""
    category: str
    pattern: str

    def to_dict(self) -> Dict[str, str]:
        return {'category': self.category, 'pattern': self.pattern}


def normalize_path(path: str) -> str:
    return os.path.realpath(os.path.expanduser(path))


def _context_path(source_type: SourceType, context: Optional[Dict[str, Any]]) -> Optional[str]:
    if source_type not in CONTEXT_SOURCES or not context:
        return None
    path = context.get("cwd") or context.get("path")
    if not path or not isinstance(path, str):
        return None
    return path


class PrivacyRules:
    """Immutable, precompiled rule set."""

    def __init__(
        self,
        contains: Tuple[Tuple[str, str], ...] = (),
        starts_with: Tuple[Tuple[str, str], ...] = (),
        ends_with: Tuple[Tuple[str, str], ...] = (),
        regex: Tuple[Tuple[str, Pattern], ...] = (),
        folder_prefixes: Tuple[Tuple[str, str], ...] = (),
        folder_names: Tuple[Tuple[str, str], ...] = (),
    ):
        # Each item is (original pattern, compiled/normalized form)
        self._contains = contains
        self._starts_with = starts_with
        self._ends_with = ends_with
        self._regex = regex
        self._folder_prefixes = folder_prefixes
        self._folder_names = folder_names

    @classmethod
    def compile(cls, config: PrivacyConfig, strict: bool = False) -> "PrivacyRules":
        """
        Compile a privacy config.

        With ``strict`` any empty pattern or malformed regex raises
        ``ConfigError``. Otherwise the offending rule is skipped (it never
        matches) and a warning is logged.
        """
        def reject(category: str, pattern: str, reason: str) -> None:
            message = f"Invalid {category} rule {pattern!r}: {reason}"
            if strict:
                raise ConfigError(message)
            logger.warning(f"{message}; rule disabled")

        literal: Dict[str, List[Tuple[str, str]]] = {
            "contains": [], "starts_with": [], "ends_with": []
        }
        for category in literal:
            for pattern in getattr(config, category):
                if not pattern:
                    reject(category, pattern, "empty pattern")
                    continue
                literal[category].append((pattern, pattern.casefold()))

        regex = []
        for pattern in config.regex:
            if not pattern:
                reject("regex", pattern, "empty pattern")
                continue
            try:
                regex.append((pattern, re.compile(pattern)))
            except re.error as e:
                reject("regex", pattern, str(e))

        prefixes, names = [], []
        for pattern in config.exclude_folders:
            stripped = pattern.strip()
            if not stripped:
                reject("exclude_folders", pattern, "empty pattern")
                continue
            if os.sep in stripped or stripped.startswith("~"):
                prefixes.append((pattern, normalize_path(stripped)))
            else:
                names.append((pattern, stripped))

        return cls(
            contains=tuple(literal["contains"]),
            starts_with=tuple(literal["starts_with"]),
            ends_with=tuple(literal["ends_with"]),
            regex=tuple(regex),
            folder_prefixes=tuple(prefixes),
            folder_names=tuple(names),
        )

    def match(
        self,
        text: str,
        source_type: SourceType,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[RuleMatch]:
        """Return the first matching rule, or None when the entry may be kept."""
        folded = text.casefold()

        for pattern, needle in self._contains:
            if needle in folded:
                return RuleMatch("contains", pattern)

        if self._starts_with:
            head = folded.lstrip()
            for pattern, needle in self._starts_with:
                if head.startswith(needle):
                    return RuleMatch("starts_with", pattern)

        if self._ends_with:
            tail = folded.rstrip()
            for pattern, needle in self._ends_with:
                if tail.endswith(needle):
                    return RuleMatch("ends_with", pattern)

        for pattern, compiled in self._regex:
            if compiled.search(text):
                return RuleMatch("regex", pattern)

        path = _context_path(source_type, context)
        if path is not None and (self._folder_prefixes or self._folder_names):
            resolved = normalize_path(path)
            for pattern, folder in self._folder_prefixes:
                if resolved == folder or resolved.startswith(folder.rstrip(os.sep) + os.sep):
                    return RuleMatch("exclude_folders", pattern)
            if self._folder_names:
                parts = set(PurePath(resolved).parts)
                for pattern, name in self._folder_names:
                    if name in parts:
                        return RuleMatch("exclude_folders", pattern)

        return None

    def evaluate(
        self,
        text: str,
        source_type: SourceType,
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        if self.match(text, source_type, context) is None:
            return Decision.KEEP
        return Decision.DROP

    def __len__(self) -> int:
        return sum(len(group) for group in (
            self._contains, self._starts_with, self._ends_with,
            self._regex, self._folder_prefixes, self._folder_names,
        ))


def evaluate(
    text: str,
    source_type: Union[SourceType, str],
    context: Optional[Dict[str, Any]],
    config: Union[PrivacyRules, PrivacyConfig],
) -> Decision:
    """Keep/drop decision for a single capture."""
    rules = config if isinstance(config, PrivacyRules) else PrivacyRules.compile(config)
    return rules.evaluate(text, SourceType(source_type), context)


def validate_rule(category: str, pattern: str) -> None:
    """Raise ConfigError if a single rule cannot be added."""
    if category not in PRIVACY_CATEGORIES:
        raise ConfigError(f"Unknown privacy rule category: {category}")
    PrivacyRules.compile(PrivacyConfig(**{
        **{c: [] for c in PRIVACY_CATEGORIES}, category: [pattern]
    }), strict=True)
