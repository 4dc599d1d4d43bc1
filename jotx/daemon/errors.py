"""Error taxonomy for the jotx core.

Capture-path errors never reach the caller (they are converted into a
``CaptureOutcome``). Query-path errors are reported as structured results.
"""


class JotxError(Exception):
    """Base class for all jotx errors."""


class ConfigError(JotxError):
    """Invalid configuration (bad rule pattern, bad limit)."""


class StorageError(JotxError):
    """Database I/O failure or corruption."""


class IndexingError(JotxError):
    """Embedding provider unavailable or vector mismatch. Recoverable."""


class ProviderError(JotxError):
    """LLM provider unavailable, failed or timed out."""


class CircuitOpenError(JotxError):
    """A circuit breaker is open and refused the call."""
