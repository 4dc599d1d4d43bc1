"""Failure isolation for external collaborators.

- ``CircuitBreaker`` stops hammering the local LLM once it keeps failing.
- ``RetryPolicy`` computes exponential backoff with jitter for requeued
  index jobs.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .errors import CircuitOpenError


class ServiceState(Enum):
    """Service health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"


@dataclass
class ServiceHealth:
    """Tracks health of a service."""
    name: str
    state: ServiceState = ServiceState.HEALTHY
    error_count: int = 0
    success_count: int = 0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None
    consecutive_failures: int = 0
    circuit_opened_at: Optional[datetime] = None

    @property
    def error_rate(self) -> float:
        total = self.error_count + self.success_count
        if total == 0:
            return 0.0
        return self.error_count / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'state': self.state.value,
            'error_count': self.error_count,
            'success_count': self.success_count,
            'consecutive_failures': self.consecutive_failures,
            'last_error': self.last_error,
            'last_success': self.last_success.isoformat() if self.last_success else None,
        }


class CircuitBreaker:
    """Circuit breaker for service protection."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 expected_exception: type = Exception):
        """
        Initialize circuit breaker.

        Args:
            name: Service name
            failure_threshold: Consecutive failures before opening the circuit
            recovery_timeout: Seconds before a trial call is let through
            expected_exception: Exception type counted as a failure
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.health = ServiceHealth(name=name)
        self.recovery_attempts = 0

    @property
    def is_open(self) -> bool:
        return self.health.state == ServiceState.CIRCUIT_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Call ``func`` with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open and not yet due for recovery
        """
        if self.is_open:
            if self._should_attempt_recovery():
                logger.info(f"Circuit breaker {self.name}: Attempting recovery")
                self.recovery_attempts += 1
            else:
                raise CircuitOpenError(f"Circuit breaker {self.name} is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception as e:
            self._record_failure(e)
            if self.is_open or self.health.consecutive_failures >= self.failure_threshold:
                self._open_circuit()
            raise

        self._record_success()
        return result

    def _record_success(self):
        self.health.success_count += 1
        self.health.consecutive_failures = 0
        self.health.last_success = datetime.now()

        if self.health.state == ServiceState.CIRCUIT_OPEN:
            logger.info(f"Circuit breaker {self.name}: Circuit closed after recovery")
            self.health.state = ServiceState.HEALTHY
            self.recovery_attempts = 0
        elif self.health.state == ServiceState.DEGRADED and self.health.error_rate < 0.1:
            self.health.state = ServiceState.HEALTHY

    def _record_failure(self, error: Exception):
        self.health.error_count += 1
        self.health.consecutive_failures += 1
        self.health.last_error = f"{type(error).__name__}: {error}"

        if self.health.state != ServiceState.CIRCUIT_OPEN:
            if self.health.error_rate > 0.5:
                self.health.state = ServiceState.UNHEALTHY
            elif self.health.error_rate > 0.2:
                self.health.state = ServiceState.DEGRADED

    def _open_circuit(self):
        logger.warning(
            f"Circuit breaker {self.name}: Opening circuit after "
            f"{self.health.consecutive_failures} failures"
        )
        self.health.state = ServiceState.CIRCUIT_OPEN
        self.health.circuit_opened_at = datetime.now()

    def _should_attempt_recovery(self) -> bool:
        if not self.health.circuit_opened_at:
            return True

        elapsed = (datetime.now() - self.health.circuit_opened_at).total_seconds()

        # Back off further after each failed recovery attempt
        backoff = self.recovery_timeout * (2 ** min(self.recovery_attempts, 5))

        return elapsed >= backoff


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        """
        Initialize retry policy.

        Args:
            max_retries: Maximum retry attempts
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Whether to add jitter
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def should_retry(self, attempt: int) -> bool:
        """``attempt`` is the number of failures so far."""
        return attempt <= self.max_retries

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay before retry number ``attempt`` (0-based).

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay
