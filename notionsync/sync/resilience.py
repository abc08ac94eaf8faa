"""
Resilience utilities: retry with exponential backoff and simple circuit breaker.

Used around every remote I/O boundary of the sync core: node/children/row
fetches against the content source and media downloads. Store writes are not
retried here; they are retried by the job scheduler.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Type

from .logging_manager import get_logger

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 32.0
    jitter: bool = True
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def compute_backoff(self, attempt_index_zero_based: int) -> float:
        delay = min(self.base_delay_seconds * (2 ** attempt_index_zero_based), self.max_delay_seconds)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # 0.5x - 1.5x jitter window
        return delay

    def delay_for(self, attempt_index_zero_based: int, exc: BaseException) -> float:
        """Backoff for the given attempt, stretched to the server's Retry-After when rate limited."""
        delay = self.compute_backoff(attempt_index_zero_based)
        retry_after = getattr(exc, 'retry_after', None)
        if retry_after:
            delay = max(delay, min(retry_after, self.max_delay_seconds))
        return delay


@dataclass
class CircuitState:
    failures: int = 0
    open_until: Optional[float] = None  # epoch seconds when half-open allowed


@dataclass
class CircuitBreaker:
    failure_threshold: int = 3
    reset_timeout_seconds: float = 60.0
    _state: Dict[str, CircuitState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_open(self, key: str) -> bool:
        with self._lock:
            state = self._state.get(key)
            if not state:
                return False
            # open_until passed: half-open, allow one attempt
            if state.open_until is not None and time.time() >= state.open_until:
                state.open_until = None
                return False
            return state.failures >= self.failure_threshold and state.open_until is not None

    def record_success(self, key: str) -> None:
        with self._lock:
            if key in self._state:
                self._state[key] = CircuitState()

    def record_failure(self, key: str) -> None:
        with self._lock:
            state = self._state.setdefault(key, CircuitState())
            state.failures += 1
            if state.failures >= self.failure_threshold:
                state.open_until = time.time() + self.reset_timeout_seconds

    def get_state_snapshot(self) -> Dict[str, Dict[str, Optional[float]]]:
        snapshot: Dict[str, Dict[str, Optional[float]]] = {}
        with self._lock:
            for key, state in self._state.items():
                snapshot[key] = {
                    "failures": state.failures,
                    "open_until": datetime.fromtimestamp(state.open_until, tz=timezone.utc).isoformat() if state.open_until else None,
                }
        return snapshot


class CircuitOpenError(RuntimeError):
    pass


def with_retry(fn: Callable[[], object], *, policy: RetryPolicy, circuit_breaker: Optional[CircuitBreaker] = None,
               circuit_key: Optional[str] = None, sleep: Callable[[float], None] = time.sleep,
               description: str = "operation") -> object:
    """
    Execute function with retry and optional circuit breaker semantics.

    - If circuit breaker is provided and circuit is open for key, raises CircuitOpenError immediately.
    - Retries up to max_attempts on configured exceptions with exponential backoff and jitter.
    - Exceptions outside ``policy.retry_on_exceptions`` propagate on first occurrence.
    """
    if circuit_breaker and circuit_key and circuit_breaker.is_open(circuit_key):
        raise CircuitOpenError(f"Circuit open for {circuit_key}")

    last_exc: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        try:
            result = fn()
            if circuit_breaker and circuit_key:
                circuit_breaker.record_success(circuit_key)
            return result
        except policy.retry_on_exceptions as exc:  # type: ignore
            last_exc = exc
            if attempt >= policy.max_attempts - 1:
                if circuit_breaker and circuit_key:
                    circuit_breaker.record_failure(circuit_key)
                break
            delay = policy.delay_for(attempt, exc)
            logger.warning(f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}), retrying in {delay:.1f}s: {exc}")
            sleep(delay)
        except BaseException:
            if circuit_breaker and circuit_key:
                circuit_breaker.record_failure(circuit_key)
            raise

    if last_exc:
        raise last_exc
    raise RuntimeError("with_retry exhausted without exception context")
