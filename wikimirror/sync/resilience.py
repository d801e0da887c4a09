"""
Retry with exponential backoff and a per-host circuit breaker.

Source clients wrap every upstream request in ``with_retry``. Only
TransientServerError (5xx responses and network failures) is retried; every
other failure, including 4xx responses, propagates on the first attempt.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .error_tracker import RequestFailed, TransientServerError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 32.0
    jitter: bool = False
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (TransientServerError,)

    def compute_backoff(self, attempt_index_zero_based: int) -> float:
        delay = min(self.base_delay_seconds * (2 ** attempt_index_zero_based), self.max_delay_seconds)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # 0.5x - 1.5x jitter window
        return delay


@dataclass
class CircuitState:
    failures: int = 0
    open_until: Optional[float] = None  # epoch seconds when half-open allowed


@dataclass
class CircuitBreaker:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    _state: Dict[str, CircuitState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_open(self, key: str) -> bool:
        with self._lock:
            state = self._state.get(key)
            if not state:
                return False
            # Past open_until: half-open, let one attempt through
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


def with_retry(fn: Callable[[], T], *, policy: RetryPolicy, circuit_breaker: Optional[CircuitBreaker] = None,
               circuit_key: Optional[str] = None, sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Execute ``fn`` with retry and optional circuit breaker semantics.

    - If the circuit for ``circuit_key`` is open, raises RequestFailed immediately.
    - Retries up to ``policy.max_attempts`` on ``policy.retry_on_exceptions``
      with exponential backoff (1s, 2s, ... for the default policy).
    - A network-level TransientServerError that exhausts the budget is
      re-raised as RequestFailed; a 5xx one is re-raised as is.
    """
    if circuit_breaker and circuit_key and circuit_breaker.is_open(circuit_key):
        raise RequestFailed(f"Circuit open for {circuit_key}", source_id=circuit_key,
                            recovery_suggestion="Wait for the upstream to recover and retry the run.")

    last_exc: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        try:
            result = fn()
            if circuit_breaker and circuit_key:
                circuit_breaker.record_success(circuit_key)
            return result
        except policy.retry_on_exceptions as exc:  # type: ignore[misc]
            last_exc = exc
            if attempt >= policy.max_attempts - 1:
                if circuit_breaker and circuit_key:
                    circuit_breaker.record_failure(circuit_key)
                break
            sleep(policy.compute_backoff(attempt))

    if isinstance(last_exc, TransientServerError) and last_exc.network:
        raise RequestFailed(
            f"{last_exc.message} (gave up after {policy.max_attempts} attempts)",
            source_id=last_exc.source_id,
        ) from last_exc
    if last_exc:
        raise last_exc
    raise RuntimeError("with_retry exhausted without exception context")
