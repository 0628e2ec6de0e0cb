"""Circuit breaker for calls to external dependencies.

One breaker exists per named dependency (identity provider, subscription
lookup, data store) and is shared by every caller of that dependency. The
breaker trips after ``failure_threshold`` consecutive dependency failures,
rejects calls without invoking them while the cooldown runs, then lets
exactly one trial call through to decide whether to close again.

Only dependency-level failures count toward tripping: timeouts, connection
errors and 5xx responses. Client errors (4xx, validation) are re-raised to
the caller but leave the breaker healthy, so a buggy caller cannot take a
working dependency down for everyone else.
"""

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

import httpx
from sqlalchemy.exc import InterfaceError, OperationalError

from creditflow.core.clock import utcnow
from creditflow.core.metrics import (
    CIRCUIT_BREAKER_FAILURES_TOTAL,
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    CIRCUIT_BREAKER_STATE,
)

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class CircuitBreakerError(Exception):
    """Base exception for circuit breaker errors."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected without reaching the dependency."""

    def __init__(self, dependency: str, retry_after: float):
        self.dependency = dependency
        self.retry_after = max(retry_after, 0.0)
        super().__init__(
            f"Circuit '{dependency}' is open, retry after {self.retry_after:.1f}s"
        )


class DependencyTimeoutError(CircuitBreakerError):
    """Raised when a wrapped call exceeds the breaker's call timeout."""

    def __init__(self, dependency: str, timeout: float):
        self.dependency = dependency
        self.timeout = timeout
        super().__init__(f"Call to '{dependency}' timed out after {timeout}s")


class DependencyUnavailableError(CircuitBreakerError):
    """Raised by clients to report that a dependency is failing."""

    def __init__(self, dependency: str, reason: str = ""):
        self.dependency = dependency
        self.reason = reason
        super().__init__(f"Dependency '{dependency}' unavailable: {reason}")


def is_dependency_failure(exc: BaseException) -> bool:
    """Decide whether an exception says the dependency itself is unhealthy."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(
        exc,
        (
            DependencyTimeoutError,
            DependencyUnavailableError,
            TimeoutError,
            ConnectionError,
            httpx.TransportError,
            OperationalError,
            InterfaceError,
        ),
    )


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time view of a breaker, safe to hand to callers."""
    name: str
    state: CircuitState
    failure_count: int
    failure_threshold: int
    cooldown_seconds: float
    opened_at: Optional[datetime]
    retry_after: float
    trial_in_flight: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "retry_after": round(self.retry_after, 3),
            "trial_in_flight": self.trial_in_flight,
        }


class CircuitBreaker:
    """Circuit breaker guarding one named dependency.

    State changes happen under a threading lock that is never held across an
    await, so concurrent ``execute()`` calls from any number of tasks (or
    threads) cannot double-open the circuit or lose a failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        call_timeout: Optional[float] = 5.0,
        classifier: Callable[[BaseException], bool] = is_dependency_failure,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.call_timeout = call_timeout
        self.classifier = classifier
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._opened_at_wall: Optional[datetime] = None
        self._trial_in_flight = False

        CIRCUIT_BREAKER_STATE.labels(dependency=name).set(0)

    # ==================== Public API ====================

    async def execute(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke ``fn`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open (or a trial is already running).
            DependencyTimeoutError: The call exceeded ``call_timeout``.
            Exception: Whatever ``fn`` raised, after it has been classified.
        """
        is_trial = self._acquire()

        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                if self.call_timeout is not None:
                    result = await asyncio.wait_for(result, timeout=self.call_timeout)
                else:
                    result = await result
        except asyncio.CancelledError:
            # The caller gave up; that says nothing about the dependency
            self._release_trial(is_trial)
            raise
        except asyncio.TimeoutError as exc:
            self._record_failure(is_trial, exc)
            raise DependencyTimeoutError(self.name, self.call_timeout or 0.0) from exc
        except Exception as exc:
            if self.classifier(exc):
                self._record_failure(is_trial, exc)
            else:
                self._record_success(is_trial)
            raise

        self._record_success(is_trial)
        return result

    def is_available(self) -> bool:
        """Whether a call made now would be attempted. Never changes state."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._trial_in_flight:
                return False
            if self._state == CircuitState.HALF_OPEN:
                return True
            return self._remaining_cooldown() <= 0

    def force_close(self) -> None:
        """Operator override: close the circuit and forget past failures."""
        with self._lock:
            previous = self._state
            self._failure_count = 0
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)
        logger.warning(
            f"Circuit '{self.name}' force-closed by operator (was {previous.value})",
            extra={"dependency": self.name},
        )

    def get_state(self) -> CircuitBreakerSnapshot:
        with self._lock:
            state = self._state
            retry_after = 0.0
            if state == CircuitState.OPEN:
                retry_after = self._remaining_cooldown()
                if retry_after <= 0:
                    # Cooldown elapsed; the next call becomes the trial
                    state = CircuitState.HALF_OPEN
                    retry_after = 0.0
            return CircuitBreakerSnapshot(
                name=self.name,
                state=state,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                opened_at=self._opened_at_wall,
                retry_after=retry_after,
                trial_in_flight=self._trial_in_flight,
            )

    @property
    def state(self) -> CircuitState:
        return self.get_state().state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    # ==================== State Machine ====================

    def _acquire(self) -> bool:
        """Admit a call or raise CircuitOpenError. Returns True for the trial call."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return False

            if self._state == CircuitState.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    self._reject(remaining)
                self._transition(CircuitState.HALF_OPEN)

            if self._trial_in_flight:
                self._reject(0.0)
            self._trial_in_flight = True
            return True

    def _reject(self, retry_after: float) -> None:
        CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(dependency=self.name).inc()
        logger.debug(f"Circuit '{self.name}' rejected call", extra={"dependency": self.name})
        raise CircuitOpenError(self.name, retry_after)

    def _record_success(self, is_trial: bool) -> None:
        with self._lock:
            if is_trial:
                self._trial_in_flight = False
                self._failure_count = 0
                self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def _record_failure(self, is_trial: bool, exc: BaseException) -> None:
        CIRCUIT_BREAKER_FAILURES_TOTAL.labels(dependency=self.name).inc()
        with self._lock:
            self._failure_count += 1
            if is_trial:
                self._trial_in_flight = False
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open()
            # Stragglers admitted before the circuit opened only add to the count
            failure_count = self._failure_count
        logger.debug(
            f"Circuit '{self.name}' recorded failure {failure_count}: {type(exc).__name__}",
            extra={"dependency": self.name},
        )

    def _release_trial(self, is_trial: bool) -> None:
        if not is_trial:
            return
        with self._lock:
            self._trial_in_flight = False

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._opened_at_wall = utcnow()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._opened_at_wall = None
        CIRCUIT_BREAKER_STATE.labels(dependency=self.name).set(_STATE_GAUGE_VALUES[new_state])

        if old_state == new_state:
            return
        message = (
            f"Circuit '{self.name}' transitioned: {old_state.value} -> {new_state.value}"
        )
        if new_state == CircuitState.OPEN:
            logger.error(
                message,
                extra={"dependency": self.name, "failure_count": self._failure_count},
            )
        else:
            logger.info(message, extra={"dependency": self.name})

    def _remaining_cooldown(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.cooldown_seconds - (self._clock() - self._opened_at)


class CircuitBreakerRegistry:
    """Explicit, injectable collection of breakers keyed by dependency name."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        with self._lock:
            if breaker.name in self._breakers:
                raise ValueError(f"Circuit breaker '{breaker.name}' already registered")
            self._breakers[breaker.name] = breaker
        return breaker

    def get_or_create(self, name: str, **config: Any) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, **config)
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker:
        try:
            return self._breakers[name]
        except KeyError:
            raise KeyError(f"No circuit breaker registered for '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(list(self._breakers.values()))

    def snapshot(self) -> list[CircuitBreakerSnapshot]:
        return [breaker.get_state() for breaker in self]
