"""
Circuit breaker pattern implementation for resilient service calls.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from .errors import AccessLayerException
from .logging import get_logger
from .metrics import ResilienceMetrics

T = TypeVar("T")

_STATE_GAUGE = {"closed": 0, "half_open": 1, "open": 2}


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # One trial call allowed through


class CircuitBreakerOpenError(AccessLayerException):
    """Raised instead of invoking the action while the circuit is open."""

    def __init__(self, name: str, retry_after: Optional[float] = None):
        details: Dict[str, Any] = {"breaker": name}
        if retry_after is not None:
            details["retry_after"] = round(retry_after, 3)
        super().__init__(
            "CIRCUIT_OPEN",
            f"Circuit breaker '{name}' is OPEN - service temporarily unavailable",
            details,
        )
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Counts failures of a wrapped async action and fails fast once tripped.

    The breaker knows nothing about what it wraps. Counters and state are
    only touched while holding ``_lock``; the action itself runs outside it.
    Every transition bumps a generation number, and an outcome reported
    under an older generation is logged but changes nothing, so only the
    half-open trial decides whether the circuit closes.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 reset_timeout: float = 30.0,
                 expected_exception: Type[BaseException] = Exception,
                 name: str = "default",
                 metrics: Optional[ResilienceMetrics] = None,
                 clock: Callable[[], float] = time.monotonic):
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got {failure_threshold}")
        if reset_timeout < 0:
            raise ValueError(f"reset_timeout must not be negative, got {reset_timeout}")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.metrics = metrics
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._generation = 0
        self._lock = asyncio.Lock()

        self._publish_state()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitState.OPEN

    async def execute(self, action: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``action`` under breaker protection.

        The action's own result or exception is passed through unchanged;
        only an open circuit produces ``CircuitBreakerOpenError``.
        """
        is_trial, generation = await self._before_call()

        try:
            result = await action(*args, **kwargs)
        except self.expected_exception as exc:
            await self._on_failure(exc, is_trial, generation)
            raise
        except BaseException:
            # Not a dependency failure; just give the trial slot back.
            if is_trial:
                async with self._lock:
                    if generation == self._generation:
                        self._trial_in_flight = False
            raise

        await self._on_success(is_trial, generation)
        return result

    async def _before_call(self) -> Tuple[bool, int]:
        """Admit or reject a call.

        Returns whether the call is the half-open trial, and the state
        generation it was admitted under.
        """
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return False, self._generation

            if self._state == CircuitState.OPEN:
                elapsed = self._elapsed_since_failure()
                if elapsed < self.reset_timeout:
                    self.logger.warning("Circuit is OPEN, fast failing", breaker=self.name)
                    raise CircuitBreakerOpenError(self.name, self.reset_timeout - elapsed)
                self._transition(CircuitState.HALF_OPEN)

            # HALF_OPEN admits exactly one trial at a time.
            if self._trial_in_flight:
                raise CircuitBreakerOpenError(self.name)
            self._trial_in_flight = True
            return True, self._generation

    async def _on_success(self, is_trial: bool, generation: int) -> None:
        async with self._lock:
            if generation != self._generation:
                self.logger.debug("Late success ignored", breaker=self.name, state=self._state.value)
                return

            if is_trial:
                self._trial_in_flight = False
                self._transition(CircuitState.CLOSED)
            else:
                self._failure_count = 0

    async def _on_failure(self, error: BaseException, is_trial: bool, generation: int) -> None:
        async with self._lock:
            if generation != self._generation:
                self.logger.debug(
                    "Late failure ignored",
                    breaker=self.name,
                    state=self._state.value,
                    error=str(error),
                )
                return

            self._failure_count += 1
            self._last_failure_time = self._clock()
            self.logger.warning(
                "Failure detected",
                breaker=self.name,
                failure_count=self._failure_count,
                error=str(error),
            )

            if is_trial:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
            elif self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def _elapsed_since_failure(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return self._clock() - self._last_failure_time

    def _transition(self, new_state: CircuitState) -> None:
        self._state = new_state
        self._generation += 1

        if new_state == CircuitState.OPEN:
            self.logger.error(
                "Circuit breaker opened",
                breaker=self.name,
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
            )
        elif new_state == CircuitState.HALF_OPEN:
            self.logger.info("Circuit breaker half-open, testing next request", breaker=self.name)
        else:
            self._failure_count = 0
            self._last_failure_time = None
            self.logger.info("Circuit breaker closed, service recovered", breaker=self.name)

        if self.metrics:
            self.metrics.increment_counter(
                "circuit_breaker_transitions_total", breaker=self.name, to_state=new_state.value
            )
        self._publish_state()

    def _publish_state(self) -> None:
        if self.metrics:
            self.metrics.set_gauge(
                "circuit_breaker_state", _STATE_GAUGE[self._state.value], breaker=self.name
            )

    async def reset(self) -> None:
        """Force the breaker back to CLOSED, e.g. from an operator endpoint."""
        async with self._lock:
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
        }


class CircuitBreakerRegistry:
    """Owns the named breakers of one service runtime.

    One breaker per downstream dependency; unrelated dependencies never share
    an instance.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 reset_timeout: float = 30.0,
                 metrics: Optional[ResilienceMetrics] = None):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.metrics = metrics
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_registry")

    def get(self,
            name: str,
            failure_threshold: Optional[int] = None,
            reset_timeout: Optional[float] = None,
            expected_exception: Type[BaseException] = Exception) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                failure_threshold=failure_threshold or self.failure_threshold,
                reset_timeout=reset_timeout if reset_timeout is not None else self.reset_timeout,
                expected_exception=expected_exception,
                name=name,
                metrics=self.metrics,
            )
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }
