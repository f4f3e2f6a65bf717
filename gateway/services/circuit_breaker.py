"""
Circuit breaker for outbound calls to downstream dependencies.

States:
- CLOSED: normal operation, calls pass through
- OPEN: dependency is failing, calls are rejected without being made
- HALF_OPEN: reset timeout elapsed, one trial call decides open/closed

Outcomes are tracked in a rolling window of time buckets; the breaker opens
when the window has enough volume and the failure percentage reaches the
threshold. Callers never see downstream exceptions: every call resolves to
``Ok(value)`` or ``Fallback(reason, body)``.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from gateway.logging_config import get_logger
from gateway.models.timestamps import to_iso
from gateway.services.result import BreakerOutcome, Fallback, FallbackBody, Ok

logger = get_logger("circuit_breaker")

OUTCOME_SUCCESS = "successes"
OUTCOME_FAILURE = "failures"
OUTCOME_TIMEOUT = "timeouts"
OUTCOME_REJECT = "rejects"
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_TIMEOUT, OUTCOME_REJECT)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    timeout_seconds: float = 10.0
    error_threshold_percentage: float = 50.0
    reset_timeout_seconds: float = 30.0
    volume_threshold: int = 5
    rolling_window_seconds: float = 10.0
    rolling_buckets: int = 10
    success_threshold: int = 1

    def __post_init__(self):
        if self.rolling_buckets < 1 or self.rolling_window_seconds <= 0:
            raise ValueError("rolling window needs at least one bucket and a positive duration")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerConfig":
        return cls(
            timeout_seconds=settings.breaker_timeout_seconds,
            error_threshold_percentage=settings.breaker_error_threshold_percentage,
            reset_timeout_seconds=settings.breaker_reset_timeout_seconds,
            volume_threshold=settings.breaker_volume_threshold,
            rolling_window_seconds=settings.breaker_rolling_window_seconds,
            rolling_buckets=settings.breaker_rolling_buckets,
            success_threshold=settings.breaker_success_threshold,
        )


class _Bucket:
    __slots__ = ("slot", "successes", "failures", "timeouts", "rejects")

    def __init__(self, slot: int):
        self.slot = slot
        self.successes = 0
        self.failures = 0
        self.timeouts = 0
        self.rejects = 0


class RollingWindow:
    """Fixed-duration outcome counters split into ``buckets`` time slots."""

    def __init__(self, window_seconds: float, buckets: int, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self.buckets = buckets
        self._span = window_seconds / buckets
        self._clock = clock
        self._buckets: deque[_Bucket] = deque()

    def _rotate(self) -> _Bucket:
        slot = int(self._clock() // self._span)
        while self._buckets and self._buckets[0].slot <= slot - self.buckets:
            self._buckets.popleft()
        if not self._buckets or self._buckets[-1].slot != slot:
            self._buckets.append(_Bucket(slot))
        return self._buckets[-1]

    def record(self, outcome: str) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")
        bucket = self._rotate()
        setattr(bucket, outcome, getattr(bucket, outcome) + 1)

    def totals(self) -> dict[str, int]:
        self._rotate()
        return {outcome: sum(getattr(b, outcome) for b in self._buckets) for outcome in OUTCOMES}

    def clear(self) -> None:
        self._buckets.clear()


def error_percentage(totals: dict[str, int]) -> float:
    volume = totals[OUTCOME_SUCCESS] + totals[OUTCOME_FAILURE] + totals[OUTCOME_TIMEOUT]
    if volume == 0:
        return 0.0
    return (totals[OUTCOME_FAILURE] + totals[OUTCOME_TIMEOUT]) / volume * 100


class CircuitBreaker:
    """
    Rolling-window circuit breaker for one downstream dependency.

    Example:
        breaker = CircuitBreaker("case_service")
        outcome = await breaker.execute(lambda: client.get(url))
        if isinstance(outcome, Ok):
            ...
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        on_open: Optional[Callable[["CircuitBreaker"], None]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_open = on_open
        self._window = RollingWindow(self.config.rolling_window_seconds, self.config.rolling_buckets, clock)
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._half_open_successes = 0
        self._trial_in_flight = False
        self._lifetime = {outcome: 0 for outcome in OUTCOMES}
        self._opens = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() >= self._opened_at + self.config.reset_timeout_seconds
        ):
            self._transition_to(CircuitState.HALF_OPEN, "reset timeout elapsed")
        return self._state

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def _transition_to(self, new_state: CircuitState, reason: str) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        context = {
            "circuit_breaker": self.name,
            "old_state": old_state.value,
            "new_state": new_state.value,
            "reason": reason,
            "counters": self._window.totals(),
        }

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._half_open_successes = 0
            self._opens += 1
            logger.error(f"Circuit breaker '{self.name}' OPENED, failing fast", extra={"context": context})
            if self._on_open is not None:
                try:
                    self._on_open(self)
                except Exception as exc:
                    logger.error(
                        "Circuit breaker on_open hook failed",
                        extra={"context": {"circuit_breaker": self.name, "error": str(exc)}},
                    )
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_successes = 0
            logger.info(f"Circuit breaker '{self.name}' HALF-OPEN, testing recovery", extra={"context": context})
        else:
            self._opened_at = None
            self._half_open_successes = 0
            self._window.clear()
            logger.info(f"Circuit breaker '{self.name}' CLOSED, service recovered", extra={"context": context})

    def _record(self, outcome: str) -> None:
        self._window.record(outcome)
        self._lifetime[outcome] += 1

    def _on_success(self) -> None:
        self._record(OUTCOME_SUCCESS)
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED, "trial call succeeded")

    def _on_failure(self, outcome: str, error: str) -> None:
        self._record(outcome)
        logger.warning(
            f"Circuit breaker '{self.name}' recorded {outcome[:-1]}",
            extra={"context": {"circuit_breaker": self.name, "error": error}},
        )
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN, f"{outcome[:-1]} in half-open")
            return
        if self._state != CircuitState.CLOSED:
            return
        totals = self._window.totals()
        volume = totals[OUTCOME_SUCCESS] + totals[OUTCOME_FAILURE] + totals[OUTCOME_TIMEOUT]
        percentage = error_percentage(totals)
        if volume >= self.config.volume_threshold and percentage >= self.config.error_threshold_percentage:
            self._transition_to(CircuitState.OPEN, f"error rate {percentage:.1f}% over {volume} calls")

    def _reject(self, fallback: FallbackBody) -> Fallback:
        self._record(OUTCOME_REJECT)
        logger.warning(
            f"Circuit breaker '{self.name}' rejected call (circuit open)",
            extra={"context": {"circuit_breaker": self.name}},
        )
        return Fallback(reason="open", body=fallback)

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        fallback: Optional[FallbackBody] = None,
    ) -> BreakerOutcome:
        """Run ``operation`` under the breaker, bounded by the call timeout."""
        fallback = fallback or FallbackBody()
        state = self.state

        if state == CircuitState.OPEN:
            return self._reject(fallback)
        is_trial = state == CircuitState.HALF_OPEN
        if is_trial:
            if self._trial_in_flight:
                return self._reject(fallback)
            self._trial_in_flight = True

        try:
            value = await asyncio.wait_for(operation(), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            self._on_failure(OUTCOME_TIMEOUT, f"timed out after {self.config.timeout_seconds}s")
            return Fallback(reason="timeout", body=fallback, detail="Request timeout")
        except Exception as exc:
            self._on_failure(OUTCOME_FAILURE, f"{type(exc).__name__}: {exc}")
            return Fallback(reason="failure", body=fallback, detail=str(exc))
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return Ok(value)

    def get_state(self) -> dict:
        state = self.state
        totals = self._window.totals()
        next_attempt_at = None
        if state == CircuitState.OPEN and self._opened_at is not None:
            next_attempt_at = to_iso(self._opened_at + self.config.reset_timeout_seconds)
        return {
            "name": self.name,
            "state": state.value,
            "counters": totals,
            "error_percentage": round(error_percentage(totals), 1),
            "opened_at": to_iso(self._opened_at),
            "next_attempt_at": next_attempt_at,
            "total": dict(self._lifetime),
            "opens": self._opens,
        }

    def reset(self) -> None:
        """Force the breaker closed and clear its counters (operator recovery)."""
        logger.info(f"Circuit breaker '{self.name}' manually reset")
        self._transition_to(CircuitState.CLOSED, "manual reset")
        self._window.clear()
        self._opened_at = None
        self._trial_in_flight = False


class CircuitBreakerRegistry:
    """One breaker per named dependency, sharing a config."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        on_open: Optional[Callable[[CircuitBreaker], None]] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_open = on_open
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.config, clock=self._clock, on_open=self._on_open)
            self._breakers[name] = breaker
        return breaker

    def find(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def states(self) -> list[dict]:
        return [breaker.get_state() for breaker in self._breakers.values()]


class DownstreamHTTPError(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        self.status_code = response.status_code
        super().__init__(f"Downstream returned HTTP {response.status_code}")


class ResilientHttpClient:
    """httpx client whose every request goes through a circuit breaker.

    5xx responses count as failures; any other response is returned as ``Ok``.
    """

    def __init__(self, breaker: CircuitBreaker, client: Optional[httpx.AsyncClient] = None, **client_kwargs):
        self.breaker = breaker
        self._client = client or httpx.AsyncClient(**client_kwargs)

    async def request(self, method: str, url: str, **kwargs) -> BreakerOutcome:
        async def _call() -> httpx.Response:
            logger.debug(f"{method} {url} via breaker '{self.breaker.name}'")
            response = await self._client.request(method, url, **kwargs)
            if response.status_code >= 500:
                raise DownstreamHTTPError(response)
            return response

        return await self.breaker.execute(_call)

    async def get(self, url: str, **kwargs) -> BreakerOutcome:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> BreakerOutcome:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> BreakerOutcome:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> BreakerOutcome:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> BreakerOutcome:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
