"""Per-adapter request gate, metrics and circuit breaker.

Every retailer adapter owns one RateLimitWindow, one AdapterMetrics and one
CircuitBreaker. None of these are shared across retailers or processes; the
cross-process politeness cap is the candidate budget in ``budget.py``.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Optional

from beacon import metrics

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class HealthThresholds:
    """Success-rate floor (percent) and latency ceiling (ms) for a retailer type."""

    success_rate: float
    response_time_ms: float


API_THRESHOLDS = HealthThresholds(success_rate=90.0, response_time_ms=5000.0)
SCRAPING_THRESHOLDS = HealthThresholds(success_rate=80.0, response_time_ms=10000.0)


def thresholds_for(integration_type: str) -> HealthThresholds:
    """Scraping retailers get a looser threshold than API/affiliate ones."""
    return SCRAPING_THRESHOLDS if integration_type == "scraping" else API_THRESHOLDS


@dataclass
class AdapterMetrics:
    """Request counters for a single retailer adapter."""

    retailer_id: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0  # ms
    rate_limit_hits: int = 0
    circuit_breaker_trips: int = 0
    last_request_time: Optional[datetime] = None
    circuit_state: CircuitState = CircuitState.CLOSED

    @property
    def success_rate(self) -> float:
        """Success rate in percent; 100 before the first request."""
        if self.total_requests == 0:
            return 100.0
        return self.successful_requests / self.total_requests * 100.0

    def record(self, success: bool, response_time_ms: float) -> None:
        self.total_requests += 1
        self.last_request_time = datetime.utcnow()
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1

        total_time = self.average_response_time * (self.total_requests - 1) + response_time_ms
        self.average_response_time = total_time / self.total_requests

    def snapshot(self) -> dict:
        return {
            "retailer_id": self.retailer_id,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_time": round(self.average_response_time, 2),
            "success_rate": round(self.success_rate, 2),
            "rate_limit_hits": self.rate_limit_hits,
            "circuit_breaker_trips": self.circuit_breaker_trips,
            "last_request_time": self.last_request_time.isoformat() if self.last_request_time else None,
            "circuit_state": self.circuit_state.value,
        }


@dataclass
class RateLimitWindow:
    """Fixed 60 second request window for one adapter."""

    requests_per_minute: int
    request_count: int = 0
    window_start: float = field(default_factory=time.monotonic)
    is_limited: bool = False

    def try_acquire(self, now: float) -> bool:
        """Count a request if the window has room, resetting an elapsed window first."""
        if now - self.window_start >= WINDOW_SECONDS:
            self.request_count = 0
            self.window_start = now
            self.is_limited = False

        if self.request_count >= self.requests_per_minute:
            self.is_limited = True
            return False

        self.request_count += 1
        return True


@dataclass
class Outcome:
    success: bool
    response_time_ms: float


class CircuitBreaker:
    """
    Three-state breaker driven by the recent success rate and latency.

    CLOSED -> OPEN when the trailing window of outcomes has a success rate
    below the retailer-type floor or an average latency above its ceiling.
    OPEN -> HALF_OPEN after ``cooldown_seconds``; one trial request is let through.
    The trial closes the circuit on success and re-opens it on failure.
    """

    def __init__(
        self,
        retailer_id: str,
        thresholds: HealthThresholds,
        window_size: int = 20,
        min_samples: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retailer_id = retailer_id
        self.thresholds = thresholds
        self.min_samples = min_samples
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._outcomes: Deque[Outcome] = deque(maxlen=window_size)
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._trial_in_flight = False
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.cooldown_seconds

    def allow_request(self) -> bool:
        """Return True if a request may be issued right now."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if not self._cooldown_elapsed():
                return False
            self._transition(CircuitState.HALF_OPEN)

        # HALF_OPEN: exactly one trial at a time
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record(self, success: bool, response_time_ms: float) -> None:
        """Feed a request outcome into the breaker."""
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            if success:
                self._outcomes.clear()
                self._transition(CircuitState.CLOSED)
            else:
                self._trip("half-open trial failed")
            return

        self._outcomes.append(Outcome(success, response_time_ms))
        if self._state == CircuitState.CLOSED:
            reason = self._trip_reason()
            if reason:
                self._trip(reason)

    def _trip_reason(self) -> Optional[str]:
        if len(self._outcomes) < self.min_samples:
            return None
        successes = sum(1 for o in self._outcomes if o.success)
        success_rate = successes / len(self._outcomes) * 100.0
        if success_rate < self.thresholds.success_rate:
            return f"success rate {success_rate:.1f}% < {self.thresholds.success_rate:.0f}%"
        avg_latency = sum(o.response_time_ms for o in self._outcomes) / len(self._outcomes)
        if avg_latency > self.thresholds.response_time_ms:
            return f"avg latency {avg_latency:.0f}ms > {self.thresholds.response_time_ms:.0f}ms"
        return None

    def _trip(self, reason: str) -> None:
        self.trips += 1
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)
        logger.warning(f"Circuit OPEN for {self.retailer_id}: {reason}")

    def _transition(self, state: CircuitState) -> None:
        if state != self._state:
            logger.info(f"Circuit {self.retailer_id}: {self._state.value} -> {state.value}")
        self._state = state
        metrics.update_circuit_state(self.retailer_id, state.value)

    def release_trial(self) -> None:
        self._trial_in_flight = False

    def reset(self) -> None:
        self._outcomes.clear()
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)


class AdapterRateLimiter:
    """Bundles the request window, breaker and metrics of one adapter."""

    def __init__(
        self,
        retailer_id: str,
        requests_per_minute: int,
        integration_type: str,
        window_size: int = 20,
        min_samples: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retailer_id = retailer_id
        self._clock = clock
        self.window = RateLimitWindow(requests_per_minute=requests_per_minute, window_start=clock())
        self.breaker = CircuitBreaker(
            retailer_id,
            thresholds_for(integration_type),
            window_size=window_size,
            min_samples=min_samples,
            cooldown_seconds=cooldown_seconds,
            clock=clock,
        )
        self.metrics = AdapterMetrics(retailer_id=retailer_id)

    def acquire(self) -> Optional[str]:
        """
        Ask permission for one request.

        Returns:
            None when allowed, otherwise the gate that denied ("circuit" or
            "window"). A circuit denial does not consume the window.
        """
        if not self.breaker.allow_request():
            self.metrics.rate_limit_hits += 1
            metrics.record_rate_limit_hit(self.retailer_id, "circuit")
            return "circuit"

        if not self.window.try_acquire(self._clock()):
            self.metrics.rate_limit_hits += 1
            metrics.record_rate_limit_hit(self.retailer_id, "window")
            # A trial that never ran must not wedge the half-open state
            self.breaker.release_trial()
            return "window"
        return None

    def update_metrics(self, success: bool, response_time_ms: float) -> None:
        self.metrics.record(success, response_time_ms)
        self.breaker.record(success, response_time_ms)
        self.metrics.circuit_breaker_trips = self.breaker.trips
        self.metrics.circuit_state = self.breaker.state
        metrics.record_adapter_request(self.retailer_id, success, response_time_ms)

        if self.metrics.total_requests % 10 == 0:
            logger.info(
                f"{self.retailer_id} metrics: {self.metrics.total_requests} requests, "
                f"success_rate={self.metrics.success_rate:.1f}%, "
                f"avg={self.metrics.average_response_time:.0f}ms, "
                f"rate_limit_hits={self.metrics.rate_limit_hits}"
            )

    def reset_circuit(self) -> None:
        self.breaker.reset()
        self.metrics.circuit_state = CircuitState.CLOSED
