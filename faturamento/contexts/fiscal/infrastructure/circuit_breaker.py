from __future__ import annotations

import time
from collections import deque
from threading import Lock


class BlingCircuitBreaker:
    """Failure-rate breaker over a sliding window: closed -> open -> half_open -> closed."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._enabled = True
        self._error_rate_threshold = 0.6
        self._min_samples = 5
        self._window_seconds = 120
        self._open_seconds = 30

        self._state = "closed"
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._events: deque[tuple[float, bool]] = deque()

    @staticmethod
    def _bounded(value, default, minimum, maximum, cast):
        try:
            parsed = cast(value)
        except (TypeError, ValueError):
            parsed = default
        return max(minimum, min(maximum, parsed))

    def configure_from(self, config) -> None:
        with self._lock:
            self._enabled = bool(config.get("BLING_CIRCUIT_ENABLED", True))
            self._error_rate_threshold = self._bounded(config.get("BLING_CIRCUIT_ERROR_RATE"), 0.6, 0.05, 1.0, float)
            self._min_samples = self._bounded(config.get("BLING_CIRCUIT_MIN_SAMPLES"), 5, 1, 1000, int)
            self._window_seconds = self._bounded(config.get("BLING_CIRCUIT_WINDOW_SECONDS"), 120, 5, 3600, int)
            self._open_seconds = self._bounded(config.get("BLING_CIRCUIT_OPEN_SECONDS"), 30, 1, 3600, int)
            if not self._enabled:
                self._reset_state()

    def _reset_state(self) -> None:
        self._state = "closed"
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._events.clear()

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def _trip(self, now: float) -> None:
        self._state = "open"
        self._opened_at = now
        self._probe_in_flight = False

    def allow_call(self) -> bool:
        now = time.monotonic()
        with self._lock:
            if not self._enabled:
                return True
            if self._state == "open":
                if now - self._opened_at < self._open_seconds:
                    return False
                self._state = "half_open"
                self._probe_in_flight = False
            if self._state == "half_open":
                if self._probe_in_flight:
                    return False
                self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._enabled:
                return
            if self._state == "half_open":
                self._reset_state()
                return
            self._events.append((now, True))
            self._prune(now)

    def record_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._enabled or self._state == "open":
                return
            if self._state == "half_open":
                self._trip(now)
                return
            self._events.append((now, False))
            self._prune(now)
            samples = len(self._events)
            failures = sum(1 for _ts, ok in self._events if not ok)
            if samples >= self._min_samples and failures / samples >= self._error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        now = time.monotonic()
        with self._lock:
            self._prune(now)
            samples = len(self._events)
            failures = sum(1 for _ts, ok in self._events if not ok)
            return {
                "state": self._state,
                "enabled": self._enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failures / samples, 4) if samples else 0.0,
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._enabled = True
            self._reset_state()


_BLING_CIRCUIT_BREAKER = BlingCircuitBreaker()


def get_bling_circuit_breaker() -> BlingCircuitBreaker:
    return _BLING_CIRCUIT_BREAKER


def reset_bling_circuit_breaker_for_tests() -> None:
    _BLING_CIRCUIT_BREAKER.reset_for_tests()
