# src/engine/circuit.py
"""
CircuitBreaker: per-platform failure tracking shared by the worker threads of one process.

After `threshold` consecutive failed discovery calls a platform's circuit opens and its jobs are
deferred instead of attempted until `reset_seconds` have passed. The first calls after that go
through; a success closes the circuit and a failure opens it again straight away.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from utils.timeutils import seconds_from, utc_now


@dataclass
class CircuitState:
    failures: int = 0
    opened_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


class CircuitBreaker:
    def __init__(self, threshold=3, reset_seconds=300.0, clock=utc_now):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states = {}

    def open_until(self, platform) -> Optional[datetime]:
        """When the platform's circuit is open, the time it half-opens. None when calls may go through."""
        if not self.threshold:
            return None
        with self._lock:
            state = self._states.get(platform)
            if state is None or state.opened_at is None:
                return None
            reopen_at = seconds_from(state.opened_at, self.reset_seconds)
            if self._clock() < reopen_at:
                return reopen_at
            state.opened_at = None
        logging.info(f"[platform={platform}] Circuit half-open, allowing a trial call")
        return None

    def record_failure(self, platform):
        if not self.threshold:
            return
        now = self._clock()
        with self._lock:
            state = self._states.setdefault(platform, CircuitState())
            state.failures += 1
            state.last_failure_at = now
            opened = state.failures >= self.threshold and state.opened_at is None
            if opened:
                state.opened_at = now
            failures = state.failures
        if opened:
            logging.warning(f"[platform={platform}] Circuit opened after {failures} consecutive failure(s)")
        else:
            logging.info(f"[platform={platform}] Failure recorded ({failures}/{self.threshold})")

    def record_success(self, platform):
        with self._lock:
            state = self._states.pop(platform, None)
        if state is not None:
            logging.info(f"[platform={platform}] Circuit reset after success")

    def snapshot(self):
        with self._lock:
            return {
                platform: {
                    "failures": state.failures,
                    "open": state.opened_at is not None,
                    "opened_at": state.opened_at.isoformat() if state.opened_at else None,
                }
                for platform, state in self._states.items()
            }
