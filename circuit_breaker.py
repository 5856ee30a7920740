"""
Catalog Search Service — AI Availability Breaker

A timed, optimistic-reopen flag that gates the AI-dependent search
strategies. It reopens on a timer, not on a health probe: one failure
silences AI for at most `check_interval` seconds, never permanently.
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Callable

from models import AIState

logger = logging.getLogger(__name__)

__all__ = ["AIState", "AIAvailabilityBreaker"]


class AIAvailabilityBreaker:
    """
    Shared by reference across request handlers and the indexer.

    should_try_ai()   -> reopens after the interval, then reports availability
    record_success()  -> available immediately
    record_failure()  -> cooling down immediately
    """

    def __init__(
        self,
        check_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.check_interval = check_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._state = AIState.AVAILABLE
        self._last_checked_at = clock()

    @property
    def state(self) -> AIState:
        with self._lock:
            return self._state

    @property
    def is_available(self) -> bool:
        return self.state is AIState.AVAILABLE

    @property
    def last_checked_at(self) -> float:
        with self._lock:
            return self._last_checked_at

    def should_try_ai(self) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._last_checked_at > self.check_interval:
                self._last_checked_at = now
                if self._state is not AIState.AVAILABLE:
                    logger.info("AI cool-down elapsed, re-enabling AI strategies")
                self._state = AIState.AVAILABLE
            return self._state is AIState.AVAILABLE

    def record_success(self) -> None:
        with self._lock:
            if self._state is not AIState.AVAILABLE:
                logger.info("AI call succeeded, AI marked available")
            self._state = AIState.AVAILABLE

    def record_failure(self) -> None:
        with self._lock:
            if self._state is AIState.AVAILABLE:
                logger.warning(
                    f"AI call failed, AI strategies disabled for up to "
                    f"{self.check_interval:.0f}s")
            self._state = AIState.COOLING_DOWN
