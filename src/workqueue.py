#!/usr/bin/env python3
# src/workqueue.py
"""
Level-triggered work queue for reconcile keys.

Keys are plain strings. A key is handed to at most one worker at a time;
adding a key that is already queued is a no-op, and adding a key that is
being processed marks it dirty so it is queued again once the worker calls
done(). Failed keys are re-added with exponential backoff plus jitter.
"""

import logging
import random
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Set

logger = logging.getLogger("plumber-operator.workqueue")


def calculate_jittered_sleep(base_interval: int, max_jitter_percent: float = 0.2) -> float:
    """Calculate sleep interval with jitter to prevent synchronized wake-ups.

    Args:
        base_interval: Base sleep interval in seconds
        max_jitter_percent: Maximum jitter as percentage of base interval (0.0-1.0)

    Returns:
        Sleep interval with random jitter applied
    """
    jitter_range = base_interval * max_jitter_percent
    jitter = random.uniform(-jitter_range, jitter_range)
    return max(1.0, base_interval + jitter)


def calculate_exponential_backoff(attempt: int, base_delay: float = 0.5, max_delay: float = 30.0) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Backoff delay with jitter
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = random.uniform(0.1, 0.3) * delay
    return delay + jitter


class WorkQueue:
    """Deduplicating queue with per-key serialization and rate-limited retries."""

    def __init__(self, name: str, base_delay: float = 0.5, max_delay: float = 300.0):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: List[threading.Timer] = []
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                # Requeued by done()
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers.append(timer)
        timer.start()

    def _fire(self, key: str):
        with self._cond:
            self._timers = [t for t in self._timers if t.is_alive() and t is not threading.current_thread()]
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        """Re-add ``key`` after a backoff that grows with its consecutive failures."""
        with self._cond:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        delay = calculate_exponential_backoff(attempt, self.base_delay, self.max_delay)
        logger.debug(f"[{self.name}] Requeue {key} in {delay:.2f}s (attempt {attempt + 1})")
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: str):
        with self._cond:
            self._failures.pop(key, None)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is available. Returns None on shutdown or timeout."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                if not self._cond.wait(timeout):
                    return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            timers, self._timers = self._timers, []
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()
        logger.info(f"[{self.name}] Work queue shut down")
