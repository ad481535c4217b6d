"""Restartable one-shot timers for protocol state machines."""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Callable, Optional, Union

Delay = Union[float, int, timedelta]


class Timer:
    """A one-shot timer that can be rearmed and cancelled.

    ``expiration`` runs on a background thread when the timer fires. A
    timer that has been deleted never runs its callback until armed again.
    """

    def __init__(self, expiration: Callable[[], None]) -> None:
        self._expiration = expiration
        self._modifying = threading.Lock()
        self._running = threading.Lock()
        self._pending = False
        self._generation = 0
        self._timer: Optional[threading.Timer] = None

    def _fire(self, generation: int) -> None:
        with self._running:
            with self._modifying:
                if not self._pending or generation != self._generation:
                    return
                self._pending = False
            self._expiration()

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def mod(self, delay: Delay) -> None:
        """Arm the timer to fire after ``delay`` seconds, replacing any earlier deadline."""
        seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
        with self._modifying:
            self._pending = True
            self._generation += 1
            self._cancel()
            timer = threading.Timer(max(seconds, 0.0), self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def delete(self) -> None:
        """Disarm the timer."""
        with self._modifying:
            self._pending = False
            self._generation += 1
            self._cancel()

    def delete_sync(self) -> None:
        """Disarm the timer and wait for a callback already running to finish."""
        self.delete()
        with self._running:
            self.delete()

    def is_pending(self) -> bool:
        """Report whether the timer is armed and has not fired yet."""
        with self._modifying:
            return self._pending