"""Per-address token-bucket limiter for handshake messages."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

PACKETS_PER_SECOND = 20
PACKETS_BURSTABLE = 5
GARBAGE_COLLECT_TIME = 1_000_000_000
PACKET_COST = 1_000_000_000 // PACKETS_PER_SECOND
MAX_TOKENS = PACKET_COST * PACKETS_BURSTABLE

_COLLECT_INTERVAL = 1.0

Address = Union[str, bytes, int, ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class _Entry:
    last_time: int
    tokens: int


class Ratelimiter:
    """Allows a small burst of packets per source address, then a steady rate.

    ``clock`` returns the current time in nanoseconds; it defaults to a
    monotonic clock. A background thread drops idle entries once a second
    while the table is not empty.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._clock = clock if clock is not None else time.monotonic_ns
        self._lock = threading.Lock()
        self._table: dict = {}
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._collector = threading.Thread(target=self._collect, daemon=True)
        self._collector.start()

    def _collect(self) -> None:
        while True:
            self._wake.wait()
            if self._stopped.is_set():
                return
            self._wake.clear()
            while not self._stopped.wait(_COLLECT_INTERVAL):
                if self.cleanup():
                    break
            if self._stopped.is_set():
                return

    def cleanup(self) -> bool:
        """Drop entries idle for longer than the collection time; report whether the table is empty."""
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, entry in self._table.items()
                if now - entry.last_time > GARBAGE_COLLECT_TIME
            ]
            for key in stale:
                del self._table[key]
            return not self._table

    def allow(self, ip: Address) -> bool:
        """Report whether a packet from ``ip`` may be processed now."""
        key = ipaddress.ip_address(ip)
        with self._lock:
            now = self._clock()
            entry = self._table.get(key)
            if entry is None:
                self._table[key] = _Entry(now, MAX_TOKENS - PACKET_COST)
                if len(self._table) == 1:
                    self._wake.set()
                return True

            entry.tokens = min(entry.tokens + now - entry.last_time, MAX_TOKENS)
            entry.last_time = now
            if entry.tokens > PACKET_COST:
                entry.tokens -= PACKET_COST
                return True
            return False

    def close(self) -> None:
        """Stop the background collector."""
        self._stopped.set()
        self._wake.set()

    def __enter__(self) -> "Ratelimiter":
        return self

    def __exit__(self, *args) -> None:
        self.close()