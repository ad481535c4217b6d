"""Sliding-window anti-replay filter for message counters (RFC 6479)."""

from __future__ import annotations

BLOCK_BIT_LOG = 6
BLOCK_BITS = 1 << BLOCK_BIT_LOG
RING_BLOCKS = 1 << 7
WINDOW_SIZE = (RING_BLOCKS - 1) * BLOCK_BITS

_BLOCK_MASK = RING_BLOCKS - 1
_BIT_MASK = BLOCK_BITS - 1


class Filter:
    """Rejects counters already seen or too far behind the newest one.

    A new filter is empty and ready to use. It is not safe for
    concurrent use.
    """

    __slots__ = ("_last", "_ring")

    def __init__(self) -> None:
        self._last = 0
        self._ring = [0] * RING_BLOCKS

    def reset(self) -> None:
        """Return the filter to its empty state."""
        self._last = 0
        self._ring[0] = 0

    def validate_counter(self, counter: int, limit: int) -> bool:
        """Accept ``counter`` once; counters at or above ``limit`` are always rejected."""
        if counter < 0:
            raise ValueError("counter must not be negative")
        if counter >= limit:
            return False
        index_block = counter >> BLOCK_BIT_LOG
        if counter > self._last:
            current = self._last >> BLOCK_BIT_LOG
            diff = min(index_block - current, RING_BLOCKS)
            for block in range(current + 1, current + diff + 1):
                self._ring[block & _BLOCK_MASK] = 0
            self._last = counter
        elif self._last - counter > WINDOW_SIZE:
            return False

        index_block &= _BLOCK_MASK
        bit = 1 << (counter & _BIT_MASK)
        old = self._ring[index_block]
        if old & bit:
            return False
        self._ring[index_block] = old | bit
        return True