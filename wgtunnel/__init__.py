"""Building blocks for a userspace WireGuard-style tunnel: replay filter, rate limiter, timers, transport sealing and the UAPI configuration protocol."""

__version__ = "0.1.0"

__all__ = [
    "inbound",
    "ipc",
    "outbound",
    "ratelimiter",
    "replay",
    "rwcancel",
    "tai64n",
    "timers",
    "uapi",
]