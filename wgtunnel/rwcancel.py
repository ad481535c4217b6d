"""Reads and writes on a non-blocking descriptor that another thread can cancel."""

from __future__ import annotations

import errno
import os
import select

_RETRY_ERRNOS = frozenset({errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR})


def retry_after_error(err: BaseException) -> bool:
    """Report whether ``err`` means the operation should be retried once ready."""
    return isinstance(err, OSError) and err.errno in _RETRY_ERRNOS


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class RWCancel:
    """Wraps a descriptor so blocking reads and writes can be interrupted.

    The descriptor is switched to non-blocking mode. It is not owned: closing
    this object releases only the internal cancellation pipe.
    """

    def __init__(self, fd: int) -> None:
        os.set_blocking(fd, False)
        self.fd = fd
        self._reader, self._writer = os.pipe()
        self._closed = False

    def _wait(self, events: int) -> bool:
        poller = select.poll()
        poller.register(self.fd, events)
        poller.register(self._reader, select.POLLIN)
        while True:
            try:
                ready = dict(poller.poll())
            except InterruptedError:
                continue
            except OSError:
                return False
            break
        if ready.get(self._reader):
            return False
        return bool(ready.get(self.fd))

    def ready_read(self) -> bool:
        """Block until the descriptor is readable; False if cancelled first."""
        return self._wait(select.POLLIN)

    def ready_write(self) -> bool:
        """Block until the descriptor is writable; False if cancelled first."""
        return self._wait(select.POLLOUT)

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes, waiting as needed; raises OSError(EBADF) once cancelled."""
        while True:
            try:
                return os.read(self.fd, size)
            except OSError as exc:
                if not retry_after_error(exc):
                    raise
            if not self.ready_read():
                raise _closed_error()

    def write(self, data: bytes) -> int:
        """Write ``data``, waiting as needed; raises OSError(EBADF) once cancelled."""
        while True:
            try:
                return os.write(self.fd, data)
            except OSError as exc:
                if not retry_after_error(exc):
                    raise
            if not self.ready_write():
                raise _closed_error()

    def cancel(self) -> None:
        """Wake every current and future wait so it gives up."""
        os.write(self._writer, b"\0")

    def close(self) -> None:
        """Release the cancellation pipe."""
        if self._closed:
            return
        self._closed = True
        os.close(self._reader)
        os.close(self._writer)

    def __enter__(self) -> "RWCancel":
        return self

    def __exit__(self, *args) -> None:
        self.close()