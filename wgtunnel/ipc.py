"""Unix-socket endpoint for the configuration protocol."""

from __future__ import annotations

import errno
import os
import queue
import socket
import threading
from typing import Union

IPC_ERROR_IO = -errno.EIO
IPC_ERROR_PROTOCOL = -errno.EPROTO
IPC_ERROR_INVALID = -errno.EINVAL
IPC_ERROR_PORT_IN_USE = -errno.EADDRINUSE
IPC_ERROR_UNKNOWN = -55  # ENOANO

SOCKET_DIRECTORY = "/var/run/wireguard"

_WATCH_INTERVAL = 0.05
_ACCEPT_POLL = 0.1


def sock_path(iface: str, directory: str = SOCKET_DIRECTORY) -> str:
    """The path of the control socket for interface ``iface``."""
    return f"{directory}/{iface}.sock"


def _listen(path: str) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return sock


def _in_use(path: str) -> bool:
    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        probe.connect(path)
    except OSError:
        return False
    else:
        return True
    finally:
        probe.close()


def uapi_open(name: str, directory: str = SOCKET_DIRECTORY) -> socket.socket:
    """Create the listening control socket, replacing a stale one left behind."""
    os.makedirs(directory, mode=0o755, exist_ok=True)
    path = sock_path(name, directory)
    old_umask = os.umask(0o077)
    try:
        try:
            return _listen(path)
        except OSError:
            pass
        if _in_use(path):
            raise OSError(errno.EADDRINUSE, "unix socket in use", path)
        os.remove(path)
        return _listen(path)
    finally:
        os.umask(old_umask)


class UAPIListener:
    """Accepts connections on a control socket until it is closed or its file is removed."""

    def __init__(self, sock: socket.socket, path: str) -> None:
        self._sock = sock
        self._path = path
        self._events: "queue.Queue[Union[socket.socket, BaseException]]" = queue.Queue()
        self._stopped = threading.Event()
        sock.settimeout(_ACCEPT_POLL)
        self._watcher = threading.Thread(target=self._watch, daemon=True)
        self._acceptor = threading.Thread(target=self._accept_loop, daemon=True)
        self._watcher.start()
        self._acceptor.start()

    def _watch(self) -> None:
        while not self._stopped.is_set():
            try:
                os.lstat(self._path)
            except FileNotFoundError as exc:
                self._events.put(exc)
                return
            except OSError:
                pass
            self._stopped.wait(_WATCH_INTERVAL)

    def _accept_loop(self) -> None:
        while True:
            if self._stopped.is_set():
                self._events.put(OSError(errno.EBADF, "use of closed network connection"))
                return
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopped.is_set():
                    exc = OSError(errno.EBADF, "use of closed network connection")
                self._events.put(exc)
                return
            conn.setblocking(True)
            self._events.put(conn)

    def accept(self) -> socket.socket:
        """Wait for the next connection; raises once the listener has failed or closed."""
        item = self._events.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        """Stop listening and remove the socket file."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._sock.close()
        try:
            os.unlink(self._path)
        except FileNotFoundError:
            pass

    def address(self) -> str:
        """The filesystem path the listener is bound to."""
        return self._path

    def __enter__(self) -> "UAPIListener":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def uapi_listen(
    name: str, sock: socket.socket, directory: str = SOCKET_DIRECTORY
) -> UAPIListener:
    """Wrap a socket from :func:`uapi_open` in a listener watching its file."""
    return UAPIListener(sock, sock_path(name, directory))