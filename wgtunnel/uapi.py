"""Text configuration protocol: the "get" and "set" operations on device state."""

from __future__ import annotations

import io
import ipaddress
import logging
import re
import socket
import threading
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, TextIO, Union

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .ipc import (
    IPC_ERROR_INVALID,
    IPC_ERROR_IO,
    IPC_ERROR_PROTOCOL,
    IPC_ERROR_UNKNOWN,
)

KEY_SIZE = 32

_log = logging.getLogger(__name__)

_KEY_HEX = re.compile(r"[0-9a-fA-F]{64}")
_DECIMAL = re.compile(r"[0-9]+")
_NANOS_PER_SECOND = 1_000_000_000

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class IPCError(Exception):
    """A configuration failure carrying the negative errno reported to clients."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"IPC error {self.code}: {self.message}"


class Endpoint(NamedTuple):
    """A peer's remote address and UDP port."""

    address: IPAddress
    port: int

    def __str__(self) -> str:
        if self.address.version == 6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


def _parse_uint(value: str, bits: int) -> int:
    if not _DECIMAL.fullmatch(value):
        raise ValueError(f"invalid syntax: {value!r}")
    number = int(value)
    if number >= 1 << bits:
        raise ValueError(f"value out of range: {value!r}")
    return number


def _parse_key(value: str) -> bytes:
    if not _KEY_HEX.fullmatch(value):
        raise ValueError("key must be 64 hexadecimal characters")
    return bytes.fromhex(value)


def parse_endpoint(value: str) -> Endpoint:
    """Parse ``address:port``, with IPv6 addresses in square brackets."""
    host, sep, port_text = value.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in endpoint {value!r}")
    if not port_text:
        raise ValueError(f"missing port in endpoint {value!r}")
    port = _parse_uint(port_text, 16)
    if host.startswith("[") and host.endswith("]"):
        address = ipaddress.ip_address(host[1:-1])
        if address.version != 6:
            raise ValueError("square brackets can only be used with IPv6 addresses")
    else:
        address = ipaddress.ip_address(host)
        if address.version == 6:
            raise ValueError("IPv6 endpoints must be enclosed in square brackets")
    return Endpoint(address, port)


def _parse_prefix(value: str) -> IPNetwork:
    address_text, sep, bits_text = value.partition("/")
    if not sep:
        raise ValueError(f"no '/' in prefix {value!r}")
    if "%" in address_text:
        raise ValueError("IPv6 zones cannot be present in a prefix")
    if not _DECIMAL.fullmatch(bits_text) or (len(bits_text) > 1 and bits_text[0] == "0"):
        raise ValueError(f"bad bits after slash: {bits_text!r}")
    address = ipaddress.ip_address(address_text)
    bits = int(bits_text)
    if bits > address.max_prefixlen:
        raise ValueError(f"prefix length {bits} too large for {address}")
    return ipaddress.ip_network((address, bits), strict=False)


def _error(code: int, message: str, cause: Optional[BaseException] = None) -> IPCError:
    error = IPCError(code, message)
    error.__cause__ = cause
    return error


@dataclass
class PeerState:
    """Configuration and counters of one peer."""

    public_key: bytes
    preshared_key: bytes = bytes(KEY_SIZE)
    endpoint: Optional[Endpoint] = None
    persistent_keepalive_interval: int = 0
    last_handshake_nano: int = 0
    tx_bytes: int = 0
    rx_bytes: int = 0
    allowed_ips: List[IPNetwork] = field(default_factory=list)


@dataclass
class _Selection:
    peer: PeerState
    dummy: bool
    created: bool


class UAPIDevice:
    """Device configuration that can be read and changed through the text protocol."""

    def __init__(self) -> None:
        self.private_key = bytes(KEY_SIZE)
        self.public_key = bytes(KEY_SIZE)
        self.listen_port = 0
        self.fwmark = 0
        self.peers: "dict[bytes, PeerState]" = {}
        self._lock = threading.RLock()

    # -- get ---------------------------------------------------------------

    def _render(self) -> str:
        lines: List[str] = []
        if any(self.private_key):
            lines.append(f"private_key={self.private_key.hex()}")
        if self.listen_port:
            lines.append(f"listen_port={self.listen_port}")
        if self.fwmark:
            lines.append(f"fwmark={self.fwmark}")
        for peer in self.peers.values():
            secs, nanos = divmod(peer.last_handshake_nano, _NANOS_PER_SECOND)
            lines.append(f"public_key={peer.public_key.hex()}")
            lines.append(f"preshared_key={peer.preshared_key.hex()}")
            lines.append("protocol_version=1")
            if peer.endpoint is not None:
                lines.append(f"endpoint={peer.endpoint}")
            lines.append(f"last_handshake_time_sec={secs}")
            lines.append(f"last_handshake_time_nsec={nanos}")
            lines.append(f"tx_bytes={peer.tx_bytes}")
            lines.append(f"rx_bytes={peer.rx_bytes}")
            lines.append(f"persistent_keepalive_interval={peer.persistent_keepalive_interval}")
            lines.extend(f"allowed_ip={prefix}" for prefix in peer.allowed_ips)
        return "".join(line + "\n" for line in lines)

    def ipc_get_operation(self, stream: TextIO) -> None:
        """Write the current configuration to ``stream``, one ``key=value`` per line."""
        with self._lock:
            text = self._render()
        try:
            stream.write(text)
        except OSError as exc:
            raise _error(IPC_ERROR_IO, f"failed to write output: {exc}", exc) from exc

    def ipc_get(self) -> str:
        """The current configuration as text."""
        buffer = io.StringIO()
        self.ipc_get_operation(buffer)
        return buffer.getvalue()

    # -- set ---------------------------------------------------------------

    def ipc_set_operation(self, stream: TextIO) -> None:
        """Apply ``key=value`` lines from ``stream`` until a blank line or the end."""
        with self._lock:
            try:
                self._apply(stream)
            except IPCError as exc:
                _log.error("%s", exc)
                raise

    def ipc_set(self, config: str) -> None:
        """Apply a configuration given as text."""
        self.ipc_set_operation(io.StringIO(config))

    def _apply(self, stream: TextIO) -> None:
        selection: Optional[_Selection] = None
        while True:
            try:
                raw = stream.readline()
            except (OSError, ValueError) as exc:
                raise _error(IPC_ERROR_IO, f"failed to read input: {exc}", exc) from exc
            if not raw:
                return
            line = raw[:-1] if raw.endswith("\n") else raw
            if line.endswith("\r"):
                line = line[:-1]
            if not line:
                return
            key, sep, value = line.partition("=")
            if not sep:
                raise _error(IPC_ERROR_PROTOCOL, f"failed to parse line {line!r}")
            if key == "public_key":
                selection = self._select_peer(value)
            elif selection is None:
                self._device_line(key, value)
            else:
                self._peer_line(selection, key, value)

    def _set_private_key(self, private_key: bytes) -> None:
        self.private_key = private_key
        self.public_key = (
            X25519PrivateKey.from_private_bytes(private_key)
            .public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
        )

    def _device_line(self, key: str, value: str) -> None:
        if key == "private_key":
            try:
                private_key = _parse_key(value)
            except ValueError as exc:
                raise _error(IPC_ERROR_INVALID, f"failed to set private_key: {exc}", exc) from exc
            _log.debug("UAPI: Updating private key")
            self._set_private_key(private_key)
        elif key == "listen_port":
            try:
                port = _parse_uint(value, 16)
            except ValueError as exc:
                raise _error(IPC_ERROR_INVALID, f"failed to parse listen_port: {exc}", exc) from exc
            _log.debug("UAPI: Updating listen port")
            self.listen_port = port
        elif key == "fwmark":
            try:
                mark = _parse_uint(value, 32)
            except ValueError as exc:
                raise _error(IPC_ERROR_INVALID, f"invalid fwmark: {exc}", exc) from exc
            _log.debug("UAPI: Updating fwmark")
            self.fwmark = mark
        elif key == "replace_peers":
            if value != "true":
                raise _error(
                    IPC_ERROR_INVALID, f"failed to set replace_peers, invalid value: {value}"
                )
            _log.debug("UAPI: Removing all peers")
            self.peers.clear()
        else:
            raise _error(IPC_ERROR_INVALID, f"invalid UAPI device key: {key}")

    def _select_peer(self, value: str) -> _Selection:
        try:
            public_key = _parse_key(value)
        except ValueError as exc:
            raise _error(
                IPC_ERROR_INVALID, f"failed to get peer by public key: {exc}", exc
            ) from exc
        if public_key == self.public_key:
            return _Selection(PeerState(public_key), dummy=True, created=False)
        peer = self.peers.get(public_key)
        if peer is not None:
            return _Selection(peer, dummy=False, created=False)
        peer = PeerState(public_key)
        self.peers[public_key] = peer
        _log.debug("peer(%s) - UAPI: Created", public_key.hex()[:8])
        return _Selection(peer, dummy=False, created=True)

    def _make_dummy(self, selection: _Selection) -> None:
        selection.peer = PeerState(selection.peer.public_key)
        selection.dummy = True

    def _peer_line(self, selection: _Selection, key: str, value: str) -> None:
        peer = selection.peer
        if key == "update_only":
            if value != "true":
                raise _error(
                    IPC_ERROR_INVALID, f"failed to set update only, invalid value: {value}"
                )
            if selection.created and not selection.dummy:
                self.peers.pop(peer.public_key, None)
                self._make_dummy(selection)
        elif key == "remove":
            if value != "true":
                raise _error(IPC_ERROR_INVALID, f"failed to set remove, invalid value: {value}")
            if not selection.dummy:
                _log.debug("peer(%s) - UAPI: Removing", peer.public_key.hex()[:8])
                self.peers.pop(peer.public_key, None)
            self._make_dummy(selection)
        elif key == "preshared_key":
            try:
                peer.preshared_key = _parse_key(value)
            except ValueError as exc:
                raise _error(
                    IPC_ERROR_INVALID, f"failed to set preshared key: {exc}", exc
                ) from exc
        elif key == "endpoint":
            try:
                peer.endpoint = parse_endpoint(value)
            except ValueError as exc:
                raise _error(
                    IPC_ERROR_INVALID, f"failed to set endpoint {value}: {exc}", exc
                ) from exc
        elif key == "persistent_keepalive_interval":
            try:
                peer.persistent_keepalive_interval = _parse_uint(value, 16)
            except ValueError as exc:
                raise _error(
                    IPC_ERROR_INVALID,
                    f"failed to set persistent keepalive interval: {exc}",
                    exc,
                ) from exc
        elif key == "replace_allowed_ips":
            if value != "true":
                raise _error(
                    IPC_ERROR_INVALID, f"failed to replace allowedips, invalid value: {value}"
                )
            if not selection.dummy:
                peer.allowed_ips.clear()
        elif key == "allowed_ip":
            try:
                prefix = _parse_prefix(value)
            except ValueError as exc:
                raise _error(IPC_ERROR_INVALID, f"failed to set allowed ip: {exc}", exc) from exc
            if not selection.dummy:
                self._insert_allowed_ip(peer, prefix)
        elif key == "protocol_version":
            if value != "1":
                raise _error(IPC_ERROR_INVALID, f"invalid protocol version: {value}")
        else:
            raise _error(IPC_ERROR_INVALID, f"invalid UAPI peer key: {key}")

    def _insert_allowed_ip(self, owner: PeerState, prefix: IPNetwork) -> None:
        for peer in self.peers.values():
            if peer is not owner and prefix in peer.allowed_ips:
                peer.allowed_ips.remove(prefix)
        if prefix not in owner.allowed_ips:
            owner.allowed_ips.append(prefix)

    # -- connections -------------------------------------------------------

    def ipc_handle(self, conn: socket.socket) -> None:
        """Serve get and set requests on a connected socket until it closes."""
        with conn, conn.makefile(
            "rw", encoding="utf-8", errors="replace", newline="\n"
        ) as stream:
            while True:
                try:
                    op = stream.readline()
                except (OSError, ValueError):
                    return
                if not op.endswith("\n"):
                    return
                status: Optional[IPCError] = None
                if op == "set=1\n":
                    status = self._run(lambda: self.ipc_set_operation(stream))
                elif op == "get=1\n":
                    try:
                        following = stream.read(1)
                    except (OSError, ValueError):
                        return
                    if not following:
                        return
                    if following != "\n":
                        status = IPCError(
                            IPC_ERROR_INVALID, f"trailing character in UAPI get: {following!r}"
                        )
                    else:
                        status = self._run(lambda: self.ipc_get_operation(stream))
                else:
                    _log.error("invalid UAPI operation: %r", op)
                    return
                if status is not None:
                    _log.error("%s", status)
                code = status.code if status is not None else 0
                try:
                    stream.write(f"errno={code}\n\n")
                    stream.flush()
                except OSError:
                    return

    @staticmethod
    def _run(operation) -> Optional[IPCError]:
        try:
            operation()
        except IPCError as exc:
            return exc
        except Exception as exc:
            return _error(IPC_ERROR_UNKNOWN, f"other UAPI error: {exc}", exc)
        return None