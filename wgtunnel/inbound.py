"""Inbound data path: message classification, transport opening and packet checks."""

from __future__ import annotations

import enum
import ipaddress
import struct
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .outbound import (
    IPV4_HEADER_LEN,
    IPV6_HEADER_LEN,
    MESSAGE_KEEPALIVE_SIZE,
    MESSAGE_TRANSPORT_HEADER_SIZE,
    MESSAGE_TRANSPORT_TYPE,
)

MESSAGE_INITIATION_TYPE = 1
MESSAGE_RESPONSE_TYPE = 2
MESSAGE_COOKIE_REPLY_TYPE = 3

MESSAGE_INITIATION_SIZE = 148
MESSAGE_RESPONSE_SIZE = 92
MESSAGE_COOKIE_REPLY_SIZE = 64
MESSAGE_TRANSPORT_SIZE = MESSAGE_KEEPALIVE_SIZE
MIN_MESSAGE_SIZE = MESSAGE_KEEPALIVE_SIZE

MESSAGE_TRANSPORT_OFFSET_RECEIVER = 4
MESSAGE_TRANSPORT_OFFSET_COUNTER = 8
MESSAGE_TRANSPORT_OFFSET_CONTENT = MESSAGE_TRANSPORT_HEADER_SIZE

IPV4_OFFSET_TOTAL_LENGTH = 2
IPV4_OFFSET_SRC = 12
IPV6_OFFSET_PAYLOAD_LENGTH = 4
IPV6_OFFSET_SRC = 8

_TYPE = struct.Struct("<I")
_HEADER = struct.Struct("<IIQ")
_NONCE = struct.Struct("<4xQ")
_BE16 = struct.Struct(">H")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class MessageType(enum.IntEnum):
    """Types of messages carried in a datagram."""

    INITIATION = MESSAGE_INITIATION_TYPE
    RESPONSE = MESSAGE_RESPONSE_TYPE
    COOKIE_REPLY = MESSAGE_COOKIE_REPLY_TYPE
    TRANSPORT = MESSAGE_TRANSPORT_TYPE


_FIXED_SIZES = {
    MessageType.INITIATION: MESSAGE_INITIATION_SIZE,
    MessageType.RESPONSE: MESSAGE_RESPONSE_SIZE,
    MessageType.COOKIE_REPLY: MESSAGE_COOKIE_REPLY_SIZE,
}


class DecryptionError(ValueError):
    """Raised when a transport message fails authentication."""


@dataclass(frozen=True)
class TransportMessage:
    """An opened transport message."""

    receiver: int
    counter: int
    payload: bytes


def classify_message(packet: bytes) -> Optional[MessageType]:
    """The type of a received datagram, or None if it must be dropped.

    Datagrams shorter than the minimum message, of unknown type, or whose
    size does not fit their type are dropped.
    """
    if len(packet) < MIN_MESSAGE_SIZE:
        return None
    (raw_type,) = _TYPE.unpack_from(packet)
    try:
        msg_type = MessageType(raw_type)
    except ValueError:
        return None
    if msg_type is MessageType.TRANSPORT:
        return msg_type if len(packet) >= MESSAGE_TRANSPORT_SIZE else None
    return msg_type if len(packet) == _FIXED_SIZES[msg_type] else None


def open_transport(key: bytes, packet: bytes) -> TransportMessage:
    """Decrypt a transport message with ``key``.

    Raises ValueError if the packet is not a transport message and
    DecryptionError if it does not authenticate.
    """
    if classify_message(packet) is not MessageType.TRANSPORT:
        raise ValueError("not a transport message")
    _, receiver, counter = _HEADER.unpack_from(packet)
    content = bytes(packet[MESSAGE_TRANSPORT_OFFSET_CONTENT:])
    aead = ChaCha20Poly1305(bytes(key))
    try:
        payload = aead.decrypt(_NONCE.pack(counter), content, None)
    except InvalidTag as exc:
        raise DecryptionError("transport message failed authentication") from exc
    return TransportMessage(receiver, counter, payload)


def trim_inbound(packet: bytes) -> Optional[bytes]:
    """Cut a decrypted packet to the length its IP header declares.

    An empty packet is a keepalive and comes back empty. Packets with a bad
    IP version, a short header or an inconsistent length give None.
    """
    if not packet:
        return b""
    version = packet[0] >> 4
    if version == 4:
        if len(packet) < IPV4_HEADER_LEN:
            return None
        (length,) = _BE16.unpack_from(packet, IPV4_OFFSET_TOTAL_LENGTH)
        if length > len(packet) or length < IPV4_HEADER_LEN:
            return None
        return bytes(packet[:length])
    if version == 6:
        if len(packet) < IPV6_HEADER_LEN:
            return None
        (payload_length,) = _BE16.unpack_from(packet, IPV6_OFFSET_PAYLOAD_LENGTH)
        length = (payload_length + IPV6_HEADER_LEN) & 0xFFFF
        if length > len(packet) or length < IPV6_HEADER_LEN:
            return None
        return bytes(packet[:length])
    return None


def source_address(packet: bytes) -> Optional[IPAddress]:
    """The source address of an IP packet, or None if it is not a usable IPv4 or IPv6 packet."""
    if not packet:
        return None
    version = packet[0] >> 4
    if version == 4:
        if len(packet) < IPV4_HEADER_LEN:
            return None
        return ipaddress.IPv4Address(bytes(packet[IPV4_OFFSET_SRC:IPV4_OFFSET_SRC + 4]))
    if version == 6:
        if len(packet) < IPV6_HEADER_LEN:
            return None
        return ipaddress.IPv6Address(bytes(packet[IPV6_OFFSET_SRC:IPV6_OFFSET_SRC + 16]))
    return None