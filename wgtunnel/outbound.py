"""Outbound data path: peer selection by destination and transport sealing."""

from __future__ import annotations

import ipaddress
import struct
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

MESSAGE_TRANSPORT_TYPE = 4
MESSAGE_TRANSPORT_HEADER_SIZE = 16
POLY1305_TAG_SIZE = 16
MESSAGE_KEEPALIVE_SIZE = MESSAGE_TRANSPORT_HEADER_SIZE + POLY1305_TAG_SIZE
PADDING_MULTIPLE = 16

IPV4_HEADER_LEN = 20
IPV6_HEADER_LEN = 40
IPV4_OFFSET_DST = 16
IPV6_OFFSET_DST = 24

_MAX_UINT32 = 0xFFFFFFFF
_MAX_UINT64 = 0xFFFFFFFFFFFFFFFF

_HEADER = struct.Struct("<IIQ")
_NONCE = struct.Struct("<4xQ")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def calculate_padding_size(packet_size: int, mtu: int) -> int:
    """Number of zero bytes to append so the packet fills a padding unit without passing the MTU."""
    if packet_size < 0:
        raise ValueError("packet size must not be negative")
    if mtu < 0:
        raise ValueError("mtu must not be negative")
    round_mask = ~(PADDING_MULTIPLE - 1)
    last_unit = packet_size
    if mtu == 0:
        return ((last_unit + PADDING_MULTIPLE - 1) & round_mask) - last_unit
    if last_unit > mtu:
        last_unit %= mtu
    padded = min((last_unit + PADDING_MULTIPLE - 1) & round_mask, mtu)
    return padded - last_unit


def destination_address(packet: bytes) -> Optional[IPAddress]:
    """The destination address of an IP packet, or None if it is not a usable IPv4 or IPv6 packet."""
    if not packet:
        return None
    version = packet[0] >> 4
    if version == 4:
        if len(packet) < IPV4_HEADER_LEN:
            return None
        return ipaddress.IPv4Address(bytes(packet[IPV4_OFFSET_DST:IPV4_OFFSET_DST + 4]))
    if version == 6:
        if len(packet) < IPV6_HEADER_LEN:
            return None
        return ipaddress.IPv6Address(bytes(packet[IPV6_OFFSET_DST:IPV6_OFFSET_DST + 16]))
    return None


def seal_transport(
    key: bytes, receiver_index: int, nonce: int, packet: bytes, mtu: int = 0
) -> bytes:
    """Build a transport message: header, then the padded packet sealed with ``key``.

    The header carries the message type, the receiver's index and the
    counter ``nonce``; the header itself is not authenticated.
    """
    if not 0 <= receiver_index <= _MAX_UINT32:
        raise ValueError("receiver index must fit in 32 bits")
    if not 0 <= nonce <= _MAX_UINT64:
        raise ValueError("nonce must fit in 64 bits")
    aead = ChaCha20Poly1305(bytes(key))
    header = _HEADER.pack(MESSAGE_TRANSPORT_TYPE, receiver_index, nonce)
    padding = calculate_padding_size(len(packet), mtu)
    plaintext = bytes(packet) + bytes(padding)
    return header + aead.encrypt(_NONCE.pack(nonce), plaintext, None)