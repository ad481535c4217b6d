import ipaddress
import socket
import threading

import pytest

from wgtunnel.ipc import IPC_ERROR_INVALID, IPC_ERROR_PROTOCOL
from wgtunnel.uapi import IPCError, PeerState, UAPIDevice, parse_endpoint

PEER_A = "01" * 32
PEER_B = "02" * 32
PSK_HEX = "0f" * 32
DEVICE_KEY_HEX = "a0" * 32


def _code_of(device, config):
    with pytest.raises(IPCError) as info:
        device.ipc_set(config)
    return info.value.code


def _converse(device, request: bytes) -> bytes:
    server, client = socket.socketpair()
    worker = threading.Thread(target=device.ipc_handle, args=(server,))
    worker.start()
    try:
        client.sendall(request)
        client.shutdown(socket.SHUT_WR)
        chunks = []
        while True:
            data = client.recv(4096)
            if not data:
                break
            chunks.append(data)
    finally:
        client.close()
        worker.join(timeout=5)
    return b"".join(chunks)


def test_empty_device_reports_nothing():
    assert UAPIDevice().ipc_get() == ""


def test_device_fields_round_trip():
    device = UAPIDevice()
    device.ipc_set(f"private_key={DEVICE_KEY_HEX.upper()}\nlisten_port=51820\nfwmark=7\n")
    assert device.ipc_get() == (
        f"private_key={DEVICE_KEY_HEX}\nlisten_port=51820\nfwmark=7\n"
    )
    assert device.private_key == bytes.fromhex(DEVICE_KEY_HEX)
    assert any(device.public_key)


def test_peer_configuration_round_trip():
    device = UAPIDevice()
    device.ipc_set(
        f"public_key={PEER_A}\n"
        f"preshared_key={PSK_HEX}\n"
        "endpoint=192.0.2.1:51820\n"
        "persistent_keepalive_interval=25\n"
        "allowed_ip=10.0.0.0/24\n"
        "allowed_ip=fd00::/64\n"
    )
    assert device.ipc_get() == (
        f"public_key={PEER_A}\n"
        f"preshared_key={PSK_HEX}\n"
        "protocol_version=1\n"
        "endpoint=192.0.2.1:51820\n"
        "last_handshake_time_sec=0\n"
        "last_handshake_time_nsec=0\n"
        "tx_bytes=0\n"
        "rx_bytes=0\n"
        "persistent_keepalive_interval=25\n"
        "allowed_ip=10.0.0.0/24\n"
        "allowed_ip=fd00::/64\n"
    )


def test_get_reports_counters_and_handshake_time():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\n")
    peer = device.peers[bytes.fromhex(PEER_A)]
    peer.last_handshake_nano = 1_500_000_000
    peer.tx_bytes = 10
    peer.rx_bytes = 20
    text = device.ipc_get()
    assert "last_handshake_time_sec=1\n" in text
    assert "last_handshake_time_nsec=500000000\n" in text
    assert "tx_bytes=10\n" in text
    assert "rx_bytes=20\n" in text


def test_allowed_ip_is_masked():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\nallowed_ip=10.0.0.5/24\n")
    assert device.peers[bytes.fromhex(PEER_A)].allowed_ips == [
        ipaddress.ip_network("10.0.0.0/24")
    ]


def test_allowed_ip_moves_to_latest_peer():
    device = UAPIDevice()
    device.ipc_set(
        f"public_key={PEER_A}\nallowed_ip=10.0.0.0/24\n"
        f"public_key={PEER_B}\nallowed_ip=10.0.0.0/24\n"
    )
    assert device.peers[bytes.fromhex(PEER_A)].allowed_ips == []
    assert device.peers[bytes.fromhex(PEER_B)].allowed_ips == [
        ipaddress.ip_network("10.0.0.0/24")
    ]


def test_replace_allowed_ips_clears_list():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\nallowed_ip=10.0.0.0/24\n")
    device.ipc_set(f"public_key={PEER_A}\nreplace_allowed_ips=true\nallowed_ip=10.1.0.0/16\n")
    assert device.peers[bytes.fromhex(PEER_A)].allowed_ips == [
        ipaddress.ip_network("10.1.0.0/16")
    ]


def test_remove_peer():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\npublic_key={PEER_B}\n")
    device.ipc_set(f"public_key={PEER_A}\nremove=true\nallowed_ip=10.0.0.0/8\n")
    assert list(device.peers) == [bytes.fromhex(PEER_B)]


def test_update_only_does_not_create():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\nupdate_only=true\nendpoint=192.0.2.1:1\n")
    assert device.peers == {}


def test_update_only_keeps_existing_peer():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\n")
    device.ipc_set(f"public_key={PEER_A}\nupdate_only=true\npersistent_keepalive_interval=5\n")
    assert device.peers[bytes.fromhex(PEER_A)].persistent_keepalive_interval == 5


def test_replace_peers_removes_all():
    device = UAPIDevice()
    device.ipc_set(f"public_key={PEER_A}\npublic_key={PEER_B}\n")
    device.ipc_set("replace_peers=true\n")
    assert device.peers == {}


def test_own_public_key_is_ignored():
    device = UAPIDevice()
    device.ipc_set(f"private_key={DEVICE_KEY_HEX}\n")
    own = device.public_key.hex()
    device.ipc_set(f"public_key={own}\nallowed_ip=10.0.0.0/8\n")
    assert device.peers == {}


def test_blank_line_ends_operation():
    device = UAPIDevice()
    device.ipc_set("listen_port=1\n\nfwmark=5\n")
    assert device.listen_port == 1
    assert device.fwmark == 0


def test_crlf_lines_are_accepted():
    device = UAPIDevice()
    device.ipc_set("listen_port=2\r\n")
    assert device.listen_port == 2


def test_line_without_equals_is_protocol_error():
    assert _code_of(UAPIDevice(), "nonsense\n") == IPC_ERROR_PROTOCOL


@pytest.mark.parametrize(
    "config",
    [
        "listen_port=70000\n",
        "listen_port=+5\n",
        "fwmark=-1\n",
        "private_key=abc\n",
        "replace_peers=false\n",
        "bogus=1\n",
        "public_key=zz\n",
        f"public_key={PEER_A}\nprotocol_version=2\n",
        f"public_key={PEER_A}\nendpoint=nowhere\n",
        f"public_key={PEER_A}\nallowed_ip=10.0.0.1\n",
        f"public_key={PEER_A}\nallowed_ip=10.0.0.0/024\n",
        f"public_key={PEER_A}\nallowed_ip=10.0.0.0/33\n",
        f"public_key={PEER_A}\nremove=yes\n",
        f"public_key={PEER_A}\nbogus=1\n",
    ],
)
def test_invalid_values(config):
    assert _code_of(UAPIDevice(), config) == IPC_ERROR_INVALID


def test_ipc_error_message():
    error = IPCError(IPC_ERROR_INVALID, "bad")
    assert str(error) == f"IPC error {IPC_ERROR_INVALID}: bad"
    assert error.code == IPC_ERROR_INVALID


def test_parse_endpoint_ipv4():
    endpoint = parse_endpoint("192.0.2.1:51820")
    assert endpoint.address == ipaddress.ip_address("192.0.2.1")
    assert endpoint.port == 51820
    assert str(endpoint) == "192.0.2.1:51820"


def test_parse_endpoint_ipv6_round_trip():
    assert str(parse_endpoint("[2001:db8::1]:51820")) == "[2001:db8::1]:51820"


@pytest.mark.parametrize(
    "value", ["2001:db8::1:80", "[192.0.2.1]:80", "192.0.2.1:70000", "192.0.2.1:", "192.0.2.1"]
)
def test_parse_endpoint_rejects(value):
    with pytest.raises(ValueError):
        parse_endpoint(value)


def test_peer_state_defaults():
    peer = PeerState(bytes(32))
    assert peer.preshared_key == bytes(32)
    assert peer.allowed_ips == []


def test_handle_get():
    device = UAPIDevice()
    device.ipc_set("listen_port=51820\n")
    assert _converse(device, b"get=1\n\n") == b"listen_port=51820\nerrno=0\n\n"


def test_handle_set_then_get():
    device = UAPIDevice()
    reply = _converse(device, b"set=1\nfwmark=3\n\nget=1\n\n")
    assert reply == b"errno=0\n\nfwmark=3\nerrno=0\n\n"
    assert device.fwmark == 3


def test_handle_set_error_reports_code():
    reply = _converse(UAPIDevice(), b"set=1\nnonsense\n\n")
    assert reply == f"errno={IPC_ERROR_PROTOCOL}\n\n".encode()


def test_handle_get_trailing_character():
    reply = _converse(UAPIDevice(), b"get=1\nx")
    assert reply == f"errno={IPC_ERROR_INVALID}\n\n".encode()


def test_handle_unknown_operation_closes():
    assert _converse(UAPIDevice(), b"list=1\n") == b""