# wgtunnel

Pure-Python building blocks for a userspace WireGuard-style tunnel.

## Modules

- `wgtunnel.replay`: `Filter`, a sliding-window anti-replay filter for
  transport message counters (RFC 6479). `validate_counter(counter, limit)`
  accepts each counter once and rejects counters at or above `limit` or too
  far behind the newest one; `reset()` empties it.
- `wgtunnel.ratelimiter`: `Ratelimiter`, a per-address token bucket
  (a burst of 5, then 20 packets per second). `allow(ip)` takes an address
  as text, bytes, integer or `ipaddress` object. An optional `clock`
  returns nanoseconds. A background thread drops idle entries; `close()`
  stops it, and the limiter works as a context manager.
- `wgtunnel.tai64n`: `Timestamp`, `stamp(unix_nanos)` and `now()` for
  12-byte TAI64N timestamps with the low nanosecond bits masked off.
  `Timestamp.after()` compares two of them; `bytes()` and `str()` give the
  raw and human-readable forms.
- `wgtunnel.timers`: `Timer`, a re-armable one-shot timer running a
  callback on a background thread, with `mod(delay)` (seconds or a
  `timedelta`), `delete()`, `delete_sync()` and `is_pending()`.
- `wgtunnel.rwcancel`: `RWCancel`, reads and writes on a non-blocking file
  descriptor that another thread can interrupt with `cancel()`; interrupted
  calls raise `OSError` with `EBADF`. `retry_after_error()` tells whether an
  error means "try again".
- `wgtunnel.ipc`: `uapi_open()` creates the Unix control socket (replacing a
  stale one), `uapi_listen()` wraps it in a `UAPIListener` whose `accept()`
  fails once the listener is closed or its socket file is removed.
  `sock_path()` gives the socket location, `/var/run/wireguard/<name>.sock`
  by default. The `IPC_ERROR_*` constants are the status codes reported to
  clients.
- `wgtunnel.outbound`: `calculate_padding_size()`, `destination_address()`
  and `seal_transport()` for building ChaCha20-Poly1305 transport messages.
- `wgtunnel.inbound`: `classify_message()`, `open_transport()` (raising
  `DecryptionError` on a bad tag), `trim_inbound()` and `source_address()`
  for taking them apart again.
- `wgtunnel.uapi`: `UAPIDevice`, which keeps device and peer configuration
  (`PeerState`) and speaks the text configuration protocol: `ipc_get()`,
  `ipc_set()`, their stream forms, and `ipc_handle()` to serve `get=1` /
  `set=1` requests on a connected socket, answering each with an `errno=`
  line. Failures raise `IPCError`, which carries the status `code`.
  `parse_endpoint()` parses `address:port` (IPv6 in square brackets).

## Installation

```
pip install wgtunnel
```

The only runtime dependency is `cryptography`.

## Examples

Rejecting replayed counters:

```python
from wgtunnel.replay import Filter

window = Filter()
window.validate_counter(0, 1 << 60)   # True: first time seen
window.validate_counter(0, 1 << 60)   # False: replay
window.reset()
window.validate_counter(0, 1 << 60)   # True again after reset
```

Padding transport content to a multiple of 16 bytes, never past the MTU:

```python
from wgtunnel.outbound import calculate_padding_size

calculate_padding_size(1, 0)        # 15
calculate_padding_size(1419, 1420)  # 1
```

Producing a TAI64N timestamp:

```python
from wgtunnel.tai64n import now

ts = now()
len(bytes(ts))   # 12
print(ts)        # e.g. 2024-01-01 12:00:00.1 +0000 UTC
```

Reading and changing configuration through the text protocol:

```python
from wgtunnel.uapi import UAPIDevice, IPCError

device = UAPIDevice()
device.ipc_set("listen_port=51820\nfwmark=7\n")
print(device.ipc_get())   # listen_port=51820 / fwmark=7

try:
    device.ipc_set("no_such_key=1\n")
except IPCError as exc:
    print(exc.code, exc)  # invalid UAPI device key
```

## What this package does not do

- It has no TUN device access: nothing here reads packets from or writes
  them to an operating-system interface.
- It does not perform handshakes. There are no initiation, response or
  cookie messages and no key derivation; `seal_transport()` and
  `open_transport()` take the symmetric key from the caller.
- `UAPIDevice` only stores configuration. Setting `listen_port` or `fwmark`
  records the value; no UDP socket is bound and no traffic is sent.
- There is no command-line program or daemon; the pieces are meant to be
  assembled by the caller.

## Running the tests

```
pip install -e ".[test]"
pytest
```