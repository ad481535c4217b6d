import ipaddress

import pytest

from wgtunnel.ratelimiter import (
    GARBAGE_COLLECT_TIME,
    PACKET_COST,
    PACKETS_BURSTABLE,
    Ratelimiter,
)


class FakeClock:
    def __init__(self):
        self.now = 0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    with Ratelimiter(clock) as rate:
        yield rate


def burst(limiter, ip, attempts=20):
    return sum(limiter.allow(ip) for _ in range(attempts))


def test_first_packet_allowed(limiter):
    assert limiter.allow("192.0.2.1") is True


def test_burst_is_bounded(limiter):
    allowed = burst(limiter, "192.0.2.1")
    assert allowed == 4
    assert allowed < PACKETS_BURSTABLE


def test_tokens_refill_over_time(limiter, clock):
    burst(limiter, "192.0.2.1")
    assert limiter.allow("192.0.2.1") is False
    clock.now += PACKET_COST
    assert limiter.allow("192.0.2.1") is True
    assert limiter.allow("192.0.2.1") is False


def test_refill_capped_at_burst(limiter, clock):
    first = burst(limiter, "192.0.2.1")
    clock.now += 100 * GARBAGE_COLLECT_TIME
    second = burst(limiter, "192.0.2.1")
    assert second <= PACKETS_BURSTABLE
    assert second >= first


def test_addresses_are_independent(limiter):
    burst(limiter, "192.0.2.1")
    assert limiter.allow("192.0.2.1") is False
    assert limiter.allow("192.0.2.2") is True
    assert limiter.allow("2001:db8::1") is True


def test_address_forms_share_entry(limiter):
    burst(limiter, "192.0.2.7")
    assert limiter.allow(ipaddress.ip_address("192.0.2.7")) is False
    assert limiter.allow(bytes([192, 0, 2, 7])) is False


def test_cleanup_keeps_recent_entries(limiter, clock):
    limiter.allow("192.0.2.1")
    clock.now += GARBAGE_COLLECT_TIME // 2
    assert limiter.cleanup() is False


def test_cleanup_drops_idle_entries(limiter, clock):
    burst(limiter, "192.0.2.1")
    clock.now += GARBAGE_COLLECT_TIME + 1
    assert limiter.cleanup() is True
    allowed = burst(limiter, "192.0.2.1")
    assert allowed == burst(Ratelimiter(clock), "192.0.2.1")


def test_invalid_address(limiter):
    with pytest.raises(ValueError):
        limiter.allow("not-an-address")