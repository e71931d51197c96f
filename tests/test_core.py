import time

import pytest

from seesaw.healthcheck.core import (
    Config,
    HealthcheckMode,
    IPProto,
    Notification,
    Result,
    State,
    Status,
    Target,
    complete,
)


@pytest.mark.parametrize(
    "state, name",
    [(State.UNKNOWN, "Unknown"), (State.UNHEALTHY, "Unhealthy"), (State.HEALTHY, "Healthy")],
)
def test_state_names(state, name):
    assert str(state) == name


def test_target_addr_ipv4():
    assert Target("127.0.0.1", port=8080).addr() == "127.0.0.1:8080"


def test_target_addr_ipv6():
    assert Target("::1", port=53).addr() == "[::1]:53"


def test_target_ipv4_mapped_address_is_ipv4():
    target = Target("::ffff:1.2.3.4", port=80)
    assert target.addr() == "1.2.3.4:80"
    assert target.network() == "tcp4" or target.proto is None


@pytest.mark.parametrize(
    "ip, proto, expected",
    [
        ("127.0.0.1", IPProto.TCP, "tcp4"),
        ("::1", IPProto.TCP, "tcp6"),
        ("127.0.0.1", IPProto.UDP, "udp4"),
        ("::1", IPProto.UDP, "udp6"),
        ("127.0.0.1", IPProto.ICMP, "ip4:icmp"),
        ("::1", IPProto.ICMPV6, "ip6:ipv6-icmp"),
        ("127.0.0.1", None, "(unknown)"),
    ],
)
def test_target_network(ip, proto, expected):
    assert Target(ip, proto=proto).network() == expected


def test_target_str_plain():
    assert str(Target("127.0.0.1", port=80)) == "127.0.0.1:80 PLAIN"


def test_target_str_via_host():
    target = Target("127.0.0.1", host="10.0.0.1", mark=5, mode=HealthcheckMode.DSR, port=80)
    assert str(target) == "127.0.0.1:80 DSR (via 10.0.0.1 mark 5)"


def test_target_rejects_bad_ip():
    with pytest.raises(ValueError):
        Target("not-an-ip")


def test_result_str_prefers_error():
    assert str(Result("message", False, 0.0, OSError("boom"))) == "boom"
    assert str(Result("all good", True)) == "all good"


def test_complete_measures_duration():
    start = time.monotonic() - 0.2
    result = complete(start, "done", True, None)
    assert result.success is True
    assert result.message == "done"
    assert result.duration >= 0.2
    assert result.error is None


def test_notification_str_and_state():
    notification = Notification(31, Status(state=State.HEALTHY))
    assert notification.state is State.HEALTHY
    assert str(notification) == "ID 0x1f Healthy"


def test_config_defaults():
    config = Config(1)
    assert (config.interval, config.timeout, config.retries) == (5.0, 30.0, 0)
    assert config.checker is None


def test_status_defaults():
    status = Status()
    assert status.state is State.UNKNOWN
    assert (status.failures, status.successes, status.message) == (0, 0, "")