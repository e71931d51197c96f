import functools
import socket
from unittest import mock

import pytest

from seesaw.healthcheck.core import IPProto
from seesaw.healthcheck.ping import (
    ICMP4_ECHO_REPLY,
    ICMP4_ECHO_REQUEST,
    ICMP6_ECHO_REPLY,
    ICMP6_ECHO_REQUEST,
    PingChecker,
    exchange_echo,
    icmp_checksum,
    new_echo_request,
    parse_echo_reply,
)

IPV4_HEADER = bytes([0x45]) + bytes(19)


class FakeRawSocket:
    created = []

    def __init__(self, responder, family, kind, proto):
        self.family = family
        self.kind = kind
        self.proto = proto
        self.responder = responder
        self.sent = []
        self.pending = []
        self.closed = False
        FakeRawSocket.created.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed = True

    def settimeout(self, value):
        self.timeout = value

    def sendto(self, data, addr):
        self.sent.append((bytes(data), addr))
        self.pending.extend(self.responder(bytes(data), addr))

    def recvfrom(self, size):
        if not self.pending:
            raise socket.timeout("timed out")
        return self.pending.pop(0)


def patched(responder):
    FakeRawSocket.created.clear()
    return mock.patch("socket.socket", functools.partial(FakeRawSocket, responder))


def v4_reply(request, corrupt=False, seq_delta=0):
    reply = bytearray(request)
    reply[0] = ICMP4_ECHO_REPLY
    reply[7] = (reply[7] + seq_delta) & 0xFF
    reply[2] = reply[3] = 0
    checksum = icmp_checksum(reply)
    reply[2] ^= checksum & 0xFF
    reply[3] ^= checksum >> 8
    if corrupt:
        reply[10] ^= 0xFF
    return bytes(reply)


def test_ipv4_echo_request_layout():
    msg = new_echo_request(IPProto.ICMP, 0x1234, 7, 64, b"Healthcheck")
    assert len(msg) == 64
    assert msg[0] == ICMP4_ECHO_REQUEST
    assert msg[1] == 0
    assert icmp_checksum(msg) == 0
    assert parse_echo_reply(msg)[:2] == (0x1234, 7)
    assert msg[8:52] == b"Healthcheck" * 4
    assert msg[52:] == bytes(12)


def test_ipv6_echo_request_leaves_checksum_to_kernel():
    msg = new_echo_request(IPProto.ICMPV6, 1, 2, 64, b"Healthcheck")
    assert msg[0] == ICMP6_ECHO_REQUEST
    assert msg[2:4] == b"\x00\x00"
    assert parse_echo_reply(msg) == (1, 2, 0)


def test_echo_request_rejects_other_protocols():
    with pytest.raises(ValueError):
        new_echo_request(IPProto.TCP, 1, 2, 64, b"x")


def test_echo_request_rejects_short_length():
    with pytest.raises(ValueError):
        new_echo_request(IPProto.ICMP, 1, 2, 4, b"x")


def test_checksum_of_empty_message():
    assert icmp_checksum(b"") == 0xFFFF


@pytest.mark.parametrize("seq", [0, 1, 255, 256, 65535])
def test_checksum_verifies_for_many_sequences(seq):
    msg = new_echo_request(IPProto.ICMP, 0xBEEF, seq, 33, b"Healthcheck")
    assert icmp_checksum(msg) == 0
    assert parse_echo_reply(msg)[1] == seq


def test_parse_echo_reply_fields():
    msg = bytes([0, 0, 0x12, 0x34, 0xAB, 0xCD, 0x00, 0x07])
    assert parse_echo_reply(msg) == (0xABCD, 7, 0x1234)


def test_exchange_echo_unknown_network():
    with pytest.raises(ValueError):
        exchange_echo("tcp4", "192.0.2.1", 1.0, b"\x08" + bytes(7))


def test_exchange_echo_ipv4_success():
    echo = new_echo_request(IPProto.ICMP, 42, 3, 64, b"Healthcheck")

    def responder(data, addr):
        return [(IPV4_HEADER + v4_reply(data), ("192.0.2.1", 0))]

    with patched(responder):
        exchange_echo("ip4:icmp", "192.0.2.1", 1.0, echo)
    fake = FakeRawSocket.created[0]
    assert fake.sent == [(echo, ("192.0.2.1", 0))]
    assert fake.family == socket.AF_INET
    assert fake.closed


def test_checker_skips_unrelated_packets():
    hc = PingChecker("192.0.2.1")

    def responder(data, addr):
        return [
            (IPV4_HEADER + v4_reply(data), ("192.0.2.9", 0)),
            (IPV4_HEADER + v4_reply(data, seq_delta=1), ("192.0.2.1", 0)),
            (IPV4_HEADER + data, ("192.0.2.1", 0)),
            (IPV4_HEADER + b"\x00\x00", ("192.0.2.1", 0)),
            (IPV4_HEADER + v4_reply(data), ("192.0.2.1", 0)),
        ]

    with patched(responder):
        result = hc.check(1.0)
    assert result.success is True
    assert result.error is None
    assert FakeRawSocket.created[0].pending == []


def test_exchange_echo_bad_checksum():
    echo = new_echo_request(IPProto.ICMP, 42, 3, 64, b"Healthcheck")

    def responder(data, addr):
        return [(IPV4_HEADER + v4_reply(data, corrupt=True), ("192.0.2.1", 0))]

    with patched(responder), pytest.raises(ValueError, match="Bad ICMP checksum"):
        exchange_echo("ip4:icmp", "192.0.2.1", 1.0, echo)


def test_exchange_echo_times_out():
    echo = new_echo_request(IPProto.ICMP, 42, 3, 64, b"Healthcheck")
    with patched(lambda data, addr: []), pytest.raises(OSError):
        exchange_echo("ip4:icmp", "192.0.2.1", 0.2, echo)


def test_checker_ipv6_success():
    hc = PingChecker("2001:db8::1")

    def responder(data, addr):
        reply = bytearray(data)
        reply[0] = ICMP6_ECHO_REPLY
        reply[2:4] = b"\xde\xad"
        return [(bytes(reply), ("2001:db8::1%eth0", 0, 0, 0))]

    with patched(responder):
        result = hc.check(1.0)
    assert result.success is True
    assert result.message == "ICMP ping to host 2001:db8::1"
    assert FakeRawSocket.created[0].family == socket.AF_INET6


def test_ping_checker_defaults():
    first = PingChecker("192.0.2.1")
    second = PingChecker("2001:db8::1")
    assert first.proto is IPProto.ICMP
    assert second.proto is IPProto.ICMPV6
    assert second.ident == (first.ident + 1) & 0xFFFF
    assert str(first) == "PING 192.0.2.1"
    assert first.network() == "ip4:icmp"
    assert second.network() == "ip6:ipv6-icmp"


def test_ping_checker_success_advances_sequence():
    hc = PingChecker("192.0.2.1")

    def responder(data, addr):
        return [(IPV4_HEADER + v4_reply(data), ("192.0.2.1", 0))]

    with patched(responder):
        result = hc.check(1.0)
        second = hc.check(1.0)
    assert result.success and second.success
    assert result.message == "ICMP ping to host 192.0.2.1"
    assert hc.seqnum == 2
    sent = [fake.sent[0][0] for fake in FakeRawSocket.created]
    assert [parse_echo_reply(msg)[:2] for msg in sent] == [(hc.ident, 0), (hc.ident, 1)]


def test_ping_checker_timeout_fails():
    hc = PingChecker("192.0.2.1")
    with patched(lambda data, addr: []):
        result = hc.check(0.2)
    assert not result.success
    assert isinstance(result.error, OSError)


def test_ping_checker_socket_error_fails():
    hc = PingChecker("192.0.2.1")
    with mock.patch("socket.socket", side_effect=PermissionError("not permitted")):
        result = hc.check(0.2)
    assert not result.success
    assert isinstance(result.error, PermissionError)
    assert str(result) == "not permitted"