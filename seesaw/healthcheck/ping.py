"""ICMP echo (ping) healthcheck."""

from __future__ import annotations

import ipaddress
import os
import random
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from .core import Checker, IPProto, Result, Target, complete

DEFAULT_PING_TIMEOUT = 1.0

ICMP4_ECHO_REQUEST = 8
ICMP4_ECHO_REPLY = 0
ICMP6_ECHO_REQUEST = 128
ICMP6_ECHO_REPLY = 129

_REPLY_SIZE = 256
_IPV4_MAX_HEADER = 60
_IPPROTO_ICMPV6 = getattr(socket, "IPPROTO_ICMPV6", 58)

_NETWORKS = {
    "ip4:icmp": (socket.AF_INET, socket.IPPROTO_ICMP),
    "ip6:ipv6-icmp": (socket.AF_INET6, _IPPROTO_ICMPV6),
}

_id_lock = threading.Lock()
_next_id = random.Random(os.getpid()).getrandbits(16)

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _allocate_id() -> int:
    global _next_id
    with _id_lock:
        ident = _next_id
        _next_id = (_next_id + 1) & 0xFFFF
    return ident


def _normalise(value) -> _IPAddress:
    ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) \
        else ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def icmp_checksum(msg: bytes) -> int:
    """Return the Internet checksum of *msg*, in the byte order it is stored."""
    total = sum(msg[i] | msg[i + 1] << 8 for i in range(0, len(msg) - 1, 2))
    if len(msg) % 2:
        total += msg[-1]
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def _info_message(ident: int, seqnum: int, msglen: int, filler: bytes) -> bytearray:
    if msglen < 8:
        raise ValueError(f"ICMP message length {msglen} is too short")
    msg = bytearray(msglen)
    body = filler * ((msglen - 8) // (len(filler) + 1))
    msg[8:8 + len(body)] = body[:msglen - 8]
    msg[4:6] = (ident & 0xFFFF).to_bytes(2, "big")
    msg[6:8] = (seqnum & 0xFFFF).to_bytes(2, "big")
    return msg


def new_echo_request(proto: IPProto, ident: int, seqnum: int, msglen: int,
                     filler: bytes) -> bytes:
    """Build an ICMP or ICMPv6 echo request of *msglen* bytes."""
    msg = _info_message(ident, seqnum, msglen, filler)
    if proto is IPProto.ICMP:
        msg[0] = ICMP4_ECHO_REQUEST
        checksum = icmp_checksum(msg)
        msg[2] ^= checksum & 0xFF
        msg[3] ^= checksum >> 8
    elif proto is IPProto.ICMPV6:
        # The kernel fills in the checksum of ICMPv6 messages.
        msg[0] = ICMP6_ECHO_REQUEST
    else:
        raise ValueError(f"unsupported protocol for ICMP echo: {proto!r}")
    return bytes(msg)


def parse_echo_reply(msg: bytes) -> Tuple[int, int, int]:
    """Return the identifier, sequence number and checksum of an echo message."""
    ident = int.from_bytes(msg[4:6], "big")
    seqnum = int.from_bytes(msg[6:8], "big")
    checksum = int.from_bytes(msg[2:4], "big")
    return ident, seqnum, checksum


def _strip_ipv4_header(data: bytes) -> bytes:
    if not data:
        return data
    return data[(data[0] & 0x0F) * 4:]


def exchange_echo(network: str, ip, timeout: float, echo: bytes) -> None:
    """Send *echo* to *ip* and wait for the matching reply.

    Raises OSError on socket errors or timeout, ValueError on a bad network
    name or a reply with a bad checksum.
    """
    try:
        family, proto = _NETWORKS[network]
    except KeyError:
        raise ValueError(f"unknown network {network!r}") from None
    target = _normalise(ip)
    xid, xseqnum, _ = parse_echo_reply(echo)

    with socket.socket(family, socket.SOCK_RAW, proto) as sock:
        sock.sendto(echo, (str(target), 0))
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("i/o timeout")
            sock.settimeout(remaining)
            data, addr = sock.recvfrom(_REPLY_SIZE + _IPV4_MAX_HEADER)
            if family == socket.AF_INET:
                data = _strip_ipv4_header(data)
            reply = data[:_REPLY_SIZE]
            if len(reply) < 8:
                continue
            try:
                source = _normalise(str(addr[0]).split("%", 1)[0])
            except ValueError:
                continue
            if source != target:
                continue
            if reply[0] not in (ICMP4_ECHO_REPLY, ICMP6_ECHO_REPLY):
                continue
            rid, rseqnum, rchecksum = parse_echo_reply(reply)
            if rid != xid or rseqnum != xseqnum:
                continue
            if reply[0] == ICMP4_ECHO_REPLY and icmp_checksum(reply) != 0:
                raise ValueError(f"Bad ICMP checksum: {rchecksum:x}")
            return


@dataclass
class PingChecker(Target, Checker):
    """An ICMP echo healthcheck."""

    ident: int = field(default_factory=_allocate_id)
    seqnum: int = 0

    def __post_init__(self) -> None:
        Target.__post_init__(self)
        if self.proto is None:
            self.proto = IPProto.ICMP if self.ip.version == 4 else IPProto.ICMPV6

    def __str__(self) -> str:
        return f"PING {self.ip}"

    def check(self, timeout: float) -> Result:
        """Send one echo request and wait for its reply."""
        msg = f"ICMP ping to host {self.ip}"
        seq = self.seqnum
        self.seqnum = (self.seqnum + 1) & 0xFFFF
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_PING_TIMEOUT
        try:
            echo = new_echo_request(self.proto, self.ident, seq, 64, b"Healthcheck")
            exchange_echo(self.network(), self.ip, timeout, echo)
        except (OSError, ValueError) as err:
            return complete(start, msg, False, err)
        return complete(start, msg, True, None)