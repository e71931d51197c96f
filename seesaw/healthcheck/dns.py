"""DNS healthcheck: query a server over UDP and look for an expected answer."""

from __future__ import annotations

import ipaddress
import json
import socket
import time
from dataclasses import dataclass
from typing import Optional, Union

import dns.exception
import dns.flags
import dns.message
import dns.rdataclass
import dns.rdatatype

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

DEFAULT_DNS_TIMEOUT = 3.0
_MAX_MESSAGE_SIZE = 65535

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
_DNS_ERRORS = (dns.exception.DNSException, ValueError)


def dns_type(name: str) -> int:
    """Return the numeric DNS record type with the given mnemonic."""
    text = name.upper()
    try:
        if text.startswith("TYPE"):
            raise dns.rdatatype.UnknownRdatatype
        return int(dns.rdatatype.from_text(text))
    except dns.exception.DNSException:
        raise ValueError(f"unknown DNS type {json.dumps(name)}") from None


def _parse_ip(text: str) -> Optional[_IPAddress]:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _set_deadline(sock: socket.socket, deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("i/o timeout")
    sock.settimeout(remaining)


@dataclass
class DNSChecker(Target, Checker):
    """A DNS healthcheck that expects a given answer to a question."""

    proto: Optional[IPProto] = IPProto.UDP
    query_name: str = ""
    query_class: int = dns.rdataclass.IN
    query_type: int = dns.rdatatype.A
    answer: str = ""

    def _question(self) -> str:
        return (f"{self.query_name} {dns.rdataclass.to_text(self.query_class)} "
                f"{dns.rdatatype.to_text(self.query_type)}")

    def __str__(self) -> str:
        return f"DNS {self._question()} {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Send the question and look for the expected answer in the reply."""
        if not self.query_name.endswith("."):
            self.query_name += "."

        msg = f"DNS {self._question()} query to port {self.port}"
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_DNS_TIMEOUT
        deadline = start + timeout

        expected: Optional[_IPAddress] = None
        if self.query_type == dns.rdatatype.A:
            expected = _parse_ip(self.answer)
            if expected is None or expected.version != 4:
                return complete(start, f"{msg}; {json.dumps(self.answer)} is not a valid "
                                       "IPv4 address", False, None)
        elif self.query_type == dns.rdatatype.AAAA:
            expected = _parse_ip(self.answer)
            if expected is None:
                return complete(start, f"{msg}; {json.dumps(self.answer)} is not a valid "
                                       "IPv6 address", False, None)

        try:
            query = dns.message.make_query(self.query_name, self.query_type, self.query_class)
            wire = query.to_wire()
        except _DNS_ERRORS as err:
            return complete(start, msg, False, err)

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except (OSError, ValueError) as err:
            return complete(start, msg, False, err)

        with sock:
            try:
                _set_deadline(sock, deadline)
                sock.send(wire)
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

            try:
                _set_deadline(sock, deadline)
                data = sock.recv(_MAX_MESSAGE_SIZE)
                response = dns.message.from_wire(data)
            except (OSError, *_DNS_ERRORS) as err:
                return complete(start, f"{msg}; failed to read response", False, err)

        if not response.flags & dns.flags.QR:
            return complete(start, f"{msg}; not a query response", False, None)
        rcode = int(response.rcode())
        if rcode != 0:
            return complete(start, f"{msg}; non-zero response code - {rcode}", False, None)
        if not any(len(rrset) for rrset in response.answer):
            return complete(start, f"{msg}; no answers received for query {self._question()}",
                            False, None)

        for rrset in response.answer:
            if rrset.name.to_text() != self.query_name:
                continue
            if rrset.rdclass != self.query_class or rrset.rdtype != self.query_type:
                continue
            if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                continue
            for rdata in rrset:
                if _parse_ip(rdata.address) == expected:
                    return complete(start, f"{msg}; received answer {rdata.address}",
                                    True, None)

        return complete(start, f"{msg}; failed to match answer", False, None)