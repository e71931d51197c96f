"""Core healthcheck types: targets, results, states and configurations."""

from __future__ import annotations

import abc
import enum
import ipaddress
import time
from dataclasses import dataclass, field
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _normalise_ip(value) -> Optional[IPAddress]:
    """Parse *value* into an IP address, unwrapping IPv4-mapped IPv6."""
    if value is None:
        return None
    ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) \
        else ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class State(enum.Enum):
    """The current state of a healthcheck."""

    UNKNOWN = 0
    UNHEALTHY = 1
    HEALTHY = 2

    def __str__(self) -> str:
        return self.name.capitalize()


class HealthcheckMode(enum.Enum):
    """How a healthcheck reaches its target."""

    PLAIN = "PLAIN"
    DSR = "DSR"
    TUN = "TUN"

    def __str__(self) -> str:
        return self.value


class IPProto(enum.IntEnum):
    """IP protocol numbers used by healthchecks."""

    ICMP = 1
    TCP = 6
    UDP = 17
    ICMPV6 = 58


class Result:
    """The outcome of a single healthcheck run."""

    __slots__ = ("message", "success", "duration", "error")

    def __init__(self, message: str = "", success: bool = False,
                 duration: float = 0.0, error: Optional[BaseException] = None) -> None:
        self.message = message
        self.success = success
        self.duration = duration
        self.error = error

    def __str__(self) -> str:
        if self.error is not None:
            return str(self.error)
        return self.message

    def __repr__(self) -> str:
        return (f"Result(message={self.message!r}, success={self.success!r}, "
                f"duration={self.duration!r}, error={self.error!r})")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Result):
            return NotImplemented
        return (self.message, self.success, self.duration, self.error) == \
            (other.message, other.success, other.duration, other.error)


def complete(start: float, message: str, success: bool,
             error: Optional[BaseException]) -> Result:
    """Build a Result for a check that began at monotonic time *start*."""
    return Result(message, success, time.monotonic() - start, error)


class Checker(abc.ABC):
    """Interface implemented by every healthcheck."""

    @abc.abstractmethod
    def check(self, timeout: float) -> Result:
        """Run the check once, taking at most *timeout* seconds."""


@dataclass
class Target:
    """The endpoint a healthcheck is run against."""

    ip: IPAddress
    host: Optional[IPAddress] = None
    mark: int = 0
    mode: HealthcheckMode = HealthcheckMode.PLAIN
    port: int = 0
    proto: Optional[IPProto] = None

    def __post_init__(self) -> None:
        self.ip = _normalise_ip(self.ip)
        self.host = _normalise_ip(self.host)

    def _is_ipv4(self) -> bool:
        return isinstance(self.ip, ipaddress.IPv4Address)

    def __str__(self) -> str:
        via = ""
        if self.mode is not HealthcheckMode.PLAIN:
            host = self.host if self.host is not None else "<nil>"
            via = f" (via {host} mark {self.mark})"
        return f"{self.addr()} {self.mode}{via}"

    def addr(self) -> str:
        """Return the address of the target as host:port."""
        if self._is_ipv4():
            return f"{self.ip}:{self.port}"
        return f"[{self.ip}]:{self.port}"

    def network(self) -> str:
        """Return the network name for the target's protocol and family."""
        version = 4 if self._is_ipv4() else 6
        if self.proto is IPProto.ICMP:
            return "ip4:icmp"
        if self.proto is IPProto.ICMPV6:
            return "ip6:ipv6-icmp"
        if self.proto is IPProto.TCP:
            return f"tcp{version}"
        if self.proto is IPProto.UDP:
            return f"udp{version}"
        return "(unknown)"


@dataclass
class Status:
    """A snapshot of a healthcheck's progress."""

    last_check: Optional[float] = None
    duration: float = 0.0
    failures: int = 0
    successes: int = 0
    state: State = State.UNKNOWN
    message: str = ""


@dataclass
class Notification:
    """A status report for one healthcheck."""

    id: int
    status: Status = field(default_factory=Status)

    @property
    def state(self) -> State:
        return self.status.state

    def __str__(self) -> str:
        return f"ID 0x{self.id:x} {self.state}"


@dataclass
class Config:
    """The configuration of one healthcheck."""

    id: int
    checker: Optional[Checker] = None
    interval: float = 5.0
    timeout: float = 30.0
    retries: int = 0