"""IPVS services and destinations, and their kernel (netlink) representations."""

from __future__ import annotations

import dataclasses
import ipaddress
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Linux address family numbers, as used in IPVS netlink messages.
AF_INET = 2
AF_INET6 = 10

_IPPROTO_TCP = 6
_IPPROTO_UDP = 17

_UINT32 = 0xFFFFFFFF


def _normalise_ip(value) -> Optional[IPAddress]:
    """Parse *value* into an IP address, unwrapping IPv4-mapped IPv6."""
    if value is None:
        return None
    ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) \
        else ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _is_ipv4(ip: Optional[IPAddress]) -> bool:
    return isinstance(ip, ipaddress.IPv4Address)


def _ip_text(ip: Optional[IPAddress]) -> str:
    return "<nil>" if ip is None else str(ip)


class IPProto(int):
    """The protocol encapsulated within an IP datagram."""

    TCP: "IPProto"
    UDP: "IPProto"

    def __str__(self) -> str:
        if self == _IPPROTO_TCP:
            return "TCP"
        if self == _IPPROTO_UDP:
            return "UDP"
        return f"IP({int(self)})"

    def __repr__(self) -> str:
        return f"IPProto({int(self)})"


IPProto.TCP = IPProto(_IPPROTO_TCP)
IPProto.UDP = IPProto(_IPPROTO_UDP)


@dataclass(frozen=True)
class IPVSVersion:
    """An IPVS version as major, minor and patch numbers."""

    major: int = 0
    minor: int = 0
    patch: int = 0

    @classmethod
    def from_int(cls, value: int) -> "IPVSVersion":
        """Decode the version number reported by the kernel."""
        return cls((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class ServiceFlags(int):
    """Flags of an IPVS service."""

    PERSISTENT: "ServiceFlags"
    HASHED: "ServiceFlags"
    ONE_PACKET: "ServiceFlags"
    SCHED_SH_FALLBACK: "ServiceFlags"
    SCHED_SH_PORT: "ServiceFlags"
    SCHED_MH_FALLBACK: "ServiceFlags"
    SCHED_MH_PORT: "ServiceFlags"

    def to_bytes(self) -> bytes:  # type: ignore[override]
        """Return the netlink form: the flags followed by an all-ones mask."""
        return (int(self) & _UINT32).to_bytes(4, sys.byteorder) + b"\xff\xff\xff\xff"

    @classmethod
    def from_bytes(cls, data: bytes) -> "ServiceFlags":  # type: ignore[override]
        """Read the flags from their netlink form."""
        head = bytes(data[:4]).ljust(4, b"\x00")
        return cls(int.from_bytes(head, sys.byteorder))

    def __repr__(self) -> str:
        return f"ServiceFlags(0x{int(self):x})"


ServiceFlags.PERSISTENT = ServiceFlags(0x1)
ServiceFlags.HASHED = ServiceFlags(0x2)
ServiceFlags.ONE_PACKET = ServiceFlags(0x4)
# The scheduler option bits mean different things for different schedulers.
ServiceFlags.SCHED_SH_FALLBACK = ServiceFlags(0x8)
ServiceFlags.SCHED_SH_PORT = ServiceFlags(0x10)
ServiceFlags.SCHED_MH_FALLBACK = ServiceFlags(0x8)
ServiceFlags.SCHED_MH_PORT = ServiceFlags(0x10)


class DestinationFlags(int):
    """Flags of a connection to an IPVS destination."""

    FORWARD_MASK: "DestinationFlags"
    FORWARD_MASQ: "DestinationFlags"
    FORWARD_LOCAL: "DestinationFlags"
    FORWARD_TUNNEL: "DestinationFlags"
    FORWARD_ROUTE: "DestinationFlags"
    FORWARD_BYPASS: "DestinationFlags"

    def __repr__(self) -> str:
        return f"DestinationFlags(0x{int(self):x})"


DestinationFlags.FORWARD_MASK = DestinationFlags(0x7)
DestinationFlags.FORWARD_MASQ = DestinationFlags(0x0)
DestinationFlags.FORWARD_LOCAL = DestinationFlags(0x1)
DestinationFlags.FORWARD_TUNNEL = DestinationFlags(0x2)
DestinationFlags.FORWARD_ROUTE = DestinationFlags(0x3)
DestinationFlags.FORWARD_BYPASS = DestinationFlags(0x4)


@dataclass
class Stats:
    """Traffic counters and rates kept by IPVS."""

    connections: int = 0
    packets_in: int = 0
    packets_out: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    cps: int = 0
    pps_in: int = 0
    pps_out: int = 0
    bps_in: int = 0
    bps_out: int = 0


@dataclass
class ServiceStats(Stats):
    """Statistics for an IPVS service."""


@dataclass
class DestinationStats(Stats):
    """Statistics for an IPVS destination, with its connection counts."""

    active_conns: int = 0
    inactive_conns: int = 0
    persist_conns: int = 0


@dataclass
class Destination:
    """An IPVS destination (real server)."""

    address: Optional[IPAddress] = None
    port: int = 0
    weight: int = 0
    flags: DestinationFlags = DestinationFlags(0)
    lower_threshold: int = 0
    upper_threshold: int = 0
    statistics: Optional[DestinationStats] = None

    def __post_init__(self) -> None:
        self.address = _normalise_ip(self.address)
        self.flags = DestinationFlags(self.flags)

    def equal(self, other: "Destination") -> bool:
        """Return True if both destinations have the same configuration."""
        return (self.address == other.address
                and self.port == other.port
                and self.weight == other.weight
                and self.flags == other.flags
                and self.lower_threshold == other.lower_threshold
                and self.upper_threshold == other.upper_threshold)

    def __str__(self) -> str:
        addr = _ip_text(self.address)
        if not _is_ipv4(self.address):
            addr = f"[{addr}]"
        return f"{addr}:{self.port}"


@dataclass
class Service:
    """An IPVS virtual service and its destinations."""

    address: Optional[IPAddress] = None
    protocol: IPProto = IPProto(0)
    port: int = 0
    firewall_mark: int = 0
    scheduler: str = ""
    flags: ServiceFlags = ServiceFlags(0)
    timeout: int = 0
    persistence_engine: str = ""
    statistics: Optional[ServiceStats] = None
    destinations: List[Destination] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.address = _normalise_ip(self.address)
        self.protocol = IPProto(self.protocol)
        self.flags = ServiceFlags(self.flags)

    def equal(self, other: "Service") -> bool:
        """Return True if both services have the same configuration."""
        return (self.address == other.address
                and self.protocol == other.protocol
                and self.port == other.port
                and self.firewall_mark == other.firewall_mark
                and self.scheduler == other.scheduler
                and self.flags == other.flags
                and self.timeout == other.timeout
                and self.persistence_engine == other.persistence_engine)

    def __str__(self) -> str:
        if self.firewall_mark > 0:
            return f"FWM {self.firewall_mark} ({self.scheduler})"
        if not _is_ipv4(self.address):
            return f"{self.protocol} [{_ip_text(self.address)}]:{self.port} ({self.scheduler})"
        return f"{self.protocol} {self.address}:{self.port} ({self.scheduler})"


@dataclass
class IPVSService:
    """A service as it is exchanged with the kernel."""

    addr_family: int = 0
    protocol: IPProto = IPProto(0)
    address: Optional[IPAddress] = None
    port: int = 0
    firewall_mark: int = 0
    scheduler: str = ""
    flags: ServiceFlags = ServiceFlags(0)
    timeout: int = 0
    netmask: int = 0
    stats: Optional[ServiceStats] = None
    persistence_engine: str = ""

    def __post_init__(self) -> None:
        self.address = _normalise_ip(self.address)
        self.protocol = IPProto(self.protocol)
        self.flags = ServiceFlags(self.flags)

    def to_service(self) -> Service:
        """Convert to a Service. A missing address becomes the zero address."""
        address = self.address
        if address is None:
            address = ipaddress.IPv4Address(0) if self.addr_family == AF_INET \
                else ipaddress.IPv6Address(0)
        statistics = dataclasses.replace(self.stats) if self.stats is not None \
            else ServiceStats()
        return Service(
            address=address,
            protocol=self.protocol,
            port=self.port,
            firewall_mark=self.firewall_mark,
            scheduler=self.scheduler,
            flags=self.flags,
            timeout=self.timeout,
            persistence_engine=self.persistence_engine,
            statistics=statistics,
        )


@dataclass
class IPVSDestination:
    """A destination as it is exchanged with the kernel."""

    address: Optional[IPAddress] = None
    port: int = 0
    flags: DestinationFlags = DestinationFlags(0)
    weight: int = 0
    upper_threshold: int = 0
    lower_threshold: int = 0
    active_conns: int = 0
    inactive_conns: int = 0
    persist_conns: int = 0
    stats: Optional[DestinationStats] = None

    def __post_init__(self) -> None:
        self.address = _normalise_ip(self.address)
        self.flags = DestinationFlags(self.flags)

    def to_destination(self) -> Destination:
        """Convert to a Destination, folding connection counts into its statistics."""
        weight = self.weight & _UINT32
        if weight >= 1 << 31:
            weight -= 1 << 32
        statistics = dataclasses.replace(self.stats) if self.stats is not None \
            else DestinationStats()
        statistics.active_conns = self.active_conns
        statistics.inactive_conns = self.inactive_conns
        statistics.persist_conns = self.persist_conns
        return Destination(
            address=self.address,
            port=self.port,
            weight=weight,
            flags=self.flags,
            lower_threshold=self.lower_threshold,
            upper_threshold=self.upper_threshold,
            statistics=statistics,
        )


def new_ipvs_service(service: Service) -> IPVSService:
    """Convert *service* to its kernel representation."""
    if _is_ipv4(service.address):
        family, netmask = AF_INET, _UINT32
    else:
        family, netmask = AF_INET6, 128
    return IPVSService(
        addr_family=family,
        protocol=service.protocol,
        address=service.address,
        port=service.port,
        firewall_mark=service.firewall_mark,
        scheduler=service.scheduler,
        flags=service.flags,
        timeout=service.timeout,
        netmask=netmask,
        persistence_engine=service.persistence_engine,
    )


def new_ipvs_destination(destination: Destination) -> IPVSDestination:
    """Convert *destination* to its kernel representation."""
    return IPVSDestination(
        address=destination.address,
        port=destination.port,
        flags=destination.flags,
        weight=destination.weight & _UINT32,
        upper_threshold=destination.upper_threshold,
        lower_threshold=destination.lower_threshold,
    )