"""Helpers for opening sockets to healthcheck targets, optionally marked."""

from __future__ import annotations

import ipaddress
import socket
import struct
from typing import Optional, Tuple

# Linux value of SO_MARK, used where the socket module does not expose it.
_SO_MARK = getattr(socket, "SO_MARK", 36)
_TIMEVAL = struct.Struct("@ll")


def _split_host_port(addr: str) -> Tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError(f"missing ']' in address {addr!r}")
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {addr!r}") from None
    if not 0 <= port_number <= 0xFFFF:
        raise ValueError(f"invalid port in address {addr!r}")
    return host, port_number


def _resolve(network: str, addr: str, proto: str) -> Tuple[int, str, int]:
    suffix = network[len(proto):] if network.startswith(proto) else None
    if suffix not in ("", "4", "6"):
        raise ValueError(f"unknown network {network!r}")
    host, port = _split_host_port(addr)
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"host must be an IP address: {host!r}") from None
    family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
    if suffix == "4" and family != socket.AF_INET or suffix == "6" and family != socket.AF_INET6:
        raise ValueError(f"address {addr!r} does not match network {network!r}")
    return family, str(ip), port


def _dial(kind: int, family: int, host: str, port: int,
          timeout: Optional[float], mark: int) -> socket.socket:
    sock = socket.socket(family, kind)
    try:
        if mark:
            set_socket_mark(sock, mark)
        sock.settimeout(timeout if timeout else None)
        sock.connect((host, port))
    except BaseException:
        sock.close()
        raise
    return sock


def dial_tcp(network: str, addr: str, timeout: Optional[float], mark: int) -> socket.socket:
    """Connect a TCP socket to *addr*, marking it unless *mark* is zero.

    The host must be an IP address. A timeout of zero or None waits forever.
    """
    family, host, port = _resolve(network, addr, "tcp")
    return _dial(socket.SOCK_STREAM, family, host, port, timeout, mark)


def dial_udp(network: str, addr: str, timeout: Optional[float], mark: int) -> socket.socket:
    """Connect a UDP socket to *addr*, marking it unless *mark* is zero."""
    family, host, port = _resolve(network, addr, "udp")
    return _dial(socket.SOCK_DGRAM, family, host, port, timeout, mark)


def set_socket_mark(sock: socket.socket, mark: int) -> None:
    """Set the packet mark on *sock*."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, mark)
    except OSError as err:
        raise OSError(err.errno, f"failed to set mark: {err.strerror}") from err


def set_socket_timeout(sock: socket.socket, timeout: float) -> None:
    """Set the kernel receive and send timeouts of *sock* to *timeout* seconds."""
    seconds = int(timeout)
    micros = int(round((timeout - seconds) * 1_000_000))
    value = _TIMEVAL.pack(seconds, micros)
    for option in (socket.SO_RCVTIMEO, socket.SO_SNDTIMEO):
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, value)
        except OSError as err:
            raise OSError(err.errno, f"setsockopt: {err.strerror}") from err