"""TCP healthcheck: connect, optionally negotiate TLS, send and expect a reply."""

from __future__ import annotations

import json
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Optional, Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_tcp

DEFAULT_TCP_TIMEOUT = 10.0


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _quote(data: bytes) -> str:
    return json.dumps(data.decode("utf-8", "backslashreplace"), ensure_ascii=False)


def _tls_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _set_deadline(sock: socket.socket, deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("i/o timeout")
    sock.settimeout(remaining)


def _read_full(sock: socket.socket, size: int, deadline: float) -> bytes:
    """Read exactly *size* bytes before *deadline*, or raise."""
    chunks = bytearray()
    while len(chunks) < size:
        _set_deadline(sock, deadline)
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            raise EOFError("unexpected EOF" if chunks else "EOF")
        chunks.extend(chunk)
    return bytes(chunks)


@dataclass
class TCPChecker(Target, Checker):
    """A TCP healthcheck, optionally over TLS, with an optional exchange."""

    proto: Optional[IPProto] = IPProto.TCP
    receive: Union[str, bytes] = ""
    send: Union[str, bytes] = ""
    secure: bool = False
    tls_verify: bool = False

    def __str__(self) -> str:
        attrs = []
        if self.secure:
            attrs.append("secure")
            if self.tls_verify:
                attrs.append("verify")
        extra = f" [{'; '.join(attrs)}]" if attrs else ""
        return f"TCP{extra} {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Connect to the target and perform the configured exchange."""
        msg = f"TCP connect to {self.addr()}"
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_TCP_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_tcp(self.network(), self.addr(), timeout, self.mark)
        except (OSError, ValueError) as err:
            return complete(start, f"{msg}; failed to connect", False, err)

        conn = sock
        try:
            if self.secure:
                try:
                    conn = _tls_context(self.tls_verify).wrap_socket(
                        sock, server_hostname=str(self.ip))
                except OSError as err:
                    return complete(start, msg, False, err)

            if not self.send and not self.receive:
                return complete(start, msg, True, None)

            if self.send:
                try:
                    _set_deadline(conn, deadline)
                    conn.sendall(_to_bytes(self.send))
                except OSError as err:
                    return complete(start, f"{msg}; failed to send request", False, err)

            if self.receive:
                expected = _to_bytes(self.receive)
                try:
                    got = _read_full(conn, len(expected), deadline)
                except (OSError, EOFError) as err:
                    return complete(start, f"{msg}; failed to read response", False, err)
                if got != expected:
                    return complete(
                        start, f"{msg}; unexpected response - {_quote(got)}", False, None)
            return complete(start, msg, True, None)
        finally:
            conn.close()