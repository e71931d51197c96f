"""UDP healthcheck: send a datagram and expect a matching reply."""

from __future__ import annotations

import json
import socket
import time
from dataclasses import dataclass
from typing import Optional, Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

DEFAULT_UDP_TIMEOUT = 5.0


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _quote(data: bytes) -> str:
    return json.dumps(data.decode("utf-8", "backslashreplace"), ensure_ascii=False)


def _set_deadline(sock: socket.socket, deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("i/o timeout")
    sock.settimeout(remaining)


@dataclass
class UDPChecker(Target, Checker):
    """A UDP healthcheck that sends one datagram and compares the reply."""

    proto: Optional[IPProto] = IPProto.UDP
    receive: Union[str, bytes] = ""
    send: Union[str, bytes] = ""

    def __str__(self) -> str:
        return f"UDP {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Send the configured datagram and check the reply."""
        msg = f"UDP check to {self.addr()}"
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_UDP_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except (OSError, ValueError) as err:
            return complete(start, f"{msg}; failed to create socket", False, err)

        with sock:
            try:
                _set_deadline(sock, deadline)
                sock.send(_to_bytes(self.send))
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

            expected = _to_bytes(self.receive)
            try:
                _set_deadline(sock, deadline)
                # A datagram is consumed whole; reading at least one byte makes
                # the read wait for it even when nothing is expected back.
                got = sock.recv(max(len(expected), 1))[:len(expected)]
            except OSError as err:
                return complete(start, f"{msg}; failed to read response", False, err)

        if got != expected:
            return complete(start, f"{msg}; unexpected response - {_quote(got)}", False, None)
        return complete(start, msg, True, None)