"""HTTP and HTTPS healthcheck."""

from __future__ import annotations

import http.client
import json
import ssl
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from .core import Checker, HealthcheckMode, IPProto, Result, Target, complete
from .dial import dial_tcp

DEFAULT_HTTP_TIMEOUT = 5.0

_ERRORS = (OSError, ValueError, http.client.HTTPException)


def _tls_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _read_up_to(response: http.client.HTTPResponse, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = response.read(size - len(data))
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


@dataclass
class HTTPChecker(Target, Checker):
    """An HTTP healthcheck that checks the status code and body prefix."""

    proto: Optional[IPProto] = IPProto.TCP
    secure: bool = False
    tls_verify: bool = True
    method: str = "GET"
    proxy: bool = False
    request: str = "/"
    response: str = ""
    response_code: int = 200

    def __str__(self) -> str:
        attrs = [f"code {self.response_code}"]
        if self.proxy:
            attrs.append("proxy")
        if self.secure:
            attrs.append("secure")
            if self.tls_verify:
                attrs.append("verify")
        return (f"HTTP {self.method} {self.request} [{'; '.join(attrs)}] "
                f"{Target.__str__(self)}")

    def check(self, timeout: float) -> Result:
        """Issue the request and check the response. Redirects are not followed."""
        msg = f"HTTP {self.method} to {self.addr()}"
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_HTTP_TIMEOUT

        scheme = "https" if self.secure else "http"
        try:
            url = urlsplit(self.request)
            url = url._replace(scheme=scheme, netloc=url.netloc or self.addr(), fragment="")
            host = url.hostname or ""
            port = url.port or (443 if self.secure else 80)
        except ValueError as err:
            return complete(start, "", False, err)

        if self.proxy:
            target = urlunsplit(url)
        else:
            target = url.path or "/"
            if url.query:
                target = f"{target}?{url.query}"

        context = _tls_context(self.tls_verify) if self.secure else None
        try:
            if self.secure:
                conn = http.client.HTTPSConnection(host, port, timeout=timeout, context=context)
            else:
                conn = http.client.HTTPConnection(host, port, timeout=timeout)
        except _ERRORS as err:
            return complete(start, "", False, err)

        try:
            # DSR and TUN modes need a marked socket to the target.
            if self.mode is not HealthcheckMode.PLAIN:
                sock = dial_tcp(self.network(), self.addr(), timeout, self.mark)
                if context is not None:
                    try:
                        sock = context.wrap_socket(sock, server_hostname=host)
                    except BaseException:
                        sock.close()
                        raise
                conn.sock = sock
            conn.request(self.method, target)
            response = conn.getresponse()
        except _ERRORS as err:
            conn.close()
            return complete(start, "", False, err)

        try:
            code_ok = self.response_code == 0 or response.status == self.response_code

            msg = f"{msg}; got {response.status} {response.reason}"
            body_ok = False
            if not self.response:
                body_ok = True
            else:
                expected = self.response.encode("utf-8")
                try:
                    body = _read_up_to(response, len(expected))
                except _ERRORS:
                    body = b""
                if not body:
                    msg = f"{msg}; failed to read HTTP response"
                elif body != expected:
                    shown = json.dumps(body.decode("utf-8", "backslashreplace"),
                                       ensure_ascii=False)
                    msg = f"{msg}; unexpected response - {shown}"
                else:
                    body_ok = True
            return complete(start, msg, code_ok and body_ok, None)
        finally:
            conn.close()