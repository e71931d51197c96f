"""RADIUS healthcheck and the parts of the RADIUS protocol it needs."""

from __future__ import annotations

import enum
import hashlib
import io
import ipaddress
import os
import random
import secrets
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Type, Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

DEFAULT_RADIUS_TIMEOUT = 3.0

HEADER_SIZE = 20
MAXIMUM_SIZE = 4096
AUTHENTICATOR_SIZE = 16

_HEADER = struct.Struct(">BBH16s")
_BLOCK_SIZE = 16
_MAX_PASSWORD_SIZE = 128
_MAX_VALUE_SIZE = 0xFF - 2

_NO_PASSWORD = ""
_NO_SECRET = ""

_rand_lock = threading.Lock()
_rand = random.Random(os.getpid() + time.time_ns())


class RadiusError(ValueError):
    """A RADIUS message could not be encoded or decoded."""


class RadiusCode(enum.IntEnum):
    """RADIUS packet codes."""

    ACCESS_REQUEST = 1
    ACCESS_ACCEPT = 2
    ACCESS_REJECT = 3
    ACCOUNTING_REQUEST = 4
    ACCOUNTING_RESPONSE = 5
    ACCESS_CHALLENGE = 11
    STATUS_SERVER = 12
    STATUS_CLIENT = 13
    RESERVED = 255

    def __str__(self) -> str:
        return _CODE_NAMES[self]


_CODE_NAMES = {
    RadiusCode.ACCESS_REQUEST: "Access-Request",
    RadiusCode.ACCESS_ACCEPT: "Access-Accept",
    RadiusCode.ACCESS_REJECT: "Access-Reject",
    RadiusCode.ACCOUNTING_REQUEST: "Accounting-Request",
    RadiusCode.ACCOUNTING_RESPONSE: "Accounting-Response",
    RadiusCode.ACCESS_CHALLENGE: "Access-Challenge",
    RadiusCode.STATUS_SERVER: "Status-Server",
    RadiusCode.STATUS_CLIENT: "Status-Client",
    RadiusCode.RESERVED: "Reserved",
}


class AttributeType(enum.IntEnum):
    """RADIUS attribute types."""

    USER_NAME = 1
    USER_PASSWORD = 2
    NAS_IP_ADDRESS = 4
    NAS_PORT = 5
    SERVICE_TYPE = 6
    NAS_IDENTIFIER = 32
    NAS_PORT_TYPE = 61

    def __str__(self) -> str:
        return _ATTRIBUTE_NAMES[self]


_ATTRIBUTE_NAMES = {
    AttributeType.USER_NAME: "User-Name",
    AttributeType.USER_PASSWORD: "User-Password",
    AttributeType.NAS_IP_ADDRESS: "NAS-IP-Address",
    AttributeType.NAS_PORT: "NAS-Port",
    AttributeType.SERVICE_TYPE: "Service-Type",
    AttributeType.NAS_IDENTIFIER: "NAS-Identifier",
    AttributeType.NAS_PORT_TYPE: "NAS-Port-Type",
}


def _describe(kind: Type[enum.IntEnum], value: int) -> str:
    try:
        return str(kind(value))
    except ValueError:
        return f"(unknown {value})"


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def new_authenticator() -> bytes:
    """Return a random 16 byte request authenticator."""
    return secrets.token_bytes(AUTHENTICATOR_SIZE)


def new_identifier() -> int:
    """Return a random packet identifier in the range 0-255."""
    with _rand_lock:
        return _rand.getrandbits(8)


@dataclass
class RadiusAttribute:
    """A single type-length-value RADIUS attribute."""

    type: int
    value: bytes = b""

    @property
    def length(self) -> int:
        return 2 + len(self.value)

    def encode(self) -> bytes:
        """Return the wire form of the attribute."""
        if len(self.value) > _MAX_VALUE_SIZE:
            raise RadiusError(f"attribute value too long: {len(self.value)}")
        return bytes((self.type, self.length)) + bytes(self.value)

    @classmethod
    def decode(cls, reader: BinaryIO) -> "RadiusAttribute":
        """Read one attribute from the binary stream *reader*."""
        head = reader.read(2)
        if len(head) < 2:
            raise RadiusError("EOF reading attribute header")
        kind, length = head
        if length < 2:
            raise RadiusError(f"invalid attribute length: {length}")
        if length == 2:
            return cls(kind)
        value = reader.read(length - 2)
        if not value:
            raise RadiusError("EOF reading attribute value")
        if len(value) != length - 2:
            raise RadiusError(f"attribute value short read: {len(value)}")
        return cls(kind, value)


@dataclass
class RadiusPacket:
    """A RADIUS packet: header fields and a list of attributes."""

    code: int
    identifier: int
    authenticator: bytes = bytes(AUTHENTICATOR_SIZE)
    attributes: List[RadiusAttribute] = field(default_factory=list)
    length: int = 0

    def add_attribute(self, attribute: RadiusAttribute) -> None:
        """Append *attribute* to the packet."""
        self.attributes.append(attribute)

    def encode(self) -> bytes:
        """Return the wire form of the packet, updating its length."""
        body = b"".join(attribute.encode() for attribute in self.attributes)
        self.length = HEADER_SIZE + len(body)
        if self.length > MAXIMUM_SIZE:
            raise RadiusError(f"packet too long: {self.length}")
        header = _HEADER.pack(self.code, self.identifier, self.length,
                              bytes(self.authenticator))
        return header + body

    @classmethod
    def decode(cls, data: bytes) -> "RadiusPacket":
        """Parse a packet from *data*."""
        reader = io.BytesIO(data)
        header = reader.read(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            raise RadiusError(f"short header: {len(header)} bytes")
        code, identifier, length, authenticator = _HEADER.unpack(header)
        if not HEADER_SIZE <= length <= MAXIMUM_SIZE:
            raise RadiusError(f"invalid length {length}")
        packet = cls(code, identifier, authenticator, [], length)
        remaining = length - HEADER_SIZE
        while remaining >= 2:
            attribute = RadiusAttribute.decode(reader)
            packet.attributes.append(attribute)
            remaining = (remaining - attribute.length) & 0xFFFF
        return packet


def radius_password(password: Union[str, bytes], secret: Union[str, bytes],
                    authenticator: bytes) -> bytes:
    """Hide *password* as described in RFC 2865 section 5.2."""
    plain = _to_bytes(password)
    key = _to_bytes(secret)
    length = min((len(plain) + 0xF) & ~0xF, _MAX_PASSWORD_SIZE)
    blocks = bytearray(plain[:length].ljust(length, b"\x00"))
    previous = bytes(authenticator)
    for offset in range(0, length, _BLOCK_SIZE):
        digest = hashlib.md5(key + previous).digest()
        block = bytes(a ^ b for a, b in zip(blocks[offset:offset + _BLOCK_SIZE], digest))
        blocks[offset:offset + _BLOCK_SIZE] = block
        previous = block
    return bytes(blocks)


def response_authenticator(packet: RadiusPacket, request_authenticator: bytes,
                           secret: Union[str, bytes]) -> bytes:
    """Compute the response authenticator of *packet* per RFC 2865 section 3."""
    digest = hashlib.md5()
    digest.update(bytes((packet.code, packet.identifier)))
    digest.update(packet.length.to_bytes(2, "big"))
    digest.update(bytes(request_authenticator))
    for attribute in packet.attributes:
        digest.update(attribute.encode())
    digest.update(_to_bytes(secret))
    return digest.digest()


def _set_deadline(sock: socket.socket, deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("i/o timeout")
    sock.settimeout(remaining)


def _local_ipv4(sock: socket.socket) -> Optional[bytes]:
    try:
        ip = ipaddress.ip_address(str(sock.getsockname()[0]).split("%", 1)[0])
    except (OSError, ValueError):
        return None
    if isinstance(ip, ipaddress.IPv6Address):
        ip = ip.ipv4_mapped
    return ip.packed if ip is not None else None


_WANTED = {
    "accept": RadiusCode.ACCESS_ACCEPT,
    "challenge": RadiusCode.ACCESS_CHALLENGE,
    "reject": RadiusCode.ACCESS_REJECT,
}


@dataclass
class RADIUSChecker(Target, Checker):
    """A RADIUS healthcheck that sends an Access-Request and checks the reply."""

    proto: Optional[IPProto] = IPProto.UDP
    username: str = ""
    password: str = _NO_PASSWORD
    secret: str = _NO_SECRET
    response: str = "accept"

    def __str__(self) -> str:
        return f"RADIUS {Target.__str__(self)}"

    def _request(self, authenticator: bytes, identifier: int,
                 sock: socket.socket) -> RadiusPacket:
        packet = RadiusPacket(RadiusCode.ACCESS_REQUEST, identifier, authenticator)
        packet.add_attribute(RadiusAttribute(
            AttributeType.NAS_IDENTIFIER, socket.gethostname().encode("utf-8")))
        packet.add_attribute(RadiusAttribute(AttributeType.USER_NAME, _to_bytes(self.username)))
        packet.add_attribute(RadiusAttribute(
            AttributeType.USER_PASSWORD, radius_password(self.password, self.secret,
                                                         authenticator)))
        nas_ip = _local_ipv4(sock)
        if nas_ip is not None:
            packet.add_attribute(RadiusAttribute(AttributeType.NAS_IP_ADDRESS, nas_ip))
        # NAS port type "virtual" and service type "login".
        packet.add_attribute(RadiusAttribute(AttributeType.NAS_PORT_TYPE, b"\x00\x00\x00\x05"))
        packet.add_attribute(RadiusAttribute(AttributeType.SERVICE_TYPE, b"\x00\x00\x00\x01"))
        return packet

    def check(self, timeout: float) -> Result:
        """Send an Access-Request and check the type of the reply."""
        msg = f"RADIUS {str(RadiusCode.ACCESS_REQUEST)} to port {self.port}"
        start = time.monotonic()
        if not timeout:
            timeout = DEFAULT_RADIUS_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except (OSError, ValueError) as err:
            return complete(start, msg, False, err)

        with sock:
            authenticator = new_authenticator()
            identifier = new_identifier()
            try:
                wire = self._request(authenticator, identifier, sock).encode()
            except (OSError, ValueError) as err:
                return complete(start, msg, False, err)

            try:
                _set_deadline(sock, deadline)
                sock.send(wire)
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

            try:
                _set_deadline(sock, deadline)
                data = sock.recv(MAXIMUM_SIZE)
            except OSError as err:
                return complete(start, f"{msg}; failed to read response", False, err)

        try:
            reply = RadiusPacket.decode(data)
        except RadiusError as err:
            return complete(start, f"{msg}; failed to decode response", False, err)

        if reply.identifier != identifier:
            return complete(start, f"{msg}; identifier mismatch", False, None)

        expected = response_authenticator(reply, authenticator, self.secret)
        if reply.authenticator != expected:
            return complete(start, f"{msg}; response authenticator mismatch "
                                   "(incorrect secret?)", False, None)

        msg = f"{msg}; got RADIUS {_describe(RadiusCode, reply.code)} response"
        if self.response == "any" or _WANTED.get(self.response) == reply.code:
            return complete(start, msg, True, None)

        if reply.code in _WANTED.values():
            msg = f"{msg}; want {self.response} response"
        else:
            msg = f"{msg}; unknown RADIUS response {reply.code}"
        return complete(start, msg, False, None)