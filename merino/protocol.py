"""SOCKS5 wire format: constants, request parsing and address helpers (RFC 1928)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from enum import IntEnum

logger = logging.getLogger("merino")

SOCKS_VERSION = 0x05
RESERVED = 0x00

_RESPONSE_MESSAGES = {
    0x00: "Success",
    0x01: "SOCKS5 Server Failure",
    0x02: "SOCKS5 Rule failure",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "Command not supported",
    0x08: "Addr Type not supported",
}


class ResponseCode(IntEnum):
    """Reply codes a SOCKS5 server sends back to the client."""

    SUCCESS = 0x00
    FAILURE = 0x01
    RULE_FAILURE = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDR_TYPE_NOT_SUPPORTED = 0x08

    @property
    def message(self) -> str:
        return _RESPONSE_MESSAGES[self.value]


class AuthMethod(IntEnum):
    """Client authentication methods."""

    NO_AUTH = 0x00
    USER_PASS = 0x02
    NO_METHODS = 0xFF


class AddrType(IntEnum):
    """Address types of DST.ADDR."""

    V4 = 0x01
    DOMAIN = 0x03
    V6 = 0x04


class SockCommand(IntEnum):
    """Commands a client may request."""

    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


@dataclass(frozen=True)
class User:
    """A username/password pair allowed to use the proxy."""

    username: str
    password: str = field(repr=False)


class MerinoError(Exception):
    """Base error raised while serving a SOCKS client."""


class SocksError(MerinoError):
    """A protocol-level failure carrying the reply code to report."""

    def __init__(self, code: ResponseCode) -> None:
        super().__init__(f"Socks error: {code.message}")
        self.code = code


@dataclass(frozen=True)
class SocksRequest:
    """A parsed client request."""

    version: int
    command: SockCommand
    addr_type: AddrType
    addr: bytes
    port: int


def socks_reply(status: ResponseCode) -> bytes:
    """Build the 10-byte reply with an all-zero IPv4 bound address."""
    return bytes([SOCKS_VERSION, int(status), RESERVED, AddrType.V4, 0, 0, 0, 0, 0, 0])


def response_code_for(error: BaseException) -> ResponseCode:
    """Map an error to the reply code sent to the client."""
    if isinstance(error, SocksError):
        return error.code
    return ResponseCode.FAILURE


def _v6_groups(addr: bytes) -> list[int]:
    if len(addr) != 16:
        raise ValueError(f"IPv6 address must be 16 bytes, got {len(addr)}")
    return [int.from_bytes(addr[i:i + 2], "big") for i in range(0, 16, 2)]


def pretty_print_addr(addr_type: AddrType, addr: bytes) -> str:
    """Render a raw address for logging."""
    if addr_type == AddrType.DOMAIN:
        return addr.decode("utf-8", errors="replace")
    if addr_type == AddrType.V4:
        return ".".join(str(b) for b in addr)
    return ":".join(format(group, "x") for group in _v6_groups(addr))


async def addr_to_socket(addr_type: AddrType, addr: bytes, port: int) -> list[tuple]:
    """Resolve a raw address into socket address tuples suitable for connecting."""
    if addr_type == AddrType.V6:
        _v6_groups(addr)
        return [(str(ipaddress.IPv6Address(bytes(addr))), port, 0, 0)]
    if addr_type == AddrType.V4:
        return [(str(ipaddress.IPv4Address(bytes(addr))), port)]
    domain = addr.decode("utf-8", errors="replace")
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(domain, port, type=socket.SOCK_STREAM)
    return [info[4] for info in infos]


async def shutdown_writer(writer) -> None:
    """Close the write half of a stream, as far as the transport allows."""
    if writer.can_write_eof():
        writer.write_eof()
    await writer.drain()


async def read_request(reader: asyncio.StreamReader, writer) -> SocksRequest:
    """Read and parse a SOCKS5 request from the client stream."""
    logger.debug("Server waiting for connect")
    packet = await reader.readexactly(4)
    logger.debug("Server received %r", list(packet))

    version = packet[0]
    if version != SOCKS_VERSION:
        logger.warning("from_stream Unsupported version: SOCKS%d", version)
        await shutdown_writer(writer)

    try:
        command = SockCommand(packet[1])
    except ValueError:
        logger.warning("Invalid Command")
        await shutdown_writer(writer)
        raise SocksError(ResponseCode.COMMAND_NOT_SUPPORTED) from None

    try:
        addr_type = AddrType(packet[3])
    except ValueError:
        logger.error("No Addr")
        await shutdown_writer(writer)
        raise SocksError(ResponseCode.ADDR_TYPE_NOT_SUPPORTED) from None

    logger.debug("Getting Addr")
    if addr_type == AddrType.DOMAIN:
        length = (await reader.readexactly(1))[0]
        addr = await reader.readexactly(length)
    elif addr_type == AddrType.V4:
        addr = await reader.readexactly(4)
    else:
        addr = await reader.readexactly(16)

    port = int.from_bytes(await reader.readexactly(2), "big")

    return SocksRequest(
        version=version,
        command=command,
        addr_type=addr_type,
        addr=bytes(addr),
        port=port,
    )