"""SOCKS-style destination addresses and outbound TCP dialing."""

from __future__ import annotations

import asyncio
import ipaddress
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

DialOut = Callable[[], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

DIAL_TIMEOUT = 5.0

_ATYP_IPV4 = 0x01
_ATYP_FQDN = 0x03
_ATYP_IPV6 = 0x04


@dataclass(frozen=True)
class Socksaddr:
    """A destination host (IP literal or domain) and port."""

    host: str
    port: int

    def __str__(self) -> str:
        try:
            if ipaddress.ip_address(self.host).version == 6:
                return f"[{self.host}]:{self.port}"
        except ValueError:
            pass
        return f"{self.host}:{self.port}"

    def encode(self) -> bytes:
        """Address type byte, address, then big-endian port."""
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")
        port = struct.pack(">H", self.port)
        try:
            ip = ipaddress.ip_address(self.host)
        except ValueError:
            name = self.host.encode("idna") if not self.host.isascii() else self.host.encode()
            if len(name) > 255:
                raise ValueError("domain name too long") from None
            return bytes([_ATYP_FQDN, len(name)]) + name + port
        atyp = _ATYP_IPV4 if ip.version == 4 else _ATYP_IPV6
        return bytes([atyp]) + ip.packed + port


async def read_socksaddr(reader: asyncio.StreamReader) -> Socksaddr:
    """Read an encoded address from ``reader``."""
    atyp = (await reader.readexactly(1))[0]
    if atyp == _ATYP_IPV4:
        host = str(ipaddress.IPv4Address(await reader.readexactly(4)))
    elif atyp == _ATYP_IPV6:
        host = str(ipaddress.IPv6Address(await reader.readexactly(16)))
    elif atyp == _ATYP_FQDN:
        length = (await reader.readexactly(1))[0]
        host = (await reader.readexactly(length)).decode(errors="replace")
    else:
        raise ValueError(f"unknown address type: {atyp}")
    (port,) = struct.unpack(">H", await reader.readexactly(2))
    return Socksaddr(host, port)


async def dial_tcp(
    host: str, port: int, timeout: float = DIAL_TIMEOUT
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a TCP connection, giving up after ``timeout`` seconds."""
    return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)