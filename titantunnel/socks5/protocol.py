"""SOCKS5 wire format: handshake parsing, replies and UDP datagrams."""

from __future__ import annotations

import asyncio
import ipaddress
from dataclasses import dataclass
from enum import IntEnum

SOCKS5_VERSION = 5

NO_AUTH = 0
USER_PASS_AUTH = 2
USER_AUTH_VERSION = 1
USER_AUTH_SUCCESS = 0
USER_AUTH_FAILURE = 1
NO_ACCEPTABLE = 255

ANONYMOUS_USER = "anonymous"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class Command(IntEnum):
    CONNECT = 1
    BIND = 2
    ASSOCIATE = 3


class AddrType(IntEnum):
    IPV4 = 1
    FQDN = 3
    IPV6 = 4


class Reply(IntEnum):
    SUCCESS = 0
    SERVER_FAILURE = 1
    RULE_FAILURE = 2
    NETWORK_UNREACHABLE = 3
    HOST_UNREACHABLE = 4
    CONNECTION_REFUSED = 5
    TTL_EXPIRED = 6
    COMMAND_NOT_SUPPORTED = 7
    ADDR_TYPE_NOT_SUPPORTED = 8


class BadRequest(ValueError):
    """A SOCKS5 message that cannot be parsed."""


@dataclass
class AddrSpec:
    """A destination or bind address: a host name or an IP, and a port."""

    fqdn: str = ""
    ip: IPAddress | None = None
    port: int = 0


@dataclass
class Datagram:
    """A SOCKS5 UDP request; ``dst_addr`` carries the length prefix for host names."""

    rsv: bytes
    frag: int
    atyp: int
    dst_addr: bytes
    dst_port: bytes
    data: bytes

    def to_bytes(self) -> bytes:
        return b"".join(
            (self.rsv, bytes([self.frag, self.atyp]), self.dst_addr, self.dst_port, self.data)
        )


def _as_ipv4(ip: IPAddress) -> ipaddress.IPv4Address | None:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


async def read_auth_methods(reader: asyncio.StreamReader) -> bytes:
    """Read the method count and the list of offered authentication methods."""
    (count,) = await reader.readexactly(1)
    return await reader.readexactly(count)


async def read_addr_spec(reader: asyncio.StreamReader) -> AddrSpec:
    """Read an address type, address and port."""
    (atyp,) = await reader.readexactly(1)
    if atyp == AddrType.IPV4:
        ip: IPAddress = ipaddress.IPv4Address(await reader.readexactly(4))
        spec = AddrSpec(fqdn=str(ip), ip=ip)
    elif atyp == AddrType.IPV6:
        ip = ipaddress.IPv6Address(await reader.readexactly(16))
        mapped = ip.ipv4_mapped
        spec = AddrSpec(fqdn=str(mapped if mapped is not None else ip), ip=ip)
    elif atyp == AddrType.FQDN:
        (length,) = await reader.readexactly(1)
        name = await reader.readexactly(length)
        spec = AddrSpec(fqdn=name.decode("utf-8", "replace"))
    else:
        raise BadRequest(f"unsupported address type: {atyp}")
    spec.port = int.from_bytes(await reader.readexactly(2), "big")
    return spec


async def read_request_header(reader: asyncio.StreamReader) -> tuple[int, AddrSpec]:
    """Read a request after the handshake and return its command and destination."""
    header = await reader.readexactly(3)
    if header[0] != SOCKS5_VERSION:
        raise BadRequest(f"unsupported command version: {header[0]}")
    dest = await read_addr_spec(reader)
    return header[1], dest


def build_reply(resp: int, addr: AddrSpec | None) -> bytes:
    """Encode a reply to a SOCKS5 request carrying the given bind address."""
    if addr is None:
        atyp, body, port = AddrType.IPV4, bytes(4), 0
    elif addr.fqdn:
        name = addr.fqdn.encode()
        atyp, body, port = AddrType.FQDN, bytes([len(name) & 0xFF]) + name, addr.port
    elif addr.ip is not None and (v4 := _as_ipv4(addr.ip)) is not None:
        atyp, body, port = AddrType.IPV4, v4.packed, addr.port
    elif addr.ip is not None:
        atyp, body, port = AddrType.IPV6, addr.ip.packed, addr.port
    else:
        raise ValueError(f"failed to format address: {addr}")
    return bytes([SOCKS5_VERSION, resp, 0, atyp]) + body + (port & 0xFFFF).to_bytes(2, "big")


def parse_datagram(data: bytes) -> Datagram:
    """Parse a UDP request; the payload must not be empty."""
    n = len(data)
    if n < 4:
        raise BadRequest("datagram too short")
    atyp = data[3]
    if atyp == AddrType.IPV4:
        end = 8
        if n < end:
            raise BadRequest("datagram too short")
        addr = data[4:end]
    elif atyp == AddrType.IPV6:
        end = 20
        if n < end:
            raise BadRequest("datagram too short")
        addr = data[4:end]
    elif atyp == AddrType.FQDN:
        if n < 5:
            raise BadRequest("datagram too short")
        length = data[4]
        if length == 0:
            raise BadRequest("empty host name")
        end = 5 + length
        if n < end:
            raise BadRequest("datagram too short")
        addr = data[4:end]
    else:
        raise BadRequest(f"unsupported address type: {atyp}")
    end += 2
    if n <= end:
        raise BadRequest("datagram has no payload")
    return Datagram(
        rsv=bytes(data[0:2]),
        frag=data[2],
        atyp=atyp,
        dst_addr=bytes(addr),
        dst_port=bytes(data[end - 2 : end]),
        data=bytes(data[end:]),
    )


def new_datagram(addr: str, data: bytes) -> Datagram:
    """Build a UDP reply datagram from a ``host:port`` address."""
    atyp, dst_addr, dst_port = parse_address(addr)
    if atyp == AddrType.FQDN:
        dst_addr = bytes([len(dst_addr) & 0xFF]) + dst_addr
    return Datagram(
        rsv=b"\x00\x00", frag=0, atyp=atyp, dst_addr=dst_addr, dst_port=dst_port, data=data
    )


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        close = address.find("]")
        if close == -1:
            raise ValueError(f"address {address}: missing ']'")
        host, rest = address[1:close], address[close + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port")
        port = rest[1:]
        if ":" in port:
            raise ValueError(f"address {address}: too many colons")
        return host, port
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port")
    if ":" in host:
        raise ValueError(f"address {address}: too many colons")
    if "[" in host or "]" in host or "[" in port or "]" in port:
        raise ValueError(f"address {address}: unexpected bracket")
    return host, port


def _parse_ip(host: str) -> IPAddress | None:
    if "%" in host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def parse_address(address: str) -> tuple[int, bytes, bytes]:
    """Split ``host:port`` into an address type, address bytes and a 2-byte port.

    Host names are returned with their one-byte length prefix. A port that is
    not a number encodes as 0.
    """
    host, port_text = _split_host_port(address)
    ip = _parse_ip(host)
    if ip is not None and (v4 := _as_ipv4(ip)) is not None:
        atyp, addr = AddrType.IPV4, v4.packed
    elif ip is not None:
        atyp, addr = AddrType.IPV6, ip.packed
    else:
        name = host.encode()
        atyp, addr = AddrType.FQDN, bytes([len(name) & 0xFF]) + name
    try:
        port = int(port_text)
    except ValueError:
        port = 0
    return atyp, addr, (port & 0xFFFF).to_bytes(2, "big")


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def to_address(atyp: int, addr: bytes, port: bytes) -> str:
    """Format a datagram address as ``host:port``; a malformed host name gives ''."""
    host = ""
    if atyp in (AddrType.IPV4, AddrType.IPV6):
        if len(addr) == 4:
            host = str(ipaddress.IPv4Address(addr))
        elif len(addr) == 16:
            ip6 = ipaddress.IPv6Address(addr)
            mapped = ip6.ipv4_mapped
            host = str(mapped if mapped is not None else ip6)
        else:
            raise BadRequest(f"invalid IP address length {len(addr)}")
    elif atyp == AddrType.FQDN:
        if len(addr) < 1 or len(addr) < addr[0] + 1:
            return ""
        host = bytes(addr[1:]).decode("utf-8", "replace")
    if len(port) < 2:
        raise BadRequest("port must be 2 bytes")
    return _join_host_port(host, int.from_bytes(port[:2], "big"))