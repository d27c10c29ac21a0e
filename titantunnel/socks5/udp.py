"""Per-user UDP relay endpoint used by SOCKS5 UDP ASSOCIATE."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import uuid
from dataclasses import dataclass
from typing import Any

from .counters import UserIPCount
from .protocol import (
    BadRequest,
    IPAddress,
    _join_host_port,
    _parse_ip,
    _split_host_port,
    parse_datagram,
    to_address,
)

log = logging.getLogger(__name__)

_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")
)


def _is_restricted(ip: IPAddress) -> bool:
    """True for loopback, private and multicast addresses, which may not be proxied to."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_loopback or ip.is_multicast:
        return True
    return any(ip.version == net.version and ip in net for net in _PRIVATE_NETWORKS)


def _resolve_ip(host: str, port: int, socktype: int) -> IPAddress:
    """Resolve a host to one IP address, preferring IPv4."""
    if not host:
        raise BadRequest("missing host")
    ip = _parse_ip(host)
    if ip is not None:
        return ip
    infos = socket.getaddrinfo(host, port, type=socktype)
    if not infos:
        raise OSError(f"no address for host {host}")
    infos.sort(key=lambda info: info[0] != socket.AF_INET)
    return ipaddress.ip_address(str(infos[0][4][0]).split("%")[0])


@dataclass
class Socks5UDPInfo:
    """Where a relayed datagram came from and where it is going."""

    udp_server_id: str
    src: str
    dest: str
    user_name: str


class _RelayProtocol(asyncio.DatagramProtocol):
    def __init__(self, server: UDPServer) -> None:
        self._server = server

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            result = self._server.handle_datagram(data, addr)
        except Exception as exc:  # one bad datagram must not stop the relay
            log.debug("udp datagram from %s dropped: %s", addr, exc)
            return
        if asyncio.iscoroutine(result):
            asyncio.ensure_future(result)

    def error_received(self, exc: Exception) -> None:
        log.error("udp relay receive error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._server._transport = None
        log.info("user %s udp server close", self._server.user)


class UDPServer:
    """A UDP socket that relays SOCKS5 datagrams of one user to a handler."""

    def __init__(self, user: str, ip_count: UserIPCount, handler: Any) -> None:
        self.id = str(uuid.uuid4())
        self.user = user
        self.port = 0
        self._ip_count = ip_count
        self._handler = handler
        self._transport: asyncio.DatagramTransport | None = None

    @classmethod
    async def create(
        cls,
        start_port: int,
        end_port: int,
        user: str,
        ip_count: UserIPCount,
        handler: Any,
    ) -> UDPServer:
        """Bind the first free port in ``start_port..end_port`` and start relaying."""
        server = cls(user, ip_count, handler)
        loop = asyncio.get_running_loop()
        for port in range(start_port, end_port + 1):
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: _RelayProtocol(server), local_addr=("0.0.0.0", port)
                )
            except OSError:
                continue
            server._transport = transport
            server.port = transport.get_extra_info("sockname")[1]
            return server
        raise OSError(f"no available UDP ports in range {start_port}-{end_port}")

    def handle_datagram(self, data: bytes, src: tuple) -> Any:
        """Check and decode one datagram from ``src`` and pass it to the handler."""
        src_host, src_port = src[0], src[1]
        key = f"{self.user}:{src_host}"
        if self._ip_count.get(key) <= 0:
            raise PermissionError(f"user {self.user} ip {src_host} not associate")

        datagram = parse_datagram(data)
        dest = to_address(datagram.atyp, datagram.dst_addr, datagram.dst_port)
        host, port = _split_host_port(dest)
        ip = _resolve_ip(host, int(port), socket.SOCK_DGRAM)
        if _is_restricted(ip):
            raise PermissionError(f"UDPServer.handle_datagram not support ip {ip}")

        info = Socks5UDPInfo(
            udp_server_id=self.id,
            src=_join_host_port(str(src_host), src_port),
            dest=dest,
            user_name=self.user,
        )
        if self._handler is None:
            raise RuntimeError("UDPServer.handle_datagram, handler is None")
        return self._handler.handle_udp(self, info, datagram.data)

    def send_to(self, data: bytes, addr: tuple | str) -> None:
        """Send ``data`` to ``addr``, a ``(host, port)`` pair or a ``host:port`` string."""
        if self._transport is None or self._transport.is_closing():
            raise RuntimeError(f"udp server of user {self.user} is not running")
        if isinstance(addr, str):
            host, port = _split_host_port(addr)
            addr = (host, int(port))
        self._transport.sendto(data, addr)

    def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()