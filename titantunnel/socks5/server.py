"""SOCKS5 server handing CONNECT and UDP ASSOCIATE requests to a handler."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Any, Protocol

from .counters import UserIPCount, UserUDPCount
from .protocol import (
    ANONYMOUS_USER,
    NO_ACCEPTABLE,
    NO_AUTH,
    SOCKS5_VERSION,
    USER_AUTH_FAILURE,
    USER_AUTH_SUCCESS,
    USER_AUTH_VERSION,
    USER_PASS_AUTH,
    AddrSpec,
    BadRequest,
    Command,
    Reply,
    _split_host_port,
    build_reply,
    read_auth_methods,
    read_request_header,
)
from .udp import Socks5UDPInfo, UDPServer, _is_restricted, _resolve_ip

log = logging.getLogger(__name__)

_TCP_KEEPALIVE_SECONDS = 5


@dataclass
class SocksTargetInfo:
    """The destination of a CONNECT request and the user who made it."""

    domain_name: str
    port: int
    user_name: str


class Socks5Handler(Protocol):
    """What the server needs from the component that carries the traffic."""

    async def handle_tcp(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, target: SocksTargetInfo
    ) -> None:
        """Carry a CONNECT stream; the reader may already hold data sent after the request."""

    def handle_udp(self, conn: UDPServer, info: Socks5UDPInfo, data: bytes) -> Any:
        """Carry one datagram; replies go back through ``conn.send_to``."""

    def handle_user_auth(self, user_name: str, password: str) -> None:
        """Raise if the credentials are not accepted."""


@dataclass
class Socks5ServerOptions:
    address: str
    udp_server_ip: str = ""
    udp_port_start: int = 0
    udp_port_end: int = 0
    enable_auth: bool = False
    handler: Any = None


@dataclass
class _Request:
    command: int
    dest: AddrSpec
    src_ip: str
    user: str


def _tune_socket(sock: Any) -> None:
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    for option in ("TCP_KEEPIDLE", "TCP_KEEPINTVL"):
        if hasattr(socket, option):
            sock.setsockopt(socket.IPPROTO_TCP, getattr(socket, option), _TCP_KEEPALIVE_SECONDS)


async def _send(writer: asyncio.StreamWriter, data: bytes) -> None:
    writer.write(data)
    await writer.drain()


class Socks5Server:
    """Accepts SOCKS5 clients and dispatches their requests."""

    def __init__(self, opts: Socks5ServerOptions) -> None:
        if not opts.address:
            raise ValueError("must set option address")
        if opts.handler is None:
            raise ValueError("must set option handler")
        self._opts = opts
        self._server: asyncio.AbstractServer | None = None
        self._ip_count = UserIPCount()
        self._udp_servers: dict[str, UDPServer] = {}
        self._udp_count = UserUDPCount(self._release_udp_server)
        self._udp_lock = asyncio.Lock()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound ``(host, port)``, or None when not running."""
        if self._server is None or not self._server.sockets:
            return None
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    async def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("socks5 server already started")
        host, port = _split_host_port(self._opts.address)
        self._server = await asyncio.start_server(self.serve_connection, host or None, int(port))
        log.info("Socks5 server start at:%s", self._opts.address)

    def shutdown(self) -> None:
        """Stop accepting new clients."""
        if self._server is None:
            raise RuntimeError("socks5 server isn't running")
        self._server.close()
        self._server = None
        log.info("Socks5 server shutdown")

    async def serve_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Run the handshake and the request of one client connection."""
        handled = False
        try:
            version = await reader.readexactly(1)
            if version[0] != SOCKS5_VERSION:
                raise BadRequest(f"unsupported SOCKS version: {version[0]}")
            user = await self._authenticate(reader, writer)
            command, dest = await read_request_header(reader)
            peer = writer.get_extra_info("peername")
            request = _Request(command, dest, str(peer[0]), user or ANONYMOUS_USER)
            await self._handle_request(request, reader, writer)
            handled = True
        except Exception as exc:  # a failing client must not take the server down
            log.error("Socks5Server.serve_connection: %s", exc)
        finally:
            if not handled:
                writer.close()

    async def _authenticate(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> str | None:
        methods = await read_auth_methods(reader)
        method = USER_PASS_AUTH if self._opts.enable_auth else NO_AUTH
        if method not in methods:
            await _send(writer, bytes([SOCKS5_VERSION, NO_ACCEPTABLE]))
            raise PermissionError("not support auth method")
        if method == USER_PASS_AUTH:
            return await self._user_pass_auth(reader, writer)
        await _send(writer, bytes([SOCKS5_VERSION, NO_AUTH]))
        return None

    async def _user_pass_auth(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> str:
        await _send(writer, bytes([SOCKS5_VERSION, USER_PASS_AUTH]))
        version, user_len = await reader.readexactly(2)
        if version != USER_AUTH_VERSION:
            raise BadRequest(f"unsupported auth version: {version}")
        user = (await reader.readexactly(user_len)).decode("utf-8", "replace")
        (phrase_len,) = await reader.readexactly(1)
        phrase = await reader.readexactly(phrase_len)
        try:
            self._opts.handler.handle_user_auth(user, phrase.decode("utf-8", "replace"))
        except Exception as exc:
            log.error("Socks5Server user auth failed: %s", exc)
            await _send(writer, bytes([USER_AUTH_VERSION, USER_AUTH_FAILURE]))
            raise PermissionError("user authentication failed") from exc
        await _send(writer, bytes([USER_AUTH_VERSION, USER_AUTH_SUCCESS]))
        return user

    async def _handle_request(
        self, req: _Request, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if req.command == Command.CONNECT:
            await self._connect(req, reader, writer)
        elif req.command == Command.ASSOCIATE:
            await self._associate(req, reader, writer)
        else:
            await _send(writer, build_reply(Reply.COMMAND_NOT_SUPPORTED, None))
            if req.command == Command.BIND:
                raise BadRequest("unsupported socks5 bind command")
            raise BadRequest(f"unsupported command: {req.command}")

    async def _connect(
        self, req: _Request, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        loop = asyncio.get_running_loop()
        ip = await loop.run_in_executor(
            None, _resolve_ip, req.dest.fqdn, req.dest.port, socket.SOCK_STREAM
        )
        if _is_restricted(ip):
            raise PermissionError(f"Socks5Server connect not support ip {ip}")

        sock = writer.get_extra_info("socket")
        if sock is None:
            raise TypeError("socks5 conn isn't tcp conn")
        _tune_socket(sock)

        local = writer.get_extra_info("sockname")
        bind = AddrSpec(ip=ipaddress.ip_address(str(local[0]).split("%")[0]), port=local[1])
        await _send(writer, build_reply(Reply.SUCCESS, bind))

        target = SocksTargetInfo(
            domain_name=req.dest.fqdn, port=req.dest.port, user_name=req.user
        )
        await self._opts.handler.handle_tcp(reader, writer, target)

    async def _associate(
        self, req: _Request, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        key = f"{req.user}:{req.src_ip}"
        self._ip_count.incr(key)
        self._udp_count.incr(req.user)
        try:
            udp = await self._udp_server_for(req.user)
            try:
                ip = ipaddress.ip_address(self._opts.udp_server_ip)
            except ValueError:
                raise ValueError(f"parse ip {self._opts.udp_server_ip} failed") from None
            await _send(writer, build_reply(Reply.SUCCESS, AddrSpec(ip=ip, port=udp.port)))
            try:
                while await reader.read(4096):
                    pass
            except ConnectionError:
                pass
        finally:
            self._udp_count.decr(req.user)
            self._ip_count.decr(key)
        writer.close()

    async def _udp_server_for(self, user: str) -> UDPServer:
        async with self._udp_lock:
            server = self._udp_servers.get(user)
            if server is None:
                server = await UDPServer.create(
                    self._opts.udp_port_start,
                    self._opts.udp_port_end,
                    user,
                    self._ip_count,
                    self._opts.handler,
                )
                log.debug("udp server for user %s listens on port %d", user, server.port)
                self._udp_servers[user] = server
            return server

    def _release_udp_server(self, user: str) -> None:
        server = self._udp_servers.pop(user, None)
        if server is not None:
            server.stop()