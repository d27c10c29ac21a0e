import asyncio
import ipaddress

import pytest

from titantunnel.socks5.protocol import (
    SOCKS5_VERSION,
    AddrSpec,
    AddrType,
    BadRequest,
    Command,
    Datagram,
    Reply,
    build_reply,
    new_datagram,
    parse_address,
    parse_datagram,
    read_addr_spec,
    read_auth_methods,
    read_request_header,
    to_address,
)


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def _port(n: int) -> bytes:
    return n.to_bytes(2, "big")


@pytest.mark.asyncio
async def test_read_auth_methods():
    methods = bytes([0, 2])
    result = await read_auth_methods(_reader(bytes([len(methods)]) + methods))
    assert result == methods


@pytest.mark.asyncio
async def test_read_auth_methods_truncated():
    with pytest.raises(asyncio.IncompleteReadError):
        await read_auth_methods(_reader(bytes([3, 0])))


@pytest.mark.asyncio
async def test_read_addr_spec_ipv4():
    ip = ipaddress.IPv4Address("203.0.113.5")
    spec = await read_addr_spec(_reader(bytes([AddrType.IPV4]) + ip.packed + _port(8080)))
    assert spec == AddrSpec(fqdn="203.0.113.5", ip=ip, port=8080)


@pytest.mark.asyncio
async def test_read_addr_spec_ipv6():
    ip = ipaddress.IPv6Address("2001:db8::1")
    spec = await read_addr_spec(_reader(bytes([AddrType.IPV6]) + ip.packed + _port(443)))
    assert spec.fqdn == "2001:db8::1"
    assert spec.ip == ip
    assert spec.port == 443


@pytest.mark.asyncio
async def test_read_addr_spec_fqdn():
    name = b"example.com"
    data = bytes([AddrType.FQDN, len(name)]) + name + _port(80)
    spec = await read_addr_spec(_reader(data))
    assert spec == AddrSpec(fqdn="example.com", ip=None, port=80)


@pytest.mark.asyncio
async def test_read_addr_spec_unsupported_type():
    with pytest.raises(BadRequest):
        await read_addr_spec(_reader(bytes([9, 1, 2, 3, 4, 0, 80])))


@pytest.mark.asyncio
async def test_read_request_header():
    name = b"example.com"
    data = bytes([SOCKS5_VERSION, Command.CONNECT, 0, AddrType.FQDN, len(name)]) + name + _port(443)
    command, dest = await read_request_header(_reader(data))
    assert command == Command.CONNECT
    assert dest.fqdn == "example.com"
    assert dest.port == 443


@pytest.mark.asyncio
async def test_read_request_header_bad_version():
    data = bytes([4, Command.CONNECT, 0, AddrType.IPV4, 1, 2, 3, 4, 0, 80])
    with pytest.raises(BadRequest):
        await read_request_header(_reader(data))


def test_build_reply_without_address():
    assert build_reply(Reply.SUCCESS, None) == b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00"


@pytest.mark.asyncio
async def test_build_reply_ipv4_round_trip():
    ip = ipaddress.IPv4Address("198.51.100.9")
    reply = build_reply(Reply.SUCCESS, AddrSpec(ip=ip, port=1080))
    assert reply[:3] == bytes([SOCKS5_VERSION, Reply.SUCCESS, 0])
    spec = await read_addr_spec(_reader(reply[3:]))
    assert spec.ip == ip
    assert spec.port == 1080


@pytest.mark.asyncio
async def test_build_reply_ipv6_round_trip():
    ip = ipaddress.IPv6Address("2001:db8::7")
    reply = build_reply(Reply.COMMAND_NOT_SUPPORTED, AddrSpec(ip=ip, port=53))
    assert reply[1] == Reply.COMMAND_NOT_SUPPORTED
    assert reply[3] == AddrType.IPV6
    spec = await read_addr_spec(_reader(reply[3:]))
    assert spec.ip == ip
    assert spec.port == 53


@pytest.mark.asyncio
async def test_build_reply_fqdn_round_trip():
    reply = build_reply(Reply.SUCCESS, AddrSpec(fqdn="example.com", port=8443))
    assert reply[3] == AddrType.FQDN
    spec = await read_addr_spec(_reader(reply[3:]))
    assert spec.fqdn == "example.com"
    assert spec.port == 8443


def test_build_reply_without_host_or_ip():
    with pytest.raises(ValueError):
        build_reply(Reply.SUCCESS, AddrSpec(port=80))


@pytest.mark.parametrize(
    "datagram",
    [
        Datagram(b"\x00\x00", 0, AddrType.IPV4, bytes([192, 0, 2, 1]), _port(53), b"query"),
        Datagram(
            b"\x00\x00", 0, AddrType.IPV6, ipaddress.IPv6Address("2001:db8::3").packed, _port(9), b"x"
        ),
        Datagram(b"\x00\x00", 0, AddrType.FQDN, bytes([11]) + b"example.com", _port(123), b"data"),
    ],
)
def test_datagram_round_trip(datagram):
    assert parse_datagram(datagram.to_bytes()) == datagram


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\x00\x00\x00",
        b"\x00\x00\x00\x01\x01\x02\x03",
        bytes([0, 0, 0, AddrType.IPV4, 1, 2, 3, 4, 0, 53]),
        bytes([0, 0, 0, AddrType.FQDN, 0, 0, 53, 1]),
        bytes([0, 0, 0, AddrType.FQDN, 20]) + b"short",
        bytes([0, 0, 0, 7, 1, 2, 3, 4, 0, 53, 1]),
    ],
)
def test_parse_datagram_rejects_bad_input(data):
    with pytest.raises(BadRequest):
        parse_datagram(data)


def test_new_datagram_ipv4():
    datagram = new_datagram("198.51.100.7:53", b"answer")
    assert datagram.rsv == b"\x00\x00"
    assert datagram.frag == 0
    assert datagram.atyp == AddrType.IPV4
    assert datagram.data == b"answer"
    assert to_address(datagram.atyp, datagram.dst_addr, datagram.dst_port) == "198.51.100.7:53"
    assert parse_datagram(datagram.to_bytes()) == datagram


def test_new_datagram_ipv6():
    datagram = new_datagram("[2001:db8::2]:443", b"payload")
    assert datagram.atyp == AddrType.IPV6
    assert to_address(datagram.atyp, datagram.dst_addr, datagram.dst_port) == "[2001:db8::2]:443"


def test_parse_address_fqdn():
    atyp, addr, port = parse_address("example.com:80")
    assert atyp == AddrType.FQDN
    assert addr == bytes([len("example.com")]) + b"example.com"
    assert int.from_bytes(port, "big") == 80
    assert to_address(atyp, addr, port) == "example.com:80"


def test_parse_address_ipv4_mapped():
    atyp, addr, _ = parse_address("[::ffff:192.0.2.1]:9")
    assert atyp == AddrType.IPV4
    assert addr == ipaddress.IPv4Address("192.0.2.1").packed


def test_parse_address_non_numeric_port():
    _, _, port = parse_address("example.com:http")
    assert int.from_bytes(port, "big") == 0


@pytest.mark.parametrize("address", ["example.com", "2001:db8::1", "[2001:db8::1"])
def test_parse_address_invalid(address):
    with pytest.raises(ValueError):
        parse_address(address)


def test_to_address_truncated_fqdn():
    assert to_address(AddrType.FQDN, bytes([10]) + b"abc", _port(80)) == ""
    assert to_address(AddrType.FQDN, b"", _port(80)) == ""