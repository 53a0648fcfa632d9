import asyncio
import socket
from unittest import mock

import pytest

from merino.protocol import (
    AuthMethod,
    MerinoError,
    ResponseCode,
    SocksError,
    User,
    socks_reply,
)
from merino.server import Merino, SocksClient


class FakeWriter:
    def __init__(self):
        self.data = bytearray()
        self.eof = False
        self.closed = False

    def write(self, data):
        if self.eof:
            raise RuntimeError("write after eof")
        self.data += data

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof = True

    async def drain(self):
        return None

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None

    def get_extra_info(self, name, default=None):
        return default


def make_reader(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def v4_request(command, port, host=(127, 0, 0, 1)):
    return bytes([5, command, 0, 1, *host]) + port.to_bytes(2, "big")


def credentials(username, secret):
    return bytes([1, len(username)]) + username + bytes([len(secret)]) + secret


def closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def _echo(reader, writer):
    while True:
        data = await reader.read(1024)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


@pytest.mark.asyncio
async def test_merino_constructor():
    merino = await Merino.create(0, "127.0.0.1", [], [], None)
    try:
        host, port = merino.address
        assert host == "127.0.0.1"
        assert port > 0
    finally:
        await merino.close()


@pytest.mark.asyncio
async def test_serve_returns_after_close():
    merino = await Merino.create(0, "127.0.0.1", [AuthMethod.NO_AUTH], [], None)
    task = asyncio.ensure_future(merino.serve())
    await asyncio.sleep(0.01)
    await merino.close()
    await asyncio.wait_for(task, 2)
    assert task.done() and task.exception() is None


@pytest.mark.asyncio
async def test_no_auth_then_bind_unsupported():
    writer = FakeWriter()
    data = bytes([5, 1, 0]) + v4_request(2, 80)
    client = SocksClient.new_no_auth(make_reader(data), writer, None)
    with pytest.raises(MerinoError, match="Bind not supported"):
        await client.init()
    assert bytes(writer.data) == b"\x05\x00"
    assert client.socks_version == 5
    assert client.auth_nmethods == 1


@pytest.mark.asyncio
async def test_udp_associate_unsupported():
    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(v4_request(3, 53)), writer, None)
    with pytest.raises(MerinoError, match="UdpAssosiate not supported"):
        await client.handle_client()


@pytest.mark.asyncio
async def test_invalid_command_reports_code():
    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(v4_request(9, 80)), writer, None)
    with pytest.raises(SocksError) as info:
        await client.handle_client()
    assert info.value.code == ResponseCode.COMMAND_NOT_SUPPORTED
    assert writer.eof is True


@pytest.mark.asyncio
async def test_no_suitable_methods():
    writer = FakeWriter()
    client = SocksClient(make_reader(bytes([5, 1, 2])), writer, [], [AuthMethod.NO_AUTH])
    with pytest.raises(SocksError) as info:
        await client.init()
    assert info.value.code == ResponseCode.FAILURE
    assert bytes(writer.data) == b"\x05\xff"
    assert writer.eof is True


@pytest.mark.asyncio
async def test_unsupported_version_shuts_down_quietly():
    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(bytes([4, 1, 0])), writer, None)
    result = await client.init()
    assert result is None
    assert bytes(writer.data) == b""
    assert writer.eof is True


@pytest.mark.asyncio
async def test_truncated_stream_is_io_error():
    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(bytes([5])), writer, None)
    with pytest.raises(MerinoError, match="IO error"):
        await client.init()


@pytest.mark.asyncio
async def test_user_pass_granted():
    password = "password"
    users = [User("user", password=password)]
    data = bytes([5, 1, 2]) + credentials(b"user", b"password") + v4_request(2, 80)
    writer = FakeWriter()
    client = SocksClient(make_reader(data), writer, users, [AuthMethod.USER_PASS])
    with pytest.raises(MerinoError, match="Bind"):
        await client.init()
    assert bytes(writer.data) == b"\x05\x02\x01\x00"


@pytest.mark.asyncio
async def test_user_pass_denied():
    password = "password"
    users = [User("user", password=password)]
    data = bytes([5, 1, 2]) + credentials(b"user", b"secret")
    writer = FakeWriter()
    client = SocksClient(make_reader(data), writer, users, [AuthMethod.USER_PASS])
    with pytest.raises(MerinoError):
        await client.init()
    assert bytes(writer.data) == b"\x05\x02\x01\x01"
    assert writer.eof is True


@pytest.mark.asyncio
async def test_user_pass_preferred_over_no_auth():
    password = "password"
    users = [User("user", password=password)]
    data = bytes([5, 2, 0, 2]) + credentials(b"user", b"password") + v4_request(2, 80)
    writer = FakeWriter()
    client = SocksClient(
        make_reader(data), writer, users, [AuthMethod.NO_AUTH, AuthMethod.USER_PASS]
    )
    with pytest.raises(MerinoError):
        await client.init()
    assert bytes(writer.data)[:2] == b"\x05\x02"


@pytest.mark.asyncio
async def test_handle_client_returns_bytes_from_target():
    async def greet(reader, writer):
        writer.write(b"hello")
        await writer.drain()
        writer.close()

    target = await asyncio.start_server(greet, "127.0.0.1", 0)
    port = target.sockets[0].getsockname()[1]
    try:
        writer = FakeWriter()
        client = SocksClient.new_no_auth(make_reader(v4_request(1, port)), writer, 2.0)
        relayed = await client.handle_client()
        assert relayed == 5
        assert bytes(writer.data) == socks_reply(ResponseCode.SUCCESS) + b"hello"
    finally:
        target.close()
        await target.wait_closed()


@pytest.mark.asyncio
async def test_connect_refused_is_io_error():
    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(v4_request(1, closed_port())), writer, 2.0)
    with pytest.raises(MerinoError) as info:
        await client.handle_client()
    assert not isinstance(info.value, SocksError)


@pytest.mark.asyncio
async def test_connect_timeout_reports_refused():
    async def slow_open(*args, **kwargs):
        await asyncio.sleep(10)

    writer = FakeWriter()
    client = SocksClient.new_no_auth(make_reader(v4_request(1, 80)), writer, 0.01)
    with mock.patch("asyncio.open_connection", new=slow_open):
        with pytest.raises(SocksError) as info:
            await client.handle_client()
    assert info.value.code == ResponseCode.CONNECTION_REFUSED


@pytest.mark.asyncio
async def test_end_to_end_no_auth_echo():
    target = await asyncio.start_server(_echo, "127.0.0.1", 0)
    target_port = target.sockets[0].getsockname()[1]
    merino = await Merino.create(0, "127.0.0.1", [AuthMethod.NO_AUTH], [], 2.0)
    try:
        reader, writer = await asyncio.open_connection(*merino.address)
        writer.write(bytes([5, 1, 0]))
        assert await reader.readexactly(2) == b"\x05\x00"
        writer.write(v4_request(1, target_port))
        assert await reader.readexactly(10) == socks_reply(ResponseCode.SUCCESS)
        writer.write(b"ping")
        await writer.drain()
        assert await reader.readexactly(4) == b"ping"
        writer.write_eof()
        assert await reader.read() == b""
        writer.close()
    finally:
        await merino.close()
        target.close()
        await target.wait_closed()


@pytest.mark.asyncio
async def test_end_to_end_user_pass_echo():
    password = "password"
    users = [User("user", password=password)]
    target = await asyncio.start_server(_echo, "127.0.0.1", 0)
    target_port = target.sockets[0].getsockname()[1]
    merino = await Merino.create(0, "127.0.0.1", [AuthMethod.USER_PASS], users, 2.0)
    try:
        reader, writer = await asyncio.open_connection(*merino.address)
        writer.write(bytes([5, 1, 2]))
        assert await reader.readexactly(2) == b"\x05\x02"
        writer.write(credentials(b"user", b"password"))
        assert await reader.readexactly(2) == b"\x01\x00"
        writer.write(v4_request(1, target_port))
        assert await reader.readexactly(10) == socks_reply(ResponseCode.SUCCESS)
        writer.write(b"data")
        await writer.drain()
        assert await reader.readexactly(4) == b"data"
        writer.write_eof()
        assert await reader.read() == b""
        writer.close()
    finally:
        await merino.close()
        target.close()
        await target.wait_closed()


@pytest.mark.asyncio
async def test_end_to_end_error_reply_on_refused_connection():
    merino = await Merino.create(0, "127.0.0.1", [AuthMethod.NO_AUTH], [], 2.0)
    try:
        reader, writer = await asyncio.open_connection(*merino.address)
        writer.write(bytes([5, 1, 0]))
        assert await reader.readexactly(2) == b"\x05\x00"
        writer.write(v4_request(1, closed_port()))
        reply = await reader.readexactly(10)
        assert reply == socks_reply(ResponseCode.FAILURE)
        writer.close()
    finally:
        await merino.close()


@pytest.mark.asyncio
async def test_end_to_end_bad_address_type_reply():
    merino = await Merino.create(0, "127.0.0.1", [AuthMethod.NO_AUTH], [], 2.0)
    try:
        reader, writer = await asyncio.open_connection(*merino.address)
        writer.write(bytes([5, 1, 0]))
        assert await reader.readexactly(2) == b"\x05\x00"
        writer.write(bytes([5, 1, 0, 7]))
        reply = await reader.read()
        assert reply == b""
        writer.close()
    finally:
        await merino.close()