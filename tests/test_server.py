import asyncio
import contextlib
import hashlib
import socket

import pytest

from anytls.addressing import Socksaddr
from anytls.client import ProxyClient
from anytls.frame import HEADER_SIZE, Command, Frame, FrameHeader
from anytls.server import ProxyServer, main

PASSWORD = "password"


@contextlib.asynccontextmanager
async def running(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()


async def echo(reader, writer):
    try:
        while data := await reader.read(4096):
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


def dialer(port):
    async def dial():
        return await asyncio.open_connection("127.0.0.1", port)

    return dial


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_streams_are_relayed_to_destination():
    server = ProxyServer(PASSWORD)
    async with running(echo) as echo_port, running(server.handle_connection) as port:
        client = ProxyClient(dialer(port), password=PASSWORD)
        try:
            stream = await asyncio.wait_for(
                client.create_proxy(Socksaddr("127.0.0.1", echo_port)), 5
            )
            await stream.write(b"ping")
            got = await asyncio.wait_for(stream.read(4096), 5)
        finally:
            client.close()
    assert got == b"ping"


@pytest.mark.asyncio
async def test_wrong_password_closes_connection():
    server = ProxyServer(PASSWORD)
    async with running(server.handle_connection) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(hashlib.sha256(b"secret").digest() + b"\x00\x00")
        await writer.drain()
        got = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    assert got == b""


@pytest.mark.asyncio
async def test_truncated_header_closes_connection():
    server = ProxyServer(PASSWORD)
    async with running(server.handle_connection) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(hashlib.sha256(b"password").digest()[:20])
        await writer.drain()
        got = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    assert got == b""


@pytest.mark.asyncio
async def test_syn_before_settings_triggers_alert():
    server = ProxyServer(PASSWORD)
    async with running(server.handle_connection) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        auth = hashlib.sha256(b"password").digest() + b"\x00\x00"
        writer.write(auth + Frame(Command.SYN, 1).encode())
        await writer.drain()
        header = FrameHeader.decode(await asyncio.wait_for(reader.readexactly(HEADER_SIZE), 5))
        message = await asyncio.wait_for(reader.readexactly(header.length), 5)
        writer.close()
    assert header.cmd == Command.ALERT
    assert message == b"client did not send its settings"


@pytest.mark.asyncio
async def test_unreachable_destination_is_reported_to_client():
    server = ProxyServer(PASSWORD)
    dead_port = unused_port()
    async with running(server.handle_connection) as port:
        client = ProxyClient(dialer(port), password=PASSWORD)
        try:
            stream = await asyncio.wait_for(
                client.create_proxy(Socksaddr("127.0.0.1", dead_port)), 5
            )
            with pytest.raises(ConnectionError, match="remote"):
                await asyncio.wait_for(stream.read(4096), 5)
        finally:
            client.close()


def test_main_requires_password():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 1


def test_main_rejects_missing_padding_scheme_file(tmp_path):
    missing = tmp_path / "missing-scheme.txt"
    with pytest.raises(SystemExit) as excinfo:
        main(["-p", "password", "--padding-scheme", str(missing)])
    assert excinfo.value.code == 1