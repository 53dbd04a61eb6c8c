import asyncio
import socket

import pytest

from anytls.frame import HEADER_SIZE, Command, Frame, FrameHeader
from anytls.padding import DEFAULT_PADDING
from anytls.pipe import PipeClosedError
from anytls.session import Session
from anytls.stringmap import string_map_to_bytes


async def _raw_server(handler=None):
    a, b = socket.socketpair()
    raw_r, raw_w = await asyncio.open_connection(sock=a)
    r, w = await asyncio.open_connection(sock=b)
    server = Session.server(r, w, handler)
    task = asyncio.create_task(server.run())
    return server, task, raw_r, raw_w


@pytest.mark.asyncio
async def test_syn_without_settings_gets_alert():
    server, task, raw_r, raw_w = await _raw_server()
    raw_w.write(Frame(Command.SYN, 1).encode())
    await raw_w.drain()
    expected = Frame(Command.ALERT, 0, b"client did not send its settings").encode()
    assert await asyncio.wait_for(raw_r.readexactly(len(expected)), 2) == expected
    await asyncio.wait_for(task, 2)
    assert server.is_closed()
    raw_w.close()


@pytest.mark.asyncio
async def test_settings_and_heartbeat():
    server, task, raw_r, raw_w = await _raw_server()
    settings = string_map_to_bytes({"v": "2", "padding-md5": DEFAULT_PADDING.load().md5})
    raw_w.write(Frame(Command.SETTINGS, 0, settings).encode())
    raw_w.write(Frame(Command.HEART_REQUEST, 5).encode())
    await raw_w.drain()
    expected = (
        Frame(Command.SERVER_SETTINGS, 0, b"v=2").encode()
        + Frame(Command.HEART_RESPONSE, 5).encode()
    )
    assert await asyncio.wait_for(raw_r.readexactly(len(expected)), 2) == expected
    assert server.peer_version == 2
    server.close()
    await asyncio.wait_for(task, 2)
    raw_w.close()


@pytest.mark.asyncio
async def test_md5_mismatch_sends_scheme():
    server, task, raw_r, raw_w = await _raw_server()
    raw_w.write(Frame(Command.SETTINGS, 0, b"v=1").encode())
    await raw_w.drain()
    hdr = FrameHeader.decode(await asyncio.wait_for(raw_r.readexactly(HEADER_SIZE), 2))
    assert hdr.cmd == Command.UPDATE_PADDING_SCHEME
    body = await raw_r.readexactly(hdr.length)
    assert body == DEFAULT_PADDING.load().raw_scheme
    assert server.peer_version == 0
    server.close()
    await asyncio.wait_for(task, 2)
    raw_w.close()


@pytest.mark.asyncio
async def test_new_stream_receives_data():
    received = asyncio.Queue()

    async def handler(stream):
        await received.put(await stream.read(100))

    a, b = socket.socketpair()
    r1, w1 = await asyncio.open_connection(sock=a)
    r2, w2 = await asyncio.open_connection(sock=b)
    server = Session.server(r2, w2, handler)
    task = asyncio.create_task(server.run())
    client = Session.client(r1, w1)
    await client.run()
    stream = await client.open_stream()
    await stream.write(b"payload")
    assert await asyncio.wait_for(received.get(), 2) == b"payload"
    assert client.peer_version == 2
    client.close()
    await asyncio.wait_for(task, 2)
    assert server.is_closed()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_blocks_open():
    a, b = socket.socketpair()
    r, w = await asyncio.open_connection(sock=a)
    session = Session.client(r, w)
    hooks = []
    session.die_hook = lambda: hooks.append(1)
    assert session.close() is True
    assert session.close() is False
    assert hooks == [1]
    with pytest.raises(PipeClosedError):
        await session.open_stream()
    b.close()