import asyncio
import socket

import pytest

from anytls.pipe import PipeClosedError
from anytls.session import Session


async def _pair(handler):
    a, b = socket.socketpair()
    r1, w1 = await asyncio.open_connection(sock=a)
    r2, w2 = await asyncio.open_connection(sock=b)
    server = Session.server(r2, w2, handler)
    task = asyncio.create_task(server.run())
    client = Session.client(r1, w1)
    await client.run()
    return client, server, task, a


async def _finish(client, server, task):
    client.close()
    server.close()
    await asyncio.wait_for(task, 2)


@pytest.mark.asyncio
async def test_echo_round_trip():
    async def echo(stream):
        data = await stream.read(1024)
        await stream.write(data)

    client, server, task, _ = await _pair(echo)
    stream = await client.open_stream()
    assert await stream.write(b"hello stream") == 12
    assert await asyncio.wait_for(stream.read(1024), 2) == b"hello stream"
    await _finish(client, server, task)


@pytest.mark.asyncio
async def test_read_and_write_after_close_raise():
    client, server, task, _ = await _pair(lambda s: None)
    stream = await client.open_stream()
    await stream.close()
    with pytest.raises(PipeClosedError):
        await stream.read(10)
    with pytest.raises(PipeClosedError):
        await stream.write(b"x")
    await _finish(client, server, task)


@pytest.mark.asyncio
async def test_handshake_failure_reaches_client():
    async def fail(stream):
        await stream.read(16)
        await stream.handshake_failure(RuntimeError("boom"))

    client, server, task, _ = await _pair(fail)
    stream = await client.open_stream()
    await stream.write(b"dest")
    with pytest.raises(ConnectionError, match="remote: boom"):
        await asyncio.wait_for(stream.read(10), 2)
    await _finish(client, server, task)


@pytest.mark.asyncio
async def test_die_hook_runs_once_and_address():
    client, server, task, sock = await _pair(lambda s: None)
    stream = await client.open_stream()
    calls = []
    stream.die_hook = lambda: calls.append(1)
    assert stream.local_address() == sock.getsockname()
    await stream.close()
    client.close()
    assert calls == [1]
    await _finish(client, server, task)