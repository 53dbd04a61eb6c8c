"""A session multiplexing many streams over one connection."""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import os
import time
from collections.abc import Callable
from typing import Any

from anytls.frame import HEADER_SIZE, PROGRAM_VERSION_NAME, Command, Frame, FrameHeader
from anytls.padding import CHECK_MARK, DEFAULT_PADDING, PaddingFactory, PaddingHolder
from anytls.pipe import PipeClosedError
from anytls.stream import Stream
from anytls.stringmap import string_map_from_bytes, string_map_to_bytes
from anytls.timers import new_deadline_watcher

logger = logging.getLogger(__name__)

CLIENT_DEBUG_PADDING_SCHEME = os.environ.get("CLIENT_DEBUG_PADDING_SCHEME") == "1"

_CONTROL_WRITE_TIMEOUT = 5.0
_SYN_TIMEOUT = 3.0


def _parse_version(text: str | None) -> int | None:
    try:
        return int(text) if text is not None else None
    except ValueError:
        return None


def _waste(length: int) -> bytes:
    return FrameHeader(Command.WASTE, 0, length).encode() + bytes(length)


class Session:
    """Frame reader and writer shared by the streams of one connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        is_client: bool,
        padding: PaddingHolder | None,
        on_new_stream: Callable[[Stream], Any] | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._conn_lock = asyncio.Lock()
        self._streams: dict[int, Stream] = {}
        self._stream_id = 0
        self._closed = False
        self.die_hook: Callable[[], Any] | None = None
        self._syn_done: Callable[[], None] | None = None
        self.seq = 0
        self.idle_since = 0.0
        self.padding = padding or DEFAULT_PADDING
        self.peer_version = 0
        self.is_client = is_client
        self._send_padding = is_client
        self._buffering = False
        self._buffer = b""
        self.pkt_counter = 0
        self._on_new_stream = on_new_stream
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def client(cls, reader, writer, padding=None) -> "Session":
        return cls(reader, writer, is_client=True, padding=padding)

    @classmethod
    def server(cls, reader, writer, on_new_stream, padding=None) -> "Session":
        return cls(reader, writer, is_client=False, padding=padding, on_new_stream=on_new_stream)

    async def run(self) -> None:
        """Server: serve until the connection ends. Client: send settings and start reading."""
        if not self.is_client:
            await self._recv_loop()
            return
        settings = {
            "v": "2",
            "client": PROGRAM_VERSION_NAME,
            "padding-md5": self.padding.load().md5,
        }
        self._buffering = True
        await self._write_control_frame(Frame(Command.SETTINGS, 0, string_map_to_bytes(settings)))
        self._spawn(self._recv_loop())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> bool:
        """Close the session and its streams; False if it was already closed."""
        if self._closed:
            return False
        self._closed = True
        hook, self.die_hook = self.die_hook, None
        if hook is not None:
            hook()
        streams, self._streams = self._streams, {}
        for stream in streams.values():
            stream._close_locally()
        self._writer.close()
        return True

    async def open_stream(self) -> Stream:
        """Open a new stream (client side)."""
        if self._closed:
            raise PipeClosedError("session closed")
        self._stream_id = (self._stream_id + 1) & 0xFFFFFFFF
        sid = self._stream_id
        stream = Stream(sid, self)
        if sid >= 2 and self.peer_version >= 2:
            if self._syn_done is not None:
                self._syn_done()
            self._syn_done = new_deadline_watcher(_SYN_TIMEOUT, self.close)
        await self._write_control_frame(Frame(Command.SYN, sid))
        self._buffering = False
        if self._closed:
            raise PipeClosedError("session closed")
        self._streams[sid] = stream
        return stream

    async def _serve_stream(self, stream: Stream) -> None:
        try:
            if self._on_new_stream is None:
                await stream.close()
                return
            result = self._on_new_stream(stream)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.debug("stream handler failed", exc_info=True)

    async def _recv_loop(self) -> None:
        try:
            await self._recv_frames()
        except (asyncio.IncompleteReadError, ConnectionError, OSError, PipeClosedError):
            pass
        except Exception:
            logger.exception("[BUG] session receive loop failed")
        finally:
            self.close()

    async def _recv_frames(self) -> None:
        received_settings = False
        read = self._reader.readexactly
        while not self._closed:
            hdr = FrameHeader.decode(await read(HEADER_SIZE))
            sid, cmd, length = hdr.sid, hdr.cmd, hdr.length
            if cmd == Command.PSH:
                if length:
                    data = await read(length)
                    stream = self._streams.get(sid)
                    if stream is not None:
                        try:
                            await stream._pipe_w.write(data)
                        except OSError:
                            pass
            elif cmd == Command.SYN:
                if not self.is_client and not received_settings:
                    alert = Frame(Command.ALERT, 0, b"client did not send its settings")
                    await self._write_control_frame(alert)
                    return
                if sid not in self._streams:
                    stream = Stream(sid, self)
                    self._streams[sid] = stream
                    self._spawn(self._serve_stream(stream))
            elif cmd == Command.SYNACK:
                if self._syn_done is not None:
                    self._syn_done()
                    self._syn_done = None
                if length:
                    message = await read(length)
                    stream = self._streams.get(sid)
                    if stream is not None:
                        err = ConnectionError(f"remote: {message.decode(errors='replace')}")
                        try:
                            await stream._close_with_error(err)
                        except OSError:
                            pass
            elif cmd == Command.FIN:
                stream = self._streams.pop(sid, None)
                if stream is not None:
                    stream._close_locally()
            elif cmd == Command.WASTE:
                if length:
                    await read(length)
            elif cmd == Command.SETTINGS:
                if length:
                    data = await read(length)
                    if not self.is_client:
                        received_settings = True
                        await self._handle_client_settings(string_map_from_bytes(data))
            elif cmd == Command.ALERT:
                if length:
                    message = await read(length)
                    if self.is_client:
                        logger.error("[Alert from server] %s", message.decode(errors="replace"))
                    return
            elif cmd == Command.UPDATE_PADDING_SCHEME:
                if length:
                    raw = await read(length)
                    if self.is_client and not CLIENT_DEBUG_PADDING_SCHEME:
                        digest = hashlib.md5(raw).hexdigest()
                        try:
                            self.padding.store(PaddingFactory(raw))
                            logger.info("[Update padding succeed] %s", digest)
                        except ValueError:
                            logger.warning("[Update padding failed] %s", digest)
            elif cmd == Command.HEART_REQUEST:
                await self._write_control_frame(Frame(Command.HEART_RESPONSE, sid))
            elif cmd == Command.SERVER_SETTINGS:
                if length:
                    data = await read(length)
                    if self.is_client:
                        version = _parse_version(string_map_from_bytes(data).get("v"))
                        if version is not None:
                            self.peer_version = version & 0xFF

    async def _handle_client_settings(self, settings: dict[str, str]) -> None:
        factory = self.padding.load()
        if settings.get("padding-md5") != factory.md5:
            await self._write_control_frame(
                Frame(Command.UPDATE_PADDING_SCHEME, 0, factory.raw_scheme)
            )
        version = _parse_version(settings.get("v"))
        if version is not None and version >= 2:
            self.peer_version = version & 0xFF
            reply = Frame(Command.SERVER_SETTINGS, 0, string_map_to_bytes({"v": "2"}))
            await self._write_control_frame(reply)

    async def _stream_closed(self, sid: int) -> None:
        if self._closed:
            raise PipeClosedError("session closed")
        try:
            await self._write_control_frame(Frame(Command.FIN, sid))
        finally:
            self._streams.pop(sid, None)

    async def _write_data_frame(self, sid: int, data: bytes) -> int:
        await self._write_conn(Frame(Command.PSH, sid, bytes(data)).encode())
        return len(data)

    async def _write_control_frame(self, frame: Frame) -> int:
        try:
            await asyncio.wait_for(self._write_conn(frame.encode()), _CONTROL_WRITE_TIMEOUT)
        except (OSError, asyncio.TimeoutError, RuntimeError):
            self.close()
            raise
        return len(frame.data)

    async def _send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def _write_conn(self, data: bytes) -> int:
        async with self._conn_lock:
            if self._buffering:
                self._buffer += data
                return len(data)
            if self._buffer:
                data, self._buffer = self._buffer + data, b""

            if self._send_padding:
                self.pkt_counter = (self.pkt_counter + 1) & 0xFFFFFFFF
                factory = self.padding.load()
                if self.pkt_counter < factory.stop:
                    return await self._write_padded(data, factory)
                self._send_padding = False

            await self._send(data)
            return len(data)

    async def _write_padded(self, data: bytes, factory: PaddingFactory) -> int:
        written = 0
        for size in factory.generate_record_payload_sizes(self.pkt_counter):
            remaining = len(data)
            if size == CHECK_MARK:
                if remaining == 0:
                    break
                continue
            if remaining > size:
                await self._send(data[:size])
                written += size
                data = data[size:]
            elif remaining > 0:
                padding_len = size - remaining - HEADER_SIZE
                chunk = data + _waste(padding_len) if padding_len > 0 else data
                await self._send(chunk)
                written += remaining
                data = b""
            else:
                await self._send(_waste(size))
                data = b""
        if data:
            await self._send(data)
            written += len(data)
        return written


def _now() -> float:
    return time.monotonic()