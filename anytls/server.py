"""Server side: authenticates TLS connections and proxies their streams."""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import logging
import os
import ssl
import struct
import sys
from contextlib import suppress

from anytls.addressing import Socksaddr, dial_tcp, read_socksaddr
from anytls.certs import generate_key_pair
from anytls.frame import PROGRAM_VERSION_NAME
from anytls.padding import DEFAULT_PADDING, PaddingHolder, update_padding_scheme
from anytls.session import Session
from anytls.stream import Stream

logger = logging.getLogger(__name__)

_READ_ONCE_SIZE = 65535
_COPY_SIZE = 32 * 1024
_UOT_MAGIC = "udp-over-tcp.arpa"

_LOG_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


class _CachedReader:
    """A reader that first replays bytes already read from the connection."""

    def __init__(self, cached: bytes, reader: asyncio.StreamReader) -> None:
        self._cached = cached
        self._reader = reader

    def skip(self, n: int) -> None:
        self._cached = self._cached[n:]

    async def readexactly(self, n: int) -> bytes:
        head, self._cached = self._cached[:n], self._cached[n:]
        if len(head) == n:
            return head
        try:
            return head + await self._reader.readexactly(n - len(head))
        except asyncio.IncompleteReadError as exc:
            raise asyncio.IncompleteReadError(head + exc.partial, n) from None


class _StreamBytes:
    """Exact-size reads on top of a stream."""

    def __init__(self, stream: Stream) -> None:
        self._stream = stream

    async def readexactly(self, n: int) -> bytes:
        data = b""
        while len(data) < n:
            chunk = await self._stream.read(n - len(data))
            if not chunk:
                raise asyncio.IncompleteReadError(data, n)
            data += chunk
        return data


async def proxy_outbound_tcp(stream: Stream, destination: Socksaddr) -> None:
    """Connect to ``destination``, report the outcome and relay data both ways."""
    try:
        reader, writer = await dial_tcp(destination.host, destination.port)
    except OSError as exc:
        logger.debug("proxy_outbound_tcp dial: %s", exc)
        await stream.handshake_failure(exc)
        raise
    try:
        await stream.handshake_success()
    except Exception:
        writer.close()
        raise

    async def stream_to_remote() -> None:
        while data := await stream.read(_COPY_SIZE):
            writer.write(data)
            await writer.drain()

    async def remote_to_stream() -> None:
        while data := await reader.read(_COPY_SIZE):
            await stream.write(data)

    tasks = [asyncio.ensure_future(stream_to_remote()), asyncio.ensure_future(remote_to_stream())]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        writer.close()


class ProxyServer:
    """Accepts authenticated sessions and proxies every stream opened on them."""

    def __init__(
        self,
        password: str,
        ssl_context: ssl.SSLContext | None = None,
        padding: PaddingHolder | None = None,
    ) -> None:
        self._password_sha256 = hashlib.sha256(password.encode()).digest()
        self._ssl_context = ssl_context
        self._padding = padding or DEFAULT_PADDING

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve one accepted connection until it ends."""
        try:
            await self._handle(reader, writer)
        except Exception:
            logger.exception("[BUG] connection handler failed")
        finally:
            writer.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            first = await reader.read(_READ_ONCE_SIZE)
        except OSError as exc:
            logger.debug("read once: %s", exc)
            return
        if not first:
            return
        cached = _CachedReader(first, reader)

        if len(first) < 34 or first[:32] != self._password_sha256:
            self._fallback(writer)
            return
        (padding_len,) = struct.unpack(">H", first[32:34])
        if len(first) < 34 + padding_len:
            self._fallback(writer)
            return
        cached.skip(34 + padding_len)

        session = Session.server(cached, writer, self._on_new_stream, self._padding)
        await session.run()
        session.close()

    @staticmethod
    def _fallback(writer: asyncio.StreamWriter) -> None:
        logger.debug("fallback: %s", writer.get_extra_info("peername"))

    async def _on_new_stream(self, stream: Stream) -> None:
        try:
            try:
                destination = await read_socksaddr(_StreamBytes(stream))
            except (OSError, ValueError, asyncio.IncompleteReadError) as exc:
                logger.debug("read destination: %s", exc)
                return
            if _UOT_MAGIC in str(destination):
                logger.debug("udp-over-tcp is not supported: %s", destination)
                return
            try:
                await proxy_outbound_tcp(stream, destination)
            except Exception as exc:
                logger.debug("outbound %s: %s", destination, exc)
        finally:
            with suppress(OSError):
                await stream.close()

    async def serve(self, host: str, port: int) -> None:
        """Listen on ``host``:``port`` and serve forever."""
        server = await asyncio.start_server(
            self.handle_connection, host, port, ssl=self._ssl_context
        )
        async with server:
            await server.serve_forever()


def _split_listen(listen: str) -> tuple[str, int]:
    host, _, port = listen.rpartition(":")
    return host.strip("[]") or "0.0.0.0", int(port)


def _fatal(message: str) -> SystemExit:
    logger.critical(message)
    return SystemExit(1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="anytls-server")
    parser.add_argument("-l", dest="listen", default="0.0.0.0:8443", help="server listen port")
    parser.add_argument("-p", dest="password", default="", help="password")
    parser.add_argument("--padding-scheme", dest="padding_scheme", default="", help="padding-scheme")
    args = parser.parse_args(argv)

    level = _LOG_LEVELS.get(os.environ.get("LOG_LEVEL", "").lower(), logging.INFO)
    logging.basicConfig(level=level, stream=sys.stderr)

    if not args.password:
        raise _fatal("please set password")
    if args.padding_scheme:
        try:
            with open(args.padding_scheme, "rb") as scheme_file:
                raw = scheme_file.read()
        except OSError as exc:
            raise _fatal(str(exc)) from exc
        if update_padding_scheme(raw):
            logger.info("loaded padding scheme file: %s", args.padding_scheme)
        else:
            logger.error("wrong format padding scheme file: %s", args.padding_scheme)

    try:
        host, port = _split_listen(args.listen)
    except ValueError as exc:
        raise _fatal(f"listen server tcp: {exc}") from exc

    logger.info("[Server] %s", PROGRAM_VERSION_NAME)
    logger.info("[Server] Listening TCP %s", args.listen)

    context = generate_key_pair(None, "").server_ssl_context()
    server = ProxyServer(args.password, context)
    try:
        asyncio.run(server.serve(host, port))
    except OSError as exc:
        raise _fatal(f"listen server tcp: {exc}") from exc
    except KeyboardInterrupt:
        pass