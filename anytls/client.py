"""Client side: a pool of sessions and the proxy client built on it."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import os
import struct
import time
from contextlib import suppress

from sortedcontainers import SortedDict

from anytls.addressing import DialOut, Socksaddr
from anytls.padding import DEFAULT_PADDING, PaddingHolder
from anytls.pipe import PipeClosedError
from anytls.session import Session
from anytls.stream import Stream
from anytls.timers import start_routine

logger = logging.getLogger(__name__)

CLIENT_DEBUG_SESSION_POOL = os.environ.get("CLIENT_DEBUG_SESSION_POOL") == "1"

_MIN_INTERVAL = 5.0
_DEFAULT_INTERVAL = 30.0

_stream_counter = itertools.count(1)


class SessionClient:
    """Opens streams, reusing idle sessions before dialing new ones."""

    def __init__(
        self,
        dial_out: DialOut,
        padding: PaddingHolder | None = None,
        idle_session_check_interval: float = _DEFAULT_INTERVAL,
        idle_session_timeout: float = _DEFAULT_INTERVAL,
        min_idle_session: int = 0,
    ) -> None:
        self._dial_out = dial_out
        self._padding = padding or DEFAULT_PADDING
        if idle_session_check_interval <= _MIN_INTERVAL:
            idle_session_check_interval = _DEFAULT_INTERVAL
        if idle_session_timeout <= _MIN_INTERVAL:
            idle_session_timeout = _DEFAULT_INTERVAL
        self._check_interval = idle_session_check_interval
        self._idle_timeout = idle_session_timeout
        self._min_idle_session = min_idle_session
        self._stop = asyncio.Event()
        self._session_counter = 0
        # Keyed by negated sequence number so the newest session comes first.
        self._idle: SortedDict = SortedDict()
        self._sessions: dict[int, Session] = {}
        self._routine: asyncio.Task | None = None

    def _ensure_routine(self) -> None:
        if self._routine is None:
            self._routine = start_routine(self._check_interval, self._idle_cleanup, self._stop)

    async def create_stream(self) -> Stream:
        """Open a stream on an idle session or on a freshly dialed one."""
        if self._stop.is_set():
            raise PipeClosedError("client closed")
        self._ensure_routine()

        session = self._get_idle_session()
        if session is None:
            try:
                session = await self._create_session()
            except Exception as exc:
                raise ConnectionError(f"failed to create session: {exc}") from exc
            if CLIENT_DEBUG_SESSION_POOL:
                logger.info("create session: %d", session.seq)
        elif CLIENT_DEBUG_SESSION_POOL:
            logger.info("get session: %d", session.seq)

        try:
            stream = await session.open_stream()
        except Exception as exc:
            session.close()
            raise ConnectionError(f"failed to create stream: {exc}") from exc

        if CLIENT_DEBUG_SESSION_POOL:
            streams = next(_stream_counter)
            sessions = self._session_counter
            logger.info(
                "cumulative session: %d cumulative stream: %d avg: %f",
                sessions,
                streams,
                streams / sessions if sessions else 0.0,
            )

        def _put_back() -> None:
            if session.is_closed():
                if CLIENT_DEBUG_SESSION_POOL:
                    logger.info("discard session stream: %d %d", session.seq, stream.id)
                return
            if CLIENT_DEBUG_SESSION_POOL:
                logger.info("put session: %d %d", session.seq, stream.id)
            if self._stop.is_set():
                try:
                    asyncio.get_running_loop().call_soon(session.close)
                except RuntimeError:
                    session.close()
                return
            session.idle_since = time.monotonic()
            self._idle[-session.seq] = session

        stream.die_hook = _put_back
        return stream

    def _get_idle_session(self) -> Session | None:
        if not self._idle:
            return None
        _, session = self._idle.popitem(0)
        return session

    async def _create_session(self) -> Session:
        reader, writer = await self._dial_out()
        session = Session.client(reader, writer, self._padding)
        self._session_counter += 1
        session.seq = self._session_counter

        def _forget() -> None:
            if CLIENT_DEBUG_SESSION_POOL:
                logger.info("session died: %d %d", session.seq, session.pkt_counter)
            self._idle.pop(-session.seq, None)
            self._sessions.pop(session.seq, None)

        session.die_hook = _forget
        self._sessions[session.seq] = session
        try:
            await session.run()
        except Exception:
            session.close()
            raise
        return session

    def close(self) -> None:
        """Stop the pool and close every session."""
        self._stop.set()
        if self._routine is not None:
            self._routine.cancel()
        sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            session.close()

    def _idle_cleanup(self) -> None:
        self.cleanup_idle(time.monotonic() - self._idle_timeout)

    def cleanup_idle(self, expire_before: float) -> None:
        """Close idle sessions idle since before ``expire_before``, keeping the minimum."""
        active = 0
        to_close: list[Session] = []
        for key, session in list(self._idle.items()):
            if CLIENT_DEBUG_SESSION_POOL:
                logger.debug("check session: %d %f %f", session.seq, expire_before, session.idle_since)
            if session.idle_since >= expire_before:
                active += 1
                continue
            if active < self._min_idle_session:
                session.idle_since = time.monotonic()
                active += 1
                continue
            to_close.append(session)
            del self._idle[key]
        for session in to_close:
            if CLIENT_DEBUG_SESSION_POOL:
                logger.info("local cleanup session: %d", session.seq)
            session.close()


class ProxyClient:
    """Authenticates outbound connections and opens proxied streams."""

    def __init__(
        self,
        dial_out: DialOut,
        password: str,
        min_idle_session: int = 0,
        padding: PaddingHolder | None = None,
    ) -> None:
        self._dial_out = dial_out
        self._password_sha256 = hashlib.sha256(password.encode()).digest()
        self._padding = padding or DEFAULT_PADDING
        self._sessions = SessionClient(
            self._create_outbound_connection,
            self._padding,
            _DEFAULT_INTERVAL,
            _DEFAULT_INTERVAL,
            min_idle_session,
        )

    async def create_proxy(self, destination: Socksaddr) -> Stream:
        """Open a stream and send the destination address on it."""
        stream = await self._sessions.create_stream()
        try:
            await stream.write(destination.encode())
        except Exception:
            with suppress(OSError):
                await stream.close()
            raise
        return stream

    async def _create_outbound_connection(
        self,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        reader, writer = await self._dial_out()
        sizes = self._padding.load().generate_record_payload_sizes(0)
        padding_len = sizes[0] if sizes else 0
        data = self._password_sha256 + struct.pack(">H", padding_len & 0xFFFF)
        if padding_len > 0:
            data += bytes(padding_len)
        try:
            writer.write(data)
            await writer.drain()
        except Exception:
            writer.close()
            raise
        return reader, writer

    def close(self) -> None:
        self._sessions.close()