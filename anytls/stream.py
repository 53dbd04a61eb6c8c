"""A single multiplexed stream carried by a session."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from anytls.frame import Command, Frame
from anytls.pipe import DeadlineExceededError, PipeClosedError, pipe
from anytls.timers import PipeDeadline

if TYPE_CHECKING:
    from anytls.session import Session


class Stream:
    """One logical connection inside a session."""

    def __init__(self, sid: int, session: "Session") -> None:
        self.id = sid
        self._session = session
        self._pipe_r, self._pipe_w = pipe()
        self._write_deadline = PipeDeadline()
        self._dead = False
        self.die_hook: Callable[[], Any] | None = None
        self._die_err: BaseException | None = None
        self._reported = False

    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes of data pushed by the peer."""
        try:
            data = await self._pipe_r.read(size)
        except (PipeClosedError, DeadlineExceededError):
            if self._die_err is not None:
                raise self._die_err from None
            raise
        if not data and self._die_err is not None:
            raise self._die_err
        return data

    async def write(self, data: bytes) -> int:
        """Send ``data`` to the peer as one data frame."""
        if self._write_deadline.expired():
            raise DeadlineExceededError("write deadline exceeded")
        if self._die_err is not None:
            raise self._die_err
        return await self._session._write_data_frame(self.id, data)

    async def close(self) -> None:
        """Close the stream and tell the peer."""
        await self._close_with_error(PipeClosedError("stream closed"))

    def _run_die_hook(self) -> None:
        hook, self.die_hook = self.die_hook, None
        if hook is not None:
            hook()

    def _close_locally(self) -> None:
        """Close without notifying the peer."""
        if self._dead:
            return
        self._dead = True
        self._die_err = PipeClosedError("use of closed stream")
        self._pipe_r.close()
        self._run_die_hook()

    async def _close_with_error(self, err: BaseException) -> None:
        if self._dead:
            assert self._die_err is not None
            raise self._die_err
        self._dead = True
        self._die_err = err
        self._pipe_r.close()
        self._run_die_hook()
        await self._session._stream_closed(self.id)

    def set_read_deadline(self, when: float | None) -> None:
        self._pipe_r.set_read_deadline(when)

    def set_write_deadline(self, when: float | None) -> None:
        self._write_deadline.set(when)

    def set_deadline(self, when: float | None) -> None:
        self.set_write_deadline(when)
        self.set_read_deadline(when)

    def local_address(self) -> Any:
        return self._session._writer.get_extra_info("sockname")

    def remote_address(self) -> Any:
        return self._session._writer.get_extra_info("peername")

    async def handshake_failure(self, err: BaseException | None) -> None:
        """Report to a version 2 client that the outbound connection failed."""
        first = not self._reported
        self._reported = True
        if first and err is not None and self._session.peer_version >= 2:
            frame = Frame(Command.SYNACK, self.id, str(err).encode())
            await self._session._write_control_frame(frame)

    async def handshake_success(self) -> None:
        """Report to a version 2 client that the outbound connection is open."""
        first = not self._reported
        self._reported = True
        if first and self._session.peer_version >= 2:
            await self._session._write_control_frame(Frame(Command.SYNACK, self.id))