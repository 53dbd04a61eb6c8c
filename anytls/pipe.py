"""A synchronous in-memory pipe with read and write deadlines."""

from __future__ import annotations

import asyncio

from anytls.timers import PipeDeadline


class PipeClosedError(OSError):
    """Operation on a closed pipe."""


class DeadlineExceededError(TimeoutError):
    """The read or write deadline has passed."""


_EOF = object()


async def _first(*events: asyncio.Event, future: asyncio.Future | None = None) -> None:
    tasks = [asyncio.ensure_future(e.wait()) for e in events]
    waiting: set = set(tasks)
    if future is not None:
        waiting.add(future)
    try:
        await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()


class _Pipe:
    def __init__(self) -> None:
        self.wr_lock = asyncio.Lock()
        self.offer: tuple[memoryview, asyncio.Future] | None = None
        self.offer_ready = asyncio.Event()
        self.done = asyncio.Event()
        self.rerr: object | None = None
        self.werr: object | None = None
        self.read_deadline = PipeDeadline()
        self.write_deadline = PipeDeadline()

    def read_close_error(self) -> object:
        if self.rerr is None and self.werr is not None:
            return self.werr
        return PipeClosedError("read on closed pipe")

    def write_close_error(self) -> BaseException:
        if self.werr is None and isinstance(self.rerr, BaseException):
            return self.rerr
        return PipeClosedError("write on closed pipe")

    def closed_read_result(self) -> bytes:
        err = self.read_close_error()
        if err is _EOF:
            return b""
        raise err  # type: ignore[misc]

    async def read(self, size: int) -> bytes:
        if self.done.is_set():
            return self.closed_read_result()
        if self.read_deadline.expired():
            raise DeadlineExceededError("read deadline exceeded")
        while self.offer is None:
            self.offer_ready.clear()
            await _first(self.offer_ready, self.done, self.read_deadline.wait())
            if self.offer is not None:
                break
            if self.done.is_set():
                return self.closed_read_result()
            if self.read_deadline.expired():
                raise DeadlineExceededError("read deadline exceeded")
        chunk, fut = self.offer
        self.offer = None
        n = min(size, len(chunk))
        data = bytes(chunk[:n])
        if not fut.done():
            fut.set_result(n)
        return data

    async def write(self, data: bytes) -> int:
        if self.done.is_set():
            raise self.write_close_error()
        if self.write_deadline.expired():
            raise DeadlineExceededError("write deadline exceeded")
        async with self.wr_lock:
            view = memoryview(bytes(data))
            written = 0
            first = True
            while first or len(view) > 0:
                first = False
                fut = asyncio.get_running_loop().create_future()
                self.offer = (view, fut)
                self.offer_ready.set()
                await _first(self.done, self.write_deadline.wait(), future=fut)
                if fut.done() and not fut.cancelled():
                    consumed = fut.result()
                    view = view[consumed:]
                    written += consumed
                    continue
                if self.offer is not None and self.offer[1] is fut:
                    self.offer = None
                fut.cancel()
                if self.done.is_set():
                    raise self.write_close_error()
                raise DeadlineExceededError("write deadline exceeded")
            return written

    def close_read(self, err: BaseException | None) -> None:
        if self.rerr is None:
            self.rerr = err if err is not None else PipeClosedError("read half closed")
        self.done.set()

    def close_write(self, err: BaseException | None) -> None:
        if self.werr is None:
            self.werr = err if err is not None else _EOF
        self.done.set()


class PipeReader:
    """The read half of a pipe."""

    def __init__(self, shared: _Pipe) -> None:
        self._pipe = shared

    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; returns b"" once the writer has closed."""
        return await self._pipe.read(size)

    def close(self) -> None:
        self._pipe.close_read(None)

    def close_with_error(self, err: BaseException | None) -> None:
        """Close; later writes raise ``err``. The first error stored is kept."""
        self._pipe.close_read(err)

    def set_read_deadline(self, when: float | None) -> None:
        if self._pipe.done.is_set():
            raise PipeClosedError("pipe closed")
        self._pipe.read_deadline.set(when)


class PipeWriter:
    """The write half of a pipe."""

    def __init__(self, shared: _Pipe) -> None:
        self._pipe = shared

    async def write(self, data: bytes) -> int:
        """Block until readers have consumed all of ``data``."""
        return await self._pipe.write(data)

    def close(self) -> None:
        self._pipe.close_write(None)

    def close_with_error(self, err: BaseException | None) -> None:
        """Close; later reads raise ``err``, or see EOF if it is None."""
        self._pipe.close_write(err)

    def set_write_deadline(self, when: float | None) -> None:
        if self._pipe.done.is_set():
            raise PipeClosedError("pipe closed")
        self._pipe.write_deadline.set(when)


def pipe() -> tuple[PipeReader, PipeWriter]:
    """Create a connected reader and writer."""
    shared = _Pipe()
    return PipeReader(shared), PipeWriter(shared)