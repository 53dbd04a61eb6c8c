"""Deadlines, one-shot watchers and periodic routines on the asyncio loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PipeDeadline:
    """A resettable deadline; times are ``time.monotonic()`` seconds, None means none."""

    def __init__(self) -> None:
        self._cancel = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None

    def set(self, when: float | None) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        closed = self._cancel.is_set()
        if when is None:
            if closed:
                self._cancel = asyncio.Event()
            return
        remaining = when - time.monotonic()
        if remaining > 0:
            if closed:
                self._cancel = asyncio.Event()
            self._timer = asyncio.get_running_loop().call_later(remaining, self._cancel.set)
            return
        if not closed:
            self._cancel.set()

    def wait(self) -> asyncio.Event:
        """The event that is set when the deadline passes."""
        return self._cancel

    def expired(self) -> bool:
        return self._cancel.is_set()


def new_deadline_watcher(delay: float, on_timeout: Callable[[], Any]) -> Callable[[], None]:
    """Call ``on_timeout`` after ``delay`` seconds unless the returned ``done`` runs first."""
    handle = asyncio.get_running_loop().call_later(delay, on_timeout)

    def done() -> None:
        handle.cancel()

    return done


def start_routine(
    interval: float, func: Callable[[], Any], stop: asyncio.Event
) -> asyncio.Task:
    """Run ``func`` every ``interval`` seconds until ``stop`` is set."""

    async def _loop() -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                result = func()
                if inspect.isawaitable(result):
                    await result
                if stop.is_set():
                    return
        except Exception:
            logger.exception("[BUG] periodic routine failed")

    return asyncio.get_running_loop().create_task(_loop())