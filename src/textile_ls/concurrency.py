"""Cancellation tokens, debouncing and per-key task supervision for asyncio."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

log = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class CancellationToken:
    """Read side of a cancellation signal. Checked after every ``await``."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled


class _NeverCancelled(CancellationToken):
    @property
    def is_cancellation_requested(self) -> bool:
        return False


NOOP_TOKEN: CancellationToken = _NeverCancelled()


class CancellationTokenSource:
    def __init__(self) -> None:
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancelled = True


class Delayer:
    """Debounce: run the last triggered callback once no trigger arrived for ``delay`` seconds."""

    def __init__(self, delay: float):
        self._delay = delay
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._callback: Callable[[], Awaitable[Any]] | None = None

    @property
    def is_triggered(self) -> bool:
        return self._timer is not None

    @property
    def task(self) -> asyncio.Task | None:
        """The most recent run of the callback, if any."""
        return self._task

    def trigger(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._callback = callback
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        callback, self._callback = self._callback, None
        if callback is not None:
            self._task = asyncio.ensure_future(callback())

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._callback = None


class _Inflight:
    __slots__ = ("generation", "source", "task")

    def __init__(self, generation: int, source: CancellationTokenSource, task: asyncio.Task):
        self.generation = generation
        self.source = source
        self.task = task


class InflightTasks(Generic[K]):
    """At most one live task per key; a new request cancels the previous one.

    Each key has a generation counter. Starting a task bumps it and cancels
    the token of the superseded task, which is expected to notice and stop
    at its next suspension point.
    """

    def __init__(self) -> None:
        self._generations: dict[K, int] = {}
        self._inflight: dict[K, _Inflight] = {}

    def start(self, key: K, work: Callable[[CancellationToken], Awaitable[Any]]) -> asyncio.Task:
        self.cancel(key)
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation

        source = CancellationTokenSource()
        task = asyncio.ensure_future(work(source.token))
        self._inflight[key] = _Inflight(generation, source, task)

        def done(finished: asyncio.Task) -> None:
            if not finished.cancelled() and finished.exception() is not None:
                log.error("Work for %s failed", key, exc_info=finished.exception())
            entry = self._inflight.get(key)
            if entry is not None and entry.generation == generation:
                del self._inflight[key]

        task.add_done_callback(done)
        return task

    def cancel(self, key: K) -> None:
        entry = self._inflight.pop(key, None)
        if entry is not None:
            log.debug("Cancelling in-flight work for %s", key)
            entry.source.cancel()

    def clear(self) -> None:
        for key in list(self._inflight):
            self.cancel(key)

    def generation(self, key: K) -> int:
        return self._generations.get(key, 0)

    def tasks(self) -> list[asyncio.Task]:
        return [entry.task for entry in self._inflight.values()]

    def __contains__(self, key: K) -> bool:
        return key in self._inflight


class BackgroundTasks:
    """Fire-and-forget tasks that are still tracked, so callers can wait for quiescence."""

    def __init__(self, name: str = "background"):
        self._name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("%s task failed", self._name, exc_info=task.exception())

    def pending(self) -> list[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    def cancel_all(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
