"""Per-kind publish/subscribe for node events.

Listeners are plain callables or coroutine functions. Each subscription hands
back its own unsubscribe callable, and ``clear()`` drops every listener at
once when the owning instance is torn down.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from bitcoind_regtest.constants import EventKind

log = logging.getLogger("bitcoind_regtest.events")

Listener = Callable[..., Any]


class Subscription:
    """Queue-backed subscription, usable as an async iterator."""

    def __init__(self, hub: "EventHub", kind: str, maxsize: int = 0) -> None:
        self.kind = kind
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._unsubscribe = hub.subscribe(kind, self._put)

    def _put(self, *args) -> None:
        item = args[0] if len(args) == 1 else args
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            log.warning("Dropping %s event, subscription queue is full", self.kind)

    async def get(self) -> Any:
        return await self.queue.get()

    def close(self) -> None:
        self._unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        return await self.queue.get()


class EventHub:
    def __init__(self, name: str = "bitcoind") -> None:
        self.name = name
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(kind, listener)

        return unsubscribe

    def unsubscribe(self, kind: str, listener: Listener) -> None:
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: str | None = None) -> int:
        if kind is not None:
            return len(self._listeners.get(kind, []))
        return sum(len(v) for v in self._listeners.values())

    def stream(self, kind: str, maxsize: int = 0) -> Subscription:
        return Subscription(self, kind, maxsize)

    def emit(self, kind: str, *args: Any) -> None:
        listeners = list(self._listeners.get(kind, []))
        if kind == EventKind.ERROR and not listeners:
            err = args[0] if args else None
            log.error("[%s] unhandled error event: %r", self.name, err)
            return
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                log.exception("[%s] %s listener %r failed", self.name, kind, listener)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            log.error("[%s] async listener failed: %r", self.name, exc)

    def clear(self) -> None:
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
