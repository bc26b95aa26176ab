import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

log = logging.getLogger("bitcoind_regtest.lock")

T = TypeVar("T")


class MutatingLock:
    """Admits one node-mutating critical section at a time.

    Waiters are admitted in arrival order. An exception raised inside a
    critical section reaches only its own caller; the lock is released either
    way.
    """

    def __init__(self, name: str = "rpc") -> None:
        self.name = name
        self._lock = asyncio.Lock()

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "MutatingLock":
        await self._lock.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._lock.release()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            log.debug("%s lock acquired", self.name)
            return await operation()


def serialized(method):
    """Run calls of an async method one at a time per instance.

    Later calls queue behind earlier ones and start only after they settle.
    """
    attr = f"_serialized_{method.__name__}_lock"

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        lock = self.__dict__.get(attr)
        if lock is None:
            lock = self.__dict__[attr] = asyncio.Lock()
        async with lock:
            return await method(self, *args, **kwargs)

    return wrapper
