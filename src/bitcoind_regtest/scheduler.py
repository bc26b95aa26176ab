import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from bitcoind_regtest.constants import LOOP_ERROR_BACKOFF

log = logging.getLogger("bitcoind_regtest.scheduler")


async def sleep_or_stop(stop: asyncio.Event, delay: float) -> bool:
    """Sleep ``delay`` seconds or until ``stop`` is set. True if stopped."""
    if stop.is_set():
        return True
    try:
        async with asyncio.timeout(None if math.isinf(delay) else max(delay, 0)):
            await stop.wait()
    except TimeoutError:
        return stop.is_set()
    return True


async def background_loop(
    name: str,
    *,
    interval: Callable[[], float],
    enabled: Callable[[], bool],
    unit: Callable[[], Awaitable[Any]],
    stop: asyncio.Event,
    on_error: Callable[[Exception], None],
) -> None:
    """Sleep ``interval()``, then run ``unit()`` if ``enabled()``; repeat until stopped.

    Both suppliers are read on every iteration so replacing them takes effect
    on the next cycle. A failing iteration is logged and reported through
    ``on_error``; the loop keeps going.
    """
    log.debug("[%s] loop started", name)
    while not stop.is_set():
        try:
            delay = float(interval())
        except Exception as exc:
            log.exception("[%s] interval supplier failed", name)
            on_error(exc)
            delay = LOOP_ERROR_BACKOFF
        if await sleep_or_stop(stop, delay):
            break
        try:
            if enabled():
                await unit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("[%s] iteration failed: %r", name, exc)
            on_error(exc)
    log.debug("[%s] loop stopped", name)
