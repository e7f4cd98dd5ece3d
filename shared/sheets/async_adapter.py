"""Run blocking gspread calls off the event loop.

A small dedicated pool keeps sheet writes from competing with aiohttp and
discord.py for the default executor. Two workers are enough: session rows
are written one channel at a time.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

T = TypeVar("T")

log = logging.getLogger("pumpkin.sheets")

_pool: ThreadPoolExecutor | None = None
_pool_lock = threading.Lock()


def _executor() -> ThreadPoolExecutor:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sheets-io")
            log.debug("sheets executor started")
        return _pool


def shutdown_executor(wait: bool = True) -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.shutdown(wait=wait)
        log.debug("sheets executor stopped")


async def arun(func: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
    """Await ``func(*args, **kwargs)`` on the sheets pool, optionally bounded by ``timeout``."""

    loop = asyncio.get_running_loop()
    call = loop.run_in_executor(_executor(), functools.partial(func, *args, **kwargs))
    return await asyncio.wait_for(call, timeout) if timeout is not None else await call
