"""Bounded-time bridge from async handlers to the synchronous store."""
import asyncio
import logging
from typing import Any, Callable

from huddle.errors import Internal

logger = logging.getLogger(__name__)


async def run_bounded(fn: Callable[..., Any], *args: Any, timeout: float, **kwargs: Any) -> Any:
    """Run a blocking store call in a worker thread with a deadline.

    The event loop never blocks on DuckDB. On timeout the caller gets an
    ``Internal`` error; the worker thread is not interrupted, so a write
    that already started still completes.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
    except asyncio.TimeoutError:
        logger.error(f"[Store] {getattr(fn, '__name__', fn)} timed out after {timeout}s")
        raise Internal("Storage timed out")
