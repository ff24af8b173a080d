import asyncio
from typing import Any, Callable


async def run_with_timeout(func: Callable, *args, timeout: float) -> Any:
    """
    Run a blocking client call in a worker thread, bounded by ``timeout``.

    Raises asyncio.TimeoutError when the call does not finish in time. The
    awaiting coroutine is released immediately; the worker thread is left to
    finish on its own.
    """
    return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
