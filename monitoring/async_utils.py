import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait for the first task to finish, then cancel the rest and run cleanup."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    logger.error("Task %s failed: %s", t.get_name(), t.exception())
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def sleep_while(predicate: Callable[[], bool], seconds: float, step: float = 0.5) -> None:
    """Sleep up to ``seconds`` in small steps, returning early once ``predicate`` turns false."""
    remaining = max(0.0, seconds)
    while remaining > 0 and predicate():
        chunk = min(step, remaining)
        await asyncio.sleep(chunk)
        remaining -= chunk
