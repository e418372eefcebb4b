import asyncio
from typing import Coroutine, Optional

from app.logging_config import get_logger

logger = get_logger("background")


class BackgroundTaskRunner:
    """Fire-and-forget tasks, each with its own error boundary.

    Exceptions are logged and never reach the caller. `drain()` waits for
    everything submitted so far (used on shutdown and in tests).
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _guard(self, coro: Coroutine, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Background task failed",
                extra={"context": {"task": name, "error": str(exc), "error_type": type(exc).__name__}},
            )

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task_name = name or getattr(coro, "__name__", "task")
        task = asyncio.create_task(self._guard(coro, task_name), name=task_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
