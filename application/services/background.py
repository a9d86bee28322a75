"""
Detached side effects (counter increments, event publication).

Failures are logged and never propagate to the request that spawned them.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from core.logging_config import get_logger


logger = get_logger(__name__)


class DetachedTaskRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, name: str, coro_factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guard(name, coro_factory), name=name)
        # keep a strong reference until done, the loop only holds weak ones
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(name: str, coro_factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            await coro_factory()
        except Exception as exc:
            logger.error("detached_task_failed", task=name, error=str(exc), exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """等待所有在途任务结束（关闭应用与测试中使用）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
