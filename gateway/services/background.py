"""Periodic maintenance loops run on the application event loop."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from gateway.logging_config import get_logger

logger = get_logger("background")

Job = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """Run ``func`` every ``interval_seconds`` until stopped.

    A failing run is logged and the loop carries on with the next interval.
    """

    def __init__(self, name: str, interval_seconds: float, func: Job, sleep_func=asyncio.sleep):
        self.name = name
        self.interval_seconds = max(interval_seconds, 0.1)
        self.func = func
        self.runs = 0
        self.failures = 0
        self._sleep = sleep_func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        result = self.func()
        if inspect.isawaitable(result):
            result = await result
        self.runs += 1
        return result

    async def _loop(self) -> None:
        while True:
            try:
                await self._sleep(self.interval_seconds)
                result = await self.run_once()
                if result:
                    logger.debug(f"{self.name} ran", extra={"context": {"task": self.name, "result": result}})
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.failures += 1
                logger.error(
                    f"{self.name} loop failed",
                    extra={"context": {"task": self.name, "error": str(exc)}},
                )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"{self.name} started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"{self.name} stopped")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
        }
