"""Shutdown coordination - one-shot broadcast stop signal plus a join barrier"""
import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)


class Shutdown:
    """
    Stop signal shared by every pipeline task.

    The signal flips once from running to stopping and never resets.
    Tasks started through `spawn()` are counted; `join()` returns once
    every one of them has exited, whatever the exit path.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()
        self.reason: str | None = None
        self.fatal = False

    @property
    def stopping(self) -> bool:
        return self._event.is_set()

    @property
    def active(self) -> int:
        """Number of registered tasks that have not exited yet."""
        return self._active

    def trigger(self, reason: str, fatal: bool = False) -> bool:
        """
        Broadcast the stop signal.

        Returns True for the call that performed the transition. A fatal
        trigger after a clean one still marks the shutdown as fatal.
        """
        if fatal:
            self.fatal = True
        if self._event.is_set():
            logger.debug(f"Shutdown already in progress, ignoring: {reason}")
            return False

        self.reason = reason
        self._event.set()
        if fatal:
            logger.critical(f"Shutting down: {reason}")
        else:
            logger.info(f"Shutting down: {reason}")
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep until `seconds` elapsed or shutdown, whichever comes first.

        Returns True if shutdown was observed.
        """
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Register a task with the barrier, then start it."""
        self._active += 1
        self._idle.clear()
        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning(f"{name}: cancelled")
            raise
        except Exception as e:
            logger.exception(f"{name}: crashed")
            self.trigger(f"{name} crashed: {e}", fatal=True)
        finally:
            self._active -= 1
            logger.debug(f"{name}: stopped ({self._active} tasks left)")
            if self._active == 0:
                self._idle.set()

    async def join(self) -> None:
        """Block until every spawned task has exited."""
        await self._idle.wait()
