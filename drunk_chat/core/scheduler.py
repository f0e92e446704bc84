"""
Task submission for background work and posting results back to the interactive context.

The interactive context is the asyncio event loop the XMPP client runs on. Conversation
fields and the registry map are only touched from that loop; background work is submitted
as tasks, and other threads hand results back with post().
"""

import asyncio
import logging
from typing import Callable, Coroutine, Optional, Set


logger = logging.getLogger('drunk_chat.scheduler')


class ChatScheduler:
    """Runs background coroutines on the event loop and tracks them until done."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """
        Args:
            loop: Event loop to use (default: the running loop at submit time)
        """
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule a coroutine as a background task.

        Args:
            coro: Coroutine to run
            name: Task name for logs

        Returns:
            The created task
        """
        task = self.loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def post(self, callback: Callable, *args):
        """
        Run a callback on the interactive context.

        Safe to call from any thread.
        """
        self.loop.call_soon_threadsafe(callback, *args)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}",
                         exc_info=(type(exc), exc, exc.__traceback__))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self):
        """Wait until every submitted task (including ones they submit) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            # let done callbacks run
            await asyncio.sleep(0)
