"""
Task Poller

Requester-side watcher for outstanding asynchronous collaboration tasks.

One asyncio task owns the outstanding set. Callers never touch the set
directly: ``track``/``untrack`` post messages to an inbox that the runner
drains before every tick, and ticks are serialised on one lock. A completed
task is claimed (complete -> consumed) before ``on_result`` sees it, so a
result surfaces at most once even across pollers. The runner exits as soon
as the set is empty and is restarted by the next ``track``.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, FrozenSet, List, Optional, Set

from ..common.models import CollaborationTask
from ..common.schemas import TaskStatus
from .tasks import TaskEngine

logger = logging.getLogger("mindops.collaboration.poller")

TaskCallback = Callable[[CollaborationTask], Any]


async def _call(callback: Optional[TaskCallback], task: CollaborationTask) -> None:
    if callback is None:
        return
    result = callback(task)
    if inspect.isawaitable(result):
        await result


class TaskPoller:
    """
    Polls the task engine for one requester's outstanding tasks.

    Args:
        engine: Task engine to query
        requester_user_id: Whose tasks to watch
        on_result: Called with each task that reached ``complete``
        on_failure: Called with each task that reached ``failed``
        interval: Seconds between polls
    """

    def __init__(
        self,
        engine: TaskEngine,
        requester_user_id: str,
        on_result: Optional[TaskCallback] = None,
        on_failure: Optional[TaskCallback] = None,
        interval: float = 5.0,
    ):
        self.engine = engine
        self.requester_user_id = requester_user_id
        self.on_result = on_result
        self.on_failure = on_failure
        self.interval = interval

        self._outstanding: Set[str] = set()
        self._inbox: "asyncio.Queue[tuple]" = asyncio.Queue()
        self._runner: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def outstanding(self) -> FrozenSet[str]:
        return frozenset(self._outstanding)

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def track(self, task_id: str) -> None:
        """Watch ``task_id``; starts polling if it was idle."""
        self._inbox.put_nowait(("add", task_id))
        if not self.is_running:
            self._runner = asyncio.get_running_loop().create_task(self._run())
            logger.debug("Poller started for %s", self.requester_user_id)

    def untrack(self, task_id: str) -> None:
        self._inbox.put_nowait(("remove", task_id))

    async def stop(self) -> None:
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None

    def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            action, task_id = self._inbox.get_nowait()
            if action == "add":
                self._outstanding.add(task_id)
            else:
                self._outstanding.discard(task_id)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning("Poll failed, will retry: %s", e)

            async with self._lock:
                self._drain_inbox()
                idle = not self._outstanding
            if idle:
                logger.debug("No outstanding tasks, poller stopping")
                return
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> List[CollaborationTask]:
        """
        One poll tick. Ticks never overlap: a call made while the runner is
        mid-tick waits for it to finish.

        Returns the tasks surfaced through ``on_result`` on this tick.
        """
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> List[CollaborationTask]:
        self._drain_inbox()
        if not self._outstanding:
            return []

        tasks = await asyncio.to_thread(
            self.engine.list_as_requester,
            self.requester_user_id,
            None,
            sorted(self._outstanding),
        )

        surfaced = []
        for task in tasks:
            if task.status == TaskStatus.COMPLETE.value:
                # complete -> consumed is the claim; only the winner surfaces it
                claimed = await asyncio.to_thread(
                    self.engine.mark_consumed, task.id, self.requester_user_id
                )
                self._outstanding.discard(task.id)
                if not claimed:
                    logger.debug("Task %s was already surfaced elsewhere", task.id)
                    continue
                try:
                    await _call(self.on_result, task)
                except Exception:
                    logger.exception("Result callback failed for task %s", task.id)
                surfaced.append(task)
            elif task.status == TaskStatus.FAILED.value:
                self._outstanding.discard(task.id)
                await _call(self.on_failure, task)
            elif task.status == TaskStatus.CONSUMED.value:
                self._outstanding.discard(task.id)

        known = {t.id for t in tasks}
        for missing in self._outstanding - known:
            logger.info("Task %s no longer exists, dropping it", missing)
        self._outstanding &= known

        if surfaced:
            logger.info("Surfaced %d completed task(s)", len(surfaced))
        return surfaced
