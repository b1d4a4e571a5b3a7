"""Long-running poll-and-claim loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from piecework.tasks.execution import TaskExecutor
from piecework.tasks.runner import signal_handlers

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WatchSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    recovered: int = 0


class TaskWatcher:
    """Claim and run one task at a time, sleeping while the queue is empty."""

    def __init__(self, *, executor: TaskExecutor, poll_interval_seconds: float = 2.0) -> None:
        self.executor = executor
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set() or self.executor.context.aborted

    async def watch(self, max_tasks: int | None = None) -> WatchSummary:
        lifecycle = self.executor.lifecycle
        summary = WatchSummary()
        summary.recovered = await asyncio.to_thread(lifecycle.recover_interrupted_running_tasks)
        if summary.recovered:
            logger.info("Recovered %d interrupted task(s)", summary.recovered)

        with signal_handlers(self.executor.context):
            while not self.stopped:
                if max_tasks is not None and summary.total >= max_tasks:
                    break
                claimed = await asyncio.to_thread(lifecycle.claim_next_tasks, 1)
                if not claimed:
                    await self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                result = await self.executor.execute_task(claimed[0])
                if result.interrupted:
                    await asyncio.to_thread(
                        lifecycle.mark_interrupted,
                        [claimed[0].name],
                        signal_name="abort",
                    )
                    break
                summary.total += 1
                if result.success:
                    summary.succeeded += 1
                else:
                    summary.failed += 1
        return summary

    async def _sleep_with_stop(self, seconds: float) -> None:
        waiters = {
            asyncio.create_task(self._stop_event.wait()),
            asyncio.create_task(self.executor.context.abort_event.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
