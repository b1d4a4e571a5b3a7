"""Concurrent task runner with a fixed number of asyncio slots."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from piecework.context import ExecutionContext
from piecework.tasks.execution import TaskExecutor
from piecework.tasks.models import TaskRecord, TaskResult
from piecework.tasks.prefix_writer import TaskPrefixWriter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Aggregate runner counters for CLI reporting."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    interrupted: int = 0

    def record(self, result: TaskResult) -> None:
        self.total += 1
        if result.interrupted:
            self.interrupted += 1
        elif result.success:
            self.succeeded += 1
        else:
            self.failed += 1


class TaskRunner:
    """Claim pending tasks into free slots until the queue drains."""

    def __init__(
        self,
        *,
        executor: TaskExecutor,
        concurrency: int = 1,
        poll_interval_seconds: float = 0.5,
        write: Callable[[str], None] | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.executor = executor
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self._write = write or executor.context.write
        self._signal_name: str | None = None

    @property
    def context(self) -> ExecutionContext:
        return self.executor.context

    async def run(self, max_tasks: int | None = None) -> RunSummary:
        """Run tasks until none is pending and none is running."""

        summary = RunSummary()
        running: dict[asyncio.Task[TaskResult], TaskRecord] = {}
        claimed_total = 0
        color_index = 0
        interrupt_recorded = False
        lifecycle = self.executor.lifecycle

        with signal_handlers(self.context, on_signal=self._on_signal):
            try:
                while True:
                    if not self.context.aborted:
                        free = self.concurrency - len(running)
                        if max_tasks is not None:
                            free = min(free, max_tasks - claimed_total)
                        claimed = (
                            await asyncio.to_thread(lifecycle.claim_next_tasks, free)
                            if free > 0
                            else []
                        )
                        for task in claimed:
                            claimed_total += 1
                            running[self._start(task, color_index)] = task
                            color_index += 1
                    elif not interrupt_recorded:
                        interrupt_recorded = True
                        await asyncio.to_thread(
                            lifecycle.mark_interrupted,
                            [task.name for task in running.values()],
                            signal_name=self._signal_name or "abort",
                        )

                    if not running:
                        return summary

                    done = await self._wait_for_progress(set(running), interrupt_recorded)
                    for finished in done:
                        running.pop(finished)
                        summary.record(finished.result())
            finally:
                await _cancel_all(running)

    def _start(self, task: TaskRecord, color_index: int) -> asyncio.Task[TaskResult]:
        writer = None
        if self.concurrency > 1:
            writer = TaskPrefixWriter(task.name, color_index, self._write)
            writer.write_line(f"=== Task: {task.name} ===")
        logger.info("Starting task %s", task.name)
        return asyncio.create_task(
            self.executor.execute_task(task, writer=writer),
            name=f"piecework-task-{task.name}",
        )

    async def _wait_for_progress(
        self,
        running: set[asyncio.Task[TaskResult]],
        aborted: bool,
    ) -> set[asyncio.Task[TaskResult]]:
        """Wait for a finished task, the poll timer or the abort event."""

        waiters: set[asyncio.Future[object]] = set(running)
        abort_waiter = None
        if not aborted:
            abort_waiter = asyncio.create_task(self.context.abort_event.wait())
            waiters.add(abort_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()
        return {task for task in done if task in running}

    def _on_signal(self, signal_name: str) -> None:
        self._signal_name = signal_name
        logger.warning("Received %s, stopping after the current movements", signal_name)


@contextmanager
def signal_handlers(
    context: ExecutionContext,
    *,
    on_signal: Callable[[str], None] | None = None,
) -> Iterator[None]:
    """Route SIGINT/SIGTERM to the context abort event while the block runs."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _handler(signum: signal.Signals) -> None:
        if on_signal is not None:
            on_signal(signum.name)
        context.request_abort()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handler, signum)
        except (NotImplementedError, RuntimeError, ValueError):
            # Unsupported platform or not running in the main thread.
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


async def _cancel_all(running: dict[asyncio.Task[TaskResult], TaskRecord]) -> None:
    if not running:
        return
    for task in running:
        task.cancel()
    await asyncio.gather(*running, return_exceptions=True)
