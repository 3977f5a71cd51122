"""Task dispatcher: bounded worker pool, per-slot epochs and ordered outcome channels.

Every unit of backend work is submitted against a *slot* (a logical purpose such
as "explorer.scan").  Each submission bumps the slot's epoch; only the newest
epoch is authoritative.  Superseded tasks have their cancel flag set and are
abandoned at their next guarded suspension point without reporting anything.

Completed work is appended to a per-slot channel and drained by the render
loop once per tick through ``poll_completed()``.  The render loop never awaits
anything owned by the dispatcher.
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional

from ..util.const import DEFAULTS, TaskKind, TaskState
from ..util.errors import StreamError, TaskCancelled, is_transient
from ..util.types import Result, ErrorInfo
from ..util.logging import log

Operation = Callable[["TaskContext"], Awaitable[Result[Any]]]


@dataclass
class Task:
    id: int
    slot: str
    epoch: int
    kind: TaskKind
    operation: Operation = field(repr=False)
    cancel_flag: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    state: TaskState = TaskState.QUEUED

    def transition(self, state: TaskState) -> bool:
        """Move to `state`; terminal states are never left."""
        if self.state.terminal:
            return False
        self.state = state
        return True


@dataclass(frozen=True)
class Outcome:
    slot: str
    epoch: int
    task_id: int
    state: TaskState
    value: Any = None
    error: Optional[ErrorInfo] = None
    partial: bool = False      # one push message of a still-open stream
    latency: float = 0.0


class TaskContext:
    """Handed to an operation; exposes the connection and the cancel flag."""

    def __init__(self, conn: Any, task: Task) -> None:
        self.conn = conn
        self.task = task

    @property
    def cancelled(self) -> bool:
        return self.task.cancel_flag.is_set()

    def checkpoint(self) -> None:
        if self.cancelled:
            raise TaskCancelled()

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the task is cancelled first; then abandon it."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TaskCancelled()

        step = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.task.cancel_flag.wait())
        finished = False
        try:
            await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finished = step.done()
        finally:
            waiter.cancel()
            # Cancel flag won, or the worker itself is being cancelled: the step goes too.
            if not finished:
                step.cancel()
                await asyncio.gather(step, return_exceptions=True)
        if finished:
            return step.result()
        raise TaskCancelled()

    async def sleep(self, delay: float) -> None:
        await self.guard(asyncio.sleep(delay))


class Dispatcher:
    """Runs operations on a bounded pool of workers against an injected connection."""

    def __init__(self, connections: Any, workers: int = DEFAULTS["WORKERS"],
                 retry_limit: int = DEFAULTS["RETRY_LIMIT"],
                 retry_backoff_sec: float = DEFAULTS["RETRY_BACKOFF_SEC"]) -> None:
        self.connections = connections
        self.workers = workers
        self.retry_limit = retry_limit
        self.retry_backoff_sec = retry_backoff_sec

        self._queue: "asyncio.Queue[Task]" = asyncio.Queue()
        self._worker_tasks: List[asyncio.Task] = []
        self._epochs: Dict[str, int] = {}
        self._current: Dict[str, Task] = {}
        self._channels: Dict[str, Deque[Outcome]] = {}
        self._ids = itertools.count(1)
        self._running_count = 0

    @property
    def started(self) -> bool:
        return bool(self._worker_tasks)

    def start(self) -> None:
        """Spawn the worker pool on the running event loop."""
        if self._worker_tasks:
            return
        self._worker_tasks = [asyncio.create_task(self._worker(i), name=f"kvlens-worker-{i}")
                              for i in range(self.workers)]
        log("INFO", "dispatcher", "started", workers=self.workers)

    async def shutdown(self) -> None:
        """Cancel every live task and stop the workers."""
        for task in list(self._current.values()):
            task.cancel_flag.set()
        self._current.clear()
        for worker in self._worker_tasks:
            worker.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []
        log("INFO", "dispatcher", "stopped")

    def submit(self, slot: str, kind: TaskKind, operation: Operation) -> int:
        """Queue `operation` for `slot`, superseding whatever the slot had pending."""
        epoch = self._epochs.get(slot, 0) + 1
        self._epochs[slot] = epoch

        prior = self._current.get(slot)
        if prior is not None and not prior.state.terminal:
            prior.cancel_flag.set()
            log("DEBUG", "dispatcher", "task_superseded", slot=slot, task_id=prior.id, epoch=prior.epoch)

        task = Task(id=next(self._ids), slot=slot, epoch=epoch, kind=kind, operation=operation)
        self._current[slot] = task
        self._queue.put_nowait(task)
        log("DEBUG", "dispatcher", "task_queued", slot=slot, task_id=task.id, epoch=epoch, kind=kind.value)
        return epoch

    def cancel(self, slot: str) -> bool:
        """Invalidate the slot's current epoch; returns True if a live task was cancelled."""
        self._epochs[slot] = self._epochs.get(slot, 0) + 1
        task = self._current.pop(slot, None)
        if task is None or task.state.terminal:
            return False
        task.cancel_flag.set()
        log("DEBUG", "dispatcher", "task_cancel_requested", slot=slot, task_id=task.id, epoch=task.epoch)
        return True

    def current_epoch(self, slot: str) -> int:
        return self._epochs.get(slot, 0)

    def current_task(self, slot: str) -> Optional[Task]:
        task = self._current.get(slot)
        if task is None or task.state.terminal:
            return None
        return task

    def is_current(self, outcome: Outcome) -> bool:
        return outcome.epoch == self.current_epoch(outcome.slot)

    def poll_completed(self) -> Iterator[Outcome]:
        """Drain outcomes delivered so far; never blocks, never yields more than was queued at entry."""
        for slot in list(self._channels):
            channel = self._channels[slot]
            for _ in range(len(channel)):
                yield channel.popleft()

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": self._queue.qsize(),
            "running": self._running_count,
            "live_slots": sorted(s for s, t in self._current.items() if not t.state.terminal),
        }

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._execute(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log("ERROR", "dispatcher", "worker_error", worker=index, task_id=task.id, error=str(e))
                self._deliver(task, TaskState.FAILED, error=ErrorInfo("task.crashed", str(e)))
            finally:
                self._queue.task_done()

    async def _execute(self, task: Task) -> None:
        if task.cancel_flag.is_set():
            task.transition(TaskState.CANCELLED)
            log("DEBUG", "dispatcher", "task_skipped", slot=task.slot, task_id=task.id)
            return

        task.transition(TaskState.RUNNING)
        self._running_count += 1
        ctx = TaskContext(self.connections, task)
        started = time.monotonic()
        try:
            if task.kind is TaskKind.STREAM:
                await self._run_stream(ctx, started)
            else:
                await self._run_once(ctx, started)
        except TaskCancelled:
            task.transition(TaskState.CANCELLED)
            log("DEBUG", "dispatcher", "task_cancelled", slot=task.slot, task_id=task.id, epoch=task.epoch)
        finally:
            self._running_count -= 1

    async def _call(self, ctx: TaskContext) -> Result[Any]:
        try:
            result = await ctx.guard(ctx.task.operation(ctx))
        except TaskCancelled:
            raise
        except Exception as e:
            log("ERROR", "dispatcher", "operation_raised", slot=ctx.task.slot, error=str(e))
            return Result(ok=False, error=ErrorInfo("task.error", str(e) or type(e).__name__))
        if not isinstance(result, Result):
            return Result(ok=True, value=result)
        return result

    async def _run_once(self, ctx: TaskContext, started: float) -> None:
        task = ctx.task
        attempt = 0
        while True:
            result = await self._call(ctx)
            ctx.checkpoint()
            if result.ok:
                self._deliver(task, TaskState.COMPLETED, value=result.value,
                              latency=time.monotonic() - started)
                return

            if task.kind is TaskKind.READ and is_transient(result.error) and attempt < self.retry_limit:
                delay = self.retry_backoff_sec * (2 ** attempt)
                attempt += 1
                log("WARN", "dispatcher", "task_retry", slot=task.slot, task_id=task.id,
                    attempt=attempt, delay=delay, error=result.error.message)
                await ctx.sleep(delay)
                continue

            self._deliver(task, TaskState.FAILED, error=result.error,
                          latency=time.monotonic() - started)
            return

    async def _run_stream(self, ctx: TaskContext, started: float) -> None:
        task = ctx.task
        opened = await self._call(ctx)
        if not opened.ok:
            self._deliver(task, TaskState.FAILED, error=opened.error, latency=time.monotonic() - started)
            return

        handle = opened.value
        try:
            while True:
                try:
                    item = await ctx.guard(handle.__anext__())
                except StopAsyncIteration:
                    break
                except StreamError as e:
                    self._deliver(task, TaskState.FAILED, error=e.error)
                    return
                self._deliver(task, TaskState.COMPLETED, value=item, partial=True)

            # The backend ended the stream; the user has to resubmit.
            self._deliver(task, TaskState.FAILED,
                          error=ErrorInfo("connection.stream_closed", "Stream closed by server"))
        finally:
            await handle.close()

    def _deliver(self, task: Task, state: TaskState, value: Any = None,
                 error: Optional[ErrorInfo] = None, partial: bool = False, latency: float = 0.0) -> None:
        if task.cancel_flag.is_set():
            if not partial:
                task.transition(TaskState.CANCELLED)
            log("DEBUG", "dispatcher", "outcome_dropped", slot=task.slot, task_id=task.id, epoch=task.epoch)
            return

        if not partial:
            if not task.transition(state):
                return
            if self._current.get(task.slot) is task:
                del self._current[task.slot]
            log("DEBUG" if state is TaskState.COMPLETED else "WARN", "dispatcher", f"task_{state.value}",
                slot=task.slot, task_id=task.id, epoch=task.epoch,
                error=error.message if error else None, latency=round(latency, 4))

        outcome = Outcome(slot=task.slot, epoch=task.epoch, task_id=task.id, state=state,
                          value=value, error=error, partial=partial, latency=latency)
        self._channels.setdefault(task.slot, deque()).append(outcome)
