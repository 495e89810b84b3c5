"""Bounded concurrent batch execution with cooperative cancellation."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class CancellationToken:
    """
    Cooperative stop signal shared by a project's run.

    Checked at batch boundaries: once set, no new batch is extracted or
    handed to the pool. A stronger reason replaces a weaker one
    (fail > cancel > pause).
    """

    PAUSE = "pause"
    CANCEL = "cancel"
    FAIL = "fail"

    _PRIORITY = {PAUSE: 1, CANCEL: 2, FAIL: 3}

    def __init__(self):
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self.detail: str = ""

    def request(self, reason: str, detail: str = "") -> None:
        if reason not in self._PRIORITY:
            raise ValueError(f"Unknown cancellation reason: {reason}")
        with self._lock:
            if self._reason is None or self._PRIORITY[reason] > self._PRIORITY[self._reason]:
                self._reason = reason
                self.detail = detail

    @property
    def is_set(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason


@dataclass
class TaskOutcome:
    """What happened to one submitted task."""
    index: int
    ok: bool = False
    result: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False


class BatchPool:
    """
    Runs at most ``limit`` tasks at once.

    ``submit`` waits while the pool is full, which throttles whoever is
    producing work (the extractor). Waiting submitters are admitted in FIFO
    order. A failing task is captured as an outcome and never cancels its
    siblings.
    """

    def __init__(self, limit: int, max_limit: Optional[int] = None):
        """
        Initialize the pool.

        Args:
            limit: Requested concurrency
            max_limit: Hard ceiling applied to ``limit``
        """
        if max_limit is not None:
            limit = min(limit, max_limit)
        self.limit = max(1, limit)
        self._semaphore = asyncio.Semaphore(self.limit)
        self._tasks: Set[asyncio.Task] = set()
        self._outcomes: List[TaskOutcome] = []
        self._submitted = 0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def submit(
        self,
        factory: TaskFactory,
        token: Optional[CancellationToken] = None
    ) -> Optional[asyncio.Task]:
        """
        Start a task once a slot is free.

        Args:
            factory: Zero-argument coroutine factory
            token: If set while waiting for a slot, the task is not started

        Returns:
            The running task, or None if the token was set before it started
        """
        await self._semaphore.acquire()
        if token is not None and token.is_set:
            self._semaphore.release()
            return None

        index = self._submitted
        self._submitted += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

        task = asyncio.create_task(self._run(index, factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, index: int, factory: TaskFactory) -> TaskOutcome:
        try:
            result = await factory()
            outcome = TaskOutcome(index=index, ok=True, result=result)
        except Exception as exc:
            logger.debug(f"Pool task {index} failed: {exc}")
            outcome = TaskOutcome(index=index, ok=False, error=exc)
        finally:
            self.in_flight -= 1
            self._semaphore.release()
        self._outcomes.append(outcome)
        return outcome

    async def drain(self) -> List[TaskOutcome]:
        """Wait for every submitted task; returns all outcomes in submission order."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        return sorted(self._outcomes, key=lambda o: o.index)

    @property
    def pending(self) -> int:
        return len(self._tasks)


async def run_concurrent(
    factories: List[TaskFactory],
    limit: int,
    token: Optional[CancellationToken] = None,
    max_limit: Optional[int] = None
) -> List[TaskOutcome]:
    """
    Run task factories with bounded concurrency.

    Args:
        factories: Zero-argument coroutine factories, started in list order
        limit: Maximum tasks in flight
        token: Optional cancellation token; tasks not started once it is set
            come back as skipped
        max_limit: Hard ceiling applied to ``limit``

    Returns:
        One TaskOutcome per factory, in input order. Failures are collected,
        never raised.
    """
    pool = BatchPool(limit, max_limit)
    started = {}
    for position, factory in enumerate(factories):
        task = await pool.submit(factory, token)
        if task is None:
            break
        started[position] = task

    outcomes = []
    for position in range(len(factories)):
        task = started.get(position)
        if task is None:
            outcomes.append(TaskOutcome(index=position, skipped=True))
        else:
            outcome = await task
            outcomes.append(TaskOutcome(
                index=position,
                ok=outcome.ok,
                result=outcome.result,
                error=outcome.error,
            ))
    return outcomes
