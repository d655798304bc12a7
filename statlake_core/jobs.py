"""Background task queue with retry, backoff and staggered dispatch.

:class:`SchedulerJobQueue` runs tasks on an APScheduler ``BackgroundScheduler``
thread pool using one-shot ``date`` triggers; :class:`InlineJobQueue` runs them
synchronously (CLI and tests).
"""
from __future__ import annotations
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from .config import JobConfig

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    tries: int = 3
    backoff: Sequence[float] = (60, 300, 600)
    timeout: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed ``attempt`` (1-based)."""
        if not self.backoff:
            return 0.0
        return float(self.backoff[min(attempt, len(self.backoff)) - 1])

    @classmethod
    def from_config(cls, cfg: JobConfig, timeout: Optional[float] = None) -> "RetryPolicy":
        return cls(tries=cfg.tries, backoff=tuple(cfg.backoff), timeout=timeout)


@dataclass
class Task:
    name: str
    func: Callable[..., Any]
    args: Tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    on_failure: Optional[Callable[[BaseException], None]] = None
    attempt: int = 1


class JobQueue:
    """Shared retry and timeout handling; subclasses decide when a task runs."""

    def enqueue(self, name: str, func: Callable[..., Any], *args, delay: float = 0,
                retry: Optional[RetryPolicy] = None,
                on_failure: Optional[Callable[[BaseException], None]] = None, **kwargs) -> Task:
        task = Task(name, func, args, kwargs, retry or RetryPolicy(), on_failure)
        self._schedule(task, delay)
        return task

    def _schedule(self, task: Task, delay: float) -> None:
        raise NotImplementedError

    def _execute(self, task: Task) -> bool:
        started = time.monotonic()
        try:
            task.func(*task.args, **task.kwargs)
            return True
        except Exception as e:
            if task.attempt < task.retry.tries:
                delay = task.retry.delay_for(task.attempt)
                logger.warning(
                    f"Task {task.name} failed (attempt {task.attempt}/{task.retry.tries}), "
                    f"retrying in {delay}s: {e}"
                )
                task.attempt += 1
                self._schedule(task, delay)
                return False
            logger.error(f"Task {task.name} failed permanently after {task.attempt} tries: {e}", exc_info=True)
            if task.on_failure is not None:
                task.on_failure(e)
            return False
        finally:
            elapsed = time.monotonic() - started
            if task.retry.timeout and elapsed > task.retry.timeout:
                logger.warning(f"Task {task.name} ran {elapsed:.1f}s, over its {task.retry.timeout}s budget")


class SchedulerJobQueue(JobQueue):
    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, max_workers: int = 4):
        self.scheduler = scheduler or BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers)},
            timezone='UTC',
        )
        self._owns_scheduler = scheduler is None

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    def _schedule(self, task: Task, delay: float) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.scheduler.add_job(
            self._execute,
            'date',
            run_date=run_date,
            args=[task],
            id=f"{task.name}:{task.attempt}:{uuid.uuid4().hex[:8]}",
            misfire_grace_time=None,
        )
        logger.debug(f"Scheduled {task.name} attempt {task.attempt} in {delay}s")


class InlineJobQueue(JobQueue):
    """Run tasks in the caller's thread, ignoring delays.

    With ``defer=True`` tasks are only collected until :meth:`run_pending`,
    which lets callers choose the execution order.
    """

    def __init__(self, defer: bool = False):
        self.defer = defer
        self.pending: List[Task] = []
        self.delays: List[Tuple[str, float]] = []

    def _schedule(self, task: Task, delay: float) -> None:
        self.delays.append((task.name, delay))
        if self.defer:
            self.pending.append(task)
        else:
            self._execute(task)

    def run_pending(self, order: Optional[Callable[[List[Task]], List[Task]]] = None) -> int:
        """Execute collected tasks until none are left.

        Tasks enqueued while running (dispatched chunks, retries) are collected
        and run in a later round, each round ordered by ``order``.
        """
        ran = 0
        while self.pending:
            batch = order(self.pending) if order else list(self.pending)
            self.pending = []
            for task in batch:
                self._execute(task)
                ran += 1
        return ran
