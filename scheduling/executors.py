"""
Resource Scheduler: Task Executors

Pluggable backends that run task actions once the scheduler has granted
their resources:
  - InlineTaskExecutor: synchronous, in the caller's thread (dev/testing)
  - ThreadPoolTaskExecutor: bounded ThreadPoolExecutor (default)

Executors never touch scheduler state directly. Each run ends with one
call to the ``report`` callback the scheduler passed to ``launch``; the
scheduler discards reports from attempts it has since cancelled or
preempted.

The backend is selected by the ``scheduler.executor`` config key or the
RS_EXECUTOR env var: ``inline`` or ``thread``.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from scheduling.tasks import TaskAction, TaskContext

logger = logging.getLogger("resource_scheduler.executors")

ReportFn = Callable[..., None]


@dataclass
class TaskRun:
    """One attempt of one task, as handed to an executor."""
    task_id: str
    run_token: int
    action: TaskAction | None
    context: TaskContext


def execute_run(run: TaskRun, report: ReportFn) -> None:
    """Run an attempt's action and report the outcome exactly once."""
    try:
        result = run.action(run.context) if run.action is not None else None
    except Exception as e:
        logger.warning("Task %s attempt %d raised %s: %s",
                       run.task_id, run.context.attempt, type(e).__name__, e)
        report(run.task_id, run.run_token, error=e)
        return
    report(run.task_id, run.run_token, result=result)


# ═══════════════════════════════════════════════════════════════════
# Executor Interface
# ═══════════════════════════════════════════════════════════════════

class TaskExecutor:
    """Abstract interface for running task attempts."""

    name = "abstract"

    def launch(self, run: TaskRun, report: ReportFn) -> None:
        """Start an attempt. Must not block on the action in async backends."""
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown."""
        pass


class InlineTaskExecutor(TaskExecutor):
    """Runs the action synchronously inside ``launch``."""

    name = "inline"

    def launch(self, run: TaskRun, report: ReportFn) -> None:
        execute_run(run, report)


class ThreadPoolTaskExecutor(TaskExecutor):
    """
    Runs actions on a bounded thread pool.

    ``max_workers`` should be at least the scheduler's concurrency
    ceiling, otherwise granted tasks wait for a worker thread while
    holding their reservations.
    """

    name = "thread"

    def __init__(self, max_workers: int = 8):
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="rs_worker",
        )
        logger.info("ThreadPoolTaskExecutor started: max_workers=%d", max_workers)

    def launch(self, run: TaskRun, report: ReportFn) -> None:
        self._pool.submit(execute_run, run, report)

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Shutting down ThreadPoolTaskExecutor...")
        self._pool.shutdown(wait=wait, cancel_futures=not wait)


# ═══════════════════════════════════════════════════════════════════
# Executor Factory
# ═══════════════════════════════════════════════════════════════════

def create_executor(mode: str | None = None, max_workers: int = 8) -> TaskExecutor:
    """
    Create the executor backend.

    Mode selection: explicit ``mode`` or RS_EXECUTOR, default ``thread``.
    """
    mode = (mode or os.environ.get("RS_EXECUTOR", "thread")).lower()
    if mode == "inline":
        logger.info("Task executor: InlineTaskExecutor (synchronous)")
        return InlineTaskExecutor()
    if mode == "thread":
        return ThreadPoolTaskExecutor(max_workers=max_workers)
    raise ValueError(f"Unknown executor mode {mode!r}; expected 'inline' or 'thread'")
