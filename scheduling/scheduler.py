"""
Resource Scheduler: Task Scheduler

Holds the pending queue, enforces the concurrency ceiling, gates tasks
on their dependencies, reserves resources through the ledger and drives
every task transition, including retry with backoff and preemption.

One scheduling pass (``tick``) does, in order:
  1. sweep expired reservations; their running owners fail the attempt
  2. cancel running tasks past their deadline, fail pending ones
     (insufficient_capacity if capacity was what held them back)
  3. flag running tasks that overrun estimated_duration × safety factor
  4. dispatch ready tasks by priority, preempting for critical work

The background loop (``start``/``stop``) calls ``tick`` on a fixed
interval from a daemon thread. Task actions run on the executor, never
under the scheduler lock; their outcomes come back through ``report``.

Usage:
    ledger = ReservationLedger([ResourcePool("compute", ResourceKind.COMPUTE, 8)])
    scheduler = TaskScheduler(ledger, SchedulerSettings(max_concurrent=4))
    scheduler.start()
    task_id = scheduler.submit(Task(name="scan", requirements=[("compute", 2)], action=run_scan))
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, fields as dataclass_fields
from typing import Any, Callable, Iterable

from scheduling.errors import (
    CANCELLED_BY_CALLER,
    EXECUTION_ERROR,
    PREEMPTED,
    DeadlineExceeded,
    DependencyUnsatisfiable,
    InsufficientCapacity,
    RetriesExhausted,
    SchedulingError,
    UnknownTask,
)
from scheduling.events import EventSink, EventType, SchedulerEvent, make_event, null_sink
from scheduling.executors import TaskExecutor, TaskRun, create_executor
from scheduling.ledger import ReservationLedger
from scheduling.store import CheckpointStore
from scheduling.tasks import RetryPolicy, Task, TaskContext
from scheduling.types import Priority, TaskStatus

logger = logging.getLogger("resource_scheduler.scheduler")

TerminalCallback = Callable[[Task], None]


# ═══════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class SchedulerSettings:
    """Tunables for the scheduling loop. Loaded from the ``scheduler`` config section."""
    tick_interval_seconds: float = 2.0
    max_concurrent: int = 8
    requeue_delay_seconds: float = 1.0
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0
    overrun_safety_factor: float = 1.5
    reservation_ttl_factor: float = 3.0
    min_reservation_ttl_seconds: float = 30.0
    executor: str = "thread"
    max_workers: int = 8

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
        )

    def reservation_ttl(self, task: Task) -> float:
        return max(task.estimated_duration * self.reservation_ttl_factor,
                   self.min_reservation_ttl_seconds)

    @classmethod
    def from_config(cls, section: dict[str, Any] | None) -> SchedulerSettings:
        """Build from a config dict; unknown keys are ignored with a warning."""
        section = dict(section or {})
        known = {f.name: f for f in dataclass_fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in section.items():
            if key not in known:
                logger.warning("Ignoring unknown scheduler setting %r", key)
                continue
            default = known[key].default
            kwargs[key] = type(default)(value) if default is not None else value
        return cls(**kwargs)


# ═══════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════

class TaskScheduler:
    """
    Single-writer owner of all task records.

    Every mutation of the task arena and the pending queue happens under
    one re-entrant lock. Events and terminal callbacks are queued while
    the lock is held and delivered after it is released, so callbacks
    may call back into ``submit``/``cancel``.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        settings: SchedulerSettings | None = None,
        executor: TaskExecutor | None = None,
        events: EventSink | None = None,
        store: CheckpointStore | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.ledger = ledger
        self.settings = settings or SchedulerSettings()
        self.executor = executor or create_executor(
            self.settings.executor, self.settings.max_workers,
        )
        self.store = store
        self._events = events or null_sink
        self._clock = clock or time.time
        self._retry = self.settings.retry_policy

        self._lock = threading.RLock()
        self._terminal = threading.Condition(self._lock)
        self._tasks: dict[str, Task] = {}
        self._pending: set[str] = set()
        self._running: set[str] = set()
        self._dependents: dict[str, set[str]] = {}
        self._callbacks: dict[str, TerminalCallback] = {}
        self._contexts: dict[str, TaskContext] = {}
        self._outbox: list[Any] = []
        self._seq = itertools.count(1)

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: float | None = None

    # ─── Public API ──────────────────────────────────────────────

    def submit(self, task: Task, on_terminal: TerminalCallback | None = None) -> str:
        """
        Enqueue a task as pending. Non-blocking.

        Raises UnknownPool for requirements on unregistered pools,
        InsufficientCapacity when a requirement exceeds the pool's total
        capacity (it could never run), UnknownTask for unknown
        dependencies. ``on_terminal`` is called once, outside the
        scheduler lock, when the task reaches a terminal state.
        """
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already submitted")
            if task.status != TaskStatus.PENDING:
                raise ValueError(f"Task {task.task_id} must be pending to submit")
            self._validate_requirements(task)
            for dep in task.depends_on:
                if dep not in self._tasks:
                    raise UnknownTask(f"Task {task.name!r} depends on unknown task {dep!r}")

            now = self._clock()
            task.created_at = task.created_at or now
            task.seq = next(self._seq)
            self._tasks[task.task_id] = task
            self._pending.add(task.task_id)
            for dep in task.depends_on:
                self._dependents.setdefault(dep, set()).add(task.task_id)
            if on_terminal is not None:
                self._callbacks[task.task_id] = on_terminal

            self._emit(EventType.TASK_SUBMITTED, task, now,
                       name=task.name, priority=task.priority.value,
                       depends_on=list(task.depends_on))
            self._checkpoint(task)

            for dep in task.depends_on:
                dep_task = self._tasks[dep]
                if dep_task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                    self._fail_locked(
                        task, DependencyUnsatisfiable.code,
                        f"Dependency {dep} ({dep_task.name}) is {dep_task.status.value}",
                        now,
                    )
                    break
        self._flush()
        return task.task_id

    def cancel(self, task_id: str, reason: str = "") -> None:
        """
        Cancel a task. Pending tasks leave the queue; running tasks lose
        their reservations and their attempt is signalled. Terminal
        tasks are left alone. Raises UnknownTask.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise UnknownTask(f"Unknown task {task_id!r}")
            if not task.is_terminal:
                self._cancel_locked(task, reason or "cancelled by caller",
                                    CANCELLED_BY_CALLER, self._clock())
        self._flush()

    def report(
        self,
        task_id: str,
        run_token: int,
        result: Any = None,
        error: BaseException | None = None,
    ) -> None:
        """
        Completion channel for executors.

        Reports for attempts that were since cancelled, preempted or
        timed out are ignored.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if (task is None or task.status != TaskStatus.RUNNING
                    or task.run_token != run_token):
                logger.debug("Ignoring stale report for %s (token %d)", task_id, run_token)
                return
            now = self._clock()
            if error is None:
                self._complete_locked(task, result, now)
            else:
                code = error.code if isinstance(error, SchedulingError) else EXECUTION_ERROR
                self._attempt_failed_locked(
                    task, f"{type(error).__name__}: {error}", code, now,
                )
        self._flush()

    def tick(self, now: float | None = None) -> int:
        """Run one scheduling pass. Returns the number of tasks started."""
        launches: list[TaskRun] = []
        with self._lock:
            now = self._clock() if now is None else now
            self._tick_count += 1
            self._last_tick = now
            self._sweep_reservations_locked(now)
            self._enforce_deadlines_locked(now)
            self._inspect_overruns_locked(now)
            launches = self._dispatch_locked(now)
        self._flush()
        for run in launches:
            self.executor.launch(run, self.report)
        self._flush()
        return len(launches)

    # ─── Background Loop ─────────────────────────────────────────

    def start(self) -> None:
        """Start ticking every ``tick_interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Scheduler loop already started")
            return
        interval = self.settings.tick_interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("Scheduler loop started (interval=%ss)", interval)
            while not self._stop_event.wait(interval):
                try:
                    self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
            logger.info("Scheduler loop stopped")

        self._thread = threading.Thread(target=_loop, name="rs_scheduler", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True, shutdown_executor: bool = True) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self.settings.tick_interval_seconds * 2))
            self._thread = None
        if shutdown_executor:
            self.executor.shutdown(wait=wait)

    @property
    def is_looping(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ─── Queries ─────────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        """The live task record. Treat as read-only."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise UnknownTask(f"Unknown task {task_id!r}")
            return task

    def tasks(self, status: TaskStatus | None = None) -> list[Task]:
        with self._lock:
            records = sorted(self._tasks.values(), key=lambda t: t.seq)
        if status:
            records = [t for t in records if t.status == status]
        return records

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    def wait(self, task_ids: Iterable[str], timeout: float | None = None) -> bool:
        """Block until every task is terminal. Returns False on timeout."""
        ids = list(task_ids)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._terminal:
            while not all(self._tasks[i].is_terminal for i in ids if i in self._tasks):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._terminal.wait(remaining)
            return True

    def stats(self) -> dict[str, Any]:
        with self._lock:
            by_status = {s.value: 0 for s in TaskStatus}
            for t in self._tasks.values():
                by_status[t.status.value] += 1
            return {
                "tasks": by_status,
                "pending": len(self._pending),
                "running": len(self._running),
                "max_concurrent": self.settings.max_concurrent,
                "tick_count": self._tick_count,
                "last_tick": self._last_tick,
                "loop_alive": self.is_looping,
                "executor": self.executor.name,
                "utilization": self.ledger.utilization(),
            }

    # ─── Tick Phases ─────────────────────────────────────────────

    def _sweep_reservations_locked(self, now: float) -> None:
        expired = self.ledger.sweep_expired(now)
        owners = dict.fromkeys(r.owner for r in expired if r.owner)
        for owner in owners:
            task = self._tasks.get(owner)
            if task is None or task.status != TaskStatus.RUNNING:
                continue
            self._attempt_failed_locked(
                task, "Reservation expired before the task finished",
                DeadlineExceeded.code, now,
            )

    def _enforce_deadlines_locked(self, now: float) -> None:
        for task_id in sorted(self._running):
            task = self._tasks[task_id]
            if task.deadline is not None and now > task.deadline:
                self._cancel_locked(task, "Deadline exceeded while running",
                                    DeadlineExceeded.code, now)
        for task_id in sorted(self._pending):
            task = self._tasks[task_id]
            if task.status != TaskStatus.PENDING or task.deadline is None or now <= task.deadline:
                continue
            if task.error_code == InsufficientCapacity.code:
                # Last dispatch attempt was deferred for lack of capacity
                self._fail_locked(task, InsufficientCapacity.code,
                                  f"Deadline passed while waiting for capacity: {task.error}", now)
            else:
                self._fail_locked(task, DeadlineExceeded.code,
                                  "Deadline passed before the task could start", now)

    def _inspect_overruns_locked(self, now: float) -> None:
        factor = self.settings.overrun_safety_factor
        for task_id in sorted(self._running):
            task = self._tasks[task_id]
            if task.overdue or task.started_at is None:
                continue
            if now - task.started_at > task.estimated_duration * factor:
                task.overdue = True
                logger.warning("Task %s (%s) overrunning: %.1fs elapsed, estimate %.1fs",
                               task.task_id, task.name, now - task.started_at,
                               task.estimated_duration)
                self._emit(EventType.TASK_OVERRUN, task, now,
                           elapsed=now - task.started_at,
                           estimated_duration=task.estimated_duration)

    def _dispatch_locked(self, now: float) -> list[TaskRun]:
        ready = sorted(
            (self._tasks[i] for i in self._pending if self._is_ready(self._tasks[i], now)),
            key=lambda t: t.queue_key(),
        )
        launches: list[TaskRun] = []
        for task in ready:
            if task.status != TaskStatus.PENDING:
                continue
            if len(self._running) >= self.settings.max_concurrent:
                # Candidates are priority-ordered: nothing behind a blocked one can do better
                if task.priority != Priority.CRITICAL or self._pick_victim(task, now) is None:
                    break
            if not self._try_reserve_locked(task, now):
                continue
            if len(self._running) >= self.settings.max_concurrent:
                victim = self._pick_victim(task, now)
                if victim is None:
                    self._release_locked(task, now)
                    task.not_before = now + self.settings.requeue_delay_seconds
                    continue
                self._preempt_locked(victim, task, now)
            launches.append(self._start_locked(task, now))
        return launches

    def _is_ready(self, task: Task, now: float) -> bool:
        if task.not_before > now:
            return False
        return all(self._tasks[d].status == TaskStatus.COMPLETED for d in task.depends_on)

    def _pick_victim(self, task: Task, now: float) -> Task | None:
        """Running lower-priority task with the most estimated time remaining."""
        candidates = [
            self._tasks[i] for i in self._running
            if self._tasks[i].priority.rank < task.priority.rank
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: (t.remaining_estimate(now), -t.priority.rank, -t.seq))

    def _try_reserve_locked(self, task: Task, now: float) -> bool:
        if not task.requirements:
            return True
        try:
            grant = self.ledger.reserve_all(
                task.requirements,
                task.priority,
                self.settings.reservation_ttl(task),
                metadata={
                    "task_id": task.task_id,
                    "correlation_id": task.correlation_id,
                    "purpose": task.name,
                },
                now=now,
            )
        except InsufficientCapacity as e:
            # Once past the deadline, the next tick fails the task with this code
            task.error = str(e)
            task.error_code = e.code
            task.not_before = now + self.settings.requeue_delay_seconds
            self._emit(EventType.TASK_DEFERRED, task, now,
                       pool_id=e.pool_id, reason=str(e),
                       retry_at=task.not_before)
            return False

        task.reservation_ids = list(grant.reservation_ids)
        for owner in grant.reclaimed_owners:
            victim = self._tasks.get(owner)
            if victim is not None and victim.status == TaskStatus.RUNNING:
                self._preempt_locked(victim, task, now)
        return True

    # ─── Transitions ─────────────────────────────────────────────

    def _start_locked(self, task: Task, now: float) -> TaskRun:
        self._pending.discard(task.task_id)
        task.transition(TaskStatus.RUNNING, now)
        self._running.add(task.task_id)
        ctx = TaskContext(
            task_id=task.task_id,
            name=task.name,
            attempt=task.attempts,
            correlation_id=task.correlation_id,
            metadata=dict(task.metadata),
        )
        self._contexts[task.task_id] = ctx
        self._emit(EventType.TASK_STARTED, task, now,
                   name=task.name, attempt=task.attempts,
                   retry_count=task.retry_count,
                   reservation_ids=list(task.reservation_ids))
        self._checkpoint(task)
        return TaskRun(task_id=task.task_id, run_token=task.run_token,
                       action=task.action, context=ctx)

    def _complete_locked(self, task: Task, result: Any, now: float) -> None:
        self._stop_attempt_locked(task, now)
        task.result = result
        task.error = None
        task.error_code = None
        task.transition(TaskStatus.COMPLETED, now)
        self._emit(EventType.TASK_COMPLETED, task, now,
                   name=task.name, attempts=task.attempts)
        self._checkpoint(task)
        self._on_terminal_locked(task, now)

    def _attempt_failed_locked(self, task: Task, message: str, code: str, now: float) -> None:
        self._stop_attempt_locked(task, now)
        task.error = message
        task.error_code = code
        if task.retry_count < task.max_retries:
            delay = self._retry.compute_delay(task.retry_count)
            task.retry_count += 1
            task.transition(TaskStatus.PENDING, now)
            task.not_before = now + delay
            self._pending.add(task.task_id)
            self._emit(EventType.TASK_RETRY, task, now,
                       name=task.name, retry_count=task.retry_count,
                       delay=delay, error=message, error_code=code)
            self._checkpoint(task)
            return

        task.error = f"Retries exhausted after {task.attempts} attempt(s): {message}"
        task.error_code = RetriesExhausted.code
        task.transition(TaskStatus.FAILED, now)
        logger.warning("Task %s (%s) failed permanently: %s", task.task_id, task.name, message)
        self._emit(EventType.TASK_FAILED, task, now,
                   name=task.name, error=task.error, error_code=task.error_code,
                   attempts=task.attempts)
        self._checkpoint(task)
        self._on_terminal_locked(task, now)

    def _fail_locked(self, task: Task, code: str, message: str, now: float) -> None:
        if task.status == TaskStatus.RUNNING:
            self._stop_attempt_locked(task, now)
        self._pending.discard(task.task_id)
        task.error = message
        task.error_code = code
        task.transition(TaskStatus.FAILED, now)
        self._emit(EventType.TASK_FAILED, task, now,
                   name=task.name, error=message, error_code=code,
                   attempts=task.attempts)
        self._checkpoint(task)
        self._on_terminal_locked(task, now)

    def _cancel_locked(self, task: Task, reason: str, code: str, now: float) -> None:
        if task.status == TaskStatus.RUNNING:
            self._stop_attempt_locked(task, now)
        self._pending.discard(task.task_id)
        task.error = reason
        task.error_code = code
        task.transition(TaskStatus.CANCELLED, now)
        self._emit(EventType.TASK_CANCELLED, task, now,
                   name=task.name, reason=reason, error_code=code)
        self._checkpoint(task)
        self._on_terminal_locked(task, now)

    def _preempt_locked(self, victim: Task, by: Task, now: float) -> None:
        """Stop a running task and put it back at the front of its tier."""
        self._stop_attempt_locked(victim, now)
        victim.transition(TaskStatus.PENDING, now)
        victim.front = True
        victim.error = f"Preempted by {by.task_id}"
        victim.error_code = PREEMPTED
        victim.not_before = now
        self._pending.add(victim.task_id)
        logger.info("Preempted %s (%s) for %s (%s)",
                    victim.task_id, victim.priority.value, by.task_id, by.priority.value)
        self._emit(EventType.TASK_PREEMPTED, victim, now,
                   name=victim.name, preempted_by=by.task_id,
                   preempted_by_priority=by.priority.value,
                   retry_count=victim.retry_count)
        self._checkpoint(victim)

    def _stop_attempt_locked(self, task: Task, now: float) -> None:
        self._running.discard(task.task_id)
        ctx = self._contexts.pop(task.task_id, None)
        if ctx is not None:
            ctx.cancelled.set()
        self._release_locked(task, now)

    def _release_locked(self, task: Task, now: float) -> None:
        for reservation_id in task.reservation_ids:
            self.ledger.release(reservation_id, now=now)
        task.reservation_ids = []

    def _on_terminal_locked(self, task: Task, now: float) -> None:
        callback = self._callbacks.pop(task.task_id, None)
        if callback is not None:
            self._outbox.append((callback, task))
        self._terminal.notify_all()
        if task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            for dep_id in sorted(self._dependents.get(task.task_id, ())):
                dependent = self._tasks[dep_id]
                if dependent.status == TaskStatus.PENDING:
                    self._fail_locked(
                        dependent, DependencyUnsatisfiable.code,
                        f"Dependency {task.task_id} ({task.name}) is {task.status.value}",
                        now,
                    )

    # ─── Plumbing ────────────────────────────────────────────────

    def _validate_requirements(self, task: Task) -> None:
        demand: dict[str, int] = {}
        for req in task.requirements:
            self.ledger.get_pool(req.pool_id)
            demand[req.pool_id] = demand.get(req.pool_id, 0) + req.amount
        for pool_id, amount in demand.items():
            pool = self.ledger.get_pool(pool_id)
            if amount > pool.capacity:
                raise InsufficientCapacity(pool_id, amount, pool.capacity)

    def _emit(self, event_type: EventType, task: Task, now: float, **fields: Any) -> None:
        self._outbox.append(make_event(
            event_type, task.correlation_id, now,
            task_id=task.task_id, status=task.status.value, **fields,
        ))

    def _checkpoint(self, task: Task) -> None:
        if self.store is not None:
            self.store.save_task(task.to_checkpoint())

    def _flush(self) -> None:
        """Deliver queued events and callbacks outside the lock."""
        while True:
            with self._lock:
                if not self._outbox:
                    return
                items, self._outbox = self._outbox, []
            for item in items:
                if isinstance(item, SchedulerEvent):
                    self._events(item)
                    continue
                callback, task = item
                try:
                    callback(task)
                except Exception:
                    logger.exception("on_terminal callback failed for task %s", task.task_id)
