"""
Resource Scheduler: Tasks

A task is one unit of work with resource requirements, a priority,
dependencies, an optional deadline and a retry budget. Its lifecycle is
a small explicit state machine:

    pending ──► running ──► completed
       │           │──────► failed      (retries exhausted)
       │           │──────► pending     (retry with backoff, or preempted)
       │           └──────► cancelled
       ├──────────────────► failed      (dependency failed, deadline passed)
       └──────────────────► cancelled

Only the scheduler drives transitions; ``Task.transition`` rejects
anything not in the table.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from scheduling.errors import InvalidTransition
from scheduling.types import (
    Priority,
    ResourceRequirement,
    TaskStatus,
    TERMINAL_TASK_STATES,
    new_id,
)


TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED, TaskStatus.FAILED,
        TaskStatus.PENDING, TaskStatus.CANCELLED,
    },
}


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in TASK_TRANSITIONS.get(from_status, set())


# ═══════════════════════════════════════════════════════════════════
# Retry Backoff
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Exponential backoff between attempts: ``base * 2^retry_count``, capped."""
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0

    def compute_delay(self, retry_count: int) -> float:
        """Delay before the retry that follows ``retry_count`` earlier retries."""
        return min(self.base_delay_seconds * (2 ** retry_count), self.max_delay_seconds)


# ═══════════════════════════════════════════════════════════════════
# Execution Context
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TaskContext:
    """
    Handed to a task's action for one attempt.

    ``cancelled`` is set when the attempt is cancelled or preempted.
    Long-running actions should poll ``is_cancelled()``; the scheduler
    ignores whatever a cancelled attempt eventually reports.
    """
    task_id: str
    name: str
    attempt: int
    correlation_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    cancelled: threading.Event = field(default_factory=threading.Event)

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


TaskAction = Callable[[TaskContext], Any]


# ═══════════════════════════════════════════════════════════════════
# Task Record
# ═══════════════════════════════════════════════════════════════════

def _coerce_requirement(req: Any) -> ResourceRequirement:
    if isinstance(req, ResourceRequirement):
        return req
    if isinstance(req, dict):
        return ResourceRequirement(pool_id=req["pool_id"], amount=int(req["amount"]))
    pool_id, amount = req
    return ResourceRequirement(pool_id=pool_id, amount=int(amount))


@dataclass
class Task:
    """Scheduler-owned record of one unit of work."""
    name: str
    requirements: list[ResourceRequirement] = field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    estimated_duration: float = 60.0
    deadline: float | None = None
    depends_on: list[str] = field(default_factory=list)
    max_retries: int = 0
    action: TaskAction | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=lambda: new_id("task"))
    correlation_id: str = ""

    # Lifecycle
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    attempts: int = 0
    created_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None
    reservation_ids: list[str] = field(default_factory=list)

    # Outcome
    result: Any = None
    error: str | None = None
    error_code: str | None = None

    # Queue bookkeeping
    not_before: float = 0.0
    run_token: int = 0
    front: bool = False
    overdue: bool = False
    seq: int = 0

    def __post_init__(self):
        self.priority = Priority.parse(self.priority)
        self.status = TaskStatus(self.status)
        self.requirements = [_coerce_requirement(r) for r in self.requirements]
        self.depends_on = list(dict.fromkeys(self.depends_on))
        if self.max_retries < 0:
            raise ValueError(f"Task {self.name!r}: max_retries must be >= 0")
        if self.estimated_duration < 0:
            raise ValueError(f"Task {self.name!r}: estimated_duration must be >= 0")
        if not self.correlation_id:
            self.correlation_id = self.task_id

    # ─── State Machine ───────────────────────────────────────────

    def transition(self, to: TaskStatus, now: float | None = None) -> None:
        """Apply a transition. Raises InvalidTransition if not allowed."""
        now = time.time() if now is None else now
        if not can_transition(self.status, to):
            allowed = TASK_TRANSITIONS.get(self.status, set())
            raise InvalidTransition(
                f"Task {self.task_id}: {self.status.value} → {to.value} is not allowed. "
                f"Valid transitions: {sorted(s.value for s in allowed)}"
            )
        self.status = to
        if to == TaskStatus.RUNNING:
            self.started_at = now
            self.attempts += 1
            self.run_token += 1
            self.overdue = False
            self.front = False
        elif to == TaskStatus.PENDING:
            self.started_at = None
        elif to in TERMINAL_TASK_STATES:
            self.completed_at = now

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATES

    def remaining_estimate(self, now: float) -> float:
        """Estimated seconds left for a running task (negative when overrunning)."""
        if self.started_at is None:
            return self.estimated_duration
        return self.started_at + self.estimated_duration - now

    def queue_key(self) -> tuple:
        """
        Dispatch order among ready tasks: priority, preempted-first,
        earliest deadline, creation time, submission order.
        """
        return (
            -self.priority.rank,
            0 if self.front else 1,
            self.deadline if self.deadline is not None else math.inf,
            self.created_at,
            self.seq,
        )

    # ─── Checkpoints ─────────────────────────────────────────────

    def to_checkpoint(self) -> dict[str, Any]:
        """JSON-safe persistence record (the action is not persisted)."""
        return {
            "task_id": self.task_id,
            "name": self.name,
            "priority": self.priority.value,
            "requirements": [
                {"pool_id": r.pool_id, "amount": r.amount} for r in self.requirements
            ],
            "estimated_duration": self.estimated_duration,
            "deadline": self.deadline,
            "depends_on": list(self.depends_on),
            "max_retries": self.max_retries,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "reservation_ids": list(self.reservation_ids),
            "correlation_id": self.correlation_id,
            "error": self.error,
            "error_code": self.error_code,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_checkpoint(cls, data: dict[str, Any], action: TaskAction | None = None) -> Task:
        return cls(
            task_id=data["task_id"],
            name=data["name"],
            priority=data.get("priority", Priority.MEDIUM.value),
            requirements=data.get("requirements", []),
            estimated_duration=data.get("estimated_duration", 60.0),
            deadline=data.get("deadline"),
            depends_on=data.get("depends_on", []),
            max_retries=data.get("max_retries", 0),
            retry_count=data.get("retry_count", 0),
            attempts=data.get("attempts", 0),
            status=data.get("status", TaskStatus.PENDING.value),
            created_at=data.get("created_at", 0.0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            reservation_ids=data.get("reservation_ids", []),
            correlation_id=data.get("correlation_id", ""),
            error=data.get("error"),
            error_code=data.get("error_code"),
            metadata=data.get("metadata", {}),
            action=action,
        )
