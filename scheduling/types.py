"""
Resource Scheduler: Core Type Definitions

Enumerations and small value types shared by the ledger, the task
scheduler and the workflow orchestrator.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass


def new_id(prefix: str) -> str:
    """Opaque, unique record id: ``<prefix>_<12 hex chars>``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ─── Resources ───────────────────────────────────────────────────────

class ResourceKind(str, enum.Enum):
    """Kinds of finite resource a pool can hold."""
    COMPUTE = "compute"
    MEMORY  = "memory"
    IO      = "io"
    NETWORK = "network"


@dataclass(frozen=True)
class ResourceRequirement:
    """A task's demand on one pool."""
    pool_id: str
    amount: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(
                f"Requirement on pool {self.pool_id!r} must be positive, got {self.amount}"
            )


# ─── Priority ────────────────────────────────────────────────────────

_PRIORITY_RANK = {"critical": 3, "high": 2, "medium": 1, "low": 0}


class Priority(str, enum.Enum):
    """Scheduling priority. Compare with ``rank``, never with the string value."""
    CRITICAL = "critical"
    HIGH     = "high"
    MEDIUM   = "medium"
    LOW      = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self.value]

    @classmethod
    def parse(cls, value: Priority | str) -> Priority:
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown priority {value!r}; expected one of "
                f"{[p.value for p in cls]}"
            ) from None


# ─── Lifecycle States ────────────────────────────────────────────────

class TaskStatus(str, enum.Enum):
    """Task lifecycle states."""
    PENDING   = "pending"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATES = frozenset({
    TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED,
})


class WorkflowStatus(str, enum.Enum):
    """Workflow instance lifecycle states."""
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class StepOutcome(str, enum.Enum):
    """Outcome of one step in one execution context."""
    PENDING   = "pending"
    RUNNING   = "running"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    CANCELLED = "cancelled"


TERMINAL_STEP_OUTCOMES = frozenset({
    StepOutcome.SUCCEEDED, StepOutcome.FAILED, StepOutcome.CANCELLED,
})
