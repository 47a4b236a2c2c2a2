"""
Resource Scheduler: Error Taxonomy

Every error carries a stable ``code`` so that failures recorded on tasks
and workflow snapshots can be matched without string parsing. Only
caller errors (unknown ids, invalid definitions) are raised across the
public API; capacity and execution failures are recorded, not thrown.
"""

from __future__ import annotations


class SchedulingError(Exception):
    """Base class for all scheduler errors."""
    code = "scheduling_error"


class InsufficientCapacity(SchedulingError):
    """A reservation cannot be granted, even after reclamation."""
    code = "insufficient_capacity"

    def __init__(self, pool_id: str, requested: int, available: int, reclaimable: int = 0):
        self.pool_id = pool_id
        self.requested = requested
        self.available = available
        self.reclaimable = reclaimable
        super().__init__(
            f"Pool {pool_id!r}: requested {requested}, available {available}, "
            f"reclaimable {reclaimable}"
        )


class DependencyUnsatisfiable(SchedulingError):
    """A depended-on task reached failed or cancelled."""
    code = "dependency_unsatisfiable"


class RetriesExhausted(SchedulingError):
    """A task failed on its final permitted attempt."""
    code = "retries_exhausted"


class DeadlineExceeded(SchedulingError):
    """A task outlived its deadline or a reservation its TTL."""
    code = "deadline_exceeded"


class UnknownPool(SchedulingError):
    code = "unknown_pool"


class UnknownTask(SchedulingError):
    code = "unknown_task"


class UnknownWorkflow(SchedulingError):
    """No workflow definition registered under the requested id."""
    code = "unknown_workflow"


class UnknownWorkflowInstance(SchedulingError):
    code = "unknown_workflow_instance"


class UnknownHandler(SchedulingError):
    """A workflow step names a handler that was never provided."""
    code = "unknown_handler"


class InvalidWorkflowDefinition(SchedulingError):
    code = "invalid_workflow_definition"


class InvalidTransition(SchedulingError):
    """Raised when a state machine transition is not allowed."""
    code = "invalid_transition"


class ConfigError(SchedulingError):
    code = "config_error"


# Codes recorded on tasks that did not fail by raising one of the above
EXECUTION_ERROR = "execution_error"
PREEMPTED = "preempted"
CANCELLED_BY_CALLER = "cancelled"
