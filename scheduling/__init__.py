"""
Resource Scheduler: Scheduling Core

Finite typed resource pools, a reservation ledger with priority-based
reclamation, a task scheduler with dependency, deadline and retry
semantics, and a workflow orchestrator that fans steps out across
execution contexts and aggregates the results.

Usage:
    from scheduling import build_orchestrator
    from runtime.config import load_config

    orchestrator = build_orchestrator(load_config("config/scheduler.yaml"), handlers)
    orchestrator.scheduler.start()
    instance_id = orchestrator.start("compliance_scan", ["EU", "US"], {"period": "2024-Q4"})
"""

from scheduling.types import (
    Priority,
    ResourceKind,
    ResourceRequirement,
    StepOutcome,
    TaskStatus,
    WorkflowStatus,
)
from scheduling.errors import (
    ConfigError,
    DeadlineExceeded,
    DependencyUnsatisfiable,
    InsufficientCapacity,
    InvalidTransition,
    InvalidWorkflowDefinition,
    RetriesExhausted,
    SchedulingError,
    UnknownHandler,
    UnknownPool,
    UnknownTask,
    UnknownWorkflow,
    UnknownWorkflowInstance,
)
from scheduling.events import EventRecorder, EventType, LoggingEventSink, SchedulerEvent, fan_out
from scheduling.ledger import Reservation, ReservationLedger, ResourcePool
from scheduling.tasks import RetryPolicy, Task, TaskContext
from scheduling.executors import InlineTaskExecutor, ThreadPoolTaskExecutor, create_executor
from scheduling.scheduler import SchedulerSettings, TaskScheduler
from scheduling.workflows import StepDefinition, WorkflowDefinition, WorkflowRegistry
from scheduling.orchestrator import StepInvocation, StepResult, WorkflowInstance, WorkflowOrchestrator
from scheduling.store import CheckpointStore
from scheduling.config import build_orchestrator, build_pools, build_scheduler

__all__ = [
    "Priority",
    "ResourceKind",
    "ResourceRequirement",
    "StepOutcome",
    "TaskStatus",
    "WorkflowStatus",
    "SchedulingError",
    "ConfigError",
    "DeadlineExceeded",
    "DependencyUnsatisfiable",
    "InsufficientCapacity",
    "InvalidTransition",
    "InvalidWorkflowDefinition",
    "RetriesExhausted",
    "UnknownHandler",
    "UnknownPool",
    "UnknownTask",
    "UnknownWorkflow",
    "UnknownWorkflowInstance",
    "EventRecorder",
    "EventType",
    "LoggingEventSink",
    "SchedulerEvent",
    "fan_out",
    "Reservation",
    "ReservationLedger",
    "ResourcePool",
    "RetryPolicy",
    "Task",
    "TaskContext",
    "InlineTaskExecutor",
    "ThreadPoolTaskExecutor",
    "create_executor",
    "SchedulerSettings",
    "TaskScheduler",
    "StepDefinition",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "StepInvocation",
    "StepResult",
    "WorkflowInstance",
    "WorkflowOrchestrator",
    "CheckpointStore",
    "build_orchestrator",
    "build_pools",
    "build_scheduler",
]
