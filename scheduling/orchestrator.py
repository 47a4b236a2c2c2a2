"""
Resource Scheduler: Workflow Orchestrator

Expands a workflow definition into one scheduler task per
(step, execution context) and aggregates the per-context results back
into a single workflow instance.

Aggregation rules:
  - every (step, context) result is recorded independently
  - a context that fails a step does not hold back its siblings
  - dependents of a failed step in the same context are recorded as
    failed (dependency_unsatisfiable) by the scheduler's propagation
  - the instance completes once every (step, context) is terminal
  - a failure of a ``blocking`` step in any context fails the instance
    immediately and cancels its outstanding tasks

Results flow back through the scheduler's ``on_terminal`` callback; the
orchestrator never polls.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from scheduling.errors import InsufficientCapacity, UnknownHandler, UnknownWorkflowInstance
from scheduling.events import EventSink, EventType, SchedulerEvent, make_event, null_sink
from scheduling.scheduler import TaskScheduler
from scheduling.store import CheckpointStore
from scheduling.tasks import Task, TaskContext
from scheduling.types import (
    StepOutcome,
    TaskStatus,
    TERMINAL_STEP_OUTCOMES,
    WorkflowStatus,
    new_id,
)
from scheduling.workflows import StepDefinition, WorkflowDefinition, WorkflowRegistry

logger = logging.getLogger("resource_scheduler.orchestrator")

_OUTCOME_FOR_STATUS = {
    TaskStatus.COMPLETED: StepOutcome.SUCCEEDED,
    TaskStatus.FAILED: StepOutcome.FAILED,
    TaskStatus.CANCELLED: StepOutcome.CANCELLED,
}


# ═══════════════════════════════════════════════════════════════════
# Instance Records
# ═══════════════════════════════════════════════════════════════════

@dataclass
class StepResult:
    """Outcome of one step in one execution context."""
    outcome: StepOutcome = StepOutcome.PENDING
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    task_id: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "result": copy.deepcopy(self.result),
            "error": self.error,
            "error_code": self.error_code,
            "task_id": self.task_id,
            "attempts": self.attempts,
        }


@dataclass
class StepInvocation:
    """What a step handler receives for one execution."""
    instance_id: str
    step: str
    context: str
    input: dict[str, Any]
    upstream: dict[str, Any]
    task_context: TaskContext

    def is_cancelled(self) -> bool:
        return self.task_context.is_cancelled()


StepHandler = Callable[[StepInvocation], Any]


@dataclass
class WorkflowInstance:
    instance_id: str
    definition_id: str
    contexts: list[str]
    input: dict[str, Any] = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.RUNNING
    steps: dict[str, dict[str, StepResult]] = field(default_factory=dict)
    started_at: float = 0.0
    ended_at: float | None = None
    task_ids: dict[tuple[str, str], str] = field(default_factory=dict)
    blocking_failure: dict[str, Any] | None = None
    correlation_id: str = ""

    def __post_init__(self):
        if not self.correlation_id:
            self.correlation_id = self.instance_id

    @property
    def is_terminal(self) -> bool:
        return self.status != WorkflowStatus.RUNNING

    def all_steps_terminal(self) -> bool:
        return all(
            r.outcome in TERMINAL_STEP_OUTCOMES
            for per_context in self.steps.values()
            for r in per_context.values()
        )

    def snapshot(self) -> dict[str, Any]:
        """Deep, JSON-safe copy of the instance state."""
        return {
            "instance_id": self.instance_id,
            "definition_id": self.definition_id,
            "status": self.status.value,
            "contexts": list(self.contexts),
            "input": copy.deepcopy(self.input),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "correlation_id": self.correlation_id,
            "blocking_failure": copy.deepcopy(self.blocking_failure),
            "steps": {
                step: {ctx: r.to_dict() for ctx, r in per_context.items()}
                for step, per_context in self.steps.items()
            },
        }

    def to_checkpoint(self) -> dict[str, Any]:
        return self.snapshot()


# ═══════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════

class WorkflowOrchestrator:
    """
    Starts, tracks and cancels workflow instances on top of a scheduler.

    Handlers are resolved by name from the ``handlers`` map when an
    instance starts, never at run time.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        registry: WorkflowRegistry,
        handlers: dict[str, StepHandler],
        events: EventSink | None = None,
        store: CheckpointStore | None = None,
        clock: Callable[[], float] | None = None,
        default_contexts: Iterable[str] | None = None,
    ):
        self.scheduler = scheduler
        self.registry = registry
        self.handlers = dict(handlers)
        self.store = store
        self.default_contexts = list(default_contexts or [])
        self._events = events or null_sink
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._instances: dict[str, WorkflowInstance] = {}
        # task_id → (instance_id, step, context)
        self._task_index: dict[str, tuple[str, str, str]] = {}
        # Definitions as they were when each instance started
        self._definitions: dict[str, WorkflowDefinition] = {}

    # ─── Public API ──────────────────────────────────────────────

    def start(
        self,
        definition_id: str,
        contexts: Iterable[str] | None = None,
        input: dict[str, Any] | None = None,
    ) -> str:
        """
        Start one instance of a workflow across the given contexts.

        Raises UnknownWorkflow, UnknownHandler, UnknownPool or
        InsufficientCapacity (a step could never fit its pool) before
        anything is submitted; ValueError for empty or duplicate
        contexts.
        """
        definition = self.registry.get(definition_id)
        contexts = list(contexts) if contexts is not None else list(self.default_contexts)
        if not contexts:
            raise ValueError("At least one execution context is required")
        duplicates = sorted({c for c in contexts if contexts.count(c) > 1})
        if duplicates:
            raise ValueError(f"Duplicate execution contexts: {duplicates}")
        missing = sorted(definition.handlers - set(self.handlers))
        if missing:
            raise UnknownHandler(
                f"Workflow {definition_id!r} needs handlers that were not provided: {missing}"
            )
        self._check_resources(definition)

        now = self._clock()
        instance = WorkflowInstance(
            instance_id=new_id("wf"),
            definition_id=definition_id,
            contexts=contexts,
            input=dict(input or {}),
            started_at=now,
            steps={s.name: {c: StepResult() for c in contexts} for s in definition.steps},
        )
        tasks = self._build_tasks(definition, instance, now)

        with self._lock:
            self._instances[instance.instance_id] = instance
            self._definitions[instance.instance_id] = definition
            for task in tasks:
                self._task_index[task.task_id] = (
                    instance.instance_id, task.metadata["step"], task.metadata["context"],
                )
            self._checkpoint(instance)

        logger.info("Started workflow %s (%s) across %s: %d task(s)",
                    instance.instance_id, definition_id, contexts, len(tasks))
        self._events(make_event(
            EventType.WORKFLOW_STARTED, instance.correlation_id, now,
            instance_id=instance.instance_id, definition_id=definition_id,
            contexts=list(contexts), task_count=len(tasks),
        ))
        for task in tasks:
            self.scheduler.submit(task, on_terminal=self._on_task_terminal)
        return instance.instance_id

    def get_status(self, instance_id: str) -> dict[str, Any]:
        with self._lock:
            instance = self._get_locked(instance_id)
            self._sync_outcomes_locked(instance)
            return instance.snapshot()

    def cancel(self, instance_id: str) -> None:
        """Cancel every outstanding task of an instance. No-op once terminal."""
        with self._lock:
            instance = self._get_locked(instance_id)
            if instance.is_terminal:
                return
            now = self._clock()
            instance.status = WorkflowStatus.CANCELLED
            instance.ended_at = now
            outstanding = self._outstanding_locked(instance)
            self._checkpoint(instance)
        logger.info("Cancelling workflow %s: %d outstanding task(s)",
                    instance_id, len(outstanding))
        self._events(make_event(
            EventType.WORKFLOW_CANCELLED, instance.correlation_id, now,
            instance_id=instance_id, outstanding=len(outstanding),
        ))
        for task_id in outstanding:
            self.scheduler.cancel(task_id, reason=f"Workflow {instance_id} cancelled")

    def instances(self, status: WorkflowStatus | None = None) -> list[WorkflowInstance]:
        with self._lock:
            records = sorted(self._instances.values(), key=lambda i: i.started_at)
        if status:
            records = [i for i in records if i.status == status]
        return records

    def stats(self) -> dict[str, Any]:
        with self._lock:
            by_status = {s.value: 0 for s in WorkflowStatus}
            for instance in self._instances.values():
                by_status[instance.status.value] += 1
        return {
            "workflows": by_status,
            "definitions": self.registry.ids(),
            "scheduler": self.scheduler.stats(),
        }

    # ─── Expansion ───────────────────────────────────────────────

    def _check_resources(self, definition: WorkflowDefinition) -> None:
        # Same per-pool totals the scheduler checks on submit, so nothing
        # is registered or submitted for a step that could never fit
        ledger = self.scheduler.ledger
        for step in definition.steps:
            demand: dict[str, int] = {}
            for req in step.resources:
                ledger.get_pool(req.pool_id)
                demand[req.pool_id] = demand.get(req.pool_id, 0) + req.amount
            for pool_id, amount in demand.items():
                pool = ledger.get_pool(pool_id)
                if amount > pool.capacity:
                    raise InsufficientCapacity(pool_id, amount, pool.capacity)

    def _build_tasks(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        now: float,
    ) -> list[Task]:
        tasks: list[Task] = []
        for step in definition.topological_order():
            for context in instance.contexts:
                depends_on: list[str] = []
                for dep_name in step.depends_on:
                    if definition.get_step(dep_name).barrier:
                        depends_on.extend(instance.task_ids[(dep_name, c)] for c in instance.contexts)
                    else:
                        depends_on.append(instance.task_ids[(dep_name, context)])
                task = Task(
                    name=f"{definition.definition_id}.{step.name}[{context}]",
                    requirements=list(step.resources),
                    priority=step.priority,
                    estimated_duration=step.estimated_duration,
                    deadline=now + step.deadline_seconds if step.deadline_seconds else None,
                    depends_on=depends_on,
                    max_retries=step.max_retries,
                    action=self._make_action(definition, instance.instance_id, step, context),
                    metadata={
                        "instance_id": instance.instance_id,
                        "step": step.name,
                        "context": context,
                    },
                    correlation_id=instance.correlation_id,
                )
                instance.task_ids[(step.name, context)] = task.task_id
                instance.steps[step.name][context].task_id = task.task_id
                tasks.append(task)
        return tasks

    def _make_action(
        self,
        definition: WorkflowDefinition,
        instance_id: str,
        step: StepDefinition,
        context: str,
    ) -> Callable[[TaskContext], Any]:
        handler = self.handlers[step.handler]

        def _run(ctx: TaskContext) -> Any:
            with self._lock:
                instance = self._instances[instance_id]
                result = instance.steps[step.name][context]
                if result.outcome in TERMINAL_STEP_OUTCOMES or ctx.is_cancelled():
                    return None
                result.outcome = StepOutcome.RUNNING
                result.attempts = ctx.attempt
                upstream = self._upstream_locked(definition, instance, step, context)
                payload = dict(instance.input)
            return handler(StepInvocation(
                instance_id=instance_id,
                step=step.name,
                context=context,
                input=payload,
                upstream=upstream,
                task_context=ctx,
            ))

        return _run

    def _upstream_locked(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        step: StepDefinition,
        context: str,
    ) -> dict[str, Any]:
        # Read results from the scheduler's records: the on_terminal callback
        # for a predecessor may not have been delivered yet.
        upstream: dict[str, Any] = {}
        for dep_name in step.depends_on:
            if definition.get_step(dep_name).barrier:
                upstream[dep_name] = {
                    c: self.scheduler.get(instance.task_ids[(dep_name, c)]).result
                    for c in instance.contexts
                }
            else:
                upstream[dep_name] = self.scheduler.get(instance.task_ids[(dep_name, context)]).result
        return upstream

    # ─── Aggregation ─────────────────────────────────────────────

    def _on_task_terminal(self, task: Task) -> None:
        ref = self._task_index.get(task.task_id)
        if ref is None:
            return
        instance_id, step_name, context = ref
        events: list[SchedulerEvent] = []
        to_cancel: list[str] = []

        with self._lock:
            instance = self._instances[instance_id]
            now = self._clock()
            result = instance.steps[step_name][context]
            result.outcome = _OUTCOME_FOR_STATUS[task.status]
            result.result = task.result if task.status == TaskStatus.COMPLETED else None
            result.error = task.error
            result.error_code = task.error_code
            result.attempts = task.attempts
            events.append(make_event(
                EventType.WORKFLOW_STEP, instance.correlation_id, now,
                instance_id=instance_id, step=step_name, context=context,
                outcome=result.outcome.value, error_code=result.error_code,
            ))

            step = self._definitions[instance_id].get_step(step_name)
            if (result.outcome == StepOutcome.FAILED and step.blocking
                    and instance.status == WorkflowStatus.RUNNING):
                instance.status = WorkflowStatus.FAILED
                instance.ended_at = now
                instance.blocking_failure = {
                    "step": step_name,
                    "context": context,
                    "error": result.error,
                    "error_code": result.error_code,
                }
                to_cancel = self._outstanding_locked(instance)
                logger.warning("Workflow %s failed: blocking step %s failed for %s",
                               instance_id, step_name, context)
                events.append(make_event(
                    EventType.WORKFLOW_FAILED, instance.correlation_id, now,
                    instance_id=instance_id, step=step_name, context=context,
                    error_code=result.error_code,
                ))
            elif instance.status == WorkflowStatus.RUNNING and instance.all_steps_terminal():
                instance.status = WorkflowStatus.COMPLETED
                instance.ended_at = now
                failures = sum(
                    1 for per_context in instance.steps.values()
                    for r in per_context.values() if r.outcome != StepOutcome.SUCCEEDED
                )
                logger.info("Workflow %s completed (%d unsuccessful step execution(s))",
                            instance_id, failures)
                events.append(make_event(
                    EventType.WORKFLOW_COMPLETED, instance.correlation_id, now,
                    instance_id=instance_id, unsuccessful=failures,
                ))
            self._checkpoint(instance)

        for event in events:
            self._events(event)
        for task_id in to_cancel:
            self.scheduler.cancel(
                task_id, reason=f"Workflow {instance_id} failed at blocking step {step_name}",
            )

    # ─── Plumbing ────────────────────────────────────────────────

    def _outstanding_locked(self, instance: WorkflowInstance) -> list[str]:
        """Non-terminal task ids, dependents ahead of what they depend on."""
        # Cancelling a dependency first would fail its dependents instead of cancelling them
        ids: list[str] = []
        for step in reversed(self._definitions[instance.instance_id].topological_order()):
            for context in instance.contexts:
                result = instance.steps[step.name][context]
                if result.task_id and result.outcome not in TERMINAL_STEP_OUTCOMES:
                    ids.append(result.task_id)
        return ids

    def _sync_outcomes_locked(self, instance: WorkflowInstance) -> None:
        # A retried or preempted attempt goes back to the queue without a terminal callback
        for per_context in instance.steps.values():
            for result in per_context.values():
                if not result.task_id or result.outcome in TERMINAL_STEP_OUTCOMES:
                    continue
                task = self.scheduler.get(result.task_id)
                if task.status == TaskStatus.PENDING:
                    result.outcome = StepOutcome.PENDING
                elif task.status == TaskStatus.RUNNING:
                    result.outcome = StepOutcome.RUNNING
                result.attempts = task.attempts

    def _get_locked(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise UnknownWorkflowInstance(f"Unknown workflow instance {instance_id!r}")
        return instance

    def _checkpoint(self, instance: WorkflowInstance) -> None:
        if self.store is not None:
            self.store.save_workflow(instance.to_checkpoint())
