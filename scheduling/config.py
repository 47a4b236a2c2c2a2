"""
Resource Scheduler: Wiring from Configuration

Builds pools, the ledger, the scheduler and the orchestrator from a
loaded config dict (see runtime.config.load_config). Config shape:

    pools:
      compute: {kind: compute, capacity: 8}
      memory:  {kind: memory, capacity: 32}
    scheduler:
      max_concurrent: 8
      tick_interval_seconds: 2.0
      executor: thread
    store:
      db_path: scheduler.db
    orchestrator:
      default_contexts: [EU, US]
    workflows:
      ...                       (see scheduling.workflows)

Every component is constructed here and passed to the next; nothing is
held at module level.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from scheduling.errors import ConfigError, InvalidWorkflowDefinition
from scheduling.events import EventSink
from scheduling.executors import TaskExecutor
from scheduling.ledger import ReservationLedger, ResourcePool
from scheduling.orchestrator import StepHandler, WorkflowOrchestrator
from scheduling.scheduler import SchedulerSettings, TaskScheduler
from scheduling.store import CheckpointStore
from scheduling.workflows import WorkflowRegistry

logger = logging.getLogger("resource_scheduler.config")


def load_settings(config: dict[str, Any]) -> SchedulerSettings:
    """Parse the ``scheduler`` section. Raises ConfigError."""
    section = config.get("scheduler") or {}
    if not isinstance(section, dict):
        raise ConfigError("'scheduler' must be a mapping")
    try:
        return SchedulerSettings.from_config(section)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid scheduler settings: {e}") from e


def build_pools(config: dict[str, Any]) -> list[ResourcePool]:
    """
    Parse the ``pools`` section. Accepts a mapping of pool id → settings or
    a list of entries carrying ``pool_id``. Raises ConfigError on unknown
    kinds, non-integer capacities or duplicate ids.
    """
    section = config.get("pools") or {}
    if isinstance(section, dict):
        entries = [dict(entry or {}, pool_id=pool_id) for pool_id, entry in section.items()]
    elif isinstance(section, list):
        entries = [dict(entry) for entry in section]
    else:
        raise ConfigError("'pools' must be a mapping or a list")

    pools: list[ResourcePool] = []
    seen: set[str] = set()
    for entry in entries:
        pool_id = entry.get("pool_id")
        if not pool_id:
            raise ConfigError(f"Pool entry without an id: {entry!r}")
        if pool_id in seen:
            raise ConfigError(f"Duplicate pool {pool_id!r}")
        seen.add(pool_id)
        try:
            pools.append(ResourcePool(
                pool_id=pool_id,
                kind=entry.get("kind", pool_id),
                capacity=entry.get("capacity"),
            ))
        except ValueError as e:
            raise ConfigError(f"Invalid pool {pool_id!r}: {e}") from e
    return pools


def build_ledger(
    config: dict[str, Any],
    events: EventSink | None = None,
    clock: Callable[[], float] | None = None,
) -> ReservationLedger:
    return ReservationLedger(build_pools(config), events=events, clock=clock)


def build_store(config: dict[str, Any]) -> CheckpointStore | None:
    """Checkpoint store from the ``store`` section; None when not configured."""
    section = config.get("store") or {}
    db_path = section.get("db_path")
    if not db_path:
        return None
    return CheckpointStore(db_path)


def build_scheduler(
    config: dict[str, Any],
    executor: TaskExecutor | None = None,
    events: EventSink | None = None,
    store: CheckpointStore | None = None,
    clock: Callable[[], float] | None = None,
) -> TaskScheduler:
    """Wire a scheduler; the checkpoint store comes from ``store`` config unless given."""
    settings = load_settings(config)
    if store is None:
        store = build_store(config)
    ledger = build_ledger(config, events=events, clock=clock)
    scheduler = TaskScheduler(
        ledger,
        settings=settings,
        executor=executor,
        events=events,
        store=store,
        clock=clock,
    )
    logger.info("Scheduler built: %d pool(s), max_concurrent=%d, executor=%s",
                len(ledger.pools), settings.max_concurrent, scheduler.executor.name)
    return scheduler


def build_orchestrator(
    config: dict[str, Any],
    handlers: dict[str, StepHandler],
    scheduler: TaskScheduler | None = None,
    events: EventSink | None = None,
    store: CheckpointStore | None = None,
    clock: Callable[[], float] | None = None,
) -> WorkflowOrchestrator:
    """Wire a full orchestrator (and its scheduler, unless one is given)."""
    try:
        registry = WorkflowRegistry.from_config(config)
    except InvalidWorkflowDefinition as e:
        raise ConfigError(str(e)) from e
    if scheduler is None:
        if store is None:
            store = build_store(config)
        scheduler = build_scheduler(config, events=events, store=store, clock=clock)
    elif store is None:
        store = scheduler.store
    section = config.get("orchestrator") or {}
    return WorkflowOrchestrator(
        scheduler,
        registry,
        handlers,
        events=events,
        store=store,
        clock=clock,
        default_contexts=section.get("default_contexts"),
    )
