"""
Resource Scheduler: Workflow Definitions

A workflow definition is a DAG of named steps. Each step names a
handler, the resources one execution of it needs, and its retry and
priority policy. The orchestrator expands the DAG once per execution
context (e.g. per jurisdiction).

Step flags:
  blocking: a permanent failure in any context fails the whole instance
  barrier:  dependents wait for this step in every context, not just
            their own, and receive a {context: result} map

Definitions are usually loaded from the ``workflows`` config section:

    workflows:
      compliance_scan:
        description: Collect, analyze and report per jurisdiction
        steps:
          - name: collect
            handler: collect_filings
            resources: {io: 1, network: 1}
          - name: analyze
            handler: analyze_filings
            depends_on: [collect]
            resources: {compute: 2}
            max_retries: 2
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from scheduling.errors import InvalidWorkflowDefinition, UnknownWorkflow
from scheduling.types import Priority, ResourceRequirement

logger = logging.getLogger("resource_scheduler.workflows")


@dataclass
class StepDefinition:
    """One node of a workflow DAG."""
    name: str
    handler: str
    depends_on: list[str] = field(default_factory=list)
    resources: list[ResourceRequirement] = field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    estimated_duration: float = 60.0
    max_retries: int = 0
    blocking: bool = False
    barrier: bool = False
    deadline_seconds: float | None = None

    def __post_init__(self):
        if not self.name:
            raise InvalidWorkflowDefinition("Step name must not be empty")
        if not self.handler:
            raise InvalidWorkflowDefinition(f"Step {self.name!r} has no handler")
        try:
            self.priority = Priority.parse(self.priority)
        except ValueError as e:
            raise InvalidWorkflowDefinition(f"Step {self.name!r}: {e}") from None
        if self.max_retries < 0:
            raise InvalidWorkflowDefinition(f"Step {self.name!r}: max_retries must be >= 0")
        self.depends_on = list(dict.fromkeys(self.depends_on))
        self.resources = [_parse_resource(self.name, r) for r in _resource_items(self.resources)]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepDefinition:
        known = {
            "name", "handler", "depends_on", "resources", "priority",
            "estimated_duration", "max_retries", "blocking", "barrier",
            "deadline_seconds",
        }
        unknown = set(data) - known
        if unknown:
            raise InvalidWorkflowDefinition(
                f"Step {data.get('name')!r}: unknown keys {sorted(unknown)}"
            )
        return cls(
            name=data.get("name", ""),
            handler=data.get("handler", ""),
            depends_on=list(data.get("depends_on") or []),
            resources=data.get("resources") or [],
            priority=data.get("priority", Priority.MEDIUM.value),
            estimated_duration=float(data.get("estimated_duration", 60.0)),
            max_retries=int(data.get("max_retries", 0)),
            blocking=bool(data.get("blocking", False)),
            barrier=bool(data.get("barrier", False)),
            deadline_seconds=data.get("deadline_seconds"),
        )


def _resource_items(resources: Any) -> list[Any]:
    # Accepts {pool: amount}, [{pool_id, amount}], [(pool, amount)] or requirements
    if isinstance(resources, dict):
        return list(resources.items())
    return list(resources)


def _parse_resource(step: str, item: Any) -> ResourceRequirement:
    try:
        if isinstance(item, ResourceRequirement):
            return item
        if isinstance(item, dict):
            return ResourceRequirement(item["pool_id"], int(item["amount"]))
        pool_id, amount = item
        return ResourceRequirement(pool_id, int(amount))
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidWorkflowDefinition(f"Step {step!r}: bad resource {item!r}: {e}") from None


@dataclass
class WorkflowDefinition:
    """A validated, acyclic step graph."""
    definition_id: str
    steps: list[StepDefinition]
    description: str = ""

    def __post_init__(self):
        if not self.steps:
            raise InvalidWorkflowDefinition(f"Workflow {self.definition_id!r} has no steps")
        names = [s.name for s in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidWorkflowDefinition(
                f"Workflow {self.definition_id!r}: duplicate steps {duplicates}"
            )
        for step in self.steps:
            for dep in step.depends_on:
                if dep not in names:
                    raise InvalidWorkflowDefinition(
                        f"Workflow {self.definition_id!r}: step {step.name!r} "
                        f"depends on unknown step {dep!r}"
                    )
        self._order = self._sort()

    def _sort(self) -> list[StepDefinition]:
        """Kahn's algorithm, stable with respect to declaration order."""
        by_name = {s.name: s for s in self.steps}
        remaining = {s.name: set(s.depends_on) for s in self.steps}
        order: list[StepDefinition] = []
        while remaining:
            ready = [s.name for s in self.steps if s.name in remaining and not remaining[s.name]]
            if not ready:
                raise InvalidWorkflowDefinition(
                    f"Workflow {self.definition_id!r}: dependency cycle among "
                    f"{sorted(remaining)}"
                )
            for name in ready:
                del remaining[name]
                order.append(by_name[name])
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def topological_order(self) -> list[StepDefinition]:
        return list(self._order)

    def get_step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    @property
    def handlers(self) -> set[str]:
        return {s.handler for s in self.steps}

    @classmethod
    def from_dict(cls, definition_id: str, data: dict[str, Any]) -> WorkflowDefinition:
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise InvalidWorkflowDefinition(
                f"Workflow {definition_id!r}: 'steps' must be a list"
            )
        return cls(
            definition_id=definition_id,
            steps=[StepDefinition.from_dict(s) for s in steps],
            description=data.get("description", ""),
        )


class WorkflowRegistry:
    """Workflow definitions by id."""

    def __init__(self, definitions: list[WorkflowDefinition] | None = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.definition_id in self._definitions:
            logger.warning("Replacing workflow definition %s", definition.definition_id)
        self._definitions[definition.definition_id] = definition

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            raise UnknownWorkflow(f"Unknown workflow {definition_id!r}")
        return definition

    def ids(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, definition_id: str) -> bool:
        return definition_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> WorkflowRegistry:
        """Parse the ``workflows`` section of a loaded config."""
        section = config.get("workflows") or {}
        if not isinstance(section, dict):
            raise InvalidWorkflowDefinition("'workflows' must be a mapping of id → definition")
        registry = cls()
        for definition_id, data in section.items():
            registry.register(WorkflowDefinition.from_dict(definition_id, data or {}))
        logger.info("Loaded %d workflow definition(s)", len(registry))
        return registry
