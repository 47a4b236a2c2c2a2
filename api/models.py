"""
Resource Scheduler: API Models

Request/response dataclasses for the API server.
No FastAPI dependency; used by the server and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any


@dataclass
class WorkflowSubmission:
    """POST /v1/workflows request body."""
    workflow: str
    contexts: list[str] | None = None
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> WorkflowSubmission:
        return cls(
            workflow=body.get("workflow", ""),
            contexts=body.get("contexts"),
            input=body.get("input", {}),
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.workflow or not isinstance(self.workflow, str):
            errors.append("workflow is required and must be a string")
        if self.contexts is not None:
            if not isinstance(self.contexts, list) or not all(
                isinstance(c, str) and c for c in self.contexts
            ):
                errors.append("contexts must be a list of non-empty strings")
            elif not self.contexts:
                errors.append("contexts must not be empty")
            elif len(set(self.contexts)) != len(self.contexts):
                errors.append("contexts must not contain duplicates")
        if not isinstance(self.input, dict):
            errors.append("input must be an object")
        return errors


@dataclass
class WorkflowAccepted:
    """POST /v1/workflows response, returned immediately on submission."""
    instance_id: str
    workflow: str
    contexts: list[str]
    status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowSummary:
    """GET /v1/workflows response item."""
    instance_id: str
    workflow: str
    status: str
    contexts: list[str]
    started_at: float
    ended_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
