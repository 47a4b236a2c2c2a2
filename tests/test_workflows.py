"""
Resource Scheduler: Workflow Definition Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from runtime.config import load_config
from scheduling.errors import InvalidWorkflowDefinition, UnknownWorkflow
from scheduling.types import Priority, ResourceRequirement
from scheduling.workflows import StepDefinition, WorkflowDefinition, WorkflowRegistry


def _step(name, depends_on=(), **kwargs):
    return StepDefinition(name=name, handler=f"{name}_handler", depends_on=list(depends_on), **kwargs)


class TestStepDefinition(unittest.TestCase):

    def test_resources_from_mapping(self):
        step = _step("analyze", resources={"compute": 2, "memory": 4})
        self.assertEqual(step.resources, [
            ResourceRequirement("compute", 2), ResourceRequirement("memory", 4),
        ])

    def test_resources_from_list(self):
        step = _step("analyze", resources=[{"pool_id": "compute", "amount": 1}, ("io", 2)])
        self.assertEqual(step.resources[1], ResourceRequirement("io", 2))

    def test_bad_resource_amount(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            _step("analyze", resources={"compute": 0})

    def test_bad_priority(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            _step("analyze", priority="asap")

    def test_priority_parsed(self):
        self.assertEqual(_step("analyze", priority="high").priority, Priority.HIGH)

    def test_missing_handler(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            StepDefinition(name="analyze", handler="")

    def test_from_dict_rejects_unknown_keys(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            StepDefinition.from_dict({"name": "a", "handler": "h", "retries": 3})


class TestWorkflowDefinition(unittest.TestCase):

    def test_topological_order(self):
        definition = WorkflowDefinition("wf", [
            _step("report", ["analyze"]),
            _step("collect"),
            _step("analyze", ["collect"]),
        ])
        self.assertEqual([s.name for s in definition.topological_order()],
                         ["collect", "analyze", "report"])

    def test_order_stable_for_independent_steps(self):
        definition = WorkflowDefinition("wf", [_step("b"), _step("a"), _step("c", ["a", "b"])])
        self.assertEqual([s.name for s in definition.topological_order()], ["b", "a", "c"])

    def test_cycle_rejected(self):
        with self.assertRaises(InvalidWorkflowDefinition) as ctx:
            WorkflowDefinition("wf", [_step("a", ["c"]), _step("b", ["a"]), _step("c", ["b"])])
        self.assertIn("cycle", str(ctx.exception))

    def test_unknown_dependency_rejected(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            WorkflowDefinition("wf", [_step("a", ["missing"])])

    def test_duplicate_steps_rejected(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            WorkflowDefinition("wf", [_step("a"), _step("a")])

    def test_empty_rejected(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            WorkflowDefinition("wf", [])

    def test_handlers(self):
        definition = WorkflowDefinition("wf", [_step("a"), _step("b", ["a"])])
        self.assertEqual(definition.handlers, {"a_handler", "b_handler"})


class TestWorkflowRegistry(unittest.TestCase):

    def test_get_unknown(self):
        registry = WorkflowRegistry()
        with self.assertRaises(UnknownWorkflow):
            registry.get("missing")

    def test_from_config(self):
        registry = WorkflowRegistry.from_config({
            "workflows": {
                "scan": {
                    "description": "single step",
                    "steps": [{"name": "only", "handler": "h", "resources": {"compute": 1}}],
                },
            },
        })
        self.assertEqual(registry.ids(), ["scan"])
        self.assertEqual(registry.get("scan").description, "single step")

    def test_from_config_requires_step_list(self):
        with self.assertRaises(InvalidWorkflowDefinition):
            WorkflowRegistry.from_config({"workflows": {"scan": {"steps": "collect"}}})

    def test_shipped_config_parses(self):
        path = os.path.join(_project_root, "config", "scheduler.yaml")
        registry = WorkflowRegistry.from_config(load_config(path, include_env_vars=False))
        self.assertIn("compliance_scan", registry)
        digest = registry.get("regulatory_digest")
        self.assertTrue(digest.get_step("scan").barrier)
        self.assertTrue(digest.get_step("digest").blocking)


if __name__ == "__main__":
    unittest.main()
