"""
Resource Scheduler: API Tests

Request models and the FastAPI routes. The app is built without
scheduler management and driven by explicit ticks, so every response is
deterministic.
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from api.models import WorkflowAccepted, WorkflowSubmission, WorkflowSummary
from runtime.health import HealthChecker
from scheduling.store import CheckpointStore
from scheduling.executors import InlineTaskExecutor
from scheduling.ledger import ReservationLedger, ResourcePool
from scheduling.orchestrator import WorkflowOrchestrator
from scheduling.scheduler import SchedulerSettings, TaskScheduler
from scheduling.workflows import StepDefinition, WorkflowDefinition, WorkflowRegistry


class TestWorkflowSubmission(unittest.TestCase):

    def test_valid(self):
        sub = WorkflowSubmission.from_body({"workflow": "compliance_scan", "contexts": ["EU", "US"]})
        self.assertEqual(sub.validate(), [])
        self.assertEqual(sub.input, {})

    def test_contexts_optional(self):
        self.assertEqual(WorkflowSubmission(workflow="compliance_scan").validate(), [])

    def test_missing_workflow(self):
        errors = WorkflowSubmission.from_body({}).validate()
        self.assertTrue(any("workflow" in e for e in errors))

    def test_bad_contexts(self):
        self.assertIn("contexts must be a list of non-empty strings",
                      WorkflowSubmission(workflow="w", contexts="EU").validate())
        self.assertIn("contexts must be a list of non-empty strings",
                      WorkflowSubmission(workflow="w", contexts=["EU", ""]).validate())
        self.assertIn("contexts must not be empty",
                      WorkflowSubmission(workflow="w", contexts=[]).validate())
        self.assertIn("contexts must not contain duplicates",
                      WorkflowSubmission(workflow="w", contexts=["EU", "EU"]).validate())

    def test_bad_input(self):
        self.assertIn("input must be an object",
                      WorkflowSubmission(workflow="w", input=["x"]).validate())

    def test_response_models(self):
        accepted = WorkflowAccepted("wf_1", "scan", ["EU"], "running", "started")
        self.assertEqual(accepted.to_dict()["instance_id"], "wf_1")
        summary = WorkflowSummary("wf_1", "scan", "completed", ["EU"], 1.0, 2.0)
        self.assertEqual(summary.to_dict()["ended_at"], 2.0)


def _orchestrator(default_contexts=None, store=None):
    ledger = ReservationLedger([
        ResourcePool("compute", "compute", 4),
        ResourcePool("io", "io", 2),
    ])
    scheduler = TaskScheduler(
        ledger,
        settings=SchedulerSettings(max_concurrent=4),
        executor=InlineTaskExecutor(),
    )
    registry = WorkflowRegistry([
        WorkflowDefinition("scan", [
            StepDefinition(name="collect", handler="collect", resources={"io": 1}),
            StepDefinition(name="analyze", handler="analyze", depends_on=["collect"],
                           resources={"compute": 2}),
        ]),
        WorkflowDefinition("huge", [
            StepDefinition(name="crunch", handler="collect", resources={"compute": 64}),
        ]),
        WorkflowDefinition("orphan", [
            StepDefinition(name="only", handler="not_registered"),
        ]),
    ])
    handlers = {
        "collect": lambda inv: {"context": inv.context, "filings": 3},
        "analyze": lambda inv: {"findings": inv.upstream["collect"]["filings"] * 2},
    }
    return WorkflowOrchestrator(
        scheduler, registry, handlers, store=store, default_contexts=default_contexts,
    )


class TestWorkflowRoutes(unittest.TestCase):

    def setUp(self):
        from fastapi.testclient import TestClient

        from api.server import create_app

        self.orchestrator = _orchestrator(default_contexts=["IN"])
        self.scheduler = self.orchestrator.scheduler
        self.app = create_app(self.orchestrator, manage_scheduler=False)
        self.client = TestClient(self.app)

    def tearDown(self):
        self.scheduler.stop()

    def _drain(self, ticks=5):
        for _ in range(ticks):
            self.scheduler.tick()

    def test_start_workflow(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "scan", "contexts": ["EU", "US"]})
        self.assertEqual(resp.status_code, 202)
        data = resp.json()
        self.assertEqual(data["workflow"], "scan")
        self.assertEqual(data["contexts"], ["EU", "US"])
        self.assertEqual(data["status"], "running")
        self.assertTrue(data["instance_id"].startswith("wf_"))

    def test_default_contexts(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "scan"})
        self.assertEqual(resp.json()["contexts"], ["IN"])

    def test_run_to_completion(self):
        instance_id = self.client.post(
            "/v1/workflows", json={"workflow": "scan", "contexts": ["EU"]},
        ).json()["instance_id"]
        self._drain()
        resp = self.client.get(f"/v1/workflows/{instance_id}")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["steps"]["analyze"]["EU"]["result"], {"findings": 6})

    def test_invalid_json(self):
        resp = self.client.post("/v1/workflows", content=b"{not json",
                                headers={"content-type": "application/json"})
        self.assertEqual(resp.status_code, 422)

    def test_body_must_be_object(self):
        resp = self.client.post("/v1/workflows", json=["scan"])
        self.assertEqual(resp.status_code, 422)

    def test_validation_errors(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "scan", "contexts": []})
        self.assertEqual(resp.status_code, 422)
        self.assertIn("contexts must not be empty", resp.json()["errors"])

    def test_unknown_workflow(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "missing"})
        self.assertEqual(resp.status_code, 404)

    def test_unknown_handler(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "orphan"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("not_registered", resp.json()["detail"])

    def test_step_exceeding_pool(self):
        resp = self.client.post("/v1/workflows", json={"workflow": "huge"})
        self.assertEqual(resp.status_code, 400)

    def test_list_and_filter(self):
        first = self.client.post("/v1/workflows", json={"workflow": "scan"}).json()["instance_id"]
        self._drain()
        self.client.post("/v1/workflows", json={"workflow": "scan"})

        resp = self.client.get("/v1/workflows")
        self.assertEqual(resp.json()["count"], 2)
        done = self.client.get("/v1/workflows", params={"status": "completed"}).json()
        self.assertEqual([w["instance_id"] for w in done["workflows"]], [first])

    def test_list_unknown_status(self):
        resp = self.client.get("/v1/workflows", params={"status": "sleeping"})
        self.assertEqual(resp.status_code, 422)

    def test_get_unknown_instance(self):
        self.assertEqual(self.client.get("/v1/workflows/wf_missing").status_code, 404)

    def test_cancel(self):
        instance_id = self.client.post("/v1/workflows", json={"workflow": "scan"}).json()["instance_id"]
        resp = self.client.post(f"/v1/workflows/{instance_id}/cancel")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"instance_id": instance_id, "status": "cancelled"})
        self.assertEqual(self.scheduler.pending_count, 0)

    def test_cancel_unknown(self):
        self.assertEqual(self.client.post("/v1/workflows/wf_missing/cancel").status_code, 404)


class TestPoolsAndHealthRoutes(unittest.TestCase):

    def setUp(self):
        from fastapi.testclient import TestClient

        from api.server import create_app

        self.orchestrator = _orchestrator(default_contexts=["EU"])
        self.client = TestClient(create_app(self.orchestrator, manage_scheduler=False))
        self._create_app = create_app
        self._client_cls = TestClient

    def test_pools(self):
        pools = self.client.get("/v1/pools").json()["pools"]
        self.assertEqual([p["pool_id"] for p in pools], ["compute", "io"])

    def test_stats(self):
        data = self.client.get("/v1/stats").json()
        self.assertEqual(data["definitions"], ["huge", "orphan", "scan"])
        self.assertEqual(data["scheduler"]["max_concurrent"], 4)

    def test_liveness(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")

    def test_not_ready_without_loop(self):
        resp = self.client.get("/ready")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["checks"]["scheduler"]["status"], "fail")

    def test_ready_with_custom_checker(self):
        checker = HealthChecker()
        checker.register("always", lambda: (True, "fine"))
        client = self._client_cls(self._create_app(
            self.orchestrator, health=checker, manage_scheduler=False,
        ))
        self.assertEqual(client.get("/ready").status_code, 200)

    def test_default_checker_covers_store_and_config(self):
        from api.server import default_health_checker

        store = CheckpointStore(":memory:")
        self.addCleanup(store.close)
        checker = default_health_checker(
            _orchestrator(store=store), {"pools": {"compute": {"capacity": 4}}},
        )
        ready = checker.check_ready()["checks"]
        self.assertEqual(sorted(ready), ["ledger", "scheduler", "store"])
        self.assertEqual(ready["store"]["status"], "ok")
        startup = checker.check_startup()
        self.assertEqual(startup["status"], "ok")
        self.assertEqual(startup["checks"]["config"]["detail"], "1 pool(s), 0 workflow(s)")

    def test_default_checker_without_store(self):
        from api.server import default_health_checker

        checker = default_health_checker(self.orchestrator)
        self.assertNotIn("store", checker.check_ready()["checks"])
        self.assertEqual(checker.check_startup()["checks"], {})

    def test_startup_route(self):
        client = self._client_cls(self._create_app(
            self.orchestrator, manage_scheduler=False,
            config={"pools": {"compute": {"capacity": 4}}},
        ))
        self.assertEqual(client.get("/startup").status_code, 200)

        broken = self._client_cls(self._create_app(
            self.orchestrator, manage_scheduler=False, config={"pools": "lots"},
        ))
        resp = broken.get("/startup")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["checks"]["config"]["status"], "fail")


if __name__ == "__main__":
    unittest.main()
