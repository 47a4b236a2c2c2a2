"""
Resource Scheduler: Health Check Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from runtime.health import (
    HealthChecker,
    create_config_check,
    create_ledger_check,
    create_scheduler_check,
    create_store_check,
)
from scheduling.executors import InlineTaskExecutor
from scheduling.ledger import ReservationLedger, ResourcePool
from scheduling.scheduler import SchedulerSettings, TaskScheduler
from scheduling.store import CheckpointStore


def _scheduler(tick=2.0):
    ledger = ReservationLedger([ResourcePool("compute", "compute", 4)])
    return TaskScheduler(
        ledger,
        settings=SchedulerSettings(tick_interval_seconds=tick),
        executor=InlineTaskExecutor(),
    )


class TestHealthChecker(unittest.TestCase):

    def test_liveness_always_ok(self):
        self.assertEqual(HealthChecker().check_health()["status"], "ok")

    def test_ready_with_no_checks(self):
        result = HealthChecker().check_ready()
        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["checks"], {})

    def test_failing_check_fails_overall(self):
        checker = HealthChecker()
        checker.register("good", lambda: (True, "fine"))
        checker.register("bad", lambda: (False, "broken"))
        result = checker.check_ready()
        self.assertEqual(result["status"], "fail")
        self.assertEqual(result["checks"]["good"]["detail"], "fine")
        self.assertEqual(result["checks"]["bad"]["status"], "fail")

    def test_raising_check_reported(self):
        def explode():
            raise RuntimeError("db gone")

        checker = HealthChecker()
        checker.register("store", explode)
        result = checker.check_ready()
        self.assertEqual(result["status"], "fail")
        self.assertEqual(result["checks"]["store"]["error"], "db gone")

    def test_startup_checks_separate(self):
        checker = HealthChecker()
        checker.register("ready_only", lambda: (False, "not yet"))
        checker.register_startup("config", lambda: (True, "parsed"))
        self.assertEqual(checker.check_startup()["status"], "ok")
        self.assertEqual(list(checker.check_startup()["checks"]), ["config"])


class TestBuiltinChecks(unittest.TestCase):

    def test_scheduler_check_requires_loop(self):
        scheduler = _scheduler()
        ok, detail = create_scheduler_check(scheduler)()
        self.assertFalse(ok)
        self.assertIn("not running", detail)
        ok, _ = create_scheduler_check(scheduler, require_loop=False)()
        self.assertTrue(ok)

    def test_scheduler_check_with_loop(self):
        scheduler = _scheduler(tick=0.05)
        scheduler.start()
        try:
            ok, detail = create_scheduler_check(scheduler)()
            self.assertTrue(ok)
            self.assertIn("running=0", detail)
        finally:
            scheduler.stop()

    def test_ledger_check(self):
        ledger = ReservationLedger([ResourcePool("compute", "compute", 4)])
        ok, detail = create_ledger_check(ledger)()
        self.assertTrue(ok)
        self.assertIn("1 pool(s)", detail)

        ledger.get_pool("compute").allocated = 3
        ok, detail = create_ledger_check(ledger)()
        self.assertFalse(ok)
        self.assertIn("compute: allocated=3", detail)

    def test_store_check(self):
        store = CheckpointStore(":memory:")
        try:
            ok, detail = create_store_check(store)()
            self.assertTrue(ok)
            self.assertIn(":memory:", detail)
        finally:
            store.close()

    def test_config_check(self):
        config = {
            "pools": {"compute": {"capacity": 2}},
            "workflows": {"scan": {"steps": [{"name": "a", "handler": "h"}]}},
        }
        ok, detail = create_config_check(config)()
        self.assertTrue(ok)
        self.assertEqual(detail, "1 pool(s), 1 workflow(s)")

    def test_config_check_failure_surfaces(self):
        checker = HealthChecker()
        checker.register_startup("config", create_config_check({"pools": {"gpu": {"capacity": 1}}}))
        result = checker.check_startup()
        self.assertEqual(result["status"], "fail")
        self.assertIn("gpu", result["checks"]["config"]["error"])


if __name__ == "__main__":
    unittest.main()
