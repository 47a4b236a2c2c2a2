"""
Resource Scheduler: Health Checks & Readiness Probes

Liveness, readiness and startup checks for the scheduler process. The
HTTP adapter serves them as /health and /ready; hosts without the
adapter can call the checker directly.

Checks:
  /health   process alive (always ok)
  /ready    scheduling loop alive, ledger capacity invariant holds,
            checkpoint store reachable
  startup   configuration valid (pools and workflows parse)

Usage:
    from runtime.health import HealthChecker, create_scheduler_check

    checker = HealthChecker()
    checker.register("scheduler", create_scheduler_check(scheduler))
    checker.register("ledger", create_ledger_check(scheduler.ledger))

    result = checker.check_ready()
    # {"status": "ok", "checks": {"scheduler": {"status": "ok", ...}}}
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("resource_scheduler.health")


# ═══════════════════════════════════════════════════════════════════
# Check Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CheckResult:
    """Result of a single health check."""
    name: str
    status: str          # "ok" | "fail"
    latency_ms: float
    detail: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = {"status": self.status, "latency_ms": round(self.latency_ms, 1)}
        if self.detail:
            d["detail"] = self.detail
        if self.error:
            d["error"] = self.error
        return d


# ═══════════════════════════════════════════════════════════════════
# Health Checker
# ═══════════════════════════════════════════════════════════════════

# Type for check functions: () -> (bool, str)
# Returns (success, detail_message)
CheckFn = Callable[[], tuple[bool, str]]


def _timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class HealthChecker:
    """
    Central health check registry.

    Register check functions for each subsystem. The checker runs them
    on demand and returns structured results.
    """

    def __init__(self):
        self._checks: dict[str, CheckFn] = {}
        self._startup_checks: dict[str, CheckFn] = {}
        self._lock = threading.Lock()

    def register(self, name: str, check_fn: CheckFn) -> None:
        """Register a readiness check."""
        with self._lock:
            self._checks[name] = check_fn

    def register_startup(self, name: str, check_fn: CheckFn) -> None:
        """Register a startup check."""
        with self._lock:
            self._startup_checks[name] = check_fn

    def _run_check(self, name: str, fn: CheckFn) -> CheckResult:
        t0 = time.time()
        try:
            success, detail = fn()
            return CheckResult(
                name=name,
                status="ok" if success else "fail",
                latency_ms=(time.time() - t0) * 1000,
                detail=detail,
            )
        except Exception as e:
            logger.warning("Health check %s raised: %s", name, e)
            return CheckResult(
                name=name,
                status="fail",
                latency_ms=(time.time() - t0) * 1000,
                error=str(e)[:200],
            )

    def _run_all(self, checks: dict[str, CheckFn]) -> dict[str, Any]:
        results = {name: self._run_check(name, fn).to_dict() for name, fn in checks.items()}
        overall = "ok" if all(r["status"] == "ok" for r in results.values()) else "fail"
        return {"status": overall, "checks": results, "timestamp": _timestamp()}

    def check_health(self) -> dict[str, Any]:
        """Liveness check. Always ok while the process runs."""
        return {"status": "ok", "timestamp": _timestamp()}

    def check_ready(self) -> dict[str, Any]:
        """
        Readiness check. Runs all registered checks.

        Returns:
            {
                "status": "ok" | "fail",
                "checks": {
                    "scheduler": {"status": "ok", "latency_ms": 0.1},
                    "ledger": {"status": "fail", "detail": "compute: ..."}
                }
            }
        """
        with self._lock:
            checks = dict(self._checks)
        return self._run_all(checks)

    def check_startup(self) -> dict[str, Any]:
        """Startup check. Same schema as check_ready()."""
        with self._lock:
            checks = dict(self._startup_checks)
        return self._run_all(checks)


# ═══════════════════════════════════════════════════════════════════
# Built-in Checks
# ═══════════════════════════════════════════════════════════════════

def create_scheduler_check(scheduler, require_loop: bool = True) -> CheckFn:
    """Readiness: the background tick loop is alive."""
    def check() -> tuple[bool, str]:
        stats = scheduler.stats()
        detail = (f"running={stats['running']} pending={stats['pending']} "
                  f"ticks={stats['tick_count']}")
        if require_loop and not stats["loop_alive"]:
            return False, f"Scheduling loop not running ({detail})"
        return True, detail
    return check


def create_ledger_check(ledger) -> CheckFn:
    """Readiness: every pool satisfies the capacity invariant."""
    def check() -> tuple[bool, str]:
        violations = ledger.check_invariants()
        if violations:
            return False, "; ".join(violations)
        return True, f"{len(ledger.pools)} pool(s), {ledger.reservation_count} reservation(s)"
    return check


def create_store_check(store) -> CheckFn:
    """Readiness: the checkpoint database answers."""
    def check() -> tuple[bool, str]:
        stats = store.stats()
        return True, f"Checkpoint store accessible: {store.db_path} ({sum(stats['tasks'].values())} task(s))"
    return check


def create_config_check(config: dict[str, Any]) -> CheckFn:
    """Startup: pools and workflow definitions in the config parse."""
    def check() -> tuple[bool, str]:
        from scheduling.config import build_pools
        from scheduling.workflows import WorkflowRegistry
        pools = build_pools(config)
        registry = WorkflowRegistry.from_config(config)
        return True, f"{len(pools)} pool(s), {len(registry)} workflow(s)"
    return check
