"""
Resource Scheduler: Task Record & State Machine Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from scheduling.errors import InvalidTransition
from scheduling.tasks import RetryPolicy, Task, TaskContext, can_transition
from scheduling.types import Priority, ResourceRequirement, TaskStatus


class TestTaskStateMachine(unittest.TestCase):

    def test_happy_path(self):
        task = Task(name="scan")
        self.assertEqual(task.status, TaskStatus.PENDING)
        task.transition(TaskStatus.RUNNING, now=10.0)
        self.assertEqual(task.started_at, 10.0)
        self.assertEqual(task.attempts, 1)
        self.assertEqual(task.run_token, 1)
        task.transition(TaskStatus.COMPLETED, now=12.0)
        self.assertTrue(task.is_terminal)
        self.assertEqual(task.completed_at, 12.0)

    def test_retry_path_back_to_pending(self):
        task = Task(name="scan")
        task.transition(TaskStatus.RUNNING, now=1.0)
        task.transition(TaskStatus.PENDING, now=2.0)
        self.assertIsNone(task.started_at)
        task.transition(TaskStatus.RUNNING, now=3.0)
        self.assertEqual(task.attempts, 2)
        self.assertEqual(task.run_token, 2)

    def test_running_clears_front_and_overdue(self):
        task = Task(name="scan")
        task.front = True
        task.overdue = True
        task.transition(TaskStatus.RUNNING, now=1.0)
        self.assertFalse(task.front)
        self.assertFalse(task.overdue)

    def test_pending_can_fail_or_cancel(self):
        self.assertTrue(can_transition(TaskStatus.PENDING, TaskStatus.FAILED))
        self.assertTrue(can_transition(TaskStatus.PENDING, TaskStatus.CANCELLED))

    def test_pending_cannot_complete(self):
        task = Task(name="scan")
        with self.assertRaises(InvalidTransition):
            task.transition(TaskStatus.COMPLETED)

    def test_terminal_states_are_final(self):
        for terminal in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            for target in TaskStatus:
                self.assertFalse(can_transition(terminal, target),
                                 f"{terminal.value} → {target.value}")


class TestTaskDefinition(unittest.TestCase):

    def test_requirements_coerced(self):
        task = Task(name="scan", requirements=[("compute", 2), {"pool_id": "io", "amount": 1}])
        self.assertEqual(task.requirements, [
            ResourceRequirement("compute", 2), ResourceRequirement("io", 1),
        ])

    def test_priority_parsed(self):
        self.assertEqual(Task(name="scan", priority="critical").priority, Priority.CRITICAL)
        with self.assertRaises(ValueError):
            Task(name="scan", priority="urgent")

    def test_duplicate_dependencies_collapsed(self):
        task = Task(name="scan", depends_on=["task_a", "task_b", "task_a"])
        self.assertEqual(task.depends_on, ["task_a", "task_b"])

    def test_correlation_defaults_to_task_id(self):
        task = Task(name="scan")
        self.assertEqual(task.correlation_id, task.task_id)
        self.assertTrue(task.task_id.startswith("task_"))

    def test_negative_retries_rejected(self):
        with self.assertRaises(ValueError):
            Task(name="scan", max_retries=-1)

    def test_remaining_estimate(self):
        task = Task(name="scan", estimated_duration=100)
        self.assertEqual(task.remaining_estimate(50.0), 100)
        task.transition(TaskStatus.RUNNING, now=10.0)
        self.assertEqual(task.remaining_estimate(50.0), 60.0)


class TestQueueOrder(unittest.TestCase):

    def test_priority_then_front_then_deadline_then_age(self):
        low = Task(name="low", priority=Priority.LOW, created_at=1.0, seq=1)
        high_late = Task(name="high_late", priority=Priority.HIGH, created_at=5.0, seq=2)
        high_early = Task(name="high_early", priority=Priority.HIGH, created_at=2.0, seq=3)
        high_deadline = Task(name="high_deadline", priority=Priority.HIGH,
                             created_at=9.0, deadline=100.0, seq=4)
        high_front = Task(name="high_front", priority=Priority.HIGH, created_at=9.5, seq=5)
        high_front.front = True
        ordered = sorted([low, high_late, high_early, high_deadline, high_front],
                         key=lambda t: t.queue_key())
        self.assertEqual([t.name for t in ordered],
                         ["high_front", "high_deadline", "high_early", "high_late", "low"])


class TestRetryPolicy(unittest.TestCase):

    def test_exponential_backoff(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=60.0)
        self.assertEqual(policy.compute_delay(0), 1.0)
        self.assertEqual(policy.compute_delay(1), 2.0)
        self.assertEqual(policy.compute_delay(3), 8.0)

    def test_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=60.0)
        self.assertEqual(policy.compute_delay(10), 60.0)


class TestTaskContext(unittest.TestCase):

    def test_cancel_flag(self):
        ctx = TaskContext(task_id="task_1", name="scan", attempt=1, correlation_id="c1")
        self.assertFalse(ctx.is_cancelled())
        ctx.cancelled.set()
        self.assertTrue(ctx.is_cancelled())


class TestCheckpoint(unittest.TestCase):

    def test_checkpoint_restores_record(self):
        task = Task(name="scan", requirements=[("compute", 2)], priority="high",
                    max_retries=3, metadata={"context": "EU"})
        task.transition(TaskStatus.RUNNING, now=5.0)
        data = task.to_checkpoint()
        self.assertEqual(data["status"], "running")
        self.assertEqual(data["requirements"], [{"pool_id": "compute", "amount": 2}])

        restored = Task.from_checkpoint(data)
        self.assertEqual(restored.task_id, task.task_id)
        self.assertEqual(restored.priority, Priority.HIGH)
        self.assertEqual(restored.status, TaskStatus.RUNNING)
        self.assertEqual(restored.attempts, 1)
        self.assertEqual(restored.metadata, {"context": "EU"})
        self.assertIsNone(restored.action)


if __name__ == "__main__":
    unittest.main()
