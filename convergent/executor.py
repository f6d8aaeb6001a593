"""
Convergence executor.

Drives every task of an ExecutionPlan through Find -> CheckChanges -> Run
against one Target. Tasks start only once all their dependencies are done;
unrelated tasks run concurrently up to max_workers. A failed task blocks its
dependents, independent branches carry on, and nothing is rolled back: the
next pass re-applies whatever is still divergent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import (
    ApplyError,
    ConvergenceFailedError,
    DiscoveryError,
    TaskError,
    TaskValidationError,
)
from .resolver import ExecutionPlan
from .targets.base import Target
from .tasks.base import Task

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class TaskState(str, Enum):
    """Lifecycle of a task within one pass."""
    PENDING = "pending"
    FOUND = "found"
    DIFFED = "diffed"
    APPLIED = "applied"
    SKIPPED = "skipped"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"        # A dependency failed or was blocked
    CANCELLED = "cancelled"    # Pass cancelled before the task started


# Step running in each state, and the error wrapping exceptions that are not
# already TaskErrors
_STEPS = {
    TaskState.PENDING: ("find", DiscoveryError),
    TaskState.FOUND: ("check_changes", TaskValidationError),
    TaskState.DIFFED: ("run", ApplyError),
}


@dataclass
class TaskResult:
    """Outcome of one task in a pass."""

    key: str
    state: TaskState = TaskState.PENDING
    history: List[TaskState] = field(default_factory=lambda: [TaskState.PENDING])
    changes: Optional[Task] = None
    error: Optional[TaskError] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def transition(self, state: TaskState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def applied(self) -> bool:
        return TaskState.APPLIED in self.history

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "applied": self.applied,
            "changes": self.changes.changed_values() if self.changes is not None else {},
            "error": str(self.error) if self.error else None,
            "duration": self.duration,
        }


@dataclass
class PassResult:
    """Outcome of a whole convergence pass."""

    order: List[str]
    results: Dict[str, TaskResult]

    def _keys_in(self, *states: TaskState) -> List[str]:
        return [key for key in self.order if self.results[key].state in states]

    @property
    def succeeded(self) -> List[str]:
        return self._keys_in(TaskState.DONE)

    @property
    def failed(self) -> List[str]:
        return self._keys_in(TaskState.FAILED)

    @property
    def blocked(self) -> List[str]:
        return self._keys_in(TaskState.BLOCKED)

    @property
    def not_attempted(self) -> List[str]:
        return self._keys_in(TaskState.BLOCKED, TaskState.CANCELLED, TaskState.PENDING)

    @property
    def applied(self) -> List[str]:
        return [key for key in self.order if self.results[key].applied]

    @property
    def errors(self) -> Dict[str, TaskError]:
        return {key: self.results[key].error for key in self.failed}

    @property
    def success(self) -> bool:
        return len(self.succeeded) == len(self.order)

    def raise_for_errors(self) -> None:
        """Raise ConvergenceFailedError if any task failed."""
        if self.failed:
            raise ConvergenceFailedError(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "blocked": self.blocked,
            "not_attempted": self.not_attempted,
            "tasks": [self.results[key].to_dict() for key in self.order],
        }


class ConvergenceExecutor:
    """Runs an execution plan against a target.

    Attributes:
        target: Where changes are applied; shared by every task in the pass
        max_workers: Maximum number of tasks processed at the same time
    """

    def __init__(self, target: Target, max_workers: int = DEFAULT_MAX_WORKERS):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.target = target
        self.max_workers = max_workers
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Stop starting new tasks of the current pass.

        Tasks already running are allowed to finish. The next execute() starts
        uncancelled.
        """
        logger.warning("Convergence pass cancelled; waiting for in-flight tasks")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def execute(self, plan: ExecutionPlan) -> PassResult:
        """
        Converge every task of the plan.

        Args:
            plan: Resolved plan

        Returns:
            PassResult describing every task's final state
        """
        self._cancelled.clear()
        results = {key: TaskResult(key=key) for key in plan.order}
        pending = list(plan.order)
        running: Dict[asyncio.Task, str] = {}

        logger.info(f"Converging {len(pending)} tasks against {self.target!r}")

        while pending or running:
            if self.cancelled:
                for key in pending:
                    results[key].transition(TaskState.CANCELLED)
                pending.clear()
            else:
                self._start_ready(plan, results, pending, running)

            if not running:
                continue

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                running.pop(finished)

        result = PassResult(order=list(plan.order), results=results)
        logger.info(
            f"Convergence pass finished: {len(result.succeeded)} done, "
            f"{len(result.failed)} failed, {len(result.not_attempted)} not attempted"
        )
        return result

    def _start_ready(
        self,
        plan: ExecutionPlan,
        results: Dict[str, TaskResult],
        pending: List[str],
        running: Dict[asyncio.Task, str],
    ) -> None:
        """Start pending tasks whose dependencies are done, in plan order.

        Tasks whose dependencies failed are marked blocked; since pending is in
        topological order, blocking cascades to their dependents in one sweep.
        """
        for key in list(pending):
            dependency_states = [results[d].state for d in plan.dependencies[key]]

            if any(state in (TaskState.FAILED, TaskState.BLOCKED) for state in dependency_states):
                logger.warning(f"Not attempting {key}: a dependency failed")
                results[key].transition(TaskState.BLOCKED)
                pending.remove(key)
                continue

            if len(running) >= self.max_workers:
                continue

            if all(state is TaskState.DONE for state in dependency_states):
                pending.remove(key)
                task = plan.tasks[key]
                running[asyncio.create_task(self._converge_task(task, results[key]))] = key

    async def _converge_task(self, task: Task, result: TaskResult) -> None:
        """Find, diff and apply one task, recording the outcome on result."""
        result.started_at = time.monotonic()
        logger.debug(f"Converging {task}")
        try:
            actual = await task.find(self.target)
            result.transition(TaskState.FOUND)

            changes = task.check_changes(actual)
            result.changes = changes
            result.transition(TaskState.DIFFED)

            if changes.is_empty() and not task.should_run_unchanged(actual):
                logger.debug(f"{task}: no changes")
                result.transition(TaskState.SKIPPED)
            else:
                if not changes.is_empty():
                    logger.info(f"{task}: applying changes to {', '.join(changes.changed_fields())}")
                elif actual is None:
                    logger.info(f"{task}: creating")
                await task.run(self.target, actual, changes)
                result.transition(TaskState.APPLIED)

            result.transition(TaskState.DONE)
        except TaskError as e:
            if e.task is None:
                e.task = task
            self._fail(task, result, e)
        except Exception as e:
            step, error_class = _STEPS[result.state]
            error = error_class(f"{task}: error during {step}: {e}", task=task)
            error.__cause__ = e
            self._fail(task, result, error)
        finally:
            result.finished_at = time.monotonic()

    def _fail(self, task: Task, result: TaskResult, error: TaskError) -> None:
        step, _ = _STEPS.get(result.state, (result.state.value, None))
        logger.error(f"{task} failed in {step}: {error}")
        result.error = error
        result.transition(TaskState.FAILED)
