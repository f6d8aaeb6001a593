"""Dry-run target: records the changes a pass would apply."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .base import Target

if TYPE_CHECKING:
    from convergent.tasks.base import Task

logger = logging.getLogger(__name__)


@dataclass
class PlannedChange:
    """A change a task would apply.

    Attributes:
        key: Task key, e.g. "File//etc/motd"
        kind: Task class name
        changes: Field name -> new value for every field that would change
        exists: Whether the resource already exists on the target
        action: Side effect planned without a field change, e.g. "restart"
    """

    key: str
    kind: str
    changes: Dict[str, Any] = field(default_factory=dict)
    exists: bool = False
    action: Optional[str] = None

    @property
    def operation(self) -> str:
        if not self.exists:
            return "create"
        if self.action and not self.changes:
            return self.action
        return "update"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind,
            "operation": self.operation,
            "changes": self.changes,
        }


class DryRunTarget(Target):
    """Target that reads actual state but never mutates anything.

    Find still runs against the real root so previews reflect live state.
    render() hands each task to its render_dryrun(), which records a
    PlannedChange through record(). Records are keyed by task, so the
    order workers happen to finish in never leaks into the output.
    """

    kind = "dryrun"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._planned: Dict[str, PlannedChange] = {}

    @property
    def changes(self) -> List[PlannedChange]:
        """Planned changes sorted by task key."""
        return [self._planned[key] for key in sorted(self._planned)]

    def ordered_changes(self, order: Iterable[str]) -> List[PlannedChange]:
        """Planned changes in execution plan order."""
        return [self._planned[key] for key in order if key in self._planned]

    async def render(self, task: "Task", actual: Any, changes: "Task") -> None:
        await task.render_dryrun(self, actual, changes)

    def record(self, task: "Task", actual: Any, changes: "Task", action: Optional[str] = None) -> None:
        """Store what task would do; a no-op for an existing, converged resource."""
        if changes.is_empty() and actual is not None and action is None:
            return
        planned = PlannedChange(
            key=task.key,
            kind=task.kind,
            changes=changes.changed_values(),
            exists=actual is not None,
            action=action,
        )
        logger.info(f"Dry run: would {planned.operation} {task.key}: {sorted(planned.changes)}")
        self._planned[task.key] = planned
