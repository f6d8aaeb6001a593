"""Base task classes for Convergent."""

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Self

from pydantic import BaseModel, ConfigDict

from convergent.errors import DuplicateTaskError, UnsupportedTargetError

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.dryrun import DryRunTarget
    from convergent.targets.install import InstallTarget
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)


class Task(BaseModel):
    """Base task class - every unit of desired state inherits from this.

    A task describes the desired state of exactly one resource (a file, a
    service, a package...). The same class is used for three values during a
    convergence pass:

    - the desired state, built by the caller;
    - the actual state, returned fresh by find();
    - the changes, returned by check_changes(), where every field left as
      None means "no change required".

    Desired fields are Optional and default to None so that "not specified"
    and "explicitly false/absent" stay distinguishable. init_defaults() fills
    the unset ones before a pass begins.

    Dependencies are not stored on the task. get_dependencies() derives them
    from the whole task set every time the graph is resolved, usually by
    matching the capability tags other task classes declare.

    Attributes:
        name: Stable identifier, unique per task class within a task set
        tags: Capability tags other tasks use to classify this one
        NON_DIFF_FIELDS: Fields never compared by check_changes()
    """

    model_config = ConfigDict(extra="forbid")

    tags: ClassVar[frozenset[str]] = frozenset()
    NON_DIFF_FIELDS: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def key(self) -> str:
        """Graph node key and log identity, e.g. "Service/kubelet.service"."""
        return f"{self.kind}/{self.name}"

    def __str__(self) -> str:
        return self.key

    def init_defaults(self) -> Self:
        """Fill unset fields with their deterministic defaults.

        Called once per pass, before resolution. Subclasses override to set
        their tri-state defaults and return self.
        """
        return self

    async def find(self, target: "Target") -> Optional[Self]:
        """Read the actual state of this resource from the target.

        Must not mutate anything. Returns None when the resource does not
        exist; raises only for genuine I/O or system failures.
        """
        raise NotImplementedError(f"{self.kind} must implement find()")

    def check_changes(self, actual: Optional[Self]) -> Self:
        """Diff actual state against this (desired) task.

        Returns a task of the same class where only the fields that must change
        are set. Subclasses may raise TaskValidationError for impossible
        desired states.
        """
        return build_changes(actual, self)

    def should_run_unchanged(self, actual: Optional[Self]) -> bool:
        """Whether run() should be called even when there are no changes.

        A missing resource always needs work, even if desired sets no
        diffable field (e.g. a Group without a gid).
        """
        return actual is None

    async def run(self, target: "Target", actual: Optional[Self], changes: Self) -> None:
        """Apply changes through the target.

        The target picks the render method for its own kind, so tasks never
        branch on the target type themselves.
        """
        await target.render(self, actual, changes)

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        raise UnsupportedTargetError(f"{self.key} cannot be applied to a local target", task=self)

    async def render_install(self, target: "InstallTarget", actual: Optional[Self], changes: Self) -> None:
        raise UnsupportedTargetError(f"{self.key} cannot be applied to an install target", task=self)

    async def render_dryrun(self, target: "DryRunTarget", actual: Optional[Self], changes: Self) -> None:
        """Record what run() would do instead of doing it."""
        target.record(self, actual, changes)

    def get_dependencies(self, tasks: Mapping[str, "Task"]) -> list["Task"]:
        """Return the tasks in the set that must be done before this one."""
        return []

    def precedes(self, other: "Task") -> bool:
        """Whether this task may be a dependency of other.

        Lets a task narrow down which dependents match it by tag.
        """
        return True

    def changed_fields(self) -> list[str]:
        """Names of the diffable fields that are set on this value."""
        return [
            field
            for field in type(self).model_fields
            if field not in self.NON_DIFF_FIELDS and getattr(self, field) is not None
        ]

    def changed_values(self) -> dict[str, Any]:
        return {field: getattr(self, field) for field in self.changed_fields()}

    def is_empty(self) -> bool:
        """True when used as a Changes value that requires nothing."""
        return not self.changed_fields()


def build_changes(actual: Optional[Task], desired: Task) -> Task:
    """Build the default field-by-field Changes between actual and desired.

    A field is set on the result when desired sets it (not None) and actual
    is missing or holds a different value. Fields desired leaves unset are
    never reported, so a converged resource yields an empty Changes.
    """
    changed = {}
    for field in type(desired).model_fields:
        if field in desired.NON_DIFF_FIELDS:
            continue
        desired_value = getattr(desired, field)
        if desired_value is None:
            continue
        if actual is None or getattr(actual, field) != desired_value:
            changed[field] = desired_value

    return type(desired).model_construct(name=desired.name, **changed)


def tasks_tagged(tasks: Mapping[str, Task], *tags: str) -> Iterator[Task]:
    """Iterate over tasks carrying any of the given tags."""
    wanted = frozenset(tags)
    for task in tasks.values():
        if task.tags & wanted:
            yield task


class TaskSet(Mapping):
    """Read-only dict-like collection of the tasks for one pass.

    Keys are task keys ("Kind/name"). Building a set with two tasks of the
    same key raises DuplicateTaskError.

    Example:
        >>> tasks = TaskSet([Service(name="kubelet.service"), File(name="/etc/motd")])
        >>> tasks["Service/kubelet.service"].name
        'kubelet.service'
    """

    def __init__(self, tasks: Iterable[Task]):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if not isinstance(task, Task):
                raise TypeError(f"Can only add Task objects, got {type(task).__name__}")
            if task.key in self._tasks:
                raise DuplicateTaskError(f"Duplicate task {task.key!r} in task set")
            self._tasks[task.key] = task

    def __getitem__(self, key: str) -> Task:
        return self._tasks[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __repr__(self) -> str:
        return f"TaskSet({sorted(self._tasks)})"
