"""
Test doubles shared by the Convergent test suite.
"""

import asyncio
import os
from collections.abc import Mapping
from datetime import datetime
from typing import ClassVar, Optional, Self

from convergent.errors import CommandError
from convergent.targets import LocalTarget
from convergent.tasks.base import Task


class RecordingTarget(LocalTarget):
    """Local target rooted in a temp dir whose commands are scripted.

    Files are really written under root; commands are recorded instead of
    run. Query responses and command failures are keyed by the full argv.
    """

    def __init__(self, root, distribution="ubuntu", **kwargs):
        super().__init__(root=root, distribution=distribution, **kwargs)
        self.executed: list[list[str]] = []
        self.queries: list[list[str]] = []
        self.responses: dict[tuple[str, ...], str] = {}
        self.failures: dict[tuple[str, ...], tuple[int, str]] = {}
        self.chowns: list[tuple[str, Optional[str], Optional[str]]] = []
        # Used by StepTask
        self.state: dict[str, str] = {}
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    def respond(self, *args: str, output: str) -> None:
        self.responses[args] = output

    def fail(self, *args: str, returncode: int = 1, output: str = "") -> None:
        self.failures[args] = (returncode, output)

    def seed(self, path: str, contents: str = "", mtime: Optional[datetime] = None) -> str:
        """Create a file under root, optionally with a fixed modification time."""
        full_path = self.path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(contents)
        if mtime is not None:
            stamp = mtime.timestamp()
            os.utime(full_path, (stamp, stamp))
        return str(full_path)

    def _check_failure(self, args: tuple[str, ...]) -> None:
        if args in self.failures:
            returncode, output = self.failures[args]
            raise CommandError(args, returncode, output)

    async def query(self, *args: str) -> str:
        self.queries.append(list(args))
        self._check_failure(args)
        return self.responses.get(args, "")

    async def execute(self, *args: str, env: Optional[dict[str, str]] = None) -> str:
        self.executed.append(list(args))
        self._check_failure(args)
        return ""

    async def chown(self, path, user: Optional[str], group: Optional[str]) -> None:
        self.chowns.append((str(path), user, group))
        await super().chown(path, user, group)


class StepTask(Task):
    """Synthetic task whose actual state lives in RecordingTarget.state.

    Dependencies are named explicitly through `after`; `delay` and `fail_in`
    shape how the task behaves while converging.
    """

    tags: ClassVar[frozenset[str]] = frozenset({"step"})
    NON_DIFF_FIELDS: ClassVar[frozenset[str]] = frozenset({"name", "after", "delay", "fail_in"})

    value: Optional[str] = None
    after: Optional[list[str]] = None
    delay: float = 0.0
    fail_in: Optional[str] = None

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        return [tasks[f"StepTask/{name}"] for name in self.after or []]

    async def find(self, target: RecordingTarget) -> Optional[Self]:
        target.events.append(("find", self.key))
        target.active += 1
        target.max_active = max(target.max_active, target.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            target.active -= 1
        if self.fail_in == "find":
            raise RuntimeError("disk on fire")
        if self.name not in target.state:
            return None
        return type(self)(name=self.name, value=target.state[self.name])

    async def render_local(self, target: RecordingTarget, actual: Optional[Self], changes: Self) -> None:
        if self.fail_in == "run":
            raise RuntimeError("apply exploded")
        target.state[self.name] = self.value
        target.events.append(("run", self.key))
