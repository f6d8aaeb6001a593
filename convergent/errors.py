"""
Convergent errors.

Task-level errors carry the task they belong to so a pass can report which
tasks failed. Graph and configuration errors abort a pass before any task runs.
"""

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from .executor import PassResult


class ConvergentError(Exception):
    """Base exception for all Convergent errors."""
    pass


class ConfigurationError(ConvergentError):
    """Errors in configuration or in the task set itself."""
    pass


class DuplicateTaskError(ConfigurationError):
    """Two tasks in one task set share the same key."""
    pass


class DependencyCycleError(ConfigurationError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, cycles: Sequence[Sequence[str]]):
        self.cycles = [list(cycle) for cycle in cycles]
        described = "; ".join(" -> ".join(cycle) for cycle in self.cycles)
        super().__init__(f"Dependency cycle detected: {described}")


class TaskError(ConvergentError):
    """An error attributed to a single task."""

    def __init__(self, message: str, task: Any = None):
        self.task = task
        super().__init__(message)


class TaskValidationError(TaskError):
    """Desired state requests an impossible combination of fields."""
    pass


class DiscoveryError(TaskError):
    """Actual state could not be read."""
    pass


class ApplyError(TaskError):
    """Changes could not be applied."""
    pass


class UnsupportedTargetError(ApplyError):
    """The task has no render implementation for the given target."""
    pass


class CommandError(ConvergentError):
    """An external command exited unsuccessfully."""

    def __init__(self, args: Sequence[str], returncode: int | None, output: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"error running {' '.join(self.command)!r} (exit {returncode})\nOutput: {output}"
        )


class CommandTimeoutError(CommandError):
    """An external command did not finish within its timeout."""

    def __init__(self, args: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(args, None, f"timed out after {timeout}s")


class VerificationError(ConvergentError):
    """The node failed the pre-convergence identity check."""
    pass


class ConvergenceFailedError(ConvergentError):
    """At least one task failed during a convergence pass."""

    def __init__(self, result: "PassResult"):
        self.result = result
        lines = [f"{key}: {error}" for key, error in result.errors.items()]
        blocked = result.blocked
        message = f"{len(lines)} task(s) failed:\n  " + "\n  ".join(lines)
        if blocked:
            message += f"\nNot attempted (blocked by a failed dependency): {', '.join(blocked)}"
        super().__init__(message)
