"""
Terraform-style output formatting for Convergent passes.

Plans use `+` for resources that would be created, `~` for resources that
would be updated and `-/+` for services that would only be restarted; pass
summaries list every task with its final state.
"""

from typing import List, Optional

from rich.console import Console
from rich.text import Text

from .executor import PassResult, TaskState
from .targets.dryrun import PlannedChange


class PassFormatter:
    """
    Formatter for convergence passes and dry-run plans.
    """

    def __init__(self, console: Optional[Console] = None):
        """Initialize formatter with Rich console."""
        self.console = console or Console()

        self.colors = {
            'create': 'green',
            'update': 'yellow',
            'restart': 'yellow',
            'failed': 'red',
            'blocked': 'magenta',
            'skipped': 'dim',
            'header': 'bold blue',
            'attribute': 'cyan',
        }

        self.symbols = {
            'create': '+',
            'update': '~',
            'restart': '-/+',
        }

        self.state_styles = {
            TaskState.DONE: 'green',
            TaskState.FAILED: 'red',
            TaskState.BLOCKED: 'magenta',
            TaskState.CANCELLED: 'dim',
            TaskState.PENDING: 'dim',
        }

    def format_plan(self, changes: List[PlannedChange]) -> Text:
        """
        Format the changes recorded by a dry-run target.

        Args:
            changes: Planned changes in execution order

        Returns:
            Formatted plan
        """
        output = Text()
        if not changes:
            output.append("No changes. The node matches the desired state.\n", style=self.colors['header'])
            return output

        output.append("Convergent will perform the following actions:\n\n", style=self.colors['header'])
        for change in changes:
            operation = change.operation
            style = self.colors[operation]
            output.append(f"  {self.symbols[operation]} {change.key}\n", style=style)
            for name, value in change.changes.items():
                rendered = self._render_value(value)
                output.append(f"      {name}", style=self.colors['attribute'])
                output.append(f" = {rendered}\n")
            output.append("\n")

        creates = sum(1 for c in changes if c.operation == 'create')
        restarts = sum(1 for c in changes if c.operation == 'restart')
        updates = len(changes) - creates - restarts
        summary = f"Plan: {creates} to create, {updates} to change"
        if restarts:
            summary += f", {restarts} to restart"
        output.append(f"{summary}.\n", style='bold')
        return output

    def format_result(self, result: PassResult) -> Text:
        """
        Format the per-task outcome of a pass.

        Args:
            result: Pass result

        Returns:
            Formatted summary
        """
        output = Text()
        for key in result.order:
            task_result = result.results[key]
            state = task_result.state
            label = state.value
            if state is TaskState.DONE:
                label = "applied" if task_result.applied else "unchanged"
            output.append(f"  {label:<10}", style=self.state_styles.get(state, 'white'))
            output.append(f" {key}\n")
            if task_result.error is not None:
                output.append(f"             {task_result.error}\n", style=self.colors['failed'])

        output.append(
            f"\n{len(result.applied)} applied, {len(result.succeeded) - len(result.applied)} unchanged, "
            f"{len(result.failed)} failed, {len(result.not_attempted)} not attempted.\n",
            style='bold',
        )
        return output

    def print_plan(self, changes: List[PlannedChange]) -> None:
        self.console.print(self.format_plan(changes))

    def print_result(self, result: PassResult) -> None:
        self.console.print(self.format_result(result))

    @staticmethod
    def _render_value(value) -> str:
        if isinstance(value, str) and "\n" in value:
            lines = value.count("\n") + (0 if value.endswith("\n") else 1)
            return f"<{lines} lines>"
        return repr(value)
