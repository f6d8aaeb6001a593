"""
Convergent CLI - converge a node to the tasks declared in main.py.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .core import ConvergentCore
from .formatters import PassFormatter
from .settings import get_settings
from .targets import DryRunTarget

# Setup
app = typer.Typer(
    name="convergent",
    help="Declarative convergence of node configuration",
    add_completion=False,
)
console = Console()


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Configure logging on module import
configure_logging()


def _get_main_file(file: Optional[Path]) -> Path:
    """Return the task file to load, defaulting to ./main.py.

    Raises:
        SystemExit: If the file is not found
    """
    main_file = file or Path.cwd() / "main.py"
    if not main_file.exists():
        console.print(f"[bold red]✗ Error:[/bold red] {main_file} not found")
        console.print("[dim]Hint: pass --file or cd into a directory that contains main.py[/dim]")
        raise typer.Exit(code=1)
    return main_file


def _create_command_panel(title: str, color: str, main_file: Path) -> Panel:
    settings = get_settings()
    target = "dryrun" if title.endswith("Plan") else settings.target
    return Panel.fit(
        f"[bold {color}]{title}[/bold {color}]\n"
        f"File: {main_file}\n"
        f"Target: {target} (root {settings.root_path})",
        border_style=color,
    )


def _apply_overrides(root: Optional[Path], workers: Optional[int]) -> None:
    settings = get_settings()
    if root is not None:
        settings.root_path = str(root)
    if workers is not None:
        settings.max_workers = workers


@app.command()
def apply(
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Task file (default: ./main.py)"),
    root: Optional[Path] = typer.Option(None, "--root", help="Filesystem root (overrides settings)"),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, help="Concurrent tasks (overrides settings)"),
):
    """Converge the node: find, diff and apply every task."""
    main_file = _get_main_file(file)
    _apply_overrides(root, workers)
    console.print(_create_command_panel("Convergent Apply", "blue", main_file))

    try:
        result = asyncio.run(ConvergentCore().apply(main_file))
    except Exception as e:
        console.print(f"\n[bold red]✗ Apply failed:[/bold red] {e}")
        raise typer.Exit(code=1)

    PassFormatter(console).print_result(result)
    if result.success:
        console.print("[bold green]✓ Node converged[/bold green]")
    else:
        console.print("[bold red]✗ Convergence incomplete; re-run after fixing the errors above[/bold red]")
        raise typer.Exit(code=1)


@app.command()
def plan(
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Task file (default: ./main.py)"),
    root: Optional[Path] = typer.Option(None, "--root", help="Filesystem root (overrides settings)"),
):
    """Preview the changes a convergence pass would apply."""
    main_file = _get_main_file(file)
    _apply_overrides(root, None)
    console.print(_create_command_panel("Convergent Plan", "cyan", main_file))

    core = ConvergentCore()
    target = core.create_target(dry_run=True)
    try:
        tasks = core.load_tasks(main_file)
        result = asyncio.run(core.converge(tasks, target))
    except Exception as e:
        console.print(f"\n[bold red]✗ Plan failed:[/bold red] {e}")
        raise typer.Exit(code=1)

    formatter = PassFormatter(console)
    if isinstance(target, DryRunTarget):
        formatter.print_plan(target.ordered_changes(result.order))
    if not result.success:
        formatter.print_result(result)
        raise typer.Exit(code=1)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
