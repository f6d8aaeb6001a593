"""
Convergent Core - declarative convergence for node resources.

Apply Pipeline: Load tasks → Verify node → Init defaults → Resolve order → Converge
Plan Pipeline: Same, against a dry-run target that only records changes
"""

import importlib.util
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from .errors import ConfigurationError, VerificationError
from .executor import ConvergenceExecutor, PassResult
from .resolver import DependencyResolver
from .settings import ConvergentSettings, get_settings
from .targets import DryRunTarget, InstallTarget, LocalTarget, Target
from .tasks.base import Task, TaskSet

logger = logging.getLogger(__name__)


@runtime_checkable
class NodeVerifier(Protocol):
    """External identity check a node must pass before it is configured.

    Implementations raise VerificationError (or return False) when the node
    cannot be trusted. Convergent itself contains no verification logic.
    """

    async def verify(self) -> bool:
        ...


class ConvergentCore:
    """Main coordinator for the Convergent pipeline."""

    def __init__(
        self,
        settings: ConvergentSettings | None = None,
        verifier: NodeVerifier | None = None,
        resolver: DependencyResolver | None = None,
    ):
        """
        Initialize ConvergentCore.

        Args:
            settings: Settings to use (defaults to the global settings)
            verifier: Optional identity check run before any task is touched
            resolver: Dependency resolver (defaults to DependencyResolver())
        """
        self.settings = settings or get_settings()
        self.verifier = verifier
        self.resolver = resolver or DependencyResolver()

        logger.info("ConvergentCore initialized")

    def create_target(self, dry_run: bool = False) -> Target:
        """Build the target selected by settings (or a dry-run target)."""
        settings = self.settings
        common = {
            "distribution": settings.distribution,
            "command_timeout": settings.command_timeout,
        }
        if dry_run or settings.target == "dryrun":
            return DryRunTarget(settings.root_path, **common)
        if settings.target == "install":
            return InstallTarget(settings.install_dir, **common)
        return LocalTarget(settings.root_path, **common)

    async def apply(self, main_file: Path, dry_run: bool = False) -> PassResult:
        """
        Full pipeline: load → verify → resolve → converge.

        Args:
            main_file: Path to a Python file defining Task objects
            dry_run: If True, only record the changes that would be applied

        Returns:
            PassResult of the convergence pass
        """
        logger.info(f"Starting Convergent pipeline for: {main_file}")

        tasks = self.load_tasks(main_file)
        logger.info(f"Loaded {len(tasks)} tasks")

        target = self.create_target(dry_run=dry_run)
        result = await self.converge(tasks, target)

        if isinstance(target, InstallTarget) and result.success:
            target.write_payload()

        logger.info("Convergent pipeline complete")
        return result

    async def plan(self, main_file: Path) -> PassResult:
        """Plan mode: converge against a dry-run target."""
        return await self.apply(main_file, dry_run=True)

    async def converge(
        self,
        tasks: Iterable[Task],
        target: Target,
        executor: Optional[ConvergenceExecutor] = None,
    ) -> PassResult:
        """
        Run one convergence pass of tasks against target.

        Args:
            tasks: Desired-state tasks for the pass
            target: Where changes are applied
            executor: Executor to use (defaults to one sized by settings)

        Returns:
            PassResult of the pass

        Raises:
            VerificationError: If the node verifier rejects the node
            DependencyCycleError: If the tasks depend on each other cyclically
        """
        await self._verify_node()

        task_set = TaskSet(task.init_defaults() for task in tasks)
        plan = self.resolver.resolve(task_set)
        logger.info(f"Resolved {len(plan.order)} tasks in dependency order")

        executor = executor or ConvergenceExecutor(target, max_workers=self.settings.max_workers)
        return await executor.execute(plan)

    async def _verify_node(self) -> None:
        if self.verifier is None:
            return
        logger.info("Verifying node identity before convergence")
        try:
            verified = await self.verifier.verify()
        except VerificationError:
            raise
        except Exception as e:
            raise VerificationError(f"Node verification failed: {e}") from e
        if verified is False:
            raise VerificationError("Node verification was rejected")

    def load_tasks(self, main_file: Path) -> List[Task]:
        """
        Load tasks from a Python file by executing it.

        Every module-level Task instance, and every Task inside a module-level
        list or tuple, is collected.

        Args:
            main_file: Path to the file

        Returns:
            List of Task objects
        """
        if not main_file.exists():
            raise FileNotFoundError(f"File not found: {main_file}")

        # Load the module dynamically
        spec = importlib.util.spec_from_file_location("convergent_main", main_file)
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not load {main_file}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        tasks = []
        seen = set()
        for name, obj in vars(module).items():
            candidates = obj if isinstance(obj, (list, tuple)) else [obj]
            for candidate in candidates:
                if isinstance(candidate, Task) and id(candidate) not in seen:
                    seen.add(id(candidate))
                    tasks.append(candidate)
                    logger.debug(f"Found task: {name} ({candidate})")

        if not tasks:
            raise ConfigurationError(f"No tasks found in {main_file}")

        return tasks
