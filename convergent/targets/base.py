"""Base target: where a convergence pass reads actual state from."""

import asyncio
import grp
import logging
import os
import pwd
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from convergent.distributions import Distribution, distribution_from_id, find_distribution
from convergent.errors import CommandError, CommandTimeoutError

if TYPE_CHECKING:
    from convergent.tasks.base import Task

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COMMAND_TIMEOUT = 120.0


class Target:
    """Destination of a convergence pass.

    The base class carries everything tasks need to discover actual state:
    a filesystem root, the distribution installed under it (resolved once and
    cached), read-only file helpers and a read-only command runner. Every
    external call is bounded by command_timeout.

    Subclasses decide what applying changes means by implementing render(),
    which calls back into the matching render_* method of the task.

    Attributes:
        root: Filesystem root every task path is resolved against
        detect_root: Root whose os-release names the distribution (default: root)
        command_timeout: Timeout in seconds for each external action
    """

    kind = "base"

    def __init__(
        self,
        root: Path | str = "/",
        distribution: Distribution | str | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        detect_root: Path | str | None = None,
    ):
        self.root = Path(root)
        self.detect_root = Path(detect_root) if detect_root is not None else self.root
        self.command_timeout = command_timeout
        if isinstance(distribution, str):
            distribution = distribution_from_id(distribution)
        self._distribution = distribution
        self._locks: dict[str, asyncio.Lock] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(root={str(self.root)!r})"

    @property
    def distribution(self) -> Distribution:
        """Distribution under detect_root, detected on first use."""
        if self._distribution is None:
            self._distribution = find_distribution(self.detect_root)
        return self._distribution

    def path(self, path: str | os.PathLike) -> Path:
        """Map an absolute task path onto this target's root."""
        relative = str(path).lstrip("/")
        return self.root / relative

    def lock(self, path: str | os.PathLike) -> asyncio.Lock:
        """Per-path lock serializing writes to the same resource."""
        key = str(self.path(path))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _bounded(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking call in a thread, bounded by the command timeout."""
        return await asyncio.wait_for(asyncio.to_thread(func, *args), self.command_timeout)

    async def read_file(self, path: str | os.PathLike) -> Optional[str]:
        """Read a text file, returning None when it does not exist."""
        full_path = self.path(path)

        def _read() -> Optional[str]:
            try:
                return full_path.read_text()
            except FileNotFoundError:
                return None

        return await self._bounded(_read)

    async def lstat(self, path: str | os.PathLike) -> Optional[os.stat_result]:
        """lstat a path, returning None when it does not exist."""
        full_path = self.path(path)

        def _lstat() -> Optional[os.stat_result]:
            try:
                return os.lstat(full_path)
            except FileNotFoundError:
                return None

        return await self._bounded(_lstat)

    async def mtime(self, path: str | os.PathLike) -> Optional[datetime]:
        """Modification time of a path as an aware datetime, or None if missing."""
        st = await self.lstat(path)
        if st is None:
            return None
        if stat.S_ISLNK(st.st_mode):
            # Follow the link; a dangling link counts as missing
            try:
                st = await self._bounded(os.stat, self.path(path))
            except FileNotFoundError:
                return None
        return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)

    async def read_link(self, path: str | os.PathLike) -> str:
        return await self._bounded(os.readlink, self.path(path))

    @staticmethod
    def owner_of(st: os.stat_result) -> tuple[str, str]:
        """Resolve the user and group names of a stat result."""
        try:
            user = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            user = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return user, group

    async def _run_command(self, args: tuple[str, ...], env: Optional[dict[str, str]] = None) -> str:
        """Run a command, returning combined stdout/stderr.

        Raises:
            CommandTimeoutError: If it does not finish within command_timeout
            CommandError: If it exits non-zero
        """
        logger.debug(f"Running {' '.join(args)}")
        process_env = None
        if env:
            process_env = {**os.environ, **env}
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=process_env,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CommandTimeoutError(args, self.command_timeout) from None

        output = stdout.decode(errors="replace")
        if process.returncode != 0:
            raise CommandError(args, process.returncode, output)
        return output

    async def query(self, *args: str) -> str:
        """Run a read-only command (e.g. `systemctl show`) and return its output."""
        return await self._run_command(args)

    async def render(self, task: "Task", actual: Any, changes: "Task") -> None:
        """Apply changes for task; implemented by concrete targets."""
        raise NotImplementedError(f"{type(self).__name__} must implement render()")
