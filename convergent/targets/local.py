"""Local target: applies changes directly to the machine under root."""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from .base import Target

if TYPE_CHECKING:
    from convergent.tasks.base import Task

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755


class LocalTarget(Target):
    """Target that mutates the live filesystem and runs commands.

    Writes to one path are serialized through the per-path lock, and each
    file or command operation is bounded by command_timeout.
    """

    kind = "local"

    async def render(self, task: "Task", actual: Any, changes: "Task") -> None:
        await task.render_local(self, actual, changes)

    async def execute(self, *args: str, env: Optional[dict[str, str]] = None) -> str:
        """Run a mutating command and return its output."""
        return await self._run_command(args, env)

    async def write_file(
        self,
        path: str | os.PathLike,
        contents: str,
        mode: int = DEFAULT_FILE_MODE,
        dir_mode: int = DEFAULT_DIR_MODE,
    ) -> None:
        """Write contents atomically, creating parent directories."""
        full_path = self.path(path)

        def _write() -> None:
            full_path.parent.mkdir(mode=dir_mode, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=f".{full_path.name}.")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(contents)
                os.chmod(tmp_name, mode)
                os.replace(tmp_name, full_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

        async with self.lock(path):
            logger.debug(f"Writing file {full_path} (mode {mode:o})")
            await self._bounded(_write)

    async def make_dir(self, path: str | os.PathLike, mode: int = DEFAULT_DIR_MODE) -> None:
        full_path = self.path(path)
        async with self.lock(path):
            logger.debug(f"Creating directory {full_path}")
            await self._bounded(lambda: full_path.mkdir(mode=mode, parents=True, exist_ok=True))

    async def symlink(self, path: str | os.PathLike, link_target: str) -> None:
        """Point path at link_target, replacing whatever is there."""
        full_path = self.path(path)

        def _link() -> None:
            full_path.parent.mkdir(mode=DEFAULT_DIR_MODE, parents=True, exist_ok=True)
            if full_path.is_symlink() or full_path.exists():
                full_path.unlink()
            os.symlink(link_target, full_path)

        async with self.lock(path):
            logger.debug(f"Linking {full_path} -> {link_target}")
            await self._bounded(_link)

    async def chmod(self, path: str | os.PathLike, mode: int) -> None:
        full_path = self.path(path)
        async with self.lock(path):
            await self._bounded(os.chmod, full_path, mode)

    async def chown(self, path: str | os.PathLike, user: Optional[str], group: Optional[str]) -> None:
        full_path = self.path(path)
        async with self.lock(path):
            await self._bounded(lambda: shutil.chown(full_path, user=user, group=group))
