"""Install target: stages files under a directory and records commands."""

import logging
import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from .local import LocalTarget

if TYPE_CHECKING:
    from convergent.tasks.base import Task

logger = logging.getLogger(__name__)

PAYLOAD_SCRIPT = "install.sh"


class InstallTarget(LocalTarget):
    """Target that builds an install payload instead of touching the live system.

    Files are written under the staging directory exactly as they would be
    laid out on the machine. Commands are not executed; they are appended to
    an install script that write_payload() emits next to the staged files, to
    be run when the payload is installed.

    The staging directory holds no os-release, so unless one is given the
    distribution is detected from the host the payload is built on.

    Example:
        >>> target = InstallTarget("/tmp/payload", distribution="ubuntu")
        >>> # ... run a pass against target ...
        >>> target.write_payload()
        PosixPath('/tmp/payload/install.sh')
    """

    kind = "install"

    def __init__(self, staging_dir: Path | str, **kwargs):
        kwargs.setdefault("detect_root", "/")
        super().__init__(root=staging_dir, **kwargs)
        self.commands: list[list[str]] = []

    async def render(self, task: "Task", actual: Any, changes: "Task") -> None:
        await task.render_install(self, actual, changes)

    async def execute(self, *args: str, env: Optional[dict[str, str]] = None) -> str:
        command = list(args)
        if env:
            command = ["env"] + [f"{k}={v}" for k, v in sorted(env.items())] + command
        logger.debug(f"Recording install command: {' '.join(command)}")
        self.commands.append(command)
        return ""

    async def query(self, *args: str) -> str:
        # A staged image has no running service manager to ask
        logger.debug(f"Skipping query against staged image: {' '.join(args)}")
        return ""

    def script(self) -> str:
        lines = ["#!/bin/bash", "set -o errexit", "set -o nounset", ""]
        lines.extend(shlex.join(command) for command in self.commands)
        return "\n".join(lines) + "\n"

    def write_payload(self) -> Path:
        """Write the recorded commands as an executable install script."""
        self.root.mkdir(parents=True, exist_ok=True)
        script_path = self.root / PAYLOAD_SCRIPT
        script_path.write_text(self.script())
        script_path.chmod(0o755)
        logger.info(f"Wrote install payload script with {len(self.commands)} command(s) to {script_path}")
        return script_path
