"""File task for files, directories and symlinks."""

import logging
import posixpath
import stat
from collections.abc import Mapping
from typing import TYPE_CHECKING, Literal, Optional, Self

from pydantic import Field, field_validator

from convergent.errors import TaskValidationError

from .base import Task, tasks_tagged

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.install import InstallTarget
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)

FILE_TYPE_FILE = "file"
FILE_TYPE_DIRECTORY = "directory"
FILE_TYPE_SYMLINK = "symlink"

DEFAULT_FILE_MODE = "0644"
DEFAULT_DIRECTORY_MODE = "0755"


def format_mode(mode: int) -> str:
    return f"{stat.S_IMODE(mode):04o}"


class File(Task):
    """File task - a file, directory or symlink at an absolute path.

    Attributes:
        name: Absolute path on the machine
        contents: File contents (files only)
        mode: Permissions as an octal string, e.g. "0644"
        owner: Owning user name
        group: Owning group name
        type: "file", "directory" or "symlink" (default: "file")
        symlink: Link target (symlinks only)
        before_services: If set, only these services wait for this file;
            otherwise every service does

    Examples:
        >>> File(name="/etc/sysconfig/kubelet", contents='DAEMON_ARGS="--v=2"\\n')
        >>> File(name="/var/lib/kubelet", type="directory", mode="0750")
    """

    tags = frozenset({"file"})
    NON_DIFF_FIELDS = frozenset({"name", "before_services"})

    contents: Optional[str] = None
    mode: Optional[str] = Field(None, examples=["0644", "0755", "0600"])
    owner: Optional[str] = None
    group: Optional[str] = None
    type: Optional[Literal["file", "directory", "symlink"]] = None
    symlink: Optional[str] = None
    before_services: Optional[list[str]] = None

    @field_validator("name")
    @classmethod
    def validate_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"File path must be absolute, got {value!r}")
        return posixpath.normpath(value)

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            return f"{int(value, 8):04o}"
        except ValueError:
            raise ValueError(f"mode must be an octal string, got {value!r}") from None

    def init_defaults(self) -> Self:
        if self.type is None:
            self.type = FILE_TYPE_FILE
        if self.mode is None and self.type == FILE_TYPE_FILE:
            self.mode = DEFAULT_FILE_MODE
        if self.mode is None and self.type == FILE_TYPE_DIRECTORY:
            self.mode = DEFAULT_DIRECTORY_MODE
        return self

    def precedes(self, other: Task) -> bool:
        if self.before_services and "service" in other.tags:
            return other.name in self.before_services
        return True

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        """Files wait for the user and group that own them and for parent directories."""
        dependencies = []
        for other in tasks_tagged(tasks, "user", "group"):
            if "user" in other.tags and other.name == self.owner:
                dependencies.append(other)
            elif "group" in other.tags and other.name == self.group:
                dependencies.append(other)

        for other in tasks_tagged(tasks, "file"):
            if other is self or not isinstance(other, File):
                continue
            if other.type == FILE_TYPE_DIRECTORY and self.name.startswith(other.name.rstrip("/") + "/"):
                dependencies.append(other)
        return dependencies

    async def find(self, target: "Target") -> Optional[Self]:
        st = await target.lstat(self.name)
        if st is None:
            return None

        user, group = target.owner_of(st)
        actual = type(self)(
            name=self.name,
            owner=user,
            group=group,
            before_services=self.before_services,
        )
        if stat.S_ISLNK(st.st_mode):
            actual.type = FILE_TYPE_SYMLINK
            actual.symlink = await target.read_link(self.name)
        elif stat.S_ISDIR(st.st_mode):
            actual.type = FILE_TYPE_DIRECTORY
            actual.mode = format_mode(st.st_mode)
        else:
            actual.type = FILE_TYPE_FILE
            actual.mode = format_mode(st.st_mode)
            actual.contents = await target.read_file(self.name)
        return actual

    def check_changes(self, actual: Optional[Self]) -> Self:
        if self.type == FILE_TYPE_DIRECTORY and self.contents is not None:
            raise TaskValidationError(f"{self.key}: directories cannot have contents", task=self)
        if self.type == FILE_TYPE_SYMLINK:
            if not self.symlink:
                raise TaskValidationError(f"{self.key}: symlink target is required", task=self)
            if self.contents is not None or self.mode is not None:
                raise TaskValidationError(f"{self.key}: symlinks cannot have contents or mode", task=self)
        elif self.symlink is not None:
            raise TaskValidationError(f"{self.key}: symlink target is only valid for symlinks", task=self)
        return super().check_changes(actual)

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def render_install(self, target: "InstallTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def _apply(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        file_type = self.type or FILE_TYPE_FILE
        mode = int(self.mode, 8) if self.mode else None
        type_changed = changes.type is not None
        # A rewrite replaces the inode, which then belongs to the writing process
        rewritten = False

        if file_type == FILE_TYPE_SYMLINK:
            if type_changed or changes.symlink is not None:
                logger.info(f"Linking {self.name} -> {self.symlink}")
                await target.symlink(self.name, self.symlink)
        elif file_type == FILE_TYPE_DIRECTORY:
            if type_changed:
                logger.info(f"Creating directory {self.name}")
                await target.make_dir(self.name, mode or 0o755)
            if mode is not None and (changes.mode is not None or type_changed):
                await target.chmod(self.name, mode)
        else:
            if changes.contents is not None or type_changed:
                logger.info(f"Writing file {self.name}")
                await target.write_file(self.name, self.contents or "", mode=mode or 0o644)
                rewritten = True
            elif changes.mode is not None and mode is not None:
                logger.info(f"Changing mode of {self.name} to {self.mode}")
                await target.chmod(self.name, mode)

        ownership_wanted = self.owner is not None or self.group is not None
        if changes.owner is not None or changes.group is not None or (rewritten and ownership_wanted):
            logger.info(f"Changing ownership of {self.name} to {self.owner}:{self.group}")
            await target.chown(self.name, self.owner, self.group)
