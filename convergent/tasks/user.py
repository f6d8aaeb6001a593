"""User and group tasks for system accounts."""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Optional, Self

from convergent.errors import ApplyError, CommandError

from .base import Task, tasks_tagged

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)

PASSWD_PATH = "/etc/passwd"
GROUP_PATH = "/etc/group"


def parse_passwd(text: str) -> dict[str, dict[str, str]]:
    """Parse /etc/passwd into name -> fields."""
    entries = {}
    for line in text.splitlines():
        if not line or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) < 7:
            logger.warning(f"Ignoring malformed passwd line: {line!r}")
            continue
        entries[parts[0]] = {"uid": parts[2], "gid": parts[3], "home": parts[5], "shell": parts[6]}
    return entries


def parse_group(text: str) -> dict[str, dict[str, str]]:
    """Parse /etc/group into name -> fields."""
    entries = {}
    for line in text.splitlines():
        if not line or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) < 3:
            logger.warning(f"Ignoring malformed group line: {line!r}")
            continue
        entries[parts[0]] = {"gid": parts[2]}
    return entries


class User(Task):
    """User task - a local system user.

    Attributes:
        name: Username
        uid: Numeric user ID
        home: Home directory
        shell: Login shell
        group: Primary group name
        system: Create as a system account (only used on creation)

    Examples:
        >>> User(name="etcd", system=True, shell="/sbin/nologin", home="/var/lib/etcd")
    """

    tags = frozenset({"user"})
    NON_DIFF_FIELDS = frozenset({"name", "system"})

    uid: Optional[int] = None
    home: Optional[str] = None
    shell: Optional[str] = None
    group: Optional[str] = None
    system: Optional[bool] = None

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        return [other for other in tasks_tagged(tasks, "group") if other.name == self.group]

    async def find(self, target: "Target") -> Optional[Self]:
        passwd = await target.read_file(PASSWD_PATH)
        entry = parse_passwd(passwd or "").get(self.name)
        if entry is None:
            return None

        groups = parse_group(await target.read_file(GROUP_PATH) or "")
        group_name = next(
            (name for name, fields in groups.items() if fields["gid"] == entry["gid"]),
            entry["gid"],
        )
        return type(self)(
            name=self.name,
            uid=int(entry["uid"]),
            home=entry["home"],
            shell=entry["shell"],
            group=group_name,
        )

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def render_install(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def _apply(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        if actual is None:
            args = ["useradd"]
            if self.system:
                args.append("--system")
            if self.home:
                args.extend(["--home-dir", self.home])
        else:
            if changes.is_empty():
                return
            args = ["usermod"]
            if changes.home is not None:
                args.extend(["--home", changes.home])

        if changes.uid is not None:
            args.extend(["--uid", str(changes.uid)])
        if changes.shell is not None:
            args.extend(["--shell", changes.shell])
        if changes.group is not None:
            args.extend(["--gid", changes.group])
        args.append(self.name)

        logger.info(f"{'Creating' if actual is None else 'Updating'} user {self.name!r}")
        try:
            await target.execute(*args)
        except CommandError as e:
            raise ApplyError(f"error managing user {self.name!r}: {e}", task=self) from e


class Group(Task):
    """Group task - a local system group.

    Attributes:
        name: Group name
        gid: Numeric group ID
        system: Create as a system group (only used on creation)
    """

    tags = frozenset({"group"})
    NON_DIFF_FIELDS = frozenset({"name", "system"})

    gid: Optional[int] = None
    system: Optional[bool] = None

    async def find(self, target: "Target") -> Optional[Self]:
        groups = parse_group(await target.read_file(GROUP_PATH) or "")
        entry = groups.get(self.name)
        if entry is None:
            return None
        return type(self)(name=self.name, gid=int(entry["gid"]))

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def render_install(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def _apply(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        if actual is None:
            args = ["groupadd"]
            if self.system:
                args.append("--system")
        elif changes.gid is None:
            return
        else:
            args = ["groupmod"]

        if changes.gid is not None:
            args.extend(["--gid", str(changes.gid)])
        args.append(self.name)

        logger.info(f"{'Creating' if actual is None else 'Updating'} group {self.name!r}")
        try:
            await target.execute(*args)
        except CommandError as e:
            raise ApplyError(f"error managing group {self.name!r}: {e}", task=self) from e
