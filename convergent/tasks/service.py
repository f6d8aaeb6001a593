"""Service task for managing systemd units."""

import logging
import posixpath
from collections.abc import Mapping
from typing import TYPE_CHECKING, Optional, Self

from convergent.errors import ApplyError, CommandError, TaskValidationError
from convergent.systemd import (
    UNIT_SUFFIXES,
    is_enabled,
    is_running,
    parse_show_output,
    parse_start_timestamp,
    unit_file_dependencies,
)

from .base import Task

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.dryrun import DryRunTarget
    from convergent.targets.install import InstallTarget
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)

CONTAINERD_SERVICE = "containerd.service"
DOCKER_SERVICE = "docker.service"
KUBELET_SERVICE = "kubelet.service"

# Tasks a service always runs after
SERVICE_AFTER_TAGS = frozenset({
    "package",
    "package-source",
    "user",
    "group",
    "file",
    "chattr",
    "bind-mount",
    "archive",
    "prefix",
    "etc-hosts",
})

# Tasks a service never waits for
SERVICE_INDEPENDENT_TAGS = frozenset({
    "service",
    "install-service",
    "image-pull",
    "certificate",
    "bootstrap-client",
    "kubeconfig",
})

UNIT_FILE_MODE = 0o644
UNIT_DIR_MODE = 0o755


async def get_systemd_status(target: "Target", name: str) -> dict[str, str]:
    """Query `systemctl show --all` for a unit and parse its properties."""
    logger.debug(f"querying state of service {name!r}")
    output = await target.query("systemctl", "show", "--all", name)
    return parse_show_output(output)


class Service(Task):
    """Service task - a systemd unit with its definition, run state and enablement.

    Attributes:
        name: Unit name, e.g. "kubelet.service"
        definition: Unit file contents (None leaves an existing file alone)
        running: Whether the unit should be active (default: True)
        enabled: Whether the unit starts at boot (default: same as running)
        manage_state: When False, run state and enablement are never touched;
            the unit file is still written (default: True)
        smart_restart: Restart the unit when a file it depends on changed
            after it last started (default: True)

    Smart restart is a freshness check, not a content diff. The unit's
    EnvironmentFile= entries, the binary named by ExecStart= and the unit file
    itself are stat'ed; if any was modified after ExecMainStartTimestamp the
    unit is restarted. Timestamps have second resolution and files can change
    between the stat and the restart, so the check is best effort and may
    restart spuriously or miss a change that races with it.

    Examples:
        >>> Service(name="kubelet.service", definition=KUBELET_UNIT)
        >>> Service(name="docker.service", running=False)
    """

    tags = frozenset({"service"})
    NON_DIFF_FIELDS = frozenset({"name", "manage_state", "smart_restart"})

    definition: Optional[str] = None
    running: Optional[bool] = None
    enabled: Optional[bool] = None
    manage_state: Optional[bool] = None
    smart_restart: Optional[bool] = None

    def init_defaults(self) -> Self:
        if self.running is None:
            self.running = True
        if self.smart_restart is None:
            self.smart_restart = True
        if self.manage_state is None:
            self.manage_state = True

        # Default enabled to be the same as running
        if self.enabled is None:
            self.enabled = self.running

        return self

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        """Services run after packages, files, users and the like.

        Other services, image pulls, certificates and kubeconfigs are not
        waited for. Image loads are only waited for by the kubelet. Tasks with
        tags not known here are treated as dependencies.
        """
        dependencies = []
        for other in tasks.values():
            if other is self:
                continue
            if other.tags & SERVICE_AFTER_TAGS:
                if other.precedes(self):
                    dependencies.append(other)
            elif "image-load" in other.tags:
                if self.name == KUBELET_SERVICE:
                    dependencies.append(other)
            elif other.tags & SERVICE_INDEPENDENT_TAGS:
                continue
            else:
                logger.warning(f"Unhandled task {other} in {self} dependencies; treating as a dependency")
                dependencies.append(other)
        return dependencies

    def unit_path(self, target: "Target") -> str:
        return posixpath.join(target.distribution.systemd_system_path, self.name)

    async def find(self, target: "Target") -> Optional[Self]:
        definition = await target.read_file(self.unit_path(target))
        if definition is None:
            # Not found
            return type(self)(name=self.name, definition=None, running=False)

        properties = await get_systemd_status(target, self.name)
        return type(self)(
            name=self.name,
            definition=definition,
            running=is_running(properties),
            enabled=is_enabled(properties),
            manage_state=self.manage_state,
            smart_restart=self.smart_restart,
        )

    def check_changes(self, actual: Optional[Self]) -> Self:
        if not self.name.endswith(UNIT_SUFFIXES):
            raise TaskValidationError(
                f"{self.key}: name must be a systemd unit name ending in one of {', '.join(UNIT_SUFFIXES)}",
                task=self,
            )
        return super().check_changes(actual)

    def should_run_unchanged(self, actual: Optional[Self]) -> bool:
        if actual is None:
            return True
        # Smart restart must get a chance to look at dependency timestamps
        if not (self.manage_state and self.smart_restart and self.running):
            return False
        return bool(self.definition or actual.definition)

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def render_install(self, target: "InstallTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, actual, changes)

    async def render_dryrun(self, target: "DryRunTarget", actual: Optional[Self], changes: Self) -> None:
        """Plan the smart restart a live pass would perform."""
        action = None
        if actual is not None and changes.running is None and self.should_run_unchanged(actual):
            if await self._dependencies_changed_since_start(target, actual, self.unit_path(target)):
                action = "restart"
        target.record(self, actual, changes, action=action)

    async def _systemctl(self, target: "LocalTarget", *args: str) -> None:
        try:
            await target.execute("systemctl", *args)
        except CommandError as e:
            raise ApplyError(f"error doing 'systemctl {' '.join(args)}': {e}", task=self) from e

    async def _apply(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        """Apply changes in order: unit file, run state, enablement.

        Any failing step aborts the remaining ones.
        """
        unit_path = self.unit_path(target)
        action = None

        if changes.running is not None and self.manage_state:
            action = "restart" if self.running else "stop"

        if changes.definition is not None:
            try:
                await target.write_file(unit_path, self.definition, mode=UNIT_FILE_MODE, dir_mode=UNIT_DIR_MODE)
            except OSError as e:
                raise ApplyError(f"error writing systemd service file {unit_path}: {e}", task=self) from e

            logger.info("Reloading systemd configuration")
            await self._systemctl(target, "daemon-reload")

        if action is None and self.manage_state and self.smart_restart and self.running:
            if await self._dependencies_changed_since_start(target, actual, unit_path):
                action = "restart"

        if action is not None and self.manage_state:
            # --no-block avoids hanging if the service has issues stopping/starting
            logger.info(f"Running 'systemctl {action} {self.name} --no-block'")
            await self._systemctl(target, action, self.name, "--no-block")

        if changes.enabled is not None and self.manage_state:
            if self.enabled:
                logger.info(f"Enabling service {self.name!r}")
                await self._systemctl(target, "enable", self.name)
            else:
                logger.info(f"Disabling service {self.name!r}")
                await self._systemctl(target, "disable", self.name)

    async def _dependencies_changed_since_start(
        self, target: "Target", actual: Optional[Self], unit_path: str
    ) -> bool:
        """Whether any file the unit depends on is newer than its last start."""
        definition = self.definition
        if not definition and actual is not None:
            definition = actual.definition
        if not definition:
            return False

        dependencies = unit_file_dependencies(definition)
        # Include the systemd unit file itself
        dependencies.append(unit_path)

        newest = None
        for dependency in dependencies:
            try:
                modified = await target.mtime(dependency)
            except OSError as e:
                logger.info(f"Ignoring error checking service dependency {dependency!r}: {e}")
                continue
            if modified is None:
                logger.info(f"Ignoring missing service dependency {dependency!r}")
                continue
            if newest is None or newest < modified:
                newest = modified

        if newest is None:
            return False

        try:
            properties = await get_systemd_status(target, self.name)
        except CommandError as e:
            raise ApplyError(f"error querying state of service {self.name!r}: {e}", task=self) from e

        raw_started_at = properties.get("ExecMainStartTimestamp", "")
        try:
            started_at = parse_start_timestamp(raw_started_at)
        except ValueError as e:
            raise ApplyError(
                f"unable to parse service ExecMainStartTimestamp {raw_started_at!r}: {e}", task=self
            ) from e

        if started_at is None:
            logger.warning(f"service was running, but did not have ExecMainStartTimestamp: {self.name!r}")
            return False

        if started_at < newest:
            logger.debug(f"will restart service {self.name!r} because dependency changed after service start")
            return True

        logger.debug(f"will not restart service {self.name!r} - started after dependencies")
        return False


class InstallService(Service):
    """Service rendered into an install payload rather than applied live.

    Shares the desired-state shape and apply logic with Service; only
    discovery differs. In a staged image there is no service manager to ask,
    so find() reports the unit file alone and leaves run state unknown.
    """

    tags = frozenset({"install-service"})

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        return [
            other for other in tasks.values()
            if other is not self and "install-service" not in other.tags
        ]

    async def find(self, target: "Target") -> Optional[Self]:
        definition = await target.read_file(self.unit_path(target))
        if definition is None:
            return None
        return type(self)(name=self.name, definition=definition)

    def should_run_unchanged(self, actual: Optional[Self]) -> bool:
        return actual is None
