"""Package task for distribution packages."""

import logging
from typing import TYPE_CHECKING, Optional, Self

from convergent.errors import (
    ApplyError,
    CommandError,
    DiscoveryError,
    TaskValidationError,
    UnsupportedTargetError,
)

from .base import Task

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)

DPKG_INSTALLED_STATUS = "install ok installed"


class Package(Task):
    """Package task - a package installed (or removed) through the system package manager.

    Debian-family systems use dpkg/apt-get, RHEL-family systems rpm/yum.
    Other families have no supported package manager.

    Attributes:
        name: Package name
        version: Exact version to install (None accepts any installed version)
        installed: Whether the package should be installed (default: True)
    """

    tags = frozenset({"package"})

    version: Optional[str] = None
    installed: Optional[bool] = None

    def init_defaults(self) -> Self:
        if self.installed is None:
            self.installed = True
        return self

    async def find(self, target: "Target") -> Optional[Self]:
        distribution = target.distribution
        if distribution.is_debian_family:
            version = await self._query_dpkg(target)
        elif distribution.is_rhel_family:
            version = await self._query_rpm(target)
        else:
            raise DiscoveryError(
                f"{self.key}: no package manager for distribution {distribution.id!r}", task=self
            )

        if version is None:
            return type(self)(name=self.name, installed=False)
        return type(self)(name=self.name, version=version, installed=True)

    async def _query_dpkg(self, target: "Target") -> Optional[str]:
        try:
            output = await target.query(
                "dpkg-query", "--show", "--showformat=${Status}|${Version}", self.name
            )
        except CommandError as e:
            # dpkg-query exits 1 for packages it has never heard of
            if e.returncode == 1:
                return None
            raise
        status, _, version = output.strip().partition("|")
        if status != DPKG_INSTALLED_STATUS:
            logger.debug(f"Package {self.name!r} has dpkg status {status!r}; treating as not installed")
            return None
        return version

    async def _query_rpm(self, target: "Target") -> Optional[str]:
        try:
            output = await target.query(
                "rpm", "-q", "--queryformat", "%{VERSION}-%{RELEASE}", self.name
            )
        except CommandError as e:
            # rpm -q exits 1 when the package is not installed
            if e.returncode == 1:
                return None
            raise
        return output.strip()

    def check_changes(self, actual: Optional[Self]) -> Self:
        if self.installed is False and self.version is not None:
            raise TaskValidationError(f"{self.key}: cannot pin a version of a removed package", task=self)
        return super().check_changes(actual)

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, changes)

    async def render_install(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, changes)

    async def _apply(self, target: "LocalTarget", changes: Self) -> None:
        if changes.installed is None and changes.version is None:
            return

        distribution = target.distribution
        if distribution.is_debian_family:
            env = {"DEBIAN_FRONTEND": "noninteractive"}
            if self.installed:
                spec = f"{self.name}={self.version}" if self.version else self.name
                args = ["apt-get", "install", "--yes", "--no-install-recommends", spec]
            else:
                args = ["apt-get", "remove", "--yes", self.name]
        elif distribution.is_rhel_family:
            env = None
            if self.installed:
                spec = f"{self.name}-{self.version}" if self.version else self.name
                args = ["yum", "install", "-y", spec]
            else:
                args = ["yum", "remove", "-y", self.name]
        else:
            raise UnsupportedTargetError(
                f"{self.key}: no package manager for distribution {distribution.id!r}", task=self
            )

        logger.info(f"{'Installing' if self.installed else 'Removing'} package {self.name!r}")
        try:
            await target.execute(*args, env=env)
        except CommandError as e:
            raise ApplyError(f"error managing package {self.name!r}: {e}", task=self) from e
