"""OS distribution detection used to pick systemd and package-manager paths."""

import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class DistributionFamily(str, Enum):
    """Distribution families with distinct filesystem conventions."""
    DEBIAN = "debian"
    RHEL = "rhel"
    FLATCAR = "flatcar"
    CONTAINEROS = "containeros"
    UNKNOWN = "unknown"


# Generally only repo packages write to /usr/lib/systemd/system on RHEL, but
# units we own (kubelet, protokube) are installed there as well.
SYSTEMD_SYSTEM_PATHS = {
    DistributionFamily.DEBIAN: "/lib/systemd/system",
    DistributionFamily.RHEL: "/usr/lib/systemd/system",
    DistributionFamily.FLATCAR: "/etc/systemd/system",
    DistributionFamily.CONTAINEROS: "/etc/systemd/system",
}

_FAMILY_BY_ID = {
    "debian": DistributionFamily.DEBIAN,
    "ubuntu": DistributionFamily.DEBIAN,
    "rhel": DistributionFamily.RHEL,
    "centos": DistributionFamily.RHEL,
    "rocky": DistributionFamily.RHEL,
    "almalinux": DistributionFamily.RHEL,
    "fedora": DistributionFamily.RHEL,
    "amzn": DistributionFamily.RHEL,
    "ol": DistributionFamily.RHEL,
    "flatcar": DistributionFamily.FLATCAR,
    "cos": DistributionFamily.CONTAINEROS,
}


@dataclass(frozen=True)
class Distribution:
    """A detected distribution.

    Attributes:
        id: The os-release ID (e.g. "ubuntu")
        family: Family the ID belongs to
        version: The os-release VERSION_ID, if present
    """

    id: str
    family: DistributionFamily
    version: str | None = None

    @property
    def systemd_system_path(self) -> str:
        """Directory where this distribution keeps system unit files.

        Raises:
            ConfigurationError: If the family has no known systemd layout
        """
        try:
            return SYSTEMD_SYSTEM_PATHS[self.family]
        except KeyError:
            raise ConfigurationError(
                f"unsupported systemd system for distribution {self.id!r}"
            ) from None

    @property
    def is_debian_family(self) -> bool:
        return self.family is DistributionFamily.DEBIAN

    @property
    def is_rhel_family(self) -> bool:
        return self.family is DistributionFamily.RHEL


def parse_os_release(text: str) -> dict[str, str]:
    """Parse os-release KEY=value lines, unquoting values."""
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed os-release line: {line!r}")
            continue
        values[key.strip()] = parts[0] if parts else ""
    return values


def distribution_from_id(distribution_id: str, id_like: str = "", version: str | None = None) -> Distribution:
    """Classify a distribution ID, falling back to ID_LIKE entries."""
    candidates = [distribution_id.lower()] + id_like.lower().split()
    for candidate in candidates:
        family = _FAMILY_BY_ID.get(candidate)
        if family is not None:
            return Distribution(id=distribution_id.lower(), family=family, version=version)

    logger.warning(f"Unknown distribution {distribution_id!r} (ID_LIKE={id_like!r})")
    return Distribution(id=distribution_id.lower(), family=DistributionFamily.UNKNOWN, version=version)


def find_distribution(root: Path | str = "/") -> Distribution:
    """Detect the distribution installed under root.

    Reads etc/os-release, falling back to usr/lib/os-release.

    Raises:
        ConfigurationError: If no os-release file can be read
    """
    root = Path(root)
    for candidate in (root / "etc" / "os-release", root / "usr" / "lib" / "os-release"):
        try:
            text = candidate.read_text()
        except FileNotFoundError:
            continue
        except OSError as e:
            raise ConfigurationError(f"error reading {candidate}: {e}") from e

        values = parse_os_release(text)
        distribution_id = values.get("ID", "")
        if not distribution_id:
            raise ConfigurationError(f"no ID in {candidate}")
        distribution = distribution_from_id(
            distribution_id, values.get("ID_LIKE", ""), values.get("VERSION_ID")
        )
        logger.debug(f"Detected distribution {distribution.id} ({distribution.family.value}) from {candidate}")
        return distribution

    raise ConfigurationError(f"unknown or unsupported distro: no os-release under {root}")
