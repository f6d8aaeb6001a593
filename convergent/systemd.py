"""Helpers for reading systemd state and unit files."""

import logging
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Format of ExecMainStartTimestamp in `systemctl show`, e.g.
# "Mon 2024-01-15 10:04:05 UTC"
START_TIMESTAMP_FORMAT = "%a %Y-%m-%d %H:%M:%S"

ENABLED_WANTED_BY = ("multi-user.target", "graphical.target multi-user.target")

UNIT_SUFFIXES = (
    ".service",
    ".socket",
    ".timer",
    ".mount",
    ".path",
    ".target",
    ".slice",
    ".scope",
)


def parse_show_output(output: str) -> dict[str, str]:
    """Parse `systemctl show` KEY=value output into a dict."""
    properties = {}
    for line in output.split("\n"):
        if line == "":
            continue
        key, sep, value = line.partition("=")
        if not sep:
            logger.warning(f"Ignoring line in systemd show output: {line!r}")
            continue
        properties[key] = value
    return properties


def is_running(properties: dict[str, str]) -> bool:
    """Interpret ActiveState; unknown values count as not running."""
    active_state = properties.get("ActiveState", "")
    if active_state == "active":
        return True
    if active_state in ("failed", "inactive"):
        return False
    logger.warning(f"Unknown ActiveState={active_state!r}; will treat as not running")
    return False


def is_enabled(properties: dict[str, str]) -> bool:
    """Interpret WantedBy; unknown values count as not enabled."""
    wanted_by = properties.get("WantedBy", "")
    if wanted_by == "":
        return False
    if wanted_by in ENABLED_WANTED_BY:
        return True
    logger.warning(f"Unknown WantedBy={wanted_by!r}; will treat as not enabled")
    return False


def unit_file_dependencies(definition: str) -> list[str]:
    """Extract the obvious file dependencies of a unit file.

    These are every EnvironmentFile= value and the first token of each
    ExecStart= (the binary being run).
    """
    dependencies = []
    for line in definition.split("\n"):
        line = line.strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "EnvironmentFile":
            dependencies.append(value)
        elif key == "ExecStart":
            # ExecStart=/usr/local/bin/kubelet "$DAEMON_ARGS"
            binary = value.split(" ", 1)[0]
            dependencies.append(binary)
            logger.debug(f"extracted dependency from {line!r}: {binary!r}")
    return dependencies


def parse_start_timestamp(value: str) -> datetime | None:
    """Parse an ExecMainStartTimestamp value into an aware datetime.

    Returns None when systemd reports no timestamp ("" or "n/a"). UTC, GMT
    and the host's own zone abbreviations are honored; any other abbreviation
    carries no known offset and is read as UTC.

    Raises:
        ValueError: If the value is not in the expected format
    """
    value = value.strip()
    if value in ("", "n/a"):
        return None

    stamp, _, zone = value.rpartition(" ")
    if not stamp:
        raise ValueError(f"unable to parse service start timestamp {value!r}")
    parsed = datetime.strptime(stamp, START_TIMESTAMP_FORMAT)

    if zone in ("UTC", "GMT"):
        return parsed.replace(tzinfo=timezone.utc)
    if zone in time.tzname:
        return parsed.astimezone()
    logger.debug(f"Unknown timestamp zone {zone!r}; assuming a zero UTC offset")
    return parsed.replace(tzinfo=timezone.utc)
