"""
Convergent Targets - where a convergence pass applies its changes.
"""

from .base import Target
from .dryrun import DryRunTarget, PlannedChange
from .install import InstallTarget
from .local import LocalTarget

__all__ = [
    "DryRunTarget",
    "InstallTarget",
    "LocalTarget",
    "PlannedChange",
    "Target",
]
