"""
Convergent - declarative convergence of node configuration.

Describe the desired state of a machine as tasks (services, files, packages,
users, images). Convergent orders them by their dependencies and drives each
one through find → check changes → run against a target: the live machine,
a staged install payload, or a dry run that only records what would change.

Passes are idempotent: once a machine has converged, another pass applies
nothing, and a pass interrupted halfway is recovered by simply running again.
"""

from .core import ConvergentCore, NodeVerifier
from .executor import ConvergenceExecutor, PassResult, TaskState
from .resolver import DependencyResolver, ExecutionPlan
from .settings import ConvergentSettings, get_settings, reload_settings

__version__ = "0.1.0"
__all__ = [
    "ConvergenceExecutor",
    "ConvergentCore",
    "ConvergentSettings",
    "DependencyResolver",
    "ExecutionPlan",
    "NodeVerifier",
    "PassResult",
    "TaskState",
    "get_settings",
    "reload_settings",
]
