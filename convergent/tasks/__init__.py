"""
Convergent Tasks - desired-state models for node resources.
"""

from .base import Task, TaskSet, build_changes
from .file import File
from .image import LoadImage
from .package import Package
from .service import InstallService, Service
from .user import Group, User

__all__ = [
    "File",
    "Group",
    "InstallService",
    "LoadImage",
    "Package",
    "Service",
    "Task",
    "TaskSet",
    "User",
    "build_changes",
]
