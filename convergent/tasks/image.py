"""LoadImage task for importing container image tarballs."""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Literal, Optional, Self

from convergent.errors import ApplyError, CommandError, TaskValidationError

from .base import Task, tasks_tagged
from .service import CONTAINERD_SERVICE, DOCKER_SERVICE

if TYPE_CHECKING:
    from convergent.targets.base import Target
    from convergent.targets.local import LocalTarget

logger = logging.getLogger(__name__)

CONTAINERD_NAMESPACE = "k8s.io"

RUNTIME_SERVICES = {
    "containerd": CONTAINERD_SERVICE,
    "docker": DOCKER_SERVICE,
}


class LoadImage(Task):
    """LoadImage task - imports an image tarball into the container runtime.

    Used when launching custom builds whose images are not pullable. The
    kubelet service waits for every LoadImage task; each LoadImage waits for
    its runtime's service.

    Attributes:
        name: Image reference the tarball provides, e.g. "registry.k8s.io/kube-proxy:v1.30.0"
        source: Path of the tarball on the machine
        runtime: "containerd" or "docker" (default: "containerd")
        loaded: Whether the image should be present (default: True)
    """

    tags = frozenset({"image-load"})
    NON_DIFF_FIELDS = frozenset({"name", "source", "runtime"})

    source: Optional[str] = None
    runtime: Literal["containerd", "docker"] = "containerd"
    loaded: Optional[bool] = None

    def init_defaults(self) -> Self:
        if self.loaded is None:
            self.loaded = True
        return self

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]:
        service_name = RUNTIME_SERVICES[self.runtime]
        return [other for other in tasks_tagged(tasks, "service") if other.name == service_name]

    async def find(self, target: "Target") -> Optional[Self]:
        if self.runtime == "containerd":
            output = await target.query("ctr", "--namespace", CONTAINERD_NAMESPACE, "images", "list", "--quiet")
        else:
            output = await target.query("docker", "images", "--format", "{{.Repository}}:{{.Tag}}")

        images = {line.strip() for line in output.splitlines() if line.strip()}
        return type(self)(name=self.name, runtime=self.runtime, loaded=self.name in images)

    def check_changes(self, actual: Optional[Self]) -> Self:
        if self.loaded is False:
            raise TaskValidationError(f"{self.key}: removing images is not supported", task=self)
        return super().check_changes(actual)

    async def render_local(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, changes)

    async def render_install(self, target: "LocalTarget", actual: Optional[Self], changes: Self) -> None:
        await self._apply(target, changes)

    async def _apply(self, target: "LocalTarget", changes: Self) -> None:
        if not changes.loaded:
            return
        if not self.source:
            raise ApplyError(f"{self.key}: no source tarball to load", task=self)

        if self.runtime == "containerd":
            args = ["ctr", "--namespace", CONTAINERD_NAMESPACE, "images", "import", self.source]
        else:
            args = ["docker", "load", "--input", self.source]

        logger.info(f"Loading image {self.name!r} from {self.source}")
        try:
            await target.execute(*args)
        except CommandError as e:
            raise ApplyError(f"error loading image {self.name!r}: {e}", task=self) from e
