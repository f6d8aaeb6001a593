"""Tests for the LoadImage task."""

import pytest

from convergent.errors import ApplyError, TaskValidationError
from convergent.executor import ConvergenceExecutor, TaskState
from convergent.resolver import DependencyResolver
from convergent.tasks import LoadImage, TaskSet

IMAGE = "registry.k8s.io/kube-proxy:v1.30.0"
CTR_LIST = ("ctr", "--namespace", "k8s.io", "images", "list", "--quiet")
DOCKER_LIST = ("docker", "images", "--format", "{{.Repository}}:{{.Tag}}")


async def converge(target, task):
    executor = ConvergenceExecutor(target)
    result = await executor.execute(DependencyResolver().resolve(TaskSet([task.init_defaults()])))
    return result.results[task.key]


class TestLoadImage:
    """Tests for importing image tarballs."""

    @pytest.mark.asyncio
    async def test_import_into_containerd(self, target):
        target.respond(*CTR_LIST, output="registry.k8s.io/pause:3.9\n")

        result = await converge(target, LoadImage(name=IMAGE, source="/opt/images/kube-proxy.tar"))

        assert result.state is TaskState.DONE
        assert target.executed == [
            ["ctr", "--namespace", "k8s.io", "images", "import", "/opt/images/kube-proxy.tar"]
        ]

    @pytest.mark.asyncio
    async def test_loaded_image_left_alone(self, target):
        target.respond(*CTR_LIST, output=f"registry.k8s.io/pause:3.9\n{IMAGE}\n")

        result = await converge(target, LoadImage(name=IMAGE, source="/opt/images/kube-proxy.tar"))

        assert result.changes.is_empty()
        assert target.executed == []

    @pytest.mark.asyncio
    async def test_import_into_docker(self, target):
        result = await converge(
            target, LoadImage(name=IMAGE, source="/opt/images/kube-proxy.tar", runtime="docker")
        )

        assert result.state is TaskState.DONE
        assert target.queries == [list(DOCKER_LIST)]
        assert target.executed == [["docker", "load", "--input", "/opt/images/kube-proxy.tar"]]

    @pytest.mark.asyncio
    async def test_missing_source(self, target):
        result = await converge(target, LoadImage(name=IMAGE))

        assert isinstance(result.error, ApplyError)
        assert "no source tarball" in str(result.error)

    def test_removal_not_supported(self):
        task = LoadImage(name=IMAGE, loaded=False)
        with pytest.raises(TaskValidationError, match="not supported"):
            task.check_changes(None)
