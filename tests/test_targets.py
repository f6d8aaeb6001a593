"""Tests for the local, install and dry-run targets."""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from convergent.distributions import DistributionFamily, distribution_from_id
from convergent.errors import CommandError, CommandTimeoutError, ConfigurationError
from convergent.executor import ConvergenceExecutor
from convergent.resolver import DependencyResolver
from convergent.targets import DryRunTarget, InstallTarget, LocalTarget
from convergent.targets.install import PAYLOAD_SCRIPT
from convergent.tasks import File, Group, Package, TaskSet


async def converge(target, *tasks):
    task_set = TaskSet(task.init_defaults() for task in tasks)
    executor = ConvergenceExecutor(target)
    return await executor.execute(DependencyResolver().resolve(task_set))


class SlowFile(File):
    """File whose discovery takes `delay` seconds."""

    NON_DIFF_FIELDS = File.NON_DIFF_FIELDS | {"delay"}

    delay: float = 0.0

    async def find(self, target):
        await asyncio.sleep(self.delay)
        return await super().find(target)


class TestTarget:
    """Tests for the shared target helpers."""

    def test_paths_resolved_under_root(self, temp_dir):
        target = LocalTarget(temp_dir)
        assert target.path("/etc/motd") == temp_dir / "etc" / "motd"

    def test_distribution_detected_once(self, temp_dir):
        (temp_dir / "etc").mkdir()
        (temp_dir / "etc" / "os-release").write_text('ID=ubuntu\nVERSION_ID="22.04"\n')
        target = LocalTarget(temp_dir)

        distribution = target.distribution
        (temp_dir / "etc" / "os-release").write_text("ID=rocky\n")

        assert distribution.family is DistributionFamily.DEBIAN
        assert target.distribution is distribution

    def test_distribution_missing(self, temp_dir):
        with pytest.raises(ConfigurationError, match="unknown or unsupported distro"):
            LocalTarget(temp_dir).distribution

    def test_distribution_override(self, temp_dir):
        assert LocalTarget(temp_dir, distribution="amzn").distribution.is_rhel_family

    def test_distribution_detected_under_detect_root(self, temp_dir):
        (temp_dir / "host" / "etc").mkdir(parents=True)
        (temp_dir / "host" / "etc" / "os-release").write_text("ID=rocky\n")

        target = LocalTarget(temp_dir / "payload", detect_root=temp_dir / "host")

        assert target.root == temp_dir / "payload"
        assert target.distribution.is_rhel_family

    @pytest.mark.asyncio
    async def test_mtime_follows_symlinks(self, temp_dir):
        target = LocalTarget(temp_dir)
        (temp_dir / "real").write_text("x")
        stamp = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc).timestamp()
        os.utime(temp_dir / "real", (stamp, stamp))
        os.symlink(temp_dir / "real", temp_dir / "link")
        os.symlink(temp_dir / "nowhere", temp_dir / "dangling")

        assert (await target.mtime("/link")).timestamp() == stamp
        assert await target.mtime("/dangling") is None
        assert await target.mtime("/missing") is None

    @pytest.mark.asyncio
    async def test_query_returns_output(self, temp_dir):
        assert await LocalTarget(temp_dir).query("echo", "hello") == "hello\n"

    @pytest.mark.asyncio
    async def test_command_failure(self, temp_dir):
        with pytest.raises(CommandError) as excinfo:
            await LocalTarget(temp_dir).execute("sh", "-c", "echo broken; exit 3")

        assert excinfo.value.returncode == 3
        assert excinfo.value.output == "broken\n"

    @pytest.mark.asyncio
    async def test_command_timeout(self, temp_dir):
        target = LocalTarget(temp_dir, command_timeout=0.1)

        with pytest.raises(CommandTimeoutError):
            await target.execute("sleep", "5")

    @pytest.mark.asyncio
    async def test_command_env(self, temp_dir):
        output = await LocalTarget(temp_dir).execute("sh", "-c", "echo $GREETING", env={"GREETING": "hi"})
        assert output == "hi\n"


class TestLocalTarget:
    """Tests for writes on the local target."""

    def test_lock_shared_per_path(self, temp_dir):
        target = LocalTarget(temp_dir)
        assert target.lock("/etc/motd") is target.lock("etc/motd")
        assert target.lock("/etc/motd") is not target.lock("/etc/issue")

    @pytest.mark.asyncio
    async def test_concurrent_writes_serialized(self, temp_dir):
        target = LocalTarget(temp_dir)

        await asyncio.gather(*(target.write_file("/etc/motd", f"writer {i}\n") for i in range(10)))

        assert (temp_dir / "etc" / "motd").read_text().startswith("writer ")
        assert os.listdir(temp_dir / "etc") == ["motd"]

    @pytest.mark.asyncio
    async def test_write_file_sets_mode(self, temp_dir):
        target = LocalTarget(temp_dir)

        await target.write_file("/etc/kubernetes/admin.conf", "secret", mode=0o600)

        assert (temp_dir / "etc/kubernetes/admin.conf").stat().st_mode & 0o777 == 0o600


class TestInstallTarget:
    """Tests for building install payloads."""

    @pytest.mark.asyncio
    async def test_files_staged_and_commands_scripted(self, temp_dir):
        target = InstallTarget(temp_dir / "payload", distribution="ubuntu")

        result = await converge(
            target,
            File(name="/etc/motd", contents="hello\n"),
            Package(name="conntrack"),
        )

        assert result.success
        assert (temp_dir / "payload" / "etc" / "motd").read_text() == "hello\n"
        assert target.commands == [
            ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "--yes", "--no-install-recommends", "conntrack"]
        ]

    @pytest.mark.asyncio
    async def test_write_payload(self, temp_dir):
        target = InstallTarget(temp_dir / "payload", distribution="ubuntu")
        await target.execute("systemctl", "enable", "kubelet.service")
        await target.execute("echo", "it's done")

        script_path = target.write_payload()

        assert script_path == temp_dir / "payload" / PAYLOAD_SCRIPT
        assert os.access(script_path, os.X_OK)
        assert script_path.read_text() == (
            "#!/bin/bash\n"
            "set -o errexit\n"
            "set -o nounset\n"
            "\n"
            "systemctl enable kubelet.service\n"
            "echo 'it'\"'\"'s done'\n"
        )

    def test_distribution_detected_on_host(self, temp_dir, monkeypatch):
        roots = []

        def fake_find_distribution(root):
            roots.append(root)
            return distribution_from_id("ubuntu")

        monkeypatch.setattr("convergent.targets.base.find_distribution", fake_find_distribution)
        target = InstallTarget(temp_dir / "payload")

        assert target.distribution.family is DistributionFamily.DEBIAN
        assert roots == [Path("/")]

    @pytest.mark.asyncio
    async def test_queries_not_run(self, temp_dir):
        target = InstallTarget(temp_dir / "payload")
        assert await target.query("false") == ""


class TestDryRunTarget:
    """Tests for previewing changes."""

    @pytest.mark.asyncio
    async def test_changes_recorded_not_applied(self, temp_dir):
        (temp_dir / "etc").mkdir()
        (temp_dir / "etc" / "issue").write_text("old\n")
        os.chmod(temp_dir / "etc" / "issue", 0o644)
        target = DryRunTarget(temp_dir, distribution="ubuntu")

        result = await converge(
            target,
            File(name="/etc/motd", contents="hello\n"),
            File(name="/etc/issue", contents="new\n"),
        )

        assert result.success
        assert not (temp_dir / "etc" / "motd").exists()
        assert (temp_dir / "etc" / "issue").read_text() == "old\n"
        assert [change.to_dict() for change in target.changes] == [
            {
                "key": "File//etc/issue",
                "kind": "File",
                "operation": "update",
                "changes": {"contents": "new\n"},
            },
            {
                "key": "File//etc/motd",
                "kind": "File",
                "operation": "create",
                "changes": {"contents": "hello\n", "mode": "0644", "type": "file"},
            },
        ]

    @pytest.mark.asyncio
    async def test_converged_tasks_not_recorded(self, temp_dir):
        (temp_dir / "etc").mkdir()
        (temp_dir / "etc" / "motd").write_text("hello\n")
        os.chmod(temp_dir / "etc" / "motd", 0o644)
        target = DryRunTarget(temp_dir, distribution="ubuntu")

        await converge(target, File(name="/etc/motd", contents="hello\n"))

        assert target.changes == []

    @pytest.mark.asyncio
    async def test_changes_follow_plan_order(self, temp_dir):
        target = DryRunTarget(temp_dir, distribution="ubuntu")

        # The first task in the plan finishes last
        result = await converge(
            target,
            SlowFile(name="/etc/a", contents="a\n", delay=0.05),
            SlowFile(name="/etc/b", contents="b\n"),
        )

        assert result.order == ["SlowFile//etc/a", "SlowFile//etc/b"]
        assert [change.key for change in target.ordered_changes(result.order)] == result.order
        assert [change.key for change in target.ordered_changes(reversed(result.order))] == [
            "SlowFile//etc/b",
            "SlowFile//etc/a",
        ]
        assert [change.key for change in target.changes] == result.order

    @pytest.mark.asyncio
    async def test_missing_resource_recorded_as_create(self, temp_dir):
        target = DryRunTarget(temp_dir, distribution="ubuntu")

        result = await converge(target, Group(name="kube"))

        assert result.success
        assert [change.to_dict() for change in target.changes] == [
            {"key": "Group/kube", "kind": "Group", "operation": "create", "changes": {}},
        ]
