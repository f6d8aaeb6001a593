"""Tests for the command line interface and output formatting."""

import pytest
from rich.console import Console
from typer.testing import CliRunner

from convergent.cli import app
from convergent.executor import PassResult, TaskResult, TaskState
from convergent.errors import ApplyError
from convergent.formatters import PassFormatter
from convergent.settings import reload_settings
from convergent.targets import PlannedChange

runner = CliRunner()

MAIN = '''
from convergent.tasks import File

motd = File(name="/etc/motd", contents="hello\\n")
'''


@pytest.fixture
def project(temp_dir, settings_env):
    settings_env.setenv("CONVERGENT_DISTRIBUTION", "ubuntu")
    settings_env.setenv("CONVERGENT_TARGET", "local")
    reload_settings()
    main_file = temp_dir / "main.py"
    main_file.write_text(MAIN)
    return temp_dir


class TestCommands:
    """Tests for the apply and plan commands."""

    def test_plan(self, project):
        result = runner.invoke(app, ["plan", "--file", str(project / "main.py"), "--root", str(project / "root")])

        assert result.exit_code == 0
        assert "+ File//etc/motd" in result.output
        assert "Plan: 1 to create, 0 to change." in result.output
        assert not (project / "root/etc/motd").exists()

    def test_apply(self, project):
        result = runner.invoke(app, ["apply", "--file", str(project / "main.py"), "--root", str(project / "root")])

        assert result.exit_code == 0
        assert "Node converged" in result.output
        assert (project / "root/etc/motd").read_text() == "hello\n"

    def test_missing_main_file(self, project):
        result = runner.invoke(app, ["apply", "--file", str(project / "absent.py")])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestFormatter:
    """Tests for PassFormatter output."""

    def render(self, text):
        console = Console(record=True, width=120)
        console.print(text)
        return console.export_text()

    def test_plan_symbols(self):
        formatter = PassFormatter()
        output = self.render(formatter.format_plan([
            PlannedChange(key="File//etc/motd", kind="File", changes={"contents": "a\nb\n"}, exists=False),
            PlannedChange(key="Service/kubelet.service", kind="Service", changes={"enabled": True}, exists=True),
        ]))

        assert "+ File//etc/motd" in output
        assert "contents = <2 lines>" in output
        assert "~ Service/kubelet.service" in output
        assert "enabled = True" in output
        assert "Plan: 1 to create, 1 to change." in output

    def test_restart_only_change(self):
        output = self.render(PassFormatter().format_plan([
            PlannedChange(key="Service/kubelet.service", kind="Service", exists=True, action="restart"),
        ]))

        assert "-/+ Service/kubelet.service" in output
        assert "Plan: 0 to create, 0 to change, 1 to restart." in output

    def test_empty_plan(self):
        output = self.render(PassFormatter().format_plan([]))
        assert "No changes" in output

    def test_result_summary(self):
        failed = TaskResult(key="Package/curl", state=TaskState.FAILED, error=ApplyError("apt-get failed"))
        blocked = TaskResult(key="Service/kubelet.service", state=TaskState.BLOCKED)
        done = TaskResult(key="File//etc/motd", state=TaskState.DONE, history=[TaskState.PENDING, TaskState.DONE])
        result = PassResult(
            order=["File//etc/motd", "Package/curl", "Service/kubelet.service"],
            results={r.key: r for r in (failed, blocked, done)},
        )

        output = self.render(PassFormatter().format_result(result))

        assert "unchanged" in output
        assert "apt-get failed" in output
        assert "blocked" in output
        assert "0 applied, 1 unchanged, 1 failed, 1 not attempted." in output
