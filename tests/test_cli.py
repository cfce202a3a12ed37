"""
CLI tests — exit codes, reports and state commands through click's runner.
"""
import json
import os
import shutil
import subprocess
import sys

import pytest
from click.testing import CliRunner

from converge.cli import EXIT_CHANGES_PENDING, EXIT_ERROR, EXIT_NODE_FAILED, EXIT_OK, cli
from converge.state import LocalStateBackend

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    decl = tmp_path / "infra"
    decl.mkdir()
    shutil.copy(os.path.join(FIXTURES, "bootstrap.yaml"), decl / "bootstrap.yaml")
    return tmp_path


def _invoke(workspace, *args):
    runner = CliRunner()
    base = [
        "--state-dir", str(workspace / ".converge"),
        "--cloud-file", str(workspace / "cloud.json"),
    ]
    return runner.invoke(cli, base + list(args))


class TestPlanCommand:
    def test_plan_exits_zero(self, workspace):
        result = _invoke(workspace, "plan", str(workspace / "infra"))
        assert result.exit_code == EXIT_OK, result.output
        assert not (workspace / ".converge" / "state").exists()

    def test_detailed_exitcode_reports_pending_changes(self, workspace):
        result = _invoke(workspace, "plan", str(workspace / "infra"), "--detailed-exitcode")
        assert result.exit_code == EXIT_CHANGES_PENDING

    def test_detailed_exitcode_zero_when_converged(self, workspace):
        _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        result = _invoke(workspace, "plan", str(workspace / "infra"), "--detailed-exitcode")
        assert result.exit_code == EXIT_OK, result.output

    def test_json_report_to_file(self, workspace):
        out = workspace / "plan.json"
        result = _invoke(workspace, "plan", str(workspace / "infra"), "--format", "json", "-o", str(out))
        assert result.exit_code == EXIT_OK, result.output
        report = json.loads(out.read_text())
        assert report["summary"]["create"] == 5
        assert report["graph"]["order"].index("state") < report["graph"]["order"].index("locks")
        assert "results" not in report

    def test_markdown_written_with_lf(self, workspace):
        out = workspace / "plan.md"
        result = _invoke(workspace, "plan", str(workspace / "infra"), "--format", "markdown", "--output", str(out))
        assert result.exit_code == EXIT_OK, result.output
        with open(out, "rb") as f:
            content = f.read()
        assert b"\r\n" not in content
        assert b"\n" in content
        content.decode("utf-8")

    def test_cycle_is_an_error(self, workspace):
        result = _invoke(workspace, "plan", os.path.join(FIXTURES, "cyclic.yaml"))
        assert result.exit_code == EXIT_ERROR
        assert "CycleError" in result.output

    def test_no_declaration_files(self, workspace):
        empty = workspace / "empty"
        empty.mkdir()
        result = _invoke(workspace, "plan", str(empty))
        assert result.exit_code == EXIT_ERROR


class TestApplyCommand:
    def test_apply_then_no_op(self, workspace):
        first = _invoke(workspace, "apply", str(workspace / "infra"))
        assert first.exit_code == EXIT_OK, first.output

        out = workspace / "second.json"
        second = _invoke(workspace, "apply", str(workspace / "infra"), "--format", "json", "-o", str(out))
        assert second.exit_code == EXIT_OK, second.output
        report = json.loads(out.read_text())
        assert report["ok"] is True
        assert report["summary"]["no-op"] == 5
        assert {r["action"] for r in report["results"]} == {"no-op"}

    def test_cloud_and_state_persist_between_runs(self, workspace):
        _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        cloud = json.loads((workspace / "cloud.json").read_text())
        assert "acme-infra-state" in cloud["resources"]["object-store-bucket"]
        assert LocalStateBackend(str(workspace / ".converge")).versions()

    def test_destroy_blocked_by_protection(self, workspace):
        _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        out = workspace / "destroy.json"
        result = _invoke(workspace, "destroy", str(workspace / "infra"), "--format", "json", "-o", str(out))
        assert result.exit_code == EXIT_NODE_FAILED
        report = json.loads(out.read_text())
        failed = [r for r in report["results"] if r["status"] == "failed"]
        assert [r["name"] for r in failed] == ["state"]
        assert failed[0]["error_type"] == "ProtectedResourceError"

    def test_locked_state_is_an_error(self, workspace):
        LocalStateBackend(str(workspace / ".converge")).acquire_lock("other-run", lease_seconds=3600)
        result = _invoke(workspace, "apply", str(workspace / "infra"))
        assert result.exit_code == EXIT_ERROR
        assert "LockContentionError" in result.output
        assert not (workspace / "cloud.json").exists()

    def test_privilege_policy_from_settings(self, workspace):
        settings = workspace / "converge.yaml"
        settings.write_text(
            "privilege_policy:\n"
            "  allowed_managed_policies:\n"
            "    - arn:aws:iam::aws:policy/ReadOnlyAccess\n"
        )
        result = _invoke(workspace, "apply", str(workspace / "infra"))
        assert result.exit_code == EXIT_ERROR
        assert "PolicyViolationError" in result.output

    def test_broken_declaration_file_destroys_nothing(self, workspace):
        first = _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        assert first.exit_code == EXIT_OK, first.output
        with open(workspace / "infra" / "bootstrap.yaml", "a") as fh:
            fh.write("broken: [unclosed\n")

        result = _invoke(workspace, "apply", str(workspace / "infra"))
        assert result.exit_code == EXIT_ERROR
        assert "DeclarationError" in result.output
        cloud = json.loads((workspace / "cloud.json").read_text())
        assert "acme-infra-state" in cloud["resources"]["object-store-bucket"]
        assert len(cloud["resources"]["assumable-role"]) == 2
        snapshot = LocalStateBackend(str(workspace / ".converge")).read_latest()
        assert len(snapshot.resources) == 5


class TestStateCommands:
    def test_show_json(self, workspace):
        _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        result = _invoke(workspace, "show", "--json")
        assert result.exit_code == EXIT_OK
        snapshot = json.loads(result.output)
        assert sorted(snapshot["resources"]) == ["ci_deployer", "github", "locks", "operator", "state"]

    def test_show_empty(self, workspace):
        result = _invoke(workspace, "show")
        assert result.exit_code == EXIT_OK
        assert "No recorded resources" in result.output

    def test_output_by_name(self, workspace):
        _invoke(workspace, "apply", str(workspace / "infra"), "-q")
        result = _invoke(workspace, "output", str(workspace / "infra"), "--name", "state_bucket_arn")
        assert result.exit_code == EXIT_OK
        assert '"arn:aws:s3:::acme-infra-state"' in result.output

    def test_output_unknown_name(self, workspace):
        result = _invoke(workspace, "output", str(workspace / "infra"), "--name", "nope")
        assert result.exit_code == EXIT_ERROR

    def test_force_unlock(self, workspace):
        backend = LocalStateBackend(str(workspace / ".converge"))
        info = backend.acquire_lock("crashed-run", lease_seconds=3600)
        result = _invoke(workspace, "force-unlock", info.lock_id)
        assert result.exit_code == EXIT_OK
        assert backend.current_lock() is None

    def test_force_unlock_wrong_id(self, workspace):
        LocalStateBackend(str(workspace / ".converge")).acquire_lock("crashed-run", lease_seconds=3600)
        result = _invoke(workspace, "force-unlock", "not-the-id")
        assert result.exit_code == EXIT_ERROR


def test_module_execution():
    """Test that 'python -m converge' works."""
    result = subprocess.run(
        [sys.executable, "-m", "converge", "--help"],
        capture_output=True,
        text=True,
        cwd=ROOT,
    )
    assert result.returncode == 0
    assert "converge" in result.stdout
