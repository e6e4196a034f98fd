import json

import pytest
import yaml
from unittest.mock import patch

from fleet_orchestrator.cli import build_parser, main
from fleet_orchestrator.store import FileDeploymentHistory


def write_plan(config_dir, environment="staging", **overrides):
    data = {
        "environment": environment,
        "targetVersion": "1.0",
        "strategy": "Rolling",
        "batchSize": 2,
        "monitorWindowSeconds": 0,
        "healthCheck": {"intervalSeconds": 0, "maxAttempts": 2, "requiredConsecutiveSuccesses": 1},
        "servers": [
            {"id": "web-01", "address": "http://10.0.0.1:8080", "version": "1.0"},
            {"id": "web-02", "address": "http://10.0.0.2:8080", "version": "1.0"},
            {"id": "web-03", "address": "http://10.0.0.3:8080", "version": "1.0"},
        ],
    }
    data.update(overrides)
    path = config_dir / f"{environment}.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def run_cli(tmp_path, *argv):
    args = ["fleet-orchestrator", "--config-dir", str(tmp_path / "config"), "--state-dir", str(tmp_path / "state"),
            "--log-level", "warning", *argv]
    with patch("sys.argv", args):
        main()


@pytest.fixture
def workdir(tmp_path):
    (tmp_path / "config").mkdir()
    write_plan(tmp_path / "config")
    return tmp_path


class TestCLIArgumentParsing:
    """Test CLI argument parsing without executing commands."""

    def test_help_displays_correctly(self):
        with patch("sys.argv", ["fleet-orchestrator", "--help"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 0

    def test_deploy_help_displays_correctly(self):
        with patch("sys.argv", ["fleet-orchestrator", "deploy", "--help"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 0

    def test_missing_command_fails(self):
        with patch("sys.argv", ["fleet-orchestrator"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 2

    def test_missing_version_fails(self):
        with patch("sys.argv", ["fleet-orchestrator", "deploy", "staging"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 2

    def test_invalid_strategy_fails(self):
        with patch("sys.argv", ["fleet-orchestrator", "deploy", "staging", "2.0", "--strategy", "big-bang"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 2

    def test_parser_defaults(self):
        args = build_parser().parse_args(["deploy", "prod", "2.0", "--strategy", "blue-green"])
        assert args.environment == "prod"
        assert args.version == "2.0"
        assert args.strategy == "blue-green"
        assert args.dry_run is False
        assert args.log_level == "INFO"


class TestCLICommands:
    """End-to-end commands against simulated adapters."""

    def test_deploy_success(self, workdir, capsys):
        run_cli(workdir, "deploy", "staging", "2.0")

        output = json.loads(capsys.readouterr().out)
        assert output["state"] == "Completed"
        assert output["batches"] == [["web-01", "web-02"], ["web-03"]]

        saved = json.loads((workdir / "state" / "staging.state.json").read_text())
        assert {s["version"] for s in saved["servers"]} == {"2.0"}
        audit = (workdir / "state" / "audit.jsonl").read_text().splitlines()
        assert json.loads(audit[-1])["toState"] == "Completed"
        assert not (workdir / "state" / "staging.lock").exists()

    def test_state_carries_over_between_runs(self, workdir, capsys):
        run_cli(workdir, "deploy", "staging", "2.0")
        capsys.readouterr()
        run_cli(workdir, "deploy", "staging", "2.0")
        output = json.loads(capsys.readouterr().out)
        assert output["state"] == "Completed"
        assert output["skipped"] == ["web-01", "web-02", "web-03"]
        assert output["batches"] == []

        run_cli(workdir, "status", "staging")
        status = json.loads(capsys.readouterr().out)
        assert status["rollbackTarget"] == "2.0"
        assert status["halted"] is None
        assert [s["version"] for s in status["servers"]] == ["2.0", "2.0", "2.0"]

    def test_dry_run_saves_nothing(self, workdir, capsys):
        run_cli(workdir, "deploy", "staging", "2.0", "--dry-run")
        output = json.loads(capsys.readouterr().out)
        assert output["dryRun"] is True
        assert not (workdir / "state" / "staging.state.json").exists()

    def test_invalid_plan_exits_2(self, workdir):
        write_plan(workdir / "config", batchSize=0)
        with pytest.raises(SystemExit) as exc_info:
            run_cli(workdir, "deploy", "staging", "2.0")
        assert exc_info.value.code == 2

    def test_unknown_environment_exits_2(self, workdir):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(workdir, "deploy", "qa", "2.0")
        assert exc_info.value.code == 2

    def test_rollback_without_history_exits_1(self, workdir):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(workdir, "rollback", "staging")
        assert exc_info.value.code == 1

    def test_baseline_then_rollback(self, workdir, capsys):
        run_cli(workdir, "baseline", "staging", "1.0")
        run_cli(workdir, "deploy", "staging", "2.0")
        history = FileDeploymentHistory(workdir / "state")
        assert [r.version for r in history.records("staging")] == ["1.0", "2.0"]

        # Last success is 2.0 and every server runs it, so this is a no-op
        capsys.readouterr()
        run_cli(workdir, "rollback", "staging")
        output = json.loads(capsys.readouterr().out)
        assert output["noop"] is True
        assert output["targetVersion"] == "2.0"

    def test_halted_environment_exits_1_until_resumed(self, workdir, capsys):
        FileDeploymentHistory(workdir / "state").halt("staging", "RollbackFailure: web-02")
        with pytest.raises(SystemExit) as exc_info:
            run_cli(workdir, "deploy", "staging", "2.0")
        assert exc_info.value.code == 1

        run_cli(workdir, "resume", "staging")
        assert "resumed" in capsys.readouterr().out
        run_cli(workdir, "deploy", "staging", "2.0")

    def test_lock_held_exits_1(self, workdir):
        (workdir / "state").mkdir()
        (workdir / "state" / "staging.lock").write_text("12345")
        with pytest.raises(SystemExit) as exc_info:
            run_cli(workdir, "deploy", "staging", "2.0")
        assert exc_info.value.code == 1

    def test_resume_removes_stale_lock(self, workdir, capsys):
        (workdir / "state").mkdir()
        (workdir / "state" / "staging.lock").write_text("not-a-pid")
        run_cli(workdir, "resume", "staging")
        out = capsys.readouterr().out
        assert "stale lock removed" in out
        assert "is not halted" in out
        run_cli(workdir, "deploy", "staging", "2.0")
        assert not (workdir / "state" / "staging.lock").exists()
