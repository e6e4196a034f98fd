import json
import os
import subprocess
import sys

import pytest

from fleet_orchestrator.audit import AuditLog, JsonLinesAuditSink, MemoryAuditSink
from fleet_orchestrator.config import parse_config
from fleet_orchestrator.engine import DeploymentOrchestrator
from fleet_orchestrator.errors import DeploymentInProgressError
from fleet_orchestrator.health import HealthChecker
from fleet_orchestrator.locks import EnvironmentLocks, FileEnvironmentLocks
from fleet_orchestrator.models import (
    DeploymentRecord, DeployState, RecordStatus, RollbackDecision, RollbackScope, RollbackTrigger, RunState,
    Server, TrafficState, utcnow,
)
from fleet_orchestrator.simulation import InMemoryLoadBalancer, SimulatedDeployer, SimulatedHealthProbe
from fleet_orchestrator.store import DeploymentHistory, FileDeploymentHistory, FleetStateStore


def record(version, status=RecordStatus.SUCCESS):
    now = utcnow()
    return DeploymentRecord("prod", version, now, now, status, backup_reference="0.9", strategy="rolling")


class TestDeploymentHistory:
    """Append-only history and halt markers."""

    def test_file_history_survives_restart(self, tmp_path):
        history = FileDeploymentHistory(tmp_path)
        first = history.append(record("1.0"))
        history.append(record("1.1", RecordStatus.FAILED))

        reloaded = FileDeploymentHistory(tmp_path)
        assert [r.version for r in reloaded.records("prod")] == ["1.0", "1.1"]
        assert reloaded.last_success("prod").id == first.id
        assert reloaded.last("prod").status == RecordStatus.FAILED
        assert reloaded.last_success("prod").backup_reference == "0.9"

    def test_history_file_is_json_lines(self, tmp_path):
        FileDeploymentHistory(tmp_path).append(record("1.0"))
        lines = (tmp_path / "history.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["status"] == "Success"

    def test_halt_marker_persists(self, tmp_path):
        FileDeploymentHistory(tmp_path).halt("prod", "RollbackFailure: web-03 unhealthy")
        history = FileDeploymentHistory(tmp_path)
        assert history.halt_reason("prod") == "RollbackFailure: web-03 unhealthy"
        assert history.resume("prod") == "RollbackFailure: web-03 unhealthy"
        assert history.halt_reason("prod") is None
        assert not (tmp_path / "prod.halted").exists()

    def test_memory_history_halts(self):
        history = DeploymentHistory()
        assert history.halt_reason("prod") is None
        history.halt("prod", "NoRollbackTarget")
        assert history.halt_reason("prod") == "NoRollbackTarget"
        history.resume("prod")
        assert history.halt_reason("prod") is None


class TestFleetStateStore:
    """Server runtime state between invocations."""

    def test_save_and_load_merges_inventory(self, tmp_path):
        loaded = parse_config({
            "environment": "prod",
            "targetVersion": "2.0",
            "servers": [
                {"id": "web-01", "address": "http://10.0.0.1", "version": "1.0"},
                {"id": "web-02", "address": "http://10.0.0.2", "version": "1.0"},
            ],
        })
        store = FleetStateStore(tmp_path)
        servers = loaded.fresh_servers()
        servers[0].version = "2.0"
        servers[1].traffic_state = TrafficState.OFFLINE
        servers[1].deploy_state = DeployState.FAILED
        store.save("prod", servers + [Server("web-99", "http://10.0.0.99")], active_pool="blue")

        restored, active_pool = store.load("prod", loaded)
        assert [s.id for s in restored] == ["web-01", "web-02"]
        assert restored[0].version == "2.0"
        assert restored[1].traffic_state == TrafficState.OFFLINE
        assert restored[1].deploy_state == DeployState.FAILED
        assert active_pool == "blue"

    def test_load_without_saved_state(self, tmp_path):
        loaded = parse_config({
            "environment": "prod",
            "targetVersion": "2.0",
            "servers": [{"id": "web-01", "address": "http://10.0.0.1", "version": "1.0"}],
        })
        servers, active_pool = FleetStateStore(tmp_path).load("prod", loaded)
        assert servers[0].version == "1.0"
        assert servers[0].traffic_state == TrafficState.ACTIVE
        assert active_pool is None


class TestEnvironmentLocks:
    """At most one in-progress run per environment."""

    def test_second_acquire_rejected(self):
        locks = EnvironmentLocks()
        locks.acquire("prod")
        with pytest.raises(DeploymentInProgressError):
            locks.acquire("prod")
        locks.acquire("staging")
        locks.release("prod")
        locks.acquire("prod")

    def test_hold_releases_on_error(self):
        locks = EnvironmentLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("prod"):
                raise RuntimeError("boom")
        assert locks.is_locked("prod") is False

    def test_lock_file_excludes_other_processes(self, tmp_path):
        first, second = FileEnvironmentLocks(tmp_path), FileEnvironmentLocks(tmp_path)
        first.acquire("prod")
        assert (tmp_path / "prod.lock").exists()
        assert second.is_locked("prod") is True
        with pytest.raises(DeploymentInProgressError, match="lock file"):
            second.acquire("prod")
        assert second.is_locked("prod") is True
        first.release("prod")
        second.acquire("prod")
        second.release("prod")
        assert not (tmp_path / "prod.lock").exists()

    @pytest.mark.skipif(os.name == "nt", reason="liveness check uses POSIX signal 0")
    def test_stale_lock_file_is_cleared(self, tmp_path):
        finished = subprocess.Popen([sys.executable, "-c", "pass"])
        finished.wait()
        (tmp_path / "prod.lock").write_text(str(finished.pid))
        (tmp_path / "qa.lock").write_text("not-a-pid")
        locks = FileEnvironmentLocks(tmp_path)
        assert locks.clear_stale("prod") is True
        assert locks.clear_stale("qa") is True
        assert locks.is_locked("prod") is False
        locks.acquire("prod")
        locks.release("prod")

    def test_live_lock_file_is_kept(self, tmp_path):
        first, second = FileEnvironmentLocks(tmp_path), FileEnvironmentLocks(tmp_path)
        first.acquire("prod")
        assert second.owner("prod") == os.getpid()
        assert second.clear_stale("prod") is False
        assert first.clear_stale("prod") is False
        assert (tmp_path / "prod.lock").exists()
        assert EnvironmentLocks().clear_stale("prod") is False


class TestAuditLog:
    """State transitions as JSON lines."""

    def test_json_lines_sink(self, tmp_path):
        sink = JsonLinesAuditSink(tmp_path / "audit" / "audit.jsonl")
        audit = AuditLog(sink)
        audit.transition("run-1", "prod", RunState.IDLE, RunState.PLANNING, "rolling rollout of 2.0")
        audit.transition("run-2", "staging", RunState.IDLE, RunState.PLANNING)

        entries = sink.read("prod")
        assert len(entries) == 1
        assert entries[0]["fromState"] == "Idle"
        assert entries[0]["toState"] == "Planning"
        assert entries[0]["runId"] == "run-1"
        assert entries[0]["reason"] == "rolling rollout of 2.0"
        assert "timestamp" in entries[0]
        assert len(sink.read()) == 2

    def test_decision_entry(self):
        audit = AuditLog(MemoryAuditSink())
        decision = RollbackDecision(RollbackTrigger.THRESHOLD_BREACH, RollbackScope.CANARY, "error_rate 12%")
        audit.decision("run-1", "prod", RunState.ROLLING_BACK, decision)
        entry = audit.sink.entries[0]
        assert entry["fromState"] == entry["toState"] == "RollingBack"
        assert entry["reason"] == "ThresholdBreach (Canary scope): error_rate 12%"

    def test_broken_sink_does_not_raise(self):
        class FullDisk:
            def write(self, entry):
                raise OSError("No space left on device")

        AuditLog(FullDisk()).transition("run-1", "prod", RunState.IDLE, RunState.PLANNING)


class TestOperatorCommands:
    """Baseline, resume and status."""

    def make_orchestrator(self):
        return DeploymentOrchestrator(SimulatedDeployer(), InMemoryLoadBalancer(),
                                      HealthChecker(SimulatedHealthProbe()), audit=AuditLog(MemoryAuditSink()))

    def test_baseline_gives_rollback_target(self):
        orchestrator = self.make_orchestrator()
        servers = [Server("web-01", "http://a"), Server("web-02", "http://b", version="0.9")]
        rec = orchestrator.record_baseline("prod", "1.0", servers)
        assert rec.status == RecordStatus.SUCCESS
        assert orchestrator.history.last_success("prod").version == "1.0"
        assert servers[0].version == "1.0"
        assert servers[1].version == "0.9"

    def test_baseline_rejected_while_locked(self):
        orchestrator = self.make_orchestrator()
        orchestrator.locks.acquire("prod")
        with pytest.raises(DeploymentInProgressError):
            orchestrator.record_baseline("prod", "1.0", [])

    def test_resume_clears_halt(self):
        orchestrator = self.make_orchestrator()
        assert orchestrator.resume("prod") is None
        orchestrator.history.halt("prod", "RollbackFailure: web-01")
        assert orchestrator.resume("prod") == "RollbackFailure: web-01"
        assert orchestrator.history.halt_reason("prod") is None
        assert orchestrator.audit.sink.entries[-1]["toState"] == "Idle"

    def test_status(self):
        orchestrator = self.make_orchestrator()
        servers = [Server("web-01", "http://a", version="1.0")]
        orchestrator.record_baseline("prod", "1.0", servers)
        status = orchestrator.status("prod", servers)
        assert status["inProgress"] is False
        assert status["halted"] is None
        assert status["rollbackTarget"] == "1.0"
        assert status["lastDeployment"]["version"] == "1.0"
        assert status["servers"] == [{
            "id": "web-01", "pool": None, "version": "1.0", "trafficState": "Active", "deployState": "Healthy",
        }]
