import json
import os
import threading
from pathlib import Path

from .logger import get_logger
from .models import DeploymentRecord, DeployState, RecordStatus, TrafficState

logger = get_logger("store")


class DeploymentHistory:
    """In-memory history, also the base for the file-backed store"""

    def __init__(self):
        self._records = []
        self._halts = {}
        self._lock = threading.Lock()

    def append(self, record):
        with self._lock:
            self._records.append(record)
            self._persist(record)
        logger.debug(f"Recorded {record.status.value} deployment of {record.version} to {record.environment}")
        return record

    def _persist(self, record):
        pass

    def records(self, environment):
        with self._lock:
            return [r for r in self._records if r.environment == environment]

    def last(self, environment):
        records = self.records(environment)
        return records[-1] if records else None

    def last_success(self, environment):
        for record in reversed(self.records(environment)):
            if record.status == RecordStatus.SUCCESS:
                return record
        return None

    def halt(self, environment, reason):
        self._halts[environment] = reason
        logger.error(f"Environment {environment} halted: {reason}")

    def halt_reason(self, environment):
        return self._halts.get(environment)

    def resume(self, environment):
        return self._halts.pop(environment, None)


class FileDeploymentHistory(DeploymentHistory):
    """History kept as JSON lines in `<state_dir>/history.jsonl`, halts as marker files"""

    def __init__(self, state_dir):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / "history.jsonl"
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        self._records.append(DeploymentRecord.from_dict(json.loads(line)))

    def _persist(self, record):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict()) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _halt_path(self, environment):
        return self.state_dir / f"{environment}.halted"

    def halt(self, environment, reason):
        super().halt(environment, reason)
        self._halt_path(environment).write_text(reason, encoding="utf-8")

    def halt_reason(self, environment):
        path = self._halt_path(environment)
        if path.exists():
            return path.read_text(encoding="utf-8") or "halted"
        return None

    def resume(self, environment):
        reason = self.halt_reason(environment)
        super().resume(environment)
        self._halt_path(environment).unlink(missing_ok=True)
        return reason


class FleetStateStore:
    """Server runtime state between CLI invocations, in `<state_dir>/<env>.state.json`"""

    def __init__(self, state_dir):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, environment):
        return self.state_dir / f"{environment}.state.json"

    def load(self, environment, loaded):
        """Saved state merged with the inventory: new servers appear, removed ones drop out"""
        servers = loaded.fresh_servers()
        active_pool = loaded.active_pool
        path = self._path(environment)
        if not path.exists():
            return servers, active_pool

        with open(path, "r", encoding="utf-8") as f:
            saved = json.load(f)
        by_id = {s["id"]: s for s in saved.get("servers", [])}
        for server in servers:
            state = by_id.get(server.id)
            if state is None:
                continue
            server.version = state.get("version")
            server.traffic_state = TrafficState(state.get("trafficState", TrafficState.ACTIVE.value))
            server.deploy_state = DeployState(state.get("deployState", DeployState.HEALTHY.value))
        return servers, saved.get("activePool", active_pool)

    def save(self, environment, servers, active_pool=None):
        data = {
            "environment": environment,
            "activePool": active_pool,
            "servers": [server_to_dict(s) for s in servers],
        }
        path = self._path(environment)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)


def server_to_dict(server):
    return {
        "id": server.id,
        "address": server.address,
        "pool": server.pool,
        "version": server.version,
        "trafficState": server.traffic_state.value,
        "deployState": server.deploy_state.value,
    }
