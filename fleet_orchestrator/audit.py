import json
import threading
from pathlib import Path

from .logger import get_logger
from .models import utcnow

logger = get_logger("audit")


class MemoryAuditSink:
    def __init__(self):
        self.entries = []

    def write(self, entry):
        self.entries.append(entry)


class JsonLinesAuditSink:
    """Appends one JSON object per line"""

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, entry):
        line = json.dumps(entry, sort_keys=True)
        with self._lock, open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read(self, environment=None):
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            entries = [json.loads(line) for line in f if line.strip()]
        if environment is not None:
            entries = [e for e in entries if e.get("environment") == environment]
        return entries


class AuditLog:
    def __init__(self, sink=None):
        self.sink = sink if sink is not None else MemoryAuditSink()

    def transition(self, run_id, environment, from_state, to_state, reason=""):
        self._write({
            "timestamp": utcnow().isoformat(),
            "environment": environment,
            "fromState": getattr(from_state, "value", from_state),
            "toState": getattr(to_state, "value", to_state),
            "reason": reason,
            "runId": run_id,
        })

    def decision(self, run_id, environment, state, decision):
        """A rollback decision is logged as a self-transition carrying the trigger and scope"""
        self._write({
            "timestamp": utcnow().isoformat(),
            "environment": environment,
            "fromState": state.value,
            "toState": state.value,
            "reason": f"{decision.triggered_by.value} ({decision.scope.value} scope): {decision.reason}",
            "runId": run_id,
        })

    def _write(self, entry):
        try:
            self.sink.write(entry)
        except OSError:
            # Losing an audit line must not strand servers mid-rollout
            logger.exception(f"Audit sink failed to record {entry}")
