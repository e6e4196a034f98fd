import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import error_for


class TrafficState(str, Enum):
    ACTIVE = "Active"
    DRAINING = "Draining"
    OFFLINE = "Offline"


class DeployState(str, Enum):
    PENDING = "Pending"
    DEPLOYING = "Deploying"
    HEALTH_CHECKING = "HealthChecking"
    HEALTHY = "Healthy"
    FAILED = "Failed"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


class Strategy(str, Enum):
    ROLLING = "rolling"
    CANARY = "canary"
    BLUE_GREEN = "blue-green"

    @classmethod
    def parse(cls, value):
        """Accept both CLI spellings (blue-green) and plan-file spellings (BlueGreen)."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized == "bluegreen":
            normalized = "blue-green"
        return cls(normalized)


class RunState(str, Enum):
    IDLE = "Idle"
    PLANNING = "Planning"
    BATCH_IN_PROGRESS = "BatchInProgress"
    MONITORING = "Monitoring"
    BATCH_COMPLETE = "BatchComplete"
    COMPLETED = "Completed"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


class RecordStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


class RollbackTrigger(str, Enum):
    HEALTH_CHECK_FAILURE = "HealthCheckFailure"
    THRESHOLD_BREACH = "ThresholdBreach"
    OPERATOR_CANCEL = "OperatorCancel"


class RollbackScope(str, Enum):
    BATCH = "Batch"
    CANARY = "Canary"
    ENVIRONMENT = "Environment"


@dataclass
class Server:
    id: str
    address: str
    version: str = None  # Installed version, None when unknown
    pool: str = None  # Blue-green pool name
    traffic_state: TrafficState = TrafficState.ACTIVE
    deploy_state: DeployState = DeployState.HEALTHY

    def is_restored_to(self, version):
        return (
            self.version == version
            and self.deploy_state == DeployState.HEALTHY
            and self.traffic_state == TrafficState.ACTIVE
        )


@dataclass(frozen=True)
class HealthCheckPolicy:
    endpoint: str = "/health"
    interval_seconds: float = 5.0
    max_attempts: int = 10
    required_consecutive_successes: int = 3
    timeout_seconds: float = 5.0  # Per-probe HTTP timeout


@dataclass(frozen=True)
class RollbackThresholds:
    error_rate: float = 5.0  # Percent of requests failing
    p95_latency_ms: float = 1000.0
    cpu_percent: float = 90.0
    memory_percent: float = 90.0
    unhealthy_server_fraction: float = 0.5  # Breach when strictly exceeded


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for transient connectivity errors at the deployer boundary"""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass(frozen=True)
class DeploymentPlan:
    environment: str
    target_version: str
    strategy: Strategy = Strategy.ROLLING
    batch_size: int = 2
    drain_seconds: float = 0.0
    health_check: HealthCheckPolicy = field(default_factory=HealthCheckPolicy)
    rollback_thresholds: RollbackThresholds = field(default_factory=RollbackThresholds)
    canary_percent: float = None  # Canary only
    monitor_window_seconds: float = 300.0
    sample_interval_seconds: float = 30.0
    max_parallelism: int = 10  # Global cap on per-batch concurrency
    post_deploy_monitoring: bool = True
    deploy_retry: RetryPolicy = field(default_factory=RetryPolicy)
    deploy_timeout_seconds: float = None
    adapters: tuple = ()  # (name, "module:factory") pairs

    @property
    def worker_limit(self):
        return max(1, min(self.batch_size, self.max_parallelism))

    def adapter_path(self, name):
        return dict(self.adapters).get(name)


@dataclass(frozen=True)
class DeploymentRecord:
    environment: str
    version: str
    started_at: datetime
    ended_at: datetime
    status: RecordStatus
    backup_reference: str = None  # Version that was live before this run
    strategy: str = None
    reason: str = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self):
        return {
            "id": self.id,
            "environment": self.environment,
            "version": self.version,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "status": self.status.value,
            "backupReference": self.backup_reference,
            "strategy": self.strategy,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data["id"],
            environment=data["environment"],
            version=data["version"],
            started_at=datetime.fromisoformat(data["startedAt"]),
            ended_at=datetime.fromisoformat(data["endedAt"]),
            status=RecordStatus(data["status"]),
            backup_reference=data.get("backupReference"),
            strategy=data.get("strategy"),
            reason=data.get("reason"),
        )


@dataclass
class MetricSample:
    server_id: str
    timestamp: datetime
    error_rate: float = 0.0
    latency_p95: float = 0.0
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    available: bool = True

    def breaches(self, thresholds):
        """Names of the metrics that exceed their threshold"""
        if not self.available:
            return ["availability"]
        checks = (
            ("error_rate", self.error_rate, thresholds.error_rate),
            ("latency_p95", self.latency_p95, thresholds.p95_latency_ms),
            ("cpu_percent", self.cpu_percent, thresholds.cpu_percent),
            ("memory_percent", self.memory_percent, thresholds.memory_percent),
        )
        return [name for name, value, limit in checks if value > limit]


@dataclass(frozen=True)
class RollbackDecision:
    triggered_by: RollbackTrigger
    scope: RollbackScope
    reason: str
    server_ids: tuple = ()


@dataclass
class DeployResult:
    success: bool
    error_detail: str = None


@dataclass
class MonitorResult:
    clean: bool
    decision: RollbackDecision = None
    rounds: int = 0
    samples: list = field(default_factory=list)  # Samples from the last round


@dataclass
class RollbackResult:
    success: bool
    scope: RollbackScope
    target_version: str = None
    restored: list = field(default_factory=list)  # Server ids redeployed
    failed: list = field(default_factory=list)  # Server ids that did not come back healthy
    noop: bool = False
    reason: str = None


@dataclass
class DeploymentOutcome:
    """Result of one orchestrated run"""
    run_id: str
    environment: str
    version: str
    strategy: Strategy
    state: RunState = RunState.IDLE
    record: DeploymentRecord = None
    decision: RollbackDecision = None
    rollback: RollbackResult = None
    error_kind: str = None  # ErrorKind value when the run ended on an error
    requires_intervention: bool = False
    batches: list = field(default_factory=list)  # Server ids per planned batch
    completed_batches: int = 0
    deployed: list = field(default_factory=list)  # Server ids now at the target version
    skipped: list = field(default_factory=list)  # Server ids already at the target version
    active_pool: str = None  # Blue-green: pool live when the run ended
    dry_run: bool = False
    history: list = field(default_factory=list)  # (from_state, to_state, reason) tuples

    @property
    def success(self):
        return self.state == RunState.COMPLETED

    def raise_for_status(self):
        """Raise the error matching `error_kind` for runs that did not complete"""
        if self.success or self.error_kind is None:
            return
        reason = self.decision.reason if self.decision else self.state.value
        if self.rollback is not None and not self.rollback.success:
            reason = self.rollback.reason
        raise error_for(self.error_kind, reason, environment=self.environment)

    def to_dict(self):
        return {
            "runId": self.run_id,
            "environment": self.environment,
            "version": self.version,
            "strategy": self.strategy.value,
            "state": self.state.value,
            "status": self.record.status.value if self.record else None,
            "errorKind": self.error_kind,
            "requiresIntervention": self.requires_intervention,
            "batches": self.batches,
            "completedBatches": self.completed_batches,
            "deployed": self.deployed,
            "skipped": self.skipped,
            "activePool": self.active_pool,
            "dryRun": self.dry_run,
            "decision": {
                "triggeredBy": self.decision.triggered_by.value,
                "scope": self.decision.scope.value,
                "reason": self.decision.reason,
                "serverIds": list(self.decision.server_ids),
            } if self.decision else None,
            "rollback": {
                "success": self.rollback.success,
                "targetVersion": self.rollback.target_version,
                "restored": self.rollback.restored,
                "failed": self.rollback.failed,
                "noop": self.rollback.noop,
            } if self.rollback else None,
        }


def utcnow():
    return datetime.now(timezone.utc)
