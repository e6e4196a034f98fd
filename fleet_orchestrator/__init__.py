from .models import (
    Server, TrafficState, DeployState, HealthStatus, Strategy, RunState, RecordStatus,
    HealthCheckPolicy, RollbackThresholds, RetryPolicy, DeploymentPlan, DeploymentRecord,
    MetricSample, RollbackDecision, DeployResult, MonitorResult, RollbackResult, DeploymentOutcome,
)
from .errors import (
    ErrorKind, OrchestratorError, ConfigurationError, ConnectivityError, HealthCheckTimeout,
    DeploymentFailure, ThresholdBreach, RollbackFailure, NoRollbackTarget,
    DeploymentInProgressError, InterventionRequired,
)
from .config import load_plan, validate_plan
from .engine import DeploymentOrchestrator
from .failure import FailureInjector

__all__ = [
    "Server", "TrafficState", "DeployState", "HealthStatus", "Strategy", "RunState", "RecordStatus",
    "HealthCheckPolicy", "RollbackThresholds", "RetryPolicy", "DeploymentPlan", "DeploymentRecord",
    "MetricSample", "RollbackDecision", "DeployResult", "MonitorResult", "RollbackResult",
    "DeploymentOutcome",
    "ErrorKind", "OrchestratorError", "ConfigurationError", "ConnectivityError", "HealthCheckTimeout",
    "DeploymentFailure", "ThresholdBreach", "RollbackFailure", "NoRollbackTarget",
    "DeploymentInProgressError", "InterventionRequired",
    "load_plan", "validate_plan", "DeploymentOrchestrator", "FailureInjector",
]
