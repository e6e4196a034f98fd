from enum import Enum


class ErrorKind(str, Enum):
    CONFIGURATION_ERROR = "ConfigurationError"
    CONNECTIVITY_ERROR = "ConnectivityError"
    HEALTH_CHECK_TIMEOUT = "HealthCheckTimeout"
    DEPLOYMENT_FAILURE = "DeploymentFailure"
    THRESHOLD_BREACH = "ThresholdBreach"
    ROLLBACK_FAILURE = "RollbackFailure"
    NO_ROLLBACK_TARGET = "NoRollbackTarget"
    DEPLOYMENT_IN_PROGRESS = "DeploymentInProgress"
    INTERVENTION_REQUIRED = "InterventionRequired"


# Kinds that stop automated processing until an operator steps in
FATAL_KINDS = frozenset({ErrorKind.ROLLBACK_FAILURE, ErrorKind.NO_ROLLBACK_TARGET})


class OrchestratorError(Exception):
    kind = None

    def __init__(self, message, environment=None):
        super().__init__(message)
        self.environment = environment

    @property
    def fatal(self):
        return self.kind in FATAL_KINDS


class ConfigurationError(OrchestratorError, ValueError):
    kind = ErrorKind.CONFIGURATION_ERROR


class ConnectivityError(OrchestratorError):
    kind = ErrorKind.CONNECTIVITY_ERROR


class HealthCheckTimeout(OrchestratorError):
    kind = ErrorKind.HEALTH_CHECK_TIMEOUT


class DeploymentFailure(OrchestratorError):
    kind = ErrorKind.DEPLOYMENT_FAILURE


class ThresholdBreach(OrchestratorError):
    kind = ErrorKind.THRESHOLD_BREACH


class RollbackFailure(OrchestratorError):
    kind = ErrorKind.ROLLBACK_FAILURE


class NoRollbackTarget(OrchestratorError):
    kind = ErrorKind.NO_ROLLBACK_TARGET


class DeploymentInProgressError(OrchestratorError, RuntimeError):
    kind = ErrorKind.DEPLOYMENT_IN_PROGRESS


class InterventionRequired(OrchestratorError, RuntimeError):
    kind = ErrorKind.INTERVENTION_REQUIRED


_BY_KIND = {
    cls.kind: cls
    for cls in (
        ConfigurationError, ConnectivityError, HealthCheckTimeout, DeploymentFailure,
        ThresholdBreach, RollbackFailure, NoRollbackTarget,
        DeploymentInProgressError, InterventionRequired,
    )
}


def error_for(kind, message, environment=None):
    """Build the exception matching an ErrorKind value"""
    return _BY_KIND[ErrorKind(kind)](message, environment=environment)
