import json
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import ConfigurationError
from .logger import get_logger
from .models import (
    DeploymentPlan, HealthCheckPolicy, RetryPolicy, RollbackThresholds, Server, Strategy,
    TrafficState,
)

logger = get_logger("config")

PLAN_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass(frozen=True)
class LoadedConfig:
    plan: DeploymentPlan
    servers: tuple
    active_pool: str = None  # Blue-green: pool live at first load

    def fresh_servers(self):
        """Mutable Server objects for a run, built from the inventory"""
        return [Server(**vars(s)) for s in self.servers]


def find_plan_file(config_dir, environment):
    for suffix in PLAN_SUFFIXES:
        candidate = Path(config_dir) / f"{environment}{suffix}"
        if candidate.exists():
            return candidate
    raise ConfigurationError(
        f"no plan file for environment '{environment}' in {config_dir}", environment=environment
    )


def read_plan_file(path):
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"plan file not found: {path}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot parse plan file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"plan file {path} must contain a mapping")
    return data


def load_plan(path, environment=None, target_version=None, strategy=None):
    """Read, parse and validate a plan file. Overrides win over file values."""
    data = read_plan_file(path)
    loaded = parse_config(data, environment=environment, target_version=target_version, strategy=strategy)
    logger.info(f"Loaded plan for {loaded.plan.environment} from {path}: "
                f"{len(loaded.servers)} servers, strategy={loaded.plan.strategy.value}")
    return loaded


def parse_config(data, environment=None, target_version=None, strategy=None):
    if environment is not None and data.get("environment") not in (None, environment):
        raise ConfigurationError(
            f"plan is for environment '{data.get('environment')}', not '{environment}'",
            environment=environment,
        )
    env = environment or data.get("environment")
    if not env:
        raise ConfigurationError("plan has no environment name")

    raw_strategy = strategy or data.get("strategy") or Strategy.ROLLING.value
    try:
        parsed_strategy = Strategy.parse(raw_strategy)
    except ValueError:
        raise ConfigurationError(f"unknown strategy '{raw_strategy}'", environment=env)

    hc = _section(data, "healthCheck")
    th = _section(data, "rollbackThresholds")
    retry = _section(data, "deployRetry")
    adapters = _section(data, "adapters")

    defaults = DeploymentPlan(environment=env, target_version="")
    hc_defaults = defaults.health_check
    th_defaults = defaults.rollback_thresholds
    retry_defaults = defaults.deploy_retry

    plan = DeploymentPlan(
        environment=env,
        target_version=str(target_version or data.get("targetVersion") or ""),
        strategy=parsed_strategy,
        batch_size=_int(data, "batchSize", defaults.batch_size),
        drain_seconds=_float(data, "drainSeconds", defaults.drain_seconds),
        health_check=HealthCheckPolicy(
            endpoint=str(hc.get("endpoint") or hc_defaults.endpoint),
            interval_seconds=_float(hc, "intervalSeconds", hc_defaults.interval_seconds),
            max_attempts=_int(hc, "maxAttempts", hc_defaults.max_attempts),
            required_consecutive_successes=_int(
                hc, "requiredConsecutiveSuccesses", hc_defaults.required_consecutive_successes
            ),
            timeout_seconds=_float(hc, "timeoutSeconds", hc_defaults.timeout_seconds),
        ),
        rollback_thresholds=RollbackThresholds(
            error_rate=_float(th, "errorRate", th_defaults.error_rate),
            p95_latency_ms=_float(th, "p95LatencyMs", th_defaults.p95_latency_ms),
            cpu_percent=_float(th, "cpuPercent", th_defaults.cpu_percent),
            memory_percent=_float(th, "memoryPercent", th_defaults.memory_percent),
            unhealthy_server_fraction=_float(
                th, "unhealthyServerFraction", th_defaults.unhealthy_server_fraction
            ),
        ),
        canary_percent=_float(data, "canaryPercent", None),
        monitor_window_seconds=_float(data, "monitorWindowSeconds", defaults.monitor_window_seconds),
        sample_interval_seconds=_float(data, "sampleIntervalSeconds", defaults.sample_interval_seconds),
        max_parallelism=_int(data, "maxParallelism", defaults.max_parallelism),
        post_deploy_monitoring=_bool(data, "postDeployMonitoring", defaults.post_deploy_monitoring),
        deploy_retry=RetryPolicy(
            max_attempts=_int(retry, "maxAttempts", retry_defaults.max_attempts),
            base_delay_seconds=_float(retry, "baseDelaySeconds", retry_defaults.base_delay_seconds),
            max_delay_seconds=_float(retry, "maxDelaySeconds", retry_defaults.max_delay_seconds),
        ),
        deploy_timeout_seconds=_float(data, "deployTimeoutSeconds", None),
        adapters=tuple(sorted((str(k), str(v)) for k, v in adapters.items())),
    )

    servers = tuple(_parse_server(entry) for entry in data.get("servers") or [])
    active_pool = data.get("activePool")
    validate_plan(plan, servers, active_pool)
    return LoadedConfig(plan=plan, servers=servers, active_pool=active_pool)


def validate_plan(plan, servers, active_pool=None):
    """Raise ConfigurationError describing every problem found"""
    problems = []
    if not plan.target_version:
        problems.append("targetVersion is required")
    if plan.batch_size <= 0:
        problems.append("batchSize must be > 0")
    if plan.max_parallelism <= 0:
        problems.append("maxParallelism must be > 0")
    if plan.drain_seconds < 0:
        problems.append("drainSeconds must be >= 0")

    hc = plan.health_check
    if hc.max_attempts <= 0:
        problems.append("healthCheck.maxAttempts must be > 0")
    if hc.required_consecutive_successes < 1:
        problems.append("healthCheck.requiredConsecutiveSuccesses must be >= 1")
    elif hc.max_attempts > 0 and hc.required_consecutive_successes > hc.max_attempts:
        problems.append("healthCheck.requiredConsecutiveSuccesses cannot exceed maxAttempts")
    if hc.interval_seconds < 0:
        problems.append("healthCheck.intervalSeconds must be >= 0")
    if hc.timeout_seconds <= 0:
        problems.append("healthCheck.timeoutSeconds must be > 0")

    for name, value in vars(plan.rollback_thresholds).items():
        if value < 0:
            problems.append(f"rollbackThresholds.{name} must not be negative")
    if plan.rollback_thresholds.unhealthy_server_fraction > 1:
        problems.append("rollbackThresholds.unhealthyServerFraction must be <= 1")

    if plan.monitor_window_seconds < 0:
        problems.append("monitorWindowSeconds must be >= 0")
    if plan.sample_interval_seconds <= 0:
        problems.append("sampleIntervalSeconds must be > 0")
    if plan.deploy_retry.max_attempts < 1:
        problems.append("deployRetry.maxAttempts must be >= 1")
    if plan.deploy_retry.base_delay_seconds < 0:
        problems.append("deployRetry.baseDelaySeconds must be >= 0")
    if plan.deploy_timeout_seconds is not None and plan.deploy_timeout_seconds <= 0:
        problems.append("deployTimeoutSeconds must be > 0")

    if plan.strategy == Strategy.CANARY:
        if plan.canary_percent is None or not 0 < plan.canary_percent < 100:
            problems.append("canaryPercent must be within (0, 100) for the canary strategy")

    if not servers:
        problems.append("server inventory is empty")
    seen = set()
    for server in servers:
        if server.id in seen:
            problems.append(f"duplicate server id '{server.id}'")
        seen.add(server.id)

    if plan.strategy == Strategy.BLUE_GREEN:
        pools = {s.pool for s in servers}
        if None in pools or len(pools) != 2:
            problems.append("blue-green needs every server in one of exactly two pools")
        elif active_pool is not None and active_pool not in pools:
            problems.append(f"activePool '{active_pool}' is not one of the pools {sorted(pools)}")

    if problems:
        raise ConfigurationError("; ".join(problems), environment=plan.environment)


def _parse_server(entry):
    if not isinstance(entry, dict) or entry.get("id") is None or entry.get("address") is None:
        raise ConfigurationError(f"server entries need 'id' and 'address': {entry!r}")
    version = entry.get("version")
    return Server(
        id=str(entry["id"]),
        address=str(entry["address"]),
        version=str(version) if version is not None else None,
        pool=entry.get("pool"),
        traffic_state=TrafficState.ACTIVE,
    )


def _section(data, key):
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{key} must be a mapping")
    return value


def _int(data, key, default):
    # An explicit null means "not set"
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _float(data, key, default):
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")


def _bool(data, key, default):
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be true or false, got {value!r}")
    return value
