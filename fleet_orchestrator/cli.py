import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from .audit import AuditLog, JsonLinesAuditSink
from .config import find_plan_file, load_plan
from .engine import DeploymentOrchestrator
from .errors import ConfigurationError, NoRollbackTarget, OrchestratorError
from .health import HealthChecker
from .locks import FileEnvironmentLocks
from .logger import get_logger, setup_logging
from .models import Strategy
from .simulation import build_adapters
from .store import FileDeploymentHistory, FleetStateStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_CONFIG = 2

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser():
    parser = argparse.ArgumentParser(prog="fleet-orchestrator", description="Fleet deployment orchestrator")
    parser.add_argument("--config-dir", default="config", help="directory holding <environment>.yaml|.json plans")
    parser.add_argument("--state-dir", default=".fleet-state", help="history, audit log, locks and server state")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy", help="roll a version out to an environment")
    deploy.add_argument("environment")
    deploy.add_argument("version")
    deploy.add_argument("--strategy", choices=[s.value for s in Strategy])
    deploy.add_argument("--dry-run", action="store_true", help="plan batches without touching servers")

    rollback = sub.add_parser("rollback", help="restore the last successful version")
    rollback.add_argument("environment")

    status = sub.add_parser("status", help="show servers, last deployment and halt state")
    status.add_argument("environment")

    baseline = sub.add_parser("baseline", help="record the version already running as known good")
    baseline.add_argument("environment")
    baseline.add_argument("version")

    resume = sub.add_parser("resume", help="clear a halt after manual intervention")
    resume.add_argument("environment")
    return parser


class Workspace:
    """Everything one CLI command needs for an environment"""

    def __init__(self, args, version=None, strategy=None):
        self.environment = args.environment
        self.history = FileDeploymentHistory(args.state_dir)
        self.store = FleetStateStore(args.state_dir)
        if version is None:
            known = self.history.last_success(self.environment)
            version = known.version if known else "unknown"

        path = find_plan_file(args.config_dir, self.environment)
        loaded = load_plan(path, environment=self.environment, target_version=version, strategy=strategy)
        self.plan = loaded.plan
        self.servers, self.active_pool = self.store.load(self.environment, loaded)

        adapters = build_adapters(self.plan, active_pool=self.active_pool)
        self.load_balancer = adapters["loadBalancer"]
        self.orchestrator = DeploymentOrchestrator(
            deployer=adapters["deployer"],
            load_balancer=self.load_balancer,
            health_checker=HealthChecker(adapters["healthProbe"]),
            metrics_source=adapters["metricsSource"],
            test_suite=adapters["testSuite"],
            history=self.history,
            audit=AuditLog(JsonLinesAuditSink(Path(args.state_dir) / "audit.jsonl")),
            locks=FileEnvironmentLocks(args.state_dir),
        )

    def save(self, active_pool=None):
        self.store.save(self.environment, self.servers, active_pool or self.active_pool)

    async def aclose(self):
        await self.orchestrator.health_checker.aclose()


async def run_deploy(args):
    workspace = Workspace(args, version=args.version, strategy=args.strategy)
    cancel = asyncio.Event()
    _install_cancel_handler(cancel)
    try:
        outcome = await workspace.orchestrator.deploy(
            workspace.plan, workspace.servers, cancel_event=cancel,
            active_pool=workspace.active_pool, dry_run=args.dry_run,
        )
    finally:
        await workspace.aclose()
    if not outcome.dry_run:
        workspace.save(outcome.active_pool)
    print(json.dumps(outcome.to_dict(), indent=2))
    return EXIT_OK if outcome.success or outcome.dry_run else EXIT_FAILED


async def run_rollback(args):
    history = FileDeploymentHistory(args.state_dir)
    if history.last_success(args.environment) is None:
        raise NoRollbackTarget(f"no successful deployment recorded for {args.environment}",
                               environment=args.environment)
    workspace = Workspace(args)
    try:
        result = await workspace.orchestrator.rollback(workspace.plan, workspace.servers, workspace.active_pool)
    finally:
        workspace.save(await _active_pool(workspace))
        await workspace.aclose()
    print(json.dumps({
        "environment": args.environment,
        "targetVersion": result.target_version,
        "noop": result.noop,
        "restored": result.restored,
    }, indent=2))
    return EXIT_OK


async def run_status(args):
    workspace = Workspace(args)
    print(json.dumps(workspace.orchestrator.status(args.environment, workspace.servers, workspace.active_pool),
                     indent=2))
    return EXIT_OK


async def run_baseline(args):
    workspace = Workspace(args, version=args.version)
    record = workspace.orchestrator.record_baseline(args.environment, args.version, workspace.servers)
    workspace.save()
    print(json.dumps(record.to_dict(), indent=2))
    return EXIT_OK


async def run_resume(args):
    workspace = Workspace(args)
    locks = workspace.orchestrator.locks
    was_locked = locks.is_locked(args.environment)
    reason = workspace.orchestrator.resume(args.environment)
    if was_locked:
        if locks.is_locked(args.environment):
            print(f"{args.environment} lock is held by running process {locks.owner(args.environment)}")
        else:
            print(f"{args.environment} stale lock removed")
    if reason is None:
        print(f"{args.environment} is not halted")
    else:
        print(f"{args.environment} resumed (was halted: {reason})")
    return EXIT_OK


COMMANDS = {
    "deploy": run_deploy,
    "rollback": run_rollback,
    "status": run_status,
    "baseline": run_baseline,
    "resume": run_resume,
}


async def _active_pool(workspace):
    """Pool the balancer reports live after a command, when it tracks pools"""
    try:
        return await workspace.load_balancer.get_active_pool(workspace.environment)
    except NotImplementedError:
        return None


def _install_cancel_handler(cancel):
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        # No signal support in this loop (Windows, or not the main thread); Ctrl-C aborts outright
        get_logger("cli").debug("SIGINT cancellation not available")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    logger = get_logger("cli")

    try:
        code = asyncio.run(COMMANDS[args.cmd](args))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_BAD_CONFIG)
    except OrchestratorError as e:
        if e.fatal:
            logger.critical(f"{e.kind.value}: {e}. Manual intervention required")
        else:
            logger.error(f"{e.kind.value}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    if code != EXIT_OK:
        sys.exit(code)


if __name__ == "__main__":
    main()
