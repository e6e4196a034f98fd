import asyncio
import inspect
import math
import uuid

from .audit import AuditLog
from .errors import ConfigurationError, ErrorKind, InterventionRequired, NoRollbackTarget, RollbackFailure
from .health import HealthChecker
from .locks import EnvironmentLocks
from .logger import get_logger
from .metrics import MetricsMonitor
from .models import (
    DeploymentOutcome, DeploymentRecord, DeployState, HealthStatus, RecordStatus, RollbackDecision,
    RollbackScope, RollbackTrigger, RunState, Strategy, TrafficState, utcnow,
)
from .operations import ServerOperations, run_bounded
from .rollback import RollbackManager
from .store import DeploymentHistory


class _Run:
    """Mutable bookkeeping for one deployment run, owned by its coordinating task"""

    def __init__(self, plan, servers, dry_run=False):
        self.id = str(uuid.uuid4())
        self.plan = plan
        self.servers = servers
        self.started_at = utcnow()
        self.state = RunState.IDLE
        self.outcome = DeploymentOutcome(
            run_id=self.id,
            environment=plan.environment,
            version=plan.target_version,
            strategy=plan.strategy,
            dry_run=dry_run,
        )
        self.abort = asyncio.Event()
        self.decision = None  # First asynchronous stop request (breach or cancel)
        self.watches = []
        self.modified = set()  # Ids of servers a deploy was attempted on
        self.touched = []  # Servers taken out of traffic by this run, in order
        self.backup_reference = None

    def signal(self, decision):
        if self.decision is None:
            self.decision = decision
        self.abort.set()


class DeploymentOrchestrator:
    def __init__(self, deployer, load_balancer, health_checker=None, metrics_source=None, test_suite=None,
                 history=None, audit=None, locks=None, listeners=None):
        self.health_checker = health_checker if health_checker else HealthChecker()
        self.ops = ServerOperations(deployer, load_balancer, self.health_checker)
        self.history = history if history is not None else DeploymentHistory()
        self.rollbacks = RollbackManager(self.ops, self.history)
        self.monitor = MetricsMonitor(metrics_source) if metrics_source else None
        self.test_suite = test_suite
        self.audit = audit if audit is not None else AuditLog()
        self.locks = locks if locks is not None else EnvironmentLocks()
        self.listeners = list(listeners or [])
        self.logger = get_logger("engine")

    @staticmethod
    def plan_batches(servers, batch_size):
        """Split servers into batches for deployment"""
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        server_list = list(servers)
        batches = []
        for i in range(0, len(server_list), batch_size):
            batch = server_list[i:i + batch_size]
            batches.append(batch)
        return batches

    @staticmethod
    def select_canaries(servers, canary_percent):
        """First ceil(N * percent / 100) servers by id are the canaries"""
        ordered = sorted(servers, key=lambda s: s.id)
        count = math.ceil(len(ordered) * canary_percent / 100) if ordered else 0
        return ordered[:count], ordered[count:]

    def _transition(self, run, to_state, reason=""):
        from_state = run.state
        run.state = to_state
        run.outcome.state = to_state
        run.outcome.history.append((from_state.value, to_state.value, reason))
        self.audit.transition(run.id, run.plan.environment, from_state, to_state, reason)
        self.logger.info(f"[{run.plan.environment}] {from_state.value} -> {to_state.value}"
                         + (f": {reason}" if reason else ""))

    def _check_not_halted(self, environment):
        reason = self.history.halt_reason(environment)
        if reason:
            raise InterventionRequired(
                f"{environment} is halted and needs manual intervention ({reason}); resume it once fixed",
                environment=environment,
            )

    async def deploy(self, plan, servers, cancel_event=None, active_pool=None, dry_run=False):
        """Main deployment method - roll `plan.target_version` out to `servers`"""
        self._check_not_halted(plan.environment)
        if plan.strategy == Strategy.CANARY and self.monitor is None:
            raise ConfigurationError("canary deployments need a metrics source", environment=plan.environment)
        if plan.strategy == Strategy.BLUE_GREEN and not any(s.pool for s in servers):
            raise ConfigurationError("blue-green deployments need pooled servers", environment=plan.environment)

        # Raises DeploymentInProgressError when another run holds the environment
        self.locks.acquire(plan.environment)
        run = _Run(plan, list(servers), dry_run)
        relay = asyncio.create_task(self._relay_cancel(run, cancel_event)) if cancel_event else None
        try:
            self._transition(run, RunState.PLANNING, f"{plan.strategy.value} rollout of {plan.target_version}")
            previous = self.history.last_success(plan.environment)
            run.backup_reference = previous.version if previous else None

            if plan.strategy == Strategy.BLUE_GREEN:
                await self._blue_green(run, active_pool)
            elif plan.strategy == Strategy.CANARY:
                await self._canary(run)
            else:
                await self._rolling(run)
            return run.outcome
        finally:
            if relay is not None:
                relay.cancel()
                await asyncio.gather(relay, return_exceptions=True)
            await self._cancel_watches(run)
            self.locks.release(plan.environment)
            self.logger.debug("Deployment lock released")

    async def _relay_cancel(self, run, cancel_event):
        await cancel_event.wait()
        self.logger.warning(f"[{run.plan.environment}] Cancellation requested by operator")
        run.signal(RollbackDecision(
            triggered_by=RollbackTrigger.OPERATOR_CANCEL,
            scope=RollbackScope.ENVIRONMENT,
            reason="cancelled by operator",
        ))

    def _find_servers_to_update(self, run, servers):
        """Servers already running the target version healthily are left alone"""
        to_update = []
        for server in servers:
            if (server.version == run.plan.target_version and server.deploy_state == DeployState.HEALTHY
                    and server.traffic_state == TrafficState.ACTIVE):
                run.outcome.skipped.append(server.id)
            else:
                to_update.append(server)
        self.logger.info(f"Found {len(to_update)} servers to update, "
                         f"{len(run.outcome.skipped)} already at {run.plan.target_version}")
        return to_update

    def _dry_run(self, run):
        self.logger.info(f"DRY RUN: would deploy {run.plan.target_version} in {len(run.outcome.batches)} batches: "
                         f"{run.outcome.batches}")
        self._transition(run, RunState.IDLE, "dry run, nothing deployed")
        return run.outcome

    # Rolling

    async def _rolling(self, run):
        to_update = self._find_servers_to_update(run, run.servers)
        batches = self.plan_batches(to_update, run.plan.batch_size)
        run.outcome.batches = [[s.id for s in b] for b in batches]
        self.logger.info(f"Created {len(batches)} batches for deployment")
        if run.outcome.dry_run:
            return self._dry_run(run)
        if await self._run_batches(run, batches):
            await self._complete(run)

    async def _run_batches(self, run, batches, offset=0):
        """Run batches one by one. False when the run ended early (terminal state already set)."""
        total = len(batches) + offset
        for batch_idx, batch in enumerate(batches, start=offset + 1):
            if run.abort.is_set():
                await self._stop(run)
                return False

            ids = [s.id for s in batch]
            self._transition(run, RunState.BATCH_IN_PROGRESS, f"batch {batch_idx}/{total}: {', '.join(ids)}")
            failures = await self._roll_batch(run, batch)
            if failures is None or run.abort.is_set():
                # Stop requested while this batch was in flight; it is not reintegrated and the
                # environment rollback also covers any of its servers that failed
                await self._stop(run)
                return False
            if failures:
                await self._fail_batch(run, batch, failures, RollbackScope.BATCH)
                return False

            if not await self._reintegrate(run, batch, RollbackScope.BATCH):
                return False
            run.outcome.completed_batches += 1
            run.outcome.deployed.extend(ids)

            if self._start_watch(run, batch):
                self._transition(run, RunState.MONITORING, f"advisory watch over batch {batch_idx}")
            self._transition(run, RunState.BATCH_COMPLETE, f"batch {batch_idx}/{total} healthy and in traffic")

        if run.watches and not run.abort.is_set():
            self._transition(run, RunState.MONITORING,
                             f"waiting for {len(run.watches)} post-deploy watches to close")
            await self._join_watches(run)
        if run.abort.is_set():
            await self._stop(run)
            return False
        return True

    async def _roll_batch(self, run, batch):
        """Drain, deploy and health-check one batch.

        Returns {server_id: reason} for servers that failed (empty when all
        passed), or None when a stop was requested before anything was deployed.
        """
        plan = run.plan
        limit = plan.worker_limit
        run.touched.extend([s for s in batch if s not in run.touched])

        drained = await run_bounded(batch, self.ops.drain, limit)
        failures = {s.id: f"drain failed: {r}" for s, r in zip(batch, drained) if isinstance(r, BaseException)}
        if failures:
            return failures
        if await self._pause(run, plan.drain_seconds):
            return None
        for server in batch:
            server.traffic_state = TrafficState.OFFLINE

        run.modified.update(s.id for s in batch)

        async def deploy_one(server):
            return await self.ops.deploy(server, plan.target_version, plan.deploy_retry, plan.deploy_timeout_seconds)

        results = await run_bounded(batch, deploy_one, limit)
        for server, result in zip(batch, results):
            if isinstance(result, BaseException):
                server.deploy_state = DeployState.FAILED
                failures[server.id] = f"deploy raised {result!r}"
            elif not result.success:
                failures[server.id] = f"deploy failed: {result.error_detail}"
        if failures:
            return failures
        if run.abort.is_set():
            # Deploys that were in flight have finished; start nothing new
            return failures

        statuses = await self.ops.check_batch(batch, plan.health_check, limit)
        for server in batch:
            if statuses[server.id] != HealthStatus.HEALTHY:
                failures[server.id] = f"health check failed after {plan.health_check.max_attempts} probes"
        return failures

    async def _reintegrate(self, run, batch, scope):
        results = await run_bounded(batch, self.ops.reintegrate, run.plan.worker_limit)
        failures = {s.id: f"reintegration failed: {r}" for s, r in zip(batch, results) if isinstance(r, BaseException)}
        if failures:
            await self._fail_batch(run, batch, failures, scope)
            return False
        return True

    def _start_watch(self, run, servers):
        plan = run.plan
        if not plan.post_deploy_monitoring or plan.monitor_window_seconds <= 0 or self.monitor is None:
            return False
        task = asyncio.create_task(self.monitor.watch(
            list(servers), plan.monitor_window_seconds, plan.rollback_thresholds,
            plan.sample_interval_seconds, scope=RollbackScope.ENVIRONMENT,
        ))
        task.add_done_callback(lambda t: self._watch_done(run, t))
        run.watches.append(task)
        return True

    def _watch_done(self, run, task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Post-deploy watch crashed: {error!r}")
            return
        result = task.result()
        if not result.clean:
            run.signal(result.decision)

    async def _join_watches(self, run):
        abort_waiter = asyncio.ensure_future(run.abort.wait())
        try:
            pending = {w for w in run.watches if not w.done()}
            while pending and not run.abort.is_set():
                _, pending = await asyncio.wait(pending | {abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending.discard(abort_waiter)
        finally:
            abort_waiter.cancel()

    async def _cancel_watches(self, run):
        pending = [w for w in run.watches if not w.done()]
        for watch in pending:
            watch.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pause(self, run, seconds):
        """Sleep that wakes early on a stop request. True when stopped."""
        if seconds <= 0:
            return run.abort.is_set()
        try:
            await asyncio.wait_for(run.abort.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _await_unless_stopped(self, run, task):
        """Wait for `task` unless a stop request comes first. True when the task finished."""
        abort_waiter = asyncio.ensure_future(run.abort.wait())
        try:
            await asyncio.wait({task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return False
        return True

    def _gate_decision(self, watch, scope):
        """Rollback decision from a finished gating watch; a crashed monitor fails safe"""
        error = watch.exception()
        if error is not None:
            self.logger.error(f"Gating watch crashed: {error!r}")
            return RollbackDecision(
                triggered_by=RollbackTrigger.THRESHOLD_BREACH,
                scope=scope,
                reason=f"metrics monitor failed: {error!r}",
            )
        result = watch.result()
        return None if result.clean else result.decision

    # Canary

    async def _canary(self, run):
        plan = run.plan
        to_update = self._find_servers_to_update(run, run.servers)
        canaries, rest = self.select_canaries(to_update, plan.canary_percent)
        rest_batches = self.plan_batches(rest, plan.batch_size)
        run.outcome.batches = [[s.id for s in canaries]] + [[s.id for s in b] for b in rest_batches]
        if run.outcome.dry_run:
            return self._dry_run(run)
        if not canaries:
            await self._complete(run)
            return

        ids = [s.id for s in canaries]
        self._transition(run, RunState.BATCH_IN_PROGRESS, f"canary: {', '.join(ids)}")
        failures = await self._roll_batch(run, canaries)
        if failures is None or run.abort.is_set():
            await self._stop(run)
            return
        if failures:
            await self._fail_batch(run, canaries, failures, RollbackScope.CANARY)
            return
        if not await self._reintegrate(run, canaries, RollbackScope.CANARY):
            return
        run.outcome.deployed.extend(ids)

        self._transition(run, RunState.MONITORING, f"canary gate: watching for {plan.monitor_window_seconds}s")
        watch = asyncio.create_task(self.monitor.watch(
            canaries, plan.monitor_window_seconds, plan.rollback_thresholds,
            plan.sample_interval_seconds, scope=RollbackScope.CANARY,
        ))
        if not await self._await_unless_stopped(run, watch):
            await self._stop(run)
            return
        decision = self._gate_decision(watch, RollbackScope.CANARY)
        if decision is not None:
            await self._roll_back_scope(run, decision, canaries, RunState.FAILED, RecordStatus.FAILED,
                                        ErrorKind.THRESHOLD_BREACH)
            return

        run.outcome.completed_batches += 1
        self._transition(run, RunState.BATCH_COMPLETE, "canary window closed clean")
        if await self._run_batches(run, rest_batches, offset=1):
            await self._complete(run)

    # Blue-green

    async def _blue_green(self, run, active_pool):
        plan = run.plan
        pools = sorted({s.pool for s in run.servers if s.pool})
        try:
            live = await self.ops.load_balancer.get_active_pool(plan.environment)
        except NotImplementedError:
            raise ConfigurationError("load balancer cannot switch pools", environment=plan.environment)
        live = live or active_pool or pools[0]
        if live not in pools or len(pools) != 2:
            raise ConfigurationError(f"cannot pick a standby pool from {pools} with {live} live",
                                     environment=plan.environment)
        target_pool = next(p for p in pools if p != live)
        target = [s for s in run.servers if s.pool == target_pool]
        run.outcome.active_pool = live
        run.outcome.batches = [[s.id for s in target]]
        if run.outcome.dry_run:
            return self._dry_run(run)

        for server in target:
            # The standby pool carries no live traffic, so there is nothing to drain
            server.traffic_state = TrafficState.OFFLINE
        run.modified.update(s.id for s in target)

        self._transition(run, RunState.BATCH_IN_PROGRESS, f"deploying pool {target_pool} ({len(target)} servers)")
        failures = await self._deploy_standby(run, target)
        if run.abort.is_set() and not failures:
            await self._stop_blue_green(run, live, target_pool, flipped=False)
            return
        if failures:
            kind = (ErrorKind.HEALTH_CHECK_TIMEOUT if all(f.startswith("health") for f in failures.values())
                    else ErrorKind.DEPLOYMENT_FAILURE)
            reason = "; ".join(f"{sid}: {why}" for sid, why in sorted(failures.items()))
            await self._finish(run, RunState.FAILED, RecordStatus.FAILED,
                               f"pool {target_pool} not healthy, it stays inactive: {reason}", kind)
            return

        passed, detail = await self._acceptance_tests(run, target)
        if not passed:
            await self._finish(run, RunState.FAILED, RecordStatus.FAILED,
                               f"acceptance tests failed on pool {target_pool}, it stays inactive: {detail}",
                               ErrorKind.DEPLOYMENT_FAILURE)
            return
        if run.abort.is_set():
            await self._stop_blue_green(run, live, target_pool, flipped=False)
            return

        try:
            await self.ops.load_balancer.set_active_pool(plan.environment, target_pool)
        except Exception as e:
            await self._finish(run, RunState.FAILED, RecordStatus.FAILED,
                               f"could not switch traffic to pool {target_pool}: {e}", ErrorKind.DEPLOYMENT_FAILURE)
            return
        for server in run.servers:
            if server.pool == target_pool:
                server.traffic_state = TrafficState.ACTIVE
            else:
                server.traffic_state = TrafficState.OFFLINE
        run.outcome.active_pool = target_pool
        run.outcome.deployed.extend(s.id for s in target)
        run.outcome.completed_batches = 1
        self.logger.info(f"Traffic for {plan.environment} now on pool {target_pool}; {live} is standby")

        if self.monitor is not None and plan.post_deploy_monitoring and plan.monitor_window_seconds > 0:
            self._transition(run, RunState.MONITORING, f"watching pool {target_pool} after switch")
            watch = asyncio.create_task(self.monitor.watch(
                target, plan.monitor_window_seconds, plan.rollback_thresholds,
                plan.sample_interval_seconds, scope=RollbackScope.ENVIRONMENT,
            ))
            if await self._await_unless_stopped(run, watch):
                decision = self._gate_decision(watch, RollbackScope.ENVIRONMENT)
                if decision is not None:
                    run.signal(decision)
            if run.abort.is_set():
                await self._stop_blue_green(run, live, target_pool, flipped=True)
                return

        self._transition(run, RunState.BATCH_COMPLETE, f"pool {target_pool} live")
        await self._complete(run)

    async def _deploy_standby(self, run, target):
        plan = run.plan

        async def deploy_and_check(server):
            result = await self.ops.deploy(server, plan.target_version, plan.deploy_retry, plan.deploy_timeout_seconds)
            if not result.success:
                return f"deploy failed: {result.error_detail}"
            status = await self.ops.check(server, plan.health_check)
            if status != HealthStatus.HEALTHY:
                return f"health check failed after {plan.health_check.max_attempts} probes"
            return None

        results = await run_bounded(target, deploy_and_check, plan.max_parallelism)
        failures = {}
        for server, result in zip(target, results):
            if isinstance(result, BaseException):
                server.deploy_state = DeployState.FAILED
                failures[server.id] = f"raised {result!r}"
            elif result is not None:
                failures[server.id] = result
        return failures

    async def _acceptance_tests(self, run, target):
        if self.test_suite is None:
            self.logger.warning("No acceptance test suite configured, skipping tests")
            return True, None
        try:
            passed = await self.test_suite.run(run.plan.environment, target, run.plan.target_version)
        except Exception as e:
            return False, f"{type(e).__name__}: {e}"
        return bool(passed), None if passed else "suite reported failure"

    async def _stop_blue_green(self, run, live, target_pool, flipped):
        decision = run.decision
        self._transition(run, RunState.ROLLING_BACK, decision.reason)
        self.audit.decision(run.id, run.plan.environment, run.state, decision)
        run.outcome.decision = decision
        error_kind = ErrorKind.THRESHOLD_BREACH if decision.triggered_by == RollbackTrigger.THRESHOLD_BREACH else None
        if not flipped:
            run.outcome.active_pool = live
            await self._finish(run, RunState.ROLLED_BACK, RecordStatus.ROLLED_BACK,
                               f"stopped before switching traffic; pool {target_pool} stays inactive", error_kind)
            return

        result = await self.rollbacks.flip_back(run.plan.environment, live, run.servers, run.backup_reference)
        run.outcome.rollback = result
        if not result.success:
            await self._fatal(run, ErrorKind.ROLLBACK_FAILURE, result.reason)
            return
        run.outcome.active_pool = live
        run.outcome.deployed = []
        await self._finish(run, RunState.ROLLED_BACK, RecordStatus.ROLLED_BACK,
                           f"traffic switched back to pool {live}: {decision.reason}", error_kind)

    # Terminal paths

    async def _fail_batch(self, run, batch, failures, scope):
        """A server in the batch failed: restore only this batch and end the run Failed"""
        reason = "; ".join(f"{sid}: {why}" for sid, why in sorted(failures.items()))
        self.logger.error(f"DEPLOYMENT ABORTED: {len(failures)}/{len(batch)} servers failed in {scope.value.lower()}")
        decision = RollbackDecision(
            triggered_by=RollbackTrigger.HEALTH_CHECK_FAILURE,
            scope=scope,
            reason=reason,
            server_ids=tuple(sorted(failures)),
        )
        kind = (ErrorKind.HEALTH_CHECK_TIMEOUT if all(why.startswith("health") for why in failures.values())
                else ErrorKind.DEPLOYMENT_FAILURE)
        if not any(s.id in run.modified for s in batch):
            # Failed while draining: nothing was deployed, so there is nothing to restore
            run.outcome.decision = decision
            self._transition(run, RunState.ROLLING_BACK, f"{decision.triggered_by.value}: {reason}")
            self.audit.decision(run.id, run.plan.environment, run.state, decision)
            drained = [s for s in batch if s.traffic_state != TrafficState.ACTIVE]
            await run_bounded(drained, self.ops.reintegrate, run.plan.worker_limit)
            await self._finish(run, RunState.FAILED, RecordStatus.FAILED, reason, kind)
            return
        await self._roll_back_scope(run, decision, batch, RunState.FAILED, RecordStatus.FAILED, kind)

    async def _stop(self, run):
        """Stop requested (operator cancel or post-deploy breach): restore everything the run touched"""
        decision = run.decision
        if not run.touched:
            self._transition(run, RunState.ROLLING_BACK, decision.reason)
            self.audit.decision(run.id, run.plan.environment, run.state, decision)
            run.outcome.decision = decision
            await self._finish(run, RunState.ROLLED_BACK, RecordStatus.ROLLED_BACK,
                               "stopped before any server was touched", self._stop_kind(decision))
            return
        if not run.modified:
            # Only drained so far, nothing to redeploy
            self._transition(run, RunState.ROLLING_BACK, decision.reason)
            self.audit.decision(run.id, run.plan.environment, run.state, decision)
            run.outcome.decision = decision
            await run_bounded(run.touched, self.ops.reintegrate, run.plan.worker_limit)
            await self._finish(run, RunState.ROLLED_BACK, RecordStatus.ROLLED_BACK,
                               "stopped before deploying; drained servers returned to traffic",
                               self._stop_kind(decision))
            return
        scope_servers = run.servers
        await self._roll_back_scope(run, decision, scope_servers, RunState.ROLLED_BACK, RecordStatus.ROLLED_BACK,
                                    self._stop_kind(decision))

    @staticmethod
    def _stop_kind(decision):
        if decision.triggered_by == RollbackTrigger.THRESHOLD_BREACH:
            return ErrorKind.THRESHOLD_BREACH
        return None

    async def _roll_back_scope(self, run, decision, servers, end_state, status, error_kind):
        await self._cancel_watches(run)
        run.outcome.decision = decision
        self._transition(run, RunState.ROLLING_BACK, f"{decision.triggered_by.value}: {decision.reason}")
        self.audit.decision(run.id, run.plan.environment, run.state, decision)
        if decision.triggered_by == RollbackTrigger.THRESHOLD_BREACH:
            self.logger.warning(f"Threshold breach, rolling back {decision.scope.value.lower()}: {decision.reason}")

        try:
            target = self.rollbacks.resolve_target(run.plan.environment)
        except NoRollbackTarget as e:
            await self._fatal(run, ErrorKind.NO_ROLLBACK_TARGET, str(e))
            return

        result = await self.rollbacks.rollback(decision.scope, servers, target, run.plan)
        run.outcome.rollback = result
        if not result.success:
            await self._fatal(run, ErrorKind.ROLLBACK_FAILURE, result.reason)
            return
        restored = {s.id for s in servers}
        run.outcome.deployed = [sid for sid in run.outcome.deployed if sid not in restored]
        await self._finish(run, end_state, status,
                           f"{decision.scope.value} rolled back to {target.version}: {decision.reason}", error_kind)

    async def _fatal(self, run, kind, reason):
        """RollbackFailure / NoRollbackTarget: stop automation until an operator resumes the environment"""
        run.outcome.requires_intervention = True
        self.history.halt(run.plan.environment, f"{kind.value}: {reason}")
        await self._finish(run, RunState.FAILED, RecordStatus.FAILED, f"{kind.value}: {reason}", kind)

    async def _complete(self, run):
        self.logger.info(f"SUCCESS: {run.plan.target_version} deployed to {len(run.outcome.deployed)} servers "
                         f"in {run.plan.environment}")
        await self._finish(run, RunState.COMPLETED, RecordStatus.SUCCESS, "all servers healthy and in traffic", None)

    async def _finish(self, run, state, status, reason, error_kind):
        await self._cancel_watches(run)
        self._transition(run, state, reason)
        run.outcome.error_kind = error_kind.value if error_kind else None
        run.outcome.record = self.history.append(DeploymentRecord(
            environment=run.plan.environment,
            version=run.plan.target_version,
            started_at=run.started_at,
            ended_at=utcnow(),
            status=status,
            backup_reference=run.backup_reference,
            strategy=run.plan.strategy.value,
            reason=reason,
        ))
        if state == RunState.FAILED:
            self.logger.error(f"[{run.plan.environment}] Run ended {state.value}: {reason}")
        elif state == RunState.ROLLED_BACK:
            self.logger.warning(f"[{run.plan.environment}] Run ended {state.value}: {reason}")
        await self._notify(run.outcome)

    async def _notify(self, outcome):
        for listener in self.listeners:
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"Terminal-state listener {listener!r} failed")

    # Operator commands

    async def rollback(self, plan, servers, active_pool=None):
        """Operator rollback of the whole environment to the last successful version.

        Repeating it without a successful deploy in between is a no-op.
        """
        environment = plan.environment
        self._check_not_halted(environment)
        self.locks.acquire(environment)
        run = _Run(plan, list(servers))
        try:
            self._transition(run, RunState.ROLLING_BACK, "operator requested rollback")
            pools = sorted({s.pool for s in run.servers if s.pool})
            try:
                if plan.strategy == Strategy.BLUE_GREEN and len(pools) == 2:
                    target = self.rollbacks.resolve_target(environment)
                    result = await self._rollback_pools(run, target, pools, active_pool)
                else:
                    result = await self.rollbacks.rollback_environment(run.servers, plan)
            except NoRollbackTarget as e:
                self._transition(run, RunState.FAILED, str(e))
                raise

            if not result.success:
                self.history.halt(environment, f"{ErrorKind.ROLLBACK_FAILURE.value}: {result.reason}")
                self._transition(run, RunState.FAILED, result.reason)
                raise RollbackFailure(result.reason, environment=environment)

            self._transition(run, RunState.ROLLED_BACK, "already at last successful version" if result.noop
                             else f"restored {result.target_version}")
            if not result.noop:
                self.history.append(DeploymentRecord(
                    environment=environment,
                    version=result.target_version,
                    started_at=run.started_at,
                    ended_at=utcnow(),
                    status=RecordStatus.ROLLED_BACK,
                    strategy=plan.strategy.value,
                    reason="operator rollback",
                ))
            return result
        finally:
            self.locks.release(environment)

    def record_baseline(self, environment, version, servers):
        """Record `version` as known good without deploying it, giving rollbacks a target.

        Servers with no known version are assumed to run it.
        """
        with self.locks.hold(environment):
            now = utcnow()
            for server in servers:
                if server.version is None:
                    server.version = version
            record = self.history.append(DeploymentRecord(
                environment=environment,
                version=version,
                started_at=now,
                ended_at=now,
                status=RecordStatus.SUCCESS,
                strategy="baseline",
                reason="baseline recorded by operator",
            ))
        self.audit.transition(None, environment, RunState.IDLE, RunState.IDLE, f"baseline {version} recorded")
        self.logger.info(f"Recorded {version} as the known-good baseline for {environment}")
        return record

    def resume(self, environment):
        """Clear a halt, and any lock left by a dead process, once an operator has repaired the environment"""
        if self.locks.clear_stale(environment):
            self.audit.transition(None, environment, RunState.IDLE, RunState.IDLE, "stale lock removed")
        reason = self.history.resume(environment)
        if reason:
            self.audit.transition(None, environment, RunState.FAILED, RunState.IDLE, f"resumed after: {reason}")
            self.logger.warning(f"{environment} resumed by operator (was halted: {reason})")
        return reason

    async def _rollback_pools(self, run, target, pools, active_pool):
        env = run.plan.environment
        live = await self.ops.load_balancer.get_active_pool(env) or active_pool or pools[0]
        good = [p for p in pools
                if all(s.version == target.version and s.deploy_state == DeployState.HEALTHY
                       for s in run.servers if s.pool == p)]
        live_servers = [s for s in run.servers if s.pool == live]
        if live in good:
            # Live pool already serves the target; only its traffic state may need repair
            return await self.rollbacks.rollback(RollbackScope.ENVIRONMENT, live_servers, target, run.plan)
        if good:
            return await self.rollbacks.flip_back(env, good[0], run.servers, target.version)
        return await self.rollbacks.rollback(RollbackScope.ENVIRONMENT, live_servers, target, run.plan)

    def status(self, environment, servers, active_pool=None):
        last = self.history.last(environment)
        target = self.history.last_success(environment)
        return {
            "environment": environment,
            "inProgress": self.locks.is_locked(environment),
            "halted": self.history.halt_reason(environment),
            "activePool": active_pool,
            "lastDeployment": last.to_dict() if last else None,
            "rollbackTarget": target.version if target else None,
            "servers": [
                {
                    "id": s.id,
                    "pool": s.pool,
                    "version": s.version,
                    "trafficState": s.traffic_state.value,
                    "deployState": s.deploy_state.value,
                }
                for s in servers
            ],
        }
