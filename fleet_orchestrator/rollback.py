import asyncio

from .errors import NoRollbackTarget
from .logger import get_logger
from .models import DeployState, HealthStatus, RollbackResult, RollbackScope, TrafficState
from .operations import run_bounded

logger = get_logger("rollback")


class RollbackManager:
    def __init__(self, operations, history):
        self.ops = operations
        self.history = history

    def resolve_target(self, environment):
        """The last Success record is the only valid restore target"""
        record = self.history.last_success(environment)
        if record is None:
            raise NoRollbackTarget(
                f"no successful deployment recorded for {environment}; nothing to roll back to",
                environment=environment,
            )
        return record

    async def rollback(self, scope, servers, target_record, plan):
        """Restore `servers` to `target_record.version`.

        Only servers not already at the target (or not Healthy) are redeployed
        and health-checked. Servers at the target but out of traffic are put
        back. A scope that is already fully restored is a no-op.
        """
        version = target_record.version
        servers = list(servers)
        if all(s.is_restored_to(version) for s in servers):
            logger.info(f"{scope.value} rollback to {version}: all {len(servers)} servers already restored")
            return RollbackResult(success=True, scope=scope, target_version=version, noop=True)

        stale = [s for s in servers if s.version != version or s.deploy_state != DeployState.HEALTHY]
        idle = [s for s in servers if s not in stale and s.traffic_state != TrafficState.ACTIVE]

        logger.warning(f"{scope.value} rollback to {version}: redeploying {[s.id for s in stale]}")
        limit = plan.worker_limit
        failed = []

        live = [s for s in stale if s.traffic_state == TrafficState.ACTIVE]
        drained = await run_bounded(live, self.ops.drain, limit)
        for server, outcome in zip(live, drained):
            if isinstance(outcome, BaseException):
                logger.error(f"Could not drain {server.id} before rollback: {outcome!r}")
        if live and plan.drain_seconds > 0:
            await asyncio.sleep(plan.drain_seconds)

        async def restore(server):
            if server.traffic_state == TrafficState.ACTIVE:
                # Still live (drain failed), redeploying would drop traffic on the floor
                return False
            result = await self.ops.deploy(server, version, plan.deploy_retry, plan.deploy_timeout_seconds)
            if not result.success:
                return False
            status = await self.ops.check(server, plan.health_check)
            if status != HealthStatus.HEALTHY:
                return False
            await self.ops.reintegrate(server)
            return True

        outcomes = await run_bounded(stale, restore, limit)
        for server, outcome in zip(stale, outcomes):
            if outcome is not True:
                if isinstance(outcome, BaseException):
                    logger.error(f"Restoring {server.id} raised {outcome!r}")
                failed.append(server.id)

        reintegrated = await run_bounded(idle, self.ops.reintegrate, limit)
        for server, outcome in zip(idle, reintegrated):
            if isinstance(outcome, BaseException):
                logger.error(f"Could not return {server.id} to traffic: {outcome!r}")
                failed.append(server.id)

        failed = sorted(set(failed))
        restored = [s.id for s in stale if s.id not in failed]
        if failed:
            reason = f"servers did not come back healthy on {version}: {', '.join(failed)}"
            logger.critical(f"{scope.value} rollback FAILED, manual intervention required: {reason}")
            return RollbackResult(success=False, scope=scope, target_version=version,
                                  restored=restored, failed=failed, reason=reason)

        logger.info(f"{scope.value} rollback to {version} complete: {len(restored)} servers restored")
        return RollbackResult(success=True, scope=scope, target_version=version, restored=restored)

    async def rollback_environment(self, servers, plan):
        target = self.resolve_target(plan.environment)
        return await self.rollback(RollbackScope.ENVIRONMENT, servers, target, plan)

    async def flip_back(self, environment, previous_pool, servers, target_version=None):
        """Blue-green rollback: point traffic at the previous pool again, nothing is redeployed"""
        logger.warning(f"Flipping {environment} traffic back to pool {previous_pool}")
        try:
            await self.ops.load_balancer.set_active_pool(environment, previous_pool)
        except Exception as e:
            reason = f"could not flip {environment} back to {previous_pool}: {e}"
            logger.critical(f"Blue-green rollback FAILED, manual intervention required: {reason}")
            return RollbackResult(success=False, scope=RollbackScope.ENVIRONMENT, target_version=target_version,
                                  failed=[s.id for s in servers if s.pool == previous_pool], reason=reason)

        for server in servers:
            if server.pool == previous_pool and server.deploy_state == DeployState.HEALTHY:
                server.traffic_state = TrafficState.ACTIVE
            else:
                server.traffic_state = TrafficState.OFFLINE
        return RollbackResult(success=True, scope=RollbackScope.ENVIRONMENT, target_version=target_version,
                              restored=[s.id for s in servers if s.pool == previous_pool])
