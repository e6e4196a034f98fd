import asyncio

from .errors import ConnectivityError
from .logger import get_logger
from .models import DeployResult, DeployState, HealthStatus, TrafficState

logger = get_logger("operations")


class ServerOperations:
    """Per-server steps shared by rollouts and rollbacks.

    Every traffic and deploy state change of a Server goes through here so the
    ordering rules hold everywhere: drained before deploy, Active only when
    Healthy.
    """

    def __init__(self, deployer, load_balancer, health_checker, sleep=asyncio.sleep):
        self.deployer = deployer
        self.load_balancer = load_balancer
        self.health_checker = health_checker
        self._sleep = sleep

    async def drain(self, server):
        await self.load_balancer.set_availability(server.id, False)
        server.traffic_state = TrafficState.DRAINING
        logger.debug(f"Draining {server.id}")

    async def reintegrate(self, server):
        if server.deploy_state != DeployState.HEALTHY:
            raise ValueError(f"refusing to put {server.id} in traffic while {server.deploy_state.value}")
        await self.load_balancer.set_availability(server.id, True)
        server.traffic_state = TrafficState.ACTIVE
        logger.debug(f"Reintegrated {server.id}")

    async def deploy(self, server, version, retry, timeout_s=None):
        """Deploy one server, retrying connectivity errors with exponential backoff"""
        if server.traffic_state == TrafficState.ACTIVE:
            raise ValueError(f"refusing to deploy to {server.id} while it carries traffic")
        server.deploy_state = DeployState.DEPLOYING

        result = await self._deploy_with_retries(server, version, retry, timeout_s)
        if result.success:
            server.version = version
            server.deploy_state = DeployState.HEALTH_CHECKING
            logger.info(f"Deployed {version} to {server.id}")
        else:
            # Half-applied deploys leave the installed version unknown
            server.version = None
            server.deploy_state = DeployState.FAILED
            logger.error(f"Deploy of {version} to {server.id} failed: {result.error_detail}")
        return result

    async def _deploy_with_retries(self, server, version, retry, timeout_s):
        max_attempts = max(1, retry.max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                call = self.deployer.deploy(server.id, version)
                if timeout_s:
                    return await asyncio.wait_for(call, timeout=timeout_s)
                return await call
            except asyncio.TimeoutError:
                return DeployResult(False, f"timed out after {timeout_s}s")
            except ConnectivityError as e:
                if attempt >= max_attempts:
                    return DeployResult(False, f"connectivity lost after {attempt} attempts: {e}")
                backoff = min((2 ** (attempt - 1)) * retry.base_delay_seconds, retry.max_delay_seconds)
                logger.warning(f"Deploy attempt {attempt} to {server.id} hit a connectivity error ({e}), "
                               f"retrying in {backoff}s")
                await self._sleep(backoff)
            except Exception as e:
                return DeployResult(False, f"{type(e).__name__}: {e}")
        return DeployResult(False, "max attempts exceeded")

    async def check(self, server, policy):
        server.deploy_state = DeployState.HEALTH_CHECKING
        status = await self.health_checker.check_server(server, policy)
        server.deploy_state = DeployState.HEALTHY if status == HealthStatus.HEALTHY else DeployState.FAILED
        return status

    async def check_batch(self, servers, policy, limit):
        """Health-check a batch in parallel. Returns {server_id: HealthStatus}."""
        for server in servers:
            server.deploy_state = DeployState.HEALTH_CHECKING
        statuses = await self.health_checker.check_many(servers, policy, limit)
        for server in servers:
            healthy = statuses[server.id] == HealthStatus.HEALTHY
            server.deploy_state = DeployState.HEALTHY if healthy else DeployState.FAILED
        return statuses


async def run_bounded(servers, operation, limit):
    """Run `operation(server)` for every server, at most `limit` at once.

    Exceptions are returned in place of results so one failing server never
    cancels its siblings mid-operation.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def bounded(server):
        async with semaphore:
            return await operation(server)

    return await asyncio.gather(*(bounded(s) for s in servers), return_exceptions=True)
