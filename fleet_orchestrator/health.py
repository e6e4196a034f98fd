import asyncio

import httpx

from .interfaces import HealthProbe
from .logger import get_logger
from .models import HealthStatus

logger = get_logger("health")


def health_url(server, policy):
    endpoint = policy.endpoint
    if endpoint.startswith(("http://", "https://")):
        return endpoint.format(id=server.id, address=server.address)
    return f"{server.address.rstrip('/')}/{endpoint.lstrip('/')}"


class HttpHealthProbe(HealthProbe):
    """GET the health endpoint; healthy means 2xx and {"status": "Healthy"}"""

    def __init__(self, client=None):
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def probe(self, server, policy):
        url = health_url(server, policy)
        try:
            response = await self._ensure_client().get(url, timeout=policy.timeout_seconds)
        except httpx.HTTPError as e:
            logger.debug(f"Probe of {server.id} at {url} failed: {e!r}")
            return False

        if not response.is_success:
            logger.debug(f"Probe of {server.id} returned HTTP {response.status_code}")
            return False
        try:
            body = response.json()
        except ValueError:
            logger.debug(f"Probe of {server.id} returned a non-JSON body")
            return False
        return isinstance(body, dict) and body.get("status") == HealthStatus.HEALTHY.value

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class HealthChecker:
    def __init__(self, probe=None, sleep=asyncio.sleep):
        self.probe = probe if probe else HttpHealthProbe()
        self._sleep = sleep

    async def check_server(self, server, policy):
        """Poll until enough consecutive successes or the attempt budget runs out"""
        consecutive = 0
        for attempt in range(1, policy.max_attempts + 1):
            try:
                ok = await self.probe.probe(server, policy)
            except Exception as e:
                # Any probe error is a failed probe, never an early abort
                logger.warning(f"Health probe error for {server.id} (attempt {attempt}): {e}")
                ok = False

            if ok:
                consecutive += 1
                logger.debug(f"{server.id} probe {attempt}/{policy.max_attempts} ok "
                             f"({consecutive}/{policy.required_consecutive_successes})")
                if consecutive >= policy.required_consecutive_successes:
                    logger.info(f"{server.id} is healthy after {attempt} probes")
                    return HealthStatus.HEALTHY
            else:
                consecutive = 0
                logger.debug(f"{server.id} probe {attempt}/{policy.max_attempts} failed")

            if attempt < policy.max_attempts and policy.interval_seconds > 0:
                await self._sleep(policy.interval_seconds)

        logger.warning(f"{server.id} did not become healthy within {policy.max_attempts} probes")
        return HealthStatus.UNHEALTHY

    async def check_many(self, servers, policy, limit=None):
        """Check servers in parallel, at most `limit` at a time. Returns {server_id: HealthStatus}."""
        semaphore = asyncio.Semaphore(limit or max(1, len(servers)))

        async def bounded(server):
            async with semaphore:
                return await self.check_server(server, policy)

        statuses = await asyncio.gather(*(bounded(s) for s in servers))
        return {s.id: status for s, status in zip(servers, statuses)}

    async def aclose(self):
        await self.probe.aclose()
