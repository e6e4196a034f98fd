import httpx
import pytest

from fleet_orchestrator.health import HealthChecker, HttpHealthProbe, health_url
from fleet_orchestrator.interfaces import HealthProbe
from fleet_orchestrator.models import HealthCheckPolicy, HealthStatus, Server


class ScriptedProbe(HealthProbe):
    """Answers probes from a fixed script; an Exception entry is raised"""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def probe(self, server, policy):
        result = self.script[self.calls]
        self.calls += 1
        if isinstance(result, Exception):
            raise result
        return result


def make_checker(script):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    probe = ScriptedProbe(script)
    return HealthChecker(probe, sleep=fake_sleep), probe, sleeps


SERVER = Server("web-01", "http://10.0.0.1:8080")


class TestHealthChecker:
    """Consecutive-success polling with a hard attempt budget."""

    @pytest.mark.asyncio
    async def test_healthy_after_required_successes(self):
        checker, probe, sleeps = make_checker([True, True, True])
        policy = HealthCheckPolicy(interval_seconds=2, max_attempts=5, required_consecutive_successes=3)
        assert await checker.check_server(SERVER, policy) == HealthStatus.HEALTHY
        assert probe.calls == 3
        assert sleeps == [2, 2]

    @pytest.mark.asyncio
    async def test_failure_resets_consecutive_count(self):
        checker, probe, _ = make_checker([True, False, True, True])
        policy = HealthCheckPolicy(interval_seconds=0, max_attempts=4, required_consecutive_successes=2)
        assert await checker.check_server(SERVER, policy) == HealthStatus.HEALTHY
        assert probe.calls == 4

    @pytest.mark.asyncio
    async def test_unhealthy_after_max_attempts(self):
        checker, probe, sleeps = make_checker([True, False, True, False])
        policy = HealthCheckPolicy(interval_seconds=1, max_attempts=4, required_consecutive_successes=2)
        assert await checker.check_server(SERVER, policy) == HealthStatus.UNHEALTHY
        assert probe.calls == 4
        # No pause after the final probe
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_probe_errors_count_as_failures(self):
        checker, probe, _ = make_checker([ConnectionError("refused"), TimeoutError(), True, True])
        policy = HealthCheckPolicy(interval_seconds=0, max_attempts=4, required_consecutive_successes=2)
        assert await checker.check_server(SERVER, policy) == HealthStatus.HEALTHY
        assert probe.calls == 4

    @pytest.mark.asyncio
    async def test_errors_never_abort_early(self):
        checker, probe, _ = make_checker([RuntimeError("boom")] * 5)
        policy = HealthCheckPolicy(interval_seconds=0, max_attempts=5, required_consecutive_successes=1)
        assert await checker.check_server(SERVER, policy) == HealthStatus.UNHEALTHY
        assert probe.calls == 5

    @pytest.mark.asyncio
    async def test_check_many(self):
        class ByServer(HealthProbe):
            async def probe(self, server, policy):
                return server.id != "web-02"

        checker = HealthChecker(ByServer())
        servers = [Server(f"web-0{i}", f"http://10.0.0.{i}") for i in range(1, 4)]
        policy = HealthCheckPolicy(interval_seconds=0, max_attempts=2, required_consecutive_successes=1)
        statuses = await checker.check_many(servers, policy, limit=2)
        assert statuses == {
            "web-01": HealthStatus.HEALTHY,
            "web-02": HealthStatus.UNHEALTHY,
            "web-03": HealthStatus.HEALTHY,
        }


class TestHttpHealthProbe:
    """HTTP probe against a mocked transport."""

    def make_probe(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpHealthProbe(client), client

    @pytest.mark.asyncio
    async def test_healthy_response(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "Healthy", "version": "2.0"})

        probe, client = self.make_probe(handler)
        async with client:
            assert await probe.probe(SERVER, HealthCheckPolicy()) is True
        assert seen == ["http://10.0.0.1:8080/health"]

    @pytest.mark.asyncio
    async def test_wrong_status_field(self):
        probe, client = self.make_probe(lambda request: httpx.Response(200, json={"status": "Degraded"}))
        async with client:
            assert await probe.probe(SERVER, HealthCheckPolicy()) is False

    @pytest.mark.asyncio
    async def test_server_error(self):
        probe, client = self.make_probe(lambda request: httpx.Response(503, json={"status": "Healthy"}))
        async with client:
            assert await probe.probe(SERVER, HealthCheckPolicy()) is False

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        probe, client = self.make_probe(lambda request: httpx.Response(200, text="OK"))
        async with client:
            assert await probe.probe(SERVER, HealthCheckPolicy()) is False

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        probe, client = self.make_probe(handler)
        async with client:
            assert await probe.probe(SERVER, HealthCheckPolicy()) is False

    @pytest.mark.asyncio
    async def test_checker_with_http_probe(self):
        answers = iter([503, 200, 200])

        def handler(request):
            return httpx.Response(next(answers), json={"status": "Healthy"})

        probe, client = self.make_probe(handler)
        async with client:
            checker = HealthChecker(probe)
            policy = HealthCheckPolicy(interval_seconds=0, max_attempts=3, required_consecutive_successes=2)
            assert await checker.check_server(SERVER, policy) == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        probe = HttpHealthProbe()
        probe._ensure_client()
        await probe.aclose()
        assert probe._client is None


def test_health_url_joins_address_and_endpoint():
    assert health_url(Server("a", "http://10.0.0.1:8080/"), HealthCheckPolicy(endpoint="health")) == \
        "http://10.0.0.1:8080/health"
    policy = HealthCheckPolicy(endpoint="https://status.internal/{id}")
    assert health_url(Server("web-07", "http://10.0.0.7"), policy) == "https://status.internal/web-07"
