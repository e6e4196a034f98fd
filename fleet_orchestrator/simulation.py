import asyncio
import importlib

from .errors import ConfigurationError, ConnectivityError
from .failure import FailureInjector
from .health import HttpHealthProbe
from .interfaces import AcceptanceTestSuite, Deployer, HealthProbe, LoadBalancerAdapter, MetricsSource
from .logger import get_logger
from .models import DeployResult, MetricSample, TrafficState, utcnow

logger = get_logger("simulation")

ADAPTER_NAMES = ("loadBalancer", "deployer", "healthProbe", "metricsSource", "testSuite")


class InMemoryLoadBalancer(LoadBalancerAdapter):
    def __init__(self, active_pools=None, unreachable=()):
        self.states = {}
        self.active_pools = dict(active_pools or {})
        self.unreachable = set(unreachable)
        self.calls = []

    async def set_availability(self, server_id, available):
        self.calls.append((server_id, available))
        if server_id in self.unreachable:
            raise ConnectivityError(f"load balancer cannot reach {server_id}")
        self.states[server_id] = TrafficState.ACTIVE if available else TrafficState.DRAINING

    async def get_status(self, server_id):
        return self.states.get(server_id, TrafficState.ACTIVE)

    async def get_active_pool(self, environment):
        return self.active_pools.get(environment)

    async def set_active_pool(self, environment, pool):
        self.calls.append((environment, pool))
        self.active_pools[environment] = pool
        logger.info(f"Simulated load balancer: {environment} traffic -> pool {pool}")


class SimulatedDeployer(Deployer):
    def __init__(self, failure_injector=None):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.installed = {}
        self.deploys = []

    async def deploy(self, server_id, version):
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        self.deploys.append((server_id, version))
        if self.failure_injector.before_deploy(server_id):
            return DeployResult(False, f"simulated deployment failure on {server_id}")
        self.installed[server_id] = version
        return DeployResult(True)


class SimulatedHealthProbe(HealthProbe):
    def __init__(self, failure_injector=None):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.probes = 0

    async def probe(self, server, policy):
        self.probes += 1
        return not self.failure_injector.is_unhealthy(server.id, server.version)


class StaticMetricsSource(MetricsSource):
    """Constant metrics per server, with injector overrides on top"""

    def __init__(self, failure_injector=None, error_rate=0.5, latency_p95=120.0, cpu_percent=35.0,
                 memory_percent=50.0):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.baseline = {
            "error_rate": error_rate,
            "latency_p95": latency_p95,
            "cpu_percent": cpu_percent,
            "memory_percent": memory_percent,
        }

    async def sample(self, server):
        values = dict(self.baseline)
        values.update(self.failure_injector.metric_overrides(server.id, server.version))
        return MetricSample(server_id=server.id, timestamp=utcnow(), **values)


class SimulatedTestSuite(AcceptanceTestSuite):
    def __init__(self, passes=True):
        self.passes = passes
        self.runs = []

    async def run(self, environment, servers, version):
        self.runs.append((environment, [s.id for s in servers], version))
        return self.passes


def load_factory(path):
    """Resolve 'package.module:callable'"""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"adapter '{path}' must look like 'module:callable'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import adapter module '{module_name}': {e}")
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"adapter '{path}' is not a callable in {module_name}")
    return factory


def build_adapters(plan, failure_injector=None, active_pool=None):
    """Adapters named in the plan as `module:callable` (or `healthProbe: http`), simulated ones otherwise"""
    unknown = sorted(name for name, _ in plan.adapters if name not in ADAPTER_NAMES)
    if unknown:
        raise ConfigurationError(f"unknown adapter names {unknown}, expected one of {list(ADAPTER_NAMES)}",
                                 environment=plan.environment)

    injector = failure_injector if failure_injector else FailureInjector()
    defaults = {
        "loadBalancer": lambda: InMemoryLoadBalancer(
            active_pools={plan.environment: active_pool} if active_pool else None
        ),
        "deployer": lambda: SimulatedDeployer(injector),
        "healthProbe": lambda: SimulatedHealthProbe(injector),
        "metricsSource": lambda: StaticMetricsSource(injector),
        "testSuite": lambda: SimulatedTestSuite(),
    }

    adapters = {}
    for name in ADAPTER_NAMES:
        path = plan.adapter_path(name)
        if path is None:
            adapters[name] = defaults[name]()
        elif name == "healthProbe" and path == "http":
            adapters[name] = HttpHealthProbe()
        else:
            adapters[name] = load_factory(path)(plan)
            logger.info(f"Using {name} adapter from {path}")
    return adapters
