from abc import ABC, abstractmethod


class LoadBalancerAdapter(ABC):

    @abstractmethod
    async def set_availability(self, server_id, available):
        """Enable or disable traffic to one server. Raises on failure."""

    @abstractmethod
    async def get_status(self, server_id):
        """Return the TrafficState the balancer reports for the server."""

    async def get_active_pool(self, environment):
        """Blue-green only: name of the pool currently receiving traffic."""
        raise NotImplementedError(f"{type(self).__name__} does not support pool switching")

    async def set_active_pool(self, environment, pool):
        """Blue-green only: atomically point live traffic at `pool`."""
        raise NotImplementedError(f"{type(self).__name__} does not support pool switching")


class Deployer(ABC):

    @abstractmethod
    async def deploy(self, server_id, version):
        """Push `version` onto one server.

        Returns a DeployResult. Transient transport problems should be raised
        as ConnectivityError so the caller can retry them.
        """


class MetricsSource(ABC):

    @abstractmethod
    async def sample(self, server):
        """Return a MetricSample for the server's recent traffic."""


class HealthProbe(ABC):

    @abstractmethod
    async def probe(self, server, policy):
        """One health probe. True when the server reports itself Healthy."""

    async def aclose(self):
        pass


class AcceptanceTestSuite(ABC):

    @abstractmethod
    async def run(self, environment, servers, version):
        """Run automated tests against servers not yet carrying live traffic."""
