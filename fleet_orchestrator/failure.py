from .errors import ConnectivityError


class FailureInjector:
    """Scripted faults for the simulated adapters, keyed by server id.

    fail_attempts:  {server_id: n} the first n deploys return a failed DeployResult
    flaky_attempts: {server_id: n} the first n deploy calls raise ConnectivityError
    unhealthy:      {server_id: versions} probes fail while the server runs one of
                    `versions` (None means any version)
    metrics:        {server_id or version: {metric: value}} overrides for samples
    """

    def __init__(self, fail_attempts=None, flaky_attempts=None, unhealthy=None, metrics=None, delay=0):
        self.fail_map = fail_attempts or {}
        self.flaky_map = flaky_attempts or {}
        self.unhealthy = unhealthy or {}
        self.metrics = metrics or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def before_deploy(self, server_id):
        """Count a deploy call; raise for scripted connectivity flakes. True when the deploy should fail."""
        self.attempts[server_id] = self.attempts.get(server_id, 0) + 1
        attempt = self.attempts[server_id]
        flaky = self.flaky_map.get(server_id, 0)
        if attempt <= flaky:
            raise ConnectivityError(f"simulated connection reset talking to {server_id}")
        return attempt - flaky <= self.fail_map.get(server_id, 0)

    def is_unhealthy(self, server_id, version):
        if server_id not in self.unhealthy:
            return False
        versions = self.unhealthy[server_id]
        return versions is None or version in versions

    def metric_overrides(self, server_id, version):
        overrides = dict(self.metrics.get(version, {}))
        overrides.update(self.metrics.get(server_id, {}))
        return overrides
