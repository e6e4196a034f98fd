import asyncio

from .logger import get_logger
from .models import MetricSample, MonitorResult, RollbackDecision, RollbackScope, RollbackTrigger, utcnow

logger = get_logger("metrics")


def evaluate(samples, thresholds):
    """Return {server_id: [breached metric names]} for the unhealthy servers in one round"""
    unhealthy = {}
    for sample in samples:
        breached = sample.breaches(thresholds)
        if breached:
            unhealthy[sample.server_id] = breached
    return unhealthy


class MetricsMonitor:
    def __init__(self, source):
        self.source = source

    async def _sample_round(self, servers):
        results = await asyncio.gather(*(self.source.sample(s) for s in servers), return_exceptions=True)
        samples = []
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                # A server we cannot read metrics from counts as unavailable
                logger.debug(f"Metrics sample for {server.id} failed: {result!r}")
                result = MetricSample(server_id=server.id, timestamp=utcnow(), available=False)
            samples.append(result)
        return samples

    async def watch(self, servers, window, thresholds, interval, scope=RollbackScope.ENVIRONMENT):
        """Sample every `interval` seconds for `window` seconds; stop early on a breach"""
        servers = list(servers)
        if not servers:
            return MonitorResult(clean=True)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        rounds = 0
        ids = ", ".join(s.id for s in servers)
        logger.info(f"Watching {len(servers)} servers ({ids}) for {window}s, sampling every {interval}s")

        while True:
            rounds += 1
            samples = await self._sample_round(servers)
            unhealthy = evaluate(samples, thresholds)
            fraction = len(unhealthy) / len(servers)

            if fraction > thresholds.unhealthy_server_fraction:
                details = "; ".join(f"{sid}: {', '.join(names)}" for sid, names in sorted(unhealthy.items()))
                reason = (f"{len(unhealthy)}/{len(servers)} servers over threshold "
                          f"({fraction:.0%} > {thresholds.unhealthy_server_fraction:.0%}): {details}")
                logger.warning(f"Threshold breach in round {rounds}: {reason}")
                decision = RollbackDecision(
                    triggered_by=RollbackTrigger.THRESHOLD_BREACH,
                    scope=scope,
                    reason=reason,
                    server_ids=tuple(sorted(unhealthy)),
                )
                return MonitorResult(clean=False, decision=decision, rounds=rounds, samples=samples)

            if unhealthy:
                logger.info(f"Round {rounds}: {len(unhealthy)}/{len(servers)} servers over threshold, within tolerance")

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

        logger.info(f"Monitor window closed clean after {rounds} rounds")
        return MonitorResult(clean=True, rounds=rounds, samples=samples)
