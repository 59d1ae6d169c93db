"""Background health monitor probing every provider on a fixed cadence."""

import asyncio
import contextlib
import logging

from chain_gateway.core.models import ChainFamily
from chain_gateway.core.registry import ProviderRegistry
from chain_gateway.rpc.pool import ConnectionPool

logger = logging.getLogger(__name__)

PROBE_METHODS = {
    ChainFamily.EVM: "eth_blockNumber",
    ChainFamily.SOLANA: "getSlot",
}


class HealthMonitor:
    """
    Periodically refreshes scores and probes providers.

    Probes go through the pool so they respect provider gates and are
    recorded exactly like real traffic.

    Parameters
    ----------
    registry : ProviderRegistry
        Registry to refresh
    pool : ConnectionPool
        Pool used to send probes
    families : dict[str, ChainFamily]
        Chain name to wire family, selects the probe method
    interval_s : float
        Seconds between ticks

    """

    def __init__(
        self,
        registry: ProviderRegistry,
        pool: ConnectionPool,
        families: dict[str, ChainFamily] | None = None,
        interval_s: float = 10.0,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.families = families or {}
        self.interval_s = interval_s
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop(), name="health-monitor")
        logger.info("Health monitor started (interval %.1fs)", self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Health monitor stopped")

    async def probe_all(self) -> dict[str, bool]:
        """
        Probe every enabled provider whose circuit admits traffic.

        Returns
        -------
        dict[str, bool]
            Provider id to probe result
        """
        self.registry.refresh()
        targets = []
        for chain in self.registry.chains():
            method = PROBE_METHODS[self.families.get(chain, ChainFamily.EVM)]
            targets.extend((provider, method) for provider in self.registry.list_healthy(chain))

        results = await asyncio.gather(*(self.pool.probe(provider, method) for provider, method in targets))
        outcome = {provider.id: ok for (provider, _), ok in zip(targets, results, strict=True)}
        failed = [provider_id for provider_id, ok in outcome.items() if not ok]
        if failed:
            logger.info("Health probe failed for %s", ", ".join(failed))
        return outcome

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.probe_all()
            except Exception:
                logger.exception("Health monitor tick failed")
            self.ticks += 1
            await asyncio.sleep(self.interval_s)
