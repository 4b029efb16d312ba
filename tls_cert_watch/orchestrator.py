"""
Run loop wiring hostname sources, the inspector and the alert aggregator.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from tls_cert_watch.aggregator import AlertAggregator
from tls_cert_watch.config import Config
from tls_cert_watch.inspector import CertificateInspector
from tls_cert_watch.logger import get_logger, log_cycle_complete
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.models import Finding
from tls_cert_watch.notifier import Notifier, create_notifier
from tls_cert_watch.policy import SignatureAlgorithmPolicy, default_policy
from tls_cert_watch.providers import HostSource, create_provider


class Orchestrator:
    """
    Drive discovery cycles on a fixed cadence.

    Sources, notifiers and the inspector are built once, so a missing
    option fails at startup. The aggregator and its flush timer live
    for the whole process; each cycle only gets a fresh hostname queue.
    """

    def __init__(
        self,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
        policy: Optional[SignatureAlgorithmPolicy] = None,
        sources: Optional[List[HostSource]] = None,
        notifiers: Optional[List[Notifier]] = None,
        inspector: Optional[CertificateInspector] = None,
    ):
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("orchestrator")

        http_timeout = float(config.http_timeout_seconds)
        self.sources = sources if sources is not None else [
            create_provider(spec, timeout=http_timeout, metrics=metrics)
            for spec in config.providers
        ]
        self.notifiers = notifiers if notifiers is not None else [
            create_notifier(spec, timeout=http_timeout) for spec in config.notifiers
        ]
        self.inspector = inspector or CertificateInspector(
            policy=policy if policy is not None else default_policy(),
            workers=config.workers,
            timeout=float(config.tls_timeout_seconds),
            metrics=metrics,
        )
        self.aggregator = AlertAggregator(
            self.notifiers, flush_interval=config.notify_interval_seconds, metrics=metrics
        )

        self.results: "asyncio.Queue[Finding]" = asyncio.Queue()
        self.warn_window = timedelta(days=config.warn_days)

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._aggregator_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._cycles_completed = 0
        self._last_cycle: Optional[float] = None

        self.logger.info(
            f"Orchestrator initialized - Sources: {len(self.sources)}, "
            f"Notifiers: {len(self.notifiers)}, Workers: {config.workers}"
        )

    async def run_cycle(self) -> int:
        """
        Run one discovery cycle to completion.

        Returns:
            Number of hostnames inspected
        """
        start_time = time.time()
        hostnames: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=self.config.queue_size)

        inspection = asyncio.create_task(
            self.inspector.check(hostnames, self.results, self.warn_window)
        )
        try:
            await asyncio.gather(*(self._produce(source, hostnames) for source in self.sources))
            await hostnames.put(None)
            summary = await inspection
        except BaseException:
            inspection.cancel()
            raise

        duration = time.time() - start_time
        self._cycles_completed += 1
        self._last_cycle = time.time()
        if self.metrics:
            self.metrics.record_cycle(duration)

        log_cycle_complete(self.logger, duration, summary.inspected, summary.findings)
        return summary.inspected

    async def _produce(self, source: HostSource, hostnames: "asyncio.Queue[Optional[str]]") -> None:
        """Run one source; its failure only costs the hostnames it had not pushed yet."""
        try:
            await source.produce(hostnames)
        except Exception as e:
            self.logger.error(f"Source {source.name} failed: {e}", exc_info=True)
            if self.metrics:
                self.metrics.record_provider_failure(source.name)

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Discovery cycle failed: {e}", exc_info=True)

    async def run(self) -> None:
        """Run discovery cycles until stop() is called."""
        if self._running:
            self.logger.warning("Orchestrator is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._aggregator_task = asyncio.create_task(self.aggregator.run(self.results))

        # Sleeping for the rest of the cycle keeps discovery in phase with the flush timer
        pause = max(self.config.check_interval_seconds - self.config.notify_interval_seconds, 0)
        self.logger.info(
            f"Started discovery - Interval: {self.config.check_interval}, "
            f"Flush interval: {self.config.notify_interval}"
        )

        try:
            while not self._shutdown_event.is_set():
                if self._cycle_task and not self._cycle_task.done():
                    self.logger.warning("Previous discovery cycle still running, starting next one")
                self._cycle_task = asyncio.create_task(self._guarded_cycle())

                self.logger.info(f"Sleeping {pause}s until next discovery cycle")
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=pause)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._shutdown()

    async def run_once(self) -> int:
        """Run a single cycle, then flush everything it found."""
        inspected = await self.run_cycle()
        self.aggregator.drain(self.results)
        await self.aggregator.flush()
        return inspected

    def stop(self) -> None:
        """Ask the run loop to exit."""
        self._shutdown_event.set()

    async def _shutdown(self) -> None:
        for task in (self._cycle_task, self._aggregator_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # Deliver whatever was found before shutdown
        self.aggregator.drain(self.results)
        await self.aggregator.flush()

        self._running = False
        self.logger.info("Orchestrator stopped")

    async def close(self) -> None:
        """Close every source and notifier."""
        for resource in [*self.sources, *self.notifiers]:
            await resource.close()

    async def get_health_status(self) -> Dict[str, Any]:
        """Get orchestrator health status."""
        return {
            "discovery_status": "running" if self._running else "stopped",
            "cycles_completed": self._cycles_completed,
            "last_cycle_timestamp": self._last_cycle,
            "buffered_findings": self.aggregator.pending,
            "sources": [source.name for source in self.sources],
            "notifiers": [notifier.name for notifier in self.notifiers],
        }
