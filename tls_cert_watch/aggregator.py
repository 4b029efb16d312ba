"""
Time-windowed alert aggregation for TLS Certificate Watch.
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from tls_cert_watch.logger import get_logger, log_notify_failure
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.models import Finding
from tls_cert_watch.notifier import Notifier

AlertBuffer = Dict[str, List[str]]


def render(buffer: AlertBuffer) -> str:
    """Render each message followed by its hosts, one per line."""
    lines: List[str] = []
    for message, hosts in buffer.items():
        lines.append(message)
        lines.extend(hosts)
    return "\n".join(lines)


class AlertAggregator:
    """
    Buffer findings by message text and flush them on a fixed timer.

    Hosts sharing a message collapse into one bucket and keep their
    arrival order. Every flush goes to every configured notifier.
    """

    def __init__(
        self,
        notifiers: Sequence[Notifier],
        flush_interval: float,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.notifiers = list(notifiers)
        self.flush_interval = flush_interval
        self.metrics = metrics
        self.logger = get_logger("aggregator")
        self._buffer: AlertBuffer = {}

    @property
    def pending(self) -> int:
        """Number of buffered (message, host) pairs."""
        return sum(len(hosts) for hosts in self._buffer.values())

    def add(self, finding: Finding) -> None:
        """Buffer one finding."""
        hosts = self._buffer.setdefault(finding.message, [])
        if finding.host not in hosts:
            hosts.append(finding.host)
        if self.metrics:
            self.metrics.set_buffered_findings(self.pending)

    def drain(self, findings: "asyncio.Queue[Finding]") -> int:
        """Buffer every finding already waiting in the queue."""
        drained = 0
        while True:
            try:
                self.add(findings.get_nowait())
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    async def run(self, findings: "asyncio.Queue[Finding]") -> None:
        """Buffer findings forever, flushing at every window boundary."""
        loop = asyncio.get_running_loop()
        next_flush = loop.time() + self.flush_interval

        self.logger.info(f"Alert aggregator started - Flush interval: {self.flush_interval}s")
        while True:
            remaining = next_flush - loop.time()
            if remaining <= 0:
                await self.flush()
                next_flush += self.flush_interval
                # A slow delivery must not cause a burst of empty flushes
                next_flush = max(next_flush, loop.time())
                continue

            try:
                finding = await asyncio.wait_for(findings.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            self.add(finding)

    async def flush(self) -> bool:
        """
        Deliver and clear the buffer.

        The buffer is cleared even when delivery fails.

        Returns:
            True if a message was sent to the notifiers
        """
        if not self._buffer:
            self.logger.debug("No messages need to be sent")
            return False

        buffer, self._buffer = self._buffer, {}
        if self.metrics:
            self.metrics.set_buffered_findings(0)

        text = render(buffer)
        self.logger.info(f"Sending alert with {len(buffer)} distinct warnings:\n{text}")

        results = await asyncio.gather(
            *(notifier.send(text) for notifier in self.notifiers), return_exceptions=True
        )
        for notifier, result in zip(self.notifiers, results):
            success = not isinstance(result, BaseException)
            if not success:
                log_notify_failure(self.logger, notifier.name, result)  # type: ignore[arg-type]
            if self.metrics:
                self.metrics.record_notification(notifier.name, success)

        return True
