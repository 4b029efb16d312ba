"""
Prometheus metrics collection for TLS Certificate Watch.
"""

import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from tls_cert_watch.logger import get_logger


class MetricsCollector:
    """Prometheus metrics collector for the discovery, inspection and alert pipeline."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Discovery
        self.hostnames_discovered_total = Counter(
            "tls_watch_hostnames_discovered_total",
            "Hostnames pushed by a hostname source",
            ["provider"],
            registry=self.registry,
        )

        self.provider_failures_total = Counter(
            "tls_watch_provider_failures_total",
            "Discovery units dropped after exhausting retries",
            ["provider"],
            registry=self.registry,
        )

        # Inspection
        self.inspections_total = Counter(
            "tls_watch_inspections_total",
            "TLS inspections by outcome",
            ["result"],  # ok, expired, error
            registry=self.registry,
        )

        self.findings_total = Counter(
            "tls_watch_findings_total",
            "Certificate conditions detected",
            registry=self.registry,
        )

        # Alerting
        self.buffered_findings = Gauge(
            "tls_watch_buffered_findings",
            "Findings waiting for the next flush",
            registry=self.registry,
        )

        self.notifications_total = Counter(
            "tls_watch_notifications_total",
            "Alert deliveries by notifier and status",
            ["notifier", "status"],
            registry=self.registry,
        )

        # Cycles
        self.cycle_duration_seconds = Histogram(
            "tls_watch_cycle_duration_seconds",
            "Discovery cycle duration",
            registry=self.registry,
        )

        self.last_cycle_timestamp = Gauge(
            "tls_watch_last_cycle_timestamp",
            "Completion time of the last discovery cycle",
            registry=self.registry,
        )

        self.logger.info("Metrics collector initialized")

    def record_hostname(self, provider: str) -> None:
        self.hostnames_discovered_total.labels(provider=provider).inc()

    def record_provider_failure(self, provider: str) -> None:
        self.provider_failures_total.labels(provider=provider).inc()

    def record_inspection(self, result: str) -> None:
        self.inspections_total.labels(result=result).inc()

    def record_finding(self) -> None:
        self.findings_total.inc()

    def set_buffered_findings(self, count: int) -> None:
        self.buffered_findings.set(count)

    def record_notification(self, notifier: str, success: bool) -> None:
        status = "success" if success else "failure"
        self.notifications_total.labels(notifier=notifier, status=status).inc()

    def record_cycle(self, duration: float) -> None:
        """Record a completed discovery cycle."""
        self.cycle_duration_seconds.observe(duration)
        self.last_cycle_timestamp.set(int(time.time()))

    def get_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry).decode("utf-8")

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
