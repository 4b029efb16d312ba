"""
TLS certificate inspection for TLS Certificate Watch.
"""

import asyncio
import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, NamedTuple, Optional, Set

from cryptography import x509

from tls_cert_watch.logger import get_logger, log_finding, log_host_skipped
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.models import Finding, format_target, is_skipped, normalize_hostname
from tls_cert_watch.policy import SignatureAlgorithmPolicy, default_policy, sunset_rule_for

MSG_EXPIRING_SHORTLY = "expires in {hours} hours"
MSG_EXPIRING_SOON = "expires in {days} days"
MSG_SUNSET_ALGORITHM = "expires after the sunset date for its signature algorithm '{name}'"
MSG_EXPIRED = "certificate has expired"

# Below this many hours left the warning switches from days to hours
SHORT_NOTICE_HOURS = 48

# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
CERT_HAS_EXPIRED = 10

DEFAULT_TLS_TIMEOUT = 10.0


class CertificateChain(NamedTuple):
    """Certificates presented by a host, leaf first."""

    certificates: List[x509.Certificate]
    # True when the last certificate is the trust anchor of a verified chain
    anchored: bool


@dataclass
class CheckSummary:
    """Counts for one pass over a hostname queue."""

    inspected: int = 0
    findings: int = 0


def is_expired_error(error: ssl.SSLCertVerificationError) -> bool:
    if getattr(error, "verify_code", None) == CERT_HAS_EXPIRED:
        return True
    return "certificate has expired" in str(error)


class CertificateInspector:
    """
    Dial each discovered host and inspect its certificate chain.

    One task is spawned per hostname; at most ``workers`` inspections
    run at once. While every slot is busy the dispatcher stops reading
    the hostname queue, so producers block on the bounded queue.
    """

    def __init__(
        self,
        policy: Optional[SignatureAlgorithmPolicy] = None,
        workers: int = 32,
        timeout: float = DEFAULT_TLS_TIMEOUT,
        metrics: Optional[MetricsCollector] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.policy = policy if policy is not None else default_policy()
        self.workers = workers
        self.timeout = timeout
        self.metrics = metrics
        self.ssl_context = ssl_context or ssl.create_default_context()
        self.findings_emitted = 0
        self.logger = get_logger("inspector")

    async def check(
        self,
        hostnames: "asyncio.Queue[Optional[str]]",
        results: "asyncio.Queue[Finding]",
        warn_window: timedelta,
    ) -> CheckSummary:
        """
        Inspect hostnames until the ``None`` end-of-cycle marker arrives.

        Returns:
            Hosts inspected and findings emitted by this call
        """
        semaphore = asyncio.Semaphore(self.workers)
        tasks: Set[asyncio.Task] = set()
        summary = CheckSummary()

        try:
            while True:
                hostname = await hostnames.get()
                if hostname is None:
                    break

                hostname = hostname.strip()
                if is_skipped(hostname):
                    self.logger.debug(f"Skipping disabled hostname '{hostname}'")
                    continue

                await semaphore.acquire()
                task = asyncio.create_task(
                    self._inspect_in_slot(hostname, results, warn_window, semaphore, summary)
                )
                tasks.add(task)
                task.add_done_callback(tasks.discard)
                summary.inspected += 1

            if tasks:
                await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pending = list(tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

        return summary

    async def _inspect_in_slot(
        self,
        hostname: str,
        results: "asyncio.Queue[Finding]",
        warn_window: timedelta,
        semaphore: asyncio.Semaphore,
        summary: CheckSummary,
    ) -> None:
        try:
            summary.findings += await self.inspect(hostname, results, warn_window)
        except Exception as e:
            self.logger.error(f"Inspection of {hostname} failed unexpectedly: {e}", exc_info=True)
            self._record("error")
        finally:
            semaphore.release()

    async def inspect(
        self, hostname: str, results: "asyncio.Queue[Finding]", warn_window: timedelta
    ) -> int:
        """
        Inspect one host and push its findings.

        Returns:
            Number of findings pushed
        """
        try:
            host, port = normalize_hostname(hostname)
        except ValueError as e:
            log_host_skipped(self.logger, hostname, e)
            self._record("error")
            return 0

        target = format_target(host, port)
        try:
            chains = await self._fetch_chains(host, port)
        except ssl.SSLCertVerificationError as e:
            if is_expired_error(e):
                self._record("expired")
                await self._emit(results, Finding(target, MSG_EXPIRED))
                return 1
            log_host_skipped(self.logger, target, e)
            self._record("error")
            return 0
        except (OSError, ssl.SSLError, asyncio.TimeoutError, ValueError) as e:
            # Network trouble must never turn into an alert
            log_host_skipped(self.logger, target, e)
            self._record("error")
            return 0

        now = datetime.now(timezone.utc)
        emitted = 0
        for chain in chains:
            for finding in self.evaluate_chain(target, chain, now, warn_window):
                await self._emit(results, finding)
                emitted += 1

        self._record("ok")
        self.logger.debug(f"End checking {target}")
        return emitted

    async def _fetch_chains(self, host: str, port: int) -> List[CertificateChain]:
        """Complete a verified TLS handshake and return the presented chain."""
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=self.ssl_context, server_hostname=host),
            timeout=self.timeout,
        )
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            return [self._read_chain(ssl_object)]
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ssl.SSLError) as e:
                self.logger.debug(f"Error closing connection to {host}:{port}: {e}")

    @staticmethod
    def _read_chain(ssl_object: ssl.SSLObject) -> CertificateChain:
        get_verified_chain = getattr(ssl_object, "get_verified_chain", None)
        if get_verified_chain is not None:
            certificates = [x509.load_der_x509_certificate(der) for der in get_verified_chain()]
            return CertificateChain(certificates, anchored=True)

        # Interpreters without get_verified_chain only expose the leaf
        leaf = ssl_object.getpeercert(binary_form=True)
        if not leaf:
            return CertificateChain([], anchored=False)
        return CertificateChain([x509.load_der_x509_certificate(leaf)], anchored=False)

    def evaluate_chain(
        self, target: str, chain: CertificateChain, now: datetime, warn_window: timedelta
    ) -> List[Finding]:
        """
        Check every certificate of a chain for expiry and sunset algorithms.

        The trust anchor of an anchored chain is still checked for expiry
        but never for its signature algorithm.
        """
        findings = []
        last = len(chain.certificates) - 1

        for position, cert in enumerate(chain.certificates):
            not_after = cert.not_valid_after_utc

            if now + warn_window > not_after:
                hours = int((not_after - now).total_seconds() / 3600)
                if hours <= SHORT_NOTICE_HOURS:
                    message = MSG_EXPIRING_SHORTLY.format(hours=hours)
                else:
                    message = MSG_EXPIRING_SOON.format(days=hours // 24)
                findings.append(Finding(target, message))

            is_root = chain.anchored and position == last
            if not is_root:
                rule = sunset_rule_for(self.policy, cert)
                if rule is not None:
                    findings.append(Finding(target, MSG_SUNSET_ALGORITHM.format(name=rule.name)))

        return findings

    async def _emit(self, results: "asyncio.Queue[Finding]", finding: Finding) -> None:
        log_finding(self.logger, finding.host, finding.message)
        await results.put(finding)
        self.findings_emitted += 1
        if self.metrics:
            self.metrics.record_finding()

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.record_inspection(result)
