"""
Tests for the certificate inspector.
"""

import asyncio
import ssl
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID, SignatureAlgorithmOID

from tls_cert_watch.inspector import (
    MSG_EXPIRED,
    CertificateChain,
    CertificateInspector,
    is_expired_error,
)
from tls_cert_watch.metrics import MetricsCollector
from tls_cert_watch.models import WILDCARD_PLACEHOLDER, Finding
from tls_cert_watch.policy import default_policy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WARN_WINDOW = timedelta(days=30)
SHA1 = SignatureAlgorithmOID.RSA_WITH_SHA1


def expired_error() -> ssl.SSLCertVerificationError:
    error = ssl.SSLCertVerificationError(
        1,
        "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed: "
        "certificate has expired (_ssl.c:1000)",
    )
    error.verify_code = 10
    error.verify_message = "certificate has expired"
    return error


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestEvaluateChain:
    """Test expiry and signature checks on a chain."""

    @pytest.fixture
    def inspector(self):
        return CertificateInspector(policy=default_policy(NOW))

    def test_healthy_chain_has_no_findings(self, inspector, fake_cert):
        chain = CertificateChain(
            [fake_cert(NOW + timedelta(days=90)), fake_cert(NOW + timedelta(days=900))],
            anchored=True,
        )

        assert inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW) == []

    def test_expiry_in_days(self, inspector, fake_cert):
        chain = CertificateChain([fake_cert(NOW + timedelta(days=10, hours=23))], anchored=False)

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert findings == [Finding("a.example.com:443", "expires in 10 days")]

    def test_expiry_in_hours(self, inspector, fake_cert):
        chain = CertificateChain([fake_cert(NOW + timedelta(hours=30, minutes=59))], anchored=False)

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert findings == [Finding("a.example.com:443", "expires in 30 hours")]

    def test_exactly_48_hours_reports_hours(self, inspector, fake_cert):
        chain = CertificateChain([fake_cert(NOW + timedelta(hours=48))], anchored=False)

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert findings[0].message == "expires in 48 hours"

    def test_49_hours_reports_days(self, inspector, fake_cert):
        chain = CertificateChain([fake_cert(NOW + timedelta(hours=49))], anchored=False)

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert findings[0].message == "expires in 2 days"

    def test_outside_warn_window(self, inspector, fake_cert):
        chain = CertificateChain([fake_cert(NOW + timedelta(days=31))], anchored=False)

        assert inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW) == []

    def test_every_certificate_checked(self, inspector, fake_cert):
        chain = CertificateChain(
            [
                fake_cert(NOW + timedelta(days=5, hours=1)),
                fake_cert(NOW + timedelta(days=20, hours=1)),
                fake_cert(NOW + timedelta(days=3650)),
            ],
            anchored=True,
        )

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert [f.message for f in findings] == ["expires in 5 days", "expires in 20 days"]

    def test_sunset_algorithm_on_intermediate(self, inspector, fake_cert):
        chain = CertificateChain(
            [fake_cert(NOW + timedelta(days=90)), fake_cert(NOW + timedelta(days=900), SHA1)],
            anchored=False,
        )

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert findings == [
            Finding(
                "a.example.com:443",
                "expires after the sunset date for its signature algorithm 'SHA1 with RSA'",
            )
        ]

    def test_root_position_never_flagged_for_algorithm(self, inspector, fake_cert):
        chain = CertificateChain(
            [fake_cert(NOW + timedelta(days=90)), fake_cert(NOW + timedelta(days=3650), SHA1)],
            anchored=True,
        )

        assert inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW) == []

    def test_root_position_still_checked_for_expiry(self, inspector, fake_cert):
        chain = CertificateChain(
            [fake_cert(NOW + timedelta(days=90)), fake_cert(NOW + timedelta(days=4, hours=1), SHA1)],
            anchored=True,
        )

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert [f.message for f in findings] == ["expires in 4 days"]

    def test_expiry_and_algorithm_on_same_certificate(self, inspector, fake_cert):
        chain = CertificateChain(
            [fake_cert(NOW + timedelta(days=7, hours=2), SHA1), fake_cert(NOW + timedelta(days=900))],
            anchored=True,
        )

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert [f.message for f in findings] == [
            "expires in 7 days",
            "expires after the sunset date for its signature algorithm 'SHA1 with RSA'",
        ]

    def test_algorithm_before_sunset_not_flagged(self, inspector, fake_cert):
        # MD5 sunsets at policy creation; a certificate ending earlier is only reported for expiry
        md5 = SignatureAlgorithmOID.RSA_WITH_MD5
        chain = CertificateChain([fake_cert(NOW - timedelta(hours=1), md5)], anchored=False)

        findings = inspector.evaluate_chain("a.example.com:443", chain, NOW, WARN_WINDOW)

        assert [f.message for f in findings] == ["expires in -1 hours"]


@pytest.mark.asyncio
class TestInspect:
    """Test inspection of single hosts."""

    @pytest.fixture
    def metrics(self):
        return MagicMock(spec=MetricsCollector)

    @pytest.fixture
    def inspector(self, metrics):
        inspector = CertificateInspector(policy=default_policy(), workers=4, metrics=metrics)
        inspector._fetch_chains = AsyncMock(return_value=[])
        return inspector

    async def test_bare_host_dialed_on_443(self, inspector):
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("www.example.com", results, WARN_WINDOW)

        inspector._fetch_chains.assert_awaited_once_with("www.example.com", 443)
        assert results.empty()
        inspector.metrics.record_inspection.assert_called_once_with("ok")

    async def test_wildcard_dialed_with_placeholder(self, inspector):
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("*.example.com", results, WARN_WINDOW)

        inspector._fetch_chains.assert_awaited_once_with(f"{WILDCARD_PLACEHOLDER}.example.com", 443)

    async def test_expired_certificate_becomes_finding(self, inspector):
        inspector._fetch_chains.side_effect = expired_error()
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("expired.example.com", results, WARN_WINDOW)

        assert drain(results) == [Finding("expired.example.com:443", MSG_EXPIRED)]
        assert inspector.findings_emitted == 1
        inspector.metrics.record_inspection.assert_called_once_with("expired")

    async def test_other_verification_error_skipped(self, inspector, caplog):
        error = ssl.SSLCertVerificationError(1, "certificate verify failed: hostname mismatch")
        error.verify_code = 62
        inspector._fetch_chains.side_effect = error
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("wrong.example.com", results, WARN_WINDOW)

        assert results.empty()
        assert "wrong.example.com:443" in caplog.text

    @pytest.mark.parametrize(
        "error",
        [
            ConnectionRefusedError("refused"),
            OSError("Name or service not known"),
            asyncio.TimeoutError(),
            ssl.SSLError("wrong version number"),
        ],
    )
    async def test_network_errors_never_alert(self, inspector, error):
        inspector._fetch_chains.side_effect = error
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("down.example.com", results, WARN_WINDOW)

        assert results.empty()
        inspector.metrics.record_inspection.assert_called_once_with("error")

    async def test_invalid_port_skipped_without_dialing(self, inspector):
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("example.com:notaport", results, WARN_WINDOW)

        inspector._fetch_chains.assert_not_awaited()
        assert results.empty()

    async def test_findings_pushed_for_chain(self, inspector, fake_cert):
        soon = datetime.now(timezone.utc) + timedelta(days=10, hours=12)
        inspector._fetch_chains.return_value = [
            CertificateChain([fake_cert(soon)], anchored=False)
        ]
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect("soon.example.com", results, WARN_WINDOW)

        assert drain(results) == [Finding("soon.example.com:443", "expires in 10 days")]
        inspector.metrics.record_finding.assert_called_once()


@pytest.mark.asyncio
class TestCheck:
    """Test the hostname queue consumer."""

    async def test_check_inspects_each_hostname(self):
        inspector = CertificateInspector(workers=2)
        inspector._fetch_chains = AsyncMock(return_value=[])
        hostnames: asyncio.Queue = asyncio.Queue()
        results: asyncio.Queue = asyncio.Queue()
        for host in ["a.example.com", "", "@.example.com", "b.example.com:8443", " c.example.com ", None]:
            hostnames.put_nowait(host)

        summary = await inspector.check(hostnames, results, WARN_WINDOW)

        assert summary.inspected == 3
        assert summary.findings == 0
        dialed = sorted(call.args for call in inspector._fetch_chains.await_args_list)
        assert dialed == [("a.example.com", 443), ("b.example.com", 8443), ("c.example.com", 443)]

    async def test_check_bounds_concurrent_inspections(self):
        inspector = CertificateInspector(workers=2)
        active = 0
        peak = 0

        async def slow_fetch(host, port):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        inspector._fetch_chains = slow_fetch
        hostnames: asyncio.Queue = asyncio.Queue()
        for i in range(10):
            hostnames.put_nowait(f"host{i}.example.com")
        hostnames.put_nowait(None)

        summary = await inspector.check(hostnames, asyncio.Queue(), WARN_WINDOW)

        assert summary.inspected == 10
        assert peak == 2

    async def test_unexpected_error_isolated(self, fake_cert):
        inspector = CertificateInspector(workers=4)
        soon = datetime.now(timezone.utc) + timedelta(days=3, hours=6)

        async def fetch(host, port):
            if host == "broken.example.com":
                raise RuntimeError("boom")
            return [CertificateChain([fake_cert(soon)], anchored=False)]

        inspector._fetch_chains = fetch
        hostnames: asyncio.Queue = asyncio.Queue()
        results: asyncio.Queue = asyncio.Queue()
        for host in ["broken.example.com", "ok.example.com", None]:
            hostnames.put_nowait(host)

        summary = await inspector.check(hostnames, results, WARN_WINDOW)

        assert drain(results) == [Finding("ok.example.com:443", "expires in 3 days")]
        assert summary.findings == 1


class TestExpiredError:
    def test_detected_by_verify_code(self):
        assert is_expired_error(expired_error())

    def test_detected_by_message(self):
        error = ssl.SSLCertVerificationError(1, "certificate verify failed: certificate has expired")
        assert is_expired_error(error)

    def test_other_errors(self):
        error = ssl.SSLCertVerificationError(1, "certificate verify failed: self-signed certificate")
        assert not is_expired_error(error)


def issue_certificate(
    common_name: str,
    not_before: datetime,
    not_after: datetime,
    issuer: Optional[Tuple[x509.Certificate, ec.EllipticCurvePrivateKey]] = None,
) -> Tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Issue a CA certificate, or a localhost leaf when an issuer is given."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    is_ca = issuer is None
    issuer_cert, issuer_key = (None, key) if is_ca else issuer

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name if is_ca else issuer_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    if is_ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    else:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False
        ).add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)

    return builder.sign(issuer_key, hashes.SHA256()), key


@pytest.mark.asyncio
class TestLiveHandshake:
    """Test inspection against a local TLS server."""

    @pytest.fixture
    def certificate_authority(self, tmp_path):
        now = datetime.now(timezone.utc)
        ca_cert, ca_key = issue_certificate(
            "Test Root CA", now - timedelta(days=1), now + timedelta(days=3650)
        )
        ca_file = tmp_path / "ca.pem"
        ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
        return ca_cert, ca_key, ca_file

    @pytest.fixture
    def serve(self, tmp_path, certificate_authority):
        """Start a TLS server presenting a leaf valid until the given time."""
        ca_cert, ca_key, _ = certificate_authority
        servers = []

        async def _serve(not_before: datetime, not_after: datetime) -> int:
            leaf, key = issue_certificate("localhost", not_before, not_after, (ca_cert, ca_key))
            cert_file = tmp_path / "leaf.pem"
            key_file = tmp_path / "leaf.key"
            cert_file.write_bytes(leaf.public_bytes(serialization.Encoding.PEM))
            key_file.write_bytes(
                key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.PKCS8,
                    serialization.NoEncryption(),
                )
            )
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(str(cert_file), str(key_file))

            async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
                try:
                    await reader.read()
                finally:
                    writer.close()

            server = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=context)
            servers.append(server)
            return server.sockets[0].getsockname()[1]

        yield _serve

        for server in servers:
            server.close()

    @pytest.fixture
    def inspector(self, certificate_authority):
        _, _, ca_file = certificate_authority
        context = ssl.create_default_context(cafile=str(ca_file))
        return CertificateInspector(ssl_context=context, timeout=5)

    async def test_expired_leaf(self, serve, inspector):
        now = datetime.now(timezone.utc)
        port = await serve(now - timedelta(days=30), now - timedelta(days=1))
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect(f"localhost:{port}", results, WARN_WINDOW)

        assert drain(results) == [Finding(f"localhost:{port}", MSG_EXPIRED)]

    async def test_leaf_close_to_expiry(self, serve, inspector):
        now = datetime.now(timezone.utc)
        port = await serve(now - timedelta(days=1), now + timedelta(days=10, hours=5))
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect(f"localhost:{port}", results, WARN_WINDOW)

        assert drain(results) == [Finding(f"localhost:{port}", "expires in 10 days")]

    async def test_presented_chain(self, serve, inspector, certificate_authority):
        ca_cert, _, _ = certificate_authority
        now = datetime.now(timezone.utc)
        port = await serve(now - timedelta(days=1), now + timedelta(days=200))

        chains = await inspector._fetch_chains("localhost", port)

        assert len(chains) == 1
        chain = chains[0]
        assert chain.certificates[0].subject.rfc4514_string() == "CN=localhost"
        if hasattr(ssl.SSLObject, "get_verified_chain"):
            assert chain.anchored is True
            assert chain.certificates[-1] == ca_cert
        else:
            assert chain.anchored is False
            assert len(chain.certificates) == 1

    async def test_untrusted_server_skipped(self, serve, caplog):
        now = datetime.now(timezone.utc)
        port = await serve(now - timedelta(days=1), now + timedelta(days=5))
        inspector = CertificateInspector(ssl_context=ssl.create_default_context(), timeout=5)
        results: asyncio.Queue = asyncio.Queue()

        await inspector.inspect(f"localhost:{port}", results, WARN_WINDOW)

        assert results.empty()
        assert f"Skip checking localhost:{port}" in caplog.text


@pytest.mark.asyncio
async def test_cancelled_check_waits_for_inspections():
    inspector = CertificateInspector(workers=4)
    started = 0
    cancelled = []

    async def hang(host, port):
        nonlocal started
        started += 1
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(host)
            raise

    inspector._fetch_chains = hang
    hostnames: asyncio.Queue = asyncio.Queue()
    for i in range(3):
        hostnames.put_nowait(f"host{i}.example.com")

    task = asyncio.create_task(inspector.check(hostnames, asyncio.Queue(), WARN_WINDOW))
    while started < 3:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert sorted(cancelled) == ["host0.example.com", "host1.example.com", "host2.example.com"]
