"""
Shared fixtures for TLS Certificate Watch tests.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID, SignatureAlgorithmOID

from tls_cert_watch.notifier import Notifier


@pytest.fixture
def fake_cert() -> Callable[..., SimpleNamespace]:
    """Build a stand-in certificate exposing the attributes the inspector reads."""

    def _make(
        not_after: datetime,
        algorithm: x509.ObjectIdentifier = SignatureAlgorithmOID.RSA_WITH_SHA256,
    ) -> SimpleNamespace:
        return SimpleNamespace(not_valid_after_utc=not_after, signature_algorithm_oid=algorithm)

    return _make


@pytest.fixture
def real_cert() -> Callable[..., x509.Certificate]:
    """Generate a self-signed SHA-256 certificate valid for the given number of days."""

    def _make(common_name: str = "test.example.com", days_valid: int = 365) -> x509.Certificate:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.now(timezone.utc)
        return (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=days_valid))
            .sign(key, hashes.SHA256())
        )

    return _make


@pytest.fixture
def hosts_file(tmp_path: Path) -> Callable[[str], Path]:
    """Write a host list file."""

    def _write(content: str) -> Path:
        path = tmp_path / "hosts.txt"
        path.write_text(content, encoding="utf-8")
        return path

    return _write


class RecordingNotifier(Notifier):
    """Notifier keeping every message it was asked to deliver."""

    kind = "recording"

    def __init__(self, name: str = "recording", fail: bool = False):
        super().__init__(name)
        self.fail = fail
        self.messages: List[str] = []

    async def send(self, text: str) -> None:
        self.messages.append(text)
        if self.fail:
            raise ConnectionError("webhook unreachable")


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifier_factory() -> Callable[..., RecordingNotifier]:
    """Build named recording notifiers, optionally failing ones."""
    return RecordingNotifier
