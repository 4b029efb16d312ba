"""
Deprecated signature algorithm policy.

Certificates signed with one of these algorithms are flagged when they
remain valid past the algorithm's sunset date. See:

- https://technet.microsoft.com/en-us/library/security/2880823.aspx
- https://security.googleblog.com/2014/09/gradually-sunsetting-sha-1.html
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from cryptography import x509
from cryptography.x509.oid import SignatureAlgorithmOID

# cryptography ships no constant for md2WithRSAEncryption
MD2_WITH_RSA = x509.ObjectIdentifier("1.2.840.113549.1.1.2")

SHA1_SUNSET = datetime(2017, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class SunsetRule:
    """Human readable algorithm name and the time it stops being acceptable."""

    name: str
    sunsets_at: datetime


SignatureAlgorithmPolicy = Mapping[x509.ObjectIdentifier, SunsetRule]


def default_policy(now: Optional[datetime] = None) -> SignatureAlgorithmPolicy:
    """
    Build the read-only sunset table.

    MD2 and MD5 are already sunset, so their date is the moment the
    table is built.
    """
    started_at = now or datetime.now(timezone.utc)
    return MappingProxyType(
        {
            MD2_WITH_RSA: SunsetRule("MD2 with RSA", started_at),
            SignatureAlgorithmOID.RSA_WITH_MD5: SunsetRule("MD5 with RSA", started_at),
            SignatureAlgorithmOID.RSA_WITH_SHA1: SunsetRule("SHA1 with RSA", SHA1_SUNSET),
            SignatureAlgorithmOID.DSA_WITH_SHA1: SunsetRule("DSA with SHA1", SHA1_SUNSET),
            SignatureAlgorithmOID.ECDSA_WITH_SHA1: SunsetRule("ECDSA with SHA1", SHA1_SUNSET),
        }
    )


def sunset_rule_for(
    policy: SignatureAlgorithmPolicy, cert: x509.Certificate
) -> Optional[SunsetRule]:
    """Get the rule violated by a certificate, if any."""
    rule = policy.get(cert.signature_algorithm_oid)
    if rule is None:
        return None
    if cert.not_valid_after_utc >= rule.sunsets_at:
        return rule
    return None
