"""
TLS Certificate Watch

Continuously discovers hostnames from DNS providers and host lists,
inspects their TLS certificate chains and sends batched alerts for
expiring certificates and deprecated signature algorithms.
"""

__version__ = "1.0.0"
__author__ = "TLS Certificate Watch Team"
__description__ = "Discover hosts, inspect their TLS certificates and alert on problems"

from tls_cert_watch.config import Config
from tls_cert_watch.models import Finding
from tls_cert_watch.orchestrator import Orchestrator

__all__ = [
    "Config",
    "Finding",
    "Orchestrator",
]
