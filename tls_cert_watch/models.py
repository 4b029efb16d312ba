"""
Data model shared by the discovery, inspection and alerting stages.
"""

from dataclasses import dataclass
from typing import Tuple

DEFAULT_PORT = 443

# A wildcard certificate is served for any label, so one made-up label is dialed instead
WILDCARD_PLACEHOLDER = "tls-cert-watch-wildcard"

SKIP_SENTINEL = "@"


@dataclass(frozen=True)
class Finding:
    """One detected certificate condition for a host."""

    host: str
    message: str


def is_skipped(hostname: str) -> bool:
    """Empty hostnames and the '@' sentinel are never inspected."""
    return not hostname or hostname.startswith(SKIP_SENTINEL)


def split_host_port(hostname: str) -> Tuple[str, int]:
    """
    Split ``host[:port]`` into its parts, defaulting the port to 443.

    Bracketed IPv6 literals (``[::1]:8443``) are supported.
    """
    hostname = hostname.strip()

    if hostname.startswith("["):
        host, _, rest = hostname[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif hostname.count(":") == 1:
        host, _, port = hostname.partition(":")
    else:
        host, port = hostname, ""

    if not port:
        return host, DEFAULT_PORT
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Invalid port in hostname '{hostname}'")
    return host, int(port)


def normalize_hostname(hostname: str) -> Tuple[str, int]:
    """
    Get the (host, port) pair to dial for a discovered hostname.

    A leading wildcard label is replaced by WILDCARD_PLACEHOLDER.
    """
    host, port = split_host_port(hostname)
    if host.startswith("*"):
        host = WILDCARD_PLACEHOLDER + host[1:]
    return host, port


def format_target(host: str, port: int) -> str:
    """Render a dial target the way findings report it."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
