"""
Hostname sources for TLS Certificate Watch.

Every source pushes hostnames into a queue shared with the inspector.
Sources backed by a DNS API split their work into one unit per
(domain, record type) pair; units run concurrently and a failing unit
is logged and dropped without affecting its siblings.
"""

import asyncio
import base64
import hashlib
import hmac
import math
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import quote

import httpx

from tls_cert_watch.config import ConfigurationError, ProviderSpec
from tls_cert_watch.logger import get_logger, log_provider_failure
from tls_cert_watch.metrics import MetricsCollector

T = TypeVar("T")

RECORD_TYPES = ("A", "CNAME")
MAX_ATTEMPTS = 3
DEFAULT_HTTP_TIMEOUT = 5.0


class ProviderError(Exception):
    """A discovery request failed (transport, status or remote error)."""


class HostSource(ABC):
    """Base class for hostname sources."""

    kind = "base"
    max_attempts = MAX_ATTEMPTS
    retry_delay = 0.0

    def __init__(self, name: str, metrics: Optional[MetricsCollector] = None):
        self.name = name or self.kind
        self.metrics = metrics
        self.logger = get_logger(f"providers.{self.kind}")

    @abstractmethod
    async def produce(self, sink: "asyncio.Queue[Optional[str]]") -> None:
        """Push every discovered hostname into the sink."""

    async def close(self) -> None:
        """Release network resources."""

    async def _push(self, sink: "asyncio.Queue[Optional[str]]", hostname: str) -> None:
        await sink.put(hostname)
        if self.metrics:
            self.metrics.record_hostname(self.name)

    async def _retry(self, unit: str, attempt: Callable[[], Awaitable[T]]) -> T:
        """
        Run one request with bounded retries.

        Raises:
            ProviderError: once every attempt failed
        """
        last_error: Optional[ProviderError] = None
        for number in range(1, self.max_attempts + 1):
            try:
                return await attempt()
            except ProviderError as e:
                last_error = e
                if number < self.max_attempts:
                    self.logger.debug(
                        f"{self.name}: {unit} attempt {number}/{self.max_attempts} failed: {e}"
                    )
                    if self.retry_delay:
                        await asyncio.sleep(self.retry_delay)

        raise ProviderError(f"{unit}: {last_error}") from last_error

    def _unit_failed(self, unit: str, error: Exception) -> None:
        log_provider_failure(self.logger, self.name, unit, self.max_attempts, error)
        if self.metrics:
            self.metrics.record_provider_failure(self.name)


class _DomainSource(HostSource):
    """Source that lists records of each configured domain over HTTP."""

    def __init__(
        self,
        name: str,
        domains: List[str],
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(name, metrics)
        self.domains = [d.strip() for d in domains if d.strip()]
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def produce(self, sink: "asyncio.Queue[Optional[str]]") -> None:
        units = [
            self._discover_unit(domain, record_type, sink)
            for domain in self.domains
            for record_type in RECORD_TYPES
        ]
        await asyncio.gather(*units)

    async def _discover_unit(
        self, domain: str, record_type: str, sink: "asyncio.Queue[Optional[str]]"
    ) -> None:
        try:
            await self._discover(domain, record_type, sink)
        except Exception as e:
            # Failures stay inside their (domain, record type) unit
            self._unit_failed(f"{domain}/{record_type}", e)

    @abstractmethod
    async def _discover(
        self, domain: str, record_type: str, sink: "asyncio.Queue[Optional[str]]"
    ) -> None:
        """Discover the records of one (domain, record type) unit."""

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _percent_encode(value: str) -> str:
    return quote(str(value), safe="~")


def sign_rpc_request(params: Dict[str, str], secret: str, method: str = "GET") -> str:
    """Compute the HMAC-SHA1 signature of an Alibaba Cloud RPC request."""
    canonical = "&".join(
        f"{_percent_encode(k)}={_percent_encode(v)}" for k, v in sorted(params.items())
    )
    string_to_sign = f"{method}&{_percent_encode('/')}&{_percent_encode(canonical)}"
    digest = hmac.new(f"{secret}&".encode(), string_to_sign.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class AliyunProvider(_DomainSource):
    """
    Alibaba Cloud DNS source.

    Lists enabled records through the paginated DescribeDomainRecords
    API. The first page reports the total record count; the remaining
    pages are then fetched concurrently, one task per page.
    """

    kind = "aliyun"
    API_VERSION = "2015-01-09"
    PAGE_SIZE = 100
    # Regions served by the global endpoint instead of a regional one
    GLOBAL_ENDPOINT_REGIONS = {"cn-qingdao", "cn-wulanchabu"}

    def __init__(
        self,
        name: str,
        key_id: str,
        key_secret: str,
        region: str,
        domains: List[str],
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(name, domains, timeout=timeout, client=client, metrics=metrics)
        self.key_id = key_id
        self.key_secret = key_secret
        self.region = region

    @property
    def endpoint(self) -> str:
        if self.region in self.GLOBAL_ENDPOINT_REGIONS:
            return "https://dns.aliyuncs.com/"
        return f"https://alidns.{self.region}.aliyuncs.com/"

    def _signed_params(self, params: Dict[str, str]) -> Dict[str, str]:
        signed = {
            "Format": "JSON",
            "Version": self.API_VERSION,
            "AccessKeyId": self.key_id,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            **params,
        }
        signed["Signature"] = sign_rpc_request(signed, self.key_secret)
        return signed

    async def _fetch_page(self, domain: str, record_type: str, page: int) -> Tuple[List[str], int]:
        """
        Fetch one page of records.

        Returns:
            Relative record names on the page and the total record count
        """
        params = self._signed_params(
            {
                "Action": "DescribeDomainRecords",
                "Lang": "en",
                "DomainName": domain,
                "Type": record_type,
                "Status": "ENABLE",
                "PageNumber": str(page),
                "PageSize": str(self.PAGE_SIZE),
            }
        )
        try:
            response = await self.client.get(self.endpoint, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"unexpected status {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
            records = body["DomainRecords"]["Record"]
            names = [record["RR"] for record in records]
            total = int(body["TotalCount"])
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"malformed response: {e}") from e

        return names, total

    async def _fetch_records(
        self, domain: str, record_type: str, page: int, sink: "asyncio.Queue[Optional[str]]"
    ) -> int:
        """Fetch one page with retries, push its hostnames and return the page count."""
        names, total = await self._retry(
            f"{domain}/{record_type} page {page}",
            lambda: self._fetch_page(domain, record_type, page),
        )
        for name in names:
            await self._push(sink, f"{name}.{domain}")
        return math.ceil(total / self.PAGE_SIZE)

    async def _discover(
        self, domain: str, record_type: str, sink: "asyncio.Queue[Optional[str]]"
    ) -> None:
        unit = f"{domain}/{record_type}"
        try:
            total_pages = await self._fetch_records(domain, record_type, 1, sink)
        except ProviderError as e:
            self._unit_failed(unit, e)
            return

        # Page numbers are 1-based and page 1 is already done
        pages = range(2, total_pages + 1)
        results = await asyncio.gather(
            *(self._fetch_records(domain, record_type, page, sink) for page in pages),
            return_exceptions=True,
        )
        for page, result in zip(pages, results):
            if isinstance(result, Exception):
                self._unit_failed(f"{unit} page {page}", result)
            elif isinstance(result, BaseException):
                raise result


class FileProvider(HostSource):
    """Source reading one hostname per line from a local file."""

    kind = "file"

    def __init__(self, name: str, file_path: str, metrics: Optional[MetricsCollector] = None):
        super().__init__(name, metrics)
        self.file_path = Path(file_path)

    def _read_hostnames(self) -> List[str]:
        contents = self.file_path.read_text(encoding="utf-8")
        hostnames = []
        for line in contents.splitlines():
            host = line.strip()
            if not host or host.startswith("#"):
                continue
            hostnames.append(host)
        return hostnames

    async def produce(self, sink: "asyncio.Queue[Optional[str]]") -> None:
        try:
            loop = asyncio.get_running_loop()
            hostnames = await loop.run_in_executor(None, self._read_hostnames)
        except (OSError, UnicodeDecodeError) as e:
            self.logger.warning(f"Failed to read host file {self.file_path}: {e}")
            return

        for host in hostnames:
            await self._push(sink, host)


class WestDigitalProvider(_DomainSource):
    """West Digital (west.cn) DNS source, one signed query per unit."""

    kind = "west"
    BASE_URL = "https://api.west.cn/API/v2/domain/dns/"
    QUERY_ACTION = "dnsrec.list"
    REMOTE_ERROR_CODE = 500
    retry_delay = 1.0

    def __init__(
        self,
        name: str,
        api_key: str,
        domains: List[str],
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(name, domains, timeout=timeout, client=client, metrics=metrics)
        self.api_key = api_key

    async def _query(self, domain: str, record_type: str) -> List[str]:
        """
        List the active record names of one unit.

        Raises:
            ProviderError: on transport errors, unparseable bodies or the remote error code
        """
        form = {
            "apidomainkey": self.api_key,
            "act": self.QUERY_ACTION,
            "domain": domain,
            "record_type": record_type,
        }
        try:
            response = await self.client.post(self.BASE_URL, data=form)
        except httpx.HTTPError as e:
            raise ProviderError(f"request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"malformed response (status {response.status_code}): {e}") from e

        if not isinstance(body, dict):
            raise ProviderError("malformed response: expected a JSON object")
        if body.get("code") == self.REMOTE_ERROR_CODE:
            raise ProviderError(f"remote provider service error: {body.get('msg', '')}")

        payload = body.get("body") or {}
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            items = []

        names = []
        for item in items:
            name = self._active_record_name(item)
            if name is not None:
                names.append(name)
        return names

    def _active_record_name(self, item: Any) -> Optional[str]:
        """Get the name of an active record, or None for paused and unreadable ones."""
        if not isinstance(item, dict):
            self.logger.warning(f"{self.name}: ignoring malformed record {item!r}")
            return None

        hostname = str(item.get("hostname") or "").strip()
        try:
            paused = int(item.get("pause") or 0) != 0
        except (TypeError, ValueError):
            self.logger.warning(f"{self.name}: ignoring record with invalid pause flag {item!r}")
            return None

        if not hostname:
            self.logger.warning(f"{self.name}: ignoring record without hostname {item!r}")
            return None
        if paused:
            return None
        return hostname

    async def _discover(
        self, domain: str, record_type: str, sink: "asyncio.Queue[Optional[str]]"
    ) -> None:
        unit = f"{domain}/{record_type}"
        try:
            names = await self._retry(unit, lambda: self._query(domain, record_type))
        except ProviderError as e:
            self._unit_failed(unit, e)
            return

        for name in names:
            await self._push(sink, f"{name}.{domain}")


def _require_domains(spec: ProviderSpec) -> List[str]:
    if not spec.domains:
        raise ConfigurationError(f"{spec.describe()}: at least one domain is required")
    return spec.domains


def create_provider(
    spec: ProviderSpec,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    metrics: Optional[MetricsCollector] = None,
) -> HostSource:
    """
    Build the hostname source described by a provider spec.

    Raises:
        ConfigurationError: if a required option is missing
    """
    if spec.provider == "aliyun":
        return AliyunProvider(
            spec.name,
            key_id=spec.require("key_id"),
            key_secret=spec.require("key_secret"),
            region=spec.require("region"),
            domains=_require_domains(spec),
            timeout=timeout,
            metrics=metrics,
        )
    if spec.provider == "file":
        return FileProvider(spec.name, file_path=spec.require("file_path"), metrics=metrics)
    if spec.provider == "west":
        return WestDigitalProvider(
            spec.name,
            api_key=spec.require("api_key"),
            domains=_require_domains(spec),
            timeout=timeout,
            metrics=metrics,
        )
    raise ValueError(f"Unsupported provider type: {spec.provider}")
