"""
Notification sinks for TLS Certificate Watch.
"""

import asyncio
import base64
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from tls_cert_watch.config import NotifySpec
from tls_cert_watch.logger import get_logger

CONTENT_TYPE = "application/json"
DEFAULT_HTTP_TIMEOUT = 5.0


class NotificationError(Exception):
    """An alert could not be delivered."""


class Notifier(ABC):
    """Base class for notification sinks."""

    kind = "base"

    def __init__(self, name: str):
        self.name = name or self.kind
        self.logger = get_logger(f"notifier.{self.kind}")

    @abstractmethod
    async def send(self, text: str) -> None:
        """
        Deliver one alert message.

        Raises:
            NotificationError: if delivery failed
        """

    async def close(self) -> None:
        """Release network resources."""


def build_text_message(
    text: str, at_mobiles: Optional[List[str]] = None, at_all: bool = False
) -> Dict[str, Any]:
    """Build a DingTalk robot text message payload."""
    return {
        "msgtype": "text",
        "text": {"content": text},
        "at": {"atMobiles": list(at_mobiles or [])},
        "isAtAll": at_all,
    }


class DingTalkNotifier(Notifier):
    """
    DingTalk custom robot webhook.

    When the robot has signing enabled the ``secret`` is used to add the
    ``timestamp`` and ``sign`` query parameters to every request.
    """

    kind = "dding"
    max_attempts = 3
    retry_delay = 1.0

    def __init__(
        self,
        name: str,
        url: str,
        secret: Optional[str] = None,
        at_mobiles: Optional[List[str]] = None,
        at_all: bool = False,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name)
        self.url = url
        self.secret = secret
        self.at_mobiles = at_mobiles or []
        self.at_all = at_all
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _signed_params(self) -> Dict[str, str]:
        if not self.secret:
            return {}
        timestamp = str(int(time.time() * 1000))
        string_to_sign = f"{timestamp}\n{self.secret}"
        digest = hmac.new(self.secret.encode(), string_to_sign.encode(), hashlib.sha256).digest()
        return {"timestamp": timestamp, "sign": base64.b64encode(digest).decode()}

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            response = await self.client.post(
                self.url,
                params=self._signed_params(),
                json=payload,
                headers={"Content-Type": CONTENT_TYPE},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"request failed: {e}") from e

        if not response.is_success:
            raise NotificationError(f"unexpected status {response.status_code}")

        self.logger.debug(f"DingTalk response: {response.text}")
        try:
            body = response.json()
        except ValueError:
            return
        if isinstance(body, dict) and body.get("errcode", 0) != 0:
            raise NotificationError(f"robot rejected message: {body.get('errmsg', body)}")

    async def send(self, text: str) -> None:
        payload = build_text_message(text, self.at_mobiles, self.at_all)
        last_error: Optional[NotificationError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._post(payload)
                return
            except NotificationError as e:
                last_error = e
                if attempt < self.max_attempts:
                    self.logger.warning(
                        f"{self.name}: delivery attempt {attempt}/{self.max_attempts} failed: {e}"
                    )
                    await asyncio.sleep(self.retry_delay)

        raise NotificationError(
            f"gave up after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if str(item).strip()]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


def create_notifier(spec: NotifySpec, timeout: float = DEFAULT_HTTP_TIMEOUT) -> Notifier:
    """
    Build the notification sink described by a notify spec.

    Raises:
        ConfigurationError: if a required option is missing
    """
    if spec.type in ("dding", "dingtalk"):
        return DingTalkNotifier(
            spec.name,
            url=spec.require("url"),
            secret=spec.option("secret"),
            at_mobiles=_as_list(spec.option("at_mobiles")),
            at_all=_as_bool(spec.option("at_all", False)),
            timeout=timeout,
        )
    raise ValueError(f"Unsupported notifier type: {spec.type}")
