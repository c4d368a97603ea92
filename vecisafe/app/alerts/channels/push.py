"""
push.py — Push notification transport.

The fanout dispatcher calls ``send(recipient_session_id, summary)`` once
per delivery attempt. A transport answers True when the push service
accepted the message and False otherwise; raising is treated the same as
False by the dispatcher. Retry and backoff live in the dispatcher, not
here.

Transports:
    SimulatedPushTransport — logs and records the push (development/tests)
    HttpPushTransport      — POSTs JSON to a push gateway over httpx

Gateway request body:

    {
      "to": "<recipient session id>",
      "notification": {"title": ..., "body": ..., "tag": <alert id>},
      "data": <alert summary>
    }
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx

from vecisafe.app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class PushTransport(ABC):
    """Abstract push primitive used by the fanout dispatcher."""

    name: str = "push"

    @abstractmethod
    async def send(self, recipient_session_id: str, summary: Dict[str, Any]) -> bool:
        ...

    async def close(self) -> None:
        return None


def build_push_body(recipient_session_id: str, summary: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "to": recipient_session_id,
        "notification": {
            "title": summary.get("title", "Security alert nearby"),
            "body": summary.get("body", ""),
            "tag": summary.get("alert_id"),
        },
        "data": summary,
    }


class SimulatedPushTransport(PushTransport):
    """Accepts every push and keeps an outbox for inspection."""

    name = "simulation"

    def __init__(self) -> None:
        self.outbox: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, recipient_session_id: str, summary: Dict[str, Any]) -> bool:
        self.outbox.append((recipient_session_id, summary))
        logger.info(
            "[PUSH] Alert %s → %s: %s",
            summary.get("alert_id"), recipient_session_id, summary.get("title"),
            extra={"alert_id": summary.get("alert_id"), "recipient": recipient_session_id},
        )
        return True


class HttpPushTransport(PushTransport):
    """Deliver through an HTTP push gateway (FCM relay, Expo push, ...)."""

    name = "http"

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds, headers=headers,
            )
        return self._http_client

    async def send(self, recipient_session_id: str, summary: Dict[str, Any]) -> bool:
        client = await self._get_client()
        try:
            response = await client.post(
                self.gateway_url, json=build_push_body(recipient_session_id, summary),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "[PUSH] Gateway error for %s: %s", recipient_session_id, exc,
                extra={"recipient": recipient_session_id},
            )
            return False

        if not response.is_success:
            logger.warning(
                "[PUSH] Gateway rejected %s: HTTP %d",
                recipient_session_id, response.status_code,
                extra={"recipient": recipient_session_id, "status_code": response.status_code},
            )
        return response.is_success

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


def build_push_transport(config: Settings = default_settings) -> PushTransport:
    """Construct the transport selected by PUSH_PROVIDER."""
    if config.PUSH_PROVIDER == "simulation":
        return SimulatedPushTransport()
    if config.PUSH_PROVIDER == "http":
        if not config.PUSH_GATEWAY_URL:
            raise ValueError("PUSH_GATEWAY_URL is required when PUSH_PROVIDER=http")
        return HttpPushTransport(
            config.PUSH_GATEWAY_URL,
            api_key=config.PUSH_API_KEY,
            timeout_seconds=config.PUSH_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown PUSH_PROVIDER: {config.PUSH_PROVIDER!r}")
