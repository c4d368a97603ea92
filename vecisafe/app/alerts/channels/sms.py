"""
sms.py — Verification code delivery over SMS.

The session manager hands a phone number and a freshly generated code to
``send_code``. The core never inspects delivery receipts: the call either
returns (accepted by the gateway) or raises ExternalServiceError.

Message template (≤160 chars, GSM 7-bit):

    "VeciSafe code: 123456. Expires in 5 min. Do not share this code."
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import httpx

from vecisafe.app.core.config import Settings, settings as default_settings
from vecisafe.app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_code_sms(code: str, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    body = f"VeciSafe code: {code}. Expires in {minutes} min. Do not share this code."
    return body[:SMS_MAX_GSM7]


def mask_phone(phone_number: str) -> str:
    """Keep the last 3 digits for log lines."""
    return "*" * max(0, len(phone_number) - 3) + phone_number[-3:]


class VerificationTransport(ABC):
    """Sends verification codes to a phone number."""

    @abstractmethod
    async def send_code(self, phone_number: str, code: str) -> None:
        ...

    async def close(self) -> None:
        return None


class SimulatedSmsTransport(VerificationTransport):
    """Logs the message instead of sending it; keeps an outbox for tests."""

    def __init__(self, ttl_seconds: int = default_settings.VERIFICATION_CODE_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self.outbox: List[Tuple[str, str]] = []

    async def send_code(self, phone_number: str, code: str) -> None:
        self.outbox.append((phone_number, code))
        logger.info(
            "[SMS] Verification code → %s (%d chars)",
            mask_phone(phone_number), len(format_code_sms(code, self.ttl_seconds)),
        )

    def last_code_for(self, phone_number: str) -> Optional[str]:
        for number, code in reversed(self.outbox):
            if number == phone_number:
                return code
        return None


class HttpSmsTransport(VerificationTransport):
    """POST the message to an SMS gateway."""

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: Optional[str] = None,
        ttl_seconds: int = default_settings.VERIFICATION_CODE_TTL_SECONDS,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds, headers=headers,
            )
        return self._http_client

    async def send_code(self, phone_number: str, code: str) -> None:
        client = await self._get_client()
        try:
            response = await client.post(
                self.gateway_url,
                json={"to": phone_number, "body": format_code_sms(code, self.ttl_seconds)},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[SMS] Gateway failed for %s: %s", mask_phone(phone_number), exc)
            raise ExternalServiceError("sms_gateway", str(exc)) from exc

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


def build_verification_transport(config: Settings = default_settings) -> VerificationTransport:
    """Construct the transport selected by SMS_PROVIDER."""
    ttl = config.VERIFICATION_CODE_TTL_SECONDS
    if config.SMS_PROVIDER == "simulation":
        return SimulatedSmsTransport(ttl)
    if config.SMS_PROVIDER == "http":
        if not config.SMS_GATEWAY_URL:
            raise ValueError("SMS_GATEWAY_URL is required when SMS_PROVIDER=http")
        return HttpSmsTransport(config.SMS_GATEWAY_URL, api_key=config.SMS_API_KEY, ttl_seconds=ttl)
    raise ValueError(f"Unknown SMS_PROVIDER: {config.SMS_PROVIDER!r}")
