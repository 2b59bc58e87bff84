"""
Notification delivery channel.

Sends one reminder email per call through a Resend-compatible HTTP API.
When no API key is configured there is no channel and tickets stay queued
(or are marked sent by an explicit ``mark`` run).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog

from app.core.config import Settings, get_settings

log = structlog.get_logger()


@dataclass
class DeliveryResult:
    ok: bool
    error: Optional[str] = None
    provider_id: Optional[str] = None


class DeliveryChannel(Protocol):
    async def send(self, to: str, subject: str, text: str) -> DeliveryResult: ...


class HttpEmailChannel:
    """POSTs ``{from, to, subject, text}`` to the mail API with a Bearer key."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        request_timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._request_timeout = request_timeout
        self._client = client

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._request_timeout))

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, to: str, subject: str, text: str) -> DeliveryResult:
        await self.open()
        assert self._client
        try:
            resp = await self._client.post(
                self._api_url,
                json={"from": self._sender, "to": to, "subject": subject, "text": text},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            log.error("delivery.provider_error", status=status, to=to)
            return DeliveryResult(ok=False, error=f"HTTP_{status}")
        except httpx.TimeoutException:
            log.error("delivery.timeout", to=to)
            return DeliveryResult(ok=False, error="TIMEOUT")
        except httpx.TransportError as exc:
            log.error("delivery.unreachable", to=to, error=str(exc))
            return DeliveryResult(ok=False, error="UNREACHABLE")

        return DeliveryResult(ok=True, provider_id=_provider_id(resp))


def _provider_id(resp: httpx.Response) -> Optional[str]:
    """Message id from an accepted response; an unreadable body still counts as sent."""
    if not resp.headers.get("content-type", "").startswith("application/json"):
        return None
    try:
        body = resp.json()
    except ValueError:
        log.warning("delivery.unreadable_response", status=resp.status_code)
        return None
    return body.get("id") if isinstance(body, dict) else None


def build_channel(settings: Settings) -> Optional[HttpEmailChannel]:
    if not settings.mail_api_key:
        return None
    return HttpEmailChannel(
        api_url=settings.mail_api_url,
        api_key=settings.mail_api_key,
        sender=settings.mail_from,
        request_timeout=settings.mail_timeout_seconds,
    )


async def get_delivery_channel():
    """FastAPI dependency yielding the configured channel (or None)."""
    channel = build_channel(get_settings())
    try:
        yield channel
    finally:
        if channel is not None:
            await channel.close()
