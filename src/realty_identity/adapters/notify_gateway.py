"""
realty_identity/adapters/notify_gateway.py — HTTP email/SMS gateway client.

Posts JSON payloads to the configured gateway URLs:
    email → ``{"from", "to", "subject", "text"}``
    sms   → ``{"to", "body"}``

Any non-2xx answer or network failure raises ``TransportError``; the
caller (``services.notifier.deliver``) records it.
"""

from __future__ import annotations

import logging

import httpx

from realty_identity.exceptions import TransportError

logger = logging.getLogger(__name__)


class HttpNotifier:
    def __init__(
        self,
        email_url: str,
        sms_url: str,
        sender: str,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.email_url = email_url
        self.sms_url = sms_url
        self.sender = sender
        self._timeout = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _post(self, channel: str, url: str, payload: dict) -> None:
        if not url:
            raise TransportError(channel, f"No {channel} gateway configured")
        client = await self._get_client()
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(channel, f"{channel} gateway returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(channel, f"{channel} gateway unreachable: {exc}") from exc

    async def send_email(self, to: str, subject: str, body: str) -> None:
        await self._post("email", self.email_url, {
            "from": self.sender, "to": to, "subject": subject, "text": body,
        })
        logger.info("Email accepted by gateway for %s", to)

    async def send_sms(self, to: str, body: str) -> None:
        await self._post("sms", self.sms_url, {"to": to, "body": body})
        logger.info("SMS accepted by gateway for %s", to)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
