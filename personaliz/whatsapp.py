"""
WhatsApp Business Cloud API delivery channel.

  POST /{phone_number_id}/messages   - send video / text
  GET  /{phone_number_id}            - health check and phone number info

Webhook subscription uses the verify-token handshake: Meta calls
GET /webhook?hub.mode=subscribe&hub.verify_token=...&hub.challenge=...
and expects the challenge echoed back.
"""

import logging
import re
from typing import Optional
from uuid import uuid4

import httpx

from .config import ProviderConfig
from .errors import DeliveryRejectedError, ProviderTransportError

logger = logging.getLogger(__name__)

PROVIDER = "WhatsApp"
DEFAULT_CAPTION = "Your personalized video is ready!"


def format_phone_number(phone_number: str) -> str:
    """Digits only, with a US country code added to bare 10-digit numbers."""
    cleaned = re.sub(r"\D", "", phone_number)
    if len(cleaned) == 10:
        cleaned = "1" + cleaned
    return cleaned


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: str,
) -> Optional[str]:
    """Return the challenge to echo if the handshake is valid, else None."""
    if mode == "subscribe" and token and token == expected_token:
        return challenge or ""
    return None


class WhatsAppClient:
    """Stateless Graph API client; one instance per process."""

    def __init__(self, config: ProviderConfig, phone_number_id: str):
        self.config = config
        self.phone_number_id = phone_number_id
        if not phone_number_id:
            logger.warning("WHATSAPP_PHONE_NUMBER_ID not configured")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, suffix: str = "") -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.phone_number_id}{suffix}"

    async def _post_message(self, payload: dict) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(self._url("/messages"), headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise ProviderTransportError(PROVIDER, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
            except ValueError:
                error = {}
            message = error.get("message") or response.text[:300] or f"HTTP {response.status_code}"
            logger.error(
                f"WhatsApp API error: code={error.get('code')} status={response.status_code} message={message}"
            )
            # 4xx means the channel looked at the message and said no
            if response.status_code < 500 and response.status_code != 429:
                raise DeliveryRejectedError(PROVIDER, message, response.status_code)
            raise ProviderTransportError(PROVIDER, message, response.status_code)

        messages = response.json().get("messages") or []
        if not messages or not messages[0].get("id"):
            raise ProviderTransportError(PROVIDER, f"No message id in response: {response.text[:200]}")
        return messages[0]["id"]

    async def send_media(self, phone_number: str, video_url: str, caption: Optional[str] = None) -> str:
        """Send a video message. Returns the channel's message id."""
        to = format_phone_number(phone_number)
        message_id = await self._post_message({
            "messaging_product": "whatsapp",
            "to": to,
            "type": "video",
            "video": {
                "link": video_url,
                "caption": caption or DEFAULT_CAPTION,
            },
        })
        logger.info(f"WhatsApp video sent: message_id={message_id} to={to}")
        return message_id

    async def send_text(self, phone_number: str, message: str) -> str:
        return await self._post_message({
            "messaging_product": "whatsapp",
            "to": format_phone_number(phone_number),
            "type": "text",
            "text": {"body": message},
        })

    async def get_phone_number_info(self) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.get(self._url(), headers=self._headers())
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise ProviderTransportError(PROVIDER, f"{type(e).__name__}: {e}") from e

    async def health_check(self) -> bool:
        try:
            await self.get_phone_number_info()
            return True
        except ProviderTransportError as e:
            logger.error(f"WhatsApp health check failed: {e}")
            return False


class MockWhatsAppClient:
    """Offline stand-in used when no WhatsApp credentials are configured."""

    def __init__(self):
        self.sent: list[dict] = []

    async def send_media(self, phone_number: str, video_url: str, caption: Optional[str] = None) -> str:
        message_id = f"mock_msg_{uuid4().hex[:12]}"
        self.sent.append({
            "to": format_phone_number(phone_number),
            "video_url": video_url,
            "caption": caption or DEFAULT_CAPTION,
            "message_id": message_id,
        })
        logger.info(f"Mock WhatsApp video send to {phone_number}: {message_id}")
        return message_id

    async def send_text(self, phone_number: str, message: str) -> str:
        message_id = f"mock_msg_{uuid4().hex[:12]}"
        self.sent.append({"to": format_phone_number(phone_number), "text": message, "message_id": message_id})
        return message_id

    async def get_phone_number_info(self) -> dict:
        return {"id": "mock", "display_phone_number": "mock"}

    async def health_check(self) -> bool:
        return True
