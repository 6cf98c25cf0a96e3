from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096
MAX_MEDIA_BYTES = 16 * 1024 * 1024
TRUNCATION_SUFFIX = "…"


class TransportError(RuntimeError):
    """Raised when the messaging platform cannot be reached or refuses a call."""


class MessageTransport(ABC):
    @abstractmethod
    async def send_text(self, to: str, body: str) -> None:
        ...

    @abstractmethod
    async def mark_as_read(self, message_id: str) -> None:
        """Best-effort read receipt; never raises."""

    @abstractmethod
    async def download_media(self, media_id: str) -> bytes:
        ...

    async def aclose(self) -> None:
        return None


def truncate_body(body: str, limit: int = MAX_TEXT_LENGTH) -> str:
    if len(body) <= limit:
        return body
    return body[: limit - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


class WhatsAppClient(MessageTransport):
    """WhatsApp Cloud API client over the Graph HTTP API."""

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        *,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._phone_number_id = phone_number_id
        self._api_root = f"{base_url.rstrip('/')}/{api_version}"
        self._auth_headers = {"Authorization": f"Bearer {access_token}"}
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppClient":
        return cls(
            settings.meta_access_token or "",
            settings.meta_phone_number_id or "",
            api_version=settings.whatsapp_api_version,
            base_url=settings.graph_base_url,
            timeout=settings.transport_timeout_seconds,
        )

    @property
    def messages_url(self) -> str:
        return f"{self._api_root}/{self._phone_number_id}/messages"

    async def _post_message(self, payload: dict) -> dict:
        response = await self._client.post(self.messages_url, json=payload, headers=self._auth_headers)
        response.raise_for_status()
        return response.json()

    async def send_text(self, to: str, body: str) -> None:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": truncate_body(body)},
        }
        try:
            await self._post_message(payload)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("WhatsApp send to %s failed: %s", to, exc)
            raise TransportError(f"Failed to send message to {to}") from exc
        logger.info("Message sent to %s", to)

    async def mark_as_read(self, message_id: str) -> None:
        payload = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            await self._post_message(payload)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Mark as read failed for %s: %s", message_id, exc)
            return
        logger.debug("Message marked as read: %s", message_id)

    async def download_media(self, media_id: str) -> bytes:
        """Resolve the media URL, then fetch the binary with the same credentials."""
        try:
            info = await self._client.get(f"{self._api_root}/{media_id}", headers=self._auth_headers)
            info.raise_for_status()
            metadata = info.json()
            media_url = metadata.get("url") if isinstance(metadata, dict) else None
            if not media_url:
                raise TransportError(f"Media {media_id} has no download URL")

            declared_size = metadata.get("file_size")
            if isinstance(declared_size, int) and declared_size > MAX_MEDIA_BYTES:
                raise TransportError(f"Media {media_id} exceeds {MAX_MEDIA_BYTES} bytes")

            response = await self._client.get(media_url, headers=self._auth_headers)
            response.raise_for_status()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Media download failed for %s: %s", media_id, exc)
            raise TransportError(f"Failed to download media {media_id}") from exc

        content = response.content
        if len(content) > MAX_MEDIA_BYTES:
            raise TransportError(f"Media {media_id} exceeds {MAX_MEDIA_BYTES} bytes")
        logger.info("Media downloaded: %s (%d bytes)", media_id, len(content))
        return content

    async def aclose(self) -> None:
        await self._client.aclose()
