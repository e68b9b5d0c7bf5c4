from typing import Callable, Optional

import httpx

from salesbot.logging_config import get_logger
from salesbot.services.settings_service import WhatsAppCredentials

logger = get_logger("whatsapp_service")


class DispatchError(Exception):
    """Outbound send did not reach the messaging platform."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class WhatsAppClient:
    """WhatsApp Cloud API (Graph API) client."""

    def __init__(
        self,
        credentials: Callable[[], WhatsAppCredentials],
        *,
        graph_base_url: str = "https://graph.facebook.com",
        api_version: str = "v17.0",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._credentials = credentials
        self.graph_base_url = graph_base_url.rstrip("/")
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self._credentials().can_send

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def _messages_url(self, phone_number_id: str) -> str:
        return f"{self.graph_base_url}/{self.api_version}/{phone_number_id}/messages"

    async def send_text(self, to: str, body: str) -> Optional[str]:
        return await self._send(to, {"type": "text", "text": {"body": body}})

    async def send_image(self, to: str, link: str, caption: Optional[str] = None) -> Optional[str]:
        image: dict = {"link": link}
        if caption:
            image["caption"] = caption
        return await self._send(to, {"type": "image", "image": image})

    async def _send(self, to: str, payload: dict) -> Optional[str]:
        """Send one message. Returns the platform message id; raises DispatchError on failure."""
        creds = self._credentials()
        if not creds.can_send:
            raise DispatchError("WhatsApp transport is not configured (access token / phone number id)")

        body = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, **payload}
        try:
            async with self._client() as client:
                response = await client.post(
                    self._messages_url(creds.phone_number_id),
                    headers={"Authorization": f"Bearer {creds.access_token}"},
                    json=body,
                )
        except httpx.HTTPError as exc:
            logger.error(f"Error sending WhatsApp message: {exc}", extra={"context": {"to": to}})
            raise DispatchError(f"WhatsApp send failed: {exc}") from exc

        logger.info(
            f"WhatsApp response: status={response.status_code}, to={to}, type={payload['type']}",
        )
        if response.status_code >= 300:
            raise DispatchError(
                f"WhatsApp send failed: {response.status_code} - {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            data = response.json() or {}
        except ValueError:
            data = {}
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def mark_as_read(self, message_id: str) -> bool:
        """Best effort; never raises."""
        creds = self._credentials()
        if not creds.can_send:
            return False
        try:
            async with self._client() as client:
                response = await client.post(
                    self._messages_url(creds.phone_number_id),
                    headers={"Authorization": f"Bearer {creds.access_token}"},
                    json={"messaging_product": "whatsapp", "status": "read", "message_id": message_id},
                )
            return response.status_code < 300
        except httpx.HTTPError as exc:
            logger.warning(f"Read mark failed: {exc}")
            return False

    async def download_media(self, media_id: str) -> Optional[tuple[bytes, str]]:
        """Resolve a media id to its URL and fetch the bytes. Returns (content, mime_type) or None."""
        creds = self._credentials()
        if not creds.access_token:
            return None
        headers = {"Authorization": f"Bearer {creds.access_token}"}
        try:
            async with self._client() as client:
                meta = await client.get(f"{self.graph_base_url}/{self.api_version}/{media_id}", headers=headers)
                meta.raise_for_status()
                try:
                    media_url = (meta.json() or {}).get("url")
                except ValueError:
                    media_url = None
                if not media_url:
                    logger.warning(f"Media {media_id} has no download url")
                    return None
                media = await client.get(media_url, headers=headers)
                media.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(f"Image download failed: {exc}", extra={"context": {"media_id": media_id}})
            return None

        mime_type = media.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return media.content, mime_type

    async def verify_credentials(self, access_token: str, phone_number_id: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.graph_base_url}/{self.api_version}/{phone_number_id}",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning(f"Credential check failed: {exc}")
            return False
