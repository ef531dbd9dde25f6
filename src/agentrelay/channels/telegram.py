"""
Telegram Channel Adapter.

Implements the channel adapter contract over the Telegram Bot API.
Also exposes the polling and file download calls used by the listener
and the media processor.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..domain.entities import (
    Attachment,
    MemberEvent,
    MessageType,
    NormalizedMessage,
    OutboundMessage,
    Participant,
)
from ..domain.schemas import BaseChannelConfig, TelegramChannelConfig
from ..exceptions import ChannelDeliveryError, UnsupportedPayloadError
from .base import BaseChannelAdapter

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_NAME = "User"


class TelegramAdapter(BaseChannelAdapter):
    """Telegram Bot API adapter.

    Supports:
    - Text, photo, video and document delivery
    - Text, photo, document, voice, audio, video, sticker and location
      inbound payloads
    - Group membership events
    - Long polling (getUpdates) and file downloads (getFile)

    Usage:
        adapter = TelegramAdapter(httpx.AsyncClient())
        config = channel.config.with_decrypted_secrets(secret_store.decrypt)

        normalized = await adapter.receive_message(config, update)
        message_id = await adapter.send_message(
            config, normalized.external_channel_id, OutboundMessage(text="Hi")
        )

    Architecture:
        - One shared httpx client for every bot; the token is part of
          each request URL and never stored on the adapter
        - Error messages carry the API method name, never the URL
    """

    channel_type = "telegram"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        """Initialize the adapter.

        Args:
            http_client: Shared client; one is created if omitted
            timeout: Default request timeout in seconds
        """
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ============================================
    # Bot API plumbing
    # ============================================

    def _config(self, config: BaseChannelConfig) -> TelegramChannelConfig:
        return self._require_config(config, TelegramChannelConfig)

    def _method_url(self, config: TelegramChannelConfig, method: str) -> str:
        return f"{config.api_base_url}/bot{config.bot_token.get_secret_value()}/{method}"

    async def _call(
        self,
        config: BaseChannelConfig,
        method: str,
        payload: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Invoke a Bot API method and return its result.

        Raises:
            ChannelDeliveryError: On transport failure or ok=false
        """
        tg_config = self._config(config)
        kwargs: dict[str, Any] = {"json": payload or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._client.post(self._method_url(tg_config, method), **kwargs)
        except httpx.HTTPError as e:
            # str(e) can include the request URL and with it the token, so the
            # original error is not chained
            raise ChannelDeliveryError(
                f"Telegram {method} failed: {type(e).__name__}",
                channel_type=self.channel_type,
            ) from None

        try:
            data = response.json()
        except ValueError as e:
            raise ChannelDeliveryError(
                f"Telegram {method} returned non-JSON response",
                status_code=response.status_code,
                channel_type=self.channel_type,
                cause=e,
            ) from e

        if not data.get("ok"):
            status = data.get("error_code") or response.status_code
            raise ChannelDeliveryError(
                f"Telegram {method} failed: {data.get('description', 'unknown error')}",
                status_code=status,
                channel_type=self.channel_type,
                recoverable=status == 429 or status >= 500,
            )
        return data.get("result")

    # ============================================
    # Outbound
    # ============================================

    async def send_message(
        self,
        config: BaseChannelConfig,
        recipient_id: str,
        message: OutboundMessage,
    ) -> str:
        """Send text, or the first attachment when there is no text.

        Returns:
            Telegram message id as a string
        """
        self._require_content(message)

        if message.text:
            result = await self._call(
                config, "sendMessage", {"chat_id": recipient_id, "text": message.text}
            )
        else:
            attachment = message.attachments[0]
            if attachment.mime_type.startswith("image/"):
                method, field_name = "sendPhoto", "photo"
            elif attachment.mime_type.startswith("video/"):
                method, field_name = "sendVideo", "video"
            else:
                method, field_name = "sendDocument", "document"
            result = await self._call(
                config, method, {"chat_id": recipient_id, field_name: attachment.url}
            )

        message_id = str(result["message_id"])
        logger.debug(f"Sent Telegram message {message_id} to chat {recipient_id}")
        return message_id

    async def upload_document(
        self,
        config: BaseChannelConfig,
        recipient_id: str,
        url: str,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> str:
        """Send a document by URL. Returns the Telegram file id."""
        payload: dict[str, Any] = {"chat_id": recipient_id, "document": url}
        if file_name:
            payload["caption"] = file_name
        result = await self._call(config, "sendDocument", payload)
        document = result.get("document") or {}
        return str(document.get("file_id") or result["message_id"])

    async def get_metadata(self, config: BaseChannelConfig) -> dict[str, Any]:
        """Report bot health via getMe. Never raises."""
        try:
            bot = await self._call(config, "getMe")
        except Exception as e:
            logger.warning(f"Telegram health check failed: {e}")
            return self._health(False, last_error=str(e))
        return self._health(
            True,
            metadata={
                "bot_id": bot.get("id"),
                "username": bot.get("username"),
                "first_name": bot.get("first_name"),
            },
        )

    # ============================================
    # Inbound
    # ============================================

    @staticmethod
    def extract_message(raw_event: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not isinstance(raw_event, dict):
            return None
        for key in ("message", "edited_message", "channel_post", "edited_channel_post"):
            if isinstance(raw_event.get(key), dict):
                return raw_event[key]
        # Bare Message objects are accepted as well as Updates
        if "chat" in raw_event and "message_id" in raw_event:
            return raw_event
        return None

    async def receive_message(
        self, config: BaseChannelConfig, raw_event: dict[str, Any]
    ) -> NormalizedMessage:
        """Normalize a Telegram Update.

        Raises:
            UnsupportedPayloadError: If the update carries no message or an
                unrecognized message shape
        """
        message = self.extract_message(raw_event)
        if message is None or "chat" not in message:
            raise UnsupportedPayloadError(
                "Telegram update has no message", channel_type=self.channel_type
            )

        message_type, content, attachments = self._parse_content(message)

        chat = message["chat"]
        sender = message.get("from") or message.get("sender_chat") or {}
        author_id = sender.get("id", chat.get("id"))

        metadata: dict[str, Any] = {
            "chat_type": chat.get("type"),
            "date": message.get("date"),
            "edit_date": message.get("edit_date"),
        }
        if chat.get("title"):
            metadata["chat_title"] = chat["title"]
        if "update_id" in raw_event:
            metadata["update_id"] = raw_event["update_id"]

        return NormalizedMessage(
            external_channel_id=str(chat["id"]),
            author_id=str(author_id),
            author_name=self._display_name(sender) or sender.get("title") or DEFAULT_AUTHOR_NAME,
            type=message_type,
            content=content,
            attachments=attachments,
            external_message_id=str(message["message_id"]) if "message_id" in message else None,
            metadata=metadata,
        )

    def _parse_content(
        self, message: dict[str, Any]
    ) -> tuple[MessageType, Optional[str], list[Attachment]]:
        caption = message.get("caption")

        if message.get("text") is not None:
            text = message["text"]
            kind = MessageType.COMMAND if text.startswith("/") else MessageType.TEXT
            return kind, text, []

        if message.get("photo"):
            photo = self._largest_photo(message["photo"])
            return MessageType.IMAGE, caption, [
                Attachment(
                    url=photo["file_id"],
                    mime_type="image/jpeg",
                    size=photo.get("file_size"),
                    width=photo.get("width"),
                    height=photo.get("height"),
                )
            ]

        if message.get("document"):
            doc = message["document"]
            return MessageType.DOCUMENT, caption, [
                Attachment(
                    url=doc["file_id"],
                    mime_type=doc.get("mime_type") or "application/octet-stream",
                    file_name=doc.get("file_name"),
                    size=doc.get("file_size"),
                )
            ]

        for key, kind, default_mime in (
            ("voice", MessageType.VOICE, "audio/ogg"),
            ("audio", MessageType.AUDIO, "audio/mpeg"),
        ):
            if message.get(key):
                media = message[key]
                return kind, caption, [
                    Attachment(
                        url=media["file_id"],
                        mime_type=media.get("mime_type") or default_mime,
                        file_name=media.get("file_name"),
                        size=media.get("file_size"),
                        duration=media.get("duration"),
                    )
                ]

        if message.get("video"):
            video = message["video"]
            return MessageType.VIDEO, caption, [
                Attachment(
                    url=video["file_id"],
                    mime_type=video.get("mime_type") or "video/mp4",
                    file_name=video.get("file_name"),
                    size=video.get("file_size"),
                    width=video.get("width"),
                    height=video.get("height"),
                    duration=video.get("duration"),
                )
            ]

        if message.get("sticker"):
            sticker = message["sticker"]
            return MessageType.STICKER, sticker.get("emoji"), [
                Attachment(
                    url=sticker["file_id"],
                    mime_type="image/webp",
                    width=sticker.get("width"),
                    height=sticker.get("height"),
                )
            ]

        if message.get("location"):
            loc = message["location"]
            return MessageType.LOCATION, f"{loc.get('latitude')},{loc.get('longitude')}", []

        raise UnsupportedPayloadError(
            f"Unsupported Telegram message with keys: {sorted(message.keys())}",
            channel_type=self.channel_type,
        )

    @staticmethod
    def _largest_photo(sizes: list[dict[str, Any]]) -> dict[str, Any]:
        """Pick the highest resolution variant (Telegram lists them ascending)."""
        return max(
            enumerate(sizes),
            key=lambda item: ((item[1].get("width") or 0) * (item[1].get("height") or 0), item[0]),
        )[1]

    def detect_member_event(self, raw_event: dict[str, Any]) -> Optional[MemberEvent]:
        """Return joins/leaves carried by a service message, if any."""
        message = self.extract_message(raw_event)
        if not message or "chat" not in message:
            return None

        joined = [
            Participant(
                external_id=str(member["id"]),
                display_name=self._display_name(member) or DEFAULT_AUTHOR_NAME,
            )
            for member in message.get("new_chat_members") or []
        ]
        left_member = message.get("left_chat_member")
        left = [str(left_member["id"])] if left_member else []

        if not joined and not left:
            return None
        return MemberEvent(
            external_channel_id=str(message["chat"]["id"]),
            joined=joined,
            left=left,
        )

    # ============================================
    # Polling and files
    # ============================================

    async def get_updates(
        self, config: BaseChannelConfig, offset: Optional[int], timeout: int
    ) -> list[dict[str, Any]]:
        """Long-poll for updates newer than offset."""
        payload: dict[str, Any] = {"timeout": timeout}
        if offset is not None:
            payload["offset"] = offset
        return await self._call(config, "getUpdates", payload, timeout=timeout + 10) or []

    async def download_file(self, config: BaseChannelConfig, file_id: str) -> bytes:
        """Resolve a file id via getFile and download its bytes."""
        tg_config = self._config(config)
        file_info = await self._call(config, "getFile", {"file_id": file_id})
        file_path = file_info.get("file_path")
        if not file_path:
            raise ChannelDeliveryError(
                f"Telegram file {file_id} has no download path",
                channel_type=self.channel_type,
                recoverable=False,
            )
        url = (
            f"{tg_config.api_base_url}/file/bot"
            f"{tg_config.bot_token.get_secret_value()}/{file_path}"
        )
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(
                f"Telegram file download failed: {type(e).__name__}",
                channel_type=self.channel_type,
            ) from None
        return response.content
