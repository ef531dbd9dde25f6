"""
Attachment Processor.

Turns attachment references into content a completion model can read:
images become inline base64 data, audio/voice become transcripts,
documents become extracted text. Video is not processed.
"""

from __future__ import annotations

import base64
import io
import logging
from typing import Optional

import httpx
from openai import AsyncOpenAI
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from ..channels.telegram import TelegramAdapter
from ..domain.entities import Attachment, MessageType, ProcessedMedia
from ..domain.ports import IMediaProcessor
from ..domain.schemas import BaseChannelConfig, TelegramChannelConfig
from ..exceptions import ConfigurationError, RelayError

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 4000
TRUNCATION_MARKER = "\n[... truncated]"


class MediaProcessor(IMediaProcessor):
    """Downloads and converts attachments for context building.

    Usage:
        processor = MediaProcessor(telegram_adapter, http_client,
                                   transcription_api_key=key)
        media = await processor.process(attachment, MessageType.VOICE, config)

    Architecture:
        - Platform file ids are resolved through the channel adapter
          (Telegram getFile); plain http(s) URLs are fetched directly
        - Transcription uses OpenAI's audio endpoint with a process-level key
        - Failures raise; the context builder decides to skip
    """

    def __init__(
        self,
        telegram: TelegramAdapter,
        http_client: Optional[httpx.AsyncClient] = None,
        transcription_api_key: Optional[str] = None,
        transcription_model: str = "whisper-1",
    ):
        self.telegram = telegram
        self._http = http_client or httpx.AsyncClient(timeout=60.0)
        self._transcriber = (
            AsyncOpenAI(api_key=transcription_api_key, http_client=self._http)
            if transcription_api_key
            else None
        )
        self.transcription_model = transcription_model

    async def process(
        self,
        attachment: Attachment,
        media_type: MessageType,
        channel_config: Optional[BaseChannelConfig],
    ) -> Optional[ProcessedMedia]:
        if media_type == MessageType.VIDEO:
            logger.debug("Video attachments are not processed")
            return None

        if media_type in (MessageType.IMAGE, MessageType.STICKER):
            data = await self._download(attachment, channel_config)
            encoded = base64.b64encode(data).decode("ascii")
            return ProcessedMedia(
                inline_image=f"data:{attachment.mime_type};base64,{encoded}",
                mime_type=attachment.mime_type,
            )

        if media_type in (MessageType.AUDIO, MessageType.VOICE):
            data = await self._download(attachment, channel_config)
            return ProcessedMedia(text=await self._transcribe(attachment, data))

        if media_type == MessageType.DOCUMENT:
            data = await self._download(attachment, channel_config)
            text = self._extract_text(attachment, data)
            return ProcessedMedia(text=text) if text is not None else None

        return None

    async def _download(
        self, attachment: Attachment, channel_config: Optional[BaseChannelConfig]
    ) -> bytes:
        if attachment.url.startswith(("http://", "https://")):
            response = await self._http.get(attachment.url)
            response.raise_for_status()
            return response.content

        if isinstance(channel_config, TelegramChannelConfig):
            return await self.telegram.download_file(channel_config, attachment.url)

        raise ConfigurationError(
            "No channel credentials available to fetch attachment",
            details={"mime_type": attachment.mime_type},
        )

    async def _transcribe(self, attachment: Attachment, data: bytes) -> str:
        if self._transcriber is None:
            raise ConfigurationError(
                "Audio transcription requires OPENAI_API_KEY", missing_keys=["OPENAI_API_KEY"]
            )
        file_name = attachment.file_name or f"audio.{_extension(attachment.mime_type, 'ogg')}"
        transcription = await self._transcriber.audio.transcriptions.create(
            model=self.transcription_model,
            file=(file_name, data, attachment.mime_type),
        )
        return transcription.text

    def _extract_text(self, attachment: Attachment, data: bytes) -> Optional[str]:
        mime = attachment.mime_type or ""
        if mime == "application/pdf" or (attachment.file_name or "").lower().endswith(".pdf"):
            try:
                reader = PdfReader(io.BytesIO(data))
                text = "\n".join(page.extract_text() or "" for page in reader.pages)
            except PdfReadError as e:
                raise RelayError(f"Failed to read PDF: {e}", code="DOCUMENT_UNREADABLE", cause=e) from e
        elif mime.startswith("text/") or mime in ("application/json", "application/xml"):
            text = data.decode("utf-8", errors="replace")
        else:
            logger.info(f"Unsupported document type for extraction: {mime}")
            return None

        text = text.strip()
        if len(text) > MAX_DOCUMENT_CHARS:
            text = text[:MAX_DOCUMENT_CHARS] + TRUNCATION_MARKER
        return text


def _extension(mime_type: str, default: str) -> str:
    subtype = (mime_type or "").split("/")[-1]
    return subtype or default
