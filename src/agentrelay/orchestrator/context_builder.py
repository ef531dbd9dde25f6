"""
Context Builder.

Assembles the ordered message list sent to the completion provider:
system prompt, then conversation history in chronological order, with
user attachments rendered as multimodal content blocks.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from uuid import UUID

from ..domain.entities import Attachment, AuthorRole, Message, MessageType
from ..domain.ports import IMediaProcessor, IMessageRepository
from ..domain.schemas import DEFAULT_CONTEXT_MESSAGES, BaseChannelConfig

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_NAME = "User"
MISSING_TOOL_RESULT = {"error": "Tool result unavailable", "recoverable": False}

_MEDIA_TYPES = frozenset(
    {
        MessageType.IMAGE,
        MessageType.STICKER,
        MessageType.AUDIO,
        MessageType.VOICE,
        MessageType.VIDEO,
        MessageType.DOCUMENT,
    }
)


def infer_media_type(message_type: MessageType, mime_type: Optional[str]) -> MessageType:
    """Media type of an attachment: the message's own type when it is a
    media type, else derived from the MIME prefix."""
    if message_type in _MEDIA_TYPES:
        return message_type
    mime = mime_type or ""
    if mime.startswith("image/"):
        return MessageType.IMAGE
    if mime.startswith("audio/"):
        return MessageType.AUDIO
    if mime.startswith("video/"):
        return MessageType.VIDEO
    return MessageType.DOCUMENT


class ContextBuilder:
    """Builds provider-format context from persisted messages.

    Usage:
        builder = ContextBuilder(message_repository, media_processor)

        messages = await builder.build_context(
            tenant_id, conversation.id,
            system_prompt=agent.parameters.system_prompt,
            limit=channel.max_context_messages,
            channel_config=decrypted_config,
        )

    Architecture:
        - History is fetched newest first and reversed
        - Agent messages replay their tool-call record followed by one tool
          turn per call, so the provider sees a valid exchange
        - Attachment processing is best effort; a failure drops only that
          attachment
    """

    def __init__(
        self,
        messages: IMessageRepository,
        media: Optional[IMediaProcessor] = None,
    ):
        self.messages = messages
        self.media = media

    async def build_context(
        self,
        tenant_id: str,
        conversation_id: UUID,
        system_prompt: Optional[str] = None,
        limit: int = DEFAULT_CONTEXT_MESSAGES,
        channel_config: Optional[BaseChannelConfig] = None,
    ) -> list[dict[str, Any]]:
        """Assemble the ordered context for a completion call.

        Args:
            tenant_id: Tenant for isolation
            conversation_id: Conversation to read history from
            system_prompt: Prepended as a system turn when set
            limit: Number of most recent messages to include
            channel_config: Decrypted channel config for attachment download

        Returns:
            Provider-format message dicts, oldest first
        """
        context: list[dict[str, Any]] = []
        if system_prompt:
            context.append({"role": "system", "content": system_prompt})

        history = await self.messages.find_by_conversation(tenant_id, conversation_id, limit)
        for message in reversed(history):
            if message.role == AuthorRole.AGENT:
                context.extend(self.render_agent_turns(message))
            elif message.role == AuthorRole.SYSTEM:
                if message.has_text:
                    context.append({"role": "system", "content": message.content})
            else:
                blocks = await self.render_user_blocks(message, channel_config)
                if not blocks:
                    logger.debug(f"Omitting message {message.id} with no renderable content")
                    continue
                context.append({"role": "user", "content": self._collapse(blocks)})

        logger.debug(
            f"Built context for conversation {conversation_id}: "
            f"{len(context)} turns from {len(history)} messages"
        )
        return context

    def render_agent_turns(self, message: Message) -> list[dict[str, Any]]:
        """Assistant turns for one agent message."""
        turns: list[dict[str, Any]] = []
        tool_calls = message.tool_calls
        if tool_calls:
            results = {r.call_id: r for r in message.tool_results}
            turns.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [tc.to_openai_format() for tc in tool_calls],
                }
            )
            for call in tool_calls:
                result = results.get(call.id)
                turns.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": (
                            result.content_as_text()
                            if result is not None
                            else json.dumps(MISSING_TOOL_RESULT)
                        ),
                    }
                )
        if message.has_text:
            turns.append({"role": "assistant", "content": message.content})
        return turns

    async def render_user_blocks(
        self,
        message: Message,
        channel_config: Optional[BaseChannelConfig] = None,
    ) -> list[dict[str, Any]]:
        """Content blocks for one user message: text first, then one block
        per successfully processed attachment."""
        blocks: list[dict[str, Any]] = []
        if message.has_text:
            name = message.author_name or DEFAULT_AUTHOR_NAME
            blocks.append({"type": "text", "text": f"@{name}: {message.content}"})

        for attachment in message.attachments:
            block = await self._render_attachment(message, attachment, channel_config)
            if block is not None:
                blocks.append(block)
        return blocks

    async def _render_attachment(
        self,
        message: Message,
        attachment: Attachment,
        channel_config: Optional[BaseChannelConfig],
    ) -> Optional[dict[str, Any]]:
        if self.media is None:
            return None

        media_type = infer_media_type(message.type, attachment.mime_type)
        try:
            processed = await self.media.process(attachment, media_type, channel_config)
        except Exception as e:
            logger.warning(
                f"Skipping {media_type.value} attachment on message {message.id}: {e}"
            )
            return None

        if processed is None:
            return None
        if processed.inline_image:
            return {"type": "image_url", "image_url": {"url": processed.inline_image}}
        if processed.text is None:
            return None
        if media_type in (MessageType.AUDIO, MessageType.VOICE):
            return {"type": "text", "text": f"[Audio transcription]: {processed.text}"}
        if media_type == MessageType.DOCUMENT:
            name = attachment.file_name or "document"
            return {"type": "text", "text": f"[Document: {name}]\n{processed.text}"}
        return {"type": "text", "text": processed.text}

    @staticmethod
    def _collapse(blocks: list[dict[str, Any]]) -> Any:
        # A lone text block is sent as a plain string
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            return blocks[0]["text"]
        return blocks
