"""Attachment processing for context building."""

from .processor import MAX_DOCUMENT_CHARS, MediaProcessor

__all__ = ["MAX_DOCUMENT_CHARS", "MediaProcessor"]
