"""WhatsApp (Source) side of the bridge."""

from __future__ import annotations

from .messages import (
    CALL_LOG_JID,
    MEDIA_DOWNLOAD_TYPES,
    STATUS_JID,
    ClassifiedContent,
    SourceContentKind,
    classify_source_content,
    extract_from_me,
    extract_key,
    extract_message_id,
    extract_push_name,
    extract_remote_jid,
    extract_sender_jid,
    extract_text,
    is_group_jid,
    normalize_jid,
    unwrap_content,
    user_jid_for_phone,
)
from .protocol import Presence, SourceClient, SourceEvent, SourceEventKind

__all__ = [
    "CALL_LOG_JID",
    "MEDIA_DOWNLOAD_TYPES",
    "STATUS_JID",
    "ClassifiedContent",
    "Presence",
    "SourceClient",
    "SourceContentKind",
    "SourceEvent",
    "SourceEventKind",
    "classify_source_content",
    "extract_from_me",
    "extract_key",
    "extract_message_id",
    "extract_push_name",
    "extract_remote_jid",
    "extract_sender_jid",
    "extract_text",
    "is_group_jid",
    "normalize_jid",
    "unwrap_content",
    "user_jid_for_phone",
]
