"""Helpers for Telegram `Message` dicts received from the forum group.

Classification is a strict priority list: the first matching key wins, so each
message maps to exactly one outbound forwarder.
"""

from __future__ import annotations

from typing import Any, Final, Literal

type SinkContentKind = Literal[
    "photo",
    "animation",
    "video",
    "video_note",
    "voice",
    "audio",
    "document",
    "sticker",
    "location",
    "contact",
    "text",
]

# `animation` messages also carry a `document` key, so it must be checked first.
_KIND_PRIORITY: Final[tuple[tuple[str, SinkContentKind], ...]] = (
    ("photo", "photo"),
    ("animation", "animation"),
    ("video", "video"),
    ("video_note", "video_note"),
    ("voice", "voice"),
    ("audio", "audio"),
    ("document", "document"),
    ("sticker", "sticker"),
    ("location", "location"),
    ("contact", "contact"),
    ("text", "text"),
)


def classify_sink_message(message: dict[str, Any]) -> SinkContentKind | None:
    """Return the content kind of a Telegram message, or `None` if unsupported."""

    for key, kind in _KIND_PRIORITY:
        if message.get(key):
            return kind
    return None


def has_spoiler(message: dict[str, Any]) -> bool:
    for key in ("entities", "caption_entities"):
        entities = message.get(key)
        if not isinstance(entities, list):
            continue
        if any(
            isinstance(entity, dict) and entity.get("type") == "spoiler"
            for entity in entities
        ):
            return True
    return False


def extract_sender_id(message: dict[str, Any]) -> int | None:
    sender = message.get("from")
    if isinstance(sender, dict) and isinstance(sender.get("id"), int):
        return sender["id"]
    return None


def extract_thread_id(message: dict[str, Any]) -> int | None:
    """Return the forum topic id, ignoring plain replies in the General topic."""

    if not message.get("is_topic_message"):
        return None
    thread_id = message.get("message_thread_id")
    return thread_id if isinstance(thread_id, int) else None


def extract_reply_to_message_id(message: dict[str, Any]) -> int | None:
    reply = message.get("reply_to_message")
    if not isinstance(reply, dict):
        return None
    # In forum topics every message "replies" to the topic's creation service
    # message; that one carries `forum_topic_created`.
    if reply.get("forum_topic_created"):
        return None
    message_id = reply.get("message_id")
    return message_id if isinstance(message_id, int) else None


def largest_photo(message: dict[str, Any]) -> dict[str, Any] | None:
    sizes = message.get("photo")
    if not isinstance(sizes, list):
        return None
    candidates = [s for s in sizes if isinstance(s, dict) and s.get("file_id")]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda s: (s.get("file_size") or 0, (s.get("width") or 0) * (s.get("height") or 0)),
    )
