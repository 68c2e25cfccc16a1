"""Extraction and classification helpers for WhatsApp message dicts.

Wrapper messages (view-once, ephemeral, document-with-caption) are unwrapped
before classification. Classification is a strict priority list: the first
matching content key wins, so each message maps to exactly one forwarder.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Literal

STATUS_JID: Final[str] = "status@broadcast"
CALL_LOG_JID: Final[str] = "call@broadcast"
GROUP_SUFFIX: Final[str] = "@g.us"
USER_SUFFIX: Final[str] = "@s.whatsapp.net"

type SourceContentKind = Literal[
    "sticker",
    "video_note",
    "video",
    "image",
    "audio",
    "document",
    "location",
    "contact",
    "text",
]

_WRAPPER_KEYS: Final[tuple[str, ...]] = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)
_VIEW_ONCE_KEYS: Final[frozenset[str]] = frozenset(
    {"viewOnceMessage", "viewOnceMessageV2", "viewOnceMessageV2Extension"}
)
_KIND_PRIORITY: Final[tuple[tuple[str, SourceContentKind], ...]] = (
    ("stickerMessage", "sticker"),
    ("ptvMessage", "video_note"),
    ("videoMessage", "video"),
    ("imageMessage", "image"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
    ("locationMessage", "location"),
    ("liveLocationMessage", "location"),
    ("contactMessage", "contact"),
    ("contactsArrayMessage", "contact"),
    ("conversation", "text"),
    ("extendedTextMessage", "text"),
)
# Media type names understood by the session's download primitive.
MEDIA_DOWNLOAD_TYPES: Final[dict[SourceContentKind, str]] = {
    "sticker": "sticker",
    "video_note": "video",
    "video": "video",
    "image": "image",
    "audio": "audio",
    "document": "document",
}


@dataclass(frozen=True, slots=True)
class ClassifiedContent:
    kind: SourceContentKind
    payload: Any
    view_once: bool = False


def is_group_jid(jid: str) -> bool:
    return jid.endswith(GROUP_SUFFIX)


def user_jid_for_phone(phone: str) -> str:
    return f"{phone}{USER_SUFFIX}"


def normalize_jid(jid: str) -> str:
    """Strip the device suffix (`123:4@s.whatsapp.net` -> `123@s.whatsapp.net`)."""

    user, sep, server = jid.partition("@")
    if not sep:
        return jid
    return f"{user.split(':', 1)[0]}@{server}"


def _key(message: dict[str, Any]) -> dict[str, Any]:
    key = message.get("key")
    return key if isinstance(key, dict) else {}


def extract_key(message: dict[str, Any]) -> dict[str, Any] | None:
    key = _key(message)
    return dict(key) if key else None


def extract_remote_jid(message: dict[str, Any]) -> str | None:
    jid = _key(message).get("remoteJid")
    return jid if isinstance(jid, str) and jid else None


def extract_message_id(message: dict[str, Any]) -> str | None:
    message_id = _key(message).get("id")
    return message_id if isinstance(message_id, str) and message_id else None


def extract_from_me(message: dict[str, Any]) -> bool:
    return _key(message).get("fromMe") is True


def extract_sender_jid(message: dict[str, Any]) -> str | None:
    """Return the author: the group participant, else the conversation itself."""

    key = _key(message)
    participant = key.get("participant")
    if isinstance(participant, str) and participant:
        return normalize_jid(participant)
    remote = key.get("remoteJid")
    return normalize_jid(remote) if isinstance(remote, str) and remote else None


def extract_push_name(message: dict[str, Any]) -> str | None:
    name = message.get("pushName")
    return name.strip() if isinstance(name, str) and name.strip() else None


def unwrap_content(content: Any) -> tuple[dict[str, Any], bool]:
    """Peel wrapper messages; returns `(inner_content, was_view_once)`."""

    view_once = False
    current = content if isinstance(content, dict) else {}
    # Wrappers nest at most a few levels (e.g. ephemeral → view-once → image).
    for _ in range(len(_WRAPPER_KEYS)):
        for wrapper in _WRAPPER_KEYS:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                view_once = view_once or wrapper in _VIEW_ONCE_KEYS
                current = inner["message"]
                break
        else:
            break
    return current, view_once


def classify_source_content(content: Any) -> ClassifiedContent | None:
    inner, view_once = unwrap_content(content)
    for key, kind in _KIND_PRIORITY:
        payload = inner.get(key)
        if payload:
            return ClassifiedContent(kind=kind, payload=payload, view_once=view_once)
    return None


def extract_text(content: Any) -> str | None:
    """Return the text body or media caption of a message content dict."""

    inner, _view_once = unwrap_content(content)
    conversation = inner.get("conversation")
    if isinstance(conversation, str) and conversation:
        return conversation
    for key in (
        "extendedTextMessage",
        "imageMessage",
        "videoMessage",
        "ptvMessage",
        "documentMessage",
    ):
        payload = inner.get(key)
        if not isinstance(payload, dict):
            continue
        value = payload.get("text") if key == "extendedTextMessage" else payload.get("caption")
        if isinstance(value, str) and value:
            return value
    return None
