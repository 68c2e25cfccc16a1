"""Sink → Source routing.

An operator message posted inside a conversation topic is converted to a
Source message and sent to that conversation. Outcome markers are Telegram
reactions on the operator's message: 👍 sent, 👎 failed, 🙊 blocked by a
filter. Markers only ever touch the Sink side.
"""

from __future__ import annotations

import logging
from typing import Any, Final

from ..config import BridgeConfig
from ..media import MediaPipeline
from ..sink.api import TelegramBotApi
from ..sink.messages import (
    SinkContentKind,
    classify_sink_message,
    extract_reply_to_message_id,
    extract_sender_id,
    extract_thread_id,
    has_spoiler,
    largest_photo,
)
from ..source.messages import CALL_LOG_JID, STATUS_JID
from ..source.protocol import SourceClient
from ..storage.mappings import MappingStore
from .auth import OperatorAuth
from .auxiliary import AuxiliaryFlows
from .presence import PresenceCoordinator, ReadReceiptQueue

logger = logging.getLogger(__name__)

ACCESS_DENIED_TEXT: Final[str] = "🔒 Access denied. Use /password <password> to authenticate."
SPOILER_HEADER: Final[str] = "🙈 Spoiler"
REACTION_SENT: Final[str] = "👍"
REACTION_FAILED: Final[str] = "👎"
REACTION_FILTERED: Final[str] = "🙊"


def wrap_spoiler(body: str) -> str:
    return f"{SPOILER_HEADER}\n||{body}||"


def _file_id(message: dict[str, Any], kind: SinkContentKind) -> str | None:
    if kind == "photo":
        photo = largest_photo(message)
        return photo.get("file_id") if photo else None
    obj = message.get(kind)
    file_id = obj.get("file_id") if isinstance(obj, dict) else None
    return file_id if isinstance(file_id, str) else None


def _mime(message: dict[str, Any], kind: str, default: str) -> str:
    obj = message.get(kind)
    mime = obj.get("mime_type") if isinstance(obj, dict) else None
    return mime if isinstance(mime, str) and mime else default


def contact_vcard(contact: dict[str, Any]) -> str:
    name = " ".join(
        part for part in (contact.get("first_name"), contact.get("last_name")) if part
    ) or "Contact"
    phone = str(contact.get("phone_number") or "")
    digits = phone.lstrip("+")
    return "\n".join(
        [
            "BEGIN:VCARD",
            "VERSION:3.0",
            f"FN:{name}",
            f"TEL;type=CELL;type=VOICE;waid={digits}:{phone}",
            "END:VCARD",
        ]
    )


class OutboundRouter:
    def __init__(
        self,
        *,
        store: MappingStore,
        sink: TelegramBotApi,
        source: SourceClient,
        chat_id: int,
        auth: OperatorAuth,
        presence: PresenceCoordinator,
        receipts: ReadReceiptQueue,
        media: MediaPipeline,
        auxiliary: AuxiliaryFlows,
        config: BridgeConfig,
    ) -> None:
        self.store = store
        self.sink = sink
        self.source = source
        self.chat_id = chat_id
        self.auth = auth
        self.presence = presence
        self.receipts = receipts
        self.media = media
        self.auxiliary = auxiliary
        self.config = config

    async def route_outbound(self, message: dict[str, Any]) -> bool:
        """Forward one operator message. Returns whether it reached the Source."""

        try:
            return await self._route(message)
        except Exception:
            logger.exception("Outbound message %s failed", message.get("message_id"))
            await self.react(message, REACTION_FAILED)
            return False

    async def _route(self, message: dict[str, Any]) -> bool:
        thread_id = extract_thread_id(message)
        if not self.auth.is_authenticated(extract_sender_id(message)):
            await self.reply(message, ACCESS_DENIED_TEXT)
            return False
        if thread_id is None:
            return False

        jid = self.store.conversation_for_topic(thread_id)
        if jid is None:
            logger.warning("No conversation mapped to topic %s", thread_id)
            return False

        if jid == STATUS_JID:
            reply_id = extract_reply_to_message_id(message)
            ref = self.auxiliary.status_reference(reply_id) if reply_id is not None else None
            if ref is None:
                logger.info("Ignoring message in status topic that is not a status reply")
                return False
            return await self.auxiliary.handle_status_reply(message, ref)
        if jid == CALL_LOG_JID:
            return False

        kind = classify_sink_message(message)
        if kind is None:
            logger.debug("Unsupported Telegram message in topic %s", thread_id)
            return False

        if kind == "text" and self.store.is_filtered(message.get("text") or ""):
            logger.info("Blocked filtered message to %s", jid)
            await self.react(message, REACTION_FILTERED)
            return False

        await self.presence.emulate_typing(jid)
        try:
            content = await self.build_content(message, kind)
            sent = await self.source.send_message(jid, content)
        except Exception as e:
            logger.error("Sending %s to %s failed: %s", kind, jid, e)
            await self.react(message, REACTION_FAILED)
            return False

        await self.receipts.flush(jid)
        await self.store.touch(jid)
        key = sent.get("key") if isinstance(sent, dict) else None
        if isinstance(key, dict) and key.get("id"):
            await self.react(message, REACTION_SENT)
        return True

    async def build_content(self, message: dict[str, Any], kind: SinkContentKind) -> dict[str, Any]:
        """Convert a Telegram message into a Source send payload."""

        spoiler = has_spoiler(message)
        caption = message.get("caption")
        if isinstance(caption, str) and caption and spoiler:
            caption = wrap_spoiler(caption)
        caption = caption if isinstance(caption, str) and caption else None

        match kind:
            case "text":
                body = message.get("text") or ""
                return {"text": wrap_spoiler(body) if spoiler else body}
            case "location":
                location = message["location"]
                return {
                    "location": {
                        "degreesLatitude": location.get("latitude"),
                        "degreesLongitude": location.get("longitude"),
                    }
                }
            case "contact":
                contact = message["contact"]
                vcard = contact.get("vcard") or contact_vcard(contact)
                name = contact.get("first_name") or "Contact"
                return {"contacts": {"displayName": name, "contacts": [{"vcard": vcard}]}}

        file_id = _file_id(message, kind)
        if file_id is None:
            raise ValueError(f"Telegram {kind} message has no file_id")
        data = await self.media.download_sink_file(file_id)

        match kind:
            case "photo":
                return {"image": data, "caption": caption}
            case "video":
                return {"video": data, "caption": caption, "mimetype": _mime(message, kind, "video/mp4")}
            case "animation":
                return {"video": data, "caption": caption, "gifPlayback": True}
            case "video_note":
                return {"video": data, "ptv": True}
            case "voice":
                return {"audio": data, "ptt": True, "mimetype": "audio/ogg; codecs=opus"}
            case "audio":
                return {"audio": data, "mimetype": _mime(message, kind, "audio/mpeg")}
            case "document":
                document = message["document"]
                return {
                    "document": data,
                    "fileName": document.get("file_name") or "document",
                    "mimetype": _mime(message, kind, "application/octet-stream"),
                    "caption": caption,
                }
            case "sticker":
                return {"sticker": data}
        raise ValueError(f"Unsupported Telegram content kind: {kind}")

    async def react(self, message: dict[str, Any], emoji: str) -> None:
        message_id = message.get("message_id")
        if not isinstance(message_id, int):
            return
        try:
            await self.sink.set_message_reaction(
                chat_id=self.chat_id, message_id=message_id, emoji=emoji
            )
        except Exception as e:
            logger.debug("Reaction %s on %s failed: %s", emoji, message_id, e)

    async def reply(self, message: dict[str, Any], text: str) -> None:
        message_id = message.get("message_id")
        try:
            await self.sink.send_message(
                chat_id=self.chat_id,
                text=text,
                message_thread_id=extract_thread_id(message),
                reply_to_message_id=message_id if isinstance(message_id, int) else None,
            )
        except Exception as e:
            logger.warning("Reply to %s failed: %s", message_id, e)
