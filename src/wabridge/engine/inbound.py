"""Source → Sink routing.

`InboundRouter.route_inbound()` never raises: each message either lands in its
conversation's topic or is logged and dropped. Every Sink call goes through
`TopicManager.with_topic_healing()`, so a deleted topic is recreated and the
send retried once.

The Source may deliver a message more than once (reconnects, history
replays). A `(conversation, message id)` pair is claimed for
`message_dedupe_seconds` when routing starts and released again if nothing
was delivered, so a redelivery inside the window is dropped while a failed
attempt can still be retried.
"""

from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Final

from ..config import BridgeConfig
from ..media import MediaError, MediaPipeline
from ..sink.api import TelegramBotApi
from ..source.messages import (
    STATUS_JID,
    ClassifiedContent,
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
)
from ..storage.mappings import MappingStore
from .presence import ReadReceiptQueue
from .topics import TopicManager

logger = logging.getLogger(__name__)

OWN_MESSAGE_TAG: Final[str] = "📤 "
VIEW_ONCE_TAG: Final[str] = "👁️ View once"
_VCARD_WAID_RE: Final[re.Pattern[str]] = re.compile(r"waid=(\d+)")
_VCARD_TEL_RE: Final[re.Pattern[str]] = re.compile(r"^TEL[^:]*:(.+)$", re.MULTILINE)
SEEN_MESSAGES_LIMIT: Final[int] = 5000


def sender_prefix(name: str) -> str:
    return f"👤 {name}:"


def decorate_body(
    body: str | None,
    *,
    own: bool = False,
    sender_name: str | None = None,
    view_once: bool = False,
) -> str | None:
    """Apply the own-message tag, group sender line and view-once marker."""

    lines: list[str] = []
    if sender_name:
        lines.append(sender_prefix(sender_name))
    if view_once:
        lines.append(VIEW_ONCE_TAG)
    if body:
        lines.append(body)
    text = "\n".join(lines) if lines else None
    if own:
        return OWN_MESSAGE_TAG + (text or "")
    return text


def vcard_phone(vcard: str | None) -> str | None:
    if not vcard:
        return None
    match = _VCARD_WAID_RE.search(vcard)
    if match:
        return f"+{match.group(1)}"
    match = _VCARD_TEL_RE.search(vcard)
    if match:
        return match.group(1).strip()
    return None


class ContentForwarder:
    """Sends one classified Source message into a topic."""

    def __init__(
        self,
        *,
        topics: TopicManager,
        media: MediaPipeline,
        sink: TelegramBotApi,
        chat_id: int,
    ) -> None:
        self.topics = topics
        self.media = media
        self.sink = sink
        self.chat_id = chat_id

    async def forward(
        self,
        jid: str,
        content: ClassifiedContent,
        body: str | None,
        *,
        context_hint: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the Sink message, or `None` when nothing was sent."""

        match content.kind:
            case "text":
                return await self._forward_text(jid, body, context_hint)
            case "location":
                return await self._forward_location(jid, content.payload, body, context_hint)
            case "contact":
                return await self._forward_contact(jid, content.payload, body, context_hint)
        return await self._forward_media(jid, content, body, context_hint)

    async def _forward_text(
        self, jid: str, body: str | None, context_hint: str | None
    ) -> dict[str, Any] | None:
        if not body:
            return None

        async def send(topic_id: int) -> dict[str, Any]:
            return await self.sink.send_message(
                chat_id=self.chat_id, text=body, message_thread_id=topic_id
            )

        return await self.topics.with_topic_healing(jid, send, context_hint=context_hint)

    async def _forward_location(
        self,
        jid: str,
        payload: dict[str, Any],
        body: str | None,
        context_hint: str | None,
    ) -> dict[str, Any] | None:
        latitude = payload.get("degreesLatitude")
        longitude = payload.get("degreesLongitude")
        if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
            logger.warning("Location message for %s has no coordinates", jid)
            return None

        async def send(topic_id: int) -> dict[str, Any]:
            if body:
                await self.sink.send_message(
                    chat_id=self.chat_id, text=body, message_thread_id=topic_id
                )
            return await self.sink.send_location(
                chat_id=self.chat_id,
                latitude=float(latitude),
                longitude=float(longitude),
                message_thread_id=topic_id,
            )

        return await self.topics.with_topic_healing(jid, send, context_hint=context_hint)

    async def _forward_contact(
        self,
        jid: str,
        payload: dict[str, Any],
        body: str | None,
        context_hint: str | None,
    ) -> dict[str, Any] | None:
        cards = payload.get("contacts") if isinstance(payload.get("contacts"), list) else [payload]
        cards = [card for card in cards if isinstance(card, dict)]
        if not cards:
            return None

        async def send(topic_id: int) -> dict[str, Any] | None:
            if body:
                await self.sink.send_message(
                    chat_id=self.chat_id, text=body, message_thread_id=topic_id
                )
            last: dict[str, Any] | None = None
            for card in cards:
                name = card.get("displayName") or "Contact"
                phone = vcard_phone(card.get("vcard"))
                if phone is None:
                    last = await self.sink.send_message(
                        chat_id=self.chat_id,
                        text=f"📇 {name}",
                        message_thread_id=topic_id,
                    )
                    continue
                last = await self.sink.send_contact(
                    chat_id=self.chat_id,
                    phone_number=phone,
                    first_name=str(name),
                    vcard=card.get("vcard"),
                    message_thread_id=topic_id,
                )
            return last

        return await self.topics.with_topic_healing(jid, send, context_hint=context_hint)

    async def _forward_media(
        self,
        jid: str,
        content: ClassifiedContent,
        body: str | None,
        context_hint: str | None,
    ) -> dict[str, Any] | None:
        payload = content.payload if isinstance(content.payload, dict) else {}
        data = await self.media.download_source_media(payload, content.kind)
        prepared = await self.media.prepare_for_sink(content.kind, payload, data, caption=body)
        async with self.media.scratch_file(prepared) as path:

            async def send(topic_id: int) -> dict[str, Any]:
                return await self.media.upload(prepared, path, topic_id=topic_id)

            return await self.topics.with_topic_healing(jid, send, context_hint=context_hint)


class InboundRouter:
    def __init__(
        self,
        *,
        store: MappingStore,
        forwarder: ContentForwarder,
        receipts: ReadReceiptQueue,
        config: BridgeConfig,
        status_handler: Callable[[dict[str, Any]], Awaitable[bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.forwarder = forwarder
        self.receipts = receipts
        self.config = config
        # `AuxiliaryFlows.mirror_status`; wired by the bridge facade.
        self.status_handler = status_handler
        self._clock = clock
        self._seen: OrderedDict[tuple[str, str], float] = OrderedDict()

    def _already_seen(self, pair: tuple[str, str]) -> bool:
        """Return true for a redelivery; otherwise claim `pair` for the window."""

        now = self._clock()
        window = self.config.message_dedupe_seconds
        while self._seen:
            oldest, seen_at = next(iter(self._seen.items()))
            if now - seen_at < window and len(self._seen) < SEEN_MESSAGES_LIMIT:
                break
            del self._seen[oldest]
        if pair in self._seen:
            return True
        self._seen[pair] = now
        return False

    async def route_inbound(self, message: dict[str, Any], text: str | None = None) -> bool:
        """Forward one Source message. Returns whether anything was delivered."""

        remote = extract_remote_jid(message)
        message_id = extract_message_id(message)
        claimed = (normalize_jid(remote), message_id) if remote and message_id else None
        if claimed is not None and self._already_seen(claimed):
            logger.debug("Skipping redelivered message %s from %s", message_id, remote)
            return False
        delivered = False
        try:
            delivered = await self._route(message, text)
        except MediaError as e:
            logger.warning("Dropped inbound media from %s: %s", remote, e)
        except Exception:
            logger.exception("Inbound message from %s failed", remote)
        finally:
            if not delivered and claimed is not None:
                self._seen.pop(claimed, None)
        return delivered

    async def _route(self, message: dict[str, Any], text: str | None) -> bool:
        remote = extract_remote_jid(message)
        if remote is None:
            return False
        jid = normalize_jid(remote)

        if jid == STATUS_JID:
            if self.status_handler is None:
                return False
            return await self.status_handler(message)

        own = extract_from_me(message)
        if own and not self.config.mirror_own_messages:
            return False

        sender = extract_sender_jid(message) or jid
        push_name = extract_push_name(message)
        if not own:
            await self.store.record_participant(sender, push_name)

        group = is_group_jid(jid)
        context_hint = None if group or own else push_name
        if await self.forwarder.topics.ensure_topic(jid, context_hint) is None:
            logger.error("No topic available for %s; dropping message", jid)
            return False

        content = message.get("message")
        classified = classify_source_content(content)
        if classified is None:
            logger.debug("Unsupported message content from %s", jid)
            return False

        sender_name = None
        if group and not own and sender != jid:
            sender_name = self.store.display_name(sender)
        body = text if text is not None else extract_text(content)
        decorated = decorate_body(
            body, own=own, sender_name=sender_name, view_once=classified.view_once
        )

        sent = await self.forwarder.forward(
            jid,
            classified,
            decorated,
            context_hint=context_hint,
        )
        if sent is None:
            return False

        key = extract_key(message)
        if key is not None and extract_message_id(message) and not own:
            self.receipts.enqueue(jid, key)
        await self.store.touch(jid)
        return True
