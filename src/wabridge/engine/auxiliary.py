"""Status mirroring, status replies, call notifications and contact sync.

Design notes / invariants:
- Statuses from every contact land in the single `status@broadcast` topic.
  The Sink message id of each mirrored status is remembered (bounded, oldest
  first out) so an operator reply to it can be routed back to the author.
- Call events are deduplicated per `(caller, call id)` for
  `call_dedupe_seconds`; the Source reports one call several times
  (offer, ringing, timeout...).
- Contact batches are merged into the directory with a single flush; mapped
  contacts whose name changed get their topic renamed.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

from ..config import BridgeConfig
from ..media import MediaError
from ..sink.api import TelegramBotApi
from ..sink.messages import extract_thread_id
from ..source.messages import (
    CALL_LOG_JID,
    STATUS_JID,
    USER_SUFFIX,
    classify_source_content,
    extract_from_me,
    extract_key,
    extract_sender_jid,
    extract_text,
    normalize_jid,
    user_jid_for_phone,
)
from ..source.protocol import SourceClient
from ..storage.mappings import MappingStore, phone_from_jid
from .inbound import ContentForwarder
from .topics import TopicManager

logger = logging.getLogger(__name__)

STATUS_INDEX_LIMIT: Final[int] = 1000
_SNIPPET_LENGTH: Final[int] = 100


@dataclass(frozen=True, slots=True)
class StatusReference:
    sender_jid: str
    key: dict[str, Any]
    snippet: str


def status_caption(name: str, body: str | None) -> str:
    header = f"📱 Status from {name}"
    return f"{header}\n\n{body}" if body else header


def call_notification(name: str, phone: str, call: dict[str, Any], when: datetime) -> str:
    kind = "📹 Video" if call.get("isVideo") else "📞 Voice"
    lines = [
        f"{kind} call from {name}",
        f"📱 +{phone}",
        f"🕐 {when.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    status = call.get("status")
    if isinstance(status, str) and status:
        lines.append(f"📋 Status: {status}")
    if call.get("isGroup"):
        lines.append("👥 Group call")
    return "\n".join(lines)


def contact_entry(contact: dict[str, Any]) -> tuple[str, str | None] | None:
    """Return `(phone, name)` for a user contact record, else `None`."""

    jid = contact.get("id")
    if not isinstance(jid, str) or not jid.endswith(USER_SUFFIX):
        return None
    for field_name in ("name", "notify", "verifiedName"):
        value = contact.get(field_name)
        if isinstance(value, str) and value.strip():
            return phone_from_jid(jid), value.strip()
    return phone_from_jid(jid), None


class AuxiliaryFlows:
    def __init__(
        self,
        *,
        store: MappingStore,
        topics: TopicManager,
        forwarder: ContentForwarder,
        sink: TelegramBotApi,
        source: SourceClient,
        chat_id: int,
        config: BridgeConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.topics = topics
        self.forwarder = forwarder
        self.sink = sink
        self.source = source
        self.chat_id = chat_id
        self.config = config
        self._clock = clock
        self._status_index: OrderedDict[int, StatusReference] = OrderedDict()
        self._recent_calls: dict[tuple[str, str], float] = {}

    # Status

    def status_reference(self, sink_message_id: int) -> StatusReference | None:
        return self._status_index.get(sink_message_id)

    def remember_status(self, sink_message_id: int, ref: StatusReference) -> None:
        self._status_index[sink_message_id] = ref
        self._status_index.move_to_end(sink_message_id)
        while len(self._status_index) > STATUS_INDEX_LIMIT:
            self._status_index.popitem(last=False)

    async def mirror_status(self, message: dict[str, Any]) -> bool:
        """Mirror one status post into the status topic."""

        try:
            return await self._mirror_status(message)
        except MediaError as e:
            logger.warning("Dropped status media: %s", e)
        except Exception:
            logger.exception("Status mirroring failed")
        return False

    async def _mirror_status(self, message: dict[str, Any]) -> bool:
        if extract_from_me(message):
            return False
        content = message.get("message")
        classified = classify_source_content(content)
        if classified is None:
            return False
        sender = extract_sender_jid(message)
        key = extract_key(message)
        if sender is None or key is None:
            return False

        body = extract_text(content)
        name = self.store.display_name(sender)
        sent = await self.forwarder.forward(STATUS_JID, classified, status_caption(name, body))
        if sent is None:
            return False

        sink_id = sent.get("message_id") if isinstance(sent, dict) else None
        if isinstance(sink_id, int):
            snippet = (body or f"[{classified.kind}]")[:_SNIPPET_LENGTH]
            self.remember_status(sink_id, StatusReference(sender, key, snippet))
        if self.config.status_auto_view:
            try:
                await self.source.read_messages([key])
            except Exception as e:
                logger.warning("Could not mark status from %s as viewed: %s", sender, e)
        await self.store.touch(STATUS_JID)
        return True

    async def handle_status_reply(self, message: dict[str, Any], ref: StatusReference) -> bool:
        """Send an operator's reply to a mirrored status back to its author."""

        text = message.get("text") or message.get("caption")
        thread_id = extract_thread_id(message)
        message_id = message.get("message_id")
        if not isinstance(text, str) or not text.strip():
            await self._reply(thread_id, message_id, "❌ Only text replies to statuses are supported")
            return False
        quoted = {"key": ref.key, "message": {"conversation": ref.snippet}}
        try:
            await self.source.send_message(ref.sender_jid, {"text": text}, quoted=quoted)
        except Exception as e:
            logger.error("Status reply to %s failed: %s", ref.sender_jid, e)
            await self._reply(thread_id, message_id, f"❌ Failed to send status reply: {e}")
            return False
        name = self.store.display_name(ref.sender_jid)
        await self._reply(thread_id, message_id, f"✅ Status reply sent to {name}")
        return True

    async def _reply(self, thread_id: int | None, message_id: Any, text: str) -> None:
        try:
            await self.sink.send_message(
                chat_id=self.chat_id,
                text=text,
                message_thread_id=thread_id,
                reply_to_message_id=message_id if isinstance(message_id, int) else None,
            )
        except Exception as e:
            logger.warning("Could not reply in status topic: %s", e)

    # Calls

    def _is_duplicate_call(self, caller: str, call_id: str) -> bool:
        now = self._clock()
        window = self.config.call_dedupe_seconds
        expired = [k for k, seen in self._recent_calls.items() if now - seen >= window]
        for k in expired:
            del self._recent_calls[k]
        if (caller, call_id) in self._recent_calls:
            return True
        self._recent_calls[(caller, call_id)] = now
        return False

    async def handle_call(self, call: dict[str, Any]) -> bool:
        """Post a call notification into the call-log topic (deduplicated)."""

        caller = call.get("from")
        call_id = call.get("id")
        if not isinstance(caller, str) or not isinstance(call_id, str):
            return False
        caller = normalize_jid(caller)
        if self._is_duplicate_call(caller, call_id):
            logger.debug("Duplicate call event %s from %s", call_id, caller)
            return False

        text = call_notification(
            self.store.display_name(caller), phone_from_jid(caller), call, datetime.now()
        )

        async def send(topic_id: int) -> dict[str, Any]:
            return await self.sink.send_message(
                chat_id=self.chat_id, text=text, message_thread_id=topic_id
            )

        try:
            sent = await self.topics.with_topic_healing(CALL_LOG_JID, send)
        except Exception as e:
            logger.error("Call notification for %s failed: %s", caller, e)
            return False
        if sent is None:
            return False
        await self.store.touch(CALL_LOG_JID)
        return True

    # Contacts

    async def handle_contacts_upsert(self, contacts: list[dict[str, Any]]) -> int:
        """Merge a contact batch; rename topics of mapped contacts that changed."""

        entries = [entry for c in contacts if isinstance(c, dict) and (entry := contact_entry(c))]
        changed = await self.store.merge_contacts(entries)
        for phone in changed:
            jid = user_jid_for_phone(phone)
            if self.store.get_topic_id(jid) is not None:
                await self.topics.rename_topic(jid)
        if changed:
            logger.info("Contact directory: %d entries updated", len(changed))
        return len(changed)

    async def handle_contacts_update(self, contacts: list[dict[str, Any]]) -> int:
        changed = await self.handle_contacts_upsert(contacts)
        if not self.config.sync_profile_pictures:
            return changed
        for contact in contacts:
            jid = contact.get("id") if isinstance(contact, dict) else None
            if isinstance(jid, str) and "imgUrl" in contact:
                await self.refresh_profile_picture(normalize_jid(jid))
        return changed

    async def sync_contacts(self) -> int:
        try:
            contacts = await self.source.fetch_contacts()
        except Exception as e:
            logger.warning("Contact sync failed: %s", e)
            return 0
        return await self.handle_contacts_upsert(contacts)

    async def refresh_profile_picture(self, jid: str) -> bool:
        """Post a changed profile picture into the conversation's topic."""

        topic_id = self.store.get_topic_id(jid)
        if topic_id is None:
            return False
        try:
            url = await self.source.profile_picture_url(jid)
        except Exception as e:
            logger.debug("Profile picture lookup for %s failed: %s", jid, e)
            return False
        if not url or url == self.store.profile_picture_url(jid):
            return False
        return await self.topics.send_profile_picture(jid, topic_id, url=url)
