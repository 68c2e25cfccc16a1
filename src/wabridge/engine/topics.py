"""Forum topic lifecycle: create on demand, verify, heal, reconcile, rename.

Design notes / invariants:
- Topic identity per conversation is serialized through one in-flight
  creation task per conversation id. The check of the live mapping and the
  registration of the task happen without a suspension in between, so
  concurrent `ensure_topic()` callers share a single `createForumTopic` call.
- Callers await the creation task through `asyncio.shield()`: a cancelled
  caller does not cancel the creation the others are waiting on.
- The task entry is dropped as soon as the task finishes (success, failure or
  cancellation); a failed creation never poisons later attempts.
- `TopicNotFoundError` is the only error that triggers healing, and an
  operation is retried at most once per originating call.
- The existence cache lives for the process lifetime. Negative results are
  permanent: a deleted forum topic never comes back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final

import anyio

from ..config import BridgeConfig
from ..sink.api import TelegramBotApi, TelegramBotApiError, TopicNotFoundError
from ..source.messages import CALL_LOG_JID, STATUS_JID, is_group_jid
from ..source.protocol import SourceClient
from ..storage.mappings import MappingStore, is_placeholder_name, phone_from_jid

logger = logging.getLogger(__name__)

STATUS_TOPIC_TITLE: Final[str] = "📊 Status Updates"
CALL_LOG_TOPIC_TITLE: Final[str] = "📞 Call Logs"
GROUP_FALLBACK_TITLE: Final[str] = "Group Chat"

# Telegram's fixed forum icon palette.
ICON_COLOR_CONTACT: Final[int] = 0x6FB9F0
ICON_COLOR_GROUP: Final[int] = 0x8EEE98
ICON_COLOR_STATUS: Final[int] = 0xFF93B2
ICON_COLOR_CALLS: Final[int] = 0xFB6F5F

PROFILE_PICTURE_CAPTION: Final[str] = "📸 Profile Picture"


@dataclass(slots=True)
class TopicRenameReport:
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    lines: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.updated + self.skipped + self.errors


class TopicManager:
    def __init__(
        self,
        *,
        store: MappingStore,
        sink: TelegramBotApi,
        source: SourceClient,
        chat_id: int,
        config: BridgeConfig,
    ) -> None:
        self.store = store
        self.sink = sink
        self.source = source
        self.chat_id = chat_id
        self.config = config
        self._pending: dict[str, asyncio.Task[int | None]] = {}
        self._exists: dict[int, bool] = {}

    # Creation

    async def ensure_topic(self, jid: str, context_hint: str | None = None) -> int | None:
        """Return the topic for `jid`, creating it at most once concurrently."""

        topic_id = self.store.get_topic_id(jid)
        if topic_id is not None:
            return topic_id

        task = self._pending.get(jid)
        if task is None:
            task = asyncio.create_task(
                self._create_topic(jid, context_hint),
                name=f"wabridge-create-topic:{jid}",
            )
            self._pending[jid] = task
            task.add_done_callback(lambda done: self._drop_pending(jid, done))
        return await asyncio.shield(task)

    def _drop_pending(self, jid: str, task: asyncio.Task[int | None]) -> None:
        if self._pending.get(jid) is task:
            del self._pending[jid]

    def creation_in_flight(self, jid: str) -> bool:
        return jid in self._pending

    async def topic_title(self, jid: str, context_hint: str | None = None) -> tuple[str, int]:
        """Return `(title, icon_color)` for a conversation."""

        if jid == STATUS_JID:
            return STATUS_TOPIC_TITLE, ICON_COLOR_STATUS
        if jid == CALL_LOG_JID:
            return CALL_LOG_TOPIC_TITLE, ICON_COLOR_CALLS
        if is_group_jid(jid):
            metadata = await self._group_metadata(jid)
            subject = metadata.get("subject") if metadata else None
            if isinstance(subject, str) and subject.strip():
                return subject.strip(), ICON_COLOR_GROUP
            return GROUP_FALLBACK_TITLE, ICON_COLOR_GROUP
        return self.contact_title(jid, context_hint), ICON_COLOR_CONTACT

    def contact_title(self, jid: str, context_hint: str | None = None) -> str:
        phone = phone_from_jid(jid)
        name = self.store.contact_name(phone)
        if name and not is_placeholder_name(name, phone):
            return name
        if context_hint and not is_placeholder_name(context_hint, phone):
            return context_hint.strip()
        return self.store.display_name(jid)

    async def _group_metadata(self, jid: str) -> dict[str, Any] | None:
        try:
            return await self.source.group_metadata(jid)
        except Exception as e:
            logger.warning("Could not fetch group metadata for %s: %s", jid, e)
            return None

    async def _create_topic(self, jid: str, context_hint: str | None) -> int | None:
        try:
            title, icon_color = await self.topic_title(jid, context_hint)
            created = await self.sink.create_forum_topic(
                chat_id=self.chat_id, name=title, icon_color=icon_color
            )
            topic_id = created.get("message_thread_id") if isinstance(created, dict) else None
            if not isinstance(topic_id, int):
                raise TelegramBotApiError("createForumTopic returned no message_thread_id")
            await self.store.set_topic(jid, topic_id)
        except Exception as e:
            logger.error("Failed to create topic for %s: %s", jid, e)
            return None

        self._exists[topic_id] = True
        logger.info("Created topic %s (%r) for %s", topic_id, title, jid)

        if self._welcome_enabled(jid):
            await self._send_welcome(jid, topic_id, title)
        if self.config.sync_profile_pictures and jid not in (STATUS_JID, CALL_LOG_JID):
            await self.send_profile_picture(jid, topic_id)
        return topic_id

    def _welcome_enabled(self, jid: str) -> bool:
        if jid == STATUS_JID:
            return False
        if jid == CALL_LOG_JID:
            return self.config.call_log_welcome_enabled
        return self.config.welcome_message_enabled

    async def welcome_text(self, jid: str, title: str) -> str:
        if jid == CALL_LOG_JID:
            return "\n".join(
                [
                    "📞 Call Logs",
                    "",
                    "All incoming WhatsApp calls are logged in this topic.",
                ]
            )
        created = datetime.now().strftime("%Y-%m-%d %H:%M")
        if is_group_jid(jid):
            metadata = await self._group_metadata(jid) or {}
            participants = metadata.get("participants")
            lines = [
                "🏷️ Group Information",
                "",
                f"📝 Name: {title}",
                f"👥 Participants: {len(participants) if isinstance(participants, list) else 'unknown'}",
            ]
            description = metadata.get("desc")
            if isinstance(description, str) and description.strip():
                lines.append(f"📄 Description: {description.strip()}")
            lines.append(f"📅 Linked: {created}")
            return "\n".join(lines)

        phone = phone_from_jid(jid)
        lines = [
            "🏷️ Contact Information",
            "",
            f"📝 Name: {title}",
            f"📱 Phone: +{phone}",
            f"🖐️ Handle: {jid}",
        ]
        about = await self._about_text(jid)
        if about:
            lines.append(f"💬 Status: {about}")
        lines.append(f"📅 Linked: {created}")
        return "\n".join(lines)

    async def _about_text(self, jid: str) -> str | None:
        try:
            status = await self.source.fetch_status(jid)
        except Exception as e:
            logger.debug("Could not fetch status text for %s: %s", jid, e)
            return None
        text = status.get("status") if isinstance(status, dict) else None
        return text.strip() if isinstance(text, str) and text.strip() else None

    async def _send_welcome(self, jid: str, topic_id: int, title: str) -> None:
        try:
            text = await self.welcome_text(jid, title)
            sent = await self.sink.send_message(
                chat_id=self.chat_id, text=text, message_thread_id=topic_id
            )
            message_id = sent.get("message_id") if isinstance(sent, dict) else None
            if isinstance(message_id, int):
                await self.sink.pin_chat_message(chat_id=self.chat_id, message_id=message_id)
        except Exception as e:
            logger.warning("Welcome message for %s failed: %s", jid, e)

    async def send_profile_picture(self, jid: str, topic_id: int, *, url: str | None = None) -> bool:
        """Post the conversation's profile picture and cache its URL."""

        try:
            if url is None:
                url = await self.source.profile_picture_url(jid)
            if not url:
                return False
            await self.sink.send_photo(
                chat_id=self.chat_id,
                photo=url,
                message_thread_id=topic_id,
                caption=PROFILE_PICTURE_CAPTION,
            )
            await self.store.set_profile_picture_url(jid, url)
        except Exception as e:
            logger.debug("Profile picture for %s not posted: %s", jid, e)
            return False
        return True

    # Existence and healing

    async def verify_topic_exists(self, topic_id: int, *, refresh: bool = False) -> bool:
        cached = self._exists.get(topic_id)
        if cached is False:
            return False
        if cached is True and not refresh:
            return True
        try:
            exists = await self.sink.probe_topic(
                chat_id=self.chat_id, message_thread_id=topic_id
            )
        except TelegramBotApiError as e:
            # Unknown; do not cache and do not treat the topic as gone.
            logger.warning("Could not verify topic %s: %s", topic_id, e)
            return True
        self._exists[topic_id] = exists
        return exists

    def mark_missing(self, topic_id: int) -> None:
        self._exists[topic_id] = False

    async def heal_on_missing(
        self,
        jid: str,
        stale_topic_id: int | None = None,
        *,
        context_hint: str | None = None,
    ) -> int | None:
        """Drop a stale mapping and create a replacement topic."""

        current = self.store.get_topic_id(jid)
        if stale_topic_id is not None:
            self.mark_missing(stale_topic_id)
            if current is not None and current != stale_topic_id:
                logger.info("Topic for %s already healed (%s -> %s)", jid, stale_topic_id, current)
                return current
        if current is not None:
            self.mark_missing(current)
            logger.warning("Topic %s for %s is gone; recreating", current, jid)
            await self.store.delete_mapping(jid)
        return await self.ensure_topic(jid, context_hint)

    async def with_topic_healing[T](
        self,
        jid: str,
        operation: Callable[[int], Awaitable[T]],
        *,
        context_hint: str | None = None,
    ) -> T | None:
        """Run `operation(topic_id)`, healing and retrying once on a missing topic.

        Returns `None` when no topic could be obtained. A second consecutive
        `TopicNotFoundError` propagates to the caller.
        """

        topic_id = await self.ensure_topic(jid, context_hint)
        if topic_id is None:
            logger.error("No topic available for %s", jid)
            return None
        try:
            return await operation(topic_id)
        except TopicNotFoundError as e:
            logger.warning("Topic %s for %s missing (%s); healing", topic_id, jid, e)

        healed = await self.heal_on_missing(jid, topic_id, context_hint=context_hint)
        if healed is None:
            logger.error("Could not recreate topic for %s", jid)
            return None
        return await operation(healed)

    async def reconcile_all_topics(self) -> int:
        """Probe every mapped topic and heal the missing ones. Returns the heal count."""

        healed = 0
        for index, (jid, mapping) in enumerate(self.store.chat_mappings()):
            if index:
                await anyio.sleep(self.config.reconcile_delay_seconds)
            # Skip mappings replaced while earlier checks were in flight.
            if self.store.get_topic_id(jid) != mapping.topic_id:
                continue
            if await self.verify_topic_exists(mapping.topic_id, refresh=True):
                continue
            if await self.heal_on_missing(jid, mapping.topic_id) is not None:
                healed += 1
        logger.info("Topic reconciliation finished: %d healed", healed)
        return healed

    # Renaming

    async def update_topic_names(self) -> TopicRenameReport:
        report = TopicRenameReport()
        for index, (jid, mapping) in enumerate(self.store.chat_mappings()):
            if index:
                await anyio.sleep(self.config.reconcile_delay_seconds)
            title, _color = await self.topic_title(jid)
            try:
                await self.sink.edit_forum_topic(
                    chat_id=self.chat_id,
                    message_thread_id=mapping.topic_id,
                    name=title,
                )
            except TelegramBotApiError as e:
                if e.description and "not_modified" in e.description.lower():
                    report.skipped += 1
                    report.lines.append(f"⏭️ Unchanged: {title}")
                    continue
                if isinstance(e, TopicNotFoundError):
                    self.mark_missing(mapping.topic_id)
                report.errors += 1
                report.lines.append(f"❌ {jid}: {e.description or e}")
                logger.error("Failed to rename topic %s for %s: %s", mapping.topic_id, jid, e)
                continue
            report.updated += 1
            report.lines.append(f"✅ {title}")
        logger.info(
            "Topic rename finished: %d updated, %d skipped, %d errors",
            report.updated,
            report.skipped,
            report.errors,
        )
        return report

    async def rename_topic(self, jid: str) -> bool:
        """Rename one mapped topic to its current title."""

        topic_id = self.store.get_topic_id(jid)
        if topic_id is None:
            return False
        title, _color = await self.topic_title(jid)
        try:
            await self.sink.edit_forum_topic(
                chat_id=self.chat_id, message_thread_id=topic_id, name=title
            )
        except TelegramBotApiError as e:
            logger.warning("Could not rename topic %s for %s: %s", topic_id, jid, e)
            return False
        return True

    async def aclose(self) -> None:
        tasks = [task for task in self._pending.values() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
