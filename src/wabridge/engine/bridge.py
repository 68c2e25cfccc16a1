"""Bridge facade: wires the engine components around one `MappingStore`.

The facade is what a host drives: it feeds Source events to
`handle_source_event()` and Telegram updates to `handle_sink_update()`, and
calls `aclose()` on shutdown. All components share the injected store, Sink
client and Source client; nothing is module-global.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..commands import CommandHandler, command_text
from ..config import BridgeConfig, BridgeConfigError
from ..media import FfmpegMediaConverter, MediaConverter, MediaPipeline
from ..sink.api import TelegramBotApi
from ..sink.messages import extract_thread_id
from ..source.protocol import SourceClient, SourceEvent
from ..storage.document import DocumentStore, JsonFileDocumentStore
from ..storage.mappings import MappingStore
from .auth import OperatorAuth
from .auxiliary import AuxiliaryFlows
from .inbound import ContentForwarder, InboundRouter
from .outbound import OutboundRouter
from .presence import PresenceCoordinator, ReadReceiptQueue
from .topics import TopicManager, TopicRenameReport

logger = logging.getLogger(__name__)


class Bridge:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        store: MappingStore,
        sink: TelegramBotApi,
        source: SourceClient,
        converter: MediaConverter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        _token, chat_id = config.require_credentials()
        self.config = config
        self.store = store
        self.sink = sink
        self.source = source
        self.chat_id = chat_id

        self.auth = OperatorAuth(
            password=config.bot_password,
            timeout_seconds=config.auth_timeout_seconds,
            privileged_ids=config.privileged_operator_ids,
            clock=clock,
        )
        self.presence = PresenceCoordinator(
            source,
            enabled=config.presence_enabled,
            min_interval_seconds=config.presence_min_interval_seconds,
            typing_pause_seconds=config.typing_pause_seconds,
            available_delay_seconds=config.available_delay_seconds,
            clock=clock,
        )
        self.receipts = ReadReceiptQueue(
            source,
            enabled=config.read_receipts_enabled,
            delay_seconds=config.read_receipt_delay_seconds,
        )
        self.media = MediaPipeline(
            source=source,
            sink=sink,
            chat_id=chat_id,
            temp_dir=config.temp_dir,
            converter=converter or FfmpegMediaConverter(config.temp_dir),
        )
        self.topics = TopicManager(
            store=store, sink=sink, source=source, chat_id=chat_id, config=config
        )
        self.forwarder = ContentForwarder(
            topics=self.topics, media=self.media, sink=sink, chat_id=chat_id
        )
        self.auxiliary = AuxiliaryFlows(
            store=store,
            topics=self.topics,
            forwarder=self.forwarder,
            sink=sink,
            source=source,
            chat_id=chat_id,
            config=config,
            clock=clock,
        )
        self.inbound = InboundRouter(
            store=store,
            forwarder=self.forwarder,
            receipts=self.receipts,
            config=config,
            status_handler=self.auxiliary.mirror_status,
            clock=clock,
        )
        self.outbound = OutboundRouter(
            store=store,
            sink=sink,
            source=source,
            chat_id=chat_id,
            auth=self.auth,
            presence=self.presence,
            receipts=self.receipts,
            media=self.media,
            auxiliary=self.auxiliary,
            config=config,
        )
        self.commands = CommandHandler(self)
        self._closed = False

    # Topics

    async def ensure_topic(self, jid: str, context_hint: str | None = None) -> int | None:
        return await self.topics.ensure_topic(jid, context_hint)

    def conversation_for_topic(self, topic_id: int) -> str | None:
        return self.store.conversation_for_topic(topic_id)

    async def reconcile_all_topics(self) -> int:
        return await self.topics.reconcile_all_topics()

    async def update_topic_names(self) -> TopicRenameReport:
        """Refresh the contact directory, then rename every mapped topic."""

        await self.auxiliary.sync_contacts()
        return await self.topics.update_topic_names()

    # Routing

    async def route_inbound(self, message: dict[str, Any], text: str | None = None) -> bool:
        return await self.inbound.route_inbound(message, text)

    async def route_outbound(self, message: dict[str, Any]) -> bool:
        return await self.outbound.route_outbound(message)

    async def sync_contacts(self) -> int:
        return await self.auxiliary.sync_contacts()

    async def refresh_profile_picture(self, jid: str) -> bool:
        return await self.auxiliary.refresh_profile_picture(jid)

    # Filters

    @property
    def filters(self) -> frozenset[str]:
        return self.store.filters

    async def add_filter(self, word: str) -> str:
        return await self.store.add_filter(word)

    async def clear_filters(self) -> None:
        await self.store.clear_filters()

    # Operators

    def is_operator_authenticated(self, user_id: int | None) -> bool:
        return self.auth.is_authenticated(user_id)

    def authenticate_operator(self, user_id: int, password: str) -> bool:
        return self.auth.authenticate(user_id, password)

    def grant_operator(self, user_id: int) -> None:
        self.auth.grant(user_id)

    # Event entry points

    async def handle_source_event(self, event: SourceEvent) -> None:
        try:
            match event.kind:
                case "message":
                    await self.inbound.route_inbound(event.payload, event.text)
                case "contacts.upsert":
                    await self.auxiliary.handle_contacts_upsert(list(event.payload or []))
                case "contacts.update":
                    await self.auxiliary.handle_contacts_update(list(event.payload or []))
                case "call":
                    calls = event.payload if isinstance(event.payload, list) else [event.payload]
                    for call in calls:
                        if isinstance(call, dict):
                            await self.auxiliary.handle_call(call)
                case _:
                    logger.debug("Ignoring Source event %s", event.kind)
        except Exception:
            logger.exception("Source event %s failed", event.kind)

    async def handle_sink_update(self, update: dict[str, Any]) -> None:
        try:
            callback_query = update.get("callback_query")
            if isinstance(callback_query, dict):
                await self.commands.handle_callback_query(callback_query)
                return

            message = update.get("message")
            if not isinstance(message, dict):
                return
            chat = message.get("chat")
            if not isinstance(chat, dict) or chat.get("id") != self.chat_id:
                return
            sender = message.get("from")
            if isinstance(sender, dict) and sender.get("is_bot"):
                return

            if command_text(message) is not None:
                await self.commands.handle(message)
                return
            if extract_thread_id(message) is None:
                return
            await self.outbound.route_outbound(message)
        except Exception:
            logger.exception("Telegram update %s failed", update.get("update_id"))

    # Lifecycle

    async def start(self) -> None:
        """Register bot commands and announce the bridge in the General topic."""

        await self.commands.register_bot_commands()
        user_jid = self.source.user_jid
        banner = "\n".join(
            [
                "🤖 WhatsApp bridge started",
                "",
                f"🔗 Account: {user_jid or 'connecting...'}",
                f"💬 Mapped chats: {len(self.store.chat_mappings())}",
                f"🕐 {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            ]
        )
        try:
            await self.sink.send_message(chat_id=self.chat_id, text=banner)
        except Exception as e:
            logger.warning("Start banner not sent: %s", e)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.presence.aclose()
        await self.receipts.aclose()
        await self.topics.aclose()
        await self.store.flush()
        removed = self.media.cleanup()
        if removed:
            logger.info("Removed %d leftover scratch files", removed)
        await self.sink.aclose()


async def start_bridge(
    config: BridgeConfig,
    source: SourceClient,
    *,
    document_store: DocumentStore | None = None,
    sink: TelegramBotApi | None = None,
    converter: MediaConverter | None = None,
    announce: bool = True,
) -> Bridge | None:
    """Build and start a bridge, or return `None` when it is not configured."""

    try:
        token, _chat_id = config.require_credentials()
    except BridgeConfigError as e:
        logger.error("%s", e)
        return None

    store = MappingStore(document_store or JsonFileDocumentStore(config.database_path))
    await store.load()
    bridge = Bridge(
        config=config,
        store=store,
        sink=sink or TelegramBotApi(token=token, timeout_seconds=config.poll_timeout_seconds + 15),
        source=source,
        converter=converter,
    )
    if announce:
        await bridge.start()
    logger.info("Bridge started for chat %s", bridge.chat_id)
    return bridge
