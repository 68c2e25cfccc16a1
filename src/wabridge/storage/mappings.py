"""In-memory mapping tables backed by the persisted host document.

`MappingStore` is the single source of truth consulted by every bridge
component. It owns four tables (conversation → topic, participant → profile,
phone → display name, filter prefixes) plus the reverse topic → conversation
index.

Design notes / invariants:
- Write-through: every accessor that changes durable state applies the change
  in memory without suspending, then awaits a persistence flush before
  returning. Readers therefore never observe a half-applied mapping, and an
  acknowledged mutation survives a crash.
- A failed flush reverts the mutation that triggered it and re-raises, so the
  in-memory tables never hold state the backend refused.
- Flushes are serialized by one `anyio.Lock` so saves reach the backend in
  mutation order.
- A topic id maps back to at most one conversation; `set_topic()` rejects a
  topic id already owned by a different conversation.
- Legacy persisted shapes are migrated once in `load()`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import anyio
import anyio.to_thread as to_thread

from .document import DocumentStore
from .records import (
    BRIDGE_NAMESPACE,
    BridgeNamespace,
    ChatMapping,
    UserProfile,
    migrate_bridge_namespace,
)

logger = logging.getLogger(__name__)

_MIN_CONTACT_NAME_LENGTH = 3


def phone_from_jid(jid: str) -> str:
    """Return the user part of a JID (`"123@s.whatsapp.net"` -> `"123"`)."""

    return jid.split("@", 1)[0].split(":", 1)[0]


def is_placeholder_name(name: str | None, phone: str) -> bool:
    """Return true when `name` carries no information beyond the phone number."""

    if not name:
        return True
    name = name.strip()
    return (
        name == phone
        or name.startswith("+")
        or len(name) < _MIN_CONTACT_NAME_LENGTH
    )


class MappingStore:
    """Conversation/topic, profile, contact and filter tables."""

    def __init__(self, document_store: DocumentStore) -> None:
        self._backend = document_store
        self._document: dict[str, Any] = {}
        self._ns = BridgeNamespace()
        self._topic_index: dict[int, str] = {}
        self._flush_lock = anyio.Lock()

    async def load(self) -> None:
        """Load and migrate the persisted namespace, replacing in-memory state."""

        document = await to_thread.run_sync(self._backend.load)
        raw = document.get(BRIDGE_NAMESPACE)
        needs_upgrade = isinstance(raw, dict) and raw.get("version") is None
        self._document = document
        self._install(migrate_bridge_namespace(raw))
        logger.info(
            "Loaded %d chat mappings, %d users, %d contacts, %d filters",
            len(self._ns.chat_mappings),
            len(self._ns.user_mappings),
            len(self._ns.contact_mappings),
            len(self._ns.filters),
        )
        if needs_upgrade:
            logger.info("Migrated legacy bridge mappings to version %d", self._ns.version)
            await self.flush()

    def _install(self, ns: BridgeNamespace) -> None:
        self._ns = ns
        self._topic_index = {}
        for jid, mapping in ns.chat_mappings.items():
            owner = self._topic_index.setdefault(mapping.topic_id, jid)
            if owner != jid:
                logger.warning(
                    "Topic %s mapped by both %s and %s; keeping %s",
                    mapping.topic_id,
                    owner,
                    jid,
                    owner,
                )

    def export_namespace(self) -> dict[str, Any]:
        """JSON-ready copy of the persisted namespace (for backups)."""

        return self._ns.dump()

    async def restore(self, raw: Any) -> BridgeNamespace:
        """Replace every table with a backed-up namespace.

        `raw` is migrated exactly like a loaded document; a `ValueError` leaves
        the current tables untouched.
        """

        restored = migrate_bridge_namespace(raw)
        previous = self._ns
        self._install(restored)
        await self._commit(lambda: self._install(previous))
        logger.info(
            "Restored %d chat mappings and %d contacts from backup",
            len(restored.chat_mappings),
            len(restored.contact_mappings),
        )
        return restored

    async def flush(self) -> None:
        """Persist the namespace into the host document."""

        async with self._flush_lock:
            self._document[BRIDGE_NAMESPACE] = self._ns.dump()
            snapshot = dict(self._document)
            await to_thread.run_sync(self._backend.save, snapshot)

    async def _commit(self, undo: Callable[[], None]) -> None:
        try:
            await self.flush()
        except Exception:
            undo()
            raise

    # Conversation ↔ topic

    def get_mapping(self, jid: str) -> ChatMapping | None:
        return self._ns.chat_mappings.get(jid)

    def get_topic_id(self, jid: str) -> int | None:
        mapping = self._ns.chat_mappings.get(jid)
        return mapping.topic_id if mapping is not None else None

    def conversation_for_topic(self, topic_id: int) -> str | None:
        """Reverse lookup: topic id → conversation id."""

        return self._topic_index.get(topic_id)

    def chat_mappings(self) -> list[tuple[str, ChatMapping]]:
        """Snapshot of all mappings, safe to iterate across suspensions."""

        return list(self._ns.chat_mappings.items())

    async def set_topic(self, jid: str, topic_id: int) -> ChatMapping:
        owner = self._topic_index.get(topic_id)
        if owner is not None and owner != jid:
            raise ValueError(f"Topic {topic_id} already mapped to {owner}")

        previous = self._ns.chat_mappings.get(jid)
        if previous is not None:
            self._topic_index.pop(previous.topic_id, None)
        mapping = ChatMapping(topic_id=topic_id)
        self._ns.chat_mappings[jid] = mapping
        self._topic_index[topic_id] = jid

        def undo() -> None:
            if self._topic_index.get(topic_id) == jid:
                del self._topic_index[topic_id]
            if previous is None:
                self._ns.chat_mappings.pop(jid, None)
            else:
                self._ns.chat_mappings[jid] = previous
                self._topic_index[previous.topic_id] = jid

        await self._commit(undo)
        return mapping

    async def delete_mapping(self, jid: str) -> ChatMapping | None:
        """Drop the mapping and its cached picture. Returns the removed record."""

        removed = self._ns.chat_mappings.pop(jid, None)
        if removed is None:
            return None
        if self._topic_index.get(removed.topic_id) == jid:
            del self._topic_index[removed.topic_id]

        def undo() -> None:
            self._ns.chat_mappings.setdefault(jid, removed)
            self._topic_index.setdefault(removed.topic_id, jid)

        await self._commit(undo)
        return removed

    async def touch(self, jid: str) -> None:
        mapping = self._ns.chat_mappings.get(jid)
        if mapping is None:
            return
        previous = mapping.last_activity
        mapping.last_activity = datetime.now()
        await self._commit(lambda: setattr(mapping, "last_activity", previous))

    def profile_picture_url(self, jid: str) -> str | None:
        mapping = self._ns.chat_mappings.get(jid)
        return mapping.profile_picture_url if mapping is not None else None

    async def set_profile_picture_url(self, jid: str, url: str | None) -> None:
        mapping = self._ns.chat_mappings.get(jid)
        if mapping is None or mapping.profile_picture_url == url:
            return
        previous = mapping.profile_picture_url
        mapping.profile_picture_url = url
        await self._commit(lambda: setattr(mapping, "profile_picture_url", previous))

    # Participants

    def get_user(self, jid: str) -> UserProfile | None:
        return self._ns.user_mappings.get(jid)

    async def record_participant(self, jid: str, name: str | None) -> UserProfile:
        """Create or update a participant profile for one received message."""

        profile = self._ns.user_mappings.get(jid)
        if profile is None:
            created = profile = UserProfile(name=name or None, phone=phone_from_jid(jid))
            self._ns.user_mappings[jid] = profile

            def undo() -> None:
                if self._ns.user_mappings.get(jid) is created:
                    del self._ns.user_mappings[jid]

        else:
            previous = (profile.name, profile.message_count)
            if name:
                profile.name = name

            def undo() -> None:
                profile.name, profile.message_count = previous

        profile.message_count += 1
        await self._commit(undo)
        return profile

    # Contact directory

    def contact_name(self, phone: str) -> str | None:
        return self._ns.contact_mappings.get(phone)

    def contacts(self) -> list[tuple[str, str]]:
        return list(self._ns.contact_mappings.items())

    def _merge_contact(self, phone: str, name: str | None) -> bool:
        if not name:
            return False
        name = name.strip()
        existing = self._ns.contact_mappings.get(phone)
        if existing is not None and (is_placeholder_name(name, phone) or existing == name):
            return False
        self._ns.contact_mappings[phone] = name
        return True

    def _restore_contacts(self, previous: dict[str, str | None]) -> None:
        for phone, name in previous.items():
            if name is None:
                self._ns.contact_mappings.pop(phone, None)
            else:
                self._ns.contact_mappings[phone] = name

    async def upsert_contact(self, phone: str, name: str | None) -> bool:
        """Merge one directory entry. Returns true when the entry changed."""

        previous = {phone: self._ns.contact_mappings.get(phone)}
        changed = self._merge_contact(phone, name)
        if changed:
            await self._commit(lambda: self._restore_contacts(previous))
        return changed

    async def merge_contacts(self, entries: Iterable[tuple[str, str | None]]) -> list[str]:
        """Merge a batch of `(phone, name)` pairs with a single flush.

        Returns the phones whose entry changed.
        """

        previous: dict[str, str | None] = {}
        changed = []
        for phone, name in entries:
            before = self._ns.contact_mappings.get(phone)
            if self._merge_contact(phone, name):
                previous.setdefault(phone, before)
                changed.append(phone)
        if changed:
            await self._commit(lambda: self._restore_contacts(previous))
        return changed

    def display_name(self, jid: str) -> str:
        """Best known human name for a participant, falling back to `+phone`."""

        phone = phone_from_jid(jid)
        name = self._ns.contact_mappings.get(phone)
        if name and not is_placeholder_name(name, phone):
            return name
        profile = self._ns.user_mappings.get(jid)
        if profile is not None and profile.name and not is_placeholder_name(
            profile.name, phone
        ):
            return profile.name
        return f"+{phone}"

    # Filters

    @property
    def filters(self) -> frozenset[str]:
        return frozenset(self._ns.filters)

    async def add_filter(self, word: str) -> str:
        normalized = word.strip().lower()
        if not normalized:
            raise ValueError("Filter word must not be empty")
        if normalized not in self._ns.filters:
            self._ns.filters.append(normalized)
            await self._commit(lambda: self._ns.filters.remove(normalized))
        return normalized

    async def clear_filters(self) -> None:
        if not self._ns.filters:
            return
        previous = list(self._ns.filters)
        self._ns.filters.clear()
        await self._commit(lambda: self._ns.filters.extend(previous))

    def is_filtered(self, text: str) -> bool:
        """Return true when the trimmed lower-cased `text` starts with a filter."""

        body = text.strip().lower()
        return any(body.startswith(word) for word in self._ns.filters)
