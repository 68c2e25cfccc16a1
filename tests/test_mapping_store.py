import json
from pathlib import Path

import pytest

from wabridge.storage import (
    BRIDGE_DOCUMENT_VERSION,
    DocumentStoreError,
    JsonFileDocumentStore,
    MappingStore,
    MemoryDocumentStore,
    is_placeholder_name,
    migrate_bridge_namespace,
    phone_from_jid,
)

CONTACT = "15551234567@s.whatsapp.net"


def test_phone_from_jid_strips_server_and_device() -> None:
    assert phone_from_jid("15551234567@s.whatsapp.net") == "15551234567"
    assert phone_from_jid("15551234567:12@s.whatsapp.net") == "15551234567"


@pytest.mark.parametrize(
    ("name", "placeholder"),
    [
        (None, True),
        ("", True),
        ("15551234567", True),
        ("+1 555 123", True),
        ("Al", True),
        ("Ali", False),
        ("Alice", False),
    ],
)
def test_is_placeholder_name(name: str | None, placeholder: bool) -> None:
    assert is_placeholder_name(name, "15551234567") is placeholder


def test_migration_upgrades_legacy_integer_mappings() -> None:
    ns = migrate_bridge_namespace(
        {
            "chatMappings": {CONTACT: 12, "status@broadcast": {"topicId": 3}},
            "contactMappings": {"1555": "Alice", "1666": None},
            "filters": ["spam"],
        }
    )

    assert ns.version == BRIDGE_DOCUMENT_VERSION
    assert ns.chat_mappings[CONTACT].topic_id == 12
    assert ns.chat_mappings[CONTACT].profile_picture_url is None
    assert ns.chat_mappings["status@broadcast"].topic_id == 3
    assert ns.contact_mappings == {"1555": "Alice"}
    assert ns.filters == ["spam"]


def test_migration_rejects_non_object_namespace() -> None:
    with pytest.raises(ValueError):
        migrate_bridge_namespace(["not", "a", "dict"])


@pytest.mark.anyio
async def test_load_migrates_once_and_preserves_host_keys() -> None:
    backend = MemoryDocumentStore(
        {"users": {"x": 1}, "bridge": {"chatMappings": {CONTACT: 12}}}
    )
    store = MappingStore(backend)
    await store.load()

    assert store.get_topic_id(CONTACT) == 12
    assert store.conversation_for_topic(12) == CONTACT
    assert backend.save_count == 1
    assert backend.document["users"] == {"x": 1}
    assert backend.document["bridge"]["version"] == BRIDGE_DOCUMENT_VERSION
    assert backend.document["bridge"]["chatMappings"][CONTACT]["topicId"] == 12

    reloaded = MappingStore(backend)
    await reloaded.load()
    assert backend.save_count == 1


@pytest.mark.anyio
async def test_set_topic_is_write_through_and_unique() -> None:
    backend = MemoryDocumentStore()
    store = MappingStore(backend)
    await store.load()

    await store.set_topic(CONTACT, 5)
    assert backend.document["bridge"]["chatMappings"][CONTACT]["topicId"] == 5

    with pytest.raises(ValueError):
        await store.set_topic("other@s.whatsapp.net", 5)

    await store.set_topic(CONTACT, 6)
    assert store.conversation_for_topic(5) is None
    assert store.conversation_for_topic(6) == CONTACT

    removed = await store.delete_mapping(CONTACT)
    assert removed is not None and removed.topic_id == 6
    assert store.conversation_for_topic(6) is None
    assert CONTACT not in backend.document["bridge"]["chatMappings"]


@pytest.mark.anyio
async def test_contact_merge_never_downgrades_to_placeholder() -> None:
    store = MappingStore(MemoryDocumentStore())
    await store.load()

    assert await store.upsert_contact("15551234567", "+15551234567") is True
    assert store.contact_name("15551234567") == "+15551234567"

    assert await store.upsert_contact("15551234567", "Alice") is True
    assert store.contact_name("15551234567") == "Alice"

    for placeholder in ("15551234567", "+1555", "Al", "", None):
        assert await store.upsert_contact("15551234567", placeholder) is False
        assert store.contact_name("15551234567") == "Alice"

    assert await store.upsert_contact("15551234567", "Alice Cooper") is True
    assert store.contact_name("15551234567") == "Alice Cooper"


@pytest.mark.anyio
async def test_merge_contacts_flushes_once_per_batch() -> None:
    backend = MemoryDocumentStore()
    store = MappingStore(backend)
    await store.load()

    changed = await store.merge_contacts(
        [("1555", "Alice"), ("1666", "Bob"), ("1777", None), ("1555", "Alice")]
    )

    assert changed == ["1555", "1666"]
    assert backend.save_count == 1


@pytest.mark.anyio
async def test_display_name_prefers_directory_then_profile() -> None:
    store = MappingStore(MemoryDocumentStore())
    await store.load()

    assert store.display_name(CONTACT) == "+15551234567"
    await store.record_participant(CONTACT, "Ally")
    assert store.display_name(CONTACT) == "Ally"
    await store.upsert_contact("15551234567", "Alice")
    assert store.display_name(CONTACT) == "Alice"


@pytest.mark.anyio
async def test_filters_normalize_and_match_prefixes() -> None:
    store = MappingStore(MemoryDocumentStore())
    await store.load()

    assert await store.add_filter("  PROMO ") == "promo"
    await store.add_filter("promo")
    assert store.filters == frozenset({"promo"})
    assert store.is_filtered("  Promo code inside")
    assert not store.is_filtered("no promo here")

    with pytest.raises(ValueError):
        await store.add_filter("   ")

    await store.clear_filters()
    assert not store.is_filtered("promo code")


def test_json_document_store_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "database.json"
    store = JsonFileDocumentStore(path)

    assert store.load() == {}
    store.save({"bridge": {"filters": ["a"]}, "other": True})

    assert json.loads(path.read_text(encoding="utf-8"))["other"] is True
    assert store.load()["bridge"] == {"filters": ["a"]}
    assert [p.name for p in path.parent.iterdir()] == ["database.json"]


def test_json_document_store_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "database.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(DocumentStoreError) as excinfo:
        JsonFileDocumentStore(path).load()
    assert str(path) in str(excinfo.value)


class FailingDocumentStore(MemoryDocumentStore):
    def __init__(self, document: dict | None = None) -> None:
        super().__init__(document)
        self.failing = False

    def save(self, document: dict) -> None:
        if self.failing:
            raise DocumentStoreError("disk full")
        super().save(document)


@pytest.mark.anyio
async def test_failed_flush_reverts_the_mutation() -> None:
    backend = FailingDocumentStore({"bridge": {"version": BRIDGE_DOCUMENT_VERSION}})
    store = MappingStore(backend)
    await store.load()
    await store.set_topic(CONTACT, 7)
    await store.upsert_contact("15551234567", "Alice")
    await store.add_filter("spam")
    backend.failing = True

    with pytest.raises(DocumentStoreError):
        await store.set_topic(CONTACT, 8)
    with pytest.raises(DocumentStoreError):
        await store.set_topic("4470000000@s.whatsapp.net", 9)
    with pytest.raises(DocumentStoreError):
        await store.delete_mapping(CONTACT)
    with pytest.raises(DocumentStoreError):
        await store.merge_contacts([("15551234567", "Alice Smith"), ("4470000000", "Bob")])
    with pytest.raises(DocumentStoreError):
        await store.add_filter("promo")
    with pytest.raises(DocumentStoreError):
        await store.clear_filters()
    with pytest.raises(DocumentStoreError):
        await store.record_participant(CONTACT, "Alice")

    assert store.get_topic_id(CONTACT) == 7
    assert store.conversation_for_topic(7) == CONTACT
    assert store.conversation_for_topic(8) is None
    assert store.get_topic_id("4470000000@s.whatsapp.net") is None
    assert store.contacts() == [("15551234567", "Alice")]
    assert store.filters == frozenset({"spam"})
    assert store.get_user(CONTACT) is None


def test_json_document_store_removes_temp_file_on_failed_write(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "database.json"
    store = JsonFileDocumentStore(path)

    def refuse(self: Path, target: Path) -> Path:
        raise OSError("read-only file system")

    monkeypatch.setattr(Path, "replace", refuse)

    with pytest.raises(DocumentStoreError):
        store.save({"bridge": {}})
    assert list(tmp_path.iterdir()) == []
