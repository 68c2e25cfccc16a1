from pathlib import Path

import anyio
import pytest

from fakes import CHAT_ID, FakeSink, FakeSource, make_bridge, make_config, sink_text
from wabridge.cli import build_source, load_source_factory
from wabridge.engine.bridge import start_bridge
from wabridge.runner import next_offset_for, run_bridge
from wabridge.source.protocol import SourceEvent
from wabridge.storage import MemoryDocumentStore


def test_next_offset_for_acknowledges_highest_update() -> None:
    assert next_offset_for([], None) is None
    assert next_offset_for([], 10) == 10
    assert next_offset_for([{"update_id": 5}, {"update_id": 3}], None) == 6
    assert next_offset_for([{"update_id": 4}], 10) == 10
    assert next_offset_for([{"no_id": True}, {"update_id": 12}], 10) == 13


@pytest.mark.anyio
async def test_run_bridge_stops_when_source_feed_ends(tmp_path: Path) -> None:
    source = FakeSource()
    source.events_to_emit = [
        SourceEvent(
            kind="message",
            payload={
                "key": {"remoteJid": "15551234567@s.whatsapp.net", "fromMe": False, "id": "M1"},
                "message": {"conversation": "hi"},
            },
        ),
        SourceEvent(kind="contacts.upsert", payload=[{"id": "4470000000@s.whatsapp.net", "name": "Bob"}]),
    ]
    bridge, sink, source, backend = await make_bridge(
        tmp_path, source=source, welcome_message_enabled=False, read_receipt_delay_seconds=60.0
    )

    with anyio.fail_after(5):
        await run_bridge(bridge)

    assert [c["text"] for c in sink.calls_to("send_message")] == ["hi"]
    assert bridge.store.contact_name("4470000000") == "Bob"
    # Pending receipts are flushed on shutdown.
    assert source.read_batches == [
        [{"remoteJid": "15551234567@s.whatsapp.net", "fromMe": False, "id": "M1"}]
    ]
    assert sink.closed is True
    assert backend.document["bridge"]["contactMappings"] == {"4470000000": "Bob"}


@pytest.mark.anyio
async def test_malformed_call_events_are_skipped(tmp_path: Path) -> None:
    source = FakeSource()
    source.events_to_emit = [
        SourceEvent(kind="call", payload=[{"from": 42}, {"from": "15551234567@s.whatsapp.net", "id": "C1"}]),
    ]
    bridge, sink, _source, _backend = await make_bridge(tmp_path, source=source)

    with anyio.fail_after(5):
        await run_bridge(bridge)

    notes = sink.calls_to("send_message")
    assert len(notes) == 1
    assert notes[0]["text"].startswith("📞 Voice call from")


@pytest.mark.anyio
async def test_aclose_is_idempotent(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path)

    await bridge.aclose()
    sink.closed = False
    await bridge.aclose()

    assert sink.closed is False


@pytest.mark.anyio
async def test_start_bridge_without_credentials_returns_none(tmp_path: Path) -> None:
    config = make_config(tmp_path, telegram_bot_token=None)

    bridge = await start_bridge(config, FakeSource(), document_store=MemoryDocumentStore())

    assert bridge is None


@pytest.mark.anyio
async def test_start_bridge_loads_state_and_announces(tmp_path: Path) -> None:
    sink = FakeSink()
    backend = MemoryDocumentStore({"bridge": {"chatMappings": {"15551234567@s.whatsapp.net": 7}}})

    bridge = await start_bridge(
        make_config(tmp_path), FakeSource(), document_store=backend, sink=sink
    )

    assert bridge is not None
    assert bridge.conversation_for_topic(7) == "15551234567@s.whatsapp.net"
    banner = sink.calls_to("send_message")[0]
    assert banner["chat_id"] == CHAT_ID
    assert "💬 Mapped chats: 1" in banner["text"]
    await bridge.aclose()


@pytest.mark.anyio
async def test_sink_update_without_thread_is_ignored(tmp_path: Path) -> None:
    bridge, sink, source, _backend = await make_bridge(tmp_path)
    bridge.grant_operator(42)

    await bridge.handle_sink_update({"update_id": 1, "message": sink_text("hello", thread_id=None)})

    assert sink.calls == []
    assert source.sent == []


def test_load_source_factory_validates_path() -> None:
    assert load_source_factory("fakes:FakeSource") is FakeSource
    with pytest.raises(ValueError):
        load_source_factory("fakes")
    with pytest.raises(ValueError):
        load_source_factory("fakes:CHAT_ID")
    with pytest.raises(AttributeError):
        load_source_factory("fakes:Missing")


@pytest.mark.anyio
async def test_build_source_accepts_sync_and_async_factories() -> None:
    async def async_factory() -> FakeSource:
        return FakeSource()

    assert isinstance(await build_source(FakeSource), FakeSource)
    assert isinstance(await build_source(async_factory), FakeSource)
    with pytest.raises(TypeError):
        await build_source(lambda: object())
