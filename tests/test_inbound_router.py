from pathlib import Path

import anyio
import pytest

from fakes import FakeConverter, FakeSink, FakeSource, inbound_text, make_bridge
from wabridge.media import STICKER_FALLBACK_CAPTION

CONTACT = "15551234567@s.whatsapp.net"
GROUP = "120363000000000001@g.us"
PARTICIPANT = "4479000000@s.whatsapp.net"


@pytest.mark.anyio
async def test_group_text_end_to_end(tmp_path: Path) -> None:
    source = FakeSource()
    source.groups[GROUP] = {"subject": "Climbing Crew", "participants": [{"id": PARTICIPANT}]}
    bridge, sink, _source, backend = await make_bridge(tmp_path, source=source)

    message = inbound_text(GROUP, "hello", participant=PARTICIPANT, push_name="Priya")
    assert await bridge.route_inbound(message) is True

    creates = sink.calls_to("create_forum_topic")
    assert len(creates) == 1
    assert creates[0]["name"] == "Climbing Crew"

    sends = sink.calls_to("send_message")
    assert len(sends) == 2
    welcome, forwarded = sends
    assert "Group Information" in welcome["text"]
    assert forwarded["text"] == "👤 Priya:\nhello"
    assert forwarded["message_thread_id"] == 100

    assert backend.document["bridge"]["chatMappings"][GROUP]["topicId"] == 100
    assert bridge.store.get_user(PARTICIPANT).message_count == 1


@pytest.mark.anyio
async def test_direct_text_is_not_prefixed_and_queues_read_receipt(tmp_path: Path) -> None:
    bridge, sink, source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)

    assert await bridge.route_inbound(inbound_text(CONTACT, "hi there", push_name="Alice")) is True

    assert sink.calls_to("send_message")[0]["text"] == "hi there"
    assert bridge.receipts.pending(CONTACT) == [
        {"remoteJid": CONTACT, "fromMe": False, "id": "MSG1"}
    ]
    await anyio.sleep(0.15)
    assert source.read_batches == [[{"remoteJid": CONTACT, "fromMe": False, "id": "MSG1"}]]


@pytest.mark.anyio
async def test_host_supplied_text_overrides_extraction(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)

    await bridge.route_inbound(inbound_text(CONTACT, "raw"), text="rendered")

    assert sink.calls_to("send_message")[0]["text"] == "rendered"


@pytest.mark.anyio
async def test_own_messages_skipped_unless_mirroring_enabled(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)
    assert await bridge.route_inbound(inbound_text(CONTACT, "mine", from_me=True)) is False
    assert sink.calls == []

    bridge, sink, _source, _backend = await make_bridge(
        tmp_path, welcome_message_enabled=False, mirror_own_messages=True
    )
    assert await bridge.route_inbound(inbound_text(CONTACT, "mine", from_me=True)) is True
    assert sink.calls_to("send_message")[0]["text"] == "📤 mine"
    assert bridge.receipts.pending(CONTACT) == []


@pytest.mark.anyio
async def test_view_once_image_is_unwrapped_and_scratch_file_removed(tmp_path: Path) -> None:
    source = FakeSource()
    source.media["key-1"] = b"JPEGDATA"
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path, source=source, welcome_message_enabled=False
    )
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "IMG1"},
        "message": {
            "viewOnceMessageV2": {
                "message": {"imageMessage": {"mediaKey": "key-1", "caption": "look"}}
            }
        },
    }

    assert await bridge.route_inbound(message) is True

    photo = sink.calls_to("send_photo")[0]
    assert photo["photo"] == b"JPEGDATA"
    assert photo["caption"] == "👁️ View once\nlook"
    assert not photo["path"].exists()
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.anyio
async def test_sticker_falls_back_to_captioned_photo(tmp_path: Path) -> None:
    source = FakeSource()
    source.media["stk"] = b"RIFFWEBP"
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path,
        source=source,
        converter=FakeConverter(fail_sticker=True),
        welcome_message_enabled=False,
    )
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "S1"},
        "message": {"stickerMessage": {"mediaKey": "stk"}},
    }

    assert await bridge.route_inbound(message) is True

    assert sink.calls_to("send_sticker") == []
    photo = sink.calls_to("send_photo")[0]
    assert photo["caption"] == STICKER_FALLBACK_CAPTION
    assert photo["photo"] == b"RIFFWEBP"


@pytest.mark.anyio
async def test_video_note_falls_back_to_original_clip(tmp_path: Path) -> None:
    source = FakeSource()
    source.media["ptv"] = b"MP4CLIP"
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path,
        source=source,
        converter=FakeConverter(fail_video_note=True),
        welcome_message_enabled=False,
    )
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "V1"},
        "message": {"ptvMessage": {"mediaKey": "ptv"}},
    }

    assert await bridge.route_inbound(message) is True

    assert sink.calls_to("send_video_note") == []
    assert sink.calls_to("send_video")[0]["video"] == b"MP4CLIP"


@pytest.mark.anyio
async def test_video_note_is_transcoded(tmp_path: Path) -> None:
    source = FakeSource()
    source.media["ptv"] = b"MP4CLIP"
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path, source=source, welcome_message_enabled=False
    )
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "V1"},
        "message": {"ptvMessage": {"mediaKey": "ptv"}},
    }

    assert await bridge.route_inbound(message) is True

    assert sink.calls_to("send_video_note")[0]["video_note"] == b"NOTE:MP4CLIP"


@pytest.mark.anyio
async def test_media_without_key_is_dropped(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "A1"},
        "message": {"audioMessage": {"ptt": True}},
    }

    assert await bridge.route_inbound(message) is False
    assert sink.calls_to("send_voice") == []
    assert bridge.receipts.pending(CONTACT) == []


@pytest.mark.anyio
async def test_location_and_contact_card(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)
    location = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "L1"},
        "message": {"locationMessage": {"degreesLatitude": 51.5, "degreesLongitude": -0.12}},
    }
    card = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "C1"},
        "message": {
            "contactMessage": {
                "displayName": "Dana",
                "vcard": "BEGIN:VCARD\nFN:Dana\nTEL;type=CELL;waid=4470001111:+44 7000 1111\nEND:VCARD",
            }
        },
    }

    assert await bridge.route_inbound(location) is True
    assert await bridge.route_inbound(card) is True

    assert sink.calls_to("send_location")[0]["latitude"] == 51.5
    contact = sink.calls_to("send_contact")[0]
    assert contact["phone_number"] == "+4470001111"
    assert contact["first_name"] == "Dana"


@pytest.mark.anyio
async def test_send_failure_is_contained(tmp_path: Path) -> None:
    from wabridge.sink.api import TelegramBotApiError

    sink = FakeSink()
    sink.fail["send_message"] = [TelegramBotApiError("Telegram sendMessage failed: Too Many Requests")]
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path, sink=sink, welcome_message_enabled=False
    )

    assert await bridge.route_inbound(inbound_text(CONTACT, "one")) is False
    assert await bridge.route_inbound(inbound_text(CONTACT, "two", message_id="MSG2")) is True
    assert [s["text"] for s in sink.calls_to("send_message")] == ["one", "two"]


@pytest.mark.anyio
async def test_redelivered_message_is_forwarded_once(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)

    assert await bridge.route_inbound(inbound_text(CONTACT, "hello", message_id="ABC")) is True
    assert await bridge.route_inbound(inbound_text(CONTACT, "hello", message_id="ABC")) is False
    assert await bridge.route_inbound(inbound_text(GROUP, "hello", message_id="ABC")) is True

    assert [s["text"] for s in sink.calls_to("send_message")] == ["hello", "hello"]
    assert bridge.store.get_user(CONTACT).message_count == 1


@pytest.mark.anyio
async def test_redelivery_is_accepted_after_window_or_failure(tmp_path: Path) -> None:
    from wabridge.sink.api import TelegramBotApiError

    sink = FakeSink()
    sink.fail["send_message"] = [TelegramBotApiError("Telegram sendMessage failed: Bad Gateway")]
    bridge, sink, _source, _backend = await make_bridge(
        tmp_path, sink=sink, welcome_message_enabled=False
    )
    now = [0.0]
    bridge.inbound._clock = lambda: now[0]

    # A failed attempt does not claim the id.
    assert await bridge.route_inbound(inbound_text(CONTACT, "hello", message_id="ABC")) is False
    assert await bridge.route_inbound(inbound_text(CONTACT, "hello", message_id="ABC")) is True

    now[0] = bridge.config.message_dedupe_seconds + 1
    assert await bridge.route_inbound(inbound_text(CONTACT, "hello", message_id="ABC")) is True
    assert len(sink.calls_to("send_message")) == 3


@pytest.mark.anyio
async def test_unsupported_content_still_records_sender_and_topic(tmp_path: Path) -> None:
    bridge, sink, _source, _backend = await make_bridge(tmp_path, welcome_message_enabled=False)
    message = {
        "key": {"remoteJid": CONTACT, "fromMe": False, "id": "P1"},
        "message": {"pollCreationMessage": {"name": "Lunch?"}},
        "pushName": "Alice",
    }

    assert await bridge.route_inbound(message) is False

    assert bridge.store.get_user(CONTACT).message_count == 1
    assert bridge.store.get_topic_id(CONTACT) == 100
    assert sink.calls_to("create_forum_topic")[0]["name"] == "Alice"
    assert sink.calls_to("send_message") == []
