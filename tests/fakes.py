"""In-memory stand-ins for the Telegram and WhatsApp collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import anyio

from wabridge.config import BridgeConfig
from wabridge.engine.bridge import Bridge
from wabridge.source.protocol import Presence, SourceEvent
from wabridge.storage.document import MemoryDocumentStore
from wabridge.storage.mappings import MappingStore

CHAT_ID = -1001234567890


class FakeSink:
    """Records every Bot API call; `fail` queues exceptions per method."""

    def __init__(self, *, first_topic_id: int = 100, create_delay: float = 0.0) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail: dict[str, list[Exception]] = {}
        self.missing_topics: set[int] = set()
        self.files: dict[str, bytes] = {}
        self.create_delay = create_delay
        self._next_topic_id = first_topic_id
        self._next_message_id = 1
        self.closed = False

    def _record(self, method: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((method, kwargs))
        queued = self.fail.get(method)
        if queued:
            raise queued.pop(0)
        message_id = self._next_message_id
        self._next_message_id += 1
        return {"message_id": message_id, "chat": {"id": kwargs.get("chat_id")}}

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def send_message(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_message", kwargs)

    async def edit_message_text(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("edit_message_text", kwargs)

    async def send_photo(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_photo", self._snapshot_media(kwargs, "photo"))

    async def send_video(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_video", self._snapshot_media(kwargs, "video"))

    async def send_animation(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_animation", self._snapshot_media(kwargs, "animation"))

    async def send_video_note(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_video_note", self._snapshot_media(kwargs, "video_note"))

    async def send_voice(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_voice", self._snapshot_media(kwargs, "voice"))

    async def send_audio(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_audio", self._snapshot_media(kwargs, "audio"))

    async def send_document(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_document", self._snapshot_media(kwargs, "document"))

    async def send_sticker(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_sticker", self._snapshot_media(kwargs, "sticker"))

    async def send_location(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_location", kwargs)

    async def send_contact(self, **kwargs: Any) -> dict[str, Any]:
        return self._record("send_contact", kwargs)

    @staticmethod
    def _snapshot_media(kwargs: dict[str, Any], field: str) -> dict[str, Any]:
        # Scratch files are deleted after the call; keep their bytes.
        media = kwargs.get(field)
        if isinstance(media, Path):
            return {**kwargs, field: media.read_bytes(), "path": media}
        return kwargs

    async def create_forum_topic(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("create_forum_topic", kwargs))
        if self.create_delay:
            await anyio.sleep(self.create_delay)
        queued = self.fail.get("create_forum_topic")
        if queued:
            raise queued.pop(0)
        topic_id = self._next_topic_id
        self._next_topic_id += 1
        return {"message_thread_id": topic_id, "name": kwargs["name"]}

    async def edit_forum_topic(self, **kwargs: Any) -> bool:
        self._record("edit_forum_topic", kwargs)
        return True

    async def probe_topic(self, *, chat_id: int, message_thread_id: int) -> bool:
        self.calls.append(("probe_topic", {"message_thread_id": message_thread_id}))
        return message_thread_id not in self.missing_topics

    async def pin_chat_message(self, **kwargs: Any) -> bool:
        self._record("pin_chat_message", kwargs)
        return True

    async def set_message_reaction(self, **kwargs: Any) -> bool:
        self._record("set_message_reaction", kwargs)
        return True

    async def set_my_commands(self, commands: list[dict[str, str]]) -> bool:
        self._record("set_my_commands", {"commands": commands})
        return True

    async def answer_callback_query(self, callback_query_id: str, **kwargs: Any) -> bool:
        self._record("answer_callback_query", {"callback_query_id": callback_query_id, **kwargs})
        return True

    async def get_file(self, file_id: str) -> dict[str, Any]:
        self.calls.append(("get_file", {"file_id": file_id}))
        return {"file_id": file_id, "file_path": f"files/{file_id}"}

    async def download_file(self, file_path: str) -> bytes:
        self.calls.append(("download_file", {"file_path": file_path}))
        return self.files[file_path.removeprefix("files/")]

    async def get_updates(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.calls.append(("get_updates", kwargs))
        await anyio.sleep(3600)
        return []

    async def aclose(self) -> None:
        self.closed = True

    def reactions(self) -> list[str]:
        return [kwargs["emoji"] for kwargs in self.calls_to("set_message_reaction")]


class FakeSource:
    def __init__(self, *, user_jid: str | None = "10000@s.whatsapp.net") -> None:
        self._user_jid = user_jid
        self.sent: list[tuple[str, dict[str, Any], dict[str, Any] | None]] = []
        self.read_batches: list[list[dict[str, Any]]] = []
        self.presences: list[tuple[str, str | None]] = []
        self.pictures: dict[str, str] = {}
        self.groups: dict[str, dict[str, Any]] = {}
        self.statuses: dict[str, str] = {}
        self.contacts: list[dict[str, Any]] = []
        self.media: dict[str, bytes] = {}
        self.invites: dict[str, str] = {}
        self.accepted_invites: list[str] = []
        self.events_to_emit: list[SourceEvent] = []
        self.send_error: Exception | None = None
        self._next_id = 1

    @property
    def user_jid(self) -> str | None:
        return self._user_jid

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        *,
        quoted: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, content, quoted))
        message_id = f"SENT{self._next_id}"
        self._next_id += 1
        return {"key": {"remoteJid": jid, "fromMe": True, "id": message_id}}

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        self.read_batches.append(list(keys))

    async def send_presence_update(self, presence: Presence, jid: str | None = None) -> None:
        self.presences.append((presence, jid))

    async def profile_picture_url(self, jid: str) -> str | None:
        return self.pictures.get(jid)

    async def group_metadata(self, jid: str) -> dict[str, Any]:
        if jid not in self.groups:
            raise LookupError(f"unknown group {jid}")
        return self.groups[jid]

    async def fetch_status(self, jid: str) -> dict[str, Any] | None:
        status = self.statuses.get(jid)
        return {"status": status} if status else None

    async def fetch_contacts(self) -> list[dict[str, Any]]:
        return list(self.contacts)

    async def participating_groups(self) -> dict[str, dict[str, Any]]:
        return {jid: {"id": jid, **meta} for jid, meta in self.groups.items()}

    async def accept_group_invite(self, code: str) -> str | None:
        self.accepted_invites.append(code)
        return self.invites.get(code)

    async def download_media_stream(
        self, media: dict[str, Any], media_type: str
    ) -> AsyncIterator[bytes]:
        data = self.media[media["mediaKey"]]
        for start in range(0, len(data), 4):
            yield data[start : start + 4]

    async def events(self) -> AsyncIterator[SourceEvent]:
        for event in self.events_to_emit:
            yield event


class FakeConverter:
    def __init__(self, *, fail_video_note: bool = False, fail_sticker: bool = False) -> None:
        self.fail_video_note = fail_video_note
        self.fail_sticker = fail_sticker

    async def to_video_note(self, data: bytes) -> bytes:
        if self.fail_video_note:
            raise RuntimeError("ffmpeg missing")
        return b"NOTE:" + data

    async def sticker_to_webp(self, data: bytes) -> bytes:
        if self.fail_sticker:
            raise RuntimeError("ffmpeg missing")
        return b"WEBP:" + data


def make_config(tmp_path: Path, **overrides: Any) -> BridgeConfig:
    values: dict[str, Any] = {
        "telegram_bot_token": "test-token",
        "telegram_chat_id": CHAT_ID,
        "bot_password": "s3cret",
        "database_path": tmp_path / "db.json",
        "temp_dir": tmp_path / "tmp",
        "read_receipt_delay_seconds": 0.05,
        "typing_pause_seconds": 0.05,
        "available_delay_seconds": 0.05,
        "presence_min_interval_seconds": 0.0,
        "reconcile_delay_seconds": 0.0,
    }
    values.update(overrides)
    return BridgeConfig(**values)


async def make_bridge(
    tmp_path: Path,
    *,
    sink: FakeSink | None = None,
    source: FakeSource | None = None,
    converter: FakeConverter | None = None,
    document: dict[str, Any] | None = None,
    **config_overrides: Any,
) -> tuple[Bridge, FakeSink, FakeSource, MemoryDocumentStore]:
    sink = sink or FakeSink()
    source = source or FakeSource()
    backend = MemoryDocumentStore(document)
    store = MappingStore(backend)
    await store.load()
    bridge = Bridge(
        config=make_config(tmp_path, **config_overrides),
        store=store,
        sink=sink,  # type: ignore[arg-type]
        source=source,
        converter=converter or FakeConverter(),
    )
    return bridge, sink, source, backend


def inbound_text(
    jid: str,
    text: str,
    *,
    message_id: str = "MSG1",
    participant: str | None = None,
    push_name: str | None = None,
    from_me: bool = False,
) -> dict[str, Any]:
    key: dict[str, Any] = {"remoteJid": jid, "fromMe": from_me, "id": message_id}
    if participant is not None:
        key["participant"] = participant
    message: dict[str, Any] = {"key": key, "message": {"conversation": text}}
    if push_name is not None:
        message["pushName"] = push_name
    return message


def sink_text(
    text: str,
    *,
    thread_id: int | None,
    user_id: int = 42,
    message_id: int = 500,
    **extra: Any,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "message_id": message_id,
        "chat": {"id": CHAT_ID, "type": "supergroup"},
        "from": {"id": user_id, "is_bot": False, "first_name": "Op"},
        "text": text,
    }
    if thread_id is not None:
        message["message_thread_id"] = thread_id
        message["is_topic_message"] = True
    message.update(extra)
    return message
