"""Telegram Bot API client for the forum supergroup side of the bridge.

Every method returns the decoded `result` of the Bot API envelope
(`{"ok": true, "result": ...}`) or raises `TelegramBotApiError`. Failures whose
description says the forum thread is gone raise `TopicNotFoundError`, the only
error class the engine recovers from automatically.

Media parameters accept `bytes` (uploaded as multipart), a `Path` (read and
uploaded) or a `str` (Telegram `file_id` or HTTP URL, passed through).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import anyio.to_thread as to_thread
import httpx

_TELEGRAM_API_BASE: Final[str] = "https://api.telegram.org"
_TOPIC_MISSING_MARKERS: Final[tuple[str, ...]] = (
    "thread not found",
    "topic_deleted",
    "topic_id_invalid",
    "topic not found",
)

type MediaInput = bytes | Path | str


class TelegramBotApiError(RuntimeError):
    """Raised when Telegram Bot API returns a non-ok response or invalid JSON."""

    def __init__(
        self,
        message: str,
        *,
        error_code: int | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.description = description


class TopicNotFoundError(TelegramBotApiError):
    """Raised when the target forum topic no longer exists."""


def is_topic_missing_description(description: str | None) -> bool:
    if not description:
        return False
    lowered = description.lower()
    return any(marker in lowered for marker in _TOPIC_MISSING_MARKERS)


def _form_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


@dataclass(slots=True)
class TelegramBotApi:
    """Async Telegram Bot API client (one shared `httpx.AsyncClient`)."""

    token: str
    timeout_seconds: float = 30.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)
    _client: httpx.AsyncClient | None = field(default=None, init=False, repr=False)

    def _method_url(self, method: str) -> str:
        # Never log/print this URL; it embeds the bot token.
        return f"{_TELEGRAM_API_BASE}/bot{self.token}/{method}"

    def _file_url(self, file_path: str) -> str:
        return f"{_TELEGRAM_API_BASE}/file/bot{self.token}/{file_path}"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self.transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        files: dict[str, tuple[str, bytes]] | None = None,
        timeout_seconds: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its `result`."""

        clean = {k: v for k, v in (params or {}).items() if v is not None}
        request_kwargs: dict[str, Any] = {}
        if files:
            request_kwargs["data"] = {k: _form_value(v) for k, v in clean.items()}
            request_kwargs["files"] = files
        else:
            request_kwargs["json"] = clean
        if timeout_seconds is not None:
            request_kwargs["timeout"] = timeout_seconds

        try:
            resp = await self._http().post(self._method_url(method), **request_kwargs)
        except httpx.HTTPError as e:  # pragma: no cover (network dependent)
            raise TelegramBotApiError(
                f"Telegram {method} failed: network error ({type(e).__name__})"
            ) from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise TelegramBotApiError(
                f"Telegram {method} failed: invalid JSON (HTTP {resp.status_code})"
            ) from e

        if not isinstance(payload, dict) or payload.get("ok") is not True:
            desc = payload.get("description") if isinstance(payload, dict) else None
            code = payload.get("error_code") if isinstance(payload, dict) else None
            desc = desc if isinstance(desc, str) and desc else None
            error_cls = (
                TopicNotFoundError
                if is_topic_missing_description(desc)
                else TelegramBotApiError
            )
            raise error_cls(
                f"Telegram {method} failed" + (f": {desc}" if desc else ""),
                error_code=code if isinstance(code, int) else None,
                description=desc,
            )

        if "result" not in payload:
            raise TelegramBotApiError(f"Telegram {method} failed: missing result")
        return payload["result"]

    async def _send_media(
        self,
        method: str,
        field_name: str,
        *,
        chat_id: int,
        media: MediaInput,
        filename: str,
        message_thread_id: int | None = None,
        caption: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_thread_id": message_thread_id,
            "caption": caption,
            **(extra or {}),
        }
        files: dict[str, tuple[str, bytes]] | None = None
        if isinstance(media, Path):
            files = {field_name: (media.name, await to_thread.run_sync(media.read_bytes))}
        elif isinstance(media, bytes):
            files = {field_name: (filename, media)}
        else:
            params[field_name] = media
        return await self.call(method, params, files=files)

    async def get_me(self) -> dict[str, Any]:
        return await self.call("getMe")

    async def get_updates(
        self,
        *,
        offset: int | None,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        """Long-poll `getUpdates`; the client timeout exceeds the server one."""

        result = await self.call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout_seconds,
                "allowed_updates": ["message", "callback_query"],
            },
            timeout_seconds=max(5, timeout_seconds + 15),
        )
        if not isinstance(result, list):
            raise TelegramBotApiError("Telegram getUpdates failed: missing result list")
        return [item for item in result if isinstance(item, dict)]

    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        message_thread_id: int | None = None,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        # Telegram rejects NUL-containing strings.
        safe_text = text.replace("\x00", "\ufffd")
        return await self.call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": safe_text,
                "message_thread_id": message_thread_id,
                "reply_to_message_id": reply_to_message_id,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
            },
        )

    async def edit_message_text(
        self,
        *,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> Any:
        return await self.call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
            },
        )

    async def send_photo(
        self,
        *,
        chat_id: int,
        photo: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "photo.jpg",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendPhoto",
            "photo",
            chat_id=chat_id,
            media=photo,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
        )

    async def send_video(
        self,
        *,
        chat_id: int,
        video: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "video.mp4",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendVideo",
            "video",
            chat_id=chat_id,
            media=video,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
        )

    async def send_animation(
        self,
        *,
        chat_id: int,
        animation: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "animation.mp4",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendAnimation",
            "animation",
            chat_id=chat_id,
            media=animation,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
        )

    async def send_video_note(
        self,
        *,
        chat_id: int,
        video_note: MediaInput,
        message_thread_id: int | None = None,
        filename: str = "video_note.mp4",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendVideoNote",
            "video_note",
            chat_id=chat_id,
            media=video_note,
            filename=filename,
            message_thread_id=message_thread_id,
        )

    async def send_voice(
        self,
        *,
        chat_id: int,
        voice: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "voice.ogg",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendVoice",
            "voice",
            chat_id=chat_id,
            media=voice,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
        )

    async def send_audio(
        self,
        *,
        chat_id: int,
        audio: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "audio.mp3",
        title: str | None = None,
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendAudio",
            "audio",
            chat_id=chat_id,
            media=audio,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
            extra={"title": title},
        )

    async def send_document(
        self,
        *,
        chat_id: int,
        document: MediaInput,
        message_thread_id: int | None = None,
        caption: str | None = None,
        filename: str = "document",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendDocument",
            "document",
            chat_id=chat_id,
            media=document,
            filename=filename,
            message_thread_id=message_thread_id,
            caption=caption,
        )

    async def send_sticker(
        self,
        *,
        chat_id: int,
        sticker: MediaInput,
        message_thread_id: int | None = None,
        filename: str = "sticker.webp",
    ) -> dict[str, Any]:
        return await self._send_media(
            "sendSticker",
            "sticker",
            chat_id=chat_id,
            media=sticker,
            filename=filename,
            message_thread_id=message_thread_id,
        )

    async def send_location(
        self,
        *,
        chat_id: int,
        latitude: float,
        longitude: float,
        message_thread_id: int | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "sendLocation",
            {
                "chat_id": chat_id,
                "latitude": latitude,
                "longitude": longitude,
                "message_thread_id": message_thread_id,
            },
        )

    async def send_contact(
        self,
        *,
        chat_id: int,
        phone_number: str,
        first_name: str,
        message_thread_id: int | None = None,
        vcard: str | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "sendContact",
            {
                "chat_id": chat_id,
                "phone_number": phone_number,
                "first_name": first_name,
                "vcard": vcard,
                "message_thread_id": message_thread_id,
            },
        )

    async def create_forum_topic(
        self,
        *,
        chat_id: int,
        name: str,
        icon_color: int | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "createForumTopic",
            {"chat_id": chat_id, "name": name[:128], "icon_color": icon_color},
        )

    async def edit_forum_topic(
        self,
        *,
        chat_id: int,
        message_thread_id: int,
        name: str,
    ) -> Any:
        return await self.call(
            "editForumTopic",
            {
                "chat_id": chat_id,
                "message_thread_id": message_thread_id,
                "name": name[:128],
            },
        )

    async def probe_topic(self, *, chat_id: int, message_thread_id: int) -> bool:
        """Return whether the forum topic still exists.

        The Bot API has no topic getter; a `typing` chat action scoped to the
        thread fails with "thread not found" once the topic is deleted.
        """

        try:
            await self.call(
                "sendChatAction",
                {
                    "chat_id": chat_id,
                    "message_thread_id": message_thread_id,
                    "action": "typing",
                },
            )
        except TopicNotFoundError:
            return False
        return True

    async def pin_chat_message(self, *, chat_id: int, message_id: int) -> Any:
        return await self.call(
            "pinChatMessage",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "disable_notification": True,
            },
        )

    async def set_message_reaction(
        self,
        *,
        chat_id: int,
        message_id: int,
        emoji: str,
    ) -> Any:
        return await self.call(
            "setMessageReaction",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "reaction": [{"type": "emoji", "emoji": emoji}],
            },
        )

    async def answer_callback_query(
        self,
        callback_query_id: str,
        *,
        text: str | None = None,
        show_alert: bool = False,
    ) -> Any:
        return await self.call(
            "answerCallbackQuery",
            {
                "callback_query_id": callback_query_id,
                "text": text,
                "show_alert": show_alert,
            },
        )

    async def set_my_commands(self, commands: list[dict[str, str]]) -> Any:
        return await self.call("setMyCommands", {"commands": commands})

    async def get_file(self, file_id: str) -> dict[str, Any]:
        return await self.call("getFile", {"file_id": file_id})

    async def download_file(self, file_path: str) -> bytes:
        """Download a file previously resolved with `get_file()`."""

        try:
            resp = await self._http().get(self._file_url(file_path))
        except httpx.HTTPError as e:  # pragma: no cover (network dependent)
            raise TelegramBotApiError(
                f"Telegram file download failed: network error ({type(e).__name__})"
            ) from e
        if resp.status_code != 200:
            raise TelegramBotApiError(
                f"Telegram file download failed: HTTP {resp.status_code}",
                error_code=resp.status_code,
            )
        return resp.content
