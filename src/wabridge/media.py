"""Media pipeline shared by both routers.

Source → Sink: the session stream-decrypts the payload (keyed by the message's
`mediaKey`), the bytes are buffered, written to a scratch file under
`temp_dir`, uploaded, and the scratch file is removed on every path.

Sink → Source: files are resolved with `getFile`, downloaded into memory and
handed to the session's send call.

Transcoding is delegated to a `MediaConverter`. Conversion failures never drop
a message: video notes fall back to the original clip, stickers to a captioned
photo.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

import anyio
import anyio.to_thread as to_thread

from .sink.api import TelegramBotApi
from .source.messages import MEDIA_DOWNLOAD_TYPES, SourceContentKind
from .source.protocol import SourceClient

logger = logging.getLogger(__name__)

VIDEO_NOTE_MAX_SECONDS = 60
VIDEO_NOTE_SIZE = 384
STICKER_FALLBACK_CAPTION = "🎨 Sticker"

type SinkMediaKind = Literal[
    "photo",
    "video",
    "animation",
    "video_note",
    "voice",
    "audio",
    "document",
    "sticker",
]


class MediaError(RuntimeError):
    """Raised for undecodable, empty or keyless media payloads."""


class MediaConverter(Protocol):
    async def to_video_note(self, data: bytes) -> bytes:
        """Square-crop and cap a clip at `VIDEO_NOTE_MAX_SECONDS`."""

    async def sticker_to_webp(self, data: bytes) -> bytes:
        """Re-encode a sticker as a static WebP image."""


class FfmpegMediaConverter:
    """`MediaConverter` backed by the `ffmpeg` binary."""

    def __init__(self, temp_dir: Path, *, ffmpeg: str = "ffmpeg") -> None:
        self.temp_dir = temp_dir
        self.ffmpeg = ffmpeg

    async def _transcode(self, data: bytes, *, in_suffix: str, out_suffix: str, args: list[str]) -> bytes:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.temp_dir) as work:
            src = Path(work) / f"in{in_suffix}"
            dst = Path(work) / f"out{out_suffix}"
            await to_thread.run_sync(src.write_bytes, data)
            command = [self.ffmpeg, "-y", "-loglevel", "error", "-i", str(src), *args, str(dst)]
            try:
                await anyio.run_process(command, check=True)
            except Exception as e:
                raise MediaError(f"ffmpeg failed: {type(e).__name__}: {e}") from e
            return await to_thread.run_sync(dst.read_bytes)

    async def to_video_note(self, data: bytes) -> bytes:
        crop = (
            "crop='min(iw,ih)':'min(iw,ih)',"
            f"scale={VIDEO_NOTE_SIZE}:{VIDEO_NOTE_SIZE}"
        )
        return await self._transcode(
            data,
            in_suffix=".mp4",
            out_suffix=".mp4",
            args=[
                "-t",
                str(VIDEO_NOTE_MAX_SECONDS),
                "-vf",
                crop,
                "-c:v",
                "libx264",
                "-c:a",
                "aac",
                "-movflags",
                "+faststart",
            ],
        )

    async def sticker_to_webp(self, data: bytes) -> bytes:
        return await self._transcode(
            data,
            in_suffix=".webp",
            out_suffix=".webp",
            args=["-frames:v", "1", "-c:v", "libwebp", "-lossless", "1"],
        )


@dataclass(frozen=True, slots=True)
class PreparedMedia:
    """Bytes ready for one Sink upload call."""

    kind: SinkMediaKind
    data: bytes
    filename: str
    caption: str | None = None


def _suffix(filename: str) -> str:
    return Path(filename).suffix or ".bin"


class MediaPipeline:
    def __init__(
        self,
        *,
        source: SourceClient,
        sink: TelegramBotApi,
        chat_id: int,
        temp_dir: Path,
        converter: MediaConverter,
    ) -> None:
        self.source = source
        self.sink = sink
        self.chat_id = chat_id
        self.temp_dir = temp_dir
        self.converter = converter
        self._live_scratch: set[Path] = set()

    async def download_source_media(
        self, payload: dict[str, Any], kind: SourceContentKind
    ) -> bytes:
        """Stream-decrypt and buffer a Source media payload."""

        media_type = MEDIA_DOWNLOAD_TYPES.get(kind)
        if media_type is None:
            raise MediaError(f"{kind} content carries no downloadable media")
        if not payload.get("mediaKey"):
            raise MediaError(f"{kind} media has no content key")

        chunks: list[bytes] = []
        try:
            async for chunk in self.source.download_media_stream(payload, media_type):
                chunks.append(chunk)
        except MediaError:
            raise
        except Exception as e:
            raise MediaError(f"Failed to decrypt {kind} media: {type(e).__name__}: {e}") from e
        data = b"".join(chunks)
        if not data:
            raise MediaError(f"Decrypted {kind} media is empty")
        return data

    async def prepare_for_sink(
        self,
        kind: SourceContentKind,
        payload: dict[str, Any],
        data: bytes,
        *,
        caption: str | None,
    ) -> PreparedMedia:
        """Pick the Sink upload kind and apply conversions with fallbacks."""

        match kind:
            case "sticker":
                try:
                    webp = await self.converter.sticker_to_webp(data)
                except Exception as e:
                    logger.warning("Sticker conversion failed, sending as photo: %s", e)
                    return PreparedMedia("photo", data, "sticker.webp", STICKER_FALLBACK_CAPTION)
                return PreparedMedia("sticker", webp, "sticker.webp")
            case "video_note":
                try:
                    note = await self.converter.to_video_note(data)
                except Exception as e:
                    logger.warning("Video note transcoding failed, sending original: %s", e)
                    return PreparedMedia("video", data, "video_note.mp4", caption)
                return PreparedMedia("video_note", note, "video_note.mp4")
            case "video":
                if payload.get("gifPlayback"):
                    return PreparedMedia("animation", data, "animation.mp4", caption)
                return PreparedMedia("video", data, "video.mp4", caption)
            case "image":
                return PreparedMedia("photo", data, "photo.jpg", caption)
            case "audio":
                if payload.get("ptt"):
                    return PreparedMedia("voice", data, "voice.ogg", caption)
                return PreparedMedia("audio", data, "audio.mp3", caption)
            case "document":
                filename = payload.get("fileName") or payload.get("title") or "document"
                return PreparedMedia("document", data, str(filename), caption)
        raise MediaError(f"Unsupported media kind: {kind}")

    @asynccontextmanager
    async def scratch_file(self, media: PreparedMedia) -> AsyncIterator[Path]:
        """Write `media` to a scratch file that is removed on exit."""

        await to_thread.run_sync(lambda: self.temp_dir.mkdir(parents=True, exist_ok=True))
        fd, raw_path = tempfile.mkstemp(
            dir=self.temp_dir, prefix="wa-", suffix=_suffix(media.filename)
        )
        os.close(fd)
        path = Path(raw_path)
        self._live_scratch.add(path)
        try:
            await to_thread.run_sync(path.write_bytes, media.data)
            yield path
        finally:
            self._live_scratch.discard(path)
            path.unlink(missing_ok=True)

    async def upload(
        self, media: PreparedMedia, path: Path, *, topic_id: int
    ) -> dict[str, Any]:
        """Send a prepared scratch file into a topic (one attempt)."""

        common: dict[str, Any] = {"chat_id": self.chat_id, "message_thread_id": topic_id}
        match media.kind:
            case "photo":
                return await self.sink.send_photo(photo=path, caption=media.caption, **common)
            case "video":
                return await self.sink.send_video(video=path, caption=media.caption, **common)
            case "animation":
                return await self.sink.send_animation(
                    animation=path, caption=media.caption, **common
                )
            case "video_note":
                return await self.sink.send_video_note(video_note=path, **common)
            case "voice":
                return await self.sink.send_voice(voice=path, caption=media.caption, **common)
            case "audio":
                return await self.sink.send_audio(audio=path, caption=media.caption, **common)
            case "document":
                return await self.sink.send_document(
                    document=media.data,
                    filename=media.filename,
                    caption=media.caption,
                    **common,
                )
            case "sticker":
                return await self.sink.send_sticker(sticker=path, **common)
        raise MediaError(f"Unsupported Sink media kind: {media.kind}")

    async def download_sink_file(self, file_id: str) -> bytes:
        """Resolve and download a Telegram file into memory."""

        info = await self.sink.get_file(file_id)
        file_path = info.get("file_path") if isinstance(info, dict) else None
        if not isinstance(file_path, str) or not file_path:
            raise MediaError(f"Telegram file {file_id} has no downloadable path")
        return await self.sink.download_file(file_path)

    def cleanup(self) -> int:
        """Remove scratch files that are still on disk. Returns the count."""

        removed = 0
        for path in list(self._live_scratch):
            if path.exists():
                path.unlink(missing_ok=True)
                removed += 1
            self._live_scratch.discard(path)
        if self.temp_dir.is_dir():
            for path in self.temp_dir.glob("wa-*"):
                path.unlink(missing_ok=True)
                removed += 1
        return removed
