"""Interface of the WhatsApp session library the bridge drives.

The bridge never talks to the WhatsApp wire protocol itself; a host process
supplies an object satisfying `SourceClient` (typically an adapter around a
multi-device session library). Payloads use the library's JSON shapes:

- inbound messages: `{"key": {"remoteJid", "fromMe", "id", "participant"},
  "message": {...content...}, "pushName": str, "messageTimestamp": int}`
- outbound content: `{"text": ...}`, `{"image": bytes, "caption": ...}`,
  `{"video": bytes, "ptv": bool, "gifPlayback": bool}`,
  `{"audio": bytes, "ptt": bool, "mimetype": ...}`,
  `{"document": bytes, "fileName": ..., "mimetype": ...}`,
  `{"sticker": bytes}`, `{"location": {...}}`, `{"contacts": {...}}`
- calls: `{"from", "id", "status", "isVideo", "isGroup", "date"}`
- contacts: `{"id", "name", "notify", "verifiedName"}`
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

type Presence = Literal["available", "unavailable", "composing", "recording", "paused"]
type SourceEventKind = Literal["message", "contacts.upsert", "contacts.update", "call"]


@dataclass(frozen=True, slots=True)
class SourceEvent:
    """One item of the Source event feed.

    `payload` is a message dict for `message`, a list of contact dicts for
    `contacts.*`, and a call dict for `call`. `text` is the host's extracted
    plain-text body for messages, when it has one.
    """

    kind: SourceEventKind
    payload: Any
    text: str | None = None


@runtime_checkable
class SourceClient(Protocol):
    """Operations the bridge consumes from the WhatsApp session."""

    @property
    def user_jid(self) -> str | None:
        """JID of the bridged account, once logged in."""

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        *,
        quoted: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Send one message; returns the sent message (with `key.id`) if known."""

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        """Mark a batch of message keys as read."""

    async def send_presence_update(self, presence: Presence, jid: str | None = None) -> None:
        """Publish a presence state, optionally scoped to one conversation."""

    async def profile_picture_url(self, jid: str) -> str | None:
        """Return the current profile picture URL, or `None` if hidden/absent."""

    async def group_metadata(self, jid: str) -> dict[str, Any]:
        """Return group metadata (`subject`, `participants`, `desc`, ...)."""

    async def fetch_status(self, jid: str) -> dict[str, Any] | None:
        """Return the contact's about/status text (`{"status": ...}`)."""

    async def fetch_contacts(self) -> list[dict[str, Any]]:
        """Return the address book known to the session."""

    async def participating_groups(self) -> dict[str, dict[str, Any]]:
        """Return metadata for every group the account belongs to, keyed by JID."""

    async def accept_group_invite(self, code: str) -> str | None:
        """Join a group through its invite code; returns the group JID."""

    def download_media_stream(
        self, media: dict[str, Any], media_type: str
    ) -> AsyncIterator[bytes]:
        """Stream-decrypt a media payload using its embedded content key."""

    def events(self) -> AsyncIterator[SourceEvent]:
        """Yield inbound events until the session ends."""
