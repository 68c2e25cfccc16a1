"""Pydantic records for the persisted `bridge` namespace.

Persisted shape (camelCase keys, kept compatible with existing databases):

    {"version": 2,
     "chatMappings": {jid: {"topicId", "profilePictureUrl", "lastActivity"}},
     "userMappings": {jid: {"name", "phone", "firstSeen", "messageCount"}},
     "contactMappings": {phone: name},
     "filters": [prefix, ...]}

Version history:
- version missing (legacy): `chatMappings` values may be a bare integer topic
  id. `migrate_bridge_namespace()` rewrites them as full `ChatMapping` records
  once at load time; readers never see the legacy shape.
- version 2: every `chatMappings` value is an object.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

BRIDGE_NAMESPACE = "bridge"
BRIDGE_DOCUMENT_VERSION = 2


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatMapping(_CamelModel):
    """Conversation → topic mapping."""

    topic_id: int = Field(alias="topicId")
    profile_picture_url: str | None = Field(default=None, alias="profilePictureUrl")
    last_activity: datetime = Field(default_factory=datetime.now, alias="lastActivity")


class UserProfile(_CamelModel):
    """Participant profile, updated on every message from that participant."""

    name: str | None = None
    phone: str
    first_seen: datetime = Field(default_factory=datetime.now, alias="firstSeen")
    message_count: int = Field(default=0, alias="messageCount")


class BridgeNamespace(_CamelModel):
    version: int = BRIDGE_DOCUMENT_VERSION
    chat_mappings: dict[str, ChatMapping] = Field(
        default_factory=dict, alias="chatMappings"
    )
    user_mappings: dict[str, UserProfile] = Field(
        default_factory=dict, alias="userMappings"
    )
    contact_mappings: dict[str, str] = Field(
        default_factory=dict, alias="contactMappings"
    )
    filters: list[str] = Field(default_factory=list)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def migrate_bridge_namespace(raw: Any) -> BridgeNamespace:
    """Parse a raw `bridge` namespace, upgrading legacy shapes.

    Raises:
        ValueError: If `raw` is not an object or a mapping value has an
            unsupported shape.
    """

    if raw is None:
        return BridgeNamespace()
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid bridge namespace: expected object, got {raw!r}")

    data = dict(raw)
    if data.get("version") is None:
        upgraded: dict[str, Any] = {}
        for jid, value in (data.get("chatMappings") or {}).items():
            # bool is an int subclass; reject it explicitly.
            if isinstance(value, int) and not isinstance(value, bool):
                upgraded[jid] = {"topicId": value}
            elif isinstance(value, dict):
                upgraded[jid] = value
            else:
                raise ValueError(
                    f"Invalid legacy chat mapping for {jid!r}: {value!r}"
                )
        data["chatMappings"] = upgraded
        data["version"] = BRIDGE_DOCUMENT_VERSION

    # Contact names are occasionally persisted as null by older hosts.
    contacts = data.get("contactMappings") or {}
    data["contactMappings"] = {
        str(phone): name for phone, name in contacts.items() if isinstance(name, str)
    }
    return BridgeNamespace.model_validate(data)
