"""Persisted bridge state."""

from __future__ import annotations

from .document import (
    DocumentStore,
    DocumentStoreError,
    JsonFileDocumentStore,
    MemoryDocumentStore,
)
from .mappings import MappingStore, is_placeholder_name, phone_from_jid
from .records import (
    BRIDGE_DOCUMENT_VERSION,
    BRIDGE_NAMESPACE,
    BridgeNamespace,
    ChatMapping,
    UserProfile,
    migrate_bridge_namespace,
)

__all__ = [
    "BRIDGE_DOCUMENT_VERSION",
    "BRIDGE_NAMESPACE",
    "BridgeNamespace",
    "ChatMapping",
    "DocumentStore",
    "DocumentStoreError",
    "JsonFileDocumentStore",
    "MappingStore",
    "MemoryDocumentStore",
    "UserProfile",
    "is_placeholder_name",
    "migrate_bridge_namespace",
    "phone_from_jid",
]
