"""Key-value document backends for bridge state.

A document store holds one JSON object (the host "database"). The bridge only
owns the `bridge` namespace inside it; other top-level keys belong to the host
and must round-trip untouched.

Design notes / invariants:
- `load()` returns `{}` when nothing has been saved yet.
- `save()` replaces the whole document atomically (temp file + rename), so a
  crash mid-write leaves the previous document intact.
- Both methods are synchronous; async callers wrap them with
  `anyio.to_thread.run_sync`.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable


class DocumentStoreError(RuntimeError):
    """Raised when the persisted document cannot be read or written."""


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for the persisted host document."""

    def load(self) -> dict[str, Any]:
        """Return the full document (empty dict when absent)."""

    def save(self, document: dict[str, Any]) -> None:
        """Persist the full document."""


class JsonFileDocumentStore:
    """Document store backed by a single JSON file."""

    def __init__(self, path: Path, *, encoding: str = "utf-8") -> None:
        self.path = path
        self.encoding = encoding

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding=self.encoding)
        except OSError as e:
            raise DocumentStoreError(f"Failed to read {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DocumentStoreError(f"Invalid JSON in {self.path}: {e}") from e
        if not isinstance(decoded, dict):
            raise DocumentStoreError(
                f"Invalid document in {self.path}: expected JSON object"
            )
        return decoded

    def save(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, ensure_ascii=False, indent=2)
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding=self.encoding,
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = Path(f.name)
                f.write(payload)
                f.write("\n")
            tmp_path.replace(self.path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise DocumentStoreError(f"Failed to write {self.path}: {e}") from e


class MemoryDocumentStore:
    """In-process document store (tests, dry runs)."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document: dict[str, Any] = json.loads(json.dumps(document or {}))
        self.save_count = 0

    def load(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.document))

    def save(self, document: dict[str, Any]) -> None:
        self.document = json.loads(json.dumps(document))
        self.save_count += 1
