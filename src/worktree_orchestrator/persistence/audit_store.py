"""
Keyed audit storage for manifests and run reports.

Records are JSON documents addressed by ``(kind, key)``. The file store keeps
one document per record and replaces it atomically.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final, Protocol

from worktree_orchestrator.constants import AUDIT_RECORD_SCHEMA_VERSION
from worktree_orchestrator.utils.fs import atomic_write

_SAFE_SEGMENT: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9._-]+$")


class AuditStoreError(RuntimeError):
    """Raised for invalid keys or unreadable records."""


class AuditStore(Protocol):
    def put(self, kind: str, key: str, record: Mapping[str, Any]) -> None: ...

    def get(self, kind: str, key: str) -> dict[str, Any] | None: ...

    def list(self, kind: str) -> tuple[str, ...]: ...


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], str] = {}

    def put(self, kind: str, key: str, record: Mapping[str, Any]) -> None:
        _validate_segment(kind, "kind")
        _validate_segment(key, "key")
        encoded = _encode(record)
        with self._lock:
            self._records[(kind, key)] = encoded

    def get(self, kind: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            encoded = self._records.get((kind, key))
        return None if encoded is None else _decode(encoded)

    def list(self, kind: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(key for record_kind, key in self._records if record_kind == kind))


class FileAuditStore:
    """JSON-file store rooted at ``root``; layout is ``<root>/<kind>/<key>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def put(self, kind: str, key: str, record: Mapping[str, Any]) -> None:
        path = self._record_path(kind, key)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(path, _encode(record))

    def get(self, kind: str, key: str) -> dict[str, Any] | None:
        path = self._record_path(kind, key)
        if not path.is_file():
            return None
        try:
            return _decode(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise AuditStoreError(f"unreadable audit record {kind}/{key}: {exc}") from exc

    def list(self, kind: str) -> tuple[str, ...]:
        directory = self.root / _validate_segment(kind, "kind")
        if not directory.is_dir():
            return ()
        return tuple(sorted(path.stem for path in directory.glob("*.json") if path.is_file()))

    def _record_path(self, kind: str, key: str) -> Path:
        return self.root / _validate_segment(kind, "kind") / f"{_validate_segment(key, 'key')}.json"


def _encode(record: Mapping[str, Any]) -> str:
    payload = {"schema_version": AUDIT_RECORD_SCHEMA_VERSION, "record": dict(record)}
    return json.dumps(payload, sort_keys=True, indent=2, default=str) + "\n"


def _decode(encoded: str) -> dict[str, Any]:
    payload = json.loads(encoded)
    if not isinstance(payload, dict) or not isinstance(payload.get("record"), dict):
        raise ValueError("audit record must be an object with a 'record' field")
    return payload["record"]


def _validate_segment(value: str, field: str) -> str:
    if not isinstance(value, str) or not _SAFE_SEGMENT.fullmatch(value) or value in {".", ".."}:
        raise AuditStoreError(f"invalid audit {field}: {value!r}")
    return value


__all__ = ["AuditStore", "AuditStoreError", "FileAuditStore", "InMemoryAuditStore"]
