"""Collaborator interfaces (artifact store, audit log, config store) and local file-backed versions.

The surrounding application normally provides its own implementations
(object storage, relational tables); the local ones here back the CLI and
the tests.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, BinaryIO, Protocol

from filelock import FileLock

from nfse_consulta.services.exceptions import ArtifactNotFoundError

logger = logging.getLogger(__name__)

AUDIT_DOWNLOAD = "download"
AUDIT_BATCH_DOWNLOAD = "lote"


class ArtifactStore(Protocol):
    def read_artifact(self, ref: str) -> BinaryIO:
        """Open a stored artifact for reading; raises ArtifactNotFoundError."""
        ...

    def write_artifact(self, ref: str, data: bytes) -> str:
        """Store *data* under *ref* and return its location."""
        ...


class AuditLog(Protocol):
    def record(self, event: str, actor: str | None, subject: str | None, detail: dict) -> None: ...


class ConfigStore(Protocol):
    def save(self, key: str, value: str | None = None, binary_value: bytes | None = None) -> None: ...

    def get(self, key: str) -> dict[str, Any] | None: ...


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    """Hold an exclusive file lock during read-modify-write of *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(path.with_suffix(path.suffix + ".lock")):
        yield


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


class LocalArtifactStore:
    """Artifacts as files under a root directory, keyed by relative path."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, ref: str) -> Path:
        path = (self.root / ref.lstrip("/")).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ArtifactNotFoundError(ref)
        return path

    def read_artifact(self, ref: str) -> BinaryIO:
        path = self._path(ref)
        try:
            return path.open("rb")
        except (FileNotFoundError, IsADirectoryError):
            raise ArtifactNotFoundError(ref) from None

    def write_artifact(self, ref: str, data: bytes) -> str:
        path = self._path(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return str(path)


class JsonlAuditLog:
    """Append-only audit trail, one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def record(self, event: str, actor: str | None, subject: str | None, detail: dict) -> None:
        entry = {
            "event": event,
            "actor": actor,
            "subject": subject,
            "detail": detail,
            "at": datetime.now(UTC).isoformat(),
        }
        with _locked(self.path), self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def entries(self, actor: str | None = None) -> list[dict[str, Any]]:
        """Return recorded entries, newest last, optionally for one actor."""
        if not self.path.exists():
            return []
        result = []
        with _locked(self.path):
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Linha de auditoria ilegivel ignorada: %s", line[:80])
                continue
            if actor is None or entry.get("actor") == actor:
                result.append(entry)
        return result


class LocalConfigStore:
    """Key/value settings with optional binary payloads, persisted as one JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (json.JSONDecodeError, ValueError):
            _backup_corrupt(self.path)
            return {}

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, self.path)

    def save(self, key: str, value: str | None = None, binary_value: bytes | None = None) -> None:
        with _locked(self.path):
            data = self._load()
            data[key] = {
                "value": value,
                "binary_value": base64.b64encode(binary_value).decode("ascii")
                if binary_value is not None
                else None,
                "updated_at": datetime.now(UTC).isoformat(),
            }
            self._save(data)

    def get(self, key: str) -> dict[str, Any] | None:
        """Return ``{"value": str | None, "binary_value": bytes | None}`` or None."""
        with _locked(self.path):
            entry = self._load().get(key)
        if entry is None:
            return None
        raw = entry.get("binary_value")
        return {
            "value": entry.get("value"),
            "binary_value": base64.b64decode(raw) if raw else None,
        }

    def delete(self, key: str) -> bool:
        with _locked(self.path):
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._save(data)
            return True
