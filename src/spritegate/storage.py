"""Generation record store and sprite-sheet object storage.

Both are small abstract interfaces with in-process implementations:
an in-memory record store and a directory-backed object store that
writes atomically through same-directory temp files.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from spritegate.constants import LIST_GENERATIONS_LIMIT
from spritegate.errors import GenerationNotFoundError, InvalidTransitionError
from spritegate.logging import get_logger
from spritegate.models import GenerationRecord

logger = get_logger("storage")


def image_key(user_id: str, generation_id: str) -> str:
    """Object key for a generation's sprite sheet."""
    return f"sprites/{user_id}/{generation_id}.png"


# ---------------------------------------------------------------------------
# Generation records
# ---------------------------------------------------------------------------


class GenerationStore(ABC):
    """Persistence for :class:`GenerationRecord` values."""

    @abstractmethod
    def create(self, record: GenerationRecord) -> GenerationRecord:
        """Insert a new record."""

    @abstractmethod
    def get(self, generation_id: str) -> GenerationRecord | None:
        """Fetch a record by id, or None."""

    @abstractmethod
    def update(self, record: GenerationRecord) -> GenerationRecord:
        """Replace an existing, non-terminal record.

        Raises:
            GenerationNotFoundError: If the id is unknown.
            InvalidTransitionError: If the stored record is already
                Completed or Failed.
        """

    @abstractmethod
    def list_for_user(
        self, user_id: str, limit: int = LIST_GENERATIONS_LIMIT
    ) -> list[GenerationRecord]:
        """Records owned by *user_id*, newest first."""

    @abstractmethod
    def delete(self, generation_id: str) -> bool:
        """Remove a record. Returns True if it existed."""


class InMemoryGenerationStore(GenerationStore):
    """Lock-protected dict store.

    Records are frozen pydantic models, so handing them out directly is
    safe; callers obtain changed versions through ``model_copy``.
    """

    def __init__(self) -> None:
        self._records: dict[str, GenerationRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: GenerationRecord) -> GenerationRecord:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Generation {record.id} already exists")
            self._records[record.id] = record
        return record

    def get(self, generation_id: str) -> GenerationRecord | None:
        with self._lock:
            return self._records.get(generation_id)

    def update(self, record: GenerationRecord) -> GenerationRecord:
        with self._lock:
            stored = self._records.get(record.id)
            if stored is None:
                raise GenerationNotFoundError(f"Generation {record.id} not found")
            if stored.status.is_terminal:
                raise InvalidTransitionError(
                    f"Generation {record.id} is already {stored.status.value}"
                )
            self._records[record.id] = record
        return record

    def list_for_user(
        self, user_id: str, limit: int = LIST_GENERATIONS_LIMIT
    ) -> list[GenerationRecord]:
        with self._lock:
            owned = [r for r in self._records.values() if r.user_id == user_id]
        owned.sort(key=lambda r: r.created_at, reverse=True)
        return owned[:limit]

    def delete(self, generation_id: str) -> bool:
        with self._lock:
            return self._records.pop(generation_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


class ObjectStorage(ABC):
    """Key/value blob storage for finished sprite sheets."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "image/png") -> None:
        """Store *data* under *key*, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the object bytes, or None."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove the object. Returns True if it existed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether *key* is stored."""


class LocalObjectStorage(ObjectStorage):
    """Directory-backed object storage.

    Keys map to relative paths under *root*.  Keys that would escape the
    root are rejected.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if path == root or root not in path.parents:
            raise ValueError(f"Invalid storage key: {key!r}")
        return path

    def _atomic_write_bytes(self, path: Path, data: bytes) -> None:
        """Atomically write bytes to a path using same-directory temp file."""
        tmp_path = path.with_name(
            f".{path.name}.tmp-{os.getpid()}-{threading.get_ident()}"
        )
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def put(self, key: str, data: bytes, content_type: str = "image/png") -> None:
        path = self._path_for(key)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write_bytes(path, data)
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)

    def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        with self._lock:
            if not path.is_file():
                return None
            return path.read_bytes()

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        with self._lock:
            if not path.is_file():
                return False
            path.unlink()
        logger.debug("Deleted %s", key)
        return True

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()
