"""JSON-file backed record stores with optimistic concurrency.

Every record carries a ``version``. Writers read a record, derive the next state and
write it back only if the stored version is still the one they read
(compare-and-swap). Losing writers get :class:`StaleRecordError` and re-read.

One file per collection. Writes go to a temp file first and are then renamed over the
target, so a crash never leaves a half-written collection behind.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from process_orchestrator.errors import ConcurrentUpdateError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class VersionedRecord(BaseModel):
    id: str
    version: int = 0


R = TypeVar("R", bound=VersionedRecord)


class StaleRecordError(ConflictError):
    def __init__(self, record_id: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Record {record_id} is at version {actual}, expected {expected}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class DuplicateRecordError(ConflictError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record {record_id} already exists")
        self.record_id = record_id


class VersionedStore(Generic[R]):
    """A collection of versioned pydantic records persisted as a JSON list."""

    def __init__(self, path: Path, model: type[R]) -> None:
        self._path = path
        self._model = model
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def record_type(self) -> str:
        return self._model.__name__

    def _load_unlocked(self) -> dict[str, R]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "State file is not valid JSON; treating as empty",
                extra={"path": str(self._path)},
            )
            return {}
        if not isinstance(raw, list):
            logger.warning(
                "State file has unexpected shape; treating as empty",
                extra={"path": str(self._path)},
            )
            return {}
        records: dict[str, R] = {}
        for item in raw:
            record = self._model.model_validate(item)
            records[record.id] = record
        return records

    def _save_unlocked(self, records: dict[str, R]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in records.values()]
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp, self._path)

    def list(self) -> list[R]:
        with self._lock:
            return list(self._load_unlocked().values())

    def find(self, predicate: Callable[[R], bool]) -> list[R]:
        return [r for r in self.list() if predicate(r)]

    def get(self, record_id: str) -> R | None:
        with self._lock:
            return self._load_unlocked().get(record_id)

    def require(self, record_id: str) -> R:
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(self.record_type, record_id)
        return record

    def insert(self, record: R) -> R:
        with self._lock:
            records = self._load_unlocked()
            if record.id in records:
                raise DuplicateRecordError(record.id)
            stored = record.model_copy(update={"version": 1})
            records[stored.id] = stored
            self._save_unlocked(records)
            return stored

    def insert_unless(self, record: R, conflict: Callable[[R], bool]) -> tuple[R, bool]:
        """Insert ``record`` unless an existing record satisfies ``conflict``.

        Returns ``(record, True)`` when inserted, ``(existing, False)`` otherwise. The
        check and the insert happen under one lock, which makes this the primitive for
        uniqueness rules such as idempotency keys.
        """

        with self._lock:
            records = self._load_unlocked()
            for existing in records.values():
                if conflict(existing):
                    return existing, False
            if record.id in records:
                raise DuplicateRecordError(record.id)
            stored = record.model_copy(update={"version": 1})
            records[stored.id] = stored
            self._save_unlocked(records)
            return stored, True

    def compare_and_swap(self, record: R, *, expected_version: int) -> R:
        with self._lock:
            records = self._load_unlocked()
            current = records.get(record.id)
            if current is None:
                raise NotFoundError(self.record_type, record.id)
            if current.version != expected_version:
                raise StaleRecordError(
                    record.id, expected=expected_version, actual=current.version
                )
            stored = record.model_copy(update={"version": expected_version + 1})
            records[stored.id] = stored
            self._save_unlocked(records)
            return stored

    def update(
        self,
        record_id: str,
        mutate: Callable[[R], R | None],
        *,
        attempts: int = 5,
    ) -> R:
        """Read-modify-write loop on top of :meth:`compare_and_swap`.

        ``mutate`` receives the current record and returns the next one, ``None`` for a
        no-op, or raises to abort without writing. It is re-run against fresh state
        whenever another writer won the race.
        """

        for _ in range(attempts):
            current = self.require(record_id)
            updated = mutate(current)
            if updated is None:
                return current
            try:
                return self.compare_and_swap(updated, expected_version=current.version)
            except StaleRecordError:
                logger.debug(
                    "Lost compare-and-swap race; re-reading",
                    extra={"record_type": self.record_type, "record_id": record_id},
                )
        raise ConcurrentUpdateError(self.record_type, record_id)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self._load_unlocked()
            if records.pop(record_id, None) is None:
                return False
            self._save_unlocked(records)
            return True
