"""Durable state for the orchestration core."""

from process_orchestrator.store.json_store import (
    DuplicateRecordError,
    StaleRecordError,
    VersionedRecord,
    VersionedStore,
    utc_now,
)

__all__ = [
    "DuplicateRecordError",
    "StaleRecordError",
    "VersionedRecord",
    "VersionedStore",
    "utc_now",
]
