"""Error taxonomy shared by every component.

Callers (HTTP layer, CLI) react to the ``kind`` of an error rather than to concrete
classes:

- ``validation``: rejected synchronously, nothing was written
- ``conflict``: the caller lost a race or hit a data conflict; refresh and retry
- ``forbidden``: the actor may not perform the operation
- ``not_found``: the addressed record does not exist
- ``external``: the process runtime failed; ``retryable`` tells whether a retry is safe
"""

from __future__ import annotations


class OrchestrationError(Exception):
    kind = "internal"


class ValidationFailed(OrchestrationError):
    kind = "validation"


class ConflictError(OrchestrationError):
    kind = "conflict"


class PermissionDeniedError(OrchestrationError):
    kind = "forbidden"


class NotFoundError(OrchestrationError):
    kind = "not_found"

    def __init__(self, record_type: str, record_id: str) -> None:
        super().__init__(f"{record_type} {record_id} not found")
        self.record_type = record_type
        self.record_id = record_id


class ConcurrentUpdateError(ConflictError):
    """Raised when a compare-and-swap write kept losing to concurrent writers."""

    def __init__(self, record_type: str, record_id: str) -> None:
        super().__init__(f"{record_type} {record_id} was modified concurrently; retry")
        self.record_type = record_type
        self.record_id = record_id


class ExternalDependencyError(OrchestrationError):
    kind = "external"
    retryable = True
