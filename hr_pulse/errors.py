"""Error taxonomy shared by the store client, registry, aggregator and scheduler."""

from __future__ import annotations

from typing import Optional


class StoreError(RuntimeError):
    """Raised when the record store rejects a request."""

    def __init__(self, operation: str, path: str, detail: str) -> None:
        super().__init__(f"Store error for {operation} {path}: {detail}")
        self.operation = operation
        self.path = path
        self.detail = detail


class TransientStoreError(StoreError):
    """Connectivity or server-side failure that is worth retrying."""


class PartialEntityFailure(RuntimeError):
    """One entity's subscription could not be established."""

    def __init__(self, kind: str, entity_id: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{kind} subscription for entity {entity_id} failed after {attempts} attempts: {cause}")
        self.kind = kind
        self.entity_id = entity_id
        self.attempts = attempts
        self.cause = cause


class PersistenceRaceError(RuntimeError):
    """A notification flag could not be persisted, so its alert was withheld."""

    def __init__(self, entity_id: str, record_id: str, flag: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Could not persist {flag} for meeting {entity_id}/{record_id}: {cause}")
        self.entity_id = entity_id
        self.record_id = record_id
        self.flag = flag
        self.cause = cause


class InvariantViolation(ValueError):
    """A record broke a merged-view invariant and was dropped."""

    def __init__(self, kind: str, entity_id: str, record_id: str, reason: str) -> None:
        super().__init__(f"{kind} record {entity_id}/{record_id} dropped: {reason}")
        self.kind = kind
        self.entity_id = entity_id
        self.record_id = record_id
        self.reason = reason


__all__ = [
    "StoreError",
    "TransientStoreError",
    "PartialEntityFailure",
    "PersistenceRaceError",
    "InvariantViolation",
]
