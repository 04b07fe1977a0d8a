"""Error taxonomy shared by the index adapters, the sync engine and the query layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from index_sync.domain.sync import SyncOperation


class IndexSyncError(Exception):
    """Base error for everything raised by index_sync."""


class IndexConnectionError(IndexSyncError):
    """Transport or network failure talking to the index engine."""


class IndexTimeoutError(IndexConnectionError):
    """An index engine call exceeded its configured timeout."""


class TransientEngineError(IndexSyncError):
    """The engine answered but asked us to come back later (429, 502, 503, 504)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IndexValidationError(IndexSyncError):
    """Malformed request or payload rejected by the engine. Never retried."""

    def __init__(self, message: str, *, status_code: int | None = None, reason: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class DocumentNotFoundError(IndexSyncError):
    """The target document (or index) does not exist."""

    def __init__(self, index: str, document_id: str | None = None) -> None:
        target = f"{index}/{document_id}" if document_id is not None else index
        super().__init__(f"Not found: {target}")
        self.index = index
        self.document_id = document_id


class MappingMismatch(IndexValidationError):
    """A field value cannot be cast to the type declared in the mapping."""

    def __init__(self, field: str, expected: str, value: Any) -> None:
        super().__init__(f"Field '{field}' expects {expected}, got {type(value).__name__}: {value!r}")
        self.field = field
        self.expected = expected
        self.value = value


class UnsupportedClause(IndexValidationError):
    """The query translator met a clause kind it does not know."""

    def __init__(self, kind: str, detail: str | None = None) -> None:
        message = f"Unsupported query clause: {kind}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.kind = kind


class MalformedResponse(IndexSyncError):
    """The engine response lacks the structure the projector needs."""


class RetryExhausted(IndexSyncError):
    """A retryable sync operation used up its attempt budget."""

    def __init__(self, operation: SyncOperation, cause: BaseException | None) -> None:
        super().__init__(
            f"{operation.kind.value} {operation.index}/{operation.describe_targets()} "
            f"failed after {operation.attempts} attempts: {cause}"
        )
        self.operation = operation
        self.cause = cause


def is_retryable(exc: BaseException) -> bool:
    """Return True when retrying the call that raised ``exc`` could succeed."""
    return isinstance(exc, (IndexConnectionError, TransientEngineError))
