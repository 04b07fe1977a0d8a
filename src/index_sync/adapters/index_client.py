"""Index client abstractions.

Defines the contract the sync engine and the search service need from an
index engine, following the Repository Pattern: the core never talks to the
wire directly. Two implementations ship with the package:

- ``HttpIndexClient``: the engine's HTTP/JSON protocol over httpx
- ``InMemoryIndexClient``: an in-process engine used by tests and embedded setups
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from typing import Any, Literal

from index_sync.errors import (
    DocumentNotFoundError,
    IndexSyncError,
    IndexValidationError,
    TransientEngineError,
)


logger = logging.getLogger(__name__)

BulkKind = Literal["index", "create", "delete"]

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


@dataclass(frozen=True, slots=True)
class WriteAck:
    """Acknowledgement of a single-document write."""

    index: str
    document_id: str
    result: str
    version: int | None = None


@dataclass(frozen=True, slots=True)
class BulkAction:
    """One entry of a bulk request. ``payload`` is ignored for deletes."""

    kind: BulkKind
    document_id: str
    payload: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.kind != "delete" and self.payload is None:
            raise ValueError(f"Bulk '{self.kind}' action for {self.document_id} requires a payload")


@dataclass(frozen=True, slots=True)
class BulkItemResult:
    """Per-action outcome of a bulk request, in request order."""

    document_id: str
    kind: BulkKind
    status: int
    result: str | None = None
    error: IndexSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def error_for_status(
    status: int,
    reason: Any,
    *,
    index: str,
    document_id: str | None = None,
) -> IndexSyncError:
    """Map an engine status code (and error body) onto the error taxonomy."""
    if status == 404:
        return DocumentNotFoundError(index, document_id)
    if status in RETRYABLE_STATUSES or status >= 500:
        return TransientEngineError(f"Engine returned {status} for {index}: {_reason_text(reason)}", status_code=status)
    return IndexValidationError(
        f"Engine rejected request for {index} ({status}): {_reason_text(reason)}",
        status_code=status,
        reason=reason,
    )


def _reason_text(reason: Any) -> str:
    if isinstance(reason, Mapping):
        error = reason.get("error", reason)
        if isinstance(error, Mapping):
            return str(error.get("reason") or error.get("type") or error)
        return str(error)
    return str(reason)


class AbstractIndexClient(ABC):
    """Abstract client for an index engine.

    Every method is a coroutine. Failures are reported with the error
    taxonomy in ``index_sync.errors``: ``IndexConnectionError`` (and
    ``IndexTimeoutError``) for transport problems, ``TransientEngineError``
    for retryable engine answers, ``IndexValidationError`` for rejected
    requests and ``DocumentNotFoundError`` for missing documents or indices.
    """

    @abstractmethod
    async def put_document(
        self,
        index: str,
        document_id: str,
        payload: Mapping[str, Any],
        *,
        refresh: bool = False,
    ) -> WriteAck:
        """Create or fully replace a document."""
        raise NotImplementedError

    @abstractmethod
    async def delete_document(self, index: str, document_id: str, *, refresh: bool = False) -> WriteAck:
        """Delete a document; raises ``DocumentNotFoundError`` when absent."""
        raise NotImplementedError

    @abstractmethod
    async def get_document(self, index: str, document_id: str) -> dict[str, Any]:
        """Return the stored ``_source`` of a document."""
        raise NotImplementedError

    @abstractmethod
    async def bulk(
        self,
        index: str,
        actions: Sequence[BulkAction],
        *,
        refresh: bool = False,
    ) -> list[BulkItemResult]:
        """Apply ``actions`` in order; one result per action, in the same order."""
        raise NotImplementedError

    @abstractmethod
    async def search(self, index: str, body: Mapping[str, Any]) -> dict[str, Any]:
        """Execute an engine-native search body and return the raw response."""
        raise NotImplementedError

    @abstractmethod
    async def count(self, index: str, query: Mapping[str, Any] | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def ensure_index(self, index: str, body: Mapping[str, Any] | None = None) -> bool:
        """Create ``index`` if missing. Returns True when it was created."""
        raise NotImplementedError

    @abstractmethod
    async def delete_index(self, index: str) -> None:
        """Drop ``index``; raises ``DocumentNotFoundError`` when it does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def delete_by_query(self, index: str, query: Mapping[str, Any], *, refresh: bool = False) -> int:
        """Delete every matching document; returns how many were removed."""
        raise NotImplementedError

    @abstractmethod
    async def refresh(self, index: str) -> None:
        """Make recent writes visible to search."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connection handles."""

        return

    async def __aenter__(self) -> AbstractIndexClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
