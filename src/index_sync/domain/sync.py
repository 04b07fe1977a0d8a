"""Domain model for store-to-index synchronization.

A ``SyncOperation`` is one pending mutation reconciling a store-side change with
the index. Its state machine is::

    pending -> in_flight -> succeeded
                         -> failed_retryable -> pending
                                             -> failed_terminal
                         -> failed_terminal
    pending -> cancelled            (dropped before dispatch, e.g. on shutdown)

Store collaborators report changes as the events at the bottom of this module.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


class InvalidTransitionError(Exception):
    """Raised when a sync operation is moved along an edge the state machine lacks."""


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_CREATE = "bulkCreate"


class OperationState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {OperationState.SUCCEEDED, OperationState.FAILED_TERMINAL, OperationState.CANCELLED}


_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.PENDING: frozenset({OperationState.IN_FLIGHT, OperationState.CANCELLED}),
    OperationState.IN_FLIGHT: frozenset(
        {OperationState.SUCCEEDED, OperationState.FAILED_RETRYABLE, OperationState.FAILED_TERMINAL}
    ),
    OperationState.FAILED_RETRYABLE: frozenset({OperationState.PENDING, OperationState.FAILED_TERMINAL}),
    OperationState.SUCCEEDED: frozenset(),
    OperationState.FAILED_TERMINAL: frozenset(),
    OperationState.CANCELLED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class BulkEntry:
    """One document inside a ``bulkCreate`` operation."""

    document_id: str
    payload: dict[str, Any]


@dataclass(slots=True, frozen=True)
class BulkEntryOutcome:
    """Per-document result of a ``bulkCreate`` operation."""

    document_id: str
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True, eq=False)
class SyncOperation:
    """A unit of pending work reconciling one store mutation with the index."""

    kind: OperationKind
    index: str
    document_ids: tuple[str, ...]
    payload: dict[str, Any] | None = None
    entries: tuple[BulkEntry, ...] = ()
    operation_id: str = field(default_factory=lambda: uuid4().hex)
    state: OperationState = OperationState.PENDING
    attempts: int = 0
    last_error: BaseException | None = None
    outcomes: list[BulkEntryOutcome] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    on_entry_complete: Callable[[BulkEntryOutcome], Any] | None = field(default=None, repr=False)
    completion: asyncio.Future | None = field(default=None, repr=False)

    @classmethod
    def for_document(
        cls,
        kind: OperationKind,
        index: str,
        document_id: str,
        payload: dict[str, Any] | None = None,
    ) -> SyncOperation:
        if kind is OperationKind.BULK_CREATE:
            raise ValueError("Use SyncOperation.for_bulk for bulkCreate operations")
        if kind is not OperationKind.DELETE and payload is None:
            raise ValueError(f"{kind.value} operations require a payload")
        return cls(kind=kind, index=index, document_ids=(document_id,), payload=payload)

    @classmethod
    def for_bulk(
        cls,
        index: str,
        entries: Sequence[BulkEntry],
        on_entry_complete: Callable[[BulkEntryOutcome], Any] | None = None,
    ) -> SyncOperation:
        if not entries:
            raise ValueError("bulkCreate operations require at least one document")
        document_ids = tuple(entry.document_id for entry in entries)
        if len(set(document_ids)) != len(document_ids):
            raise ValueError("bulkCreate entries must have distinct identifiers")
        return cls(
            kind=OperationKind.BULK_CREATE,
            index=index,
            document_ids=document_ids,
            entries=tuple(entries),
            on_entry_complete=on_entry_complete,
        )

    @property
    def document_id(self) -> str:
        """Identifier of a single-document operation (first identifier for bulk)."""
        return self.document_ids[0]

    def describe_targets(self) -> str:
        if len(self.document_ids) == 1:
            return self.document_ids[0]
        return f"[{len(self.document_ids)} documents]"

    def transition(self, new_state: OperationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move {self.kind.value} from {self.state.value} to {new_state.value}")
        self.state = new_state
        if new_state.is_terminal:
            self.completed_at = datetime.now(timezone.utc)

    def mark_in_flight(self) -> None:
        self.transition(OperationState.IN_FLIGHT)
        self.attempts += 1

    def mark_succeeded(self) -> None:
        self.transition(OperationState.SUCCEEDED)
        self.last_error = None

    def mark_retryable(self, error: BaseException) -> None:
        self.transition(OperationState.FAILED_RETRYABLE)
        self.last_error = error

    def requeue(self) -> None:
        self.transition(OperationState.PENDING)

    def mark_terminal(self, error: BaseException) -> None:
        self.transition(OperationState.FAILED_TERMINAL)
        self.last_error = error

    def cancel(self) -> None:
        self.transition(OperationState.CANCELLED)


# --- Store lifecycle events (published by the store collaborator) ---


@dataclass(slots=True, frozen=True)
class StoreEvent:
    collection: str


@dataclass(slots=True, frozen=True)
class DocumentCreated(StoreEvent):
    document: Any


@dataclass(slots=True, frozen=True)
class DocumentUpdated(StoreEvent):
    document: Any
    changed_fields: frozenset[str] = frozenset()


@dataclass(slots=True, frozen=True)
class DocumentRemoved(StoreEvent):
    document_id: str


@dataclass(slots=True, frozen=True)
class DocumentsBulkSaved(StoreEvent):
    documents: tuple[Any, ...]
    on_document_complete: Callable[[BulkEntryOutcome], Any] | None = None
