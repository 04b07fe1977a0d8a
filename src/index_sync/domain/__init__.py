"""Domain layer - pure business logic with no infrastructure dependencies.

Following Cosmic Python Chapter 2 (Repository Pattern) and Chapter 7 (Aggregates),
this layer contains:
- Value Objects: documents crossing into the index, search requests and results
- The SyncOperation state machine and the store lifecycle events that create it
"""

from index_sync.domain.model import IndexableDocument
from index_sync.domain.search import (
    AggregationResult,
    Bucket,
    Hit,
    SearchRequest,
    SearchResult,
    SortField,
)
from index_sync.domain.sync import (
    BulkEntry,
    BulkEntryOutcome,
    DocumentCreated,
    DocumentRemoved,
    DocumentsBulkSaved,
    DocumentUpdated,
    InvalidTransitionError,
    OperationKind,
    OperationState,
    StoreEvent,
    SyncOperation,
)


__all__ = [
    "AggregationResult",
    "Bucket",
    "BulkEntry",
    "BulkEntryOutcome",
    "DocumentCreated",
    "DocumentRemoved",
    "DocumentUpdated",
    "DocumentsBulkSaved",
    "Hit",
    "IndexableDocument",
    "InvalidTransitionError",
    "OperationKind",
    "OperationState",
    "SearchRequest",
    "SearchResult",
    "SortField",
    "StoreEvent",
    "SyncOperation",
]
