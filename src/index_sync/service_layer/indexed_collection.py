"""Index-backed view of one store collection.

``IndexedCollection`` is the seam between a store collaborator and the index:

- The store publishes lifecycle events through ``publish`` (or the
  ``on_create``/``on_update``/``on_remove``/``bulk_save`` shorthands); each
  event becomes a ``SyncOperation`` on the shared ``SyncEngine``.
- Application code searches with ``search(query, options)`` and manages the
  index with ``ensure_index``, ``synchronize``, ``truncate`` and friends.

Example:
    engine = SyncEngine.from_settings(client, settings)
    await engine.start()
    bonds = IndexedCollection("Bond", mapping, client, engine, settings=settings)
    await bonds.ensure_index()
    await bonds.save_and_wait({"_id": "1", "name": "Legal", "price": 30000})
    result = await bonds.search({"range": {"price": {"from": 20000, "to": 30000}}})
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from functools import partial
import logging
from typing import Any

from index_sync.adapters.index_client import AbstractIndexClient, WriteAck
from index_sync.config import Settings
from index_sync.domain.model import IndexableDocument
from index_sync.domain.search import SearchRequest, SearchResult
from index_sync.domain.sync import (
    BulkEntry,
    BulkEntryOutcome,
    DocumentCreated,
    DocumentRemoved,
    DocumentsBulkSaved,
    DocumentUpdated,
    OperationKind,
    StoreEvent,
    SyncOperation,
)
from index_sync.errors import IndexSyncError, MappingMismatch
from index_sync.search.schema import IndexMapping
from index_sync.search.serializer import from_index_payload, to_index_payload
from index_sync.service_layer.query_translator import QueryTranslator
from index_sync.service_layer.result_projector import ResultProjector, SourceFactory
from index_sync.service_layer.search_service import SearchService
from index_sync.service_layer.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

IndexFilter = Callable[[IndexableDocument], bool]
DocumentLike = IndexableDocument | Mapping[str, Any]


@dataclass
class SynchronizeReport:
    """Outcome of a full ``synchronize`` pass."""

    indexed: int = 0
    failed: int = 0
    skipped: int = 0
    chunks: int = 0
    errors: list[BulkEntryOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.indexed + self.failed + self.skipped


class IndexedCollection:
    """Keeps the index of one store collection in sync and searches it."""

    def __init__(
        self,
        name: str,
        mapping: IndexMapping,
        client: AbstractIndexClient,
        engine: SyncEngine,
        *,
        settings: Settings | None = None,
        index_name: str | None = None,
        index_filter: IndexFilter | None = None,
        auto_index: bool = True,
        id_field: str = "_id",
        version_field: str | None = "__v",
        source_factory: SourceFactory | None = None,
    ) -> None:
        self.name = name
        self.mapping = mapping
        self.client = client
        self.engine = engine
        self.settings = settings or Settings()
        self.index = index_name or self.settings.index_name(name)
        self.index_filter = index_filter
        self.auto_index = auto_index
        self.id_field = id_field
        self.version_field = version_field
        self.search_service = SearchService(
            client,
            QueryTranslator(mapping),
            ResultProjector(mapping, source_factory=source_factory),
        )

    # ------------------------------------------------------------------
    # Store events
    # ------------------------------------------------------------------

    def publish(self, event: StoreEvent) -> asyncio.Future | None:
        """Publish function handed to the store collaborator.

        Returns the completion future of the resulting operation, or None when
        the event needs no index change (automatic indexing off, another
        collection, or an update touching no indexed field).
        """
        if event.collection != self.name:
            logger.debug("Ignoring %s for collection %s", type(event).__name__, event.collection)
            return None
        if not self.auto_index:
            logger.debug("Automatic indexing disabled for %s; ignoring %s", self.name, type(event).__name__)
            return None

        if isinstance(event, DocumentCreated):
            return self.index_document(event.document, kind=OperationKind.CREATE)
        if isinstance(event, DocumentUpdated):
            if event.changed_fields and not self._affects_index(event.changed_fields):
                logger.debug("Update of %s touches no indexed field; skipping", self.name)
                return None
            return self.index_document(event.document, kind=OperationKind.UPDATE)
        if isinstance(event, DocumentRemoved):
            return self.remove_document(event.document_id)
        if isinstance(event, DocumentsBulkSaved):
            return self.bulk_index(event.documents, on_document_complete=event.on_document_complete)
        raise TypeError(f"Unsupported store event: {type(event).__name__}")

    def on_create(self, document: DocumentLike) -> asyncio.Future | None:
        return self.publish(DocumentCreated(self.name, document))

    def on_update(self, document: DocumentLike, changed_fields: Iterable[str] = ()) -> asyncio.Future | None:
        return self.publish(DocumentUpdated(self.name, document, frozenset(changed_fields)))

    def on_remove(self, document_id: str) -> asyncio.Future | None:
        return self.publish(DocumentRemoved(self.name, str(document_id)))

    def bulk_save(
        self,
        documents: Iterable[DocumentLike],
        on_document_complete: Callable[[BulkEntryOutcome], Any] | None = None,
    ) -> asyncio.Future | None:
        return self.publish(DocumentsBulkSaved(self.name, tuple(documents), on_document_complete))

    def _affects_index(self, changed_fields: frozenset[str]) -> bool:
        if self.mapping.include_all or self.mapping.computed or self.index_filter is not None:
            return True
        indexed = set(self.mapping.field_names)
        return any(name.split(".", 1)[0] in indexed or name in indexed for name in changed_fields)

    # ------------------------------------------------------------------
    # Explicit indexing
    # ------------------------------------------------------------------

    def snapshot(self, document: DocumentLike) -> IndexableDocument:
        if isinstance(document, IndexableDocument):
            return document
        if isinstance(document, Mapping):
            return IndexableDocument.from_record(document, id_field=self.id_field, version_field=self.version_field)
        raise TypeError(f"Cannot index {type(document).__name__}; expected a mapping or IndexableDocument")

    def index_document(self, document: DocumentLike, *, kind: OperationKind = OperationKind.UPDATE) -> asyncio.Future:
        """Serialize ``document`` now and enqueue its index write.

        Documents rejected by ``index_filter`` are removed from the index
        instead. Serialization errors (``MappingMismatch``) are raised here.
        """
        snapshot = self.snapshot(document)
        if not self._accepts(snapshot):
            logger.debug("Document %s/%s fails the index filter; removing it", self.index, snapshot.id)
            return self.remove_document(snapshot.id)
        payload = to_index_payload(snapshot, self.mapping)
        return self.engine.enqueue(SyncOperation.for_document(kind, self.index, snapshot.id, payload))

    def remove_document(self, document_id: str) -> asyncio.Future:
        return self.engine.enqueue(SyncOperation.for_document(OperationKind.DELETE, self.index, str(document_id)))

    def bulk_index(
        self,
        documents: Iterable[DocumentLike],
        *,
        on_document_complete: Callable[[BulkEntryOutcome], Any] | None = None,
    ) -> asyncio.Future:
        """Enqueue one ``bulkCreate`` operation for ``documents``.

        Documents rejected by ``index_filter`` are removed from the index with
        their own delete operations. A repeated identifier is written once,
        from its last occurrence, and that outcome is reported at every
        position holding it.

        The future resolves to one ``BulkEntryOutcome`` per document, in
        order, including documents that failed serialization.
        """
        snapshots = [self.snapshot(document) for document in documents]
        pending, _ = self._enqueue_bulk(snapshots, on_document_complete)
        return pending

    def _enqueue_bulk(
        self,
        snapshots: list[IndexableDocument],
        callback: Callable[[BulkEntryOutcome], Any] | None,
    ) -> tuple[asyncio.Future, frozenset[str]]:
        """Enqueue the writes for ``snapshots``; also returns the ids removed by the filter."""
        last = {snapshot.id: position for position, snapshot in enumerate(snapshots)}
        if len(last) < len(snapshots):
            logger.debug(
                "Bulk save into %s repeats %d identifiers; writing the last occurrence of each",
                self.index,
                len(snapshots) - len(last),
            )

        failures: dict[str, BulkEntryOutcome] = {}
        removals: dict[str, asyncio.Future] = {}
        entries: list[BulkEntry] = []
        for position, snapshot in enumerate(snapshots):
            if last[snapshot.id] != position:
                continue
            if not self._accepts(snapshot):
                logger.debug("Document %s/%s fails the index filter; removing it", self.index, snapshot.id)
                removal = self.remove_document(snapshot.id)
                if callback is not None:
                    removal.add_done_callback(partial(self._deliver_removal, callback, snapshot.id))
                removals[snapshot.id] = removal
                continue
            try:
                payload = to_index_payload(snapshot, self.mapping)
            except MappingMismatch as exc:
                logger.error("Cannot serialize %s/%s: %s", self.index, snapshot.id, exc)
                failures[snapshot.id] = BulkEntryOutcome(snapshot.id, exc)
                continue
            entries.append(BulkEntry(snapshot.id, payload))

        bulk = None
        if entries:
            bulk = self.engine.enqueue(SyncOperation.for_bulk(self.index, entries, on_entry_complete=callback))
        if callback is not None:
            for outcome in failures.values():
                self.engine.deliver_outcome(self.index, callback, outcome)

        order = [snapshot.id for snapshot in snapshots]
        pending = asyncio.ensure_future(self._collect_bulk(order, failures, removals, bulk))
        # Store events are fire and forget; failures are logged by the engine
        pending.add_done_callback(_consume_exception)
        return pending, frozenset(removals)

    async def _collect_bulk(
        self,
        order: list[str],
        failures: dict[str, BulkEntryOutcome],
        removals: dict[str, asyncio.Future],
        bulk: asyncio.Future | None,
    ) -> list[BulkEntryOutcome]:
        outcomes = dict(failures)
        if removals:
            await asyncio.wait(list(removals.values()))
            for document_id, removal in removals.items():
                outcomes[document_id] = _removal_outcome(document_id, removal)
        if bulk is not None:
            # Raises when the bulk request fails as a whole
            for outcome in await bulk:
                outcomes[outcome.document_id] = outcome
        return [outcomes[document_id] for document_id in order]

    def _deliver_removal(
        self,
        callback: Callable[[BulkEntryOutcome], Any],
        document_id: str,
        removal: asyncio.Future,
    ) -> None:
        self.engine.deliver_outcome(self.index, callback, _removal_outcome(document_id, removal))

    async def save_and_wait(
        self,
        document: DocumentLike,
        *,
        kind: OperationKind = OperationKind.UPDATE,
        timeout: float | None = None,
    ) -> WriteAck:
        """Index ``document`` and wait until it is searchable."""
        future = self.index_document(document, kind=kind)
        ack = await asyncio.wait_for(future, timeout=timeout) if timeout else await future
        if not self.engine.refresh:
            await self.client.refresh(self.index)
        return ack

    def _accepts(self, snapshot: IndexableDocument) -> bool:
        return self.index_filter is None or bool(self.index_filter(snapshot))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: Mapping[str, Any] | SearchRequest | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SearchResult:
        """Search the collection's index; ``options`` may hold ``sort`` and ``aggs``."""
        return await self.search_service.search(self.index, query, options)

    async def count(self, query: Mapping[str, Any] | None = None) -> int:
        return await self.search_service.count(self.index, query)

    async def get_document(self, document_id: str) -> dict[str, Any]:
        """Indexed representation of one document, with typed values restored."""
        source = await self.client.get_document(self.index, str(document_id))
        return from_index_payload(source, self.mapping)

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    async def ensure_index(self) -> bool:
        """Create the index with this collection's mapping when it is missing."""
        return await self.client.ensure_index(self.index, self.mapping.to_index_body())

    async def delete_index(self) -> None:
        await self.client.delete_index(self.index)

    async def refresh(self) -> None:
        await self.client.refresh(self.index)

    async def truncate(self) -> int:
        """Remove every document from the index, keeping the index and its mapping."""
        removed = await self.client.delete_by_query(self.index, {"match_all": {}}, refresh=True)
        logger.info("Truncated %s: removed %d documents", self.index, removed)
        return removed

    async def synchronize(
        self,
        documents: Iterable[DocumentLike] | AsyncIterable[DocumentLike],
        *,
        chunk_size: int | None = None,
    ) -> SynchronizeReport:
        """Re-index every document from the store in ``bulkCreate`` chunks.

        Chunks are applied one at a time. A chunk that fails as a whole is
        counted as failed and the pass continues with the next one.
        """
        size = chunk_size or self.settings.bulk_chunk_size
        if size < 1:
            raise ValueError("chunk_size must be at least 1")
        report = SynchronizeReport()
        logger.info("Synchronizing %s into %s (chunk size %d)", self.name, self.index, size)

        chunk: list[DocumentLike] = []
        async for document in _aiterate(documents):
            chunk.append(document)
            if len(chunk) >= size:
                await self._synchronize_chunk(chunk, report)
                chunk = []
        if chunk:
            await self._synchronize_chunk(chunk, report)

        if not self.engine.refresh:
            await self.client.refresh(self.index)
        logger.info(
            "Synchronized %s: %d indexed, %d failed, %d skipped in %d chunks",
            self.index,
            report.indexed,
            report.failed,
            report.skipped,
            report.chunks,
        )
        return report

    async def _synchronize_chunk(self, chunk: list[DocumentLike], report: SynchronizeReport) -> None:
        report.chunks += 1
        snapshots = [self.snapshot(document) for document in chunk]
        pending, removed = self._enqueue_bulk(snapshots, None)
        try:
            outcomes = await pending
        except IndexSyncError as exc:
            # Already logged and reported to the engine's error observers
            report.failed += len(snapshots)
            report.errors.extend(BulkEntryOutcome(snapshot.id, exc) for snapshot in snapshots)
            return
        for outcome in outcomes:
            if not outcome.ok:
                report.failed += 1
                report.errors.append(outcome)
            elif outcome.document_id in removed:
                report.skipped += 1
            else:
                report.indexed += 1
        logger.debug("Synchronize chunk %d of %s done (%d indexed so far)", report.chunks, self.index, report.indexed)


def _removal_outcome(document_id: str, removal: asyncio.Future) -> BulkEntryOutcome:
    if removal.cancelled():
        return BulkEntryOutcome(document_id, asyncio.CancelledError())
    return BulkEntryOutcome(document_id, removal.exception())


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


async def _aiterate(documents: Iterable[DocumentLike] | AsyncIterable[DocumentLike]):
    if isinstance(documents, AsyncIterable):
        async for document in documents:
            yield document
    else:
        for document in documents:
            yield document
