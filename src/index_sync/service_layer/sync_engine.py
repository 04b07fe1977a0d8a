"""Asynchronous dispatcher that applies sync operations to the index.

Operations are accepted with ``enqueue`` and dispatched in background tasks.
Operations that touch the same document identifier wait in a per-identifier
lane and are applied strictly in the order they were enqueued; operations on
different identifiers run concurrently, bounded by ``max_concurrency``.

Each operation carries a completion future so callers can wait until a write
is applied (``await engine.enqueue(op)``) or fire and forget. Retryable
failures are retried with the configured ``RetryPolicy``; terminal failures
and exhausted retries fail the future, are logged and are reported to every
registered error observer.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
import inspect
import logging
from typing import Any

from index_sync.adapters.index_client import AbstractIndexClient, BulkAction, WriteAck
from index_sync.config import Settings
from index_sync.domain.sync import (
    BulkEntryOutcome,
    OperationKind,
    OperationState,
    SyncOperation,
)
from index_sync.errors import DocumentNotFoundError, RetryExhausted, is_retryable
from index_sync.observability.context import bind_sync_context
from index_sync.observability.metrics import PENDING_OPERATIONS, SYNC_OPERATIONS, SYNC_RETRIES
from index_sync.observability.tracing import create_span
from index_sync.service_layer.retry import RetryPolicy


logger = logging.getLogger(__name__)

ErrorObserver = Callable[[SyncOperation, BaseException], Awaitable[Any] | Any]
LaneKey = tuple[str, str]


class EngineNotRunningError(RuntimeError):
    """Raised when an operation is enqueued on an engine that is not started."""


@dataclass
class _BulkTracker:
    """Collects per-entry outcomes of a bulk operation whose entries are retried individually."""

    operation: SyncOperation
    outcomes: dict[int, BulkEntryOutcome] = field(default_factory=dict)
    remaining: int = 0


class SyncEngine:
    """Per-identifier ordered, concurrently dispatched index synchronization."""

    def __init__(
        self,
        client: AbstractIndexClient,
        retry_policy: RetryPolicy | None = None,
        *,
        max_concurrency: int = 16,
        refresh: bool = False,
        name: str = "default",
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max_concurrency
        self.refresh = refresh
        self.name = name

        self._running = False
        self._semaphore: asyncio.Semaphore | None = None
        self._abort = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

        self._lanes: dict[LaneKey, deque[SyncOperation]] = {}
        self._launched: set[str] = set()
        self._replacements: dict[str, dict[LaneKey, SyncOperation]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._observers: list[ErrorObserver] = []
        self._pending = 0

        self._enqueued = 0
        self._succeeded = 0
        self._failed = 0
        self._retried = 0
        self._cancelled = 0

    @classmethod
    def from_settings(cls, client: AbstractIndexClient, settings: Settings, *, name: str = "default") -> SyncEngine:
        """Build an engine with the retry, concurrency and refresh behaviour of ``settings``."""
        return cls(
            client,
            settings.retry_policy(),
            max_concurrency=settings.max_concurrency,
            refresh=settings.refresh_on_write,
            name=name,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Operations accepted and not yet terminal."""
        return self._pending

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "pending": self._pending,
            "enqueued": self._enqueued,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "retried": self._retried,
            "cancelled": self._cancelled,
        }

    async def start(self) -> None:
        if self._running:
            return
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._abort.clear()
        self._running = True
        logger.info("Sync engine %s started (max_concurrency=%d)", self.name, self.max_concurrency)

    async def stop(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop accepting operations.

        With ``drain`` every accepted operation is still applied. Without it,
        operations not yet dispatched are cancelled (their futures are
        cancelled); in-flight operations always complete.
        """
        if not self._running:
            return
        self._running = False

        if drain:
            await self.wait_idle(timeout=timeout)
        else:
            self._abort.set()
            dropped = self._drop_pending()
            if dropped:
                logger.warning("Sync engine %s dropped %d pending operations on shutdown", self.name, dropped)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Sync engine %s stopped", self.name)

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop(drain=exc_type is None)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every accepted operation reached a terminal state."""
        if timeout is None:
            await self._idle.wait()
        else:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    def add_error_observer(self, observer: ErrorObserver) -> None:
        """Register a callback receiving ``(operation, error)`` for every terminal failure."""
        self._observers.append(observer)

    def remove_error_observer(self, observer: ErrorObserver) -> None:
        self._observers.remove(observer)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, operation: SyncOperation) -> asyncio.Future:
        """Accept ``operation`` and return its completion future.

        The future resolves to a ``WriteAck`` for single-document operations
        and to the list of ``BulkEntryOutcome`` (in entry order) for bulk ones.
        """
        if not self._running:
            raise EngineNotRunningError(f"Sync engine {self.name} is not running")
        if operation.state is not OperationState.PENDING:
            raise ValueError(f"Only pending operations can be enqueued, got {operation.state.value}")

        self._admit(operation)
        self._enqueued += 1
        for key in _lane_keys(operation):
            self._lanes.setdefault(key, deque()).append(operation)
        logger.debug(
            "Enqueued %s %s/%s (%s)",
            operation.kind.value,
            operation.index,
            operation.describe_targets(),
            operation.operation_id,
        )
        self._launch_if_ready(operation)
        return operation.completion

    def _admit(self, operation: SyncOperation) -> None:
        operation.completion = asyncio.get_running_loop().create_future()
        # Terminal failures are logged and observed; fire-and-forget callers never await the future
        operation.completion.add_done_callback(_consume_exception)
        self._pending += 1
        self._idle.clear()
        PENDING_OPERATIONS.labels(engine=self.name).set(self._pending)

    def _finish(self, operation: SyncOperation) -> None:
        self._pending -= 1
        PENDING_OPERATIONS.labels(engine=self.name).set(self._pending)
        if self._pending == 0:
            self._idle.set()

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    def _is_ready(self, operation: SyncOperation) -> bool:
        return all(self._lanes[key][0] is operation for key in _lane_keys(operation))

    def _launch_if_ready(self, operation: SyncOperation) -> None:
        if operation.operation_id in self._launched or not self._is_ready(operation):
            return
        self._launched.add(operation.operation_id)
        task = asyncio.create_task(self._run(operation), name=f"sync-{operation.operation_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, operation: SyncOperation) -> None:
        try:
            await self._process(operation)
        except Exception as exc:
            logger.exception("Sync engine %s crashed while processing %s", self.name, operation.operation_id)
            if not operation.state.is_terminal:
                if operation.completion is not None and not operation.completion.done():
                    operation.completion.set_exception(exc)
                self._finish(operation)
        finally:
            self._release(operation)

    def _release(self, operation: SyncOperation) -> None:
        self._launched.discard(operation.operation_id)
        replacements = self._replacements.pop(operation.operation_id, {})
        successors: list[SyncOperation] = []
        for key in _lane_keys(operation):
            lane = self._lanes[key]
            lane.popleft()
            child = replacements.get(key)
            if child is not None and not self._abort.is_set():
                lane.appendleft(child)
            if lane:
                successors.append(lane[0])
            else:
                del self._lanes[key]

        if self._abort.is_set():
            for child in replacements.values():
                self._cancel(child)
            return
        for successor in dict.fromkeys(successors):
            self._launch_if_ready(successor)

    def _drop_pending(self) -> int:
        dropped: dict[str, SyncOperation] = {}
        for key, lane in list(self._lanes.items()):
            kept = deque(op for op in lane if op.operation_id in self._launched)
            for op in lane:
                if op.operation_id not in self._launched:
                    dropped[op.operation_id] = op
            if kept:
                self._lanes[key] = kept
            else:
                del self._lanes[key]
        for op in dropped.values():
            self._cancel(op)
        return len(dropped)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _process(self, operation: SyncOperation) -> None:
        assert self._semaphore is not None
        with bind_sync_context(
            operation_id=operation.operation_id,
            operation=operation.kind.value,
            index=operation.index,
            document_id=operation.describe_targets(),
        ):
            # Entries split off a partially failed bulk inherit its attempts
            if operation.attempts and await self._backoff(operation):
                self._cancel(operation)
                return

            while True:
                if self._abort.is_set():
                    self._cancel(operation)
                    return

                async with self._semaphore:
                    operation.mark_in_flight()
                    try:
                        result = await self._dispatch(operation)
                    except Exception as exc:
                        error: BaseException | None = exc
                    else:
                        error = None

                if error is None:
                    await self._succeed(operation, result)
                    return
                if not is_retryable(error):
                    operation.mark_terminal(error)
                    await self._fail(operation, error)
                    return

                operation.mark_retryable(error)
                if not self.retry_policy.should_retry(operation.attempts):
                    exhausted = RetryExhausted(operation, error)
                    operation.mark_terminal(exhausted)
                    await self._fail(operation, exhausted)
                    return

                operation.requeue()
                self._retried += 1
                SYNC_RETRIES.labels(kind=operation.kind.value).inc()
                if await self._backoff(operation):
                    self._cancel(operation)
                    return

    async def _backoff(self, operation: SyncOperation) -> bool:
        """Sleep before the next attempt; returns True when shutdown aborted the wait."""
        delay = self.retry_policy.delay_for(operation.attempts)
        logger.warning(
            "Retrying %s %s/%s in %.2fs (attempt %d/%d): %s",
            operation.kind.value,
            operation.index,
            operation.describe_targets(),
            delay,
            operation.attempts + 1,
            self.retry_policy.max_attempts,
            operation.last_error,
        )
        if delay <= 0:
            await asyncio.sleep(0)
            return self._abort.is_set()
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _dispatch(self, operation: SyncOperation) -> Any:
        attributes = {
            "sync.operation_id": operation.operation_id,
            "sync.kind": operation.kind.value,
            "sync.attempt": operation.attempts,
            "index.name": operation.index,
            "index.document_id": operation.describe_targets(),
        }
        with create_span(f"sync.{operation.kind.value}", attributes=attributes):
            if operation.kind in (OperationKind.CREATE, OperationKind.UPDATE):
                return await self.client.put_document(
                    operation.index,
                    operation.document_id,
                    operation.payload or {},
                    refresh=self.refresh,
                )
            if operation.kind is OperationKind.DELETE:
                try:
                    return await self.client.delete_document(operation.index, operation.document_id, refresh=self.refresh)
                except DocumentNotFoundError:
                    # Already absent: the index has converged
                    logger.debug("Delete of absent document %s/%s", operation.index, operation.document_id)
                    return WriteAck(index=operation.index, document_id=operation.document_id, result="not_found")
            actions = [BulkAction("index", entry.document_id, entry.payload) for entry in operation.entries]
            return await self.client.bulk(operation.index, actions, refresh=self.refresh)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _succeed(self, operation: SyncOperation, result: Any) -> None:
        operation.mark_succeeded()
        self._succeeded += 1
        SYNC_OPERATIONS.labels(kind=operation.kind.value, outcome="succeeded").inc()
        if operation.kind is OperationKind.BULK_CREATE:
            await self._settle_bulk(operation, result)
        else:
            logger.debug("Applied %s %s/%s", operation.kind.value, operation.index, operation.document_id)
            _resolve(operation.completion, result)
        self._finish(operation)

    async def _fail(self, operation: SyncOperation, error: BaseException) -> None:
        self._failed += 1
        outcome = "exhausted" if isinstance(error, RetryExhausted) else "failed"
        SYNC_OPERATIONS.labels(kind=operation.kind.value, outcome=outcome).inc()
        logger.error(
            "Sync %s %s/%s failed after %d attempts: %s",
            operation.kind.value,
            operation.index,
            operation.describe_targets(),
            operation.attempts,
            error,
        )
        if operation.kind is OperationKind.BULK_CREATE:
            for entry in operation.entries:
                self._deliver_entry(operation, BulkEntryOutcome(entry.document_id, error))
        await self._notify_observers(operation, error)
        if operation.completion is not None and not operation.completion.done():
            operation.completion.set_exception(error)
        self._finish(operation)

    def _cancel(self, operation: SyncOperation) -> None:
        operation.cancel()
        self._cancelled += 1
        SYNC_OPERATIONS.labels(kind=operation.kind.value, outcome="cancelled").inc()
        logger.debug("Cancelled %s %s/%s", operation.kind.value, operation.index, operation.describe_targets())
        if operation.completion is not None and not operation.completion.done():
            operation.completion.cancel()
        self._finish(operation)

    async def _settle_bulk(self, operation: SyncOperation, results: list) -> None:
        tracker = _BulkTracker(operation)
        replacements: dict[LaneKey, SyncOperation] = {}

        for position, (entry, item) in enumerate(zip(operation.entries, results, strict=True)):
            if item.ok:
                tracker.outcomes[position] = BulkEntryOutcome(entry.document_id)
                self._deliver_entry(operation, tracker.outcomes[position])
                continue

            error = item.error
            if is_retryable(error) and self.retry_policy.should_retry(operation.attempts):
                child = SyncOperation.for_document(OperationKind.CREATE, operation.index, entry.document_id, entry.payload)
                child.attempts = operation.attempts
                child.last_error = error
                self._admit(child)
                child.completion.add_done_callback(partial(self._on_entry_settled, tracker, position))
                replacements[(operation.index, entry.document_id)] = child
                tracker.remaining += 1
                self._retried += 1
                SYNC_RETRIES.labels(kind=OperationKind.CREATE.value).inc()
                continue

            if is_retryable(error):
                error = RetryExhausted(operation, error)
            tracker.outcomes[position] = BulkEntryOutcome(entry.document_id, error)
            logger.error("Bulk entry %s/%s failed: %s", operation.index, entry.document_id, error)
            self._deliver_entry(operation, tracker.outcomes[position])
            await self._notify_observers(operation, error)

        failed = sum(1 for outcome in tracker.outcomes.values() if not outcome.ok)
        logger.info(
            "Bulk %s: %d documents, %d failed, %d retrying individually",
            operation.index,
            len(operation.entries),
            failed,
            tracker.remaining,
        )
        if replacements:
            self._replacements[operation.operation_id] = replacements
        else:
            self._complete_bulk(tracker)

    def _on_entry_settled(self, tracker: _BulkTracker, position: int, future: asyncio.Future) -> None:
        entry = tracker.operation.entries[position]
        if future.cancelled():
            error: BaseException | None = asyncio.CancelledError()
        else:
            error = future.exception()
        outcome = BulkEntryOutcome(entry.document_id, error)
        tracker.outcomes[position] = outcome
        tracker.remaining -= 1
        self._deliver_entry(tracker.operation, outcome)
        if tracker.remaining == 0:
            self._complete_bulk(tracker)

    @staticmethod
    def _complete_bulk(tracker: _BulkTracker) -> None:
        operation = tracker.operation
        operation.outcomes = [tracker.outcomes[position] for position in range(len(operation.entries))]
        _resolve(operation.completion, list(operation.outcomes))

    def _deliver_entry(self, operation: SyncOperation, outcome: BulkEntryOutcome) -> None:
        if operation.on_entry_complete is not None:
            self.deliver_outcome(operation.index, operation.on_entry_complete, outcome)

    def deliver_outcome(
        self,
        index: str,
        callback: Callable[[BulkEntryOutcome], Any],
        outcome: BulkEntryOutcome,
    ) -> None:
        """Hand ``outcome`` to a per-document callback.

        Awaitable results are scheduled as engine tasks, so ``stop`` waits for
        them; callback failures are logged and never reach the operation.
        """
        try:
            result = callback(outcome)
        except Exception:
            logger.exception("Bulk entry callback failed for %s/%s", index, outcome.document_id)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(partial(_log_callback_failure, index, outcome.document_id))

    async def _notify_observers(self, operation: SyncOperation, error: BaseException) -> None:
        for observer in list(self._observers):
            try:
                result = observer(operation, error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error observer %r failed", observer)


def _lane_keys(operation: SyncOperation) -> tuple[LaneKey, ...]:
    return tuple((operation.index, document_id) for document_id in operation.document_ids)


def _resolve(future: asyncio.Future | None, result: Any) -> None:
    if future is not None and not future.done():
        future.set_result(result)


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _log_callback_failure(index: str, document_id: str, task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Bulk entry callback failed for %s/%s", index, document_id, exc_info=task.exception())
