"""Unit tests for domain models: documents, the sync state machine and search values."""

from pydantic import ValidationError
import pytest

from index_sync.domain import (
    BulkEntry,
    BulkEntryOutcome,
    IndexableDocument,
    InvalidTransitionError,
    OperationKind,
    OperationState,
    SearchRequest,
    SortField,
    SyncOperation,
)


@pytest.mark.unit
class TestIndexableDocument:
    def test_from_record_lifts_identifier_and_version(self):
        document = IndexableDocument.from_record({"_id": 42, "__v": 3, "name": "Bail"})

        assert document.id == "42"
        assert document.version == 3
        assert document.fields == {"name": "Bail"}

    def test_from_record_custom_id_field(self):
        document = IndexableDocument.from_record({"code": "x1", "name": "Legal"}, id_field="code", version_field=None)

        assert document.id == "x1"
        assert document.fields == {"name": "Legal"}

    def test_from_record_requires_identifier(self):
        with pytest.raises(ValueError, match="identifier"):
            IndexableDocument.from_record({"name": "Bail"})

    def test_empty_identifier_rejected(self):
        with pytest.raises(ValidationError):
            IndexableDocument(id="")

    def test_get_follows_dotted_paths(self):
        document = IndexableDocument(id="1", fields={"issuer": {"country": "NL"}, "name": "Bail"})

        assert document.get("issuer.country") == "NL"
        assert document.get("issuer.city", "n/a") == "n/a"
        assert document.get("name.first") is None

    def test_hash_uses_identifier(self):
        assert hash(IndexableDocument(id="1")) == hash(IndexableDocument(id="1", fields={"a": 1}))


@pytest.mark.unit
class TestSyncOperationStateMachine:
    def _operation(self) -> SyncOperation:
        return SyncOperation.for_document(OperationKind.CREATE, "bonds", "b1", {"name": "Bail"})

    def test_happy_path(self):
        operation = self._operation()

        operation.mark_in_flight()
        operation.mark_succeeded()

        assert operation.state is OperationState.SUCCEEDED
        assert operation.attempts == 1
        assert operation.completed_at is not None

    def test_retry_cycle(self):
        operation = self._operation()
        error = RuntimeError("busy")

        operation.mark_in_flight()
        operation.mark_retryable(error)
        operation.requeue()
        operation.mark_in_flight()
        operation.mark_terminal(error)

        assert operation.state is OperationState.FAILED_TERMINAL
        assert operation.attempts == 2
        assert operation.last_error is error

    def test_retryable_can_become_terminal_without_requeue(self):
        operation = self._operation()
        operation.mark_in_flight()
        operation.mark_retryable(RuntimeError("busy"))

        operation.mark_terminal(RuntimeError("gave up"))

        assert operation.state.is_terminal

    def test_pending_can_be_cancelled(self):
        operation = self._operation()

        operation.cancel()

        assert operation.state is OperationState.CANCELLED
        assert operation.state.is_terminal

    @pytest.mark.parametrize(
        "moves",
        [
            ["mark_succeeded"],
            ["mark_in_flight", "cancel"],
            ["mark_in_flight", "mark_succeeded", "mark_in_flight"],
            ["mark_in_flight", "requeue"],
        ],
    )
    def test_invalid_transitions_raise(self, moves):
        operation = self._operation()

        with pytest.raises(InvalidTransitionError):
            for move in moves:
                getattr(operation, move)()

    def test_terminal_states_are_final(self):
        operation = self._operation()
        operation.mark_in_flight()
        operation.mark_terminal(RuntimeError("bad"))

        with pytest.raises(InvalidTransitionError):
            operation.requeue()

    def test_for_document_requires_payload_except_delete(self):
        with pytest.raises(ValueError, match="payload"):
            SyncOperation.for_document(OperationKind.UPDATE, "bonds", "b1")

        delete = SyncOperation.for_document(OperationKind.DELETE, "bonds", "b1")
        assert delete.payload is None
        assert delete.document_id == "b1"

    def test_for_document_rejects_bulk_kind(self):
        with pytest.raises(ValueError):
            SyncOperation.for_document(OperationKind.BULK_CREATE, "bonds", "b1", {})

    def test_for_bulk_collects_identifiers(self):
        operation = SyncOperation.for_bulk("bonds", [BulkEntry("b1", {}), BulkEntry("b2", {})])

        assert operation.kind is OperationKind.BULK_CREATE
        assert operation.document_ids == ("b1", "b2")
        assert operation.describe_targets() == "[2 documents]"

    def test_for_bulk_rejects_empty_and_duplicates(self):
        with pytest.raises(ValueError):
            SyncOperation.for_bulk("bonds", [])
        with pytest.raises(ValueError, match="distinct"):
            SyncOperation.for_bulk("bonds", [BulkEntry("b1", {}), BulkEntry("b1", {})])

    def test_operation_ids_are_unique(self):
        assert self._operation().operation_id != self._operation().operation_id

    def test_bulk_kind_wire_name(self):
        assert OperationKind.BULK_CREATE.value == "bulkCreate"

    def test_entry_outcome_ok(self):
        assert BulkEntryOutcome("b1").ok
        assert not BulkEntryOutcome("b1", RuntimeError("x")).ok


@pytest.mark.unit
class TestSearchValues:
    def test_sort_field_engine_shape(self):
        assert SortField(field="price", order="desc").to_engine() == {"price": {"order": "desc"}}
        assert SortField(field="price", options={"missing": "_first"}).to_engine() == {
            "price": {"order": "asc", "missing": "_first"}
        }

    def test_search_request_accepts_from_alias(self):
        request = SearchRequest.model_validate({"from": 5, "size": 10})

        assert request.from_ == 5
        assert request.query == {"match_all": {}}

    def test_search_request_rejects_negative_size(self):
        with pytest.raises(ValidationError):
            SearchRequest(size=-1)
