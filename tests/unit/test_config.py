"""Unit tests for settings, index naming and the error taxonomy."""

import pytest

from index_sync.config import ObservabilityCollectorConfig, Settings, derive_index_name, pluralize
from index_sync.domain.sync import OperationKind, SyncOperation
from index_sync.errors import (
    DocumentNotFoundError,
    IndexConnectionError,
    IndexTimeoutError,
    IndexValidationError,
    MalformedResponse,
    MappingMismatch,
    RetryExhausted,
    TransientEngineError,
    UnsupportedClause,
    is_retryable,
)
from index_sync.service_layer.retry import RetryPolicy


@pytest.mark.unit
class TestSettings:
    def test_reads_prefixed_environment(self, settings):
        assert settings.engine_url == "http://index.test:9200"
        assert settings.max_attempts == 3
        assert settings.bulk_chunk_size == 100
        assert settings.log_json is False

    def test_defaults_without_environment(self, monkeypatch):
        monkeypatch.delenv("INDEX_SYNC_MAX_ATTEMPTS")
        monkeypatch.delenv("INDEX_SYNC_BACKOFF_MAX")
        monkeypatch.delenv("INDEX_SYNC_BACKOFF_INITIAL")

        settings = Settings(_env_file=None)

        assert settings.max_attempts == 5
        assert settings.backoff_initial == 0.5
        assert settings.backoff_max == 30.0

    def test_rejects_backoff_max_below_initial(self):
        with pytest.raises(ValueError, match="BACKOFF_MAX"):
            Settings(backoff_initial=5.0, backoff_max=1.0)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            Settings(max_attempts=0)

    def test_retry_policy_reflects_settings(self):
        settings = Settings(max_attempts=7, backoff_initial=0.25, backoff_multiplier=3, backoff_max=4, backoff_jitter=0)

        policy = settings.retry_policy()

        assert policy == RetryPolicy(max_attempts=7, initial_delay=0.25, multiplier=3.0, max_delay=4.0, jitter=0.0)

    def test_nested_observability_config(self, monkeypatch):
        monkeypatch.setenv("INDEX_SYNC_OBSERVABILITY__ENABLED", "true")
        monkeypatch.setenv("INDEX_SYNC_OBSERVABILITY__OTLP_PROTOCOL", "http")

        settings = Settings()

        assert settings.observability.enabled is True
        assert settings.observability.otlp_protocol == "http"

    def test_observability_config_forbids_unknown_keys(self):
        with pytest.raises(ValueError):
            ObservabilityCollectorConfig(enabled=True, endpoint="http://collector")


@pytest.mark.unit
class TestIndexNaming:
    @pytest.mark.parametrize(
        ("word", "plural"),
        [
            ("bond", "bonds"),
            ("box", "boxes"),
            ("match", "matches"),
            ("policy", "policies"),
            ("key", "keys"),
            ("address", "address"),
        ],
    )
    def test_pluralize(self, word, plural):
        assert pluralize(word) == plural

    def test_derived_name_is_lowercase_plural(self, settings):
        assert settings.index_name("Bond") == "bonds"

    def test_prefix_and_no_plural(self):
        settings = Settings(index_prefix="test-", pluralize_index_names=False)

        assert settings.index_name("Bond") == "test-bond"

    def test_empty_collection_name_rejected(self):
        with pytest.raises(ValueError):
            derive_index_name("  ")


@pytest.mark.unit
class TestErrors:
    def test_retryable_classification(self):
        assert is_retryable(IndexConnectionError("refused"))
        assert is_retryable(IndexTimeoutError("slow"))
        assert is_retryable(TransientEngineError("busy", status_code=429))
        assert not is_retryable(IndexValidationError("bad", status_code=400))
        assert not is_retryable(DocumentNotFoundError("bonds", "b1"))
        assert not is_retryable(MalformedResponse("garbage"))
        assert not is_retryable(ValueError("other"))

    def test_mapping_mismatch_is_a_validation_error(self):
        error = MappingMismatch("price", "long", "cheap")

        assert isinstance(error, IndexValidationError)
        assert error.field == "price"
        assert "price" in str(error)
        assert "str" in str(error)

    def test_unsupported_clause_names_kind(self):
        error = UnsupportedClause("query_string", "not available")

        assert error.kind == "query_string"
        assert "query_string" in str(error)
        assert "not available" in str(error)

    def test_not_found_message(self):
        assert str(DocumentNotFoundError("bonds", "b1")) == "Not found: bonds/b1"
        assert str(DocumentNotFoundError("bonds")) == "Not found: bonds"

    def test_retry_exhausted_describes_operation(self):
        operation = SyncOperation.for_document(OperationKind.CREATE, "bonds", "b1", {"name": "Bail"})
        operation.attempts = 3
        cause = TransientEngineError("busy", status_code=503)

        error = RetryExhausted(operation, cause)

        assert error.operation is operation
        assert error.cause is cause
        assert "create bonds/b1 failed after 3 attempts" in str(error)
