"""Centralized configuration for index-sync using Pydantic Settings."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from index_sync.service_layer.retry import RetryPolicy


class ObservabilityCollectorConfig(BaseModel):
    """Configuration for OTLP trace, metric and log export."""

    model_config = {"extra": "forbid"}

    enabled: Annotated[bool, Field(description="Enable OTLP export to an external collector")] = False

    otlp_protocol: Annotated[Literal["http", "grpc"], Field(description="OTLP transport protocol")] = "grpc"

    collector_endpoint: Annotated[
        str,
        Field(
            description="OTLP collector endpoint (HTTP uses /v1/traces)",
            examples=["http://localhost:4317", "http://localhost:4318/v1/traces"],
        ),
    ] = "http://localhost:4317"

    headers: Annotated[dict[str, str], Field(description="Optional headers to include with OTLP requests")] = Field(
        default_factory=dict
    )

    timeout_seconds: Annotated[int, Field(ge=1, le=60, description="OTLP exporter timeout in seconds")] = 10

    grpc_insecure: Annotated[bool, Field(description="Allow insecure gRPC (plaintext) connections")] = True

    resource_attributes: Annotated[
        dict[str, str],
        Field(description="Additional OpenTelemetry resource attributes"),
    ] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Strictly typed configuration loaded from ``INDEX_SYNC_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INDEX_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Engine connection
    engine_url: str = Field(default="http://localhost:9200", description="Base URL of the index engine")
    request_timeout: float = Field(default=10.0, gt=0, description="Per-call timeout in seconds")
    connect_timeout: float = Field(default=5.0, gt=0, description="Connection timeout in seconds")
    refresh_on_write: bool = Field(
        default=False, description="Ask the engine to refresh after each write so it is searchable at once"
    )

    # Index naming
    index_prefix: str = Field(default="", description="Prefix prepended to every derived index name")
    pluralize_index_names: bool = Field(default=True, description="Pluralize collection names into index names")

    # Retry policy
    max_attempts: int = Field(default=5, ge=1, description="Attempts per sync operation before giving up")
    backoff_initial: float = Field(default=0.5, ge=0, description="Delay before the first retry in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1, description="Growth factor between retries")
    backoff_max: float = Field(default=30.0, ge=0, description="Upper bound for a single retry delay in seconds")
    backoff_jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Fraction of each delay randomized")

    # Dispatch
    max_concurrency: int = Field(default=16, ge=1, description="Concurrent dispatches across distinct documents")
    bulk_chunk_size: int = Field(default=500, ge=1, description="Documents per bulk request during synchronize")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON log lines")

    observability: ObservabilityCollectorConfig = Field(default_factory=ObservabilityCollectorConfig)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.backoff_max < self.backoff_initial:
            raise ValueError(
                "INDEX_SYNC_BACKOFF_MAX must be greater than or equal to INDEX_SYNC_BACKOFF_INITIAL "
                f"(got max={self.backoff_max}, initial={self.backoff_initial})"
            )
        return self

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy described by these settings."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.backoff_initial,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max,
            jitter=self.backoff_jitter,
        )

    def index_name(self, collection_name: str) -> str:
        """Derive the index name for a store collection.

        The name is lower-cased, pluralized unless disabled, and prefixed.
        """
        return derive_index_name(
            collection_name,
            prefix=self.index_prefix,
            plural=self.pluralize_index_names,
        )


def pluralize(word: str) -> str:
    """Return a naive English plural of ``word``."""
    if not word:
        return word
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word if word.endswith("s") else word + "es"
    if word.endswith("y") and len(word) > 1 and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    return word + "s"


def derive_index_name(collection_name: str, *, prefix: str = "", plural: bool = True) -> str:
    name = collection_name.strip().lower()
    if not name:
        raise ValueError("Collection name must not be empty")
    if plural:
        name = pluralize(name)
    return f"{prefix}{name}"
