"""Domain models for search requests and results.

Following Cosmic Python principles:
- Value Objects are immutable (frozen=True)
- No infrastructure dependencies

A ``SearchRequest`` is what the query translator consumes after the public
options have been normalized; a ``SearchResult`` is what the result projector
produces from a raw engine response.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


SortOrder = Literal["asc", "desc"]


class SortField(BaseModel):
    """One key of a multi-field sort. Earlier keys take precedence."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    order: SortOrder = "asc"
    options: dict[str, Any] = Field(default_factory=dict)

    def to_engine(self) -> dict[str, Any]:
        return {self.field: {"order": self.order, **self.options}}


class SearchRequest(BaseModel):
    """Structured search: query clause, ordered sort, aggregations and pagination."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    query: dict[str, Any] = Field(default_factory=lambda: {"match_all": {}})
    sort: tuple[SortField, ...] = ()
    aggregations: dict[str, dict[str, Any]] = Field(default_factory=dict)
    from_: int | None = Field(default=None, ge=0, alias="from")
    size: int | None = Field(default=None, ge=0)
    min_score: float | None = None
    source: bool | list[str] | None = None
    highlight: dict[str, Any] | None = None


class Hit(BaseModel):
    """A single matching document, in engine order."""

    model_config = ConfigDict(frozen=True)

    id: str
    score: float | None = None
    source: dict[str, Any] = Field(default_factory=dict)
    index: str | None = None
    sort: list[Any] | None = None
    highlight: dict[str, list[str]] | None = None
    document: Any = None


class Bucket(BaseModel):
    """A group of documents sharing an aggregation key."""

    model_config = ConfigDict(frozen=True)

    key: Any
    doc_count: int = Field(ge=0)
    extra: dict[str, Any] = Field(default_factory=dict)


class AggregationResult(BaseModel):
    """Result of one named aggregation.

    Bucket aggregations fill ``buckets``; metric aggregations fill ``value``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    buckets: list[Bucket] = Field(default_factory=list)
    value: Any = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def keys(self) -> list[Any]:
        return [bucket.key for bucket in self.buckets]


class SearchResult(BaseModel):
    """Complete, typed answer to a search call."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(ge=0)
    total_relation: Literal["eq", "gte"] = "eq"
    hits: list[Hit] = Field(default_factory=list)
    aggregations: dict[str, AggregationResult] = Field(default_factory=dict)
    max_score: float | None = None
    took_ms: int | None = None

    def sources(self) -> list[dict[str, Any]]:
        return [hit.source for hit in self.hits]

    def ids(self) -> list[str]:
        return [hit.id for hit in self.hits]
