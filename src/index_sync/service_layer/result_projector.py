"""Project raw engine search responses into typed ``SearchResult`` objects."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from typing import Any

from pydantic import ValidationError

from index_sync.domain.search import AggregationResult, Bucket, Hit, SearchResult
from index_sync.errors import MalformedResponse
from index_sync.search.schema import IndexMapping
from index_sync.search.serializer import from_index_payload


logger = logging.getLogger(__name__)

SourceFactory = Callable[[str, dict[str, Any]], Any]

_BUCKET_KEYS = frozenset({"key", "doc_count"})
_AGG_META_KEYS = frozenset({"buckets", "value", "doc_count_error_upper_bound", "sum_other_doc_count"})


class ResultProjector:
    """Reshape raw engine responses.

    Hit order and bucket order are the engine's unless ``sort_buckets_by_key``
    asks for a deterministic alphabetical bucket order. When a mapping is
    given, hit sources are rebuilt with typed values (dates, integers); when a
    ``source_factory`` is given, each hit also carries ``factory(id, source)``.
    """

    def __init__(
        self,
        mapping: IndexMapping | None = None,
        *,
        source_factory: SourceFactory | None = None,
        sort_buckets_by_key: bool = False,
    ) -> None:
        self.mapping = mapping
        self.source_factory = source_factory
        self.sort_buckets_by_key = sort_buckets_by_key

    def project(self, raw: Mapping[str, Any]) -> SearchResult:
        if not isinstance(raw, Mapping):
            raise MalformedResponse(f"Search response must be an object, got {type(raw).__name__}")
        envelope = raw.get("hits")
        if not isinstance(envelope, Mapping):
            raise MalformedResponse("Search response has no 'hits' envelope")
        raw_hits = envelope.get("hits")
        if not isinstance(raw_hits, list):
            raise MalformedResponse("Search response 'hits.hits' must be a list")

        total, relation = _total(envelope.get("total"))
        try:
            result = SearchResult(
                total=total,
                total_relation=relation,
                hits=[self._hit(raw_hit) for raw_hit in raw_hits],
                aggregations=self._aggregations(raw.get("aggregations") or {}),
                max_score=envelope.get("max_score"),
                took_ms=raw.get("took"),
            )
        except ValidationError as exc:
            raise MalformedResponse(f"Search response has invalid values: {exc}") from exc
        logger.debug("Projected %d of %d hits and %d aggregations", len(result.hits), total, len(result.aggregations))
        return result

    def _hit(self, raw_hit: Any) -> Hit:
        if not isinstance(raw_hit, Mapping) or "_id" not in raw_hit:
            raise MalformedResponse(f"Hit without '_id': {raw_hit!r}")
        source = raw_hit.get("_source") or {}
        if not isinstance(source, Mapping):
            raise MalformedResponse(f"Hit {raw_hit['_id']} has a non-object _source")
        source = from_index_payload(source, self.mapping) if self.mapping is not None else dict(source)
        document_id = str(raw_hit["_id"])
        return Hit(
            id=document_id,
            score=raw_hit.get("_score"),
            source=source,
            index=raw_hit.get("_index"),
            sort=raw_hit.get("sort"),
            highlight=raw_hit.get("highlight"),
            document=self.source_factory(document_id, source) if self.source_factory else None,
        )

    def _aggregations(self, raw: Any) -> dict[str, AggregationResult]:
        if not isinstance(raw, Mapping):
            raise MalformedResponse("'aggregations' must be an object")
        results: dict[str, AggregationResult] = {}
        for name, body in raw.items():
            if not isinstance(body, Mapping):
                raise MalformedResponse(f"Aggregation '{name}' must be an object")
            buckets = [self._bucket(name, bucket) for bucket in _bucket_list(name, body.get("buckets"))]
            if self.sort_buckets_by_key:
                buckets.sort(key=_bucket_sort_key)
            results[name] = AggregationResult(
                name=name,
                buckets=buckets,
                value=body.get("value"),
                extra={key: value for key, value in body.items() if key not in _AGG_META_KEYS},
            )
        return results

    def _bucket(self, name: str, raw: Any) -> Bucket:
        if not isinstance(raw, Mapping) or "key" not in raw or "doc_count" not in raw:
            raise MalformedResponse(f"Bucket in aggregation '{name}' lacks 'key' or 'doc_count': {raw!r}")
        doc_count = raw["doc_count"]
        if isinstance(doc_count, bool) or not isinstance(doc_count, int) or doc_count < 0:
            raise MalformedResponse(f"Bucket in aggregation '{name}' has invalid doc_count {doc_count!r}")
        return Bucket(
            key=raw["key"],
            doc_count=doc_count,
            extra={key: value for key, value in raw.items() if key not in _BUCKET_KEYS},
        )


def _total(raw: Any) -> tuple[int, str]:
    if raw is None:
        raise MalformedResponse("Search response has no hits.total")
    if isinstance(raw, Mapping):
        value, relation = raw.get("value"), raw.get("relation", "eq")
    else:
        value, relation = raw, "eq"
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or relation not in {"eq", "gte"}:
        raise MalformedResponse(f"Invalid hits.total: {raw!r}")
    return value, relation


def _bucket_list(name: str, raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        # Keyed bucket responses
        return [{"key": key, **bucket} for key, bucket in raw.items()]
    if not isinstance(raw, list):
        raise MalformedResponse(f"Aggregation '{name}' buckets must be a list")
    return raw


def _bucket_sort_key(bucket: Bucket) -> tuple[bool, Any]:
    # Numeric keys first in numeric order, then everything else as text
    if isinstance(bucket.key, (int, float)) and not isinstance(bucket.key, bool):
        return False, bucket.key
    return True, str(bucket.key)
