"""In-process index engine.

Evaluates the same request bodies the remote engine accepts (for the subset
of the query DSL this package emits) against documents held in memory. It is
used by the test-suite and by embedded setups that do not run a search
cluster. Writes are visible to search immediately, so ``refresh`` is a no-op.

Supported query clauses: ``match_all``, ``match`` (with ``operator`` and
``fuzziness``), ``term``, ``terms``, ``range``, ``bool``, ``ids`` and
``exists``. Supported aggregations: ``terms`` (with nested aggregations),
``min``, ``max``, ``avg``, ``sum`` and ``value_count``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key
import logging
import math
import time
from typing import Any

import orjson

from index_sync.adapters.index_client import (
    AbstractIndexClient,
    BulkAction,
    BulkItemResult,
    WriteAck,
)
from index_sync.errors import DocumentNotFoundError, IndexValidationError
from index_sync.search.analyzers import Analyzer, build_analyzer, get_analyzer
from index_sync.search.fuzzy import edit_distance, resolve_fuzziness
from index_sync.search.schema import KEYWORD_SUBFIELD


logger = logging.getLogger(__name__)

_INTEGER_TYPES = frozenset({"long", "integer", "short", "byte"})
_NUMERIC_TYPES = _INTEGER_TYPES | {"double", "float", "half_float", "scaled_float"}
_FUZZY_DISCOUNT = 0.8
_DEFAULT_SIZE = 10


def _reject(message: str, error_type: str = "parsing_exception") -> IndexValidationError:
    return IndexValidationError(message, status_code=400, reason={"error": {"type": error_type, "reason": message}})


@dataclass
class _FieldSpec:
    """Resolved mapping entry for a (possibly sub-) field path."""

    type: str
    analyzer: str | None = None
    keyword_of: str | None = None

    @property
    def is_text(self) -> bool:
        return self.type == "text"


@dataclass
class _IndexState:
    name: str
    properties: dict[str, dict[str, Any]] = field(default_factory=dict)
    analyzers: dict[str, Analyzer] = field(default_factory=dict)
    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    versions: dict[str, int] = field(default_factory=dict)

    def field_spec(self, path: str) -> _FieldSpec | None:
        if path in self.properties:
            prop = self.properties[path]
            return _FieldSpec(type=str(prop.get("type", "object")), analyzer=prop.get("analyzer"))
        base, _, sub = path.rpartition(".")
        if base in self.properties:
            subfields = self.properties[base].get("fields", {})
            if sub in subfields:
                return _FieldSpec(type=str(subfields[sub].get("type", "keyword")), keyword_of=base)
        return None

    def analyzer_for(self, spec: _FieldSpec | None) -> Analyzer:
        name = spec.analyzer if spec else None
        if name and name in self.analyzers:
            return self.analyzers[name]
        return get_analyzer(name)

    def values(self, source: Mapping[str, Any], path: str) -> list[Any]:
        """All leaf values stored under ``path`` (arrays are flattened)."""
        spec = self.field_spec(path)
        lookup = spec.keyword_of if spec and spec.keyword_of else path
        current: list[Any] = [source]
        for part in lookup.split("."):
            following: list[Any] = []
            for node in current:
                if isinstance(node, Mapping) and part in node:
                    following.append(node[part])
            current = _flatten(following)
        return [value for value in current if value is not None]

    def apply_dynamic_mapping(self, payload: Mapping[str, Any]) -> None:
        for name, value in payload.items():
            if name in self.properties:
                continue
            sample = value[0] if isinstance(value, list) and value else value
            inferred = _infer_type(sample)
            if inferred is not None:
                self.properties[name] = inferred
                logger.debug("Dynamically mapped %s.%s as %s", self.name, name, inferred["type"])

    def check_payload(self, document_id: str, payload: Mapping[str, Any]) -> None:
        for name, value in payload.items():
            prop = self.properties.get(name)
            if prop is None:
                continue
            kind = str(prop.get("type"))
            for item in _flatten([value]):
                if item is None:
                    continue
                if kind in _NUMERIC_TYPES:
                    valid = isinstance(item, (int, float)) and not isinstance(item, bool)
                elif kind == "boolean":
                    valid = isinstance(item, bool)
                elif kind == "date":
                    valid = _as_datetime(item) is not None
                else:
                    valid = True
                if not valid:
                    msg = f"failed to parse field [{name}] of type [{kind}] in document with id '{document_id}'"
                    raise _reject(msg, "mapper_parsing_exception")


class InMemoryIndexClient(AbstractIndexClient):
    """Dictionary-backed implementation of ``AbstractIndexClient``.

    Indices are created implicitly on first write with a dynamic mapping,
    the way the engine does by default. Payloads are copied through a JSON
    round trip so stored documents never alias caller objects.
    """

    def __init__(self) -> None:
        self._indices: dict[str, _IndexState] = {}

    @property
    def indices(self) -> list[str]:
        return sorted(self._indices)

    def documents(self, index: str) -> dict[str, dict[str, Any]]:
        """Snapshot of the stored sources of ``index`` keyed by identifier."""
        return {doc_id: dict(source) for doc_id, source in self._state(index).documents.items()}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def put_document(
        self,
        index: str,
        document_id: str,
        payload: Mapping[str, Any],
        *,
        refresh: bool = False,
    ) -> WriteAck:
        await asyncio.sleep(0)
        state = self._state(index, create=True)
        result, version = self._store(state, document_id, payload)
        return WriteAck(index=index, document_id=document_id, result=result, version=version)

    async def delete_document(self, index: str, document_id: str, *, refresh: bool = False) -> WriteAck:
        await asyncio.sleep(0)
        state = self._state(index)
        if document_id not in state.documents:
            raise DocumentNotFoundError(index, document_id)
        del state.documents[document_id]
        version = state.versions[document_id] = state.versions.get(document_id, 0) + 1
        return WriteAck(index=index, document_id=document_id, result="deleted", version=version)

    async def get_document(self, index: str, document_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        state = self._state(index)
        if document_id not in state.documents:
            raise DocumentNotFoundError(index, document_id)
        return _copy(state.documents[document_id])

    async def bulk(
        self,
        index: str,
        actions: Sequence[BulkAction],
        *,
        refresh: bool = False,
    ) -> list[BulkItemResult]:
        await asyncio.sleep(0)
        state = self._state(index, create=True)
        results: list[BulkItemResult] = []
        for action in actions:
            results.append(self._apply_bulk_action(state, action))
        return results

    def _apply_bulk_action(self, state: _IndexState, action: BulkAction) -> BulkItemResult:
        doc_id = action.document_id
        try:
            if action.kind == "delete":
                if doc_id not in state.documents:
                    raise DocumentNotFoundError(state.name, doc_id)
                del state.documents[doc_id]
                return BulkItemResult(document_id=doc_id, kind=action.kind, status=200, result="deleted")
            if action.kind == "create" and doc_id in state.documents:
                raise IndexValidationError(
                    f"[{doc_id}]: version conflict, document already exists",
                    status_code=409,
                    reason={"error": {"type": "version_conflict_engine_exception"}},
                )
            result, _ = self._store(state, doc_id, action.payload or {})
            status = 201 if result == "created" else 200
            return BulkItemResult(document_id=doc_id, kind=action.kind, status=status, result=result)
        except DocumentNotFoundError as exc:
            return BulkItemResult(document_id=doc_id, kind=action.kind, status=404, result="not_found", error=exc)
        except IndexValidationError as exc:
            return BulkItemResult(document_id=doc_id, kind=action.kind, status=exc.status_code or 400, error=exc)

    def _store(self, state: _IndexState, document_id: str, payload: Mapping[str, Any]) -> tuple[str, int]:
        if not document_id:
            raise _reject("document id must not be empty", "action_request_validation_exception")
        source = _copy(payload)
        state.check_payload(document_id, source)
        state.apply_dynamic_mapping(source)
        result = "updated" if document_id in state.documents else "created"
        state.documents[document_id] = source
        version = state.versions[document_id] = state.versions.get(document_id, 0) + 1
        return result, version

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, index: str, body: Mapping[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        started = time.perf_counter()
        state = self._state(index)
        evaluator = _QueryEvaluator(state)

        query = body.get("query") or {"match_all": {}}
        matches: list[tuple[str, dict[str, Any], float]] = []
        for doc_id, source in state.documents.items():
            matched, score = evaluator.evaluate(query, doc_id, source)
            if matched:
                matches.append((doc_id, source, score))

        min_score = body.get("min_score")
        if min_score is not None:
            matches = [match for match in matches if match[2] >= float(min_score)]

        sort_keys = _parse_sort(body.get("sort"))
        for key, _ in sort_keys:
            if key == "_score":
                continue
            spec = state.field_spec(key)
            if spec is not None and spec.is_text:
                raise _reject(
                    f"Text fields are not optimised for operations that require per-document field data, "
                    f"use a keyword field instead. Field: [{key}]",
                    "illegal_argument_exception",
                )
        track_scores = not sort_keys or any(key == "_score" for key, _ in sort_keys)
        if sort_keys:
            decorated = [(match, [_sort_value(state, match, key, order) for key, order in sort_keys]) for match in matches]
            decorated.sort(key=cmp_to_key(lambda a, b: _compare_sort_values(a[1], b[1], sort_keys)))
            ordered = decorated
        else:
            ordered = [(match, None) for match in sorted(matches, key=lambda m: -m[2])]

        aggregations = _Aggregator(state).run(body.get("aggs") or body.get("aggregations") or {}, matches)

        offset = int(body.get("from") or 0)
        size = body.get("size")
        size = _DEFAULT_SIZE if size is None else int(size)
        if offset < 0 or size < 0:
            raise _reject("[from] and [size] must be non-negative", "illegal_argument_exception")
        page = ordered[offset : offset + size]

        source_filter = body.get("_source", True)
        hits = []
        for (doc_id, source, score), sort_values in page:
            hit: dict[str, Any] = {"_index": index, "_id": doc_id, "_score": score if track_scores else None}
            if source_filter is not False:
                hit["_source"] = _filter_source(source, source_filter)
            if sort_values is not None:
                hit["sort"] = sort_values
            hits.append(hit)

        response: dict[str, Any] = {
            "took": int((time.perf_counter() - started) * 1000),
            "timed_out": False,
            "hits": {
                "total": {"value": len(matches), "relation": "eq"},
                "max_score": max((m[2] for m in matches), default=None) if track_scores else None,
                "hits": hits,
            },
        }
        if aggregations:
            response["aggregations"] = aggregations
        if body.get("highlight"):
            logger.debug("Highlighting is not evaluated by the in-memory engine; ignoring for %s", index)
        return response

    async def count(self, index: str, query: Mapping[str, Any] | None = None) -> int:
        await asyncio.sleep(0)
        state = self._state(index)
        evaluator = _QueryEvaluator(state)
        query = query or {"match_all": {}}
        return sum(1 for doc_id, source in state.documents.items() if evaluator.evaluate(query, doc_id, source)[0])

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    async def ensure_index(self, index: str, body: Mapping[str, Any] | None = None) -> bool:
        await asyncio.sleep(0)
        if index in self._indices:
            return False
        state = _IndexState(name=index)
        body = body or {}
        properties = (body.get("mappings") or {}).get("properties") or {}
        state.properties = {name: dict(definition) for name, definition in properties.items()}
        analyzer_defs = ((body.get("settings") or {}).get("analysis") or {}).get("analyzer") or {}
        for name, definition in analyzer_defs.items():
            try:
                state.analyzers[name] = build_analyzer(definition)
            except ValueError as exc:
                raise _reject(str(exc), "illegal_argument_exception") from exc
        self._indices[index] = state
        logger.info("Created in-memory index %s with %d mapped fields", index, len(state.properties))
        return True

    async def delete_index(self, index: str) -> None:
        await asyncio.sleep(0)
        if self._indices.pop(index, None) is None:
            raise DocumentNotFoundError(index)

    async def delete_by_query(self, index: str, query: Mapping[str, Any], *, refresh: bool = False) -> int:
        await asyncio.sleep(0)
        state = self._state(index)
        evaluator = _QueryEvaluator(state)
        doomed = [doc_id for doc_id, source in state.documents.items() if evaluator.evaluate(query, doc_id, source)[0]]
        for doc_id in doomed:
            del state.documents[doc_id]
        return len(doomed)

    async def refresh(self, index: str) -> None:
        await asyncio.sleep(0)
        self._state(index)

    def _state(self, index: str, *, create: bool = False) -> _IndexState:
        state = self._indices.get(index)
        if state is None:
            if not create:
                raise DocumentNotFoundError(index)
            state = self._indices[index] = _IndexState(name=index)
        return state


class _QueryEvaluator:
    """Evaluates a query clause against one stored source, returning (matched, score)."""

    def __init__(self, state: _IndexState) -> None:
        self.state = state

    def evaluate(self, clause: Mapping[str, Any], doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        if not isinstance(clause, Mapping) or len(clause) != 1:
            raise _reject(f"query clause must hold exactly one key, got {clause!r}")
        ((kind, params),) = clause.items()
        handler = getattr(self, f"_eval_{kind}", None)
        if handler is None:
            raise _reject(f"unknown query [{kind}]")
        return handler(params, doc_id, source)

    def _eval_match_all(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        return True, float((params or {}).get("boost", 1.0))

    def _eval_ids(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        values = {str(value) for value in (params or {}).get("values", ())}
        return doc_id in values, 1.0

    def _eval_exists(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        path = (params or {}).get("field")
        if not path:
            raise _reject("[exists] requires a field")
        return bool(self.state.values(source, path)), 1.0

    def _eval_match(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        path, options = _single_field(params, "match", value_key="query")
        text = options.get("query")
        if text is None:
            raise _reject(f"[match] on [{path}] requires a query")
        operator = str(options.get("operator", "or")).lower()
        if operator not in {"or", "and"}:
            raise _reject(f"[match] operator must be 'or' or 'and', got [{operator}]")

        spec = self.state.field_spec(path)
        values = self.state.values(source, path)
        if not values:
            return False, 0.0
        if spec is not None and not spec.is_text and spec.type != "object":
            # Non-text fields match on the whole value
            matched = any(_equals(value, text) for value in values)
            return matched, 1.0 if matched else 0.0

        analyzer = self.state.analyzer_for(spec)
        query_terms = [token.text for token in analyzer(str(text))]
        if not query_terms:
            return False, 0.0
        doc_terms: set[str] = set()
        for value in values:
            doc_terms.update(token.text for token in analyzer(str(value)))

        fuzziness = options.get("fuzziness")
        score = 0.0
        hits = 0
        for term in query_terms:
            best = _term_weight(term, doc_terms, resolve_fuzziness(fuzziness, term))
            if best > 0:
                hits += 1
                score += best
        if operator == "and":
            matched = hits == len(query_terms)
        else:
            minimum = _minimum_should_match(options.get("minimum_should_match"), len(query_terms))
            matched = hits >= max(minimum, 1)
        boost = float(options.get("boost", 1.0))
        return matched, (score / len(query_terms)) * boost if matched else 0.0

    def _eval_term(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        path, options = _single_field(params, "term", value_key="value")
        if "value" not in options:
            raise _reject(f"[term] on [{path}] requires a value")
        return self._matches_any(path, [options["value"]], doc_id, source), float(options.get("boost", 1.0))

    def _eval_terms(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        if not isinstance(params, Mapping):
            raise _reject("[terms] query malformed")
        fields = {key: value for key, value in params.items() if key != "boost"}
        if len(fields) != 1:
            raise _reject("[terms] query requires exactly one field")
        ((path, wanted),) = fields.items()
        if not isinstance(wanted, list):
            raise _reject(f"[terms] on [{path}] requires an array of values")
        return self._matches_any(path, wanted, doc_id, source), float(params.get("boost", 1.0))

    def _matches_any(self, path: str, wanted: Sequence[Any], doc_id: str, source: Mapping[str, Any]) -> bool:
        if path == "_id":
            return any(str(item) == doc_id for item in wanted)
        spec = self.state.field_spec(path)
        values = self.state.values(source, path)
        if spec is not None and spec.is_text:
            analyzer = self.state.analyzer_for(spec)
            tokens = {token.text for value in values for token in analyzer(str(value))}
            return any(str(item) in tokens for item in wanted)
        return any(_equals(value, item) for value in values for item in wanted)

    def _eval_range(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        path, bounds = _single_field(params, "range")
        bounds = dict(bounds)
        if "from" in bounds or "to" in bounds:
            if bounds.get("from") is not None:
                bounds["gte" if bounds.get("include_lower", True) else "gt"] = bounds["from"]
            if bounds.get("to") is not None:
                bounds["lte" if bounds.get("include_upper", True) else "lt"] = bounds["to"]
        spec = self.state.field_spec(path)
        is_date = spec is not None and spec.type == "date"
        checks = [(op, bounds[op]) for op in ("gte", "gt", "lte", "lt") if bounds.get(op) is not None]
        if not checks:
            return True, 1.0
        for value in self.state.values(source, path):
            if all(_in_bound(value, op, bound, is_date) for op, bound in checks):
                return True, float(bounds.get("boost", 1.0))
        return False, 0.0

    def _eval_bool(self, params: Any, doc_id: str, source: Mapping[str, Any]) -> tuple[bool, float]:
        params = params or {}
        unknown = set(params) - {"must", "should", "must_not", "filter", "minimum_should_match", "boost"}
        if unknown:
            raise _reject(f"[bool] query does not support {sorted(unknown)}")
        score = 0.0
        for clause in _as_list(params.get("must")):
            matched, clause_score = self.evaluate(clause, doc_id, source)
            if not matched:
                return False, 0.0
            score += clause_score
        for clause in _as_list(params.get("filter")):
            if not self.evaluate(clause, doc_id, source)[0]:
                return False, 0.0
        for clause in _as_list(params.get("must_not")):
            if self.evaluate(clause, doc_id, source)[0]:
                return False, 0.0

        should = _as_list(params.get("should"))
        if should:
            matched_should = 0
            for clause in should:
                matched, clause_score = self.evaluate(clause, doc_id, source)
                if matched:
                    matched_should += 1
                    score += clause_score
            has_required = bool(params.get("must") or params.get("filter"))
            default_minimum = 0 if has_required else 1
            minimum = _minimum_should_match(params.get("minimum_should_match"), len(should), default_minimum)
            if matched_should < minimum:
                return False, 0.0
        elif not params.get("must"):
            score = 0.0 if params.get("filter") or params.get("must_not") else 1.0
        return True, score * float(params.get("boost", 1.0))


class _Aggregator:
    """Computes aggregations over the matched documents."""

    _METRICS = frozenset({"min", "max", "avg", "sum", "value_count"})

    def __init__(self, state: _IndexState) -> None:
        self.state = state

    def run(
        self,
        definitions: Mapping[str, Any],
        matches: Sequence[tuple[str, dict[str, Any], float]],
    ) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for name, definition in definitions.items():
            if not isinstance(definition, Mapping):
                raise _reject(f"aggregation [{name}] must be an object")
            nested = definition.get("aggs") or definition.get("aggregations") or {}
            kinds = [key for key in definition if key not in {"aggs", "aggregations", "meta"}]
            if len(kinds) != 1:
                raise _reject(f"aggregation [{name}] must declare exactly one type")
            kind = kinds[0]
            params = definition[kind] or {}
            if kind == "terms":
                results[name] = self._terms(name, params, nested, matches)
            elif kind in self._METRICS:
                results[name] = self._metric(name, kind, params, matches)
            else:
                raise _reject(f"unknown aggregation type [{kind}] for [{name}]", "unknown_named_object_exception")
        return results

    def _field(self, name: str, params: Mapping[str, Any]) -> str:
        path = params.get("field")
        if not path:
            raise _reject(f"aggregation [{name}] requires a field")
        spec = self.state.field_spec(path)
        if spec is not None and spec.is_text:
            raise _reject(
                f"Fielddata is disabled on text fields by default. Use [{path}.{KEYWORD_SUBFIELD}] instead",
                "illegal_argument_exception",
            )
        return path

    def _terms(
        self,
        name: str,
        params: Mapping[str, Any],
        nested: Mapping[str, Any],
        matches: Sequence[tuple[str, dict[str, Any], float]],
    ) -> dict[str, Any]:
        path = self._field(name, params)
        size = int(params.get("size", 10))
        min_doc_count = int(params.get("min_doc_count", 1))

        groups: dict[Any, list[tuple[str, dict[str, Any], float]]] = {}
        for match in matches:
            for key in dict.fromkeys(_hashable(value) for value in self.state.values(match[1], path)):
                groups.setdefault(key, []).append(match)

        buckets = [(key, docs) for key, docs in groups.items() if len(docs) >= min_doc_count]
        buckets.sort(key=cmp_to_key(_bucket_comparator(params.get("order"))))
        kept = buckets[:size]
        other = sum(len(docs) for _, docs in buckets[size:])

        rendered = []
        for key, docs in kept:
            bucket: dict[str, Any] = {"key": key, "doc_count": len(docs)}
            if nested:
                bucket.update(self.run(nested, docs))
            rendered.append(bucket)
        return {"doc_count_error_upper_bound": 0, "sum_other_doc_count": other, "buckets": rendered}

    def _metric(
        self,
        name: str,
        kind: str,
        params: Mapping[str, Any],
        matches: Sequence[tuple[str, dict[str, Any], float]],
    ) -> dict[str, Any]:
        path = self._field(name, params)
        values = [value for match in matches for value in self.state.values(match[1], path)]
        if kind == "value_count":
            return {"value": len(values)}
        numbers = [float(value) for value in values if isinstance(value, (int, float)) and not isinstance(value, bool)]
        if kind == "sum":
            return {"value": float(sum(numbers))}
        if not numbers:
            return {"value": None}
        if kind == "min":
            return {"value": min(numbers)}
        if kind == "max":
            return {"value": max(numbers)}
        return {"value": sum(numbers) / len(numbers)}


def _bucket_comparator(order: Any):
    criteria: list[tuple[str, str]] = []
    for entry in _as_list(order):
        if not isinstance(entry, Mapping) or len(entry) != 1:
            raise _reject(f"invalid terms order {order!r}")
        ((key, direction),) = entry.items()
        if key not in {"_count", "_key"} or direction not in {"asc", "desc"}:
            raise _reject(f"invalid terms order {order!r}")
        criteria.append((key, direction))
    if not criteria:
        criteria = [("_count", "desc")]
    if criteria[-1][0] != "_key":
        criteria.append(("_key", "asc"))

    def compare(a: tuple[Any, list], b: tuple[Any, list]) -> int:
        for key, direction in criteria:
            left = len(a[1]) if key == "_count" else a[0]
            right = len(b[1]) if key == "_count" else b[0]
            result = _cmp(left, right)
            if result:
                return -result if direction == "desc" else result
        return 0

    return compare


def _parse_sort(sort: Any) -> list[tuple[str, str]]:
    keys: list[tuple[str, str]] = []
    for entry in _as_list(sort):
        if isinstance(entry, str):
            keys.append((entry, "desc" if entry == "_score" else "asc"))
        elif isinstance(entry, Mapping) and len(entry) == 1:
            ((name, spec),) = entry.items()
            order = spec.get("order", "asc") if isinstance(spec, Mapping) else spec
            if order not in {"asc", "desc"}:
                raise _reject(f"invalid sort order [{order}] for [{name}]")
            keys.append((name, order))
        else:
            raise _reject(f"malformed sort entry {entry!r}")
    return keys


def _sort_value(state: _IndexState, match: tuple[str, dict[str, Any], float], key: str, order: str) -> Any:
    if key == "_score":
        return match[2]
    if key == "_id":
        return match[0]
    values = [value for value in state.values(match[1], key) if not isinstance(value, Mapping)]
    if not values:
        return None
    try:
        return min(values) if order == "asc" else max(values)
    except TypeError:
        return values[0]


def _compare_sort_values(left: list[Any], right: list[Any], keys: Sequence[tuple[str, str]]) -> int:
    for a, b, (_, order) in zip(left, right, keys, strict=True):
        # Missing values sort last in either direction
        if a is None or b is None:
            if a is None and b is None:
                continue
            return 1 if a is None else -1
        result = _cmp(a, b)
        if result:
            return -result if order == "desc" else result
    return 0


def _cmp(a: Any, b: Any) -> int:
    try:
        return (a > b) - (a < b)
    except TypeError:
        return _cmp(str(a), str(b))


def _term_weight(term: str, doc_terms: set[str], max_distance: int) -> float:
    if term in doc_terms:
        return 1.0
    if max_distance <= 0:
        return 0.0
    best = 0.0
    for candidate in doc_terms:
        distance = edit_distance(term, candidate, max_distance)
        if distance <= max_distance:
            best = max(best, _FUZZY_DISCOUNT * (1.0 - distance / (len(term) + 1)))
    return best


def _minimum_should_match(value: Any, clause_count: int, default: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value if value >= 0 else max(clause_count + value, 0)
    text = str(value).strip()
    try:
        if text.endswith("%"):
            percent = int(text[:-1])
            count = math.floor(clause_count * abs(percent) / 100)
            return count if percent >= 0 else clause_count - count
        return _minimum_should_match(int(text), clause_count, default)
    except ValueError:
        raise _reject(f"invalid minimum_should_match [{value}]") from None


def _in_bound(value: Any, op: str, bound: Any, is_date: bool) -> bool:
    if is_date:
        value, bound = _as_datetime(value), _as_datetime(bound)
        if value is None or bound is None:
            return False
    try:
        if op == "gte":
            return value >= bound
        if op == "gt":
            return value > bound
        if op == "lte":
            return value <= bound
        return value < bound
    except TypeError:
        return False


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _equals(stored: Any, wanted: Any) -> bool:
    if isinstance(stored, bool) or isinstance(wanted, bool):
        return stored is wanted or str(stored).lower() == str(wanted).lower()
    if isinstance(stored, (int, float)) and isinstance(wanted, (int, float)):
        return float(stored) == float(wanted)
    if isinstance(stored, (int, float)) and isinstance(wanted, str):
        try:
            return float(stored) == float(wanted)
        except ValueError:
            return False
    return stored == wanted


def _single_field(params: Any, clause: str, *, value_key: str | None = None) -> tuple[str, dict[str, Any]]:
    if not isinstance(params, Mapping) or len(params) != 1:
        raise _reject(f"[{clause}] query requires exactly one field")
    ((path, options),) = params.items()
    if not isinstance(options, Mapping):
        if value_key is None:
            raise _reject(f"[{clause}] on [{path}] requires an object")
        options = {value_key: options}
    return str(path), dict(options)


def _infer_type(value: Any) -> dict[str, Any] | None:
    if value is None or isinstance(value, (list, Mapping)):
        return None
    if isinstance(value, bool):
        return {"type": "boolean"}
    if isinstance(value, int):
        return {"type": "long"}
    if isinstance(value, float):
        return {"type": "float"}
    if isinstance(value, str):
        return {"type": "text", "fields": {KEYWORD_SUBFIELD: {"type": "keyword", "ignore_above": 256}}}
    return None


def _filter_source(source: Mapping[str, Any], source_filter: Any) -> dict[str, Any]:
    if source_filter is True or source_filter is None:
        return _copy(source)
    if isinstance(source_filter, str):
        source_filter = [source_filter]
    if isinstance(source_filter, Mapping):
        includes = _as_list(source_filter.get("includes"))
        excludes = set(_as_list(source_filter.get("excludes")))
    else:
        includes, excludes = list(source_filter), set()
    picked = {key: value for key, value in source.items() if (not includes or key in includes) and key not in excludes}
    return _copy(picked)


def _flatten(values: Sequence[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(_flatten(value))
        else:
            flat.append(value)
    return flat


def _hashable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return orjson.dumps(value, option=orjson.OPT_SORT_KEYS).decode()
    return value


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _copy(payload: Mapping[str, Any]) -> dict[str, Any]:
    try:
        return orjson.loads(orjson.dumps(dict(payload)))
    except TypeError as exc:
        raise _reject(f"document is not JSON serializable: {exc}", "mapper_parsing_exception") from exc
