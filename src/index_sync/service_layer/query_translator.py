"""Translate structured search requests into the engine's query grammar.

Query clauses are validated and normalized (``range`` ``from``/``to`` become
inclusive ``gte``/``lte`` bounds, shorthand ``match``/``term`` values are
expanded), sort specifications are normalized into ``SortField`` tuples at the
boundary, and aggregation field names are checked against the mapping.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Any

from index_sync.domain.search import SearchRequest, SortField
from index_sync.errors import IndexValidationError, UnsupportedClause
from index_sync.search.fuzzy import resolve_fuzziness
from index_sync.search.schema import KEYWORD_SUBFIELD, IndexMapping, TextField


logger = logging.getLogger(__name__)

SUPPORTED_CLAUSES = frozenset({"match_all", "match", "fuzzy", "range", "term", "terms", "bool", "ids", "exists"})

_BOOL_OCCURRENCES = ("must", "filter", "should", "must_not")
_RANGE_KEYS = frozenset({"from", "to", "gte", "gt", "lte", "lt", "include_lower", "include_upper", "format", "boost"})
_MATCH_KEYS = frozenset({"query", "fuzziness", "operator", "minimum_should_match", "analyzer", "boost", "prefix_length"})
_OPTION_KEYS = frozenset({"sort", "aggs", "aggregations", "from", "size", "min_score", "_source", "source", "highlight"})
_AGG_WRAPPER_KEYS = frozenset({"aggs", "aggregations", "meta"})


def normalize_sort(spec: Any) -> tuple[SortField, ...]:
    """Normalize any accepted sort shape into an ordered tuple of ``SortField``.

    Accepted shapes, all equivalent for the same logical sort:

    - ``"price:desc"`` (comma-separated for several keys: ``"price:desc,name:asc"``)
    - ``["price:desc", "name:asc"]``
    - ``{"price": "desc", "name": {"order": "asc"}}`` (insertion order is precedence)

    The first key is the primary sort key.
    """
    if spec is None:
        return ()
    if isinstance(spec, SortField):
        return (spec,)
    if isinstance(spec, str):
        return tuple(_parse_sort_string(part) for part in spec.split(",") if part.strip())
    if isinstance(spec, Mapping):
        return tuple(_sort_from_pair(name, descriptor) for name, descriptor in spec.items())
    if isinstance(spec, Sequence):
        fields: list[SortField] = []
        for entry in spec:
            fields.extend(normalize_sort(entry))
        return tuple(fields)
    raise IndexValidationError(f"Unsupported sort specification: {spec!r}")


def _parse_sort_string(text: str) -> SortField:
    name, _, direction = text.strip().partition(":")
    return _sort_from_pair(name.strip(), direction.strip() or None)


def _sort_from_pair(name: str, descriptor: Any) -> SortField:
    if not name:
        raise IndexValidationError("Sort field name must not be empty")
    options: dict[str, Any] = {}
    if isinstance(descriptor, Mapping):
        options = {key: value for key, value in descriptor.items() if key != "order"}
        descriptor = descriptor.get("order")
    if descriptor is None:
        order = "desc" if name == "_score" else "asc"
    elif isinstance(descriptor, str) and descriptor.lower() in {"asc", "desc"}:
        order = descriptor.lower()
    else:
        raise IndexValidationError(f"Invalid sort direction for '{name}': {descriptor!r}")
    return SortField(field=name, order=order, options=options)


class QueryTranslator:
    """Builds engine request bodies from ``SearchRequest`` objects.

    When a mapping is given, every field named by a clause, sort key or
    aggregation must be known to it.
    """

    def __init__(self, mapping: IndexMapping | None = None) -> None:
        self.mapping = mapping

    def build_request(
        self,
        query: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SearchRequest:
        """Combine a query clause with the public ``search`` options."""
        options = dict(options or {})
        unknown = set(options) - _OPTION_KEYS
        if unknown:
            raise IndexValidationError(f"Unknown search options: {sorted(unknown)}")

        aggregations = options.get("aggs", options.get("aggregations")) or {}
        if not isinstance(aggregations, Mapping):
            raise IndexValidationError("Aggregations must be a mapping from name to specification")
        source = options.get("_source", options.get("source"))

        return SearchRequest(
            query=dict(query) if query else {"match_all": {}},
            sort=normalize_sort(options.get("sort")),
            aggregations=dict(aggregations),
            from_=options.get("from"),
            size=options.get("size"),
            min_score=options.get("min_score"),
            source=source,
            highlight=options.get("highlight"),
        )

    def translate(self, request: SearchRequest) -> dict[str, Any]:
        """Return the engine-native request body for ``request``."""
        body: dict[str, Any] = {"query": self.translate_query(request.query)}
        if request.sort:
            for sort_field in request.sort:
                self._check_sortable(sort_field.field)
            body["sort"] = [sort_field.to_engine() for sort_field in request.sort]
        if request.aggregations:
            body["aggs"] = self.translate_aggregations(request.aggregations)
        if request.from_ is not None:
            body["from"] = request.from_
        if request.size is not None:
            body["size"] = request.size
        if request.min_score is not None:
            body["min_score"] = request.min_score
        if request.source is not None:
            body["_source"] = request.source
        if request.highlight:
            body["highlight"] = request.highlight
        logger.debug("Translated search request into %s", sorted(body))
        return body

    # ------------------------------------------------------------------
    # Query clauses
    # ------------------------------------------------------------------

    def translate_query(self, clause: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(clause, Mapping) or len(clause) != 1:
            raise IndexValidationError(f"A query clause must have exactly one key, got {clause!r}")
        ((kind, params),) = clause.items()
        if kind not in SUPPORTED_CLAUSES:
            raise UnsupportedClause(kind)
        return getattr(self, f"_translate_{kind}")(params)

    def _translate_match_all(self, params: Any) -> dict[str, Any]:
        if params not in (None, {}) and not isinstance(params, Mapping):
            raise UnsupportedClause("match_all", "expects an object")
        return {"match_all": dict(params or {})}

    def _translate_match(self, params: Any) -> dict[str, Any]:
        path, options = self._single_field("match", params, value_key="query")
        unknown = set(options) - _MATCH_KEYS
        if unknown:
            raise UnsupportedClause("match", f"unknown parameters {sorted(unknown)}")
        if options.get("query") is None:
            raise IndexValidationError(f"match on '{path}' has no query text")
        if "fuzziness" in options:
            # Validates the format; the engine resolves AUTO per term itself
            resolve_fuzziness(options["fuzziness"], str(options["query"]))
        operator = str(options.get("operator", "or")).lower()
        if operator not in {"or", "and"}:
            raise UnsupportedClause("match", f"operator must be 'or' or 'and', got {operator!r}")
        if "operator" in options:
            options["operator"] = operator
        return {"match": {path: options}}

    def _translate_fuzzy(self, params: Any) -> dict[str, Any]:
        path, options = self._single_field("fuzzy", params, value_key="value")
        if options.get("value") is None:
            raise IndexValidationError(f"fuzzy on '{path}' has no value")
        fuzziness = options.get("fuzziness", "AUTO")
        resolve_fuzziness(fuzziness, str(options["value"]))
        match: dict[str, Any] = {"query": options["value"], "fuzziness": fuzziness}
        if "boost" in options:
            match["boost"] = options["boost"]
        return {"match": {path: match}}

    def _translate_range(self, params: Any) -> dict[str, Any]:
        path, bounds = self._single_field("range", params)
        unknown = set(bounds) - _RANGE_KEYS
        if unknown:
            raise UnsupportedClause("range", f"unknown bounds {sorted(unknown)}")

        translated = {key: value for key, value in bounds.items() if key in {"gte", "gt", "lte", "lt", "format", "boost"}}
        if bounds.get("from") is not None:
            translated["gte" if bounds.get("include_lower", True) else "gt"] = bounds["from"]
        if bounds.get("to") is not None:
            translated["lte" if bounds.get("include_upper", True) else "lt"] = bounds["to"]
        if not any(key in translated for key in ("gte", "gt", "lte", "lt")):
            raise IndexValidationError(f"range on '{path}' has no bounds")
        return {"range": {path: translated}}

    def _translate_term(self, params: Any) -> dict[str, Any]:
        path, options = self._single_field("term", params, value_key="value")
        if "value" not in options:
            raise IndexValidationError(f"term on '{path}' has no value")
        return {"term": {path: options}}

    def _translate_terms(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, Mapping):
            raise UnsupportedClause("terms", "expects an object")
        fields = {key: value for key, value in params.items() if key != "boost"}
        if len(fields) != 1:
            raise UnsupportedClause("terms", "expects exactly one field")
        ((path, values),) = fields.items()
        self._check_field(path)
        if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
            raise IndexValidationError(f"terms on '{path}' expects a list of values")
        translated: dict[str, Any] = {path: list(values)}
        if "boost" in params:
            translated["boost"] = params["boost"]
        return {"terms": translated}

    def _translate_bool(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, Mapping):
            raise UnsupportedClause("bool", "expects an object")
        unknown = set(params) - {*_BOOL_OCCURRENCES, "minimum_should_match", "boost"}
        if unknown:
            raise UnsupportedClause("bool", f"unknown occurrences {sorted(unknown)}")
        translated: dict[str, Any] = {}
        for occurrence in _BOOL_OCCURRENCES:
            clauses = params.get(occurrence)
            if clauses is None:
                continue
            if isinstance(clauses, Mapping):
                clauses = [clauses]
            translated[occurrence] = [self.translate_query(clause) for clause in clauses]
        for key in ("minimum_should_match", "boost"):
            if key in params:
                translated[key] = params[key]
        return {"bool": translated}

    def _translate_ids(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, Mapping) or not isinstance(params.get("values"), Sequence):
            raise IndexValidationError("ids expects {'values': [...]}")
        return {"ids": {"values": [str(value) for value in params["values"]]}}

    def _translate_exists(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, Mapping) or not params.get("field"):
            raise IndexValidationError("exists expects {'field': name}")
        self._check_field(params["field"])
        return {"exists": {"field": params["field"]}}

    def _single_field(self, kind: str, params: Any, *, value_key: str | None = None) -> tuple[str, dict[str, Any]]:
        if not isinstance(params, Mapping) or len(params) != 1:
            raise UnsupportedClause(kind, "expects exactly one field")
        ((path, options),) = params.items()
        self._check_field(path)
        if isinstance(options, Mapping):
            return path, dict(options)
        if value_key is None:
            raise UnsupportedClause(kind, f"'{path}' expects an object")
        return path, {value_key: options}

    # ------------------------------------------------------------------
    # Aggregations
    # ------------------------------------------------------------------

    def translate_aggregations(self, aggregations: Mapping[str, Any]) -> dict[str, Any]:
        """Pass aggregations through structurally after validating their fields."""
        translated: dict[str, Any] = {}
        for name, definition in aggregations.items():
            if not isinstance(definition, Mapping):
                raise IndexValidationError(f"Aggregation '{name}' must be a mapping")
            kinds = [key for key in definition if key not in _AGG_WRAPPER_KEYS]
            if len(kinds) != 1:
                raise IndexValidationError(f"Aggregation '{name}' must declare exactly one type, got {kinds}")
            kind = kinds[0]
            params = definition[kind]
            if not isinstance(params, Mapping):
                raise IndexValidationError(f"Aggregation '{name}' ({kind}) parameters must be a mapping")
            if "field" in params:
                self._check_aggregatable(name, params["field"])

            entry: dict[str, Any] = {kind: dict(params)}
            nested = definition.get("aggs", definition.get("aggregations"))
            if nested:
                entry["aggs"] = self.translate_aggregations(nested)
            if "meta" in definition:
                entry["meta"] = definition["meta"]
            translated[name] = entry
        return translated

    # ------------------------------------------------------------------
    # Field validation
    # ------------------------------------------------------------------

    def _check_field(self, path: str) -> None:
        if self.mapping is not None and not self.mapping.knows(path):
            raise IndexValidationError(f"Unknown field '{path}' for mapping '{self.mapping.name}'")

    def _check_sortable(self, path: str) -> None:
        if path in {"_score", "_id", "_doc"}:
            return
        self._check_field(path)
        self._reject_text(path, "sort")

    def _check_aggregatable(self, name: str, path: str) -> None:
        if self.mapping is not None and not self.mapping.knows(path):
            raise IndexValidationError(f"Aggregation '{name}' targets unknown field '{path}'")
        self._reject_text(path, f"aggregation '{name}'")

    def _reject_text(self, path: str, usage: str) -> None:
        if self.mapping is None:
            return
        mapped = self.mapping.resolve(path)
        if isinstance(mapped, TextField):
            hint = f"; use '{path}.{KEYWORD_SUBFIELD}'" if mapped.keyword_subfield else ""
            raise IndexValidationError(f"Analyzed text field '{path}' cannot be used for {usage}{hint}")
