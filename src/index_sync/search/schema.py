"""
Index mapping definition.

Declares which store fields are indexed and how, in the spirit of the engine's
own mapping types. Supports:
- TextField: Analyzed text with an exact ``<name>.keyword`` sub-field
- KeywordField: Exact match fields (tags, codes, identifiers)
- NumericField: Integer or floating point values for sorting and ranges
- DateField: Dates and datetimes
- GeoPointField: Latitude/longitude pairs
- BooleanField: True/false flags
- ComputedField: Values derived from other fields at serialization time

A mapping is created once when a collection is registered and is read-only
afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


KEYWORD_SUBFIELD = "keyword"


class FieldType(str, Enum):
    """Cast types a mapped field can declare."""

    TEXT = "text"
    KEYWORD = "keyword"
    NUMERIC = "numeric"
    DATE = "date"
    GEO_POINT = "geo_point"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class MappedField(ABC):
    """Base class for all mapped fields."""

    name: str
    indexed: bool = True

    @property
    @abstractmethod
    def field_type(self) -> FieldType:
        """Return the field type."""

    @property
    def sortable(self) -> bool:
        return self.field_type is not FieldType.TEXT

    def to_engine(self) -> dict[str, Any]:
        """Engine mapping for this field."""
        body: dict[str, Any] = {"type": self.field_type.value}
        if not self.indexed:
            body["index"] = False
        return body

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.field_type.value, "indexed": self.indexed}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MappedField:
        """Deserialize field definition from dict."""
        field_type = FieldType(data["type"])
        common = {"name": data["name"], "indexed": data.get("indexed", True)}

        if field_type == FieldType.TEXT:
            return TextField(
                **common,
                analyzer=data.get("analyzer"),
                keyword_subfield=data.get("keyword_subfield", True),
            )
        if field_type == FieldType.KEYWORD:
            return KeywordField(**common)
        if field_type == FieldType.NUMERIC:
            return NumericField(**common, numeric_type=data.get("numeric_type", "double"))
        if field_type == FieldType.DATE:
            return DateField(**common)
        if field_type == FieldType.GEO_POINT:
            return GeoPointField(**common)
        if field_type == FieldType.BOOLEAN:
            return BooleanField(**common)
        msg = f"Unknown field type: {field_type}"
        raise ValueError(msg)


@dataclass(frozen=True)
class TextField(MappedField):
    """
    Analyzed text field for full-text search.

    By default an exact ``keyword`` sub-field is declared as well, so
    ``<name>.keyword`` can be used for sorting, term queries and aggregations.

    Args:
        name: Field name (e.g., "name", "description")
        indexed: Index for searching (default: True)
        analyzer: Engine analyzer name (default: None = engine default)
        keyword_subfield: Declare ``<name>.keyword`` (default: True)
    """

    analyzer: str | None = None
    keyword_subfield: bool = True

    @property
    def field_type(self) -> FieldType:
        return FieldType.TEXT

    def to_engine(self) -> dict[str, Any]:
        body = super().to_engine()
        if self.analyzer:
            body["analyzer"] = self.analyzer
        if self.keyword_subfield:
            body["fields"] = {KEYWORD_SUBFIELD: {"type": "keyword", "ignore_above": 256}}
        return body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["keyword_subfield"] = self.keyword_subfield
        if self.analyzer:
            data["analyzer"] = self.analyzer
        return data


@dataclass(frozen=True)
class KeywordField(MappedField):
    """Exact-match keyword field (codes, tags, identifiers)."""

    @property
    def field_type(self) -> FieldType:
        return FieldType.KEYWORD


NumericType = Literal["long", "integer", "short", "byte", "double", "float"]
INTEGER_TYPES = frozenset({"long", "integer", "short", "byte"})


@dataclass(frozen=True)
class NumericField(MappedField):
    """
    Numeric field for sorting and range queries.

    Args:
        name: Field name (e.g., "price")
        numeric_type: Engine numeric type; integer types reject fractional values
    """

    numeric_type: NumericType = "double"

    @property
    def field_type(self) -> FieldType:
        return FieldType.NUMERIC

    @property
    def is_integer(self) -> bool:
        return self.numeric_type in INTEGER_TYPES

    def to_engine(self) -> dict[str, Any]:
        body = super().to_engine()
        body["type"] = self.numeric_type
        return body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["numeric_type"] = self.numeric_type
        return data


@dataclass(frozen=True)
class DateField(MappedField):
    """Date/datetime field, serialized as ISO-8601 (epoch milliseconds are kept as-is)."""

    @property
    def field_type(self) -> FieldType:
        return FieldType.DATE


@dataclass(frozen=True)
class GeoPointField(MappedField):
    """Geo point, serialized as ``{"lat": ..., "lon": ...}``."""

    @property
    def field_type(self) -> FieldType:
        return FieldType.GEO_POINT


@dataclass(frozen=True)
class BooleanField(MappedField):
    @property
    def field_type(self) -> FieldType:
        return FieldType.BOOLEAN


@dataclass(frozen=True)
class ComputedField:
    """
    Field whose value is derived from the other store fields at serialization time.

    ``compute`` receives a read-only view of the document's field map and must be
    deterministic and free of side effects. The result is cast with ``target``.
    """

    name: str
    compute: Callable[[Mapping[str, Any]], Any] = field(compare=False)
    target: MappedField | None = None

    @property
    def cast_field(self) -> MappedField:
        return self.target or KeywordField(self.name)


@dataclass
class IndexMapping:
    """
    Declarative description of how a store collection is indexed.

    Example:
        mapping = IndexMapping(
            fields=[
                TextField("name"),
                TextField("type"),
                NumericField("price", numeric_type="long"),
            ],
            computed=[ComputedField("label", lambda doc: f"{doc['name']} ({doc['type']})")],
        )

    Fields absent from the mapping are left out of the index payload unless
    ``include_all`` is set; names in ``exclude`` are always left out.
    """

    fields: list[MappedField]
    computed: list[ComputedField] = field(default_factory=list)
    include_all: bool = False
    exclude: frozenset[str] = frozenset()
    analyzers: dict[str, dict[str, Any]] = field(default_factory=dict)
    name: str = "default"

    def __post_init__(self) -> None:
        self.exclude = frozenset(self.exclude)
        self._field_map: dict[str, MappedField] = {}
        for mapped in self.fields:
            self._register(mapped)
        for computed in self.computed:
            self._register(computed.cast_field, name=computed.name)

    def _register(self, mapped: MappedField, *, name: str | None = None) -> None:
        key = name or mapped.name
        if key in self._field_map:
            msg = f"Field '{key}' is declared twice in mapping '{self.name}'"
            raise ValueError(msg)
        self._field_map[key] = mapped

    def __getitem__(self, name: str) -> MappedField:
        return self._field_map[name]

    def __contains__(self, name: object) -> bool:
        return name in self._field_map

    def __iter__(self) -> Iterator[MappedField]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self._field_map)

    @property
    def field_names(self) -> list[str]:
        return list(self._field_map)

    def resolve(self, path: str) -> MappedField | None:
        """Resolve a query field path, including ``<text>.keyword`` sub-fields.

        Returns None for paths the mapping does not know.
        """
        if path in self._field_map:
            return self._field_map[path]
        base, _, sub = path.rpartition(".")
        if sub == KEYWORD_SUBFIELD and base in self._field_map:
            parent = self._field_map[base]
            if isinstance(parent, TextField) and parent.keyword_subfield:
                return KeywordField(path)
        return None

    def knows(self, path: str) -> bool:
        """True when ``path`` can appear in a query against this mapping."""
        if path.startswith("_") or self.include_all:
            return True
        return self.resolve(path) is not None

    def to_engine_mapping(self) -> dict[str, Any]:
        """Engine mapping body: ``{"properties": {...}}``."""
        properties = {name: mapped.to_engine() for name, mapped in self._field_map.items()}
        return {"properties": properties}

    def to_index_body(self) -> dict[str, Any]:
        """Full index creation body (settings + mappings)."""
        body: dict[str, Any] = {"mappings": self.to_engine_mapping()}
        if self.analyzers:
            body["settings"] = {"analysis": {"analyzer": dict(self.analyzers)}}
        return body

    def to_dict(self) -> dict[str, Any]:
        """Serialize declared (non-computed) fields to dict."""
        return {
            "name": self.name,
            "include_all": self.include_all,
            "exclude": sorted(self.exclude),
            "fields": [f.to_dict() for f in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexMapping:
        return cls(
            fields=[MappedField.from_dict(f) for f in data["fields"]],
            include_all=data.get("include_all", False),
            exclude=frozenset(data.get("exclude", ())),
            name=data.get("name", "default"),
        )
