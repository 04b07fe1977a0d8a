"""Serialization between store documents and index payloads.

``to_index_payload`` applies the mapping's cast rules to a document snapshot;
``from_index_payload`` rebuilds typed values from a raw ``_source`` map.
Values that cannot be cast raise ``MappingMismatch``; nothing is coerced
silently.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
import logging
import math
from types import MappingProxyType
from typing import Any
from uuid import UUID

from index_sync.domain.model import IndexableDocument
from index_sync.errors import MappingMismatch
from index_sync.search.schema import (
    BooleanField,
    DateField,
    GeoPointField,
    IndexMapping,
    KeywordField,
    MappedField,
    NumericField,
    TextField,
)


logger = logging.getLogger(__name__)


def to_index_payload(document: IndexableDocument, mapping: IndexMapping) -> dict[str, Any]:
    """Convert a document snapshot into the field map written to the index."""
    payload: dict[str, Any] = {}

    for mapped in mapping:
        if mapped.name in mapping.exclude:
            continue
        value = document.get(mapped.name, _MISSING)
        if value is _MISSING:
            continue
        payload[mapped.name] = cast_value(mapped, value)

    if mapping.include_all:
        for name, value in document.fields.items():
            if name in payload or name in mapping or name in mapping.exclude:
                continue
            payload[name] = _plain(value)

    if mapping.computed:
        view = MappingProxyType(dict(document.fields))
        for computed in mapping.computed:
            if computed.name in mapping.exclude:
                continue
            value = computed.compute(view)
            payload[computed.name] = cast_value(computed.cast_field, value, name=computed.name)

    logger.debug("Serialized document %s into %d index fields", document.id, len(payload))
    return payload


def from_index_payload(source: Mapping[str, Any], mapping: IndexMapping) -> dict[str, Any]:
    """Rebuild typed values (dates, numbers) from a raw index ``_source``."""
    typed: dict[str, Any] = {}
    for name, value in source.items():
        mapped = mapping.resolve(name)
        if mapped is None or value is None:
            typed[name] = value
        elif isinstance(value, list):
            typed[name] = [_restore(mapped, item) for item in value]
        else:
            typed[name] = _restore(mapped, value)
    return typed


def cast_value(mapped: MappedField, value: Any, *, name: str | None = None) -> Any:
    """Cast ``value`` to the type declared by ``mapped``; arrays are cast element-wise."""
    field_name = name or mapped.name
    if value is None:
        return None
    if isinstance(value, (list, tuple, set, frozenset)) and not isinstance(mapped, GeoPointField):
        return [cast_value(mapped, item, name=field_name) for item in value]
    if isinstance(mapped, (TextField, KeywordField)):
        return _cast_string(field_name, mapped, value)
    if isinstance(mapped, NumericField):
        return _cast_number(field_name, mapped, value)
    if isinstance(mapped, DateField):
        return _cast_date(field_name, value)
    if isinstance(mapped, GeoPointField):
        return _cast_geo_point(field_name, value)
    if isinstance(mapped, BooleanField):
        if isinstance(value, bool):
            return value
        raise MappingMismatch(field_name, "boolean", value)
    raise MappingMismatch(field_name, mapped.field_type.value, value)


def _cast_string(field_name: str, mapped: MappedField, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, Enum) and isinstance(value.value, str):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    raise MappingMismatch(field_name, mapped.field_type.value, value)


def _cast_number(field_name: str, mapped: NumericField, value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise MappingMismatch(field_name, mapped.numeric_type, value)
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and not math.isfinite(value):
        raise MappingMismatch(field_name, mapped.numeric_type, value)
    if mapped.is_integer:
        if isinstance(value, float):
            if not value.is_integer():
                raise MappingMismatch(field_name, mapped.numeric_type, value)
            return int(value)
        return value
    return value


def _cast_date(field_name: str, value: Any) -> str | int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MappingMismatch(field_name, "date", value) from None
        return _cast_date(field_name, parsed)
    raise MappingMismatch(field_name, "date", value)


def _cast_geo_point(field_name: str, value: Any) -> dict[str, float]:
    lat: Any
    lon: Any
    if isinstance(value, Mapping):
        lat, lon = value.get("lat"), value.get("lon")
    elif isinstance(value, str) and "," in value:
        raw_lat, _, raw_lon = value.partition(",")
        try:
            lat, lon = float(raw_lat), float(raw_lon)
        except ValueError:
            raise MappingMismatch(field_name, "geo_point", value) from None
    elif isinstance(value, Sequence) and not isinstance(value, str) and len(value) == 2:
        # Engine array convention is [lon, lat]
        lon, lat = value
    else:
        raise MappingMismatch(field_name, "geo_point", value)

    for coordinate in (lat, lon):
        if isinstance(coordinate, bool) or not isinstance(coordinate, (int, float)):
            raise MappingMismatch(field_name, "geo_point", value)
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise MappingMismatch(field_name, "geo_point", value)
    return {"lat": float(lat), "lon": float(lon)}


def _restore(mapped: MappedField, value: Any) -> Any:
    if isinstance(mapped, DateField) and isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(mapped, NumericField) and mapped.is_integer and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _plain(value: Any) -> Any:
    """Best-effort JSON-friendly rendering for unmapped fields under ``include_all``."""
    if isinstance(value, datetime):
        return _cast_date("", value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value) if isinstance(value, UUID) else float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


_MISSING: Any = _Missing()
