"""Domain model for documents crossing from the store into the index.

Following Cosmic Python principles:
- Domain model has NO dependencies on infrastructure
- Value objects are immutable and validated at construction (Pydantic dataclasses)
"""

from collections.abc import Mapping
from typing import Any, Self

from pydantic import ConfigDict, Field
from pydantic.dataclasses import dataclass


@dataclass(frozen=True, config=ConfigDict(arbitrary_types_allowed=True))
class IndexableDocument:
    """Snapshot of a store-side record at a point in time.

    The identifier is shared with the store record so re-indexing the same
    document always targets the same index entry.
    """

    id: str = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)
    version: str | int | None = None

    def __hash__(self) -> int:
        return hash(self.id)

    def get(self, name: str, default: Any = None) -> Any:
        """Return a field value, following dotted paths into nested mappings."""
        current: Any = self.fields
        for part in name.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return default
            current = current[part]
        return current

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        id_field: str = "_id",
        version_field: str | None = "__v",
    ) -> Self:
        """Build a snapshot from a plain store record.

        The identifier and version keys are lifted out of the field map.
        """
        if id_field not in record or record[id_field] is None:
            raise ValueError(f"Record has no identifier under '{id_field}'")
        fields = {key: value for key, value in record.items() if key not in (id_field, version_field)}
        version = record.get(version_field) if version_field else None
        return cls(id=str(record[id_field]), fields=fields, version=version)
