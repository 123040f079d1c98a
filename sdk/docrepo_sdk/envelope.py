"""
Document envelope for typed payloads.

Every stored document wraps the caller's entity with storage metadata:

    {
        "id": "p1",
        "documentType": "Provider",
        "content": {...},
        "deleted": false,
        "createdAt": "2024-01-01T00:00:00+00:00",
        "updatedAt": "2024-01-01T00:00:00+00:00"
    }

Invariants:
    - documentType is derived from the declared payload type, never from type(entity)
    - id is never empty or whitespace
    - An envelope is fully initialised by the time it is returned from wrap()

How to change safely:
    - Wire names are shared with documents already in the store
    - New metadata fields must be optional when reading
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from pydantic import TypeAdapter

from .errors import ValidationError

T = TypeVar("T")

ID_FIELD = "id"
DOCUMENT_TYPE_FIELD = "documentType"
CONTENT_FIELD = "content"
DELETED_FIELD = "deleted"
CREATED_AT_FIELD = "createdAt"
UPDATED_AT_FIELD = "updatedAt"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def document_type_for(entity_type: type) -> str:
    """Return the stored type tag for a payload class.

    A class may pin its tag with ``__document_type__``; otherwise the class
    name is used.
    """
    pinned = getattr(entity_type, "__document_type__", None)
    if pinned:
        return str(pinned)
    return entity_type.__name__


@lru_cache(maxsize=256)
def _adapter(entity_type: type) -> TypeAdapter:
    return TypeAdapter(entity_type)


def dump_content(entity_type: type, content: Any) -> Dict[str, Any]:
    """Serialize a payload to a JSON-compatible dict."""
    return _adapter(entity_type).dump_python(content, mode="json")


def load_content(entity_type: Type[T], data: Any) -> T:
    """Deserialize a payload from its stored JSON form."""
    return _adapter(entity_type).validate_python(data)


def entity_id(entity: Any) -> str:
    """Return the id of a payload, validating that it is usable."""
    if isinstance(entity, dict):
        value = entity.get(ID_FIELD)
    else:
        value = getattr(entity, ID_FIELD, None)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Entity id must be a non-empty string", field_name=ID_FIELD)
    return value


_TIMESTAMP = TypeAdapter(datetime)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    # Other clients write "Z" suffixes and 7-digit fractions
    if value is None or isinstance(value, datetime):
        return value
    return _TIMESTAMP.validate_python(value)


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """Return now, nudged forward so it is strictly after ``previous``."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


@dataclass(frozen=True)
class DocumentEntity(Generic[T]):
    """A stored document: typed content plus storage metadata.

    Attributes:
        id: Document id (same as content id)
        document_type: Type tag of the content
        content: The caller's entity
        deleted: Soft-delete flag
        created_at: First write time
        updated_at: Last write time
    """

    id: str
    document_type: str
    content: T
    deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def wrap(
        cls,
        entity_type: Type[T],
        content: T,
        *,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        deleted: bool = False,
    ) -> DocumentEntity[T]:
        """Build a new envelope for ``content`` declared as ``entity_type``.

        Both timestamps default to the same instant.
        """
        now = utcnow()
        return cls(
            id=entity_id(content),
            document_type=document_type_for(entity_type),
            content=content,
            deleted=deleted,
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
        )

    def with_changes(self, **changes: Any) -> DocumentEntity[T]:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_document(self, entity_type: type) -> Dict[str, Any]:
        """Convert to the store's JSON representation."""
        return {
            ID_FIELD: self.id,
            DOCUMENT_TYPE_FIELD: self.document_type,
            CONTENT_FIELD: dump_content(entity_type, self.content),
            DELETED_FIELD: self.deleted,
            CREATED_AT_FIELD: self.created_at.isoformat() if self.created_at else None,
            UPDATED_AT_FIELD: self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_document(cls, entity_type: Type[T], data: Dict[str, Any]) -> DocumentEntity[T]:
        """Build an envelope from a stored document.

        Store-generated system properties (``_rid``, ``_etag``...) are ignored.
        """
        return cls(
            id=data[ID_FIELD],
            document_type=data.get(DOCUMENT_TYPE_FIELD) or document_type_for(entity_type),
            content=load_content(entity_type, data.get(CONTENT_FIELD)),
            deleted=bool(data.get(DELETED_FIELD, False)),
            created_at=_parse_timestamp(data.get(CREATED_AT_FIELD)),
            updated_at=_parse_timestamp(data.get(UPDATED_AT_FIELD)),
        )
