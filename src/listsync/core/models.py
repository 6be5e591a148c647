from __future__ import annotations

import enum
import hashlib
import json
import time
import typing as t
import uuid
from dataclasses import dataclass, field

from listsync.cache.keys import CacheKey, collection_key, items_key, owner_collections_key

from .errors import ValidationError

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500


class OperationType(str, enum.Enum):
    CREATE_COLLECTION = "create_collection"
    UPDATE_COLLECTION = "update_collection"
    DELETE_COLLECTION = "delete_collection"
    CLEAR_COLLECTION = "clear_collection"
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"


class OperationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that hold the dedup signature.
ACTIVE_STATUSES = frozenset({OperationStatus.PENDING, OperationStatus.PROCESSING})
# Statuses eligible for the retention purge.
PURGEABLE_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.CANCELLED})


def _validate_name(name: t.Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name", "is required")
    trimmed = name.strip()
    if len(trimmed) < NAME_MIN_LENGTH:
        raise ValidationError("name", f"must be at least {NAME_MIN_LENGTH} characters")
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError("name", f"must be at most {NAME_MAX_LENGTH} characters")
    return trimmed


def _validate_description(description: t.Any) -> None:
    if not isinstance(description, str):
        raise ValidationError("description", "must be a string")
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError("description", f"must be at most {DESCRIPTION_MAX_LENGTH} characters")


@dataclass(frozen=True)
class NewCollection:
    """Payload of create_collection."""

    name: str
    description: str = ""
    is_public: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_name(self.name))
        _validate_description(self.description)
        if not isinstance(self.is_public, bool):
            raise ValidationError("is_public", "must be a boolean")

    def to_dict(self) -> t.Dict[str, t.Any]:
        return {"name": self.name, "description": self.description, "is_public": self.is_public}

    def signature_fields(self) -> t.Dict[str, t.Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class CollectionChanges:
    """Payload of update_collection; fields left as None are unchanged."""

    name: t.Optional[str] = None
    description: t.Optional[str] = None
    is_public: t.Optional[bool] = None

    def __post_init__(self) -> None:
        if self.name is None and self.description is None and self.is_public is None:
            raise ValidationError("payload", "at least one field must be changed")
        if self.name is not None:
            object.__setattr__(self, "name", _validate_name(self.name))
        if self.description is not None:
            _validate_description(self.description)
        if self.is_public is not None and not isinstance(self.is_public, bool):
            raise ValidationError("is_public", "must be a boolean")

    def to_dict(self) -> t.Dict[str, t.Any]:
        data = {"name": self.name, "description": self.description, "is_public": self.is_public}
        return {k: v for k, v in data.items() if v is not None}

    def signature_fields(self) -> t.Dict[str, t.Any]:
        return self.to_dict()


@dataclass(frozen=True)
class NoPayload:
    """Payload of delete_collection and clear_collection."""

    def to_dict(self) -> t.Dict[str, t.Any]:
        return {}

    def signature_fields(self) -> t.Dict[str, t.Any]:
        return {}


@dataclass(frozen=True)
class ItemRef:
    """Payload of add_item and remove_item."""

    item_id: int

    def __post_init__(self) -> None:
        if isinstance(self.item_id, bool) or not isinstance(self.item_id, int):
            raise ValidationError("item_id", "must be an integer")
        if self.item_id <= 0:
            raise ValidationError("item_id", "must be positive")

    def to_dict(self) -> t.Dict[str, t.Any]:
        return {"item_id": self.item_id}

    def signature_fields(self) -> t.Dict[str, t.Any]:
        return {"item_id": self.item_id}


Payload = t.Union[NewCollection, CollectionChanges, NoPayload, ItemRef]

PAYLOAD_TYPES: t.Dict[OperationType, t.Type[t.Any]] = {
    OperationType.CREATE_COLLECTION: NewCollection,
    OperationType.UPDATE_COLLECTION: CollectionChanges,
    OperationType.DELETE_COLLECTION: NoPayload,
    OperationType.CLEAR_COLLECTION: NoPayload,
    OperationType.ADD_ITEM: ItemRef,
    OperationType.REMOVE_ITEM: ItemRef,
}


def build_payload(operation_type: OperationType, payload: t.Union[Payload, t.Mapping[str, t.Any], None]) -> Payload:
    """Coerce `payload` into the payload record for `operation_type`.

    Mappings are validated on the way in; an already-built record must match
    the type expected for the operation.
    """
    payload_cls = PAYLOAD_TYPES[OperationType(operation_type)]
    if isinstance(payload, payload_cls):
        return payload
    if payload is None:
        payload = {}
    if not isinstance(payload, t.Mapping):
        raise ValidationError("payload", f"expected {payload_cls.__name__} for {OperationType(operation_type).value}")
    known = {f for f in payload_cls.__dataclass_fields__}
    unknown = set(payload) - known
    if unknown:
        raise ValidationError("payload", f"unexpected fields: {', '.join(sorted(unknown))}")
    try:
        return payload_cls(**payload)
    except TypeError as exc:
        raise ValidationError("payload", str(exc)) from exc


def dedup_signature(
    operation_type: OperationType,
    owner_id: int,
    target_id: t.Optional[int],
    payload: Payload,
) -> str:
    canonical = json.dumps(
        [OperationType(operation_type).value, owner_id, target_id, payload.signature_fields()],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def cache_keys_for(
    operation_type: OperationType,
    owner_id: int,
    target_id: t.Optional[int],
    local_ref: t.Optional[str] = None,
) -> t.List[CacheKey]:
    """Cache keys whose content a mutation can change."""
    keys: t.List[CacheKey] = []
    op = OperationType(operation_type)
    if target_id is not None:
        keys.append(collection_key(target_id))
        if op is not OperationType.UPDATE_COLLECTION:
            keys.append(items_key(target_id))
    if local_ref is not None:
        keys.append(collection_key(local_ref))
    # listings carry names and per-collection item counts, so every mutation touches them
    keys.append(owner_collections_key(owner_id))
    return keys


@dataclass
class OperationRecord:
    operation_type: OperationType
    owner_id: int
    target_id: t.Optional[int]
    payload: Payload
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OperationStatus = OperationStatus.PENDING
    retry_count: int = 0
    last_retry_at: t.Optional[float] = None
    scheduled_for: float = field(default_factory=lambda: time.time())
    error_message: t.Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())
    # temporary cache id of an optimistic create, reconciled on completion
    local_ref: t.Optional[str] = None
    # fixed at enqueue time so filling in target_id later keeps the dedup identity
    signature: str = ""

    def __post_init__(self) -> None:
        if not self.signature:
            self.signature = dedup_signature(self.operation_type, self.owner_id, self.target_id, self.payload)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> t.Dict[str, t.Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type.value,
            "owner_id": self.owner_id,
            "target_id": self.target_id,
            "payload": self.payload.to_dict(),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_retry_at": self.last_retry_at,
            "scheduled_for": self.scheduled_for,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "local_ref": self.local_ref,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: t.Mapping[str, t.Any]) -> "OperationRecord":
        operation_type = OperationType(data["operation_type"])
        return cls(
            id=data["id"],
            operation_type=operation_type,
            owner_id=data["owner_id"],
            target_id=data.get("target_id"),
            payload=build_payload(operation_type, data.get("payload") or {}),
            status=OperationStatus(data["status"]),
            retry_count=data.get("retry_count", 0),
            last_retry_at=data.get("last_retry_at"),
            scheduled_for=data["scheduled_for"],
            error_message=data.get("error_message"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            local_ref=data.get("local_ref"),
            signature=data.get("signature") or "",
        )
