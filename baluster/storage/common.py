"""Document helpers shared between the memory and postgres stores.

Every stored record is a flat JSON document carrying ``id``, ``partition_key``
and an ``entity_type`` discriminator next to the entity fields. Entities and
their audit records live in the same collection and partition, so every read
switches on the discriminator before interpreting the document.
"""

from __future__ import annotations

import uuid
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from baluster.storage.errors import StoreError, TransactionFailed
from baluster.storage.models import (
    ENTITY_API_KEY,
    ENTITY_APPLICATION,
    ENTITY_AUDIT_HISTORY,
    ENTITY_ORGANIZATION,
    ENTITY_ORGANIZATION_MEMBER,
    ENTITY_SERVICE_KEY,
    ENTITY_USER,
    ApiKey,
    Application,
    ApplicationAccess,
    AuditAction,
    AuditHistory,
    Organization,
    OrganizationMember,
    ServiceKey,
    User,
    as_utc,
)

COLLECTION_ORGANIZATIONS = "organizations"
COLLECTION_APPLICATIONS = "applications"
COLLECTION_SERVICE_KEYS = "service_keys"
COLLECTION_API_KEYS = "api_keys"
COLLECTION_USERS = "users"

COLLECTIONS = (
    COLLECTION_ORGANIZATIONS,
    COLLECTION_APPLICATIONS,
    COLLECTION_SERVICE_KEYS,
    COLLECTION_API_KEYS,
    COLLECTION_USERS,
)

# Documents written before the discriminator existed carry no entity_type;
# they are read as the collection's primary entity.
LEGACY_ENTITY_TYPES = {
    COLLECTION_ORGANIZATIONS: ENTITY_ORGANIZATION,
    COLLECTION_APPLICATIONS: ENTITY_APPLICATION,
    COLLECTION_SERVICE_KEYS: ENTITY_SERVICE_KEY,
    COLLECTION_API_KEYS: ENTITY_API_KEY,
    COLLECTION_USERS: ENTITY_USER,
}

# Collections whose primary entity is looked up by token hash
TOKEN_COLLECTIONS = (COLLECTION_SERVICE_KEYS, COLLECTION_API_KEYS)

_ENTITY_CLASSES = {
    ENTITY_ORGANIZATION: Organization,
    ENTITY_ORGANIZATION_MEMBER: OrganizationMember,
    ENTITY_APPLICATION: Application,
    ENTITY_SERVICE_KEY: ServiceKey,
    ENTITY_API_KEY: ApiKey,
    ENTITY_USER: User,
    ENTITY_AUDIT_HISTORY: AuditHistory,
}

_DATETIME_FIELDS = frozenset({"created_at", "updated_at", "expires_at"})


def generate_id() -> str:
    return str(uuid.uuid4())


def check_audit_pair(entity: Any, audit: AuditHistory) -> None:
    """An audit record must describe its entity and share the entity's partition."""
    if audit.entity_id != entity.id or audit.partition_key != entity.partition_key:
        raise TransactionFailed(
            "audit record does not match entity",
            {"entity_id": entity.id, "audit_entity_id": audit.entity_id},
        )


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {f.name: _encode_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, list):
        return [_encode_value(item) for item in value]
    return value


def to_document(entity: Any) -> Dict[str, Any]:
    """Serialise an entity dataclass, stamping its partition key and discriminator."""
    doc = {f.name: _encode_value(getattr(entity, f.name)) for f in fields(entity)}
    doc["partition_key"] = entity.partition_key
    return doc


def entity_type_of(doc: Dict[str, Any], collection: str) -> str:
    return doc.get("entity_type") or LEGACY_ENTITY_TYPES[collection]


def primary_entity_type(collection: str) -> str:
    return LEGACY_ENTITY_TYPES[collection]


def from_document(doc: Dict[str, Any], collection: str) -> Any:
    """Rebuild the entity a document describes, switching on its discriminator."""
    entity_type = entity_type_of(doc, collection)
    cls = _ENTITY_CLASSES.get(entity_type)
    if cls is None:
        raise StoreError(
            "unknown entity type",
            {"collection": collection, "entity_type": entity_type},
        )
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name == "entity_type" or f.name not in doc:
            continue
        value = doc[f.name]
        if f.name in _DATETIME_FIELDS:
            try:
                value = parse_datetime(value)
            except ValueError as exc:
                raise StoreError(
                    "malformed document",
                    {"collection": collection, "id": doc.get("id"), "field": f.name},
                ) from exc
            if value is None and f.name != "expires_at":
                continue
        kwargs[f.name] = value
    if cls is ServiceKey:
        kwargs["applications"] = [
            ApplicationAccess(
                application_id=item.get("application_id", ""),
                application_name=item.get("application_name", ""),
                permissions=list(item.get("permissions") or []),
            )
            for item in (doc.get("applications") or [])
        ]
    elif cls is Organization:
        kwargs["member_ids"] = list(doc.get("member_ids") or [])
    elif cls is Application:
        kwargs["permissions"] = list(doc.get("permissions") or [])
    try:
        if cls is AuditHistory:
            kwargs["action"] = AuditAction(doc.get("action"))
        return cls(entity_type=entity_type, **kwargs)
    except (TypeError, ValueError) as exc:
        raise StoreError(
            "malformed document",
            {"collection": collection, "id": doc.get("id"), "error": str(exc)},
        ) from exc
