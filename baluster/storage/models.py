from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

# Discriminator values stored in the ``entity_type`` field of every document
ENTITY_ORGANIZATION = "organization"
ENTITY_ORGANIZATION_MEMBER = "organization_member"
ENTITY_APPLICATION = "application"
ENTITY_SERVICE_KEY = "service_key"
ENTITY_API_KEY = "api_key"
ENTITY_AUDIT_HISTORY = "audit_history"
ENTITY_USER = "user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix aware and naive values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Actor:
    """The authenticated principal recorded on audit trails."""

    user_id: str
    github_id: str
    username: str


@dataclass
class Organization:
    id: str
    name: str
    # Legacy embedded membership list; new memberships are OrganizationMember records
    member_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_ORGANIZATION

    @property
    def partition_key(self) -> str:
        return self.id


@dataclass
class OrganizationMember:
    id: str
    organization_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_ORGANIZATION_MEMBER

    @staticmethod
    def member_id(organization_id: str, user_id: str) -> str:
        return f"{organization_id}_{user_id}"

    @classmethod
    def new(cls, organization_id: str, user_id: str) -> "OrganizationMember":
        return cls(
            id=cls.member_id(organization_id, user_id),
            organization_id=organization_id,
            user_id=user_id,
        )

    @property
    def partition_key(self) -> str:
        return self.organization_id


@dataclass
class Application:
    id: str
    organization_id: str
    name: str
    description: str = ""
    permissions: List[str] = field(default_factory=list)
    created_by_user_id: str = ""
    created_by_github_id: str = ""
    created_by_username: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_APPLICATION

    @property
    def partition_key(self) -> str:
        return self.organization_id


@dataclass
class ApplicationAccess:
    application_id: str
    application_name: str
    permissions: List[str] = field(default_factory=list)


@dataclass
class ServiceKey:
    """Credential granting per-application permission sets.

    ``token_value`` holds the SHA-256 digest of the issued token; the raw
    token only exists in the creation response.
    """

    id: str
    organization_id: str
    name: str
    token_value: str
    applications: List[ApplicationAccess] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_by_user_id: str = ""
    created_by_github_id: str = ""
    created_by_username: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_SERVICE_KEY

    @property
    def partition_key(self) -> str:
        return self.organization_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < (now or utcnow())

    def has_access_to_application(self, application_name: str) -> Optional[ApplicationAccess]:
        for access in self.applications:
            if access.application_name == application_name:
                return access
        return None

    def has_permission(self, application_name: str, permission: str) -> bool:
        access = self.has_access_to_application(application_name)
        if access is None:
            return False
        return permission in access.permissions


@dataclass
class ApiKey:
    id: str
    organization_id: str
    application_id: str
    name: str
    token_value: str
    expires_at: Optional[datetime] = None
    created_by_user_id: str = ""
    created_by_github_id: str = ""
    created_by_username: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_API_KEY

    @property
    def partition_key(self) -> str:
        return self.organization_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < (now or utcnow())


@dataclass
class User:
    id: str
    github_id: str
    username: str
    avatar_url: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_USER

    @property
    def partition_key(self) -> str:
        return self.github_id


@dataclass
class AuditHistory:
    """Append-only change record stored beside the entity it describes."""

    id: str
    entity_id: str
    organization_id: str
    action: AuditAction
    created_by_user_id: str
    created_by_github_id: str
    created_by_username: str
    created_at: datetime = field(default_factory=utcnow)
    entity_type: str = ENTITY_AUDIT_HISTORY

    @property
    def partition_key(self) -> str:
        return self.organization_id
