from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from baluster.logging import get_correlation_id
from baluster.storage.models import (
    ApiKey,
    Application,
    ApplicationAccess,
    AuditHistory,
    Organization,
    OrganizationMember,
    ServiceKey,
    User,
)


# Upper bounds on client-supplied collections and strings
MAX_NAME_LENGTH = 128
MAX_DESCRIPTION_LENGTH = 2048
MAX_PERMISSIONS = 200
MAX_APPLICATION_GRANTS = 100


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "limit_exceeded",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Wrapper for every JSON response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# -- requests ---------------------------------------------------------------


class CreateOrganizationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class AddMemberRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class ApplicationRequest(BaseModel):
    """Body for both creating and updating an application."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    permissions: List[str] = Field(default_factory=list, max_length=MAX_PERMISSIONS)


class ApplicationAccessRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    application_id: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    application_name: str = Field(default="", max_length=MAX_NAME_LENGTH)
    permissions: List[str] = Field(default_factory=list, max_length=MAX_PERMISSIONS)

    def to_access(self) -> ApplicationAccess:
        return ApplicationAccess(
            application_id=self.application_id,
            application_name=self.application_name,
            permissions=list(self.permissions),
        )


class ServiceKeyRequest(BaseModel):
    """Body for both creating and updating a service key."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    applications: List[ApplicationAccessRequest] = Field(
        default_factory=list, max_length=MAX_APPLICATION_GRANTS
    )
    expires_at: Optional[datetime] = None

    def grants(self) -> List[ApplicationAccess]:
        return [grant.to_access() for grant in self.applications]


class CreateApiKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    application_id: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    expires_at: Optional[datetime] = None


class UpdateApiKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    expires_at: Optional[datetime] = None


class AccessRequest(BaseModel):
    token: str = Field(default="", max_length=512)
    application_name: str = Field(default="", max_length=MAX_NAME_LENGTH)


# -- responses --------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    github_id: str
    username: str
    avatar_url: str = ""
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            github_id=user.github_id,
            username=user.username,
            avatar_url=user.avatar_url,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class OrganizationResponse(BaseModel):
    id: str
    name: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, org: Organization) -> "OrganizationResponse":
        return cls(id=org.id, name=org.name, created_at=org.created_at, updated_at=org.updated_at)


class OrganizationListResponse(BaseModel):
    items: List[OrganizationResponse]


class MemberResponse(BaseModel):
    organization_id: str
    user_id: str
    created_at: datetime

    @classmethod
    def from_model(cls, member: OrganizationMember) -> "MemberResponse":
        return cls(
            organization_id=member.organization_id,
            user_id=member.user_id,
            created_at=member.created_at,
        )


class MemberListResponse(BaseModel):
    items: List[MemberResponse]


class MeResponse(BaseModel):
    user: UserResponse
    organization: Optional[OrganizationResponse] = None


class AuthStartResponse(BaseModel):
    auth_url: str
    state: str


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


class ApplicationResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    description: str = ""
    permissions: List[str]
    created_by_user_id: str
    created_by_username: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, app: Application) -> "ApplicationResponse":
        return cls(
            id=app.id,
            organization_id=app.organization_id,
            name=app.name,
            description=app.description,
            permissions=list(app.permissions),
            created_by_user_id=app.created_by_user_id,
            created_by_username=app.created_by_username,
            created_at=app.created_at,
            updated_at=app.updated_at,
        )


class ApplicationListResponse(BaseModel):
    items: List[ApplicationResponse]


class ApplicationAccessResponse(BaseModel):
    application_id: str
    application_name: str
    permissions: List[str]


class ServiceKeyResponse(BaseModel):
    """A service key as listed or read; the token hash is never exposed."""

    id: str
    organization_id: str
    name: str
    applications: List[ApplicationAccessResponse]
    expires_at: Optional[datetime] = None
    created_by_user_id: str
    created_by_username: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, key: ServiceKey) -> "ServiceKeyResponse":
        return cls(
            id=key.id,
            organization_id=key.organization_id,
            name=key.name,
            applications=[
                ApplicationAccessResponse(
                    application_id=grant.application_id,
                    application_name=grant.application_name,
                    permissions=list(grant.permissions),
                )
                for grant in key.applications
            ],
            expires_at=key.expires_at,
            created_by_user_id=key.created_by_user_id,
            created_by_username=key.created_by_username,
            created_at=key.created_at,
            updated_at=key.updated_at,
        )


class ServiceKeyListResponse(BaseModel):
    items: List[ServiceKeyResponse]


class CreateServiceKeyResponse(BaseModel):
    service_key: ServiceKeyResponse
    token_value: str
    organization_id: str


class ApiKeyResponse(BaseModel):
    id: str
    organization_id: str
    application_id: str
    name: str
    expires_at: Optional[datetime] = None
    created_by_user_id: str
    created_by_username: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            organization_id=key.organization_id,
            application_id=key.application_id,
            name=key.name,
            expires_at=key.expires_at,
            created_by_user_id=key.created_by_user_id,
            created_by_username=key.created_by_username,
            created_at=key.created_at,
            updated_at=key.updated_at,
        )


class ApiKeyListResponse(BaseModel):
    items: List[ApiKeyResponse]


class CreateApiKeyResponse(BaseModel):
    api_key: ApiKeyResponse
    token_value: str


class AuditHistoryResponse(BaseModel):
    id: str
    entity_id: str
    organization_id: str
    action: str
    created_by_user_id: str
    created_by_github_id: str
    created_by_username: str
    created_at: datetime

    @classmethod
    def from_model(cls, record: AuditHistory) -> "AuditHistoryResponse":
        return cls(
            id=record.id,
            entity_id=record.entity_id,
            organization_id=record.organization_id,
            action=record.action.value,
            created_by_user_id=record.created_by_user_id,
            created_by_github_id=record.created_by_github_id,
            created_by_username=record.created_by_username,
            created_at=record.created_at,
        )


class AuditHistoryListResponse(BaseModel):
    items: List[AuditHistoryResponse]


class DeletedResponse(BaseModel):
    deleted: bool = True
    id: str


class AccessResponse(BaseModel):
    valid: bool
    permissions: List[str] = Field(default_factory=list)
