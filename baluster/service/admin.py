from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from baluster.config import Settings
from baluster.logging import get_logger
from baluster.service.auth import AuthContext
from baluster.service.cache import MembershipCache
from baluster.service.errors import (
    AuthenticationError,
    ConflictError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from baluster.service.tokens import generate_token, hash_token
from baluster.storage.common import (
    COLLECTION_API_KEYS,
    COLLECTION_APPLICATIONS,
    COLLECTION_SERVICE_KEYS,
    generate_id,
)
from baluster.storage.models import (
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
    utcnow,
)

logger = get_logger(__name__)

APPLICATION_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")


class AdminStore(Protocol):
    def create_organization_with_membership(
        self, org: Organization, member: OrganizationMember
    ) -> Organization: ...

    def list_organizations_for_member(self, user_id: str) -> List[Organization]: ...

    def add_member(self, org_id: str, user_id: str) -> OrganizationMember: ...

    def remove_member(self, org_id: str, user_id: str) -> bool: ...

    def list_members(self, org_id: str) -> List[OrganizationMember]: ...

    def is_organization_member(self, org_id: str, user_id: str) -> bool: ...

    def get_user_by_id(self, user_id: str, partition_hint: str = "") -> Optional[User]: ...

    def create_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any: ...

    def update_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> Any: ...

    def delete_with_audit(self, collection: str, entity: Any, audit: AuditHistory) -> None: ...

    def get_entity(self, collection: str, org_id: str, entity_id: str) -> Optional[Any]: ...

    def list_by_organization(self, collection: str, org_id: str) -> List[Any]: ...

    def count_by_organization(self, collection: str, org_id: str) -> int: ...

    def get_history(self, collection: str, org_id: str, entity_id: str) -> List[AuditHistory]: ...


@dataclass
class CreatedCredential:
    """A freshly created key together with its raw token, shown exactly once."""

    entity: Any
    token_value: str


def _require_org(ctx: AuthContext) -> str:
    if not ctx.organization_id:
        raise AuthenticationError("organization context required")
    return ctx.organization_id


def _require_name(name: Optional[str], field: str = "name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", detail={"field": field})
    return cleaned


def _validate_permissions(permissions: Optional[List[str]], field: str = "permissions") -> List[str]:
    values = list(permissions or [])
    for permission in values:
        if not isinstance(permission, str) or not permission.strip():
            raise ValidationError(
                "permissions must be non-empty strings", detail={"field": field}
            )
    return values


def _validate_expiry(expires_at: Optional[datetime]) -> Optional[datetime]:
    if expires_at is None:
        return None
    expires_at = as_utc(expires_at)
    if expires_at <= utcnow():
        raise ValidationError("expires_at must be in the future", detail={"field": "expires_at"})
    return expires_at


class AdminService:
    """Tenant administration: organizations, applications and both key kinds.

    Every method takes the caller's :class:`AuthContext` explicitly. Tenant
    scoped methods require ``ctx.organization_id``, which the HTTP layer only
    sets after the membership gate has passed.
    """

    def __init__(
        self,
        store: AdminStore,
        settings: Settings,
        *,
        membership_cache: Optional[MembershipCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.membership_cache = membership_cache
        self._limit_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._limit_locks_guard = threading.Lock()

    def _limit_lock(self, collection: str, org_id: str) -> threading.Lock:
        # Serializes count-then-create per organization within this process
        with self._limit_locks_guard:
            return self._limit_locks.setdefault((collection, org_id), threading.Lock())

    def _check_limit(self, collection: str, org_id: str, limit: int, resource: str) -> None:
        count = self.store.count_by_organization(collection, org_id)
        if count >= limit:
            logger.info(
                "resource_limit_reached",
                organization_id=org_id,
                resource=resource,
                count=count,
                limit=limit,
            )
            raise LimitExceededError(resource, limit)

    def _audit(self, ctx: AuthContext, entity: Any, action: AuditAction) -> AuditHistory:
        actor = ctx.actor
        return AuditHistory(
            id=generate_id(),
            entity_id=entity.id,
            organization_id=entity.organization_id,
            action=action,
            created_by_user_id=actor.user_id,
            created_by_github_id=actor.github_id,
            created_by_username=actor.username,
        )

    def _get_or_404(self, collection: str, org_id: str, entity_id: str, label: str) -> Any:
        entity = self.store.get_entity(collection, org_id, entity_id)
        if entity is None:
            raise NotFoundError(f"{label} not found", detail={"id": entity_id})
        return entity

    def _history(self, collection: str, ctx: AuthContext, entity_id: str, label: str) -> List[AuditHistory]:
        org_id = _require_org(ctx)
        self._get_or_404(collection, org_id, entity_id, label)
        return self.store.get_history(collection, org_id, entity_id)

    # -- organizations & users -------------------------------------------

    def create_organization(self, ctx: AuthContext, name: str) -> Organization:
        name = _require_name(name)
        now = utcnow()
        org = Organization(id=generate_id(), name=name, member_ids=[], created_at=now, updated_at=now)
        member = OrganizationMember.new(org.id, ctx.user_id)
        member.created_at = now
        self.store.create_organization_with_membership(org, member)
        if self.membership_cache is not None:
            self.membership_cache.invalidate(org.id, ctx.user_id)
        logger.info("organization_created", organization_id=org.id, user_id=ctx.user_id)
        return org

    def list_my_organizations(self, ctx: AuthContext) -> List[Organization]:
        return self.store.list_organizations_for_member(ctx.user_id)

    def get_current_user(self, ctx: AuthContext) -> Tuple[User, Optional[Organization]]:
        user = self.store.get_user_by_id(ctx.user_id, ctx.github_id)
        if user is None:
            raise NotFoundError("user not found")
        try:
            orgs = self.store.list_organizations_for_member(ctx.user_id)
        except Exception as exc:
            logger.warning(
                "current_user_organizations_unavailable",
                user_id=ctx.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return user, None
        return user, (orgs[0] if orgs else None)

    def _invalidate_memberships(self, org_id: str) -> None:
        if self.membership_cache is not None:
            self.membership_cache.invalidate_organization(org_id)

    def list_members(self, ctx: AuthContext) -> List[OrganizationMember]:
        return self.store.list_members(_require_org(ctx))

    def add_member(self, ctx: AuthContext, user_id: str) -> OrganizationMember:
        org_id = _require_org(ctx)
        user_id = _require_name(user_id, "user_id")
        if self.store.get_user_by_id(user_id) is None:
            raise NotFoundError("user not found", detail={"id": user_id})
        if self.store.is_organization_member(org_id, user_id):
            raise ConflictError("user is already a member", detail={"user_id": user_id})
        member = self.store.add_member(org_id, user_id)
        self._invalidate_memberships(org_id)
        logger.info(
            "organization_member_added", organization_id=org_id, user_id=user_id, by=ctx.user_id
        )
        return member

    def remove_member(self, ctx: AuthContext, user_id: str) -> None:
        org_id = _require_org(ctx)
        user_id = _require_name(user_id, "user_id")
        if not self.store.remove_member(org_id, user_id):
            raise NotFoundError("member not found", detail={"user_id": user_id})
        # Drop cached answers so the removed user is refused on the next request
        self._invalidate_memberships(org_id)
        logger.info(
            "organization_member_removed", organization_id=org_id, user_id=user_id, by=ctx.user_id
        )

    # -- applications -----------------------------------------------------

    def _validate_application_fields(
        self, name: Optional[str], permissions: Optional[List[str]]
    ) -> Tuple[str, List[str]]:
        name = _require_name(name)
        if not APPLICATION_NAME_PATTERN.match(name):
            raise ValidationError(
                "application name may only contain lowercase letters, digits and underscores",
                detail={"field": "name"},
            )
        return name, _validate_permissions(permissions)

    def _ensure_unique_application_name(
        self, org_id: str, name: str, exclude_id: Optional[str] = None
    ) -> None:
        for app in self.store.list_by_organization(COLLECTION_APPLICATIONS, org_id):
            if app.name == name and app.id != exclude_id:
                raise ConflictError(
                    "an application with this name already exists", detail={"name": name}
                )

    def create_application(
        self,
        ctx: AuthContext,
        name: str,
        description: str = "",
        permissions: Optional[List[str]] = None,
    ) -> Application:
        org_id = _require_org(ctx)
        name, permissions = self._validate_application_fields(name, permissions)
        with self._limit_lock(COLLECTION_APPLICATIONS, org_id):
            self._check_limit(
                COLLECTION_APPLICATIONS, org_id, self.settings.max_applications_per_org, "applications"
            )
            self._ensure_unique_application_name(org_id, name)
            actor = ctx.actor
            now = utcnow()
            app = Application(
                id=generate_id(),
                organization_id=org_id,
                name=name,
                description=description or "",
                permissions=permissions,
                created_by_user_id=actor.user_id,
                created_by_github_id=actor.github_id,
                created_by_username=actor.username,
                created_at=now,
                updated_at=now,
            )
            self.store.create_with_audit(
                COLLECTION_APPLICATIONS, app, self._audit(ctx, app, AuditAction.CREATED)
            )
        logger.info("application_created", organization_id=org_id, application_id=app.id)
        return app

    def get_application(self, ctx: AuthContext, application_id: str) -> Application:
        return self._get_or_404(COLLECTION_APPLICATIONS, _require_org(ctx), application_id, "application")

    def list_applications(self, ctx: AuthContext) -> List[Application]:
        return self.store.list_by_organization(COLLECTION_APPLICATIONS, _require_org(ctx))

    def update_application(
        self,
        ctx: AuthContext,
        application_id: str,
        name: str,
        description: str = "",
        permissions: Optional[List[str]] = None,
    ) -> Application:
        org_id = _require_org(ctx)
        name, permissions = self._validate_application_fields(name, permissions)
        app = self._get_or_404(COLLECTION_APPLICATIONS, org_id, application_id, "application")
        self._ensure_unique_application_name(org_id, name, exclude_id=app.id)
        renamed = app.name != name
        app.name = name
        app.description = description or ""
        app.permissions = permissions
        app.updated_at = utcnow()
        self.store.update_with_audit(
            COLLECTION_APPLICATIONS, app, self._audit(ctx, app, AuditAction.UPDATED)
        )
        if renamed:
            self._sync_service_key_grants(ctx, org_id, app.id, app.name)
        logger.info("application_updated", organization_id=org_id, application_id=app.id)
        return app

    def delete_application(self, ctx: AuthContext, application_id: str) -> None:
        org_id = _require_org(ctx)
        app = self._get_or_404(COLLECTION_APPLICATIONS, org_id, application_id, "application")
        self.store.delete_with_audit(
            COLLECTION_APPLICATIONS, app, self._audit(ctx, app, AuditAction.DELETED)
        )
        self._sync_service_key_grants(ctx, org_id, app.id, None)
        logger.info("application_deleted", organization_id=org_id, application_id=app.id)

    def get_application_history(self, ctx: AuthContext, application_id: str) -> List[AuditHistory]:
        return self._history(COLLECTION_APPLICATIONS, ctx, application_id, "application")

    def _sync_service_key_grants(
        self, ctx: AuthContext, org_id: str, application_id: str, new_name: Optional[str]
    ) -> int:
        """Rename or drop the service-key grants that point at ``application_id``.

        Grants are matched on the application name at validation time, so they
        must follow a rename. ``new_name=None`` removes the grants.
        """
        changed = 0
        for service_key in self.store.list_by_organization(COLLECTION_SERVICE_KEYS, org_id):
            grants: List[ApplicationAccess] = []
            touched = False
            for grant in service_key.applications:
                if grant.application_id != application_id:
                    grants.append(grant)
                    continue
                touched = True
                if new_name is not None:
                    grants.append(
                        ApplicationAccess(
                            application_id=grant.application_id,
                            application_name=new_name,
                            permissions=list(grant.permissions),
                        )
                    )
            if not touched:
                continue
            service_key.applications = grants
            service_key.updated_at = utcnow()
            self.store.update_with_audit(
                COLLECTION_SERVICE_KEYS,
                service_key,
                self._audit(ctx, service_key, AuditAction.UPDATED),
            )
            changed += 1
        if changed:
            logger.info(
                "service_key_grants_synced",
                organization_id=org_id,
                application_id=application_id,
                service_keys=changed,
                removed=new_name is None,
            )
        return changed

    # -- service keys -----------------------------------------------------

    def _resolve_grants(
        self, org_id: str, applications: Optional[List[ApplicationAccess]]
    ) -> List[ApplicationAccess]:
        """Check every grant names an application of the organization.

        Grants always carry the stored application's name; a caller supplied
        name that disagrees with it is rejected.
        """
        resolved: List[ApplicationAccess] = []
        for grant in applications or []:
            if not grant.application_id:
                raise ValidationError(
                    "application_id is required for each application grant",
                    detail={"field": "applications"},
                )
            app = self.store.get_entity(COLLECTION_APPLICATIONS, org_id, grant.application_id)
            if app is None:
                raise ValidationError(
                    "application not found in organization",
                    detail={"field": "applications", "application_id": grant.application_id},
                )
            if grant.application_name and grant.application_name != app.name:
                raise ValidationError(
                    "application_name does not match application_id",
                    detail={"field": "applications", "application_id": grant.application_id},
                )
            resolved.append(
                ApplicationAccess(
                    application_id=app.id,
                    application_name=app.name,
                    permissions=_validate_permissions(grant.permissions, "applications"),
                )
            )
        return resolved

    def create_service_key(
        self,
        ctx: AuthContext,
        name: str,
        applications: Optional[List[ApplicationAccess]] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreatedCredential:
        org_id = _require_org(ctx)
        name = _require_name(name)
        expires_at = _validate_expiry(expires_at)
        for grant in applications or []:
            _validate_permissions(grant.permissions, "applications")

        with self._limit_lock(COLLECTION_SERVICE_KEYS, org_id):
            self._check_limit(
                COLLECTION_SERVICE_KEYS, org_id, self.settings.max_service_keys_per_org, "service keys"
            )
            grants = self._resolve_grants(org_id, applications)
            raw_token = generate_token()
            actor = ctx.actor
            now = utcnow()
            service_key = ServiceKey(
                id=generate_id(),
                organization_id=org_id,
                name=name,
                token_value=hash_token(raw_token),
                applications=grants,
                expires_at=expires_at,
                created_by_user_id=actor.user_id,
                created_by_github_id=actor.github_id,
                created_by_username=actor.username,
                created_at=now,
                updated_at=now,
            )
            self.store.create_with_audit(
                COLLECTION_SERVICE_KEYS,
                service_key,
                self._audit(ctx, service_key, AuditAction.CREATED),
            )
        logger.info(
            "service_key_created",
            organization_id=org_id,
            service_key_id=service_key.id,
            applications=len(grants),
        )
        return CreatedCredential(entity=service_key, token_value=raw_token)

    def get_service_key(self, ctx: AuthContext, service_key_id: str) -> ServiceKey:
        return self._get_or_404(COLLECTION_SERVICE_KEYS, _require_org(ctx), service_key_id, "service key")

    def list_service_keys(self, ctx: AuthContext) -> List[ServiceKey]:
        return self.store.list_by_organization(COLLECTION_SERVICE_KEYS, _require_org(ctx))

    def update_service_key(
        self,
        ctx: AuthContext,
        service_key_id: str,
        name: str,
        applications: Optional[List[ApplicationAccess]] = None,
        expires_at: Optional[datetime] = None,
    ) -> ServiceKey:
        org_id = _require_org(ctx)
        name = _require_name(name)
        service_key = self._get_or_404(COLLECTION_SERVICE_KEYS, org_id, service_key_id, "service key")
        service_key.name = name
        service_key.applications = self._resolve_grants(org_id, applications)
        if expires_at is not None:
            service_key.expires_at = as_utc(expires_at)
        service_key.updated_at = utcnow()
        self.store.update_with_audit(
            COLLECTION_SERVICE_KEYS,
            service_key,
            self._audit(ctx, service_key, AuditAction.UPDATED),
        )
        logger.info("service_key_updated", organization_id=org_id, service_key_id=service_key.id)
        return service_key

    def delete_service_key(self, ctx: AuthContext, service_key_id: str) -> None:
        org_id = _require_org(ctx)
        service_key = self._get_or_404(COLLECTION_SERVICE_KEYS, org_id, service_key_id, "service key")
        self.store.delete_with_audit(
            COLLECTION_SERVICE_KEYS,
            service_key,
            self._audit(ctx, service_key, AuditAction.DELETED),
        )
        logger.info("service_key_deleted", organization_id=org_id, service_key_id=service_key.id)

    def get_service_key_history(self, ctx: AuthContext, service_key_id: str) -> List[AuditHistory]:
        return self._history(COLLECTION_SERVICE_KEYS, ctx, service_key_id, "service key")

    # -- api keys ---------------------------------------------------------

    def create_api_key(
        self,
        ctx: AuthContext,
        application_id: str,
        name: str,
        expires_at: Optional[datetime] = None,
    ) -> CreatedCredential:
        org_id = _require_org(ctx)
        name = _require_name(name)
        application_id = _require_name(application_id, "application_id")
        expires_at = _validate_expiry(expires_at)

        with self._limit_lock(COLLECTION_API_KEYS, org_id):
            self._check_limit(
                COLLECTION_API_KEYS, org_id, self.settings.max_api_keys_per_org, "API keys"
            )
            if self.store.get_entity(COLLECTION_APPLICATIONS, org_id, application_id) is None:
                raise ValidationError(
                    "application not found in organization",
                    detail={"field": "application_id", "application_id": application_id},
                )
            raw_token = generate_token()
            actor = ctx.actor
            now = utcnow()
            api_key = ApiKey(
                id=generate_id(),
                organization_id=org_id,
                application_id=application_id,
                name=name,
                token_value=hash_token(raw_token),
                expires_at=expires_at,
                created_by_user_id=actor.user_id,
                created_by_github_id=actor.github_id,
                created_by_username=actor.username,
                created_at=now,
                updated_at=now,
            )
            self.store.create_with_audit(
                COLLECTION_API_KEYS, api_key, self._audit(ctx, api_key, AuditAction.CREATED)
            )
        logger.info("api_key_created", organization_id=org_id, api_key_id=api_key.id)
        return CreatedCredential(entity=api_key, token_value=raw_token)

    def get_api_key(self, ctx: AuthContext, api_key_id: str) -> ApiKey:
        return self._get_or_404(COLLECTION_API_KEYS, _require_org(ctx), api_key_id, "api key")

    def list_api_keys(self, ctx: AuthContext) -> List[ApiKey]:
        return self.store.list_by_organization(COLLECTION_API_KEYS, _require_org(ctx))

    def update_api_key(
        self,
        ctx: AuthContext,
        api_key_id: str,
        name: str,
        expires_at: Optional[datetime] = None,
    ) -> ApiKey:
        org_id = _require_org(ctx)
        name = _require_name(name)
        api_key = self._get_or_404(COLLECTION_API_KEYS, org_id, api_key_id, "api key")
        api_key.name = name
        if expires_at is not None:
            api_key.expires_at = as_utc(expires_at)
        api_key.updated_at = utcnow()
        self.store.update_with_audit(
            COLLECTION_API_KEYS, api_key, self._audit(ctx, api_key, AuditAction.UPDATED)
        )
        logger.info("api_key_updated", organization_id=org_id, api_key_id=api_key.id)
        return api_key

    def delete_api_key(self, ctx: AuthContext, api_key_id: str) -> None:
        org_id = _require_org(ctx)
        api_key = self._get_or_404(COLLECTION_API_KEYS, org_id, api_key_id, "api key")
        self.store.delete_with_audit(
            COLLECTION_API_KEYS, api_key, self._audit(ctx, api_key, AuditAction.DELETED)
        )
        logger.info("api_key_deleted", organization_id=org_id, api_key_id=api_key.id)

    def get_api_key_history(self, ctx: AuthContext, api_key_id: str) -> List[AuditHistory]:
        return self._history(COLLECTION_API_KEYS, ctx, api_key_id, "api key")


__all__ = ["AdminService", "CreatedCredential", "APPLICATION_NAME_PATTERN"]
