from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from baluster.logging import get_logger
from baluster.service.tokens import hash_token
from baluster.storage.models import ServiceKey, utcnow

logger = get_logger(__name__)


class ServiceKeyFinder(Protocol):
    def find_service_key_by_hash_in_org(
        self, org_id: str, token_hash: str
    ) -> Optional[ServiceKey]: ...


@dataclass(frozen=True)
class AccessDecision:
    valid: bool
    permissions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "permissions": list(self.permissions)}


def _deny(reason: str, organization_id: str, application_name: str, **context: Any) -> AccessDecision:
    # Callers only ever see {valid: False}; the reason stays in the logs
    logger.info(
        "access_validation_denied",
        reason=reason,
        organization_id=organization_id,
        application_name=application_name,
        **context,
    )
    return AccessDecision(valid=False)


def validate_access(
    store: ServiceKeyFinder,
    token: str,
    application_name: str,
    organization_id: str,
    *,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Decide whether ``token`` grants access to ``application_name``.

    The lookup is always scoped to the declared organization's partition.
    Every failure (missing organization, unknown token, lookup error,
    expired key, application not granted) produces the same denial.
    The grant's permission list is returned verbatim.
    """
    if not organization_id:
        return _deny("missing_org", organization_id, application_name)
    if not token:
        return _deny("missing_token", organization_id, application_name)

    token_hash = hash_token(token)
    try:
        service_key = store.find_service_key_by_hash_in_org(organization_id, token_hash)
    except Exception as exc:
        logger.error(
            "access_validation_lookup_failed",
            organization_id=organization_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _deny("lookup_failed", organization_id, application_name)

    if service_key is None:
        return _deny("not_found", organization_id, application_name, token_hash=token_hash)

    if service_key.is_expired(now or utcnow()):
        return _deny(
            "expired",
            organization_id,
            application_name,
            service_key_id=service_key.id,
        )

    access = service_key.has_access_to_application(application_name)
    if access is None:
        logger.debug(
            "access_validation_granted_applications",
            service_key_id=service_key.id,
            applications=[a.application_name for a in service_key.applications],
        )
        return _deny(
            "application_not_granted",
            organization_id,
            application_name,
            service_key_id=service_key.id,
        )

    logger.info(
        "access_validation_granted",
        organization_id=organization_id,
        application_name=application_name,
        service_key_id=service_key.id,
    )
    logger.debug(
        "access_validation_permissions",
        service_key_id=service_key.id,
        permissions=access.permissions,
    )
    return AccessDecision(valid=True, permissions=list(access.permissions))


__all__ = ["AccessDecision", "ServiceKeyFinder", "validate_access"]
