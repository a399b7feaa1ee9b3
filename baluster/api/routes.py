from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response

from baluster.api.schemas import (
    AccessRequest,
    AccessResponse,
    AddMemberRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    ApplicationListResponse,
    ApplicationRequest,
    ApplicationResponse,
    AuditHistoryListResponse,
    AuditHistoryResponse,
    AuthStartResponse,
    CreateApiKeyRequest,
    CreateApiKeyResponse,
    CreateOrganizationRequest,
    CreateServiceKeyResponse,
    DeletedResponse,
    Envelope,
    LoginResponse,
    MemberListResponse,
    MemberResponse,
    MeResponse,
    OrganizationListResponse,
    OrganizationResponse,
    ServiceKeyListResponse,
    ServiceKeyRequest,
    ServiceKeyResponse,
    UpdateApiKeyRequest,
    UserResponse,
)
from baluster.logging import get_logger
from baluster.service.access import validate_access
from baluster.service.auth import REFRESHED_TOKEN_HEADER, AuthContext
from baluster.service.runtime import get_runtime
from baluster.storage.models import ApiKey

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/admin/v1", tags=["admin"])
access_router = APIRouter(prefix="/api/v1", tags=["access"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _history(records) -> Envelope:
    return Envelope(
        status="ok",
        data=AuditHistoryListResponse(
            items=[AuditHistoryResponse.from_model(record) for record in records]
        ),
    )


def _deleted(entity_id: str) -> Envelope:
    return Envelope(status="ok", data=DeletedResponse(id=entity_id))


# -- gates ------------------------------------------------------------------
#
# Store-touching gates and handlers are plain ``def`` so FastAPI runs them on
# its worker threadpool instead of blocking the event loop.


def get_current_context(
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Accept a JWT; an expired-but-refreshable token is re-issued in a header."""
    result = get_runtime().auth.authenticate(authorization)
    if result.refreshed_token:
        response.headers[REFRESHED_TOKEN_HEADER] = result.refreshed_token
    return result.context


def get_org_context(
    ctx: AuthContext = Depends(get_current_context),
    x_org_id: Optional[str] = Header(None, alias="x-org-id"),
) -> AuthContext:
    """Require membership of the organization named by the ``x-org-id`` header."""
    return get_runtime().auth.require_membership(ctx, x_org_id)


def require_api_key(authorization: Optional[str] = Header(None)) -> ApiKey:
    return get_runtime().auth.validate_api_key(authorization)


def _require_path_org(ctx: AuthContext, organization_id: str) -> None:
    if ctx.organization_id != organization_id:
        logger.info(
            "organization_path_mismatch",
            header_organization_id=ctx.organization_id,
            path_organization_id=organization_id,
            user_id=ctx.user_id,
        )
        raise _http_error("unauthorized", "unauthorized", status_code=401)


# -- github login -----------------------------------------------------------


@auth_router.get("/github", response_model=Envelope)
def github_login(redirect_uri: Optional[str] = Query(None)):
    """Begin GitHub login; the returned ``state`` must come back on the callback."""
    started = get_runtime().auth.start_oauth(redirect_uri)
    return Envelope(status="ok", data=AuthStartResponse(**started))


@auth_router.get("/github/callback", response_model=Envelope)
async def github_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    if not code or not state:
        raise _http_error("validation_error", "code and state are required", status_code=400)
    user, token = await get_runtime().auth.complete_oauth(code, state)
    return Envelope(
        status="ok",
        data=LoginResponse(token=token, user=UserResponse.from_model(user)),
    )


@auth_router.post("/logout", response_model=Envelope)
def logout(authorization: Optional[str] = Header(None)):
    get_runtime().auth.logout(authorization)
    return Envelope(status="ok", data={"message": "logged out"})


# -- current user & organizations ------------------------------------------


@admin_router.get("/me", response_model=Envelope)
def get_me(ctx: AuthContext = Depends(get_current_context)):
    user, org = get_runtime().admin.get_current_user(ctx)
    return Envelope(
        status="ok",
        data=MeResponse(
            user=UserResponse.from_model(user),
            organization=OrganizationResponse.from_model(org) if org else None,
        ),
    )


@admin_router.get("/organizations", response_model=Envelope)
def list_my_organizations(ctx: AuthContext = Depends(get_current_context)):
    orgs = get_runtime().admin.list_my_organizations(ctx)
    return Envelope(
        status="ok",
        data=OrganizationListResponse(items=[OrganizationResponse.from_model(o) for o in orgs]),
    )


@admin_router.post("/organizations", response_model=Envelope, status_code=201)
def create_organization(
    body: CreateOrganizationRequest,
    ctx: AuthContext = Depends(get_current_context),
):
    org = get_runtime().admin.create_organization(ctx, body.name)
    return Envelope(status="ok", data=OrganizationResponse.from_model(org))


@admin_router.get("/organizations/{organization_id}/applications", response_model=Envelope)
def list_organization_applications(
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    apps = get_runtime().admin.list_applications(ctx)
    return Envelope(
        status="ok",
        data=ApplicationListResponse(items=[ApplicationResponse.from_model(a) for a in apps]),
    )


@admin_router.get("/organizations/{organization_id}/service-keys", response_model=Envelope)
def list_organization_service_keys(
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    keys = get_runtime().admin.list_service_keys(ctx)
    return Envelope(
        status="ok",
        data=ServiceKeyListResponse(items=[ServiceKeyResponse.from_model(k) for k in keys]),
    )


@admin_router.get("/organizations/{organization_id}/api-keys", response_model=Envelope)
def list_organization_api_keys(
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    keys = get_runtime().admin.list_api_keys(ctx)
    return Envelope(
        status="ok",
        data=ApiKeyListResponse(items=[ApiKeyResponse.from_model(k) for k in keys]),
    )


@admin_router.get("/organizations/{organization_id}/members", response_model=Envelope)
def list_organization_members(
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    members = get_runtime().admin.list_members(ctx)
    return Envelope(
        status="ok",
        data=MemberListResponse(items=[MemberResponse.from_model(m) for m in members]),
    )


@admin_router.post(
    "/organizations/{organization_id}/members", response_model=Envelope, status_code=201
)
def add_organization_member(
    body: AddMemberRequest,
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    member = get_runtime().admin.add_member(ctx, body.user_id)
    return Envelope(status="ok", data=MemberResponse.from_model(member))


@admin_router.delete(
    "/organizations/{organization_id}/members/{user_id}", response_model=Envelope
)
def remove_organization_member(
    user_id: str,
    organization_id: str = Path(...),
    ctx: AuthContext = Depends(get_org_context),
):
    _require_path_org(ctx, organization_id)
    get_runtime().admin.remove_member(ctx, user_id)
    return _deleted(user_id)


# -- applications -----------------------------------------------------------


@admin_router.post("/applications", response_model=Envelope, status_code=201)
def create_application(body: ApplicationRequest, ctx: AuthContext = Depends(get_org_context)):
    app = get_runtime().admin.create_application(
        ctx, body.name, body.description, body.permissions
    )
    return Envelope(status="ok", data=ApplicationResponse.from_model(app))


@admin_router.get("/applications", response_model=Envelope)
def list_applications(ctx: AuthContext = Depends(get_org_context)):
    apps = get_runtime().admin.list_applications(ctx)
    return Envelope(
        status="ok",
        data=ApplicationListResponse(items=[ApplicationResponse.from_model(a) for a in apps]),
    )


@admin_router.get("/applications/{application_id}", response_model=Envelope)
def get_application(application_id: str, ctx: AuthContext = Depends(get_org_context)):
    app = get_runtime().admin.get_application(ctx, application_id)
    return Envelope(status="ok", data=ApplicationResponse.from_model(app))


@admin_router.put("/applications/{application_id}", response_model=Envelope)
def update_application(
    application_id: str,
    body: ApplicationRequest,
    ctx: AuthContext = Depends(get_org_context),
):
    app = get_runtime().admin.update_application(
        ctx, application_id, body.name, body.description, body.permissions
    )
    return Envelope(status="ok", data=ApplicationResponse.from_model(app))


@admin_router.delete("/applications/{application_id}", response_model=Envelope)
def delete_application(application_id: str, ctx: AuthContext = Depends(get_org_context)):
    get_runtime().admin.delete_application(ctx, application_id)
    return _deleted(application_id)


@admin_router.get("/applications/{application_id}/history", response_model=Envelope)
def get_application_history(application_id: str, ctx: AuthContext = Depends(get_org_context)):
    return _history(get_runtime().admin.get_application_history(ctx, application_id))


# -- service keys -----------------------------------------------------------


@admin_router.post("/service-keys", response_model=Envelope, status_code=201)
def create_service_key(body: ServiceKeyRequest, ctx: AuthContext = Depends(get_org_context)):
    """Create a service key. ``token_value`` is only ever returned here."""
    created = get_runtime().admin.create_service_key(
        ctx, body.name, body.grants(), body.expires_at
    )
    return Envelope(
        status="ok",
        data=CreateServiceKeyResponse(
            service_key=ServiceKeyResponse.from_model(created.entity),
            token_value=created.token_value,
            organization_id=created.entity.organization_id,
        ),
    )


@admin_router.get("/service-keys", response_model=Envelope)
def list_service_keys(ctx: AuthContext = Depends(get_org_context)):
    keys = get_runtime().admin.list_service_keys(ctx)
    return Envelope(
        status="ok",
        data=ServiceKeyListResponse(items=[ServiceKeyResponse.from_model(k) for k in keys]),
    )


@admin_router.get("/service-keys/{service_key_id}", response_model=Envelope)
def get_service_key(service_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    key = get_runtime().admin.get_service_key(ctx, service_key_id)
    return Envelope(status="ok", data=ServiceKeyResponse.from_model(key))


@admin_router.put("/service-keys/{service_key_id}", response_model=Envelope)
def update_service_key(
    service_key_id: str,
    body: ServiceKeyRequest,
    ctx: AuthContext = Depends(get_org_context),
):
    key = get_runtime().admin.update_service_key(
        ctx, service_key_id, body.name, body.grants(), body.expires_at
    )
    return Envelope(status="ok", data=ServiceKeyResponse.from_model(key))


@admin_router.delete("/service-keys/{service_key_id}", response_model=Envelope)
def delete_service_key(service_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    get_runtime().admin.delete_service_key(ctx, service_key_id)
    return _deleted(service_key_id)


@admin_router.get("/service-keys/{service_key_id}/history", response_model=Envelope)
def get_service_key_history(service_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    return _history(get_runtime().admin.get_service_key_history(ctx, service_key_id))


# -- api keys ---------------------------------------------------------------


@admin_router.post("/api-keys", response_model=Envelope, status_code=201)
def create_api_key(body: CreateApiKeyRequest, ctx: AuthContext = Depends(get_org_context)):
    created = get_runtime().admin.create_api_key(
        ctx, body.application_id, body.name, body.expires_at
    )
    return Envelope(
        status="ok",
        data=CreateApiKeyResponse(
            api_key=ApiKeyResponse.from_model(created.entity),
            token_value=created.token_value,
        ),
    )


@admin_router.get("/api-keys", response_model=Envelope)
def list_api_keys(ctx: AuthContext = Depends(get_org_context)):
    keys = get_runtime().admin.list_api_keys(ctx)
    return Envelope(
        status="ok",
        data=ApiKeyListResponse(items=[ApiKeyResponse.from_model(k) for k in keys]),
    )


@admin_router.get("/api-keys/{api_key_id}", response_model=Envelope)
def get_api_key(api_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    key = get_runtime().admin.get_api_key(ctx, api_key_id)
    return Envelope(status="ok", data=ApiKeyResponse.from_model(key))


@admin_router.put("/api-keys/{api_key_id}", response_model=Envelope)
def update_api_key(
    api_key_id: str,
    body: UpdateApiKeyRequest,
    ctx: AuthContext = Depends(get_org_context),
):
    key = get_runtime().admin.update_api_key(ctx, api_key_id, body.name, body.expires_at)
    return Envelope(status="ok", data=ApiKeyResponse.from_model(key))


@admin_router.delete("/api-keys/{api_key_id}", response_model=Envelope)
def delete_api_key(api_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    get_runtime().admin.delete_api_key(ctx, api_key_id)
    return _deleted(api_key_id)


@admin_router.get("/api-keys/{api_key_id}/history", response_model=Envelope)
def get_api_key_history(api_key_id: str, ctx: AuthContext = Depends(get_org_context)):
    return _history(get_runtime().admin.get_api_key_history(ctx, api_key_id))


# -- access validation ------------------------------------------------------


@access_router.post("/access", response_model=Envelope)
def check_access(
    body: AccessRequest,
    api_key: ApiKey = Depends(require_api_key),
    x_org_id: Optional[str] = Header(None, alias="x-org-id"),
):
    """Validate a service-key token for an application of the ``x-org-id`` organization.

    Every denial has the same shape: ``{"valid": false, "permissions": []}``.
    """
    if not x_org_id:
        raise _http_error("validation_error", "x-org-id header is required", status_code=400)
    decision = validate_access(get_runtime().store, body.token, body.application_name, x_org_id)
    logger.debug("access_checked_by_api_key", api_key_id=api_key.id, valid=decision.valid)
    return Envelope(status="ok", data=AccessResponse(**decision.to_dict()))


routers = (auth_router, admin_router, access_router)
