from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from baluster.config import Settings
from baluster.logging import get_logger
from baluster.service.cache import MembershipCache, StateCache
from baluster.service.errors import AuthenticationError, ServerError, ValidationError
from baluster.service.tokens import hash_token
from baluster.storage.common import generate_id
from baluster.storage.models import Actor, ApiKey, User

logger = get_logger(__name__)

GITHUB_OAUTH = {
    "auth_url": "https://github.com/login/oauth/authorize",
    "token_url": "https://github.com/login/oauth/access_token",
    "userinfo_url": "https://api.github.com/user",
    "scope": "read:user user:email",
}

REFRESHED_TOKEN_HEADER = "X-Refreshed-Token"

TOKEN_VALID = "valid"
TOKEN_EXPIRED = "expired"
TOKEN_INVALID = "invalid"

_UNAUTHORIZED = "unauthorized"


class AuthStore(Protocol):
    def get_user_by_id(self, user_id: str, partition_hint: str = "") -> Optional[User]: ...

    def get_user_by_github_id(self, github_id: str) -> Optional[User]: ...

    def upsert_user(self, user: User) -> User: ...

    def find_api_key_by_hash(self, token_hash: str) -> Optional[ApiKey]: ...

    def is_organization_member(self, org_id: str, user_id: str) -> bool: ...


@dataclass
class AuthContext:
    """Identity attached to a request once its JWT has been accepted."""

    user_id: str
    github_id: str
    username: str
    organization_id: Optional[str] = None

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, github_id=self.github_id, username=self.username)

    def for_organization(self, organization_id: str) -> "AuthContext":
        return replace(self, organization_id=organization_id)


@dataclass
class TokenCheck:
    status: str
    claims: Optional[dict[str, Any]] = None


@dataclass
class AuthResult:
    context: AuthContext
    # Set when an expired token was re-issued during this request
    refreshed_token: Optional[str] = None


class AuthService:
    """JWT sessions, GitHub OAuth login, API-key checks and membership gating."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        state_cache: Optional[StateCache] = None,
        membership_cache: Optional[MembershipCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.state_cache = state_cache or StateCache(settings.oauth_state_ttl_seconds)
        self.membership_cache = membership_cache or MembershipCache(
            settings.membership_cache_ttl_seconds
        )
        self._oauth_code_registry: dict[str, dict] = {}
        self._registry_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- tokens -------------------------------------------------------------

    def issue_token(self, user: User) -> str:
        now = int(time.time())
        payload = {
            "user_id": user.id,
            "github_id": user.github_id,
            "username": user.username,
            "iat": now,
            "exp": now + self.settings.jwt_expiration_minutes * 60,
        }
        return self._encode_jwt(payload)

    def decode_token(self, token: str) -> TokenCheck:
        """Classify ``token`` as valid, expired (but refreshable) or invalid.

        A correctly signed token whose expiry passed less than
        ``jwt_refresh_grace_minutes`` ago is reported as expired together with
        its claims so the caller can re-issue it. Anything else that fails is
        invalid.
        """
        claims = self._decode_jwt(token)
        if claims is None:
            return TokenCheck(status=TOKEN_INVALID)
        user_id = claims.get("user_id")
        github_id = claims.get("github_id")
        exp = claims.get("exp")
        if not isinstance(user_id, str) or not user_id:
            return TokenCheck(status=TOKEN_INVALID)
        if not isinstance(github_id, str) or not github_id:
            return TokenCheck(status=TOKEN_INVALID)
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return TokenCheck(status=TOKEN_INVALID)

        now = time.time()
        if exp > now:
            return TokenCheck(status=TOKEN_VALID, claims=claims)
        if now - exp > self.settings.jwt_refresh_grace_minutes * 60:
            logger.info("jwt_refresh_window_elapsed", user_id=user_id)
            return TokenCheck(status=TOKEN_INVALID)
        return TokenCheck(status=TOKEN_EXPIRED, claims=claims)

    def authenticate(self, authorization: Optional[str]) -> AuthResult:
        """Resolve a ``Bearer`` JWT into an :class:`AuthContext`.

        Expired tokens inside the refresh window are replaced by a freshly
        issued token, provided the user they name still exists.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(_UNAUTHORIZED)

        check = self.decode_token(token)
        if check.status == TOKEN_VALID and check.claims:
            claims = check.claims
            return AuthResult(
                context=AuthContext(
                    user_id=claims["user_id"],
                    github_id=claims["github_id"],
                    username=str(claims.get("username") or ""),
                )
            )
        if check.status == TOKEN_EXPIRED and check.claims:
            return self._refresh(check.claims)
        raise AuthenticationError(_UNAUTHORIZED)

    def _refresh(self, claims: dict[str, Any]) -> AuthResult:
        user_id = claims["user_id"]
        github_id = claims["github_id"]
        try:
            user = self.store.get_user_by_id(user_id, github_id)
        except Exception as exc:
            logger.error(
                "token_refresh_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AuthenticationError(_UNAUTHORIZED) from exc
        if user is None:
            logger.info("token_refresh_rejected", user_id=user_id, reason="user_not_found")
            raise AuthenticationError(_UNAUTHORIZED)

        refreshed = self.issue_token(user)
        logger.info("token_refreshed", user_id=user.id)
        return AuthResult(
            context=AuthContext(user_id=user.id, github_id=user.github_id, username=user.username),
            refreshed_token=refreshed,
        )

    def logout(self, authorization: Optional[str]) -> None:
        """Tokens are stateless; logging out only records who asked.

        The client discards its copy of the token.
        """
        token = self._extract_bearer(authorization)
        check = self.decode_token(token) if token else TokenCheck(status=TOKEN_INVALID)
        if check.claims:
            logger.info("user_logged_out", user_id=check.claims.get("user_id"))

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        secret = self.settings.jwt_secret or ""
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        # Compared as bytes; a non-ASCII signature segment simply fails to match
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("utf-8")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        parts = header.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            return None
        return parts[1]

    # -- api keys and membership ------------------------------------------

    def validate_api_key(self, authorization: Optional[str]) -> ApiKey:
        """Accept a ``Bearer`` API key that exists and has not expired.

        Unknown, malformed and expired keys all fail the same way.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(_UNAUTHORIZED)
        try:
            api_key = self.store.find_api_key_by_hash(hash_token(token))
        except Exception as exc:
            logger.error(
                "api_key_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("failed to validate api key") from exc
        if api_key is None:
            logger.info("api_key_rejected", reason="not_found")
            raise AuthenticationError(_UNAUTHORIZED)
        if api_key.is_expired(self._now()):
            logger.info("api_key_rejected", reason="expired", api_key_id=api_key.id)
            raise AuthenticationError(_UNAUTHORIZED)
        return api_key

    def check_membership(self, organization_id: str, user_id: str) -> bool:
        if not organization_id or not user_id:
            return False
        is_member, found = self.membership_cache.get(organization_id, user_id)
        if found:
            return is_member
        try:
            is_member = self.store.is_organization_member(organization_id, user_id)
        except Exception as exc:
            logger.error(
                "membership_lookup_failed",
                organization_id=organization_id,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("failed to validate organization membership") from exc
        self.membership_cache.set(organization_id, user_id, is_member)
        return is_member

    def require_membership(self, context: AuthContext, organization_id: Optional[str]) -> AuthContext:
        """Return ``context`` scoped to ``organization_id`` or raise 401."""
        if not organization_id:
            raise AuthenticationError(_UNAUTHORIZED)
        if not self.check_membership(organization_id, context.user_id):
            logger.info(
                "membership_rejected",
                organization_id=organization_id,
                user_id=context.user_id,
            )
            raise AuthenticationError(_UNAUTHORIZED)
        return context.for_organization(organization_id)

    # -- github oauth -----------------------------------------------------

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("redirect uri must be http(s)")
        if not parsed.netloc:
            raise ValidationError("redirect uri must include host")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure redirect uri not allowed outside localhost")
        return redirect_uri

    def start_oauth(self, redirect_uri: Optional[str] = None) -> dict:
        client_id = self.settings.github_client_id
        if not client_id and not self.settings.test_mode:
            logger.warning("oauth_not_configured")
            raise ServerError("github oauth is not configured")
        callback_uri = self._validate_redirect_uri(redirect_uri or self.settings.github_redirect_url)

        state = self.state_cache.issue(callback_uri)
        params = {
            "client_id": client_id or "",
            "redirect_uri": callback_uri,
            "scope": GITHUB_OAUTH["scope"],
            "state": state,
        }
        return {
            "auth_url": f"{GITHUB_OAUTH['auth_url']}?{urlencode(params)}",
            "state": state,
        }

    def register_oauth_code(self, code: str, profile: dict) -> None:
        """Record a GitHub profile for ``code`` so tests and offline setups skip the network."""
        with self._registry_lock:
            self._oauth_code_registry[code] = profile

    async def complete_oauth(self, code: Optional[str], state: Optional[str]) -> tuple[User, str]:
        if not code or not state:
            raise ValidationError("missing code or state")
        redirect_uri, live = self.state_cache.pop(state)
        if not live:
            logger.warning("oauth_state_rejected")
            raise AuthenticationError(_UNAUTHORIZED)

        profile = await self._exchange_oauth_code(code, redirect_uri)
        if not profile:
            raise AuthenticationError(_UNAUTHORIZED)
        github_id = str(profile.get("id") or "")
        if not github_id:
            logger.error("oauth_identity_missing_id")
            raise AuthenticationError(_UNAUTHORIZED)

        now = self._now()
        existing = self.store.get_user_by_github_id(github_id)
        user = User(
            id=existing.id if existing else generate_id(),
            github_id=github_id,
            username=str(profile.get("login") or ""),
            avatar_url=str(profile.get("avatar_url") or ""),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        user = self.store.upsert_user(user)
        logger.info("oauth_login_completed", user_id=user.id, new_user=existing is None)
        return user, self.issue_token(user)

    async def _exchange_oauth_code(self, code: str, redirect_uri: str = "") -> Optional[dict]:
        with self._registry_lock:
            registered = self._oauth_code_registry.pop(code, None)
        if registered:
            return registered

        client_id = self.settings.github_client_id
        client_secret = self.settings.github_client_secret
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing")
            return None

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    GITHUB_OAUTH["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        # Must equal the redirect_uri sent on the authorize step
                        "redirect_uri": redirect_uri or self.settings.github_redirect_url,
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token")
                    return None

                userinfo_response = await client.get(
                    GITHUB_OAUTH["userinfo_url"],
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/vnd.github+json",
                    },
                )
                userinfo_response.raise_for_status()
                profile = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return None
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_request_failed", error=str(exc))
            return None
        except ValueError as exc:
            logger.error("oauth_exchange_parse_error", error=str(exc))
            return None

        if not isinstance(profile, dict):
            logger.error("oauth_userinfo_invalid_format", type=str(type(profile)))
            return None
        logger.info("oauth_exchange_success", github_id=profile.get("id"))
        return profile


__all__ = [
    "AuthContext",
    "AuthResult",
    "AuthService",
    "AuthStore",
    "REFRESHED_TOKEN_HEADER",
    "TokenCheck",
]
