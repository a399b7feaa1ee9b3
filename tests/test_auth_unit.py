import base64
import json
import time
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from baluster.config import Settings
from baluster.service.auth import (
    TOKEN_EXPIRED,
    TOKEN_INVALID,
    TOKEN_VALID,
    AuthContext,
    AuthService,
)
from baluster.service.errors import AuthenticationError, ServerError, ValidationError
from baluster.service.tokens import generate_token, hash_token
from baluster.storage.common import COLLECTION_API_KEYS, generate_id
from baluster.storage.errors import StoreError
from baluster.storage.memory import MemoryStore
from baluster.storage.models import (
    ApiKey,
    AuditAction,
    AuditHistory,
    Organization,
    OrganizationMember,
    User,
    utcnow,
)

SECRET = "unit-test-secret-that-is-long-enough-for-hs256"


def _settings(**overrides) -> Settings:
    values = {"jwt_secret": SECRET, "test_mode": True}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(store):
    return store.upsert_user(User(id="user-1", github_id="gh-1", username="octocat"))


@pytest.fixture
def auth(store):
    return AuthService(store, _settings())


def _claims(user, exp_offset):
    now = int(time.time())
    return {
        "user_id": user.id,
        "github_id": user.github_id,
        "username": user.username,
        "iat": now - 3600,
        "exp": now + exp_offset,
    }


class TestTokenDecoding:
    def test_issued_token_round_trips(self, auth, user):
        check = auth.decode_token(auth.issue_token(user))
        assert check.status == TOKEN_VALID
        assert check.claims["user_id"] == "user-1"
        assert check.claims["github_id"] == "gh-1"
        assert check.claims["username"] == "octocat"
        assert check.claims["exp"] - check.claims["iat"] == 24 * 60 * 60

    def test_tampered_signature_is_invalid(self, auth, user):
        token = auth.issue_token(user)
        header, payload, _sig = token.split(".")
        forged = auth._encode_jwt({**_claims(user, 600), "user_id": "someone-else"})
        assert auth.decode_token(f"{header}.{forged.split('.')[1]}.{_sig}").status == TOKEN_INVALID

    def test_other_secret_is_invalid(self, store, user):
        other = AuthService(store, _settings(jwt_secret="a-completely-different-secret-value"))
        assert AuthService(store, _settings()).decode_token(other.issue_token(user)).status == TOKEN_INVALID

    def test_alg_none_is_rejected(self, auth, user):
        header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).decode().rstrip("=")
        payload = auth._encode_jwt(_claims(user, 600)).split(".")[1]
        assert auth.decode_token(f"{header}.{payload}.").status == TOKEN_INVALID

    def test_garbage_is_invalid(self, auth):
        for token in ("", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"):
            assert auth.decode_token(token).status == TOKEN_INVALID

    def test_non_ascii_signature_is_invalid(self, auth, user):
        header, payload, _sig = auth.issue_token(user).split(".")
        token = f"{header}.{payload}.éé"
        assert auth.decode_token(token).status == TOKEN_INVALID
        with pytest.raises(AuthenticationError):
            auth.authenticate(f"Bearer {token}")

    def test_missing_claims_are_invalid(self, auth, user):
        claims = _claims(user, 600)
        del claims["github_id"]
        assert auth.decode_token(auth._encode_jwt(claims)).status == TOKEN_INVALID

    def test_expired_within_grace(self, auth, user):
        check = auth.decode_token(auth._encode_jwt(_claims(user, -1)))
        assert check.status == TOKEN_EXPIRED
        assert check.claims["user_id"] == "user-1"

    def test_expired_beyond_grace_is_invalid(self, store, user):
        service = AuthService(store, _settings(jwt_refresh_grace_minutes=10))
        token = service._encode_jwt(_claims(user, -11 * 60))
        assert service.decode_token(token).status == TOKEN_INVALID


class TestAuthenticate:
    def test_valid_token_yields_context(self, auth, user):
        result = auth.authenticate(f"Bearer {auth.issue_token(user)}")
        assert result.context == AuthContext(user_id="user-1", github_id="gh-1", username="octocat")
        assert result.refreshed_token is None

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer ", "bearer abc", "Token abc", "Bearer a b", "Basic Zm9vOmJhcg=="],
    )
    def test_malformed_headers_rejected(self, auth, header):
        with pytest.raises(AuthenticationError) as exc_info:
            auth.authenticate(header)
        assert exc_info.value.message == "unauthorized"

    def test_token_expired_by_one_second_is_refreshed(self, auth, user):
        expired = auth._encode_jwt(_claims(user, -1))
        result = auth.authenticate(f"Bearer {expired}")
        assert result.context.user_id == "user-1"
        assert result.refreshed_token
        assert result.refreshed_token != expired
        assert auth.decode_token(result.refreshed_token).status == TOKEN_VALID

    def test_refresh_rejected_for_deleted_user(self, auth, store, user):
        expired = auth._encode_jwt(_claims(user, -1))
        store.delete_user(user)
        with pytest.raises(AuthenticationError):
            auth.authenticate(f"Bearer {expired}")

    def test_refresh_rejected_when_lookup_fails(self, user):
        class BrokenStore:
            def get_user_by_id(self, user_id, partition_hint=""):
                raise StoreError("timeout")

        service = AuthService(BrokenStore(), _settings())
        expired = service._encode_jwt(_claims(user, -1))
        with pytest.raises(AuthenticationError):
            service.authenticate(f"Bearer {expired}")

    def test_failures_share_one_message(self, auth, store, user):
        expired = auth._encode_jwt(_claims(user, -1))
        store.delete_user(user)
        messages = set()
        for header in ("Bearer nonsense", None, f"Bearer {expired}"):
            with pytest.raises(AuthenticationError) as exc_info:
                auth.authenticate(header)
            messages.add(exc_info.value.message)
        assert messages == {"unauthorized"}

    def test_logout_never_fails(self, auth, user):
        for header in (f"Bearer {auth.issue_token(user)}", "Bearer junk", None):
            assert auth.logout(header) is None


def _seed_api_key(store, org_id="org-1", *, expires_at=None):
    raw = generate_token()
    key = ApiKey(
        id=generate_id(),
        organization_id=org_id,
        application_id="app-1",
        name="ci",
        token_value=hash_token(raw),
        expires_at=expires_at,
    )
    audit = AuditHistory(
        id=generate_id(),
        entity_id=key.id,
        organization_id=org_id,
        action=AuditAction.CREATED,
        created_by_user_id="user-1",
        created_by_github_id="gh-1",
        created_by_username="octocat",
    )
    store.create_with_audit(COLLECTION_API_KEYS, key, audit)
    return raw, key


class TestApiKeyGate:
    def test_valid_key_accepted(self, auth, store):
        raw, key = _seed_api_key(store)
        assert auth.validate_api_key(f"Bearer {raw}").id == key.id

    def test_unknown_malformed_and_expired_rejected_alike(self, auth, store):
        expired_raw, _ = _seed_api_key(store, expires_at=utcnow() - timedelta(minutes=1))
        for header in (f"Bearer {generate_token()}", "Bearer", None, f"Bearer {expired_raw}"):
            with pytest.raises(AuthenticationError) as exc_info:
                auth.validate_api_key(header)
            assert exc_info.value.message == "unauthorized"

    def test_store_failure_is_server_error(self):
        class BrokenStore:
            def find_api_key_by_hash(self, token_hash):
                raise StoreError("connection refused")

        service = AuthService(BrokenStore(), _settings())
        with pytest.raises(ServerError):
            service.validate_api_key("Bearer something")


class CountingStore:
    def __init__(self, members=(), fail=False):
        self.members = set(members)
        self.fail = fail
        self.calls = 0

    def is_organization_member(self, org_id, user_id):
        self.calls += 1
        if self.fail:
            raise StoreError("backend down")
        return (org_id, user_id) in self.members


class TestMembershipGate:
    def test_answers_are_cached(self):
        store = CountingStore(members={("org-1", "user-1")})
        service = AuthService(store, _settings())
        assert service.check_membership("org-1", "user-1") is True
        assert service.check_membership("org-1", "user-1") is True
        assert service.check_membership("org-1", "user-2") is False
        assert service.check_membership("org-1", "user-2") is False
        assert store.calls == 2

    def test_store_failure_is_not_cached(self):
        store = CountingStore(fail=True)
        service = AuthService(store, _settings())
        with pytest.raises(ServerError):
            service.check_membership("org-1", "user-1")
        store.fail = False
        store.members.add(("org-1", "user-1"))
        assert service.check_membership("org-1", "user-1") is True
        assert store.calls == 2

    def test_require_membership_scopes_context(self):
        service = AuthService(CountingStore(members={("org-1", "user-1")}), _settings())
        ctx = AuthContext(user_id="user-1", github_id="gh-1", username="octocat")
        scoped = service.require_membership(ctx, "org-1")
        assert scoped.organization_id == "org-1"
        assert ctx.organization_id is None

    def test_require_membership_rejects_missing_org_and_non_members(self):
        service = AuthService(CountingStore(), _settings())
        ctx = AuthContext(user_id="user-1", github_id="gh-1", username="octocat")
        for org_id in (None, "", "org-1"):
            with pytest.raises(AuthenticationError):
                service.require_membership(ctx, org_id)

    def test_membership_through_store(self, auth, store):
        org = Organization(id="org-1", name="Acme")
        store.create_organization_with_membership(org, OrganizationMember.new("org-1", "user-1"))
        assert auth.check_membership("org-1", "user-1") is True
        assert auth.check_membership("org-1", "user-2") is False


class TestGithubOAuth:
    def test_start_returns_authorize_url_with_state(self, auth):
        started = auth.start_oauth()
        parsed = urlparse(started["auth_url"])
        params = parse_qs(parsed.query)
        assert parsed.netloc == "github.com"
        assert params["state"] == [started["state"]]
        assert params["scope"] == ["read:user user:email"]
        assert params["redirect_uri"] == ["http://localhost:5173/auth/callback"]

    def test_insecure_redirect_rejected(self, auth):
        with pytest.raises(ValidationError):
            auth.start_oauth("http://evil.example.com/callback")
        with pytest.raises(ValidationError):
            auth.start_oauth("javascript:alert(1)")

    def test_start_requires_client_id_outside_test_mode(self, store):
        service = AuthService(store, _settings(test_mode=False))
        with pytest.raises(ServerError):
            service.start_oauth()

    async def test_complete_creates_user_and_token(self, auth, store):
        state = auth.start_oauth()["state"]
        auth.register_oauth_code("code-1", {"id": 42, "login": "hubot", "avatar_url": "https://a/x.png"})
        user, token = await auth.complete_oauth("code-1", state)
        assert user.github_id == "42"
        assert user.username == "hubot"
        assert store.get_user_by_github_id("42").id == user.id
        assert auth.decode_token(token).claims["user_id"] == user.id

    async def test_returning_user_keeps_id_and_created_at(self, auth, store):
        original = store.upsert_user(
            User(
                id="keep-me",
                github_id="42",
                username="old-name",
                created_at=utcnow() - timedelta(days=30),
            )
        )
        state = auth.start_oauth()["state"]
        auth.register_oauth_code("code-2", {"id": 42, "login": "new-name"})
        user, _ = await auth.complete_oauth("code-2", state)
        assert user.id == "keep-me"
        assert user.created_at == original.created_at
        assert user.updated_at > original.created_at
        assert store.get_user_by_github_id("42").username == "new-name"

    async def test_state_is_single_use(self, auth):
        state = auth.start_oauth()["state"]
        auth.register_oauth_code("c1", {"id": 1, "login": "a"})
        auth.register_oauth_code("c2", {"id": 1, "login": "a"})
        await auth.complete_oauth("c1", state)
        with pytest.raises(AuthenticationError):
            await auth.complete_oauth("c2", state)

    async def test_missing_code_or_state(self, auth):
        with pytest.raises(ValidationError):
            await auth.complete_oauth("", "state")
        with pytest.raises(ValidationError):
            await auth.complete_oauth("code", None)

    async def test_unregistered_code_without_credentials_fails(self, auth):
        state = auth.start_oauth()["state"]
        with pytest.raises(AuthenticationError):
            await auth.complete_oauth("unknown-code", state)

    async def test_exchange_repeats_authorize_redirect_uri(self, store):
        class RecordingAuth(AuthService):
            seen = []

            async def _exchange_oauth_code(self, code, redirect_uri=""):
                self.seen.append(redirect_uri)
                return {"id": 7, "login": "hubot"}

        service = RecordingAuth(store, _settings())
        custom = service.start_oauth("http://localhost:3000/cb")["state"]
        default = service.start_oauth()["state"]
        await service.complete_oauth("code-a", custom)
        await service.complete_oauth("code-b", default)
        assert service.seen == ["http://localhost:3000/cb", "http://localhost:5173/auth/callback"]
