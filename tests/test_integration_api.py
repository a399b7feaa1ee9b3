"""Integration tests for the HTTP surface.

Covers:
- GitHub login through the callback
- JWT gate with silent refresh
- Organization membership gate
- Admin CRUD for applications, service keys and API keys
- Access validation behind the API-key gate
"""

import time

import pytest
from fastapi.testclient import TestClient

from baluster import app as app_module
from baluster.service.runtime import get_runtime, reset_runtime_for_tests


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, github_id=1001, login="octocat"):
    runtime = get_runtime()
    state = client.get("/api/auth/github").json()["data"]["state"]
    code = f"code-{github_id}-{time.monotonic_ns()}"
    runtime.auth.register_oauth_code(code, {"id": github_id, "login": login})
    response = client.get("/api/auth/github/callback", params={"code": code, "state": state})
    assert response.status_code == 200
    return response.json()["data"]


def _auth(token, org_id=None):
    headers = {"Authorization": f"Bearer {token}"}
    if org_id:
        headers["x-org-id"] = org_id
    return headers


@pytest.fixture
def session(client):
    """A logged-in user with one organization."""
    login = _login(client)
    token = login["token"]
    org = client.post("/admin/v1/organizations", json={"name": "Acme"}, headers=_auth(token))
    assert org.status_code == 201
    return {"token": token, "user": login["user"], "org_id": org.json()["data"]["id"]}


class TestLogin:
    def test_callback_issues_token_for_github_user(self, client):
        data = _login(client, github_id=77, login="hubot")
        assert data["user"]["github_id"] == "77"
        assert data["user"]["username"] == "hubot"
        me = client.get("/admin/v1/me", headers=_auth(data["token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["username"] == "hubot"
        assert me.json()["data"]["organization"] is None

    def test_callback_requires_code_and_state(self, client):
        response = client.get("/api/auth/github/callback", params={"code": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_callback_rejects_unknown_state(self, client):
        get_runtime().auth.register_oauth_code("c", {"id": 1, "login": "a"})
        response = client.get("/api/auth/github/callback", params={"code": "c", "state": "forged"})
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "unauthorized",
            "details": None,
        }

    def test_logout(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestJwtGate:
    def test_missing_and_garbage_tokens_rejected(self, client):
        assert client.get("/admin/v1/me").status_code == 401
        response = client.get("/admin/v1/me", headers=_auth("not-a-jwt"))
        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_expired_token_is_refreshed_in_header(self, client, session):
        runtime = get_runtime()
        claims = runtime.auth.decode_token(session["token"]).claims
        now = int(time.time())
        expired = runtime.auth._encode_jwt({**claims, "iat": now - 7200, "exp": now - 60})

        response = client.get("/admin/v1/me", headers=_auth(expired))
        assert response.status_code == 200
        refreshed = response.headers["X-Refreshed-Token"]
        assert runtime.auth.decode_token(refreshed).status == "valid"

        fresh = client.get("/admin/v1/me", headers=_auth(session["token"]))
        assert "X-Refreshed-Token" not in fresh.headers


class TestOrganizationGate:
    def test_list_my_organizations(self, client, session):
        response = client.get("/admin/v1/organizations", headers=_auth(session["token"]))
        assert [o["name"] for o in response.json()["data"]["items"]] == ["Acme"]

    def test_org_header_required(self, client, session):
        response = client.get("/admin/v1/applications", headers=_auth(session["token"]))
        assert response.status_code == 401

    def test_non_member_rejected(self, client, session):
        outsider = _login(client, github_id=2002, login="outsider")["token"]
        response = client.get("/admin/v1/applications", headers=_auth(outsider, session["org_id"]))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "unauthorized"

    def test_member_management_takes_effect_immediately(self, client, session):
        outsider = _login(client, github_id=3003, login="newcomer")
        members_url = f"/admin/v1/organizations/{session['org_id']}/members"
        owner = _auth(session["token"], session["org_id"])
        guest = _auth(outsider["token"], session["org_id"])
        assert client.get("/admin/v1/applications", headers=guest).status_code == 401

        added = client.post(members_url, json={"user_id": outsider["user"]["id"]}, headers=owner)
        assert added.status_code == 201
        assert added.json()["data"]["user_id"] == outsider["user"]["id"]
        assert client.get("/admin/v1/applications", headers=guest).status_code == 200
        listed = client.get(members_url, headers=owner).json()["data"]["items"]
        assert len(listed) == 2

        removed = client.delete(f"{members_url}/{outsider['user']['id']}", headers=owner)
        assert removed.json()["data"] == {"deleted": True, "id": outsider["user"]["id"]}
        assert client.get("/admin/v1/applications", headers=guest).status_code == 401

    def test_path_organization_must_match_header(self, client, session):
        token = session["token"]
        other = client.post("/admin/v1/organizations", json={"name": "Other"}, headers=_auth(token))
        other_id = other.json()["data"]["id"]

        ok = client.get(
            f"/admin/v1/organizations/{session['org_id']}/applications",
            headers=_auth(token, session["org_id"]),
        )
        assert ok.status_code == 200
        mismatch = client.get(
            f"/admin/v1/organizations/{other_id}/applications",
            headers=_auth(token, session["org_id"]),
        )
        assert mismatch.status_code == 401


class TestAdminCrud:
    def test_application_lifecycle(self, client, session):
        headers = _auth(session["token"], session["org_id"])
        created = client.post(
            "/admin/v1/applications",
            json={"name": "mail_service", "description": "Mail", "permissions": ["read"]},
            headers=headers,
        )
        assert created.status_code == 201
        app_id = created.json()["data"]["id"]

        updated = client.put(
            f"/admin/v1/applications/{app_id}",
            json={"name": "mail_service", "description": "Mail v2", "permissions": ["read", "send"]},
            headers=headers,
        )
        assert updated.json()["data"]["permissions"] == ["read", "send"]

        history = client.get(f"/admin/v1/applications/{app_id}/history", headers=headers)
        assert [h["action"] for h in history.json()["data"]["items"]] == ["created", "updated"]

        deleted = client.delete(f"/admin/v1/applications/{app_id}", headers=headers)
        assert deleted.json()["data"] == {"deleted": True, "id": app_id}
        missing = client.get(f"/admin/v1/applications/{app_id}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_invalid_application_name(self, client, session):
        response = client.post(
            "/admin/v1/applications",
            json={"name": "Mail Service"},
            headers=_auth(session["token"], session["org_id"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_request_fields_rejected(self, client, session):
        response = client.post(
            "/admin/v1/applications",
            json={"name": "mail", "owner": "me"},
            headers=_auth(session["token"], session["org_id"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid request"

    def test_service_key_token_only_in_create_response(self, client, session):
        headers = _auth(session["token"], session["org_id"])
        app_id = client.post(
            "/admin/v1/applications", json={"name": "mail"}, headers=headers
        ).json()["data"]["id"]
        created = client.post(
            "/admin/v1/service-keys",
            json={
                "name": "worker",
                "applications": [{"application_id": app_id, "permissions": ["read"]}],
            },
            headers=headers,
        )
        assert created.status_code == 201
        data = created.json()["data"]
        assert len(data["token_value"]) == 43
        assert data["organization_id"] == session["org_id"]
        assert "token_value" not in data["service_key"]
        key_id = data["service_key"]["id"]

        fetched = client.get(f"/admin/v1/service-keys/{key_id}", headers=headers).json()["data"]
        assert "token_value" not in fetched
        assert fetched["applications"][0]["application_name"] == "mail"
        listed = client.get(
            f"/admin/v1/organizations/{session['org_id']}/service-keys", headers=headers
        ).json()["data"]["items"]
        assert data["token_value"] not in str(listed)

    def test_limit_exceeded_envelope(self, client, monkeypatch):
        monkeypatch.setenv("MAX_APPLICATIONS_PER_ORG", "1")
        reset_runtime_for_tests()
        token = _login(client)["token"]
        org_id = client.post(
            "/admin/v1/organizations", json={"name": "Tiny"}, headers=_auth(token)
        ).json()["data"]["id"]
        headers = _auth(token, org_id)
        assert client.post("/admin/v1/applications", json={"name": "one"}, headers=headers).status_code == 201

        response = client.post("/admin/v1/applications", json={"name": "two"}, headers=headers)
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "limit_exceeded"
        assert error["message"] == "maximum number of applications (1) reached"
        assert error["details"] == {"resource": "applications", "limit": 1}


class TestAccessEndpoint:
    @pytest.fixture
    def credentials(self, client, session):
        headers = _auth(session["token"], session["org_id"])
        app_id = client.post(
            "/admin/v1/applications",
            json={"name": "mail_service", "permissions": ["read", "write"]},
            headers=headers,
        ).json()["data"]["id"]
        service_token = client.post(
            "/admin/v1/service-keys",
            json={
                "name": "worker",
                "applications": [{"application_id": app_id, "permissions": ["read"]}],
            },
            headers=headers,
        ).json()["data"]["token_value"]
        api_token = client.post(
            "/admin/v1/api-keys",
            json={"application_id": app_id, "name": "gateway"},
            headers=headers,
        ).json()["data"]["token_value"]
        return {"service": service_token, "api": api_token, "org_id": session["org_id"]}

    def _check(self, client, credentials, body, org_id=None, api_token=None):
        headers = {"Authorization": f"Bearer {api_token or credentials['api']}"}
        if org_id is not False:
            headers["x-org-id"] = org_id or credentials["org_id"]
        return client.post("/api/v1/access", json=body, headers=headers)

    def test_granted(self, client, credentials):
        response = self._check(
            client,
            credentials,
            {"token": credentials["service"], "application_name": "mail_service"},
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"valid": True, "permissions": ["read"]}

    def test_denials_share_one_shape(self, client, credentials):
        denied = {"valid": False, "permissions": []}
        bodies = [
            {"token": credentials["service"], "application_name": "billing"},
            {"token": "wrong", "application_name": "mail_service"},
            {"token": "", "application_name": "mail_service"},
            {},
        ]
        for body in bodies:
            response = self._check(client, credentials, body)
            assert response.status_code == 200
            assert response.json()["data"] == denied
        cross_tenant = self._check(
            client,
            credentials,
            {"token": credentials["service"], "application_name": "mail_service"},
            org_id="some-other-org",
        )
        assert cross_tenant.json()["data"] == denied

    def test_org_header_required(self, client, credentials):
        response = self._check(
            client,
            credentials,
            {"token": credentials["service"], "application_name": "mail_service"},
            org_id=False,
        )
        assert response.status_code == 400

    def test_bad_api_key_rejected(self, client, credentials):
        response = self._check(
            client,
            credentials,
            {"token": credentials["service"], "application_name": "mail_service"},
            api_token="not-a-key",
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_jwt_is_not_an_api_key(self, client, session, credentials):
        response = self._check(
            client,
            credentials,
            {"token": credentials["service"], "application_name": "mail_service"},
            api_token=session["token"],
        )
        assert response.status_code == 401


class TestPlumbing:
    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
        assert "oauth_states" in body["checks"]["caches"]

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        error = client.get("/admin/v1/me", headers={"X-Request-ID": "req-456"})
        assert error.json()["request_id"] == "req-456"
