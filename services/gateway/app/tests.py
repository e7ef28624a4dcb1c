"""Gateway tests. Upstreams are faked with httpx.MockTransport, so nothing
listens on a real port and every forwarded request can be inspected."""

import httpx
import pytest
from fastapi.testclient import TestClient

from services.gateway.app.config import GatewaySettings
from services.gateway.app.main import build_route_table, create_app
from services.gateway.app.proxy import RouteBinding, RouteTable
from shared.auth import DEACTIVATED, NOT_LOGGED_IN, USER_GONE
from shared.tokens import TokenCodec

SECRET  = "gateway-tests-signing-secret-0123456789"
USER_ID = "6f1c2d3e-0000-4000-8000-000000000001"


class FakeUpstreams:
    """users.test and sms.test answer; insights.test refuses connections.

    sms_timeout makes sms.test time out instead of answering.
    """

    def __init__(self):
        self.calls       = []
        self.codec       = TokenCodec(SECRET)
        self.users_down  = False
        self.known_users = {USER_ID}
        self.inactive    = set()
        self.sms_timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        host = request.url.host

        if host == "insights.test" or (host == "users.test" and self.users_down):
            raise httpx.ConnectError("connection refused", request=request)
        if host == "sms.test" and self.sms_timeout:
            raise httpx.ReadTimeout("read timed out", request=request)
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "success"})
        if host == "users.test" and request.url.path == "/v1/users/me":
            return self._me(request)
        return httpx.Response(
            201 if request.method == "POST" else 200,
            json={"host": host, "path": request.url.path, "body": request.content.decode()},
            headers={"X-Upstream": host},
        )

    def _me(self, request):
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        subject = self.codec.verify(token)
        if subject is None:
            return httpx.Response(401, json={"status": "fail"})
        if subject not in self.known_users:
            return httpx.Response(404, json={"status": "fail"})
        if subject in self.inactive:
            # the real service rejects inactive accounts before answering /me
            return httpx.Response(401, json={"status": "fail", "message": DEACTIVATED})
        user = {"id": subject, "email": "jane@test.com", "role": "user", "isActive": True}
        return httpx.Response(200, json={"status": "success", "data": {"user": user}})

    def last(self, host):
        return [c for c in self.calls if c.url.host == host][-1]


@pytest.fixture
def settings():
    return GatewaySettings(
        USER_SERVICE_URL="http://users.test",
        SMS_SERVICE_URL="http://sms.test",
        INSIGHT_SERVICE_URL="http://insights.test",
        JWT_SECRET=SECRET,
        ENVIRONMENT="test",
    )


@pytest.fixture
def upstreams():
    return FakeUpstreams()


@pytest.fixture
def client(settings, upstreams):
    with TestClient(create_app(settings, transport=httpx.MockTransport(upstreams))) as c:
        yield c


@pytest.fixture
def token(upstreams):
    return upstreams.codec.issue(USER_ID)


# ──────────────────────────────────────────
#  Route table
# ──────────────────────────────────────────

def test_longest_prefix_wins(settings):
    routes = build_route_table(settings)
    assert routes.resolve("/api/v1/sms/messages").service     == "sms-service"
    assert routes.resolve("/api/v1/insights").service         == "insight-service"
    assert routes.resolve("/api/v1/users/me").service         == "user-service"
    assert routes.resolve("/api/v2/anything") is None


def test_prefix_matches_on_segment_boundary():
    table = RouteTable([
        RouteBinding("/api/v1", "users", "http://u"),
        RouteBinding("/api/v1/sms", "sms", "http://s"),
    ])
    assert table.resolve("/api/v1/smsx").service == "users"
    assert table.resolve("/api/v1/sms").service  == "sms"


def test_rewrite_applies_first_matching_rule():
    binding = RouteBinding(
        "/api/v1/sms", "sms", "http://s",
        rewrite=((r"^/nope", "/x"), (r"^/api/v1/sms", "/api/v1"), (r"^/api", "")),
    )
    assert binding.rewrite_path("/api/v1/sms/parse") == "/api/v1/parse"
    assert RouteBinding("/api", "u", "http://u", rewrite=((r"^/api", ""),)).rewrite_path("/api") == "/"


# ──────────────────────────────────────────
#  Edge endpoints
# ──────────────────────────────────────────

def test_root_lists_services(client):
    body = client.get("/").json()
    assert body["status"] == "success"
    assert body["services"]["user-service"] == "http://users.test"


def test_unmatched_route_404_lists_services(client):
    resp = client.get("/nope", params={"x": "1"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["status"]     == "fail"
    assert body["statusCode"] == 404
    assert body["message"]    == "Can't find /nope?x=1 on this server!"
    assert set(body["availableServices"]) == {"user-service", "sms-service", "insight-service"}


def test_unmatched_api_prefix_is_404(client, upstreams):
    resp = client.get("/api/v2/users")
    assert resp.status_code == 404
    assert "availableServices" in resp.json()
    assert upstreams.calls == []


def test_legacy_users_endpoint_is_gone(client):
    resp = client.get("/users")
    assert resp.status_code == 410
    body = resp.json()
    assert body["status"]          == "deprecated"
    assert body["newEndpoint"]     == "/api/v1/users"
    assert body["deprecationDate"] == "2025-01-01"


def test_health_reports_unhealthy_upstream_without_failing(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["services"]["user-service"]["status"] == "healthy"
    assert body["services"]["sms-service"]["status"]  == "healthy"
    insight = body["services"]["insight-service"]
    assert insight["status"] == "unhealthy"
    assert "refused" in insight["error"]


# ──────────────────────────────────────────
#  Proxying
# ──────────────────────────────────────────

def test_user_routes_are_rewritten_and_relayed(client, upstreams):
    resp = client.post("/api/v1/auth/login?next=home", json={"email": "jane@test.com"})
    assert resp.status_code == 201
    assert resp.headers["x-upstream"] == "users.test"
    assert resp.headers["x-content-type-options"] == "nosniff"

    sent = upstreams.last("users.test")
    assert sent.method             == "POST"
    assert sent.url.path           == "/v1/auth/login"
    assert sent.url.query          == b"next=home"
    assert b"jane@test.com" in sent.content
    assert sent.headers["host"]    == "users.test"
    assert sent.headers["x-forwarded-for"] == "testclient"
    assert sent.headers["x-forwarded-host"] == "testserver"


def test_user_routes_do_not_authenticate_at_gateway(client, upstreams):
    # the fake user service echoes this path without checking tokens
    resp = client.get("/api/v1/users")
    assert resp.status_code == 200
    assert resp.json()["path"] == "/v1/users"
    assert len(upstreams.calls) == 1


def test_client_cannot_spoof_user_id(client, upstreams):
    client.get("/api/v1/auth/logout", headers={"X-User-Id": "admin"})
    assert "x-user-id" not in upstreams.last("users.test").headers


def test_encoded_path_is_forwarded_unchanged(client, upstreams):
    client.get("/api/v1/users/search%3Fq%3Dx%2Fy?page=2")
    sent = upstreams.last("users.test")
    assert sent.url.raw_path == b"/v1/users/search%3Fq%3Dx%2Fy?page=2"
    assert sent.url.query    == b"page=2"


def test_protected_route_without_token_is_401(client, upstreams):
    resp = client.get("/api/v1/sms/messages")
    assert resp.status_code == 401
    assert resp.json()["message"] == NOT_LOGGED_IN
    assert upstreams.calls == []


def test_protected_route_forwards_identity(client, upstreams, token):
    resp = client.get("/api/v1/sms/messages", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["path"] == "/api/v1/messages"

    lookup = upstreams.last("users.test")
    assert lookup.url.path == "/v1/users/me"
    assert upstreams.last("sms.test").headers["x-user-id"] == USER_ID


def test_protected_route_with_unknown_user_is_401(client, upstreams, token):
    upstreams.known_users.clear()
    resp = client.get("/api/v1/sms/messages", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == USER_GONE


def test_identity_lookup_failure_is_503(client, upstreams, token):
    upstreams.users_down = True
    resp = client.get("/api/v1/sms/messages", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 503
    assert resp.json()["message"] == "user-service is currently unavailable"


def test_unreachable_upstream_is_a_single_503(client, upstreams, token):
    resp = client.post(
        "/api/v1/insights/generate",
        json={"period": "month"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 503
    assert resp.json() == {
        "status":     "error",
        "message":    "insight-service is currently unavailable",
        "statusCode": 503,
        "errors":     ["SERVICE_UNAVAILABLE"],
    }
    # no retries
    assert len([c for c in upstreams.calls if c.url.host == "insights.test"]) == 1


def test_upstream_timeout_is_a_single_503(client, upstreams, token):
    upstreams.sms_timeout = True
    resp = client.get("/api/v1/sms/messages", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 503
    body = resp.json()
    assert body["message"] == "sms-service is currently unavailable"
    assert body["errors"]  == ["SERVICE_UNAVAILABLE"]
    assert len([c for c in upstreams.calls if c.url.host == "sms.test"]) == 1


def test_deactivated_account_keeps_its_message(client, upstreams, token):
    upstreams.inactive.add(USER_ID)
    resp = client.get("/api/v1/sms/messages", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == DEACTIVATED
    assert not [c for c in upstreams.calls if c.url.host == "sms.test"]
