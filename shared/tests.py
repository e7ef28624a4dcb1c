import logging
import signal
from types import SimpleNamespace

import httpx
import jwt
import pytest
import uvicorn
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel

from shared.auth import (
    DEACTIVATED,
    INVALID_TOKEN,
    NOT_LOGGED_IN,
    USER_GONE,
    Authenticator,
    bearer_token,
    require_role,
)
from shared.config import ServiceSettings
from shared.errors import STATUS_CODES, AppError, ErrorKind, install_error_handlers
from shared.health import check_service_health, memory_usage, process_health
from shared.middleware import RateLimitMiddleware, client_address, install_pipeline
from shared.shutdown import GracefulServer
from shared.tokens import TokenCodec

SECRET = "shared-tests-signing-secret-0123456789"


# ──────────────────────────────────────────
#  Token codec
# ──────────────────────────────────────────

def test_token_round_trip():
    codec = TokenCodec(SECRET)
    assert codec.verify(codec.issue("user-1")) == "user-1"


def test_expired_token_is_rejected():
    codec = TokenCodec(SECRET, expires_minutes=-1)
    assert codec.verify(codec.issue("user-1")) is None


def test_token_signed_with_other_secret_is_rejected():
    token = TokenCodec("another-signing-secret-0123456789").issue("user-1")
    assert TokenCodec(SECRET).verify(token) is None


def test_token_without_subject_is_rejected():
    token = jwt.encode({"exp": 4102444800}, SECRET, algorithm="HS256")
    assert TokenCodec(SECRET).verify(token) is None


def test_garbage_token_is_rejected():
    assert TokenCodec(SECRET).verify("abc.def.ghi") is None


# ──────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────

def test_every_error_kind_has_a_status_code():
    assert set(STATUS_CODES) == set(ErrorKind)


def test_app_error_envelope():
    err = AppError(ErrorKind.CONFLICT, "taken")
    assert err.to_dict() == {"status": "fail", "message": "taken", "statusCode": 409}
    assert err.is_operational

    upstream = AppError(ErrorKind.UPSTREAM_UNAVAILABLE, "down", errors=["SERVICE_UNAVAILABLE"])
    assert upstream.status == "error"
    assert upstream.to_dict()["errors"] == ["SERVICE_UNAVAILABLE"]
    assert not AppError(ErrorKind.INTERNAL, "bug").is_operational


def _failing_app(environment):
    app = FastAPI()
    install_error_handlers(app, ServiceSettings(ENVIRONMENT=environment))

    class Body(BaseModel):
        amount: int

    @app.get("/boom")
    def boom():
        raise RuntimeError("database exploded")

    @app.post("/validate")
    def validate(body: Body):
        return body

    @app.get("/gone")
    def gone():
        raise AppError(ErrorKind.GONE, "moved")

    return app


def test_unexpected_error_is_generic_in_production():
    client = TestClient(_failing_app("production"), raise_server_exceptions=False)
    resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "message": "Something went wrong!", "statusCode": 500}


def test_unexpected_error_shows_detail_in_development():
    client = TestClient(_failing_app("development"), raise_server_exceptions=False)
    body = client.get("/boom").json()
    assert body["message"] == "database exploded"
    assert any("RuntimeError" in line for line in body["stack"])


def test_validation_error_is_400():
    client = TestClient(_failing_app("test"))
    resp = client.post("/validate", json={"amount": "lots"})
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Invalid input data.")


def test_app_error_is_rendered_by_kind():
    resp = TestClient(_failing_app("test")).get("/gone")
    assert resp.status_code == 410
    assert resp.json()["message"] == "moved"


# ──────────────────────────────────────────
#  Auth
# ──────────────────────────────────────────

@pytest.mark.parametrize("header, expected", [
    (None, None),
    ("", None),
    ("Bearer", None),
    ("Bearer    ", None),
    ("Basic abc", None),
    ("Bearer abc", "abc"),
])
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


@pytest.fixture
def authenticator():
    people = {
        "u1": SimpleNamespace(id="u1", role="user", is_active=True),
        "u2": SimpleNamespace(id="u2", role="admin", is_active=False),
    }

    async def resolve(subject_id, _token):
        return people.get(subject_id)

    return Authenticator(TokenCodec(SECRET), resolve)


@pytest.mark.asyncio
@pytest.mark.parametrize("subject, message", [
    ("u2", DEACTIVATED),
    ("nobody", USER_GONE),
])
async def test_authenticate_rejects_unusable_identities(authenticator, subject, message):
    token = authenticator.codec.issue(subject)
    with pytest.raises(AppError) as exc:
        await authenticator.authenticate(f"Bearer {token}")
    assert exc.value.status_code == 401
    assert exc.value.message == message


@pytest.mark.asyncio
async def test_authenticate_messages_for_bad_headers(authenticator):
    with pytest.raises(AppError) as missing:
        await authenticator.authenticate(None)
    assert missing.value.message == NOT_LOGGED_IN
    with pytest.raises(AppError) as invalid:
        await authenticator.authenticate("Bearer nonsense")
    assert invalid.value.message == INVALID_TOKEN


@pytest.mark.asyncio
async def test_optional_authentication_never_fails(authenticator):
    assert await authenticator.authenticate_optional(None) is None
    assert await authenticator.authenticate_optional("Bearer nonsense") is None
    identity = await authenticator.authenticate_optional(f"Bearer {authenticator.codec.issue('u1')}")
    assert identity.id == "u1"


def test_require_role():
    require_role(SimpleNamespace(id="a", role="admin"), ("admin",))
    with pytest.raises(AppError) as exc:
        require_role(SimpleNamespace(id="b", role="user"), ("admin", "moderator"))
    assert exc.value.kind is ErrorKind.FORBIDDEN


# ──────────────────────────────────────────
#  Middleware
# ──────────────────────────────────────────

def _piped_app(**limits):
    settings = ServiceSettings(ENVIRONMENT="test", CORS_ORIGIN="http://localhost:3000")
    app = FastAPI()
    extra = ((RateLimitMiddleware, limits),) if limits else ()
    install_pipeline(app, settings, extra=extra)
    install_error_handlers(app, settings)

    @app.get("/ping")
    def ping():
        return {"ok": True}

    @app.get("/boom")
    def boom():
        raise RuntimeError("database exploded")

    return app


def test_request_logger_writes_one_line(caplog):
    client = TestClient(_piped_app())
    with caplog.at_level(logging.INFO, logger="shared.middleware"):
        client.get("/ping", headers={"User-Agent": "pytest"})
    lines = [r for r in caplog.records if r.getMessage().startswith("[request]")]
    assert len(lines) == 1
    assert lines[0].status_code == 200
    assert lines[0].path == "/ping"


def test_security_headers_on_errors_too():
    resp = TestClient(_piped_app()).get("/missing")
    assert resp.status_code == 404
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["referrer-policy"] == "no-referrer"


def test_rate_limit_headers_and_429():
    client = TestClient(_piped_app(window_seconds=60, max_requests=2))
    first = client.get("/ping")
    assert first.headers["ratelimit-limit"] == "2"
    assert first.headers["ratelimit-remaining"] == "1"
    client.get("/ping")
    blocked = client.get("/ping")
    assert blocked.status_code == 429
    assert blocked.json()["message"] == RateLimitMiddleware.MESSAGE
    assert int(blocked.headers["retry-after"]) <= 60


def test_unexpected_error_keeps_security_and_cors_headers():
    client = TestClient(_piped_app())
    resp = client.get("/boom", headers={"Origin": "http://localhost:3000"})
    assert resp.status_code == 500
    assert resp.json()["message"] == "Something went wrong!"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"


@pytest.mark.parametrize("hops, expected", [
    (0, "10.0.0.9"),
    (1, "10.0.0.2"),
    (2, "198.51.100.7"),
    (5, "198.51.100.7"),
])
def test_client_address_trusts_configured_hops(hops, expected):
    request = Request({
        "type":    "http",
        "headers": [(b"x-forwarded-for", b"198.51.100.7, 10.0.0.2")],
        "client":  ("10.0.0.9", 5000),
    })
    assert client_address(request, hops) == expected


def test_client_address_without_forwarded_header_uses_socket():
    request = Request({"type": "http", "headers": [], "client": ("10.0.0.9", 5000)})
    assert client_address(request, 1) == "10.0.0.9"


def test_rate_limit_prunes_expired_windows():
    limiter = RateLimitMiddleware(FastAPI(), window_seconds=10, max_requests=1)
    limiter._windows    = {"stale": (0.0, 3), "fresh": (95.0, 1)}
    limiter._last_prune = 0.0
    limiter._prune(100.0)
    assert set(limiter._windows) == {"fresh"}


# ──────────────────────────────────────────
#  Health
# ──────────────────────────────────────────

def test_process_health_shape():
    body = process_health("svc", "ok")
    assert body["status"] == "success"
    assert body["service"] == "svc"
    assert body["uptime"] >= 0
    assert "maxRssBytes" in body["memoryUsage"]


def test_memory_usage_without_resource_module(monkeypatch):
    monkeypatch.setattr("shared.health.resource", None)
    assert memory_usage() == {"maxRssBytes": None}


@pytest.mark.asyncio
async def test_service_health_check_never_raises():
    def handler(request):
        if request.url.host == "down.test":
            raise httpx.ConnectTimeout("timed out", request=request)
        if request.url.host == "sick.test":
            return httpx.Response(500)
        return httpx.Response(200, json={"status": "success"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok   = await check_service_health(client, "ok", "http://ok.test/", 1.0)
        down = await check_service_health(client, "down", "http://down.test", 1.0)
        sick = await check_service_health(client, "sick", "http://sick.test", 1.0)

    assert ok["status"] == "healthy" and "error" not in ok
    assert down["status"] == "unhealthy" and down["error"]
    assert sick["status"] == "unhealthy"
    assert sick["error"] == "HTTP 500"


# ──────────────────────────────────────────
#  Shutdown
# ──────────────────────────────────────────

def test_repeated_signals_do_not_force_exit():
    server = GracefulServer(uvicorn.Config(FastAPI()))
    server.handle_exit(signal.SIGTERM, None)
    server.handle_exit(signal.SIGINT, None)
    server.handle_exit(signal.SIGINT, None)
    assert server.should_exit is True
    assert server.force_exit is False
