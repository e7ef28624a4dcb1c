"""Integration tests for the users service.

TestClient wraps the ASGI app so no real server is needed. Each test gets
its own sqlite file under tmp_path and a cheap bcrypt cost.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.users.app.config import UsersSettings
from services.users.app.directory import UserDirectory
from services.users.app.main import create_app
from services.users.app.models import Base
from services.users.app.schemas import UserFilters
from shared.auth import DEACTIVATED, INVALID_TOKEN, NO_PERMISSION, NOT_LOGGED_IN, USER_GONE
from shared.errors import AppError, ErrorKind
from shared.tokens import TokenCodec

SECRET   = "users-tests-signing-secret-0123456789"
PASSWORD = "Secret123"


@pytest.fixture
def settings(tmp_path):
    return UsersSettings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'users.db'}",
        BCRYPT_ROUNDS=4,
        ENVIRONMENT="test",
        JWT_SECRET=SECRET,
        RATE_LIMIT_MAX_REQUESTS=10_000,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def register(client, email, password=PASSWORD, **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def token_for(client, email, password=PASSWORD):
    resp = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["token"]


@pytest.fixture
def admin_token(client):
    directory = client.app.state.directory
    client.portal.call(directory.create, {"email": "root@test.com", "password": PASSWORD, "role": "admin"})
    return token_for(client, "root@test.com")


# ──────────────────────────────────────────
#  Registration
# ──────────────────────────────────────────

def test_register_creates_user(client):
    resp = register(client, "alice@test.com", firstName="Alice", lastName="Liddell")
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "success"
    user = body["data"]["user"]
    assert user["email"]     == "alice@test.com"
    assert user["role"]      == "user"
    assert user["name"]      == "Alice Liddell"
    assert user["isActive"]  is True
    assert "password" not in user
    assert body["data"]["token"]


def test_register_cannot_self_promote(client):
    resp = register(client, "sneaky@test.com", role="admin")
    assert resp.status_code == 201
    assert resp.json()["data"]["user"]["role"] == "user"


def test_register_duplicate_email_returns_409(client):
    register(client, "bob@test.com")
    resp = register(client, "Bob@Test.com", firstName="Other")
    assert resp.status_code == 409
    assert resp.json()["status"] == "fail"


def test_register_duplicate_phone_returns_409(client):
    register(client, "p1@test.com", phone="+15550001111")
    resp = register(client, "p2@test.com", phone="+1 555-000-1111")
    assert resp.status_code == 409
    assert "phone" in resp.json()["message"]


@pytest.mark.parametrize("payload", [
    {"email": "weak@test.com", "password": "short"},
    {"email": "weak@test.com", "password": "alllowercase1"},
    {"email": "not-an-email", "password": PASSWORD},
    {"email": "weak@test.com", "password": PASSWORD, "phone": "abc"},
])
def test_register_validation_returns_400(client, payload):
    resp = client.post("/v1/auth/register", json=payload)
    assert resp.status_code == 400
    assert resp.json()["statusCode"] == 400


# ──────────────────────────────────────────
#  Login
# ──────────────────────────────────────────

def test_login_returns_token_and_stamps_last_login(client):
    register(client, "carol@test.com")
    resp = client.post("/v1/auth/login", json={"email": "carol@test.com", "password": PASSWORD})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["token"]
    assert data["user"]["lastLoginAt"] is not None
    assert "password" not in data["user"]


def test_login_wrong_password_and_unknown_email_look_the_same(client):
    register(client, "dave@test.com")
    wrong   = client.post("/v1/auth/login", json={"email": "dave@test.com", "password": "Wrong1234"})
    unknown = client.post("/v1/auth/login", json={"email": "ghost@test.com", "password": "Wrong1234"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["message"] == unknown.json()["message"] == "Invalid credentials"


def test_login_deactivated_account_returns_401(client, admin_token):
    user_id = register(client, "sleepy@test.com").json()["data"]["user"]["id"]
    client.patch(f"/v1/users/{user_id}", json={"isActive": False}, headers=bearer(admin_token))
    resp = client.post("/v1/auth/login", json={"email": "sleepy@test.com", "password": PASSWORD})
    assert resp.status_code == 401


def test_logout_works_without_token(client):
    resp = client.post("/v1/auth/logout")
    assert resp.status_code == 200
    assert resp.json()["status"] == "success"


# ──────────────────────────────────────────
#  Auth middleware
# ──────────────────────────────────────────

def test_me_returns_user_for_valid_token(client):
    token = register(client, "eve@test.com").json()["data"]["token"]
    resp = client.get("/v1/users/me", headers=bearer(token))
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["email"] == "eve@test.com"


def test_me_without_header_returns_401(client):
    resp = client.get("/v1/users/me")
    assert resp.status_code == 401
    assert resp.json()["message"] == NOT_LOGGED_IN


def test_me_with_wrong_scheme_returns_401(client):
    token = register(client, "basic@test.com").json()["data"]["token"]
    resp = client.get("/v1/users/me", headers={"Authorization": f"Token {token}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == NOT_LOGGED_IN


def test_me_with_garbage_token_returns_401(client):
    resp = client.get("/v1/users/me", headers=bearer("not-a-real-token"))
    assert resp.status_code == 401
    assert resp.json()["message"] == INVALID_TOKEN


def test_me_with_expired_token_returns_401(client):
    user_id = register(client, "old@test.com").json()["data"]["user"]["id"]
    expired = TokenCodec(SECRET, expires_minutes=-5).issue(user_id)
    resp = client.get("/v1/users/me", headers=bearer(expired))
    assert resp.status_code == 401
    assert resp.json()["message"] == INVALID_TOKEN


def test_token_for_deleted_user_returns_401(client):
    token = register(client, "gone@test.com").json()["data"]["token"]
    assert client.delete("/v1/users/me", headers=bearer(token)).status_code == 204
    resp = client.get("/v1/users/me", headers=bearer(token))
    assert resp.status_code == 401
    assert resp.json()["message"] == USER_GONE


def test_token_for_deactivated_user_returns_401(client, admin_token):
    data = register(client, "paused@test.com").json()["data"]
    client.patch(f"/v1/users/{data['user']['id']}", json={"isActive": False}, headers=bearer(admin_token))
    resp = client.get("/v1/users/me", headers=bearer(data["token"]))
    assert resp.status_code == 401
    assert resp.json()["message"] == DEACTIVATED


# ──────────────────────────────────────────
#  Listing (admin)
# ──────────────────────────────────────────

def test_list_requires_admin(client):
    token = register(client, "pleb@test.com").json()["data"]["token"]
    resp = client.get("/v1/users", headers=bearer(token))
    assert resp.status_code == 403
    assert resp.json()["message"] == NO_PERMISSION


def test_list_second_page_of_twelve(client, admin_token):
    for i in range(11):
        assert register(client, f"user{i:02d}@test.com").status_code == 201

    resp = client.get("/v1/users", params={"page": 2, "limit": 5}, headers=bearer(admin_token))
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["data"]["users"]) == 5
    assert body["pagination"] == {
        "total": 12, "page": 2, "limit": 5, "totalPages": 3, "hasNext": True, "hasPrev": True,
    }


def test_list_excludes_soft_deleted_users(client, admin_token):
    token = register(client, "leaver@test.com").json()["data"]["token"]
    register(client, "stayer@test.com")
    client.delete("/v1/users/me", headers=bearer(token))
    emails = [u["email"] for u in client.get("/v1/users", headers=bearer(admin_token)).json()["data"]["users"]]
    assert "leaver@test.com" not in emails
    assert "stayer@test.com" in emails


def test_list_search_is_case_insensitive(client, admin_token):
    register(client, "zed@test.com", firstName="Zebulon")
    register(client, "amy@test.com", firstName="Amy")
    resp = client.get("/v1/users", params={"search": "zEbU"}, headers=bearer(admin_token))
    users = resp.json()["data"]["users"]
    assert [u["email"] for u in users] == ["zed@test.com"]


def test_list_rejects_limit_over_100(client, admin_token):
    resp = client.get("/v1/users", params={"limit": 500}, headers=bearer(admin_token))
    assert resp.status_code == 400


def test_stats_counts_users(client, admin_token):
    register(client, "s1@test.com")
    resp = client.get("/v1/users/stats", headers=bearer(admin_token))
    assert resp.status_code == 200
    stats = resp.json()["data"]["stats"]
    assert stats["total"] == 2
    assert stats["byRole"]["admin"] == 1


def test_admin_can_create_moderator(client, admin_token):
    resp = client.post(
        "/v1/users",
        json={"email": "mod@test.com", "password": PASSWORD, "role": "moderator"},
        headers=bearer(admin_token),
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["user"]["role"] == "moderator"


# ──────────────────────────────────────────
#  Updates and deletes
# ──────────────────────────────────────────

def test_update_me_recomputes_name(client):
    token = register(client, "fran@test.com", firstName="Fran").json()["data"]["token"]
    resp = client.patch("/v1/users/me", json={"lastName": "Drescher", "role": "admin"}, headers=bearer(token))
    assert resp.status_code == 200
    user = resp.json()["data"]["user"]
    assert user["name"] == "Fran Drescher"
    assert user["role"] == "user"


def test_update_me_rejects_password(client):
    token = register(client, "pw@test.com").json()["data"]["token"]
    resp = client.patch("/v1/users/me", json={"password": "NewSecret1"}, headers=bearer(token))
    assert resp.status_code == 400
    assert "change-password" in resp.json()["message"]


def test_user_cannot_edit_someone_else(client):
    victim = register(client, "victim@test.com").json()["data"]["user"]["id"]
    token  = register(client, "mallory@test.com").json()["data"]["token"]
    resp = client.patch(f"/v1/users/{victim}", json={"firstName": "Pwned"}, headers=bearer(token))
    assert resp.status_code == 403


def test_user_cannot_change_own_role(client):
    data = register(client, "climber@test.com").json()["data"]
    resp = client.patch(f"/v1/users/{data['user']['id']}", json={"role": "admin"}, headers=bearer(data["token"]))
    assert resp.status_code == 403


def test_admin_update_rechecks_email_uniqueness(client, admin_token):
    register(client, "taken@test.com")
    other = register(client, "free@test.com").json()["data"]["user"]["id"]
    resp = client.patch(f"/v1/users/{other}", json={"email": "TAKEN@test.com"}, headers=bearer(admin_token))
    assert resp.status_code == 409


@pytest.mark.parametrize("field", ["role", "isActive", "isVerified", "email"])
def test_admin_update_rejects_null_for_required_fields(client, admin_token, field):
    user_id = register(client, "nulls@test.com").json()["data"]["user"]["id"]
    resp = client.patch(f"/v1/users/{user_id}", json={field: None}, headers=bearer(admin_token))
    assert resp.status_code == 400
    assert f"{field} cannot be null" in resp.json()["message"]

    user = client.get(f"/v1/users/{user_id}", headers=bearer(admin_token)).json()["data"]["user"]
    assert user["role"] == "user"
    assert user["isActive"] is True


def test_get_user_by_malformed_id_returns_400(client, admin_token):
    resp = client.get("/v1/users/not-a-uuid", headers=bearer(admin_token))
    assert resp.status_code == 400


def test_soft_deleted_user_is_absent(client, admin_token):
    data = register(client, "temp@test.com").json()["data"]
    user_id = data["user"]["id"]
    assert client.delete(f"/v1/users/{user_id}", headers=bearer(admin_token)).status_code == 204
    assert client.get(f"/v1/users/{user_id}", headers=bearer(admin_token)).status_code == 404
    # deleting again: the directory treats the user as gone
    assert client.delete(f"/v1/users/{user_id}", headers=bearer(admin_token)).status_code == 404


def test_email_reusable_after_soft_delete(client):
    token = register(client, "again@test.com").json()["data"]["token"]
    client.delete("/v1/users/me", headers=bearer(token))
    assert register(client, "again@test.com").status_code == 201


def test_change_password_requires_current_password(client):
    data = register(client, "rotate@test.com").json()["data"]
    url = f"/v1/users/{data['user']['id']}/change-password"
    wrong = client.patch(url, json={
        "currentPassword": "Nope12345", "newPassword": "Rotated99", "confirmPassword": "Rotated99",
    }, headers=bearer(data["token"]))
    assert wrong.status_code == 401

    ok = client.patch(url, json={
        "currentPassword": PASSWORD, "newPassword": "Rotated99", "confirmPassword": "Rotated99",
    }, headers=bearer(data["token"]))
    assert ok.status_code == 200
    assert ok.json()["data"]["token"]
    assert token_for(client, "rotate@test.com", "Rotated99")


def test_change_password_confirmation_mismatch(client):
    data = register(client, "typo@test.com").json()["data"]
    resp = client.patch(f"/v1/users/{data['user']['id']}/change-password", json={
        "currentPassword": PASSWORD, "newPassword": "Rotated99", "confirmPassword": "Rotated98",
    }, headers=bearer(data["token"]))
    assert resp.status_code == 400


# ──────────────────────────────────────────
#  Service surface
# ──────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["database"]["status"] == "healthy"
    assert "uptime" in body and "memoryUsage" in body


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["message"] == "user-service is running!"


def test_unknown_route_returns_404(client):
    resp = client.get("/definitely-not-a-route")
    assert resp.status_code == 404
    assert "/definitely-not-a-route" in resp.json()["message"]


def test_security_headers_present(client):
    resp = client.get("/")
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"


def test_rate_limit(settings):
    settings.RATE_LIMIT_MAX_REQUESTS = 2
    with TestClient(create_app(settings)) as c:
        assert c.post("/v1/auth/logout").status_code == 200
        assert c.post("/v1/auth/logout").status_code == 200
        resp = c.post("/v1/auth/logout")
        assert resp.status_code == 429
        assert resp.headers["ratelimit-remaining"] == "0"
        # health is outside the limited prefix
        assert c.get("/health").status_code == 200


def test_rate_limit_counts_each_forwarded_client(settings):
    # behind the gateway every request shares the gateway's socket address
    settings.RATE_LIMIT_MAX_REQUESTS = 2
    with TestClient(create_app(settings)) as c:
        statuses = [
            c.post("/v1/auth/logout", headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
            for i in range(3)
        ]
        assert statuses == [200, 200, 200]

        same = [c.post("/v1/auth/logout", headers={"X-Forwarded-For": "203.0.113.9"}) for _ in range(3)]
        assert [r.status_code for r in same] == [200, 200, 429]


# ──────────────────────────────────────────
#  Directory, called directly
# ──────────────────────────────────────────

@pytest.fixture
async def directory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dir.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield UserDirectory(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), bcrypt_rounds=4)
    await engine.dispose()


@pytest.mark.asyncio
async def test_directory_hides_password_unless_asked(directory):
    user = await directory.create({"email": " Hash@Test.com ", "password": PASSWORD})
    assert user.email == "hash@test.com"
    assert user.password is None
    with_hash = await directory.find_by_email("HASH@test.com", include_password=True)
    assert with_hash.password and with_hash.password != PASSWORD


@pytest.mark.asyncio
async def test_directory_soft_delete_keeps_row(directory):
    user = await directory.create({"email": "ghost@test.com"})
    deleted = await directory.soft_delete(user.id)
    assert deleted.deleted_at is not None
    assert deleted.is_active is False
    assert await directory.find_by_id(user.id) is None
    assert (await directory.find_by_id(user.id, include_deleted=True)).id == user.id
    with pytest.raises(AppError) as exc:
        await directory.soft_delete(user.id)
    assert exc.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_directory_update_missing_user_is_not_found(directory):
    with pytest.raises(AppError) as exc:
        await directory.update("00000000-0000-0000-0000-000000000000", {"first_name": "X"})
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_directory_update_ignores_null_for_required_columns(directory):
    user = await directory.create({"email": "keep@test.com", "role": "moderator"})
    updated = await directory.update(user.id, {"role": None, "is_active": None, "email": None, "first_name": "Kim"})
    assert updated.role == "moderator"
    assert updated.is_active is True
    assert updated.email == "keep@test.com"
    assert updated.name == "Kim"


@pytest.mark.asyncio
async def test_directory_list_sorting_and_filters(directory):
    for email, verified in [("b@test.com", True), ("a@test.com", False), ("c@test.com", True)]:
        await directory.create({"email": email, "is_verified": verified})
    page = await directory.list(UserFilters(sort_by="email", sort_order="asc", is_verified=True))
    assert [u.email for u in page.items] == ["b@test.com", "c@test.com"]
    assert page.pagination.total == 2
    assert page.pagination.has_next is False
