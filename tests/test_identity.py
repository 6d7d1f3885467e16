import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from conftest import FlakyKV, MemoryKV
from stoicaf.errors import (
    EmailExists, ProviderError, StorageError, Unauthorized, ValidationFailed,
    WriteConflict,
)
from stoicaf.identity import (
    GoTrueIdentity, LocalIdentity, add_admin, is_admin,
)


def run(coro):
    return asyncio.run(coro)


class TestLocalIdentity:
    @pytest.fixture
    def idp(self):
        return LocalIdentity(secret="unit-secret", ttl_min=5)

    def test_sign_in_round_trip(self, idp):
        kv = MemoryKV()
        user = run(idp.create_user(kv, "Zeno@Example.com", "stoa-pass",
                                   "Zeno"))
        session = run(idp.sign_in(kv, "zeno@example.com", "stoa-pass"))
        assert session["expires_in"] == 300
        me = run(idp.verify_token(kv, session["access_token"]))
        assert me.id == user.id
        assert me.last_sign_in_at is not None

    def test_email_is_unique_ignoring_case(self, idp):
        kv = MemoryKV()
        run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        with pytest.raises(EmailExists):
            run(idp.create_user(kv, "A@EXAMPLE.COM", "secret2", "B"))

    def test_bad_input(self, idp):
        kv = MemoryKV()
        with pytest.raises(ValidationFailed):
            run(idp.create_user(kv, "not-an-email", "secret1", "A"))
        with pytest.raises(ValidationFailed):
            run(idp.create_user(kv, "a@example.com", "12345", "A"))

    def test_wrong_password(self, idp):
        kv = MemoryKV()
        run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        with pytest.raises(Unauthorized):
            run(idp.sign_in(kv, "a@example.com", "secret2"))
        with pytest.raises(Unauthorized):
            run(idp.sign_in(kv, "b@example.com", "secret1"))

    def test_expired_and_foreign_tokens(self, idp):
        kv = MemoryKV()
        user = run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        expired = jwt.encode({
            "sub": user.id, "type": "access",
            "exp": datetime.now(tz=timezone.utc) - timedelta(minutes=1),
        }, "unit-secret", algorithm="HS256")
        with pytest.raises(Unauthorized):
            run(idp.verify_token(kv, expired))
        foreign = jwt.encode({"sub": user.id, "type": "access"},
                             "other-secret", algorithm="HS256")
        with pytest.raises(Unauthorized):
            run(idp.verify_token(kv, foreign))

    def test_deleted_user_token_is_refused(self, idp):
        kv = MemoryKV()
        run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        token = run(idp.sign_in(kv, "a@example.com",
                                "secret1"))["access_token"]
        user = run(idp.verify_token(kv, token))
        run(idp.delete_user(kv, user.id))
        with pytest.raises(Unauthorized):
            run(idp.verify_token(kv, token))

    def test_email_change_moves_the_index(self, idp):
        kv = MemoryKV()
        user = run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        run(idp.create_user(kv, "taken@example.com", "secret1", "T"))
        with pytest.raises(EmailExists):
            run(idp.update_user(kv, user.id, email="taken@example.com"))
        run(idp.update_user(kv, user.id, email="b@example.com"))
        run(idp.sign_in(kv, "b@example.com", "secret1"))
        with pytest.raises(Unauthorized):
            run(idp.sign_in(kv, "a@example.com", "secret1"))

    def test_failed_user_write_releases_the_email(self, idp):
        kv = FlakyKV("auth_user:")
        with pytest.raises(StorageError):
            run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        assert run(kv.get_by_prefix("auth_email:")) == []
        user = run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        assert run(kv.get("auth_email:a@example.com")) == {"id": user.id}

    def test_failed_email_change_releases_the_new_email(self, idp):
        kv = FlakyKV("auth_user:", failures=0)
        user = run(idp.create_user(kv, "a@example.com", "secret1", "A"))
        kv.failures = 100
        with pytest.raises(WriteConflict):
            run(idp.update_user(kv, user.id, email="b@example.com"))
        assert run(kv.get("auth_email:b@example.com")) is None
        kv.failures = 0
        run(idp.sign_in(kv, "a@example.com", "secret1"))
        other = run(idp.create_user(kv, "b@example.com", "secret1", "B"))
        assert other.email == "b@example.com"

    def test_sign_in_ignores_surrounding_whitespace(self, idp):
        kv = MemoryKV()
        run(idp.create_user(kv, "  a@example.com ", "secret1", "A"))
        session = run(idp.sign_in(kv, " A@example.com  ", "secret1"))
        assert session["user"]["email"] == "a@example.com"


def test_admins_from_record():
    kv = MemoryKV()
    assert not run(is_admin(kv, "boss@example.com"))
    run(add_admin(kv, "Boss@Example.com"))
    run(add_admin(kv, "boss@example.com"))
    assert run(is_admin(kv, "BOSS@example.com"))
    assert run(kv.get("admin_emails")) == ["boss@example.com"]
    assert not run(is_admin(kv, None))


class FakeGoTrue:
    """Answers the handful of GoTrue endpoints the adapter calls."""

    USER = {
        "id": "u-1",
        "email": "a@example.com",
        "created_at": "2025-01-01T00:00:00Z",
        "user_metadata": {"name": "Chrysippus"},
    }

    def __init__(self):
        self.seen = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.seen.append((request.method, request.url.path,
                          request.headers.get("authorization")))
        path = request.url.path
        if path == "/token":
            body = request.read()
            if b"wrong" in body:
                return httpx.Response(400, json={
                    "error": "invalid_grant",
                    "error_description": "Invalid login credentials",
                })
            return httpx.Response(200, json={
                "access_token": "gotrue-token", "token_type": "bearer",
                "expires_in": 3600, "refresh_token": "r",
                "user": self.USER,
            })
        if path == "/user":
            if request.headers["authorization"] != "Bearer gotrue-token":
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self.USER)
        if path == "/admin/users" and request.method == "POST":
            if b"taken@example.com" in request.read():
                return httpx.Response(422, json={
                    "msg": "A user with this email address has already "
                           "been registered",
                })
            if b"weak@example.com" in request.read():
                return httpx.Response(422, json={
                    "msg": "Password should be at least 8 characters",
                })
            return httpx.Response(200, json=self.USER)
        if path == "/admin/users":
            return httpx.Response(200, json={"users": [self.USER]})
        if path.startswith("/admin/users/"):
            return httpx.Response(500, json={"msg": "boom"})
        return httpx.Response(404)


class TestGoTrueIdentity:
    @pytest.fixture
    def fake(self):
        return FakeGoTrue()

    @pytest.fixture
    def idp(self, fake):
        http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        return GoTrueIdentity(http, base_url="http://auth.test",
                              anon_key="anon", service_key="service")

    def test_create_uses_service_key(self, idp, fake):
        user = run(idp.create_user(None, "a@example.com", "secret1",
                                   "Chrysippus"))
        assert user.name == "Chrysippus"
        assert fake.seen[0] == ("POST", "/admin/users", "Bearer service")

    def test_create_existing_email(self, idp):
        with pytest.raises(EmailExists):
            run(idp.create_user(None, "taken@example.com", "secret1", "T"))

    def test_other_rejections_are_validation_errors(self, idp):
        with pytest.raises(ValidationFailed) as exc:
            run(idp.create_user(None, "weak@example.com", "secret1", "W"))
        assert exc.value.message == "Password should be at least 8 characters"

    def test_sign_in_and_verify(self, idp):
        session = run(idp.sign_in(None, "a@example.com", "secret1"))
        assert session["access_token"] == "gotrue-token"
        assert session["user"]["name"] == "Chrysippus"
        user = run(idp.verify_token(None, "gotrue-token"))
        assert user.id == "u-1"

    def test_bad_credentials_and_tokens(self, idp):
        with pytest.raises(Unauthorized):
            run(idp.sign_in(None, "a@example.com", "wrong"))
        with pytest.raises(Unauthorized):
            run(idp.verify_token(None, "expired"))

    def test_upstream_failure(self, idp):
        with pytest.raises(ProviderError):
            run(idp.update_user(None, "u-1", name="X"))

    def test_unreachable_service(self):
        def down(request):
            raise httpx.ConnectError("refused", request=request)
        http = httpx.AsyncClient(transport=httpx.MockTransport(down))
        idp = GoTrueIdentity(http, base_url="http://auth.test")
        with pytest.raises(ProviderError):
            run(idp.verify_token(None, "t"))

    def test_list_users(self, idp):
        users = run(idp.list_users(None))
        assert [u.email for u in users] == ["a@example.com"]
