"""Identity providers: who is calling, and account lifecycle.

``LocalIdentity`` keeps users in the key-value store and issues its own
HS256 access tokens. ``GoTrueIdentity`` defers to a hosted auth service
(the Supabase/GoTrue REST API), using the anon key for end-user calls and
the service key for the admin API.
"""
from __future__ import annotations
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import jwt
from passlib.context import CryptContext

from .errors import (
    EmailExists, NotFound, ProviderError, Unauthorized, ValidationFailed,
)
from .helpers import iso_now, is_valid_email
from .model.keys import (
    ADMIN_EMAILS, AUTH_USER_PREFIX, k_auth_email, k_auth_user,
)
from .model.kv import KVStore
from .model.records import AuthUser

log = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
ACCESS_TTL_MIN = int(os.getenv("ACCESS_TTL_MIN", "60"))

GOTRUE_URL = os.getenv("GOTRUE_URL", "http://localhost:9999")
GOTRUE_ANON_KEY = os.getenv("GOTRUE_ANON_KEY", "")
GOTRUE_SERVICE_KEY = os.getenv("GOTRUE_SERVICE_KEY", "")

MIN_PASSWORD_LEN = 6

# configured admins, in addition to the dynamic admin_emails record
STATIC_ADMINS = {
    e.strip().lower()
    for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()
}

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at,
        }


def check_password_rules(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LEN:
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LEN} characters")
    return password


def check_email(email: Optional[str]) -> str:
    if not is_valid_email(email):
        raise ValidationFailed("Please enter a valid email address")
    return email.strip()


class IdentityProvider(ABC):
    name: str

    @abstractmethod
    async def create_user(self, kv: KVStore, email: str, password: str,
                          name: Optional[str]) -> User: ...

    @abstractmethod
    async def delete_user(self, kv: KVStore, user_id: str) -> None: ...

    # {access_token, token_type, expires_in, user}
    @abstractmethod
    async def sign_in(self, kv: KVStore, email: str,
                      password: str) -> Dict[str, Any]: ...

    # raises Unauthorized
    @abstractmethod
    async def verify_token(self, kv: KVStore, token: str) -> User: ...

    @abstractmethod
    async def update_user(self, kv: KVStore, user_id: str, *,
                          email: Optional[str] = None,
                          password: Optional[str] = None,
                          name: Optional[str] = None) -> User: ...

    @abstractmethod
    async def list_users(self, kv: KVStore) -> List[User]: ...

    async def check_password(self, kv: KVStore, user: User,
                             password: str) -> bool:
        try:
            await self.sign_in(kv, user.email, password)
        except Unauthorized:
            return False
        return True


# ----------------------------
# Admins
# ----------------------------
async def admin_emails(kv: KVStore) -> List[str]:
    value = await kv.get(ADMIN_EMAILS)
    return [e for e in value if isinstance(e, str)] if value else []


async def is_admin(kv: KVStore, email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.lower()
    return email in STATIC_ADMINS or email in await admin_emails(kv)


async def add_admin(kv: KVStore, email: str) -> List[str]:
    email = check_email(email).lower()

    def add(current):
        emails = list(current or [])
        if email not in emails:
            emails.append(email)
        return emails

    _, new = await kv.update(ADMIN_EMAILS, add, default=list)
    log.info("added admin %s", email)
    return new


# ----------------------------
# Local identity
# ----------------------------
def _user(rec: AuthUser) -> User:
    return User(id=rec.id, email=rec.email, name=rec.name,
                created_at=rec.created_at,
                last_sign_in_at=rec.last_sign_in_at)


class LocalIdentity(IdentityProvider):
    name = "local"

    def __init__(self, secret: str = None, ttl_min: int = None) -> None:
        self.secret = secret or JWT_SECRET
        self.ttl_min = ttl_min or ACCESS_TTL_MIN

    def issue_token(self, user: User) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "sub": user.id,
            "email": user.email,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(minutes=self.ttl_min),
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALG)

    async def _get(self, kv: KVStore, user_id: str) -> AuthUser:
        value = await kv.get(k_auth_user(user_id))
        if value is None:
            raise NotFound("User not found")
        return AuthUser.model_validate(value)

    async def _by_email(self, kv: KVStore,
                        email: str) -> Optional[AuthUser]:
        ref = await kv.get(k_auth_email(email))
        if not ref:
            return None
        value = await kv.get(k_auth_user(ref["id"]))
        return AuthUser.model_validate(value) if value else None

    async def create_user(self, kv, email, password, name) -> User:
        email = check_email(email)
        check_password_rules(password)
        rec = AuthUser(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=pwd_context.hash(password),
            created_at=iso_now(),
        )
        # the email index doubles as the uniqueness guard
        if not await kv.set_if_absent(k_auth_email(email), {"id": rec.id}):
            raise EmailExists()
        try:
            await kv.set(k_auth_user(rec.id), rec.dump())
        except Exception:
            await kv.delete(k_auth_email(email))
            raise
        log.info("created local user %s", rec.id)
        return _user(rec)

    async def delete_user(self, kv, user_id) -> None:
        value = await kv.get(k_auth_user(user_id))
        if value is None:
            return
        rec = AuthUser.model_validate(value)
        await kv.delete(k_auth_user(user_id))
        await kv.delete(k_auth_email(rec.email))
        log.info("deleted local user %s", user_id)

    async def sign_in(self, kv, email, password) -> Dict[str, Any]:
        rec = await self._by_email(kv, (email or "").strip())
        if rec is None or not pwd_context.verify(password or "",
                                                 rec.password_hash):
            raise Unauthorized("Invalid login credentials")

        def touch(current):
            current["last_sign_in_at"] = iso_now()
            return current

        _, new = await kv.update(k_auth_user(rec.id), touch)
        user = _user(AuthUser.model_validate(new))
        return {
            "access_token": self.issue_token(user),
            "token_type": "bearer",
            "expires_in": self.ttl_min * 60,
            "user": user.public(),
        }

    async def verify_token(self, kv, token) -> User:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[JWT_ALG])
        except jwt.PyJWTError:
            raise Unauthorized("Invalid or expired token")
        if claims.get("type") != "access" or not claims.get("sub"):
            raise Unauthorized("Invalid or expired token")
        try:
            return _user(await self._get(kv, claims["sub"]))
        except NotFound:
            raise Unauthorized("User no longer exists")

    async def check_password(self, kv, user, password) -> bool:
        rec = await self._get(kv, user.id)
        return pwd_context.verify(password or "", rec.password_hash)

    async def update_user(self, kv, user_id, *, email=None, password=None,
                          name=None) -> User:
        rec = await self._get(kv, user_id)
        old_email = rec.email
        if email is not None and email.lower() != old_email.lower():
            email = check_email(email)
            if not await kv.set_if_absent(k_auth_email(email),
                                          {"id": user_id}):
                raise EmailExists(
                    "Another account already uses this email address")
        else:
            email = None
        if password is not None:
            check_password_rules(password)
        new_hash = pwd_context.hash(password) if password else None

        def change(current):
            if email is not None:
                current["email"] = email
            if name is not None:
                current["name"] = name
            if new_hash is not None:
                current["password_hash"] = new_hash
            current["updated_at"] = iso_now()
            return current

        try:
            _, new = await kv.update(k_auth_user(user_id), change)
        except Exception:
            if email is not None:
                await kv.delete(k_auth_email(email))
            raise
        if email is not None:
            await kv.delete(k_auth_email(old_email))
        return _user(AuthUser.model_validate(new))

    async def list_users(self, kv) -> List[User]:
        rows = await kv.get_by_prefix(AUTH_USER_PREFIX)
        return [_user(AuthUser.model_validate(v)) for _, v in rows]


# ----------------------------
# Hosted identity (GoTrue)
# ----------------------------
def _gotrue_user(data: Dict[str, Any]) -> User:
    meta = data.get("user_metadata") or {}
    return User(
        id=data["id"],
        email=data.get("email") or "",
        name=meta.get("name"),
        created_at=data.get("created_at"),
        last_sign_in_at=data.get("last_sign_in_at"),
        metadata=meta,
    )


class GoTrueIdentity(IdentityProvider):
    name = "gotrue"

    def __init__(self, http: httpx.AsyncClient, base_url: str = None,
                 anon_key: str = None, service_key: str = None) -> None:
        self.http = http
        self.base_url = (base_url or GOTRUE_URL).rstrip("/")
        self.anon_key = anon_key or GOTRUE_ANON_KEY
        self.service_key = service_key or GOTRUE_SERVICE_KEY

    def _anon(self, token: str = None) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
        }

    def _service(self) -> Dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
        }

    async def _call(self, method: str, path: str, headers: Dict[str, str],
                    **kw) -> httpx.Response:
        try:
            return await self.http.request(
                method, f"{self.base_url}{path}", headers=headers, **kw)
        except httpx.HTTPError as e:
            log.error("identity service %s %s failed: %s", method, path, e)
            raise ProviderError("Identity service unavailable")

    @staticmethod
    def _message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        return (body.get("msg") or body.get("message")
                or body.get("error_description") or body.get("error")
                or resp.text)

    def _raise_for(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        msg = self._message(resp)
        if "already been registered" in msg:
            raise EmailExists()
        if resp.status_code in (400, 422):
            raise ValidationFailed(msg or None)
        if resp.status_code in (401, 403):
            raise Unauthorized(msg or None)
        if resp.status_code == 404:
            raise NotFound("User not found")
        log.error("identity service error %d: %s", resp.status_code, msg)
        raise ProviderError("Identity service error")

    async def create_user(self, kv, email, password, name) -> User:
        email = check_email(email)
        check_password_rules(password)
        resp = await self._call("POST", "/admin/users", self._service(),
                                json={
                                    "email": email,
                                    "password": password,
                                    "user_metadata": {"name": name},
                                    "email_confirm": True,
                                })
        self._raise_for(resp)
        return _gotrue_user(resp.json())

    async def delete_user(self, kv, user_id) -> None:
        resp = await self._call("DELETE", f"/admin/users/{user_id}",
                                self._service())
        if resp.status_code != 404:
            self._raise_for(resp)

    async def sign_in(self, kv, email, password) -> Dict[str, Any]:
        resp = await self._call(
            "POST", "/token", self._anon(),
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if resp.status_code == 400:
            raise Unauthorized("Invalid login credentials")
        self._raise_for(resp)
        body = resp.json()
        return {
            "access_token": body["access_token"],
            "token_type": body.get("token_type", "bearer"),
            "expires_in": body.get("expires_in"),
            "refresh_token": body.get("refresh_token"),
            "user": _gotrue_user(body["user"]).public(),
        }

    async def verify_token(self, kv, token) -> User:
        resp = await self._call("GET", "/user", self._anon(token))
        if 400 <= resp.status_code < 500:
            raise Unauthorized()
        self._raise_for(resp)
        return _gotrue_user(resp.json())

    async def update_user(self, kv, user_id, *, email=None, password=None,
                          name=None) -> User:
        attrs: Dict[str, Any] = {}
        if email is not None:
            attrs["email"] = check_email(email)
            attrs["email_confirm"] = True
        if password is not None:
            attrs["password"] = check_password_rules(password)
        if name is not None:
            attrs["user_metadata"] = {"name": name}
        resp = await self._call("PUT", f"/admin/users/{user_id}",
                                self._service(), json=attrs)
        self._raise_for(resp)
        return _gotrue_user(resp.json())

    async def list_users(self, kv) -> List[User]:
        resp = await self._call("GET", "/admin/users", self._service(),
                                params={"page": 1, "per_page": 1000})
        self._raise_for(resp)
        body = resp.json()
        users = body.get("users", []) if isinstance(body, dict) else body
        return [_gotrue_user(u) for u in users]


def new_identity(provider: str, *,
                 http: httpx.AsyncClient = None) -> IdentityProvider:
    if provider == "gotrue":
        if http is None:
            raise RuntimeError("GoTrueIdentity requires an http client")
        return GoTrueIdentity(http)
    return LocalIdentity()
