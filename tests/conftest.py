import os
import tempfile
import uuid

import pytest

# Configure the app before anything under stoicaf is imported
_tmpdir = tempfile.mkdtemp(prefix="stoicaf-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmpdir}/test.db"
os.environ["KV_BACKEND"] = "sql"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["IDENTITY_PROVIDER"] = "local"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_EMAILS"] = "admin@stoicaf.test"
os.environ["ADMIN_BOOTSTRAP_SECRET"] = "bootstrap-secret"
os.environ["DEV_MODE"] = "1"
os.environ["FRONTEND_URL"] = "http://frontend.test"
os.environ["MOCK_WEBHOOK_URL"] = "http://127.0.0.1:9/unreachable"

from fastapi.testclient import TestClient  # noqa: E402

from stoicaf.errors import StorageError  # noqa: E402
from stoicaf.model.kv import KVStore  # noqa: E402
from stoicaf.server import ROUTE_PREFIX, app  # noqa: E402

ADMIN_EMAIL = "admin@stoicaf.test"
PASSWORD = "correct-horse"


class Api:
    """TestClient wrapper that prefixes routes and carries a bearer token."""

    def __init__(self, client: TestClient, token: str = None,
                 user: dict = None) -> None:
        self.client = client
        self.token = token
        self.user = user

    @property
    def headers(self):
        if self.token is None:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def get(self, path, **kw):
        return self.client.get(ROUTE_PREFIX + path, headers=self.headers,
                               **kw)

    def post(self, path, **kw):
        return self.client.post(ROUTE_PREFIX + path, headers=self.headers,
                                **kw)

    def put(self, path, **kw):
        return self.client.put(ROUTE_PREFIX + path, headers=self.headers,
                               **kw)

    def delete(self, path, **kw):
        return self.client.delete(ROUTE_PREFIX + path, headers=self.headers,
                                  **kw)


def login(client: TestClient, email: str, password: str = PASSWORD) -> Api:
    resp = client.post(ROUTE_PREFIX + "/auth/login",
                       json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    return Api(client, body["access_token"], body["user"])


def signup(client: TestClient, email: str = None,
           password: str = PASSWORD) -> Api:
    email = email or f"user-{uuid.uuid4().hex[:10]}@example.com"
    resp = client.post(ROUTE_PREFIX + "/auth/signup", json={
        "email": email, "password": password, "fullName": "Marcus Aurelius",
    })
    assert resp.status_code == 200, resp.text
    return login(client, email, password)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def anon(client):
    return Api(client)


@pytest.fixture
def user(client):
    return signup(client)


@pytest.fixture
def admin(client):
    resp = client.post(ROUTE_PREFIX + "/auth/signup", json={
        "email": ADMIN_EMAIL, "password": PASSWORD, "fullName": "Admin",
    })
    # the database outlives a single test; the admin may exist already
    assert resp.status_code in (200, 422), resp.text
    return login(client, ADMIN_EMAIL)


def grant(api: Api, *tracks: str) -> None:
    for track in tracks:
        resp = api.post("/dev/grant-track", json={"trackName": track})
        assert resp.status_code == 200, resp.text


class MemoryKV(KVStore):
    """Dict-backed store for unit tests that need no database."""

    def __init__(self):
        self.data = {}

    async def get_versioned(self, key):
        return self.data.get(key, (None, 0))

    async def set(self, key, value):
        _, version = self.data.get(key, (None, 0))
        self.data[key] = (value, version + 1)

    async def compare_and_set(self, key, value, version):
        if self.data.get(key, (None, 0))[1] != version:
            return False
        self.data[key] = (value, version + 1)
        return True

    async def delete(self, key):
        self.data.pop(key, None)

    async def get_by_prefix(self, prefix):
        return sorted((k, v) for k, (v, _) in self.data.items()
                      if k.startswith(prefix))


class FlakyKV(MemoryKV):
    """Refuses writes under ``prefix`` until ``failures`` runs out.

    A refused ``set`` raises ``StorageError``; a refused compare-and-set
    just loses, like a concurrent writer got there first.
    """

    def __init__(self, prefix, failures=1):
        super().__init__()
        self.prefix = prefix
        self.failures = failures

    def _refuse(self, key):
        if not key.startswith(self.prefix) or self.failures <= 0:
            return False
        self.failures -= 1
        return True

    async def set(self, key, value):
        if self._refuse(key):
            raise StorageError()
        await super().set(key, value)

    async def compare_and_set(self, key, value, version):
        if self._refuse(key):
            return False
        return await super().compare_and_set(key, value, version)
