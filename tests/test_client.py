import asyncio

import httpx
import pytest

from stoicaf.client import (
    ApiError, EntitlementResult, JournalClient, RetryPolicy, Session, buy,
)

PREFIX = "/api"


def run(coro):
    return asyncio.run(coro)


class FakeApi:
    """Purchases only appear after ``settle_after`` polls."""

    def __init__(self, settle_after=2, fail_polls=()):
        self.settle_after = settle_after
        self.fail_polls = set(fail_polls)
        self.polls = 0
        self.settled = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        # the payment page is public, like the real route
        if path == f"{PREFIX}/mockpay/cs_mock_1/emit":
            self.settled.append(request.read().decode())
            return httpx.Response(303, headers={
                "location": "http://app.test/?success=true",
            })
        if path == f"{PREFIX}/auth/login":
            return httpx.Response(200, json={
                "success": True, "access_token": "tok",
                "user": {"id": "u1", "email": "a@example.com"},
            })
        if request.headers.get("authorization") != "Bearer tok":
            return httpx.Response(401, json={
                "success": False, "error": "unauthorized",
                "message": "Invalid authorization header",
            })
        if path == f"{PREFIX}/user/profile":
            return httpx.Response(200, json={
                "user": {"id": "u1", "email": "a@example.com"},
                "profile": {"current_track": None, "current_day": 0},
            })
        if path == f"{PREFIX}/purchases":
            self.polls += 1
            if self.polls in self.fail_polls:
                return httpx.Response(503, json={
                    "success": False, "error": "unavailable",
                    "message": "try later",
                })
            owned = ["Ego"] if self.polls > self.settle_after else []
            return httpx.Response(200, json={"success": True,
                                             "purchases": owned})
        if path == f"{PREFIX}/payments/create-checkout":
            return httpx.Response(200, json={
                "success": True, "session_id": "cs_mock_1",
                "checkout_url": f"{PREFIX}/mockpay/cs_mock_1",
            })
        if path == f"{PREFIX}/payments/create-bundle-checkout":
            return httpx.Response(400, json={
                "success": False, "error": "validation_error",
                "message": "Invalid bundle price",
            })
        return httpx.Response(404, json={"success": False})


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_client(fake, sleeps=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return JournalClient("http://api.test", http=http, prefix=PREFIX,
                         sleep=sleeps or Sleeps())


def test_policy_schedule():
    policy = RetryPolicy(max_attempts=3, delay=5, initial_delay=3)
    assert list(policy.waits()) == [3, 5, 5]


def test_login_builds_session():
    client = make_client(FakeApi())
    session = run(client.login("a@example.com", "pw"))
    assert session.token == "tok"
    assert session.profile["current_day"] == 0
    assert session.purchases == []


def test_waits_until_entitled():
    fake, sleeps = FakeApi(settle_after=2), Sleeps()
    client = make_client(fake, sleeps)
    session = Session(token="tok", user={"id": "u1"})
    result = run(client.wait_for_entitlement(
        session, ["Ego"], RetryPolicy(6, 5, 3)))
    assert result.ok
    assert result.attempts == 3
    assert sleeps.calls == [3, 5, 5]
    assert session.owns("Ego")
    assert not result.recoverable


def test_gives_up_deterministically():
    fake, sleeps = FakeApi(settle_after=100), Sleeps()
    client = make_client(fake, sleeps)
    session = Session(token="tok", user={"id": "u1"})
    result = run(client.wait_for_entitlement(
        session, ["Ego"], RetryPolicy(4, 1, 0)))
    assert not result.ok
    assert result.recoverable
    assert result.attempts == 4
    assert result.missing == ["Ego"]
    assert fake.polls == 4


def test_poll_errors_count_as_attempts():
    fake = FakeApi(settle_after=0, fail_polls={1, 2})
    client = make_client(fake)
    session = Session(token="tok", user={"id": "u1"})
    result = run(client.wait_for_entitlement(
        session, ["Ego"], RetryPolicy(2, 1, 0)))
    assert not result.ok
    assert "try later" in result.last_error


def test_api_error_carries_envelope():
    client = make_client(FakeApi())
    session = Session(token="bad", user={})
    with pytest.raises(ApiError) as exc:
        run(client.purchases(session))
    assert exc.value.status == 401
    assert exc.value.message == "Invalid authorization header"


def test_buy_through_mock_page():
    fake = FakeApi(settle_after=1)
    client = make_client(fake)
    session = Session(token="tok", user={"id": "u1"})
    result = run(buy(client, session, ["Ego"], RetryPolicy(3, 0, 0)))
    assert isinstance(result, EntitlementResult)
    assert result.ok
    assert fake.settled == ["t=succeeded"]


def test_buy_canceled_is_not_polled():
    fake = FakeApi()
    client = make_client(fake)
    session = Session(token="tok", user={"id": "u1"})
    result = run(buy(client, session, ["Ego"], RetryPolicy(), "canceled"))
    assert not result.ok
    assert fake.polls == 0


def test_bundle_error_is_raised():
    client = make_client(FakeApi())
    session = Session(token="tok", user={"id": "u1"})
    with pytest.raises(ApiError) as exc:
        run(buy(client, session, ["Ego", "Money"], RetryPolicy(), price=99))
    assert exc.value.message == "Invalid bundle price"
