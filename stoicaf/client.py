#!/usr/bin/env python3
"""
Stoic AF Journal client (async)

Drives the API the way the web app does:
  1) sign in -> Session (token, user, profile, purchases)
  2) POST /payments/create-checkout -> {session_id, checkout_url}
  3) the payment page settles the payment and redirects back
  4) poll GET /purchases under a RetryPolicy until the tracks show up;
     if they never do, the result is recoverable through
     /payments/verify or /payments/recover

Session state only changes when a client call returns fresh data;
nothing polls in the background.

Usage:
  python -m stoicaf.client --base http://localhost:8000 \
      --email me@example.com --password secret buy Discipline

  python -m stoicaf.client ... recover
  python -m stoicaf.client ... verify pi_mock_...
"""
from __future__ import annotations
import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

import httpx

from .infra.log import configure_logging

log = logging.getLogger(__name__)

ROUTE_PREFIX = os.environ.get("ROUTE_PREFIX", "/make-server-6d6f37b2")


class ApiError(Exception):
    def __init__(self, status: int, error: str, message: str) -> None:
        self.status = status
        self.error = error
        self.message = message
        super().__init__(f"{status} {error}: {message}")


@dataclass
class RetryPolicy:
    """Fixed schedule: wait ``initial_delay``, then up to ``max_attempts``
    tries ``delay`` seconds apart."""
    max_attempts: int = 6
    delay: float = 5.0
    initial_delay: float = 3.0

    def waits(self) -> Iterator[float]:
        """Seconds to sleep before each attempt."""
        for attempt in range(self.max_attempts):
            yield self.initial_delay if attempt == 0 else self.delay


@dataclass
class Session:
    token: str
    user: Dict[str, Any]
    profile: Optional[Dict[str, Any]] = None
    purchases: List[str] = field(default_factory=list)

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def owns(self, *tracks: str) -> bool:
        return all(t in self.purchases for t in tracks)


@dataclass
class EntitlementResult:
    ok: bool
    attempts: int
    purchases: List[str]
    missing: List[str]
    last_error: Optional[str] = None

    @property
    def recoverable(self) -> bool:
        # not converged yet; verify/recover can still settle it
        return not self.ok


Sleep = Callable[[float], Awaitable[None]]


class JournalClient:
    def __init__(self, base: str, *, http: httpx.AsyncClient = None,
                 prefix: str = ROUTE_PREFIX, sleep: Sleep = None) -> None:
        self.base = base.rstrip("/")
        self.prefix = prefix
        self.http = http or httpx.AsyncClient(timeout=30.0)
        self.sleep = sleep or asyncio.sleep

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "JournalClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def url(self, path: str) -> str:
        return f"{self.base}{self.prefix}{path}"

    async def call(self, method: str, path: str,
                   session: Session = None, **kw) -> Dict[str, Any]:
        headers = session.headers if session is not None else None
        resp = await self.http.request(method, self.url(path),
                                       headers=headers, **kw)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400 or body.get("success") is False:
            raise ApiError(
                resp.status_code,
                body.get("error", "http_error"),
                body.get("message", resp.reason_phrase),
            )
        return body

    # ---- auth / session
    async def signup(self, email: str, password: str,
                     full_name: str) -> Dict[str, Any]:
        body = await self.call("POST", "/auth/signup", json={
            "email": email, "password": password, "fullName": full_name,
        })
        return body["user"]

    async def login(self, email: str, password: str) -> Session:
        body = await self.call("POST", "/auth/login", json={
            "email": email, "password": password,
        })
        session = Session(token=body["access_token"], user=body["user"])
        await self.refresh(session)
        return session

    async def refresh(self, session: Session) -> Session:
        body = await self.call("GET", "/user/profile", session)
        session.user = body["user"]
        session.profile = body["profile"]
        session.purchases = await self.purchases(session)
        return session

    async def purchases(self, session: Session) -> List[str]:
        body = await self.call("GET", "/purchases", session)
        return body["purchases"]

    # ---- payments
    async def checkout(self, session: Session,
                       track: str) -> Dict[str, Any]:
        return await self.call("POST", "/payments/create-checkout", session,
                               json={"trackName": track})

    async def bundle_checkout(self, session: Session, tracks: List[str],
                              price: float,
                              title: str = None) -> Dict[str, Any]:
        return await self.call(
            "POST", "/payments/create-bundle-checkout", session,
            json={"trackNames": tracks, "bundlePrice": price,
                  "bundleTitle": title},
        )

    async def mock_settle(self, checkout_url: str,
                          outcome: str = "succeeded") -> str:
        """Press a button on the mock payment page; returns the redirect."""
        resp = await self.http.post(
            f"{self.base}{checkout_url}/emit",
            data={"t": outcome},
            follow_redirects=False,
        )
        if resp.status_code != 303:
            raise ApiError(resp.status_code, "mockpay",
                           "payment page did not redirect")
        return resp.headers["location"]

    async def process_checkout_session(self, session: Session,
                                       session_id: str) -> Dict[str, Any]:
        return await self.call("POST", "/payments/process-checkout-session",
                               session, json={"sessionId": session_id})

    async def verify(self, session: Session,
                     payment_intent_id: str) -> Dict[str, Any]:
        return await self.call("POST", "/payments/verify", session,
                               json={"paymentIntentId": payment_intent_id})

    async def recover(self, session: Session) -> Dict[str, Any]:
        return await self.call("POST", "/payments/recover", session)

    async def redeem(self, session: Session, code: str) -> Dict[str, Any]:
        return await self.call("POST", "/admin/redeem-code", session,
                               json={"code": code})

    async def wait_for_entitlement(
        self,
        session: Session,
        tracks: List[str],
        policy: RetryPolicy = None,
    ) -> EntitlementResult:
        """Poll purchases until ``tracks`` are owned or the policy runs out.

        The session's purchases are updated from every successful poll.
        """
        policy = policy or RetryPolicy()
        attempts = 0
        last_error = None
        for wait in policy.waits():
            await self.sleep(wait)
            attempts += 1
            try:
                session.purchases = await self.purchases(session)
            except (ApiError, httpx.HTTPError) as e:
                last_error = str(e)
                log.warning("purchases poll %d failed: %s", attempts, e)
                continue
            if session.owns(*tracks):
                return EntitlementResult(True, attempts, session.purchases,
                                         [])
            log.info("purchases poll %d: still missing %s", attempts,
                     ",".join(t for t in tracks
                              if t not in session.purchases))
        return EntitlementResult(
            False, attempts, session.purchases,
            [t for t in tracks if t not in session.purchases], last_error,
        )

    # ---- journal
    async def start_track(self, session: Session,
                          track: str) -> Dict[str, Any]:
        body = await self.call("POST", "/journal/start-track", session,
                               json={"trackName": track})
        session.profile = body["profile"]
        return body

    async def save_entry(self, session: Session, track: str, day: int,
                         text: str) -> Dict[str, Any]:
        body = await self.call("POST", "/journal/entry", session, json={
            "trackName": track, "day": day, "entryText": text,
        })
        return body["entry"]

    async def complete_day(self, session: Session, track: str,
                           day: int) -> Dict[str, Any]:
        body = await self.call("POST", "/journal/complete-day", session,
                               json={"trackName": track, "day": day})
        session.profile = body["profile"]
        return body

    async def entries(self, session: Session,
                      track: str) -> List[Dict[str, Any]]:
        body = await self.call("GET", f"/journal/entries/{track}", session)
        return body["entries"]


async def buy(client: JournalClient, session: Session, tracks: List[str],
              policy: RetryPolicy, outcome: str = "succeeded",
              price: float = None) -> EntitlementResult:
    """Mock checkout end to end, then wait for the entitlement."""
    if len(tracks) == 1:
        checkout = await client.checkout(session, tracks[0])
    else:
        checkout = await client.bundle_checkout(session, tracks, price)
    target = await client.mock_settle(checkout["checkout_url"], outcome)
    log.info("payment page redirected to %s", target)
    if outcome != "succeeded":
        return EntitlementResult(False, 0, session.purchases, tracks,
                                 f"payment {outcome}")
    return await client.wait_for_entitlement(session, tracks, policy)


async def run(args) -> int:
    policy = RetryPolicy(args.attempts, args.delay, args.initial_delay)
    async with JournalClient(args.base) as client:
        session = await client.login(args.email, args.password)
        if args.cmd == "buy":
            result = await buy(client, session, args.tracks, policy,
                               args.outcome, args.price)
            print(f"owned={result.ok} attempts={result.attempts} "
                  f"purchases={','.join(result.purchases)}")
            if result.recoverable:
                print("not converged; try: recover")
                return 2
        elif args.cmd == "verify":
            body = await client.verify(session, args.payment_intent_id)
            print(body["message"])
        elif args.cmd == "recover":
            body = await client.recover(session)
            print(f"recovered={','.join(body['recovered']) or '-'} "
                  f"purchases={','.join(body['purchases'])}")
        elif args.cmd == "redeem":
            body = await client.redeem(session, args.code)
            print(body["message"])
        else:
            await client.refresh(session)
            print(f"purchases={','.join(session.purchases) or '-'}")
    return 0


def main():
    ap = argparse.ArgumentParser(description="Stoic AF Journal client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--email", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--attempts", type=int, default=6,
                    help="Purchase polls before giving up")
    ap.add_argument("--delay", type=float, default=5.0,
                    help="Seconds between purchase polls")
    ap.add_argument("--initial-delay", type=float, default=3.0,
                    help="Seconds before the first poll")
    sub = ap.add_subparsers(dest="cmd")
    sub.add_parser("purchases", help="Show owned tracks")
    p = sub.add_parser("buy", help="Buy tracks through the mock provider")
    p.add_argument("tracks", nargs="+")
    p.add_argument("--price", type=float, default=None,
                   help="Bundle price in dollars")
    p.add_argument("--outcome", default="succeeded",
                   choices=["succeeded", "failed", "canceled"])
    p = sub.add_parser("verify", help="Re-apply a payment intent")
    p.add_argument("payment_intent_id")
    sub.add_parser("recover", help="Sweep the provider for lost payments")
    p = sub.add_parser("redeem", help="Redeem an access code")
    p.add_argument("code")
    args = ap.parse_args()

    configure_logging()
    try:
        sys.exit(asyncio.run(run(args)))
    except ApiError as e:
        print(f"error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
