from __future__ import annotations
import logging
import os
import sys
import uuid
from typing import AsyncIterator, Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import access_codes, accounts, journal, prompts
from .entitlements import (
    ensure_not_owned, event_seen, fulfil_payment, get_purchases,
    grant_tracks, mark_event, revoke_tracks,
)
from .errors import (
    AdminRequired, Forbidden, NotConfigured, NotFound, PaymentMismatch,
    ServiceError, Unauthorized, ValidationFailed,
)
from .helpers import ct_equal, iso_now
from .identity import (
    IdentityProvider, User, add_admin, is_admin, new_identity,
)
from .infra.log import configure_logging
from .infra.sql import make_database
from .mockpay import (
    MOCK_SECRET, SIGNATURE_HEADER, MockPay, PaymentAdapter, new_adapter, sign,
)
from .model.keys import PROFILE_PREFIX, PURCHASES_PREFIX
from .model.kv import BACKEND as KV_BACKEND, KVStore, new_store
from .model.records import purchases_from
from .schemas import (
    AccountUpdateBody, BootstrapBody, BundleCheckoutBody, CheckoutBody,
    CompleteDayBody, EntryBody, GenerateCodeBody, GrantBody, IntentBody,
    LoginBody, PreferencesBody, ProcessIntentBody, ProcessSessionBody,
    ProfileUpdateBody, RedeemBody, SignupBody, TrackBody, VerifyBody,
)
from .tracks import (
    CURRENCY, PRODUCT_NAME, TRACK_DAYS, TRACK_PRICE, bundle_amount,
    payment_metadata, require_track, require_tracks, tracks_from_metadata,
)

log = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if KV_BACKEND == "sql" and DATABASE_URL is None:
    print("NEED DATABASE_URL! (or KV_BACKEND=redis)", file=sys.stderr)
    sys.exit(1)

ROUTE_PREFIX = os.environ.get("ROUTE_PREFIX", "/make-server-6d6f37b2")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    f"http://localhost:8000{ROUTE_PREFIX}/payments/webhook"
)
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
IDENTITY_PROVIDER = os.environ.get("IDENTITY_PROVIDER", "local").lower()
STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")
ADMIN_BOOTSTRAP_SECRET = os.environ.get("ADMIN_BOOTSTRAP_SECRET", "")
DEV_MODE = os.environ.get("DEV_MODE", "").lower() in ("1", "true", "yes")

db = make_database(DATABASE_URL) if KV_BACKEND == "sql" else None

adapter: PaymentAdapter = new_adapter(PAYMENT_PROVIDER, base_url=ROUTE_PREFIX)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

app = FastAPI(
    title="Stoic AF Journal",
    default_response_class=ORJSONResponse,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=600,
)
api = APIRouter(prefix=ROUTE_PREFIX)


# ---
# dependencies
# ---
async def kvstore() -> AsyncIterator[KVStore]:
    if KV_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with db.sessions() as session:
            yield new_store(db=session, gated=db.gated)


def identity_provider() -> IdentityProvider:
    return app.state.identity


def payment_adapter() -> PaymentAdapter:
    return adapter


async def current_user(
    authorization: Optional[str] = Header(None),
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
) -> User:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Invalid authorization header")
    token = authorization.split(" ", 1)[1].strip()
    return await idp.verify_token(kv, token)


async def admin_user(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
) -> User:
    if not await is_admin(kv, user.email):
        log.warning("admin access denied for %s", user.id)
        raise AdminRequired()
    return user


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    configure_logging()
    log.info("Stoic AF Journal is starting up: kv=%s payments=%s "
             "identity=%s prefix=%s", KV_BACKEND, adapter.name,
             IDENTITY_PROVIDER, ROUTE_PREFIX)


@app.on_event("startup")
async def _db_init():
    if KV_BACKEND == "sql":
        from .model.kv._sql import create_schema
        async with db.engine.begin() as conn:
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _identity_start():
    app.state.identity = new_identity(IDENTITY_PROVIDER, http=app.state.http)


@app.on_event("startup")
async def _redis_start():
    if KV_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    if db is not None:
        await db.dispose()


# ----------------------------
# Error envelope
# ----------------------------
_STATUS_CODES = {
    400: "bad_request", 401: "unauthorized", 403: "forbidden",
    404: "not_found", 405: "method_not_allowed", 409: "conflict",
    422: "unprocessable", 503: "unavailable",
}


@app.exception_handler(ServiceError)
async def _service_error(request: Request, exc: ServiceError):
    if exc.status >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path,
                  exc.message)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    return ORJSONResponse({
        "success": False,
        "error": _STATUS_CODES.get(exc.status_code, "error"),
        "message": str(exc.detail),
    }, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(p) for p in err["loc"][1:]) or "body",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return ORJSONResponse(
        ValidationFailed(details=details).to_dict(), status_code=400
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    log.exception("%s %s crashed", request.method, request.url.path)
    return ORJSONResponse({
        "success": False,
        "error": "internal_error",
        "message": "Internal server error",
    }, status_code=500)


# ----------------------------
# Health & config
# ----------------------------
@api.get("/health")
async def health(kv: KVStore = Depends(kvstore)):
    checks = {
        "environment": {
            "database_url": DATABASE_URL is not None,
            "kv_backend": KV_BACKEND,
            "payment_provider": adapter.name,
            "stripe_key": bool(os.environ.get("STRIPE_SECRET_KEY")),
            "identity_provider": IDENTITY_PROVIDER,
            "frontend_url": bool(os.environ.get("FRONTEND_URL")),
        },
    }
    key = f"health:check:{uuid.uuid4().hex}"
    value = {"test": True, "timestamp": iso_now()}
    try:
        await kv.set(key, value)
        retrieved = await kv.get(key)
        await kv.delete(key)
        checks["kv_store"] = {
            "status": "healthy" if retrieved == value else "unhealthy",
            "can_write": True,
            "can_read": retrieved == value,
            "can_delete": True,
        }
    except Exception as e:
        log.error("health probe failed: %s", e)
        checks["kv_store"] = {"status": "unhealthy", "error": str(e)}

    healthy = checks["kv_store"]["status"] == "healthy"
    return ORJSONResponse({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": iso_now(),
        "checks": checks,
    }, status_code=200 if healthy else 503)


@api.get("/stripe/config")
async def stripe_config(pay: PaymentAdapter = Depends(payment_adapter)):
    if pay.name == "stripe" and not STRIPE_PUBLISHABLE_KEY:
        raise NotConfigured("Stripe not configured")
    return {
        "provider": pay.name,
        "publishableKey": STRIPE_PUBLISHABLE_KEY or None,
    }


# ----------------------------
# Auth & account
# ----------------------------
@api.post("/auth/signup")
async def auth_signup(
    body: SignupBody,
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
):
    user = await accounts.signup(kv, idp, body.email, body.password,
                                 body.full_name)
    return {"success": True, "user": user.public()}


@api.post("/auth/login")
async def auth_login(
    body: LoginBody,
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
):
    if not body.email or not body.password:
        raise ValidationFailed("Email and password are required")
    session = await idp.sign_in(kv, body.email, body.password)
    return {"success": True, **session}


@api.get("/user/profile")
async def get_profile(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    profile = await accounts.ensure_profile(kv, user.id)
    return {"user": user.public(), "profile": profile.dump()}


@api.put("/user/profile")
async def put_profile(
    body: ProfileUpdateBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    profile = await accounts.update_profile(kv, user.id,
                                            body.onboarding_completed)
    return {"success": True, "profile": profile.dump()}


@api.put("/user/account")
async def put_account(
    body: AccountUpdateBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
):
    name = body.name.strip() if body.name and body.name.strip() else None
    email = body.email.strip() if body.email else None
    if email is not None and email.lower() == user.email.lower():
        email = None
    password = None
    if body.new_password:
        if not body.current_password:
            raise ValidationFailed(
                "Current password required to change password")
        if not await idp.check_password(kv, user, body.current_password):
            raise ValidationFailed("Current password is incorrect")
        password = body.new_password

    if name is None and email is None and password is None:
        return {"success": True, "message": "No changes to apply"}

    updated = await idp.update_user(kv, user.id, email=email,
                                    password=password, name=name)
    log.info("updated account %s", user.id)
    return {
        "success": True,
        "user": updated.public(),
        "message": "Account updated successfully",
    }


@api.delete("/user/account")
async def delete_account(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
):
    await accounts.delete_account(kv, idp, user.id)
    return {"success": True, "message": "Account deleted"}


@api.get("/user/preferences")
async def get_preferences(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    prefs = await accounts.get_preferences(kv, user.id)
    return {"success": True, "preferences": prefs}


@api.put("/user/preferences")
async def put_preferences(
    body: PreferencesBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    prefs = await accounts.update_preferences(
        kv, user.id, body.model_dump(exclude_unset=True)
    )
    return {
        "success": True,
        "preferences": prefs,
        "message": "Preferences updated successfully",
    }


# ----------------------------
# Purchases & payments
# ----------------------------
@api.get("/purchases")
async def purchases(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    return {"success": True, "purchases": await get_purchases(kv, user.id)}


def _success_url(**params) -> str:
    query = "&".join(f"{k}={v}" for k, v in params.items())
    return f"{FRONTEND_URL}/?success=true&{query}" \
        "&session_id={CHECKOUT_SESSION_ID}"


@api.post("/payments/create-checkout")
async def create_checkout(
    body: CheckoutBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    track = require_track(body.track_name)
    await ensure_not_owned(kv, user.id, [track])
    result = await pay.create_checkout(
        kv,
        amount=TRACK_PRICE,
        currency=CURRENCY,
        product=f"{PRODUCT_NAME} - {track} Focus",
        description=f"{TRACK_DAYS}-day journaling program focused on "
                    f"{track}",
        metadata=payment_metadata(user.id, [track], False),
        success_url=_success_url(track=track),
        cancel_url=f"{FRONTEND_URL}/?canceled=true",
    )
    log.info("checkout %s created for user %s (%s)",
             result["session_id"], user.id, track)
    return {"success": True, **result}


@api.post("/payments/create-bundle-checkout")
async def create_bundle_checkout(
    body: BundleCheckoutBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    tracks = require_tracks(body.track_names)
    amount = bundle_amount(body.bundle_price)
    await ensure_not_owned(kv, user.id, tracks)
    title = body.bundle_title or "Complete Bundle"
    result = await pay.create_checkout(
        kv,
        amount=amount,
        currency=CURRENCY,
        product=f"{PRODUCT_NAME} - {title}",
        description="Focus areas: " + ", ".join(tracks),
        metadata=payment_metadata(user.id, tracks, True, title),
        success_url=_success_url(bundle="true"),
        cancel_url=f"{FRONTEND_URL}/?canceled=true",
    )
    log.info("bundle checkout %s created for user %s (%s)",
             result["session_id"], user.id, ",".join(tracks))
    return {"success": True, **result}


@api.post("/payments/create-intent")
async def create_intent(
    body: IntentBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    if body.is_bundle:
        if not body.bundle_tracks:
            raise ValidationFailed("Invalid bundle tracks")
        tracks = require_tracks(body.bundle_tracks)
        amount = bundle_amount(body.bundle_price)
        title = body.bundle_title or "Bundle"
        description = (f"{PRODUCT_NAME} - {title} "
                       f"({', '.join(tracks)})")
    else:
        tracks = [require_track(body.track_name)]
        amount = TRACK_PRICE
        title = None
        description = (f"{PRODUCT_NAME} - {tracks[0]} Track "
                       f"({TRACK_DAYS}-day program)")
    await ensure_not_owned(kv, user.id, tracks)
    result = await pay.create_intent(
        kv,
        amount=amount,
        currency=CURRENCY,
        description=description,
        metadata=payment_metadata(user.id, tracks, body.is_bundle, title),
    )
    log.info("payment intent %s created for user %s (%s)",
             result["payment_intent_id"], user.id, ",".join(tracks))
    return {"success": True, **result}


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@api.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = pay.verify_webhook(payload, headers)
    kind = pay.event_kind(event)  # succeeded | failed | canceled | ignored
    ref, idem = pay.event_ids(event)
    if kind == "ignored":
        return {"received": True, "ignored": True}
    if not ref:
        raise ValidationFailed("missing payment reference")
    if kind != "succeeded":
        log.info("payment %s %s", ref, kind)
        return {"received": True, "status": kind}

    if await event_seen(kv, idem):
        return {"received": True, "idempotent": True}

    payment = await pay.retrieve_payment(kv, ref)
    if payment["status"] != "succeeded":
        # async payment methods settle later, with their own event
        return {"received": True, "status": payment["status"]}

    tracks, added = await fulfil_payment(kv, payment, source="webhook")
    await mark_event(kv, idem)
    return {"received": True, "status": "succeeded", "tracks": tracks,
            "addedTracks": added}


async def _confirm(kv: KVStore, pay: PaymentAdapter, user: User, ref: str,
                   source: str, track: Optional[str] = None) -> dict:
    payment = await pay.retrieve_payment(kv, ref)
    if track is not None and \
            track not in tracks_from_metadata(payment.get("metadata")):
        raise PaymentMismatch("Payment intent metadata mismatch")
    tracks, added = await fulfil_payment(kv, payment, source=source,
                                         expected_user=user.id)
    owned = await get_purchases(kv, user.id)
    if added:
        message = "Successfully purchased " + ", ".join(added)
    else:
        message = "Tracks already owned"
    return {
        "success": True,
        "message": message,
        "tracks": tracks,
        "addedTracks": added,
        "purchases": owned,
    }


@api.post("/payments/process-payment-intent")
async def process_payment_intent(
    body: ProcessIntentBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    if not body.payment_intent_id:
        raise ValidationFailed("Payment intent ID required")
    track = require_track(body.track_name) if body.track_name else None
    return await _confirm(kv, pay, user, body.payment_intent_id, "client",
                          track)


@api.post("/payments/process-checkout-session")
async def process_checkout_session(
    body: ProcessSessionBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    if not body.session_id:
        raise ValidationFailed("Session ID required")
    return await _confirm(kv, pay, user, body.session_id, "client")


@api.post("/payments/verify")
async def verify_payment(
    body: VerifyBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    if not body.payment_intent_id:
        raise ValidationFailed("Payment intent ID required")
    return await _confirm(kv, pay, user, body.payment_intent_id, "verify")


@api.post("/payments/recover")
async def recover_payments(
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    recovered, added = [], []
    for payment in await pay.list_succeeded_payments(kv, user.id):
        try:
            _, new = await fulfil_payment(kv, payment, source="recover",
                                          expected_user=user.id)
        except PaymentMismatch as e:
            log.warning("skipping payment %s in recovery: %s",
                        payment["id"], e.message)
            continue
        if new:
            recovered.append(payment["id"])
            added.extend(t for t in new if t not in added)
    if recovered:
        log.info("recovered %s for user %s", ",".join(recovered), user.id)
    return {
        "success": True,
        "recovered": recovered,
        "addedTracks": added,
        "purchases": await get_purchases(kv, user.id),
    }


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
def _mockpay(pay: PaymentAdapter) -> MockPay:
    if not isinstance(pay, MockPay):
        raise NotFound("mock payments are disabled")
    return pay


@api.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, psid: str,
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    ps = await _mockpay(pay).get_session(kv, psid)
    return templates.TemplateResponse(request, "mockpay.html", {
        "psid": psid,
        "product": PRODUCT_NAME,
        "description": ps.description,
        "tracks": ps.tracks,
        "amount": f"{ps.amount / 100:.2f}",
        "currency": ps.currency,
        "status": ps.status,
        "emit_url": f"{ROUTE_PREFIX}/mockpay/{psid}/emit",
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@api.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str, request: Request,
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    mock = _mockpay(pay)
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise ValidationFailed("invalid kind")

    ps = await mock.settle(kv, psid, kind)
    payload = mock.build_event(ps, ps.status)

    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                SIGNATURE_HEADER: sign(payload, MOCK_SECRET),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the redirect still happens; recovery picks up a lost webhook
        log.warning("mock webhook delivery for %s failed: %s", psid, e)

    # Redirect UX
    if ps.kind == "checkout":
        target = ps.success_url if ps.status == "succeeded" \
            else ps.cancel_url
        target = (target or FRONTEND_URL).replace(
            "{CHECKOUT_SESSION_ID}", psid)
    else:
        target = (f"{FRONTEND_URL}/?payment_intent={psid}"
                  f"&redirect_status={ps.status}")
    return RedirectResponse(url=target, status_code=303)


# ----------------------------
# Journal
# ----------------------------
@api.post("/journal/start-track")
async def start_track(
    body: TrackBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    track = require_track(body.track_name)
    owned = await get_purchases(kv, user.id)
    profile, is_restart = await accounts.start(kv, user.id, track, owned)
    return {
        "success": True,
        "message": f"Started {track} track",
        "profile": profile.dump(),
        "currentDay": profile.current_day,
        "isRestart": is_restart,
    }


@api.post("/journal/entry")
async def save_entry(
    body: EntryBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    track = require_track(body.track_name)
    day = journal.check_day(body.day)
    text = journal.entry_text(body.entry_text, body.morning_intention,
                              body.evening_reflections)
    entry = await journal.save_entry(kv, user.id, track, day, text)
    return {"success": True, "entry": entry.dump()}


@api.post("/journal/complete-day")
async def complete_day(
    body: CompleteDayBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    track = require_track(body.track_name)
    day = journal.check_day(body.day)
    profile, finished = await accounts.complete(kv, user.id, track, day)
    if finished:
        message = f"Congratulations! You've completed the {track} track!"
    else:
        message = f"Day {day} completed! Ready for day {day + 1}."
    return {
        "success": True,
        "profile": profile.dump(),
        "trackCompleted": finished,
        "message": message,
    }


@api.get("/journal/entries/{track_name}")
async def journal_entries(
    track_name: str,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    track = require_track(track_name)
    entries = await journal.list_entries(kv, user.id, track)
    return {"success": True, "entries": [e.dump() for e in entries]}


# ----------------------------
# Prompts
# ----------------------------
@api.get("/prompts/{track_name}")
async def track_prompts(track_name: str, kv: KVStore = Depends(kvstore)):
    return await prompts.get_prompts(kv, track_name)


@api.post("/admin/seed-prompts")
async def seed_prompts(
    payload: dict,
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
):
    seeded = await prompts.seed_prompts(kv, payload)
    return {
        "success": True,
        "message": f"Successfully seeded prompts for {seeded.track_id} "
                   "track",
    }


# ----------------------------
# Admin
# ----------------------------
@api.get("/admin/users")
async def admin_users(
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
    idp: IdentityProvider = Depends(identity_provider),
):
    profiles = dict(await kv.get_by_prefix(PROFILE_PREFIX))
    owned = dict(await kv.get_by_prefix(PURCHASES_PREFIX))
    users = []
    for u in await idp.list_users(kv):
        users.append({
            **u.public(),
            "last_sign_in_at": u.last_sign_in_at,
            "profile": profiles.get(PROFILE_PREFIX + u.id),
            "purchases": purchases_from(owned.get(PURCHASES_PREFIX + u.id)),
        })
    return {"success": True, "users": users, "total": len(users)}


def _grant_args(body: GrantBody):
    if not body.user_id or not body.track_names:
        raise ValidationFailed("User ID and track names array required")
    return body.user_id, require_tracks(body.track_names)


@api.post("/admin/grant-access")
async def admin_grant(
    body: GrantBody,
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
):
    user_id, tracks = _grant_args(body)
    added = await grant_tracks(kv, user_id, tracks)
    log.info("admin %s granted %s to %s", admin.id, ",".join(added), user_id)
    return {
        "success": True,
        "message": f"Granted access to {len(added)} tracks",
        "addedTracks": added,
        "totalTracks": len(await get_purchases(kv, user_id)),
    }


@api.post("/admin/revoke-access")
async def admin_revoke(
    body: GrantBody,
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
):
    user_id, tracks = _grant_args(body)
    removed = await revoke_tracks(kv, user_id, tracks)
    log.info("admin %s revoked %s from %s", admin.id, ",".join(removed),
             user_id)
    return {
        "success": True,
        "message": f"Revoked access to {len(removed)} tracks",
        "removedTracks": removed,
        "totalTracks": len(await get_purchases(kv, user_id)),
    }


@api.post("/admin/generate-code")
async def admin_generate_code(
    body: GenerateCodeBody,
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
):
    code = await access_codes.generate_code(
        kv, body.track_names, body.expires_in_days, body.usage_limit
    )
    return {"success": True, "accessCode": code.dump()}


@api.post("/admin/redeem-code")
async def redeem_code(
    body: RedeemBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    _, added = await access_codes.redeem_code(kv, user.id, body.code)
    return {
        "success": True,
        "message": f"Successfully redeemed access code for "
                   f"{len(added)} tracks",
        "addedTracks": added,
        "totalTracks": len(await get_purchases(kv, user.id)),
    }


@api.get("/admin/codes")
async def admin_codes(
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
):
    codes = [c.dump() for c in await access_codes.list_codes(kv)]
    return {"success": True, "codes": codes, "total": len(codes)}


@api.get("/admin/pending")
async def admin_pending(
    limit: int = 100,
    admin: User = Depends(admin_user),
    kv: KVStore = Depends(kvstore),
    pay: PaymentAdapter = Depends(payment_adapter),
):
    limit = max(1, min(limit, 500))
    total, items = await pay.pending(kv, limit=limit)
    return {"items": items, "total": total, "limit": limit,
            "enabled": isinstance(pay, MockPay)}


@api.post("/admin/bootstrap")
async def admin_bootstrap(
    body: BootstrapBody,
    kv: KVStore = Depends(kvstore),
):
    if not ADMIN_BOOTSTRAP_SECRET or not ct_equal(
            body.secret_key or "", ADMIN_BOOTSTRAP_SECRET):
        raise Forbidden("Invalid secret key")
    if not body.email:
        raise ValidationFailed("Email required")
    await add_admin(kv, body.email)
    return {
        "success": True,
        "message": f"{body.email} has been granted admin access",
    }


# ----------------------------
# Development
# ----------------------------
@api.post("/dev/grant-track")
async def dev_grant_track(
    body: TrackBody,
    user: User = Depends(current_user),
    kv: KVStore = Depends(kvstore),
):
    if not DEV_MODE:
        raise NotFound()
    track = require_track(body.track_name)
    added = await grant_tracks(kv, user.id, [track])
    return {
        "success": True,
        "message": (f"Successfully granted {track} track for development"
                    if added else "Track already owned"),
        "purchases": await get_purchases(kv, user.id),
        "track": track,
    }


app.include_router(api)
