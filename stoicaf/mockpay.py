from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import logging
import os
import uuid

import orjson

from .errors import NotFound, ValidationFailed
from .helpers import now_ts, to_iso
from .model.keys import PS_PREFIX, k_ps
from .model.kv import KVStore
from .model.records import PaymentSession
from .tracks import tracks_from_metadata

log = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutResult(TypedDict):
    session_id: str
    checkout_url: str


class IntentResult(TypedDict):
    payment_intent_id: str
    client_secret: str


class PaymentInfo(TypedDict):
    id: str
    # "succeeded" | "open" | "failed" | "canceled"
    status: str
    amount: int
    currency: str
    created: float
    metadata: Dict[str, str]


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    async def create_checkout(
            self, kv: KVStore, *, amount: int, currency: str,
            product: str, description: str, metadata: Dict[str, str],
            success_url: str, cancel_url: str,
    ) -> CheckoutResult: ...

    @abstractmethod
    async def create_intent(
            self, kv: KVStore, *, amount: int, currency: str,
            description: str, metadata: Dict[str, str],
    ) -> IntentResult: ...

    # checkout session or payment intent, by id; raises NotFound
    @abstractmethod
    async def retrieve_payment(self, kv: KVStore, ref: str) -> PaymentInfo:
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | "ignored"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment reference, idempotency key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    @abstractmethod
    async def list_succeeded_payments(
            self, kv: KVStore, user_id: str) -> List[PaymentInfo]: ...

    # open sessions, newest first; (total, items)
    async def pending(self, kv: KVStore,
                      limit: int = 100) -> Tuple[int, List[dict]]:
        return 0, []


# ----------------------------
# MockPay implementation
# ----------------------------
def sign(payload: bytes, secret: str = None) -> str:
    mac = hmac.new((secret or MOCK_SECRET).encode(), payload,
                   hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def _info(ps: PaymentSession) -> PaymentInfo:
    return {
        "id": ps.psid,
        "status": ps.status,
        "amount": ps.amount,
        "currency": ps.currency,
        "created": ps.created_at,
        "metadata": dict(ps.metadata),
    }


class MockPay(PaymentAdapter):
    """In-process provider: sessions live in the key-value store and
    the hosted page at ``/mockpay/{psid}`` emits signed webhooks."""
    name = "mock"

    def __init__(self, base_url: str = "") -> None:
        # where the hosted mock page is served
        self.base_url = base_url.rstrip("/")

    async def _save(self, kv: KVStore, kind: str, amount: int,
                    currency: str, description: str,
                    metadata: Dict[str, str], **extra) -> PaymentSession:
        prefix = "cs" if kind == "checkout" else "pi"
        ps = PaymentSession(
            psid=f"{prefix}_mock_{uuid.uuid4().hex}",
            kind=kind,
            user_id=metadata.get("user_id", ""),
            tracks=tracks_from_metadata(metadata),
            is_bundle=metadata.get("is_bundle") == "true",
            amount=amount,
            currency=currency,
            created_at=now_ts(),
            description=description,
            metadata=metadata,
            **extra,
        )
        await kv.set(k_ps(ps.psid), ps.dump())
        return ps

    async def create_checkout(
            self, kv, *, amount, currency, product, description, metadata,
            success_url, cancel_url,
    ) -> CheckoutResult:
        ps = await self._save(
            kv, "checkout", amount, currency, f"{product} - {description}",
            metadata, success_url=success_url, cancel_url=cancel_url,
        )
        return {
            "session_id": ps.psid,
            "checkout_url": f"{self.base_url}/mockpay/{ps.psid}",
        }

    async def create_intent(
            self, kv, *, amount, currency, description, metadata,
    ) -> IntentResult:
        ps = await self._save(kv, "intent", amount, currency, description,
                              metadata)
        return {
            "payment_intent_id": ps.psid,
            "client_secret": f"{ps.psid}_secret_{uuid.uuid4().hex[:16]}",
        }

    async def get_session(self, kv: KVStore, psid: str) -> PaymentSession:
        value = await kv.get(k_ps(psid))
        if value is None:
            raise NotFound("payment session not found")
        return PaymentSession.model_validate(value)

    async def retrieve_payment(self, kv: KVStore, ref: str) -> PaymentInfo:
        return _info(await self.get_session(kv, ref))

    async def settle(self, kv: KVStore, psid: str,
                     kind: str) -> PaymentSession:
        """Move an open session to its terminal state.

        A settled session keeps its first outcome.
        """
        def close(current):
            if current is None:
                raise NotFound("payment session not found")
            if current.get("status") == "open":
                current["status"] = kind
            return current

        old, new = await kv.update(k_ps(psid), close)
        if old["status"] == "open":
            log.info("mock payment %s %s", psid, kind)
        return PaymentSession.model_validate(new)

    def build_event(self, ps: PaymentSession, kind: str) -> bytes:
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": ps.psid,
            "amount": ps.amount,
            "currency": ps.currency,
            "metadata": ps.metadata,
            "created_at": int(now_ts()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        return orjson.dumps(event)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(sign(payload), sig):
            raise ValidationFailed("Invalid signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationFailed("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        kind = event.get("type", "").split(".")[-1]
        if kind in ("succeeded", "failed", "canceled"):
            return kind
        return "ignored"

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )

    async def _sessions(self, kv: KVStore) -> List[PaymentSession]:
        rows = await kv.get_by_prefix(PS_PREFIX)
        return [PaymentSession.model_validate(v) for _, v in rows]

    async def list_succeeded_payments(
            self, kv: KVStore, user_id: str) -> List[PaymentInfo]:
        return [
            _info(ps) for ps in await self._sessions(kv)
            if ps.user_id == user_id and ps.status == "succeeded"
        ]

    async def pending(self, kv: KVStore,
                      limit: int = 100) -> Tuple[int, List[dict]]:
        items = [ps for ps in await self._sessions(kv)
                 if ps.status == "open"]
        items.sort(key=lambda ps: ps.created_at, reverse=True)
        return len(items), [
            {
                "psid": ps.psid,
                "kind": ps.kind,
                "user_id": ps.user_id,
                "tracks": ps.tracks,
                "amount": ps.amount,
                "currency": ps.currency,
                "created_at": to_iso(ps.created_at),
            }
            for ps in items[:limit]
        ]


def new_adapter(provider: str, *, base_url: str = "") -> PaymentAdapter:
    if provider == "stripe":
        from .stripepay import StripePay
        return StripePay()
    return MockPay(base_url=base_url)
