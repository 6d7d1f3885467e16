import asyncio
import hashlib
import hmac
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import orjson
import pytest
import stripe

from stoicaf.errors import NotFound, ProviderError, ValidationFailed
from stoicaf.stripepay import StripePay

WEBHOOK_SECRET = "whsec_test"


def run(coro):
    return asyncio.run(coro)


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_payload(kind: str, object_id: str) -> bytes:
    return orjson.dumps({
        "id": "evt_123",
        "object": "event",
        "type": kind,
        "data": {"object": {"id": object_id, "object": "payment_intent"}},
    })


@pytest.fixture
def pay():
    return StripePay(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET)


def intent(**kw):
    fields = dict(id="pi_1", status="succeeded", amount=400,
                  currency="usd", created=1700000000,
                  metadata={"user_id": "u1", "track_name": "Ego"})
    fields.update(kw)
    return SimpleNamespace(**fields)


class TestWebhook:
    def test_valid_signature(self, pay):
        payload = event_payload("payment_intent.succeeded", "pi_1")
        event = pay.verify_webhook(
            payload, {"stripe-signature": stripe_signature(payload)})
        assert pay.event_kind(event) == "succeeded"
        assert pay.event_ids(event) == ("pi_1", "evt_123")

    def test_forged_signature(self, pay):
        payload = event_payload("payment_intent.succeeded", "pi_1")
        with pytest.raises(ValidationFailed):
            pay.verify_webhook(payload, {
                "stripe-signature": stripe_signature(payload, "whsec_other"),
            })

    def test_missing_signature(self, pay):
        with pytest.raises(ValidationFailed):
            pay.verify_webhook(b"{}", {})

    @pytest.mark.parametrize("kind, outcome", [
        ("checkout.session.completed", "succeeded"),
        ("checkout.session.expired", "canceled"),
        ("payment_intent.payment_failed", "failed"),
        ("customer.created", "ignored"),
    ])
    def test_event_kinds(self, pay, kind, outcome):
        assert pay.event_kind({"type": kind}) == outcome


class TestPayments:
    def test_checkout_copies_metadata_to_intent(self, pay):
        created = SimpleNamespace(id="cs_1", url="https://checkout.test/cs_1")
        md = {"user_id": "u1", "track_name": "Ego"}
        with patch.object(stripe.checkout.Session, "create_async",
                          new=AsyncMock(return_value=created)) as create:
            result = run(pay.create_checkout(
                None, amount=400, currency="usd", product="P",
                description="D", metadata=md,
                success_url="https://app.test/ok",
                cancel_url="https://app.test/no",
            ))
        assert result == {"session_id": "cs_1",
                          "checkout_url": "https://checkout.test/cs_1"}
        kwargs = create.call_args.kwargs
        assert kwargs["metadata"] == md
        assert kwargs["payment_intent_data"] == {"metadata": md}
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 400

    def test_checkout_provider_failure(self, pay):
        with patch.object(stripe.checkout.Session, "create_async",
                          new=AsyncMock(side_effect=stripe.StripeError("x"))):
            with pytest.raises(ProviderError):
                run(pay.create_checkout(
                    None, amount=400, currency="usd", product="P",
                    description="D", metadata={}, success_url="s",
                    cancel_url="c",
                ))

    def test_paid_session_is_succeeded(self, pay):
        session = SimpleNamespace(
            id="cs_1", payment_status="paid", status="complete",
            amount_total=800, currency="usd", created=1700000000,
            metadata={"user_id": "u1", "is_bundle": "true",
                      "bundle_tracks": "Ego,Money"},
        )
        with patch.object(stripe.checkout.Session, "retrieve_async",
                          new=AsyncMock(return_value=session)):
            info = run(pay.retrieve_payment(None, "cs_1"))
        assert info["status"] == "succeeded"
        assert info["amount"] == 800
        assert info["metadata"]["bundle_tracks"] == "Ego,Money"

    def test_processing_intent_is_open(self, pay):
        with patch.object(stripe.PaymentIntent, "retrieve_async",
                          new=AsyncMock(return_value=intent(
                              status="processing"))):
            info = run(pay.retrieve_payment(None, "pi_1"))
        assert info["status"] == "open"

    def test_unknown_intent(self, pay):
        err = stripe.InvalidRequestError("No such payment_intent", "id")
        with patch.object(stripe.PaymentIntent, "retrieve_async",
                          new=AsyncMock(side_effect=err)):
            with pytest.raises(NotFound):
                run(pay.retrieve_payment(None, "pi_nope"))

    def test_history_search(self, pay):
        found = SimpleNamespace(data=[intent(), intent(id="pi_2")])
        with patch.object(stripe.PaymentIntent, "search_async",
                          new=AsyncMock(return_value=found)) as search:
            infos = run(pay.list_succeeded_payments(None, "u1"))
        assert [i["id"] for i in infos] == ["pi_1", "pi_2"]
        query = search.call_args.kwargs["query"]
        assert "metadata['user_id']:'u1'" in query
