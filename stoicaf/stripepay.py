from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import stripe

from .errors import NotFound, ProviderError, ValidationFailed
from .mockpay import CheckoutResult, IntentResult, PaymentAdapter, PaymentInfo
from .model.kv import KVStore

log = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

# event type -> outcome
_EVENT_KINDS = {
    "checkout.session.completed": "succeeded",
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "canceled",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


def _plain(obj: Any) -> Dict[str, str]:
    if not obj:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _session_status(session) -> str:
    if session.payment_status in ("paid", "no_payment_required"):
        return "succeeded"
    if session.status == "expired":
        return "canceled"
    return "open"


def _intent_status(intent) -> str:
    if intent.status == "succeeded":
        return "succeeded"
    if intent.status == "canceled":
        return "canceled"
    return "open"


def _intent_info(intent) -> PaymentInfo:
    return {
        "id": intent.id,
        "status": _intent_status(intent),
        "amount": int(intent.amount or 0),
        "currency": intent.currency or "usd",
        "created": float(intent.created or 0),
        "metadata": _plain(intent.metadata),
    }


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, secret_key: str = None,
                 webhook_secret: str = None) -> None:
        self.secret_key = secret_key or STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or STRIPE_WEBHOOK_SECRET
        stripe.api_key = self.secret_key

    async def create_checkout(
            self, kv, *, amount, currency, product, description, metadata,
            success_url, cancel_url,
    ) -> CheckoutResult:
        try:
            session = await stripe.checkout.Session.create_async(
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": product,
                            "description": description,
                        },
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                # copied onto the intent so the recovery search finds it
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            log.error("stripe checkout create failed: %s", e)
            raise ProviderError("Failed to create checkout session")
        return {"session_id": session.id, "checkout_url": session.url}

    async def create_intent(
            self, kv, *, amount, currency, description, metadata,
    ) -> IntentResult:
        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=amount,
                currency=currency,
                metadata=metadata,
                description=description,
            )
        except stripe.StripeError as e:
            log.error("stripe intent create failed: %s", e)
            raise ProviderError("Failed to create payment intent")
        return {
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
        }

    async def retrieve_payment(self, kv: KVStore, ref: str) -> PaymentInfo:
        try:
            if ref.startswith("cs_"):
                session = await stripe.checkout.Session.retrieve_async(ref)
                return {
                    "id": session.id,
                    "status": _session_status(session),
                    "amount": int(session.amount_total or 0),
                    "currency": session.currency or "usd",
                    "created": float(session.created or 0),
                    "metadata": _plain(session.metadata),
                }
            intent = await stripe.PaymentIntent.retrieve_async(ref)
            return _intent_info(intent)
        except stripe.InvalidRequestError as e:
            log.warning("stripe lookup of %s failed: %s", ref, e)
            raise NotFound("Payment not found")
        except stripe.StripeError as e:
            log.error("stripe lookup of %s failed: %s", ref, e)
            raise ProviderError("Payment verification failed")

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise ValidationFailed("No signature header")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig, self.webhook_secret
            )
        except ValueError:
            raise ValidationFailed("Invalid payload")
        except stripe.SignatureVerificationError:
            raise ValidationFailed("Invalid signature")
        return {
            "id": event.id,
            "type": event.type,
            "object_id": event.data.object.id,
        }

    def event_kind(self, event: dict) -> str:
        return _EVENT_KINDS.get(event.get("type", ""), "ignored")

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return event.get("object_id", ""), event.get("id")

    async def list_succeeded_payments(
            self, kv: KVStore, user_id: str) -> List[PaymentInfo]:
        query = (f"status:'succeeded' AND "
                 f"metadata['user_id']:'{user_id}'")
        try:
            result = await stripe.PaymentIntent.search_async(
                query=query, limit=100
            )
        except stripe.StripeError as e:
            log.error("stripe payment search failed: %s", e)
            raise ProviderError("Payment history lookup failed")
        return [_intent_info(pi) for pi in result.data]
