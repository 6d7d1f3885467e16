"""Purchase records and the fulfilment of paid-for tracks.

Granting is idempotent: the purchase list is a set of track names and is
only ever extended through ``KVStore.update``, so a webhook, a client
confirmation and a recovery sweep racing each other for the same payment
all converge on the same record without losing or duplicating tracks.
"""
from __future__ import annotations
import logging
from typing import Iterable, List, Optional, Tuple

from .errors import (
    PaymentMismatch, PaymentNotCompleted, TrackAlreadyPurchased,
)
from .helpers import iso_now
from .model.keys import k_fulfilment, k_idemp, k_purchases
from .model.kv import KVStore
from .model.records import Fulfilment, purchases_from
from .tracks import tracks_from_metadata

log = logging.getLogger(__name__)


async def get_purchases(kv: KVStore, user_id: str) -> List[str]:
    return purchases_from(await kv.get(k_purchases(user_id)))


async def ensure_not_owned(kv: KVStore, user_id: str,
                           tracks: List[str]) -> None:
    """Reject a checkout for tracks the user already has."""
    owned = set(await get_purchases(kv, user_id))
    already = [t for t in tracks if t in owned]
    if not already:
        return
    if len(tracks) == 1:
        raise TrackAlreadyPurchased()
    raise TrackAlreadyPurchased("Already own: " + ", ".join(already))


async def grant_tracks(kv: KVStore, user_id: str,
                       tracks: Iterable[str]) -> List[str]:
    """Add ``tracks`` to the user's purchases; returns the newly added."""
    tracks = list(tracks)

    def add(current):
        owned = purchases_from(current)
        for t in tracks:
            if t not in owned:
                owned.append(t)
        return owned

    old, new = await kv.update(k_purchases(user_id), add, default=list)
    before = set(purchases_from(old))
    added = [t for t in new if t not in before]
    if added:
        log.info("granted %s to user %s", ",".join(added), user_id)
    return added


async def revoke_tracks(kv: KVStore, user_id: str,
                        tracks: Iterable[str]) -> List[str]:
    """Remove ``tracks`` from the user's purchases; returns the removed."""
    tracks = set(tracks)

    def remove(current):
        return [t for t in purchases_from(current) if t not in tracks]

    old, _ = await kv.update(k_purchases(user_id), remove, default=list)
    removed = [t for t in purchases_from(old) if t in tracks]
    if removed:
        log.info("revoked %s from user %s", ",".join(removed), user_id)
    return removed


async def event_seen(kv: KVStore, event_id: Optional[str]) -> bool:
    return bool(event_id) and await kv.get(k_idemp(event_id)) is not None


async def mark_event(kv: KVStore, event_id: Optional[str]) -> bool:
    """Record a handled event; False if it was already recorded.

    Only called once the event's grant went through, so a failed
    delivery is retried in full rather than skipped.
    """
    if not event_id:
        return True
    return await kv.set_if_absent(k_idemp(event_id), {"at": iso_now()})


async def fulfil_payment(
    kv: KVStore,
    payment: dict,
    *,
    source: str,
    expected_user: Optional[str] = None,
) -> Tuple[List[str], List[str]]:
    """Grant the tracks a succeeded payment paid for.

    ``payment`` is a ``PaymentInfo`` from the payment adapter. Returns
    ``(tracks, added)``: every track the payment covers and those that
    were not owned before. The grant runs before the fulfilment record is
    written, so a crash in between leaves an owned track and a retry that
    is a no-op, never a recorded payment without its tracks.
    """
    if payment.get("status") != "succeeded":
        raise PaymentNotCompleted()
    metadata = payment.get("metadata") or {}
    user_id = metadata.get("user_id")
    tracks = tracks_from_metadata(metadata)
    if not user_id or not tracks:
        raise PaymentMismatch("Payment is missing user or track metadata")
    if expected_user is not None and user_id != expected_user:
        raise PaymentMismatch("Payment belongs to a different user")

    added = await grant_tracks(kv, user_id, tracks)

    ref = payment["id"]
    first = await kv.set_if_absent(k_fulfilment(ref), Fulfilment(
        payment_ref=ref,
        user_id=user_id,
        tracks=tracks,
        source=source,
        fulfilled_at=iso_now(),
    ).dump())
    if first:
        log.info("fulfilled payment %s for user %s via %s",
                 ref, user_id, source)
    return tracks, added


async def get_fulfilment(kv: KVStore, ref: str) -> Optional[Fulfilment]:
    value = await kv.get(k_fulfilment(ref))
    return Fulfilment.model_validate(value) if value else None
