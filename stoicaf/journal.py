from __future__ import annotations
import logging
from typing import List, Optional, Sequence

import orjson

from .entitlements import get_purchases
from .errors import TrackNotPurchased, ValidationFailed
from .helpers import iso_now
from .model.keys import k_journal, k_profile
from .model.kv import KVStore
from .model.records import JournalEntry, Profile, entries_from
from .progression import check_entry_day
from .tracks import TRACK_DAYS

log = logging.getLogger(__name__)


def entry_text(text: Optional[str] = None,
               morning_intention: Optional[str] = None,
               evening_reflections: Optional[Sequence[str]] = None) -> str:
    """Free text wins; a structured entry is stored as its JSON text."""
    if text is not None and text.strip():
        return text.strip()
    morning = (morning_intention or "").strip()
    evening = [r.strip() for r in (evening_reflections or [])]
    if not morning and not any(evening):
        raise ValidationFailed("Entry text is required")
    return orjson.dumps({
        "morning_intention": morning,
        "evening_reflections": evening,
    }).decode()


def check_day(day: Optional[int]) -> int:
    if not isinstance(day, int) or not (1 <= day <= TRACK_DAYS):
        raise ValidationFailed("Invalid day number")
    return day


async def save_entry(kv: KVStore, user_id: str, track: str, day: int,
                     text: str) -> JournalEntry:
    """Create or replace the entry for ``day``; at most one per day.

    Writing never moves progression. Past days stay editable, the live
    day of the active track is the furthest one can write.
    """
    day = check_day(day)
    if track not in await get_purchases(kv, user_id):
        raise TrackNotPurchased()
    profile_raw = await kv.get(k_profile(user_id))
    if profile_raw is not None:
        check_entry_day(Profile.model_validate(profile_raw), track, day)

    now = iso_now()
    saved: List[JournalEntry] = []

    def upsert(current):
        entries = entries_from(current)
        existing = next((e for e in entries if e.day == day), None)
        entry = JournalEntry(
            day=day,
            entry_text=text,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        saved[:] = [entry]
        entries = [e for e in entries if e.day != day] + [entry]
        entries.sort(key=lambda e: e.day)
        return [e.dump() for e in entries]

    await kv.update(k_journal(user_id, track), upsert, default=list)
    log.info("saved journal entry user=%s track=%s day=%d",
             user_id, track, day)
    return saved[0]


async def list_entries(kv: KVStore, user_id: str,
                       track: str) -> List[JournalEntry]:
    return entries_from(await kv.get(k_journal(user_id, track)))
