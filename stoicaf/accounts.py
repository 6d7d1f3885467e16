from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Tuple

from .errors import StorageError, ValidationFailed
from .helpers import iso_now, is_valid_hhmm
from .identity import IdentityProvider, User
from .model.keys import (
    k_journal_prefix, k_preferences, k_profile, k_purchases,
)
from .model.kv import KVStore
from .model.records import PREFERENCE_GROUPS, Preferences, Profile
from .progression import complete_day, start_track

log = logging.getLogger(__name__)


# ----------------------------
# Signup / deletion
# ----------------------------
async def signup(kv: KVStore, idp: IdentityProvider, email: Optional[str],
                 password: Optional[str], full_name: Optional[str]) -> User:
    if not email or not password or not full_name:
        raise ValidationFailed("Email, password, and full name are required")
    user = await idp.create_user(kv, email, password, full_name.strip())
    try:
        await kv.set(k_profile(user.id), Profile.new().dump())
        await kv.set_if_absent(k_purchases(user.id), [])
    except Exception:
        # no half-created accounts: drop the identity user again
        log.exception("profile setup failed for %s, removing user", user.id)
        await idp.delete_user(kv, user.id)
        raise StorageError(
            "User created but profile setup failed. Please try again.")
    log.info("signed up user %s", user.id)
    return user


async def delete_account(kv: KVStore, idp: IdentityProvider,
                         user_id: str) -> int:
    """Remove every record of the user, then the identity user."""
    removed = await kv.delete_by_prefix(k_journal_prefix(user_id))
    for key in (k_profile(user_id), k_purchases(user_id),
                k_preferences(user_id)):
        await kv.delete(key)
    await idp.delete_user(kv, user_id)
    log.info("deleted account %s (%d journals)", user_id, removed)
    return removed


# ----------------------------
# Profile
# ----------------------------
async def ensure_profile(kv: KVStore, user_id: str) -> Profile:
    """Read the profile, creating the defaults on first access."""
    value = await kv.get(k_profile(user_id))
    if value is not None:
        return Profile.model_validate(value)
    profile = Profile.new()
    if not await kv.set_if_absent(k_profile(user_id), profile.dump()):
        # created concurrently; use theirs
        return Profile.model_validate(await kv.get(k_profile(user_id)))
    await kv.set_if_absent(k_purchases(user_id), [])
    return profile


async def _update_profile(kv: KVStore, user_id: str, fn) -> Any:
    """Run ``fn(profile) -> (profile, extra)`` under optimistic retry."""
    await ensure_profile(kv, user_id)
    out = []

    def apply(current):
        profile, extra = fn(Profile.model_validate(current))
        out[:] = [extra]
        return profile.dump()

    _, new = await kv.update(k_profile(user_id), apply)
    return Profile.model_validate(new), out[0]


async def update_profile(kv: KVStore, user_id: str,
                         onboarding_completed: Optional[bool]) -> Profile:
    # progression fields only move through start/complete
    def edit(profile: Profile):
        if onboarding_completed is not None:
            profile.onboarding_completed = onboarding_completed
        profile.updated_at = iso_now()
        return profile, None

    profile, _ = await _update_profile(kv, user_id, edit)
    return profile


async def start(kv: KVStore, user_id: str, track: str,
                purchases) -> Tuple[Profile, bool]:
    now = iso_now()
    profile, is_restart = await _update_profile(
        kv, user_id, lambda p: start_track(p, purchases, track, now))
    log.info("user %s started %s (restart=%s)", user_id, track, is_restart)
    return profile, is_restart


async def complete(kv: KVStore, user_id: str, track: str,
                   day: int) -> Tuple[Profile, bool]:
    now = iso_now()
    profile, finished = await _update_profile(
        kv, user_id, lambda p: complete_day(p, track, day, now))
    log.info("user %s completed %s day %d%s", user_id, track, day,
             " (track finished)" if finished else "")
    return profile, finished


# ----------------------------
# Preferences
# ----------------------------
def merge_preferences(current: Dict[str, Any],
                      updates: Dict[str, Any]) -> Dict[str, Any]:
    """Top-level keys replace, the nested groups merge key by key."""
    reminder = updates.get("daily_reminder_time")
    if reminder is not None and not is_valid_hhmm(str(reminder)):
        raise ValidationFailed(
            "Invalid time format. Use HH:MM (24-hour format)")
    merged = {**current, **updates}
    for group in PREFERENCE_GROUPS:
        merged[group] = {
            **(current.get(group) or {}),
            **(updates.get(group) or {}),
        }
    merged["updated_at"] = iso_now()
    return Preferences.model_validate(merged).dump()


def _default_preferences() -> Dict[str, Any]:
    return Preferences(created_at=iso_now()).dump()


async def get_preferences(kv: KVStore, user_id: str) -> Dict[str, Any]:
    value = await kv.get(k_preferences(user_id))
    if value is not None:
        return Preferences.model_validate(value).dump()
    prefs = _default_preferences()
    await kv.set_if_absent(k_preferences(user_id), prefs)
    return prefs


async def update_preferences(kv: KVStore, user_id: str,
                             updates: Dict[str, Any]) -> Dict[str, Any]:
    _, new = await kv.update(
        k_preferences(user_id),
        lambda current: merge_preferences(current, updates),
        default=_default_preferences,
    )
    return new
