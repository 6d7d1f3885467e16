from __future__ import annotations
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from .entitlements import grant_tracks
from .errors import (
    CodeExhausted, CodeExpired, CodeInactive, CodeNotFound,
    ValidationFailed,
)
from .helpers import iso_now, parse_iso
from .model.keys import CODE_PREFIX, k_code
from .model.kv import KVStore
from .model.records import AccessCode
from .tracks import require_tracks

log = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


def new_code() -> str:
    return "STOIC-" + "".join(
        secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: Optional[str]) -> str:
    code = (code or "").strip().upper()
    if not code:
        raise ValidationFailed("Access code required")
    return code


async def generate_code(kv: KVStore, track_names: List[str],
                        expires_in_days: int = 30,
                        usage_limit: int = 1) -> AccessCode:
    tracks = require_tracks(track_names)
    if expires_in_days < 1:
        raise ValidationFailed("expiresInDays must be at least 1")
    if usage_limit < 1:
        raise ValidationFailed("usageLimit must be at least 1")

    now = datetime.now(tz=timezone.utc)
    while True:
        record = AccessCode(
            code=new_code(),
            track_names=tracks,
            usage_limit=usage_limit,
            usage_count=0,
            expires_at=(now + timedelta(days=expires_in_days)).isoformat(),
            created_at=now.isoformat(),
            active=True,
        )
        # a collision just draws again
        if await kv.set_if_absent(k_code(record.code), record.dump()):
            break
    log.info("generated access code %s for %s", record.code,
             ",".join(tracks))
    return record


def check_redeemable(record: AccessCode, now: datetime) -> None:
    if not record.active:
        raise CodeInactive()
    if now > parse_iso(record.expires_at):
        raise CodeExpired()
    if record.usage_count >= record.usage_limit:
        raise CodeExhausted()


async def redeem_code(kv: KVStore, user_id: str,
                      code: str) -> Tuple[AccessCode, List[str]]:
    """Use one redemption of ``code`` and grant its tracks to the user.

    Every rejection happens before the write, so a refused code keeps
    its usage count. The use is recorded against the user before the
    grant: a code never hands out more redemptions than its limit, and
    a user whose grant failed can redeem again without spending another
    use.
    """
    code = normalize_code(code)

    def use(current):
        if current is None:
            raise CodeNotFound()
        record = AccessCode.model_validate(current)
        if user_id in record.redeemed_by:
            return current
        check_redeemable(record, datetime.now(tz=timezone.utc))
        record.usage_count += 1
        record.last_used_at = iso_now()
        record.last_used_by = user_id
        record.redeemed_by.append(user_id)
        return record.dump()

    old, new = await kv.update(k_code(code), use)
    record = AccessCode.model_validate(new)
    added = await grant_tracks(kv, user_id, record.track_names)
    if old == new:
        log.info("user %s redeemed %s again, added %d tracks", user_id,
                 code, len(added))
    else:
        log.info("user %s redeemed %s (%d/%d), added %d tracks", user_id,
                 code, record.usage_count, record.usage_limit, len(added))
    return record, added


async def list_codes(kv: KVStore) -> List[AccessCode]:
    rows = await kv.get_by_prefix(CODE_PREFIX)
    codes = [AccessCode.model_validate(v) for _, v in rows]
    codes.sort(key=lambda c: c.created_at or "", reverse=True)
    return codes
