from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from .errors import InvalidTrack, ValidationFailed

# ----------------------------
# Catalog
# ----------------------------
TRACKS: Dict[str, Dict[str, str]] = {
    "Money": {"title": "Master Your Wealth Mindset"},
    "Relationships": {"title": "Control Yourself, Not Others"},
    "Discipline": {"title": "Build Unbreakable Habits"},
    "Ego": {"title": "Get Out of Your Own Way"},
}
TRACK_NAMES: List[str] = list(TRACKS)
TRACK_DAYS = 30

TRACK_PRICE = 400  # cents (USD)
CURRENCY = "usd"
BUNDLE_MIN_PRICE = 2  # dollars
BUNDLE_MAX_PRICE = 20

PRODUCT_NAME = "Stoic AF Journal"


def require_track(name: Optional[str]) -> str:
    if not name or name not in TRACKS:
        raise InvalidTrack()
    return name


def require_tracks(names: Optional[Iterable[str]]) -> List[str]:
    """Validate a list of track names, dropping duplicates in order."""
    if not names or isinstance(names, str):
        raise ValidationFailed("Track names array required")
    names = list(names)
    invalid = [n for n in names if n not in TRACKS]
    if invalid:
        raise InvalidTrack(
            "Invalid track names: " + ", ".join(map(str, invalid))
        )
    out: List[str] = []
    for n in names:
        if n not in out:
            out.append(n)
    return out


def prompt_track_id(name: str) -> str:
    """Prompts are keyed by the upper-cased track name (MONEY, EGO, ...)."""
    if not name or name.upper() not in {t.upper() for t in TRACKS}:
        raise InvalidTrack()
    return name.upper()


def bundle_amount(bundle_price: Optional[float]) -> int:
    if bundle_price is None or not (
            BUNDLE_MIN_PRICE <= bundle_price <= BUNDLE_MAX_PRICE):
        raise ValidationFailed("Invalid bundle price")
    return int(round(bundle_price * 100))


# ----------------------------
# Provider metadata
# ----------------------------
def payment_metadata(user_id: str, tracks: List[str], is_bundle: bool,
                     bundle_title: Optional[str] = None) -> Dict[str, str]:
    if is_bundle:
        return {
            "user_id": user_id,
            "is_bundle": "true",
            "bundle_tracks": ",".join(tracks),
            "bundle_title": bundle_title or "Bundle",
        }
    return {"user_id": user_id, "track_name": tracks[0]}


def tracks_from_metadata(md: Optional[Dict[str, str]]) -> List[str]:
    """Tracks a payment paid for, read back from its metadata."""
    if not md:
        return []
    if md.get("is_bundle") == "true":
        raw = [t.strip() for t in (md.get("bundle_tracks") or "").split(",")]
    else:
        raw = [md.get("track_name") or ""]
    out: List[str] = []
    for t in raw:
        if t in TRACKS and t not in out:
            out.append(t)
    return out
