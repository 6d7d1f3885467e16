"""Typed records stored as JSON in the key-value store.

Records are validated with pydantic on every read and dumped back to plain
JSON on every write, so handlers never pass raw blobs around. Field names
match the stored JSON; camelCase fields (access codes) are kept through
aliases.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..helpers import iso_now


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ----------------------------
# Profile
# ----------------------------
class CompletedTrack(Record):
    track: str
    completed_at: Optional[str] = None
    days_completed: int = 30


class Profile(Record):
    current_track: Optional[str] = None
    current_day: int = 0
    streak: int = 0
    total_days_completed: int = 0
    tracks_completed: List[CompletedTrack] = Field(default_factory=list)
    onboarding_completed: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("tracks_completed", mode="before")
    @classmethod
    def _legacy_track_names(cls, v):
        # older profiles stored bare track names
        if not isinstance(v, list):
            return []
        return [{"track": t} if isinstance(t, str) else t for t in v]

    @classmethod
    def new(cls) -> "Profile":
        return cls(created_at=iso_now())

    def has_completed(self, track: str) -> bool:
        return any(t.track == track for t in self.tracks_completed)


# ----------------------------
# Purchases
# ----------------------------
def purchases_from(value: Any) -> List[str]:
    """Normalize a stored purchase record: list of unique track names."""
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for t in value:
        if isinstance(t, str) and t not in out:
            out.append(t)
    return out


# ----------------------------
# Journal
# ----------------------------
class JournalEntry(Record):
    day: int = Field(ge=1, le=30)
    entry_text: str
    created_at: str
    updated_at: str


def entries_from(value: Any) -> List[JournalEntry]:
    if not isinstance(value, list):
        return []
    return sorted(
        (JournalEntry.model_validate(e) for e in value),
        key=lambda e: e.day,
    )


# ----------------------------
# Access codes
# ----------------------------
class AccessCode(Record):
    code: str
    track_names: List[str] = Field(alias="trackNames")
    usage_limit: int = Field(alias="usageLimit", ge=1)
    usage_count: int = Field(default=0, alias="usageCount", ge=0)
    expires_at: str = Field(alias="expiresAt")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    active: bool = True
    last_used_at: Optional[str] = Field(default=None, alias="lastUsedAt")
    last_used_by: Optional[str] = Field(default=None, alias="lastUsedBy")
    redeemed_by: List[str] = Field(default_factory=list, alias="redeemedBy")


# ----------------------------
# Preferences
# ----------------------------
class EmailNotifications(Record):
    streaks: bool = True
    milestones: bool = True
    reminders: bool = True
    weekly_summary: bool = True


class JournalExport(Record):
    format: str = "pdf"
    include_quotes: bool = True
    include_challenges: bool = True


class Display(Record):
    theme: str = "light"
    show_streak_counter: bool = True
    show_progress_percentage: bool = True


class Privacy(Record):
    data_sharing: bool = False
    analytics: bool = True


class Preferences(Record):
    daily_reminder_time: str = "18:00"
    daily_reminder_enabled: bool = True
    email_notifications: EmailNotifications = Field(
        default_factory=EmailNotifications)
    journal_export: JournalExport = Field(default_factory=JournalExport)
    display: Display = Field(default_factory=Display)
    privacy: Privacy = Field(default_factory=Privacy)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


PREFERENCE_GROUPS = ("email_notifications", "journal_export", "display",
                     "privacy")


# ----------------------------
# Prompts
# ----------------------------
class PromptDay(Record):
    day: int = Field(ge=1, le=30)
    daily_theme: str = Field(min_length=1)
    stoic_quote: str = Field(min_length=1)
    quote_author: str = Field(min_length=1)
    bro_translation: str = Field(min_length=1)
    todays_challenge: str = Field(min_length=1)
    todays_intention: str = Field(min_length=1)
    evening_reflection_prompts: List[str] = Field(min_length=1)


class TrackPrompts(Record):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    track_id: str
    days: List[PromptDay] = Field(min_length=30, max_length=30)


# ----------------------------
# Payments
# ----------------------------
class PaymentSession(Record):
    """Mock provider state for one checkout session or payment intent."""
    psid: str
    kind: str  # checkout | intent
    user_id: str
    tracks: List[str]
    is_bundle: bool = False
    amount: int
    currency: str = "usd"
    status: str = "open"  # open | succeeded | failed | canceled
    created_at: float
    description: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class Fulfilment(Record):
    payment_ref: str
    user_id: str
    tracks: List[str]
    source: str  # webhook | client | verify | recover
    fulfilled_at: str


# ----------------------------
# Local identity
# ----------------------------
class AuthUser(Record):
    id: str
    email: str
    name: Optional[str] = None
    password_hash: str
    created_at: str
    updated_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None
