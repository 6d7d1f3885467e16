"""Request bodies.

Fields keep the camelCase names clients send through aliases. Most are
optional here and checked in the handler, which reports the same
messages for a missing value and an invalid one.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---- auth / account
class SignupBody(Body):
    email: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")


class LoginBody(Body):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdateBody(Body):
    onboarding_completed: Optional[bool] = None


class AccountUpdateBody(Body):
    name: Optional[str] = None
    email: Optional[str] = None
    current_password: Optional[str] = Field(default=None,
                                            alias="currentPassword")
    new_password: Optional[str] = Field(default=None, alias="newPassword")


class PreferencesBody(Body):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    daily_reminder_time: Optional[str] = None
    daily_reminder_enabled: Optional[bool] = None
    email_notifications: Optional[Dict[str, Any]] = None
    journal_export: Optional[Dict[str, Any]] = None
    display: Optional[Dict[str, Any]] = None
    privacy: Optional[Dict[str, Any]] = None


# ---- payments
class CheckoutBody(Body):
    track_name: Optional[str] = Field(default=None, alias="trackName")


class BundleCheckoutBody(Body):
    bundle_price: Optional[float] = Field(default=None, alias="bundlePrice")
    track_names: Optional[List[str]] = Field(default=None,
                                             alias="trackNames")
    bundle_title: Optional[str] = Field(default=None, alias="bundleTitle")


class IntentBody(Body):
    track_name: Optional[str] = Field(default=None, alias="trackName")
    is_bundle: bool = Field(default=False, alias="isBundle")
    bundle_price: Optional[float] = Field(default=None, alias="bundlePrice")
    bundle_tracks: Optional[List[str]] = Field(default=None,
                                               alias="bundleTracks")
    bundle_title: Optional[str] = Field(default=None, alias="bundleTitle")


class ProcessIntentBody(Body):
    payment_intent_id: Optional[str] = Field(default=None,
                                             alias="paymentIntentId")
    track_name: Optional[str] = Field(default=None, alias="trackName")


class ProcessSessionBody(Body):
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class VerifyBody(Body):
    payment_intent_id: Optional[str] = Field(default=None,
                                             alias="paymentIntentId")


# ---- journal
class TrackBody(Body):
    track_name: Optional[str] = Field(default=None, alias="trackName")


class EntryBody(Body):
    track_name: Optional[str] = Field(default=None, alias="trackName")
    day: Optional[int] = None
    entry_text: Optional[str] = Field(default=None, alias="entryText")
    morning_intention: Optional[str] = Field(default=None,
                                             alias="morningIntention")
    evening_reflections: Optional[List[str]] = Field(
        default=None, alias="eveningReflections")


class CompleteDayBody(Body):
    track_name: Optional[str] = Field(default=None, alias="trackName")
    day: Optional[int] = None


# ---- admin
class GrantBody(Body):
    user_id: Optional[str] = Field(default=None, alias="userId")
    track_names: Optional[List[str]] = Field(default=None,
                                             alias="trackNames")


class GenerateCodeBody(Body):
    track_names: Optional[List[str]] = Field(default=None,
                                             alias="trackNames")
    expires_in_days: int = Field(default=30, alias="expiresInDays")
    usage_limit: int = Field(default=1, alias="usageLimit")


class RedeemBody(Body):
    code: Optional[str] = None


class BootstrapBody(Body):
    email: Optional[str] = None
    secret_key: Optional[str] = Field(default=None, alias="secretKey")
