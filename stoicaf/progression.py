"""Day-by-day track progression.

States: no active track -> in progress (day 1..30) -> completed, which
drops back to no active track. The functions here are pure: they take a
profile and return the next one, or raise a ``StateConflict`` and leave
the caller with nothing to write. Counters only move on an accepted
``complete_day``; they are never recomputed from stored entries.
"""
from __future__ import annotations
from typing import List, Tuple

from .errors import (
    DayAhead, DayMismatch, NoActiveTrack, NotCurrentTrack, TrackInProgress,
    TrackNotPurchased,
)
from .model.records import CompletedTrack, Profile
from .tracks import TRACK_DAYS


def start_track(profile: Profile, purchases: List[str], track: str,
                now: str) -> Tuple[Profile, bool]:
    """Make ``track`` the active track at day 1.

    Allowed from no active track, or as a switch away from a different
    track (progress on that one is dropped). Returns the new profile and
    whether this restarts a track completed before.
    """
    if track not in purchases:
        raise TrackNotPurchased()
    if profile.current_track == track:
        raise TrackInProgress(
            f"{track} track already in progress "
            f"(day {profile.current_day})"
        )
    is_restart = profile.has_completed(track)
    started = profile.model_copy(update={
        "current_track": track,
        "current_day": 1,
        "updated_at": now,
    })
    return started, is_restart


def complete_day(profile: Profile, track: str, day: int,
                 now: str) -> Tuple[Profile, bool]:
    """Complete the live day of the active track.

    Returns the new profile and whether the track was finished.
    """
    if profile.current_track is None:
        raise NoActiveTrack()
    if profile.current_track != track:
        raise NotCurrentTrack()
    if day != profile.current_day:
        raise DayMismatch(
            f"Not the current day (current day is {profile.current_day})"
        )

    update = {
        "streak": profile.streak + 1,
        "total_days_completed": profile.total_days_completed + 1,
        "updated_at": now,
    }
    finished = day >= TRACK_DAYS
    if finished:
        update.update({
            "current_track": None,
            "current_day": 0,
            "tracks_completed": [
                *profile.tracks_completed,
                CompletedTrack(track=track, completed_at=now,
                               days_completed=TRACK_DAYS),
            ],
        })
    else:
        update["current_day"] = day + 1
    return profile.model_copy(update=update), finished


def check_entry_day(profile: Profile, track: str, day: int) -> None:
    """Entries for the active track may not run ahead of the live day."""
    if profile.current_track == track and day > profile.current_day:
        raise DayAhead()
