from __future__ import annotations
import logging
from typing import Any, Dict

from pydantic import ValidationError

from .errors import NotFound, ValidationFailed
from .model.keys import k_prompts
from .model.kv import KVStore
from .model.records import TrackPrompts
from .tracks import prompt_track_id

log = logging.getLogger(__name__)


def validate_prompts(data: Dict[str, Any]) -> TrackPrompts:
    track_id = data.get("track_id")
    if not isinstance(track_id, str) or track_id != track_id.upper():
        raise ValidationFailed("Invalid track_id")
    prompt_track_id(track_id)
    days = data.get("days")
    if not isinstance(days, list) or len(days) != 30:
        raise ValidationFailed("Days array must contain exactly 30 days")
    try:
        return TrackPrompts.model_validate(data)
    except ValidationError as e:
        # first failing day, 1-based like the day numbers
        loc = next((err["loc"] for err in e.errors()
                    if len(err["loc"]) > 1 and err["loc"][0] == "days"),
                   None)
        if loc is not None:
            raise ValidationFailed(
                f"Day {loc[1] + 1} is missing required fields")
        raise ValidationFailed("Invalid prompts")


async def seed_prompts(kv: KVStore, data: Dict[str, Any]) -> TrackPrompts:
    prompts = validate_prompts(data)
    await kv.set(k_prompts(prompts.track_id), prompts.dump())
    log.info("seeded prompts for %s", prompts.track_id)
    return prompts


async def get_prompts(kv: KVStore, track_name: str) -> Dict[str, Any]:
    value = await kv.get(k_prompts(prompt_track_id(track_name)))
    if value is None:
        raise NotFound("Track prompts not found")
    return value
