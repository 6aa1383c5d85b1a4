"""
Availability and fallback policy schemas.

Bindings store these policies as JSON. Two shapes are accepted:

    Flat:
        {"mode": "after-hours-only", "timezone": "America/Toronto",
         "schedule": {"monday": {"open": "09:00", "close": "17:00"}}}

    Nested (as written by the clinic settings UI):
        {"mode": "after-hours-only",
         "afterHours": {"enabled": true, "businessHours": {"timezone": "...", "schedule": {...}}},
         "highVolume": {"threshold": 5},
         "fallback": {"type": "voicemail", "voicemailGreeting": "..."}}

Both normalize to the same models.
"""

import logging
from datetime import time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, field_validator


logger = logging.getLogger(__name__)


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# =============================================================================
# Availability Policies
# =============================================================================

class DaySchedule(BaseModel):
    """Opening hours for one weekday, in clinic-local wall time."""

    open: time
    close: time


class AlwaysPolicy(BaseModel):
    mode: Literal["always"] = "always"


class DisabledPolicy(BaseModel):
    mode: Literal["disabled"] = "disabled"


class AfterHoursOnlyPolicy(BaseModel):
    """
    AI answers only outside business hours.

    A weekday missing from ``schedule`` is closed all day. With
    ``enabled`` off the clinic counts as always open, so the AI never
    answers under this mode.
    """

    mode: Literal["after-hours-only"] = "after-hours-only"
    enabled: bool = True
    timezone: Optional[str] = Field(default=None, description="IANA timezone name")
    schedule: Dict[str, DaySchedule] = Field(default_factory=dict)

    @field_validator("schedule", mode="before")
    @classmethod
    def normalize_weekdays(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        normalized = {}
        for key, day in v.items():
            name = str(key).strip().lower()
            if name not in WEEKDAYS:
                raise ValueError(f"unknown weekday: {key}")
            # Days switched off in the UI are stored as null or {"closed": true}
            if day is None or (isinstance(day, dict) and day.get("closed")):
                continue
            normalized[name] = day
        return normalized


class OverflowOnlyPolicy(BaseModel):
    """AI answers only when the clinic already has ``threshold`` active calls."""

    mode: Literal["overflow-only"] = "overflow-only"
    threshold: int = Field(default=5, ge=1)


AvailabilityPolicy = Annotated[
    Union[AlwaysPolicy, DisabledPolicy, AfterHoursOnlyPolicy, OverflowOnlyPolicy],
    Field(discriminator="mode"),
]

_availability_adapter = TypeAdapter(AvailabilityPolicy)


def _flatten_availability(raw: Dict[str, Any]) -> Dict[str, Any]:
    flat = {"mode": raw.get("mode")}
    if flat["mode"] == "after-hours-only":
        after_hours = raw.get("afterHours") or {}
        hours = after_hours.get("businessHours") or {}
        enabled = raw.get("enabled", after_hours.get("enabled"))
        if enabled is not None:
            flat["enabled"] = enabled
        flat["timezone"] = raw.get("timezone") or hours.get("timezone")
        flat["schedule"] = raw.get("schedule", hours.get("schedule"))
    elif flat["mode"] == "overflow-only":
        threshold = raw.get("threshold")
        if threshold is None:
            threshold = (raw.get("highVolume") or {}).get("threshold")
        if threshold is not None:
            flat["threshold"] = threshold
    return flat


def parse_availability_policy(raw: Optional[Dict[str, Any]]):
    """
    Parse a binding's availability JSON.

    Returns:
        A policy model. ``AlwaysPolicy`` when nothing is configured;
        ``None`` when the JSON is present but unusable, which callers
        must treat as "not eligible".
    """
    if not raw:
        return AlwaysPolicy()
    if not isinstance(raw, dict) or not raw.get("mode"):
        logger.warning("Availability settings without a mode; treating as not eligible")
        return None
    try:
        return _availability_adapter.validate_python(_flatten_availability(raw))
    except ValidationError as e:
        logger.warning(f"Invalid availability settings ({e.error_count()} errors); treating as not eligible")
        return None


# =============================================================================
# Fallback Policies
# =============================================================================

class VoicemailFallback(BaseModel):
    type: Literal["voicemail"] = "voicemail"
    greeting: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("greeting", "voicemailGreeting"),
    )


class ForwardFallback(BaseModel):
    type: Literal["forward"] = "forward"
    number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("number", "forwardNumber"),
    )


class BusySignalFallback(BaseModel):
    type: Literal["busy-signal"] = "busy-signal"


FallbackPolicy = Annotated[
    Union[VoicemailFallback, ForwardFallback, BusySignalFallback],
    Field(discriminator="type"),
]

_fallback_adapter = TypeAdapter(FallbackPolicy)


def parse_fallback_policy(
    raw: Optional[Dict[str, Any]],
    availability_raw: Optional[Dict[str, Any]] = None,
):
    """
    Parse a binding's fallback JSON.

    Falls back to the ``fallback`` block nested in the availability
    settings, and finally to voicemail with the default greeting.
    """
    if not raw and isinstance(availability_raw, dict):
        raw = availability_raw.get("fallback")
    if not raw:
        return VoicemailFallback()
    try:
        return _fallback_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Invalid fallback settings ({e.error_count()} errors); using voicemail")
        return VoicemailFallback()
