"""
AI availability evaluation.

Decides whether the AI agent should answer an inbound call under a
binding's availability policy. Evaluation never raises: any failure
means "not eligible" and the call goes to the fallback.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.call_log import CallLog, CallStatus
from ..schemas.policies import (
    WEEKDAYS,
    AfterHoursOnlyPolicy,
    AlwaysPolicy,
    DisabledPolicy,
    OverflowOnlyPolicy,
)


logger = logging.getLogger(__name__)


def within_business_hours(policy: AfterHoursOnlyPolicy, now: datetime, clinic_tz: str) -> bool:
    """
    True if ``now`` falls inside the clinic's opening hours.

    A day missing from the schedule is closed. Hours whose close is
    earlier than their open run past midnight. A policy with business
    hours switched off is always open.
    """
    if not policy.enabled:
        return True
    local = now.astimezone(ZoneInfo(policy.timezone or clinic_tz))
    day = policy.schedule.get(WEEKDAYS[local.weekday()])
    if day is None:
        return False

    current = local.time().replace(tzinfo=None)
    if day.open <= day.close:
        return day.open <= current < day.close
    return current >= day.open or current < day.close


def is_eligible(
    policy,
    now: datetime,
    clinic_tz: Optional[str] = None,
    active_call_counter: Optional[Callable[[], int]] = None,
) -> bool:
    """
    Whether the AI agent may answer now.

    Args:
        policy: Parsed availability policy, or None when the stored
            settings were unusable
        now: Current instant (timezone-aware)
        clinic_tz: Clinic timezone for schedules that do not name one
        active_call_counter: Returns the clinic's current active call count
    """
    try:
        if policy is None or isinstance(policy, DisabledPolicy):
            return False
        if isinstance(policy, AlwaysPolicy):
            return True
        if isinstance(policy, AfterHoursOnlyPolicy):
            return not within_business_hours(policy, now, clinic_tz or settings.default_clinic_timezone)
        if isinstance(policy, OverflowOnlyPolicy):
            if active_call_counter is None:
                return False
            return active_call_counter() >= policy.threshold
        logger.warning(f"Unhandled availability policy {type(policy).__name__}")
        return False
    except Exception as e:
        logger.error(f"Availability evaluation failed, treating as not eligible: {type(e).__name__}: {e}")
        return False


def count_active_calls(
    db: Session,
    clinic_id: UUID,
    now: datetime,
    window_minutes: Optional[int] = None,
) -> int:
    """Calls in progress for the clinic that started within the window."""
    window = timedelta(minutes=window_minutes or settings.overflow_window_minutes)
    query = select(func.count(CallLog.id)).where(
        CallLog.clinic_id == clinic_id,
        CallLog.status == CallStatus.IN_PROGRESS,
        CallLog.started_at >= now - window,
    )
    return db.scalar(query) or 0
