"""
Call log model.

One row per admitted carrier call, plus one per voice-session call
reported by the voice platform. Carrier calls carry the route they were
admitted on. Rows that are ``in-progress`` count toward overflow-only
availability: fallback calls are in progress from admission, AI calls
once the voice platform reports them live.
"""

import enum
import uuid

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, String, Uuid

from ..core.database import Base
from .types import UTCDateTime, utcnow


class CallStatus(str, enum.Enum):
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    ENDED = "ended"


class CallRoute(str, enum.Enum):
    AI = "ai"
    VOICEMAIL = "voicemail"
    FORWARD = "forward"
    BUSY_SIGNAL = "busy-signal"


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class CallLog(Base):
    __tablename__ = "call_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid, ForeignKey("clinics.id"), nullable=True, index=True)
    call_id = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(
        SQLEnum(CallStatus, name="call_status", values_callable=_enum_values),
        nullable=False,
        default=CallStatus.RINGING,
        index=True,
    )
    # Null for rows created by voice-session events
    route = Column(
        SQLEnum(CallRoute, name="call_route", values_callable=_enum_values),
        nullable=True,
    )
    # Stored masked; never the full caller number
    caller_number = Column(String(32), nullable=True)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    ended_at = Column(UTCDateTime, nullable=True)
    ended_reason = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<CallLog(call_id={self.call_id}, status={self.status.value})>"
