"""
Voice-session lifecycle webhook.

The voice platform reports call progress here. Status updates keep the
call log current so overflow-only availability can count active calls.
Transcripts and recordings in end-of-call reports are not persisted.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import UnauthorizedError
from ..core.security import authenticate_webhook, mask_phone
from ..core.transactions import transaction
from ..models.call_log import CallLog, CallStatus
from ..models.clinic import ClinicPhoneBinding
from ..schemas.common import WebhookAck
from .tools import unauthorized_response


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/voice-session", tags=["Voice Session"])


STATUS_MAP = {
    "queued": CallStatus.RINGING,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
    "ended": CallStatus.ENDED,
}


def _clinic_for_call(db: Session, call: Dict[str, Any]):
    number_id = call.get("phoneNumberId")
    if not number_id:
        return None
    binding = db.scalars(
        select(ClinicPhoneBinding).where(
            or_(
                ClinicPhoneBinding.voice_session_id == number_id,
                ClinicPhoneBinding.phone_number == number_id,
            )
        )
    ).first()
    return binding.clinic_id if binding else None


def upsert_call_status(
    db: Session,
    call: Dict[str, Any],
    new_status: CallStatus,
    ended_reason: Optional[str] = None,
) -> Optional[CallLog]:
    """Create or advance the call log row for a voice-session call."""
    call_id = call.get("id")
    if not call_id:
        return None

    with transaction(db):
        log = db.scalars(select(CallLog).where(CallLog.call_id == call_id)).first()
        if log is None:
            log = CallLog(
                call_id=call_id,
                clinic_id=_clinic_for_call(db, call),
                caller_number=mask_phone((call.get("customer") or {}).get("number")),
            )
            db.add(log)
        # An ended call never goes back to active
        if log.status != CallStatus.ENDED:
            log.status = new_status
        if new_status == CallStatus.ENDED:
            log.ended_at = log.ended_at or datetime.now(timezone.utc)
            log.ended_reason = ended_reason or log.ended_reason
    return log


@router.post("/webhook", response_model=WebhookAck, summary="Voice-session lifecycle events")
def voice_session_webhook(
    request: Request,
    payload: Dict[str, Any] = Body(default={}),
    db: Session = Depends(get_db),
):
    try:
        authenticate_webhook(request.headers)
    except UnauthorizedError:
        logger.warning("Unauthorized voice-session webhook")
        return unauthorized_response()

    message = payload.get("message") or {}
    message_type = message.get("type")
    call = message.get("call") or {}

    if message_type == "status-update":
        new_status = STATUS_MAP.get(message.get("status") or "")
        if new_status is None:
            logger.info(f"Ignoring status {message.get('status')!r} for call {call.get('id')}")
        else:
            upsert_call_status(db, call, new_status, ended_reason=message.get("endedReason"))
            logger.info(f"Call {call.get('id')} status -> {new_status.value}")

    elif message_type == "end-of-call-report":
        upsert_call_status(db, call, CallStatus.ENDED, ended_reason=message.get("endedReason"))
        logger.info(f"Call {call.get('id')} ended: {message.get('endedReason')}")

    elif message_type == "assistant-request":
        # Assistants are attached to the phone number on the platform side
        logger.info(f"Assistant request for call {call.get('id')}")

    else:
        logger.info(f"Unhandled voice-session message type: {message_type!r}")

    return WebhookAck()
