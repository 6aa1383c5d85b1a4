"""
Carrier voice webhooks.

Twilio posts form-encoded call events here and expects TwiML back.

Endpoints:
- POST /voice/inbound: Admit an inbound call (bridge to AI or fallback)
- POST /voice/call-complete: Dial or Record action callback when the call leaves its route
- POST /voice/status: Carrier call status callback
- POST /voice/voicemail: Recording status callback
- POST /voice/voicemail-transcription: Transcription callback
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Form
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session
from twilio.twiml.voice_response import VoiceResponse

from ..core.database import get_db
from ..core.security import mask_phone
from ..core.transactions import transaction
from ..models.call_log import CallLog, CallStatus
from ..services.telephony import CallAdmissionRouter


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/voice", tags=["Voice"])

TWIML_MEDIA_TYPE = "application/xml"


def twiml_response(twiml: str) -> Response:
    return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)


@router.post("/inbound", summary="Inbound call webhook")
def inbound_call(
    to: Optional[str] = Form(None, alias="To"),
    from_number: Optional[str] = Form(None, alias="From"),
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    db: Session = Depends(get_db),
) -> Response:
    """Answer an inbound call with bridge or fallback TwiML."""
    logger.info(f"Inbound call {call_sid} from {mask_phone(from_number)}")
    twiml = CallAdmissionRouter(db).admit(to, from_number, call_sid)
    return twiml_response(twiml)


CALL_TERMINAL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}


def end_call(db: Session, call_sid: Optional[str], reason: Optional[str]) -> Optional[CallLog]:
    """Mark a logged carrier call as ended. Already-ended calls are left alone."""
    if not call_sid:
        return None
    call = db.scalars(select(CallLog).where(CallLog.call_id == call_sid)).first()
    if call is not None and call.status != CallStatus.ENDED:
        with transaction(db):
            call.status = CallStatus.ENDED
            call.ended_at = datetime.now(timezone.utc)
            call.ended_reason = reason
    return call


@router.post("/call-complete", summary="Dial and Record action callback")
def call_complete(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    dial_call_status: Optional[str] = Form(None, alias="DialCallStatus"),
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    db: Session = Depends(get_db),
) -> Response:
    """Mark the call as ended and let the carrier hang up."""
    reason = dial_call_status or call_status
    end_call(db, call_sid, reason)
    logger.info(f"Call {call_sid} complete (status: {reason})")
    return twiml_response(str(VoiceResponse()))


@router.post("/status", summary="Carrier call status callback")
def call_status_changed(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    db: Session = Depends(get_db),
) -> Response:
    # Catches callers who hang up before any action callback fires
    if call_status in CALL_TERMINAL_STATUSES:
        end_call(db, call_sid, call_status)
    logger.info(f"Call {call_sid} status: {call_status}")
    return twiml_response(str(VoiceResponse()))


@router.post("/voicemail", summary="Voicemail recording callback")
def voicemail_recorded(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    recording_sid: Optional[str] = Form(None, alias="RecordingSid"),
    recording_duration: Optional[str] = Form(None, alias="RecordingDuration"),
) -> Response:
    logger.info(f"Voicemail recorded for call {call_sid}: {recording_sid} ({recording_duration}s)")
    return twiml_response(str(VoiceResponse()))


@router.post("/voicemail-transcription", summary="Voicemail transcription callback")
def voicemail_transcribed(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    transcription_status: Optional[str] = Form(None, alias="TranscriptionStatus"),
) -> Response:
    # Transcription text is PHI and is not logged
    logger.info(f"Voicemail transcription for call {call_sid}: {transcription_status}")
    return twiml_response(str(VoiceResponse()))
