"""
Inbound call admission.

Answers the carrier's voice webhook with TwiML: either bridge the call
to the AI voice session over SIP, or route it to the binding's fallback
(voicemail, forward, busy). The caller always gets a spoken response;
failures end in an apology and hangup.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from twilio.twiml.voice_response import VoiceResponse

from ..core.config import settings
from ..core.security import mask_phone
from ..core.transactions import transaction
from ..models.call_log import CallLog, CallRoute, CallStatus
from ..models.clinic import ClinicPhoneBinding
from ..schemas.policies import (
    BusySignalFallback,
    ForwardFallback,
    VoicemailFallback,
    parse_availability_policy,
    parse_fallback_policy,
)
from .availability import count_active_calls, is_eligible


logger = logging.getLogger(__name__)

ERROR_MESSAGE = "We apologize, but we encountered an error. Please try calling again."
HOLD_MESSAGE = "Please hold while I connect you."
UNAVAILABLE_MESSAGE = "We apologize, but we're unable to take your call right now. Please try again later."
BUSY_MESSAGE = "We're unable to take your call right now. Please try again later."


def default_voicemail_greeting(clinic_name: str) -> str:
    return (
        f"Thank you for calling {clinic_name}. We're unable to take your call right now. "
        "Please leave a message after the beep."
    )


def callback_url(path: str) -> str:
    return f"{settings.app_base_url}{path}"


def error_twiml() -> str:
    response = VoiceResponse()
    response.say(ERROR_MESSAGE)
    response.hangup()
    return str(response)


def fallback_route(fallback):
    """
    Route and initial call status for a fallback.

    Voicemail and forwarded calls hold the line until the carrier reports
    completion; calls that are hung up at once are ended on admission.
    """
    if isinstance(fallback, ForwardFallback):
        if fallback.number:
            return CallRoute.FORWARD, CallStatus.IN_PROGRESS
        return CallRoute.FORWARD, CallStatus.ENDED
    if isinstance(fallback, BusySignalFallback):
        return CallRoute.BUSY_SIGNAL, CallStatus.ENDED
    return CallRoute.VOICEMAIL, CallStatus.IN_PROGRESS


def normalize_sip_identity(identity: str) -> str:
    """``sip:abc@host;transport=udp`` -> ``abc@host``."""
    value = identity.strip()
    if value.lower().startswith("sip:"):
        value = value[4:]
    return value.split(";", 1)[0]


class CallAdmissionRouter:
    """
    Decides how an inbound call is answered.

    Example usage:
        router = CallAdmissionRouter(db)
        twiml = router.admit(form["To"], form["From"], form["CallSid"])
    """

    def __init__(self, db: Session):
        self.db = db

    def admit(
        self,
        dialed_identity: Optional[str],
        caller_number: Optional[str],
        call_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        try:
            binding = self.resolve_binding(dialed_identity)
            if binding is None:
                logger.error(f"No active binding for dialed identity {dialed_identity!r} (call {call_id})")
                return error_twiml()

            clinic = binding.clinic
            logger.info(f"Inbound call {call_id} from {mask_phone(caller_number)} for clinic {clinic.id}")

            policy = parse_availability_policy(binding.availability_settings)
            eligible = is_eligible(
                policy,
                now,
                clinic_tz=clinic.timezone,
                active_call_counter=lambda: count_active_calls(self.db, clinic.id, now),
            )

            if not eligible:
                fallback = parse_fallback_policy(binding.fallback_settings, binding.availability_settings)
                logger.info(f"AI not available for call {call_id}; routing to {fallback.type} fallback")
                route, status = fallback_route(fallback)
                self._record_call(clinic.id, call_id, caller_number, now, route, status)
                return self.fallback_twiml(fallback, clinic.name)

            if not binding.voice_session_id:
                logger.error(f"Binding {binding.id} has no voice session; cannot bridge call {call_id}")
                return error_twiml()

            self._record_call(clinic.id, call_id, caller_number, now, CallRoute.AI, CallStatus.RINGING)
            logger.info(f"Bridging call {call_id} to voice session for clinic {clinic.id}")
            return self.bridge_twiml(binding.voice_session_id)

        except Exception as e:
            logger.error(f"Call admission failed for call {call_id}: {type(e).__name__}: {e}")
            return error_twiml()

    # -------------------------------------------------------------------------
    # Binding lookup
    # -------------------------------------------------------------------------

    def resolve_binding(self, dialed_identity: Optional[str]) -> Optional[ClinicPhoneBinding]:
        """
        Find the active binding for a dialed number or SIP identity.

        SIP identities match ``sip_uri`` exactly, then by local part.
        """
        if not dialed_identity:
            return None
        active = ClinicPhoneBinding.is_active.is_(True)

        if "@" in dialed_identity:
            identity = normalize_sip_identity(dialed_identity)
            binding = self.db.scalars(
                select(ClinicPhoneBinding).where(
                    active, ClinicPhoneBinding.sip_uri.in_([identity, f"sip:{identity}"])
                )
            ).first()
            if binding is not None:
                return binding
            localpart = identity.split("@", 1)[0]
            return self.db.scalars(
                select(ClinicPhoneBinding).where(
                    active,
                    or_(
                        ClinicPhoneBinding.sip_uri.like(f"{localpart}@%"),
                        ClinicPhoneBinding.sip_uri.like(f"sip:{localpart}@%"),
                    ),
                )
            ).first()

        number = dialed_identity.strip()
        return self.db.scalars(
            select(ClinicPhoneBinding).where(
                active,
                or_(
                    ClinicPhoneBinding.phone_number == number,
                    ClinicPhoneBinding.original_phone_number == number,
                ),
            )
        ).first()

    # -------------------------------------------------------------------------
    # TwiML
    # -------------------------------------------------------------------------

    @staticmethod
    def bridge_twiml(voice_session_id: str) -> str:
        response = VoiceResponse()
        dial = response.dial(
            answer_on_bridge=True,
            action=callback_url("/voice/call-complete"),
            method="POST",
        )
        dial.sip(
            f"sip:{voice_session_id}@{settings.vapi_sip_domain}",
            username=voice_session_id,
            password=settings.vapi_api_key,
        )
        return str(response)

    @staticmethod
    def fallback_twiml(fallback, clinic_name: str) -> str:
        response = VoiceResponse()

        if isinstance(fallback, ForwardFallback):
            if fallback.number:
                response.say(HOLD_MESSAGE)
                response.dial(fallback.number, action=callback_url("/voice/call-complete"), method="POST")
            else:
                response.say(UNAVAILABLE_MESSAGE)
                response.hangup()
        elif isinstance(fallback, BusySignalFallback):
            response.say(BUSY_MESSAGE)
            response.hangup()
        else:
            greeting = fallback.greeting if isinstance(fallback, VoicemailFallback) else None
            response.say(greeting or default_voicemail_greeting(clinic_name))
            response.record(
                max_length=settings.voicemail_max_length,
                action=callback_url("/voice/call-complete"),
                method="POST",
                recording_status_callback=callback_url("/voice/voicemail"),
                recording_status_callback_event="completed",
                transcribe=True,
                transcribe_callback=callback_url("/voice/voicemail-transcription"),
            )

        return str(response)

    # -------------------------------------------------------------------------
    # Call log
    # -------------------------------------------------------------------------

    def _record_call(
        self,
        clinic_id,
        call_id: Optional[str],
        caller_number: Optional[str],
        now: datetime,
        route: CallRoute,
        status: CallStatus,
    ) -> None:
        """Record the admitted call; a failed write never blocks the call."""
        if not call_id:
            return
        try:
            existing = self.db.scalars(select(CallLog).where(CallLog.call_id == call_id)).first()
            if existing is not None:
                return
            with transaction(self.db):
                self.db.add(CallLog(
                    clinic_id=clinic_id,
                    call_id=call_id,
                    route=route,
                    status=status,
                    caller_number=mask_phone(caller_number),
                    started_at=now,
                    ended_at=now if status == CallStatus.ENDED else None,
                    ended_reason=route.value if status == CallStatus.ENDED else None,
                ))
        except SQLAlchemyError as e:
            logger.error(f"Could not record call {call_id}: {type(e).__name__}")
