"""
Tool dispatch engine.

Executes one tool call from the voice agent:

    authenticate -> resolve tool -> resolve clinic context
        -> select backend -> invoke adapter -> audit -> spoken result

Backend selection per call: an ACTIVE PMS integration wins, then a
connected calendar, otherwise the call fails with a configuration
message. Every outcome carries a sentence the agent can read aloud.
"""

import dataclasses
import enum
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..adapters.base import (
    AdapterErrorKind,
    AdapterResult,
    BackendAdapter,
    BookingRequest,
    PatientDetails,
)
from ..adapters.calendar import CalendarAdapter
from ..adapters.pms import PracticeManagementAdapter
from ..core.config import settings
from ..core.exceptions import AuditWriteError
from ..core.security import authenticate_webhook, mask_phone
from ..core.transactions import transaction
from ..models.clinic import Clinic, ClinicPhoneBinding
from ..models.pms_integration import PmsIntegration, PmsIntegrationStatus
from ..schemas.tool_call import ToolCallEnvelope, ToolCallResult, failed, ok
from . import speech
from .audit import PmsAuditService
from .credentials import CredentialLifecycleManager
from .staff_alerts import StaffAlertService
from .tools import CATALOG, ToolName, resolve_tool


logger = logging.getLogger(__name__)

# Handlers return the adapter outcome plus the success result, or None on failure
Handled = Tuple[AdapterResult, Optional[ToolCallResult]]


class InvalidParameters(ValueError):
    """The call lacks parameters the tool needs; raised before any backend call."""


@dataclass
class DispatchContext:
    binding: ClinicPhoneBinding
    clinic: Clinic
    integration: Optional[PmsIntegration]

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.clinic.timezone or settings.default_clinic_timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo(settings.default_clinic_timezone)


# =============================================================================
# Parameter helpers
# =============================================================================

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_payload(value: Any) -> Any:
    """Convert adapter records into camelCase JSON-ready structures."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): to_payload(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, list):
        return [to_payload(item) for item in value]
    if isinstance(value, dict):
        return {key: to_payload(item) for key, item in value.items()}
    return value


def _first(params: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = params.get(key)
        if value not in (None, ""):
            return value
    return None


def _required(params: Mapping[str, Any], *keys: str) -> Any:
    value = _first(params, *keys)
    if value is None:
        raise InvalidParameters(f"missing {'/'.join(keys)}")
    return value


def _parse_when(value: Any, tz) -> datetime:
    """Parse a requested time; values without an offset are clinic-local."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidParameters(f"unparseable time {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _parse_day(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as e:
        raise InvalidParameters(f"unparseable date {value!r}") from e


def _int_param(value: Any, default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError) as e:
        raise InvalidParameters(f"not a number: {value!r}") from e


def _split_name(params: Mapping[str, Any]) -> Tuple[str, str]:
    first = _first(params, "firstName", "first_name")
    last = _first(params, "lastName", "last_name")
    if first or last:
        return str(first or "").strip(), str(last or "").strip()
    full = _first(params, "patientName", "name")
    if not full:
        return "", ""
    head, _, tail = str(full).strip().partition(" ")
    return head, tail.strip()


_PATIENT_UPDATE_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "phone": "phone",
    "email": "email",
    "dateOfBirth": "date_of_birth",
    "address": "address",
}


# =============================================================================
# Engine
# =============================================================================

class ToolDispatchEngine:
    """
    Routes voice-agent tool calls to the clinic's backend.

    Example usage:
        engine = ToolDispatchEngine(db)
        result = engine.dispatch(envelope, request.headers)
        return result.to_response()
    """

    def __init__(
        self,
        db: Session,
        pms_adapter_factory: Callable[[PmsIntegration], BackendAdapter] = PracticeManagementAdapter,
        calendar_adapter_factory: Callable[[Clinic], BackendAdapter] = CalendarAdapter,
        staff_alerts: Optional[StaffAlertService] = None,
    ):
        self.db = db
        self.audit = PmsAuditService(db)
        self.pms_adapter_factory = pms_adapter_factory
        self.calendar_adapter_factory = calendar_adapter_factory
        self._staff_alerts = staff_alerts
        self._handlers: Dict[ToolName, Callable[..., Handled]] = {
            ToolName.SEARCH_PATIENTS: self._search_patients,
            ToolName.GET_PATIENT_INFO: self._get_patient_info,
            ToolName.CREATE_PATIENT: self._create_patient,
            ToolName.UPDATE_PATIENT: self._update_patient,
            ToolName.CHECK_AVAILABILITY: self._check_availability,
            ToolName.BOOK_APPOINTMENT: self._book_appointment,
            ToolName.RESCHEDULE_APPOINTMENT: self._reschedule_appointment,
            ToolName.CANCEL_APPOINTMENT: self._cancel_appointment,
            ToolName.GET_APPOINTMENTS: self._get_appointments,
            ToolName.ADD_PATIENT_NOTE: self._add_patient_note,
            ToolName.GET_PATIENT_INSURANCE: self._get_patient_insurance,
            ToolName.GET_PATIENT_BALANCE: self._get_patient_balance,
            ToolName.GET_PROVIDERS: self._get_providers,
        }

    @property
    def staff_alerts(self) -> StaffAlertService:
        if self._staff_alerts is None:
            self._staff_alerts = StaffAlertService()
        return self._staff_alerts

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    @staticmethod
    def authenticate(headers: Mapping[str, str]) -> None:
        """Raises ``UnauthorizedError`` unless the request carries a valid webhook credential."""
        authenticate_webhook(headers)

    def dispatch(self, envelope: ToolCallEnvelope, headers: Mapping[str, str]) -> ToolCallResult:
        """
        Authenticate and execute one tool call.

        Raises:
            UnauthorizedError: Request failed authentication
            AuditWriteError: The audit entry could not be written; the
                computed result is attached as ``.result``
        """
        self.authenticate(headers)

        tool = resolve_tool(envelope.tool_name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {envelope.tool_name!r} (call {envelope.call_id})")
            return failed("unknown_tool", speech.UNKNOWN_TOOL_MESSAGE)

        context = self.resolve_context(envelope.dialed_number_id)
        if context is None:
            logger.error(f"No clinic binding for {envelope.dialed_number_id!r} (call {envelope.call_id})")
            return failed("configuration_not_found", speech.CONFIGURATION_NOT_FOUND_MESSAGE)

        if tool == ToolName.TRANSFER_TO_HUMAN:
            return self._transfer_to_human(context, envelope)

        adapter, integration = self.select_backend(context)
        if adapter is None:
            logger.warning(f"Clinic {context.clinic.id} has no active backend for {tool.value}")
            return failed("not_configured", speech.NOT_CONFIGURED_MESSAGE)

        try:
            return self._invoke(tool, adapter, integration, context, envelope)
        finally:
            adapter.close()
            if isinstance(adapter, CalendarAdapter):
                self._store_calendar_token(adapter, context.clinic)

    def _store_calendar_token(self, adapter: CalendarAdapter, clinic: Clinic) -> None:
        """Keep an access token google-auth refreshed so the next call can reuse it."""
        refreshed = adapter.refreshed_token()
        if refreshed is None:
            return
        token, expiry = refreshed
        try:
            with transaction(self.db):
                clinic.calendar_access_token = token
                clinic.calendar_token_expiry = expiry
            logger.info(f"Stored refreshed calendar token for clinic {clinic.id}")
        except SQLAlchemyError as e:
            logger.error(f"Could not store refreshed calendar token for clinic {clinic.id}: {type(e).__name__}")

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve_context(self, dialed_number_id: Optional[str]) -> Optional[DispatchContext]:
        """Find the binding by voice-session id, then by phone number."""
        if not dialed_number_id:
            return None
        active = ClinicPhoneBinding.is_active.is_(True)
        binding = self.db.scalars(
            select(ClinicPhoneBinding).where(active, ClinicPhoneBinding.voice_session_id == dialed_number_id)
        ).first()
        if binding is None:
            binding = self.db.scalars(
                select(ClinicPhoneBinding).where(
                    active,
                    (ClinicPhoneBinding.phone_number == dialed_number_id)
                    | (ClinicPhoneBinding.original_phone_number == dialed_number_id),
                )
            ).first()
        if binding is None:
            return None
        return DispatchContext(binding=binding, clinic=binding.clinic, integration=binding.pms_integration)

    def select_backend(
        self, context: DispatchContext
    ) -> Tuple[Optional[BackendAdapter], Optional[PmsIntegration]]:
        integration = context.integration
        if integration is not None and integration.status == PmsIntegrationStatus.ACTIVE:
            return self.pms_adapter_factory(integration), integration
        if context.clinic.calendar_connected:
            return self.calendar_adapter_factory(context.clinic), None
        return None, None

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def _invoke(
        self,
        tool: ToolName,
        adapter: BackendAdapter,
        integration: Optional[PmsIntegration],
        context: DispatchContext,
        envelope: ToolCallEnvelope,
    ) -> ToolCallResult:
        handler = self._handlers[tool]
        started = time.perf_counter()
        try:
            adapter_result, outcome = handler(adapter, envelope.parameters, context, envelope)
        except InvalidParameters as e:
            logger.info(f"{tool.value} rejected before backend call: {e}")
            return failed("invalid_parameters", speech.missing_parameter_message(tool))
        except Exception as e:
            # The backend may have been reached; fall through to the audited failure path
            logger.exception(f"{tool.value} raised on {adapter.name} backend: {type(e).__name__}")
            adapter_result = AdapterResult.failure(
                AdapterErrorKind.UPSTREAM,
                f"{type(e).__name__}: {e}"[:500],
                endpoint=f"/{tool.value}",
            )
            outcome = None
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        if outcome is None:
            kind = adapter_result.error_kind or AdapterErrorKind.UPSTREAM
            logger.warning(
                f"{tool.value} failed on {adapter.name} backend: "
                f"{kind.value} ({adapter_result.status}) {adapter_result.error_message}"
            )
            outcome = failed(kind.value, speech.failure_message(tool, kind))

            if integration is not None and kind == AdapterErrorKind.UNAUTHORIZED:
                CredentialLifecycleManager(self.db).mark_error(
                    integration, f"PMS rejected credentials (HTTP {adapter_result.status}) during {tool.value}"
                )
        else:
            logger.info(f"{tool.value} succeeded on {adapter.name} backend in {elapsed_ms}ms")

        if CATALOG[tool].touches_phi:
            self._audit(tool, adapter, adapter_result, elapsed_ms, integration, context, envelope, outcome)
        return outcome

    def _audit(
        self,
        tool: ToolName,
        adapter: BackendAdapter,
        adapter_result: AdapterResult,
        elapsed_ms: int,
        integration: Optional[PmsIntegration],
        context: DispatchContext,
        envelope: ToolCallEnvelope,
        outcome: ToolCallResult,
    ) -> None:
        data = adapter_result.data
        phi_accessed = adapter_result.ok and data is not None and data != []
        try:
            self.audit.log_access(
                action=tool.value,
                endpoint=adapter_result.endpoint,
                method=adapter_result.method,
                response_status=adapter_result.status,
                response_time_ms=elapsed_ms,
                pms_integration_id=integration.id if integration is not None else None,
                call_id=envelope.call_id,
                request_summary={
                    "clinicId": str(context.clinic.id),
                    "backend": adapter.name,
                    "parameters": sorted(envelope.parameters.keys()),
                },
                phi_accessed=phi_accessed,
                phi_fields=list(CATALOG[tool].phi_fields) if phi_accessed else [],
                error_message=adapter_result.error_message,
            )
        except AuditWriteError as e:
            e.result = outcome
            raise

    # -------------------------------------------------------------------------
    # Patient tools
    # -------------------------------------------------------------------------

    def _search_patients(self, adapter, params, context, envelope) -> Handled:
        first, last = _split_name(params)
        query = _first(params, "query", "searchTerm", "phone", "email") or f"{first} {last}".strip()
        query = query or envelope.caller_number
        if not query:
            raise InvalidParameters("no search term")

        result = adapter.search_patients(str(query), limit=_int_param(params.get("limit"), 10))
        if not result.ok:
            return result, None
        patients = result.data
        if not patients:
            return result, ok(
                {"patients": [], "count": 0},
                "I don't see a record matching that. Would you like me to create a new patient profile?",
            )
        if len(patients) == 1:
            spoken = f"I found your record, {patients[0].first_name or patients[0].full_name}."
        else:
            spoken = f"I found {len(patients)} matching records. Can you confirm your date of birth?"
        return result, ok({"patients": to_payload(patients), "count": len(patients)}, spoken)

    def _get_patient_info(self, adapter, params, context, envelope) -> Handled:
        patient_id = _first(params, "patientId", "patient_id")
        if patient_id:
            result = adapter.get_patient(str(patient_id))
        else:
            first, last = _split_name(params)
            query = _first(params, "phone", "email") or f"{first} {last}".strip() or envelope.caller_number
            if not query:
                raise InvalidParameters("no patient identifier")
            result = adapter.search_patients(str(query), limit=1)
            if result.ok:
                if not result.data:
                    result = AdapterResult.failure(
                        AdapterErrorKind.NOT_FOUND, "No matching patient", result.endpoint, result.method
                    )
                else:
                    result = AdapterResult.success(result.data[0], result.endpoint, result.method, result.status)
        if not result.ok:
            return result, None
        patient = result.data
        return result, ok(
            {"patient": {**to_payload(patient), "name": patient.full_name}},
            f"I have your record here, {patient.first_name or patient.full_name}.",
        )

    def _create_patient(self, adapter, params, context, envelope) -> Handled:
        first, last = _split_name(params)
        if not first or not last:
            raise InvalidParameters("first and last name required")
        details = PatientDetails(
            first_name=first,
            last_name=last,
            phone=_first(params, "phone") or envelope.caller_number,
            email=_first(params, "email"),
            date_of_birth=_first(params, "dateOfBirth", "dob"),
        )
        result = adapter.create_patient(details, address=params.get("address") or None)
        if not result.ok:
            return result, None
        return result, ok(
            {"patient": to_payload(result.data), "patientId": result.data.id},
            f"Thank you, {first}. I've created your patient profile.",
        )

    def _update_patient(self, adapter, params, context, envelope) -> Handled:
        patient_id = str(_required(params, "patientId", "patient_id"))
        updates = {
            field: params[key] for key, field in _PATIENT_UPDATE_FIELDS.items() if params.get(key) not in (None, "")
        }
        if not updates:
            raise InvalidParameters("no fields to update")
        result = adapter.update_patient(patient_id, updates)
        if not result.ok:
            return result, None
        return result, ok(
            {"patient": to_payload(result.data), "updatedFields": sorted(updates)},
            "I've updated your information.",
        )

    # -------------------------------------------------------------------------
    # Appointment tools
    # -------------------------------------------------------------------------

    def _check_availability(self, adapter, params, context, envelope) -> Handled:
        tz = context.tz
        on_date = _parse_day(_first(params, "date", "preferredDate")) or datetime.now(tz).date()
        duration = _int_param(params.get("duration"), settings.default_appointment_duration)
        result = adapter.check_availability(on_date, duration, provider_id=_first(params, "providerId"))
        if not result.ok:
            return result, None
        slots = result.data
        return result, ok(
            {"date": on_date.isoformat(), "slots": to_payload(slots), "count": len(slots)},
            speech.speak_slots(slots, tz),
        )

    def _book_appointment(self, adapter, params, context, envelope) -> Handled:
        start = _parse_when(
            _required(params, "startTime", "dateTime", "datetime", "appointmentTime"), context.tz
        )
        first, last = _split_name(params)
        request = BookingRequest(
            start_time=start,
            duration=_int_param(params.get("duration"), settings.default_appointment_duration),
            appointment_type=_first(params, "appointmentType", "type") or "General",
            provider_id=_first(params, "providerId"),
            notes=_first(params, "notes", "reason"),
            patient=PatientDetails(
                first_name=first,
                last_name=last,
                phone=_first(params, "phone") or envelope.caller_number,
                email=_first(params, "email"),
                date_of_birth=_first(params, "dateOfBirth", "dob"),
                patient_id=_first(params, "patientId", "patient_id"),
            ),
        )
        result = adapter.book_appointment(request)
        if not result.ok:
            return result, None
        appointment = result.data
        spoken = f"You're all set. Your appointment is booked for {speech.speak_datetime(start, context.tz)}."
        return result, ok(
            {
                "appointment": to_payload(appointment),
                "appointmentId": appointment.id,
                "confirmationNumber": appointment.confirmation_number or appointment.id,
            },
            spoken,
        )

    def _reschedule_appointment(self, adapter, params, context, envelope) -> Handled:
        appointment_id = str(_required(params, "appointmentId", "appointment_id"))
        start = _parse_when(
            _required(params, "newStartTime", "newDateTime", "startTime", "dateTime"), context.tz
        )
        duration = _int_param(params.get("duration"), 0) or None
        result = adapter.reschedule_appointment(appointment_id, start, duration)
        if not result.ok:
            return result, None
        return result, ok(
            {"appointment": to_payload(result.data), "appointmentId": appointment_id},
            f"Your appointment has been moved to {speech.speak_datetime(start, context.tz)}.",
        )

    def _cancel_appointment(self, adapter, params, context, envelope) -> Handled:
        appointment_id = str(_required(params, "appointmentId", "appointment_id"))
        result = adapter.cancel_appointment(appointment_id, reason=_first(params, "reason"))
        if not result.ok:
            return result, None
        return result, ok(
            {"appointmentId": appointment_id, "cancelled": True},
            "Your appointment has been cancelled successfully. Would you like to reschedule for another time?",
        )

    def _get_appointments(self, adapter, params, context, envelope) -> Handled:
        patient_id = _first(params, "patientId", "patient_id")
        first, last = _split_name(params)
        query = f"{first} {last}".strip() or _first(params, "phone")
        if not patient_id and not query:
            raise InvalidParameters("patientId or patient name required")
        result = adapter.get_appointments(
            patient_id=str(patient_id) if patient_id else None,
            start_date=_parse_day(_first(params, "startDate")),
            end_date=_parse_day(_first(params, "endDate")),
            patient_query=query or None,
        )
        if not result.ok:
            return result, None
        appointments = result.data
        if not appointments:
            spoken = "I don't see any upcoming appointments on file for you."
        else:
            spoken = f"Your next appointment is on {speech.speak_datetime(appointments[0].start_time, context.tz)}."
            if len(appointments) > 1:
                spoken += f" You have {len(appointments)} appointments scheduled in total."
        return result, ok({"appointments": to_payload(appointments), "count": len(appointments)}, spoken)

    # -------------------------------------------------------------------------
    # Notes, insurance, billing, providers
    # -------------------------------------------------------------------------

    def _add_patient_note(self, adapter, params, context, envelope) -> Handled:
        patient_id = str(_required(params, "patientId", "patient_id"))
        content = str(_required(params, "content", "note", "noteText"))
        result = adapter.add_patient_note(patient_id, content, category=_first(params, "category"))
        if not result.ok:
            return result, None
        return result, ok({"note": to_payload(result.data)}, "I've added that note to your file for our staff.")

    def _get_patient_insurance(self, adapter, params, context, envelope) -> Handled:
        patient_id = str(_required(params, "patientId", "patient_id"))
        result = adapter.get_patient_insurance(patient_id)
        if not result.ok:
            return result, None
        policies = result.data
        if not policies:
            spoken = "I don't see any insurance on file. Our front desk can help add your coverage."
        else:
            primary = next((p for p in policies if p.is_primary), policies[0])
            spoken = f"I see {primary.provider or 'a plan'} on file as your insurance."
        return result, ok({"insurance": to_payload(policies), "count": len(policies)}, spoken)

    def _get_patient_balance(self, adapter, params, context, envelope) -> Handled:
        patient_id = str(_required(params, "patientId", "patient_id"))
        result = adapter.get_patient_balance(patient_id)
        if not result.ok:
            return result, None
        balance = result.data
        if balance.patient > 0:
            spoken = f"Your current balance is {speech.speak_money(balance.patient)}."
        else:
            spoken = "You don't have an outstanding balance with us."
        return result, ok({"balance": to_payload(balance)}, spoken)

    def _get_providers(self, adapter, params, context, envelope) -> Handled:
        result = adapter.get_providers()
        if not result.ok:
            return result, None
        providers = result.data
        names = [p.display_name for p in providers if p.display_name]
        if not names:
            spoken = "I'm not able to list our providers right now, but our front desk can help."
        else:
            spoken = f"Our providers include {', '.join(names)}."
        return result, ok({"providers": to_payload(providers), "count": len(providers)}, spoken)

    # -------------------------------------------------------------------------
    # Transfer
    # -------------------------------------------------------------------------

    def _transfer_to_human(self, context: DispatchContext, envelope: ToolCallEnvelope) -> ToolCallResult:
        binding = context.binding
        if not binding.transfer_enabled or not binding.staff_forward_number:
            logger.warning(f"Transfer requested but not configured for clinic {context.clinic.id}")
            return failed("transfer_not_configured", speech.TRANSFER_UNAVAILABLE_MESSAGE)

        params = envelope.parameters
        reason = _first(params, "reason") or "Caller requested to speak with staff"
        summary = _first(params, "summary") or "Patient requested transfer"
        patient_info = params.get("patientInfo") if isinstance(params.get("patientInfo"), dict) else {}
        patient_name = _first(params, "patientName") or patient_info.get("name")

        alert = self.staff_alerts.send_transfer_alert(
            to_number=binding.staff_forward_number,
            clinic_name=context.clinic.name,
            reason=reason,
            summary=summary,
            patient_name=patient_name,
        )
        if not alert.get("success"):
            logger.warning(f"Staff alert not delivered for call {envelope.call_id}: {alert.get('error')}")

        logger.info(
            f"Transferring call {envelope.call_id} for clinic {context.clinic.id} "
            f"to {mask_phone(binding.staff_forward_number)}"
        )
        return ok(
            {
                "action": "transfer",
                "transferTo": binding.staff_forward_number,
                "summary": summary,
                "patientInfo": patient_info,
            },
            speech.TRANSFER_MESSAGE,
        )
