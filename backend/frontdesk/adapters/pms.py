"""
Practice-management adapter for the Sikka v4 REST API.

Reads the clinic's current ``request_key`` from the persisted
``PmsIntegration`` at construction; one adapter instance serves one
dispatch. Write operations are accepted asynchronously by Sikka and
return a writeback id; when ``sikka_poll_writebacks`` is enabled the
adapter polls ``/writebacks`` until the write completes or fails.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from ..core.config import settings
from ..models.pms_integration import PmsIntegration
from .base import (
    AdapterErrorKind,
    AdapterResult,
    Appointment,
    BackendAdapter,
    BookingRequest,
    Insurance,
    Patient,
    PatientBalance,
    PatientDetails,
    PatientNote,
    Provider,
    TimeSlot,
    parse_datetime,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Field Mapping (Sikka snake_case -> domain records)
# =============================================================================

def _parse_date(value: Any) -> Optional[date]:
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_minutes(value: Any) -> int:
    """Whole minutes from values such as ``45``, ``"45"`` or ``"60 min"``."""
    match = re.match(r"\s*(\d+)", str(value or ""))
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return settings.default_appointment_duration


def map_patient(raw: Dict[str, Any]) -> Patient:
    address = None
    if raw.get("address") or raw.get("street"):
        nested = raw.get("address") if isinstance(raw.get("address"), dict) else {}
        address = {
            "street": raw.get("street") or nested.get("street") or nested.get("line1"),
            "city": raw.get("city") or nested.get("city"),
            "state": raw.get("state") or nested.get("state"),
            "zip": raw.get("zip") or raw.get("zipcode") or nested.get("zip"),
        }
    balance = raw.get("balance", raw.get("account_balance"))
    return Patient(
        id=str(raw.get("patient_id") or raw.get("id") or ""),
        first_name=raw.get("first_name") or raw.get("firstname") or "",
        last_name=raw.get("last_name") or raw.get("lastname") or "",
        date_of_birth=raw.get("date_of_birth") or raw.get("birthdate") or raw.get("dob"),
        phone=raw.get("mobile_phone") or raw.get("cell") or raw.get("phone"),
        email=raw.get("email"),
        address=address,
        balance=_to_float(balance) if balance is not None else None,
        last_visit=_parse_date(raw.get("last_visit")),
    )


def map_appointment(raw: Dict[str, Any]) -> Appointment:
    start = parse_datetime(raw.get("appointment_date") or raw.get("start_time"))
    patient_name = raw.get("patient_name") or (
        f"{raw.get('patient_first_name') or ''} {raw.get('patient_last_name') or ''}".strip()
    )
    return Appointment(
        id=str(raw.get("appointment_id") or raw.get("appointment_sr_no") or raw.get("id") or ""),
        start_time=start or datetime.now(timezone.utc),
        patient_id=raw.get("patient_id"),
        patient_name=patient_name,
        provider_id=raw.get("provider_id"),
        provider_name=raw.get("provider_name"),
        appointment_type=raw.get("appointment_type") or raw.get("type") or "General",
        end_time=parse_datetime(raw.get("end_time")),
        duration=_to_minutes(raw.get("duration") or raw.get("length")),
        status=raw.get("status") or raw.get("appointment_status") or "Scheduled",
        notes=raw.get("notes") or raw.get("appointment_notes"),
        confirmation_number=raw.get("confirmation_number"),
    )


def map_time_slot(raw: Dict[str, Any]) -> Optional[TimeSlot]:
    start = parse_datetime(raw.get("start_time"))
    end = parse_datetime(raw.get("end_time"))
    if start is None or raw.get("available") is False:
        return None
    return TimeSlot(
        start_time=start,
        end_time=end or start,
        provider_id=raw.get("provider_id"),
        provider_name=raw.get("provider_name"),
    )


def map_insurance(raw: Dict[str, Any]) -> Insurance:
    return Insurance(
        id=raw.get("insurance_id") or raw.get("id"),
        provider=raw.get("insurance_provider") or raw.get("insurance_company_name") or raw.get("provider"),
        policy_number=raw.get("policy_number") or raw.get("subscriber_id"),
        group_number=raw.get("group_number"),
        subscriber_name=raw.get("subscriber_name"),
        is_primary=raw.get("is_primary") is not False,
    )


def map_balance(raw: Dict[str, Any]) -> PatientBalance:
    last_payment = raw.get("last_payment")
    return PatientBalance(
        total=_to_float(raw.get("total_balance", raw.get("total"))),
        insurance=_to_float(raw.get("insurance_balance", raw.get("insurance"))),
        patient=_to_float(raw.get("patient_balance", raw.get("patient"))),
        last_payment=last_payment if isinstance(last_payment, dict) else None,
    )


def map_provider(raw: Dict[str, Any]) -> Provider:
    return Provider(
        id=str(raw.get("provider_id") or raw.get("id") or ""),
        first_name=raw.get("first_name") or raw.get("firstname") or "",
        last_name=raw.get("last_name") or raw.get("lastname") or "",
        title=raw.get("title") or raw.get("credentials"),
        specialty=raw.get("specialty"),
        is_active=raw.get("is_active") is not False and raw.get("status") != "inactive",
    )


def _items(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        return body.get("items") or []
    return []


def _single(body: Any) -> Optional[Dict[str, Any]]:
    """A single record, whether returned bare or wrapped in ``items``."""
    if isinstance(body, dict) and "items" in body:
        items = body.get("items") or []
        return items[0] if items else None
    if isinstance(body, list):
        return body[0] if body else None
    return body or None


# =============================================================================
# Adapter
# =============================================================================

class PracticeManagementAdapter(BackendAdapter):
    """
    Sikka-backed implementation of the backend operation set.

    Example:
        adapter = PracticeManagementAdapter(integration)
        result = adapter.get_patient_balance("12345")
        if not result.ok and result.error_kind == AdapterErrorKind.NOT_FOUND:
            ...
    """

    name = "practice management"

    def __init__(self, integration: PmsIntegration, client: Optional[httpx.Client] = None):
        self.integration_id = integration.id
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=settings.sikka_base_url,
            timeout=settings.sikka_request_timeout,
        )
        self._client.headers.update({
            "Request-Key": integration.request_key or "",
            "Content-Type": "application/json",
        })

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ):
        """
        Issue one request.

        Returns:
            ``(body, None)`` on 2xx, ``(None, AdapterResult)`` on failure.
        """
        try:
            response = self._client.request(method, endpoint, params=params, json=json)
        except httpx.TimeoutException:
            logger.warning(f"Sikka timeout: {method} {endpoint}")
            return None, AdapterResult.failure(
                AdapterErrorKind.TIMEOUT, "PMS request timed out", endpoint, method
            )
        except httpx.RequestError as e:
            logger.error(f"Sikka request error: {method} {endpoint}: {type(e).__name__}")
            return None, AdapterResult.failure(
                AdapterErrorKind.UPSTREAM, f"PMS unreachable: {type(e).__name__}", endpoint, method
            )

        if response.status_code >= 400:
            return None, self._failure_from_status(response, endpoint, method)

        if not response.content:
            return {}, None
        try:
            return response.json(), None
        except ValueError:
            return None, AdapterResult.failure(
                AdapterErrorKind.UPSTREAM, "PMS returned a non-JSON body", endpoint, method,
                status=response.status_code,
            )

    @staticmethod
    def _failure_from_status(response: httpx.Response, endpoint: str, method: str) -> AdapterResult:
        status = response.status_code
        if status == 404:
            kind = AdapterErrorKind.NOT_FOUND
        elif status in (401, 403):
            kind = AdapterErrorKind.UNAUTHORIZED
        elif status in (400, 409, 422):
            kind = AdapterErrorKind.INVALID_REQUEST
        else:
            kind = AdapterErrorKind.UPSTREAM
        detail = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                detail = body.get("error_message") or body.get("message") or body.get("error") or ""
        except ValueError:
            pass
        message = f"PMS returned HTTP {status}" + (f": {detail}" if detail else "")
        logger.warning(f"Sikka {method} {endpoint} -> {status}")
        return AdapterResult.failure(kind, message, endpoint, method, status=status)

    # -------------------------------------------------------------------------
    # Writebacks
    # -------------------------------------------------------------------------

    def _fetch_writeback_state(self, writeback_id: str) -> Optional[Dict[str, Any]]:
        response = self._client.get(
            "/writebacks",
            params={"id": writeback_id},
            headers={"App-Id": settings.sikka_app_id, "App-Key": settings.sikka_app_key},
        )
        response.raise_for_status()
        writeback = _single(response.json())
        if not writeback:
            return None
        if writeback.get("result") in ("completed", "failed"):
            return writeback
        return None

    def _await_writeback(self, writeback_id: Optional[str], endpoint: str, method: str) -> Optional[AdapterResult]:
        """
        Wait for an asynchronous write to settle.

        Returns:
            ``None`` when the write completed (or polling is disabled),
            otherwise a WRITEBACK_FAILED result.
        """
        if not settings.sikka_poll_writebacks or not writeback_id:
            return None

        retryer = Retrying(
            stop=stop_after_attempt(settings.sikka_writeback_poll_attempts),
            wait=wait_fixed(settings.sikka_writeback_poll_interval),
            retry=retry_if_result(lambda state: state is None) | retry_if_exception_type(httpx.HTTPError),
            retry_error_callback=lambda retry_state: None,
        )
        state = retryer(self._fetch_writeback_state, writeback_id)

        if state is None:
            logger.warning(f"Sikka writeback {writeback_id} did not settle in time")
            return AdapterResult.failure(
                AdapterErrorKind.WRITEBACK_FAILED,
                f"Writeback {writeback_id} did not complete",
                endpoint, method,
            )
        if state.get("result") == "failed":
            return AdapterResult.failure(
                AdapterErrorKind.WRITEBACK_FAILED,
                f"Writeback failed: {state.get('error_message') or 'unknown error'}",
                endpoint, method,
            )
        return None

    def _write(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None):
        body, error = self._request(method, endpoint, json=payload)
        if error:
            return None, error
        writeback_id = str(body.get("id")) if isinstance(body, dict) and body.get("id") else None
        logger.info(f"Sikka write submitted: {method} {endpoint} (writeback {writeback_id})")
        error = self._await_writeback(writeback_id, endpoint, method)
        if error:
            return None, error
        return writeback_id, None

    # -------------------------------------------------------------------------
    # Patients
    # -------------------------------------------------------------------------

    def search_patients(self, query: str, limit: int = 10) -> AdapterResult:
        endpoint = "/patients/search"
        body, error = self._request("GET", endpoint, params={"query": query, "limit": limit})
        if error:
            return error
        return AdapterResult.success([map_patient(item) for item in _items(body)], endpoint)

    def get_patient(self, patient_id: str) -> AdapterResult:
        endpoint = f"/patients/{patient_id}"
        body, error = self._request("GET", endpoint)
        if error:
            return error
        record = _single(body)
        if not record:
            return AdapterResult.failure(AdapterErrorKind.NOT_FOUND, "Patient not found", endpoint)
        return AdapterResult.success(map_patient(record), endpoint)

    def create_patient(self, details: PatientDetails, address: Optional[Dict[str, Any]] = None) -> AdapterResult:
        endpoint = "/patient"
        payload = {
            "first_name": details.first_name,
            "last_name": details.last_name,
            "date_of_birth": details.date_of_birth,
            "phone": details.phone,
            "mobile_phone": details.phone,
            "email": details.email,
            "address": address,
        }
        writeback_id, error = self._write("POST", endpoint, {k: v for k, v in payload.items() if v is not None})
        if error:
            return error
        patient = Patient(
            id=writeback_id or "",
            first_name=details.first_name,
            last_name=details.last_name,
            date_of_birth=details.date_of_birth,
            phone=details.phone,
            email=details.email,
            address=address,
        )
        return AdapterResult.success(patient, endpoint, "POST", status=201)

    def update_patient(self, patient_id: str, updates: Dict[str, Any]) -> AdapterResult:
        endpoint = f"/patient/{patient_id}"
        _, error = self._write("PATCH", endpoint, updates)
        if error:
            return error
        fetched = self.get_patient(patient_id)
        if not fetched.ok:
            # The write was accepted; report it against the write endpoint
            return AdapterResult.success(Patient(id=patient_id), endpoint, "PATCH")
        return AdapterResult.success(fetched.data, endpoint, "PATCH")

    # -------------------------------------------------------------------------
    # Appointments
    # -------------------------------------------------------------------------

    def check_availability(self, on_date: date, duration: int, provider_id: Optional[str] = None) -> AdapterResult:
        endpoint = "/appointments_available_slots"
        params: Dict[str, Any] = {"date": on_date.isoformat(), "duration": duration}
        if provider_id:
            params["provider_id"] = provider_id
        body, error = self._request("GET", endpoint, params=params)
        if error:
            return error
        slots = [slot for slot in (map_time_slot(item) for item in _items(body)) if slot]
        return AdapterResult.success(slots, endpoint)

    def book_appointment(self, request: BookingRequest) -> AdapterResult:
        endpoint = "/appointment"
        if not request.patient.patient_id:
            return AdapterResult.failure(
                AdapterErrorKind.INVALID_REQUEST, "patientId is required to book in the PMS", endpoint, "POST"
            )
        payload = {
            "patient_id": request.patient.patient_id,
            "provider_id": request.provider_id,
            "appointment_type": request.appointment_type,
            "start_time": request.start_time.isoformat(),
            "duration": request.duration,
            "notes": request.notes,
        }
        writeback_id, error = self._write("POST", endpoint, {k: v for k, v in payload.items() if v is not None})
        if error:
            return error
        appointment = Appointment(
            id=writeback_id or "",
            start_time=request.start_time,
            end_time=request.start_time + timedelta(minutes=request.duration),
            patient_id=request.patient.patient_id,
            patient_name=request.patient.full_name,
            provider_id=request.provider_id,
            appointment_type=request.appointment_type,
            duration=request.duration,
            notes=request.notes,
        )
        return AdapterResult.success(appointment, endpoint, "POST", status=201)

    def reschedule_appointment(
        self, appointment_id: str, start_time: datetime, duration: Optional[int] = None
    ) -> AdapterResult:
        endpoint = f"/appointments/{appointment_id}"
        payload: Dict[str, Any] = {"start_time": start_time.isoformat()}
        if duration:
            payload["duration"] = duration
        _, error = self._write("PATCH", endpoint, payload)
        if error:
            return error
        length = duration or settings.default_appointment_duration
        appointment = Appointment(
            id=appointment_id,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=length),
            duration=length,
            status="Rescheduled",
        )
        return AdapterResult.success(appointment, endpoint, "PATCH")

    def cancel_appointment(self, appointment_id: str, reason: Optional[str] = None) -> AdapterResult:
        endpoint = f"/appointments/{appointment_id}"
        _, error = self._write("DELETE", endpoint, {"reason": reason} if reason else None)
        if error:
            return error
        return AdapterResult.success({"appointmentId": appointment_id, "cancelled": True}, endpoint, "DELETE")

    def get_appointments(
        self,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        patient_query: Optional[str] = None,
    ) -> AdapterResult:
        endpoint = "/appointments"
        if not patient_id:
            return AdapterResult.failure(
                AdapterErrorKind.INVALID_REQUEST, "patientId is required to list PMS appointments", endpoint
            )
        params: Dict[str, Any] = {"limit": 50, "patient_id": patient_id}
        if start_date:
            params["startdate"] = start_date.isoformat()
        if end_date:
            params["enddate"] = end_date.isoformat()
        body, error = self._request("GET", endpoint, params=params)
        if error:
            return error
        appointments = sorted(
            (map_appointment(item) for item in _items(body)),
            key=lambda appt: appt.start_time,
        )
        return AdapterResult.success(appointments, endpoint)

    # -------------------------------------------------------------------------
    # Notes, insurance, billing, providers
    # -------------------------------------------------------------------------

    def add_patient_note(self, patient_id: str, content: str, category: Optional[str] = None) -> AdapterResult:
        endpoint = "/medical_notes"
        payload = {"patient_id": patient_id, "content": content}
        if category:
            payload["category"] = category
        writeback_id, error = self._write("POST", endpoint, payload)
        if error:
            return error
        note = PatientNote(
            id=writeback_id or "",
            patient_id=patient_id,
            content=content,
            category=category,
            created_at=datetime.now(timezone.utc),
        )
        return AdapterResult.success(note, endpoint, "POST", status=201)

    def get_patient_insurance(self, patient_id: str) -> AdapterResult:
        endpoint = f"/patients/{patient_id}/insurance"
        body, error = self._request("GET", endpoint)
        if error:
            return error
        return AdapterResult.success([map_insurance(item) for item in _items(body)], endpoint)

    def get_patient_balance(self, patient_id: str) -> AdapterResult:
        endpoint = "/patient_balance"
        body, error = self._request("GET", endpoint, params={"patient_id": patient_id})
        if error:
            return error
        record = _single(body)
        if not record:
            return AdapterResult.failure(
                AdapterErrorKind.NOT_FOUND, f"No balance found for patient {patient_id}", endpoint
            )
        return AdapterResult.success(map_balance(record), endpoint)

    def get_providers(self) -> AdapterResult:
        endpoint = "/providers"
        body, error = self._request("GET", endpoint)
        if error:
            return error
        providers = [p for p in (map_provider(item) for item in _items(body)) if p.is_active]
        return AdapterResult.success(providers, endpoint)
