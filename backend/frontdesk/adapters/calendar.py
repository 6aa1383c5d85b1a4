"""
Google Calendar adapter.

Fallback backend for clinics without an active PMS connection. Bookings
become calendar events and availability comes from a free/busy query
over the business day. Patient-record operations have no calendar
counterpart and report UNSUPPORTED.
"""

import logging
import socket
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..core.config import settings
from ..models.clinic import Clinic
from .base import (
    AdapterErrorKind,
    AdapterResult,
    Appointment,
    BackendAdapter,
    BookingRequest,
    PatientDetails,
    parse_datetime,
    slots_from_busy,
)


logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


def calendar_credentials(clinic: Clinic) -> Credentials:
    """OAuth credentials for a clinic's calendar. google-auth expects naive UTC expiry."""
    expiry = clinic.calendar_token_expiry
    if expiry is not None and expiry.tzinfo is not None:
        expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
    return Credentials(
        token=clinic.calendar_access_token,
        expiry=expiry,
        refresh_token=clinic.calendar_refresh_token,
        token_uri=settings.google_token_uri,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=SCOPES,
    )


def build_calendar_service(creds: Credentials):
    """
    Authenticated Calendar v3 client.

    Requests go through an httplib2 transport with the configured
    timeout; expired access tokens are refreshed by google-auth.
    """
    http = google_auth_httplib2.AuthorizedHttp(
        creds, http=httplib2.Http(timeout=settings.calendar_request_timeout)
    )
    return build("calendar", "v3", http=http, cache_discovery=False)


def event_description(request: BookingRequest) -> str:
    patient = request.patient
    lines = ["Patient Information", f"Name: {patient.full_name}"]
    if patient.phone:
        lines.append(f"Phone: {patient.phone}")
    if patient.email:
        lines.append(f"Email: {patient.email}")
    if patient.date_of_birth:
        lines.append(f"Date of Birth: {patient.date_of_birth}")
    lines += [
        "",
        "Appointment Details",
        f"Type: {request.appointment_type}",
        f"Duration: {request.duration} minutes",
    ]
    if request.provider_id:
        lines.append(f"Provider: {request.provider_id}")
    if request.notes:
        lines += ["", "Notes from AI Call", request.notes]
    lines += ["", "Booked via AI Receptionist"]
    return "\n".join(lines)


def map_event(event: Dict[str, Any]) -> Appointment:
    start = parse_datetime((event.get("start") or {}).get("dateTime") or (event.get("start") or {}).get("date"))
    end = parse_datetime((event.get("end") or {}).get("dateTime") or (event.get("end") or {}).get("date"))
    summary = event.get("summary") or ""
    appointment_type, _, patient_name = summary.partition(" - ")
    duration = int((end - start).total_seconds() // 60) if start and end else settings.default_appointment_duration
    return Appointment(
        id=event.get("id", ""),
        start_time=start,
        end_time=end,
        patient_name=patient_name.strip(),
        appointment_type=appointment_type.strip() or "General",
        duration=duration,
        status="Cancelled" if event.get("status") == "cancelled" else "Scheduled",
        notes=event.get("description"),
    )


class CalendarAdapter(BackendAdapter):
    """
    Calendar-backed implementation of the backend operation set.

    Args:
        clinic: Clinic whose calendar connection is used
        service: Prebuilt Calendar v3 resource (built lazily when omitted)
        credentials: Credentials behind a prebuilt ``service``
    """

    name = "calendar"

    def __init__(self, clinic: Clinic, service=None, credentials: Optional[Credentials] = None):
        self.clinic_id = clinic.id
        self.calendar_id = clinic.calendar_id or "primary"
        self.timezone_name = clinic.timezone or settings.default_clinic_timezone
        self._clinic = clinic
        self._service = service
        self._credentials = credentials
        self._stored_token = clinic.calendar_access_token

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone_name)
        except ZoneInfoNotFoundError:
            return ZoneInfo(settings.default_clinic_timezone)

    def _get_service(self):
        if self._service is None:
            self._credentials = calendar_credentials(self._clinic)
            self._service = build_calendar_service(self._credentials)
        return self._service

    def refreshed_token(self):
        """
        ``(access_token, expiry)`` if google-auth refreshed the access token
        during this adapter's calls, else None.
        """
        creds = self._credentials
        if creds is None or not creds.token or creds.token == self._stored_token:
            return None
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return creds.token, expiry

    def _execute(self, request_factory, endpoint: str, method: str):
        """
        Build and execute one API request.

        Returns:
            ``(body, None)`` on success, ``(None, AdapterResult)`` on failure.
        """
        try:
            return request_factory(self._get_service()).execute(), None
        except HttpError as e:
            status = int(getattr(e.resp, "status", 502) or 502)
            if status == 404 or status == 410:
                kind = AdapterErrorKind.NOT_FOUND
            elif status in (401, 403):
                kind = AdapterErrorKind.UNAUTHORIZED
            elif status == 400:
                kind = AdapterErrorKind.INVALID_REQUEST
            else:
                kind = AdapterErrorKind.UPSTREAM
            logger.warning(f"Calendar {method} {endpoint} -> {status}")
            return None, AdapterResult.failure(kind, f"Calendar returned HTTP {status}", endpoint, method, status=status)
        except RefreshError:
            logger.error(f"Calendar credentials for clinic {self.clinic_id} could not be refreshed")
            return None, AdapterResult.failure(
                AdapterErrorKind.UNAUTHORIZED, "Calendar authorization expired", endpoint, method
            )
        except TransportError as e:
            logger.error(f"Calendar token refresh unreachable for clinic {self.clinic_id}: {e}")
            return None, AdapterResult.failure(
                AdapterErrorKind.UPSTREAM, "Calendar authorization server unreachable", endpoint, method
            )
        except GoogleAuthError as e:
            logger.error(f"Calendar authorization failed for clinic {self.clinic_id}: {type(e).__name__}")
            return None, AdapterResult.failure(
                AdapterErrorKind.UNAUTHORIZED, "Calendar authorization failed", endpoint, method
            )
        except (socket.timeout, TimeoutError):
            logger.warning(f"Calendar timeout: {method} {endpoint}")
            return None, AdapterResult.failure(
                AdapterErrorKind.TIMEOUT, "Calendar request timed out", endpoint, method
            )
        except (httplib2.HttpLib2Error, OSError) as e:
            logger.error(f"Calendar request error: {method} {endpoint}: {type(e).__name__}")
            return None, AdapterResult.failure(
                AdapterErrorKind.UPSTREAM, f"Calendar unreachable: {type(e).__name__}", endpoint, method
            )

    def _event_time(self, value: datetime) -> Dict[str, str]:
        return {"dateTime": value.astimezone(self.tz).isoformat(), "timeZone": self.timezone_name}

    # -------------------------------------------------------------------------
    # Appointments
    # -------------------------------------------------------------------------

    def check_availability(self, on_date: date, duration: int, provider_id: Optional[str] = None) -> AdapterResult:
        endpoint = "/freeBusy"
        day_start = datetime.combine(on_date, time(settings.calendar_day_start_hour), tzinfo=self.tz)
        day_end = datetime.combine(on_date, time(settings.calendar_day_end_hour), tzinfo=self.tz)
        body = {
            "timeMin": day_start.isoformat(),
            "timeMax": day_end.isoformat(),
            "timeZone": self.timezone_name,
            "items": [{"id": self.calendar_id}],
        }
        response, error = self._execute(lambda svc: svc.freebusy().query(body=body), endpoint, "POST")
        if error:
            return error

        busy = []
        for period in ((response.get("calendars") or {}).get(self.calendar_id) or {}).get("busy", []):
            start, end = parse_datetime(period.get("start")), parse_datetime(period.get("end"))
            if start and end:
                busy.append((start, end))
        busy.sort(key=lambda pair: pair[0])

        slots = slots_from_busy(day_start, day_end, busy, duration)
        logger.info(f"Calendar availability for {on_date}: {len(busy)} busy, {len(slots)} free windows")
        return AdapterResult.success(slots, endpoint, "POST")

    def book_appointment(self, request: BookingRequest) -> AdapterResult:
        endpoint = f"/calendars/{self.calendar_id}/events"
        patient = request.patient
        if not patient.full_name:
            return AdapterResult.failure(
                AdapterErrorKind.INVALID_REQUEST, "Patient name is required for calendar booking",
                endpoint, "POST",
            )
        end_time = request.start_time + timedelta(minutes=request.duration)
        event = {
            "summary": f"{request.appointment_type} - {patient.full_name}",
            "description": event_description(request),
            "start": self._event_time(request.start_time),
            "end": self._event_time(end_time),
        }
        if patient.email:
            event["attendees"] = [{"email": patient.email}]

        created, error = self._execute(
            lambda svc: svc.events().insert(calendarId=self.calendar_id, body=event), endpoint, "POST"
        )
        if error:
            return error

        logger.info(f"Calendar event created for clinic {self.clinic_id}: {created.get('id')}")
        appointment = Appointment(
            id=created.get("id", ""),
            start_time=request.start_time,
            end_time=end_time,
            patient_id=patient.patient_id,
            patient_name=patient.full_name,
            provider_id=request.provider_id,
            appointment_type=request.appointment_type,
            duration=request.duration,
            notes=request.notes,
            confirmation_number=created.get("id"),
        )
        return AdapterResult.success(appointment, endpoint, "POST", status=201)

    def reschedule_appointment(
        self, appointment_id: str, start_time: datetime, duration: Optional[int] = None
    ) -> AdapterResult:
        endpoint = f"/calendars/{self.calendar_id}/events/{appointment_id}"
        length = duration or settings.default_appointment_duration
        body = {
            "start": self._event_time(start_time),
            "end": self._event_time(start_time + timedelta(minutes=length)),
        }
        updated, error = self._execute(
            lambda svc: svc.events().patch(calendarId=self.calendar_id, eventId=appointment_id, body=body),
            endpoint, "PATCH",
        )
        if error:
            return error
        appointment = map_event(updated) if updated.get("start") else Appointment(
            id=appointment_id, start_time=start_time, duration=length
        )
        return AdapterResult.success(appointment, endpoint, "PATCH")

    def cancel_appointment(self, appointment_id: str, reason: Optional[str] = None) -> AdapterResult:
        endpoint = f"/calendars/{self.calendar_id}/events/{appointment_id}"
        _, error = self._execute(
            lambda svc: svc.events().delete(calendarId=self.calendar_id, eventId=appointment_id),
            endpoint, "DELETE",
        )
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
        endpoint = f"/calendars/{self.calendar_id}/events"
        window_start = datetime.combine(start_date or datetime.now(self.tz).date(), time.min, tzinfo=self.tz)
        window_end = (
            datetime.combine(end_date, time.max, tzinfo=self.tz)
            if end_date else window_start + timedelta(days=90)
        )
        params: Dict[str, Any] = {
            "calendarId": self.calendar_id,
            "timeMin": window_start.isoformat(),
            "timeMax": window_end.isoformat(),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": 50,
        }
        search = patient_query or patient_id
        if search:
            params["q"] = search

        response, error = self._execute(lambda svc: svc.events().list(**params), endpoint, "GET")
        if error:
            return error
        appointments: List[Appointment] = [
            map_event(event) for event in response.get("items", []) if (event.get("start") or {}).get("dateTime")
        ]
        return AdapterResult.success(appointments, endpoint)

    # -------------------------------------------------------------------------
    # Patient records (no calendar counterpart)
    # -------------------------------------------------------------------------

    def search_patients(self, query: str, limit: int = 10) -> AdapterResult:
        return self._unsupported("searchPatients")

    def get_patient(self, patient_id: str) -> AdapterResult:
        return self._unsupported("getPatientInfo")

    def create_patient(self, details: PatientDetails, address: Optional[Dict[str, Any]] = None) -> AdapterResult:
        return self._unsupported("createPatient", method="POST")

    def update_patient(self, patient_id: str, updates: Dict[str, Any]) -> AdapterResult:
        return self._unsupported("updatePatient", method="PATCH")

    def add_patient_note(self, patient_id: str, content: str, category: Optional[str] = None) -> AdapterResult:
        return self._unsupported("addPatientNote", method="POST")

    def get_patient_insurance(self, patient_id: str) -> AdapterResult:
        return self._unsupported("getPatientInsurance")

    def get_patient_balance(self, patient_id: str) -> AdapterResult:
        return self._unsupported("getPatientBalance")

    def get_providers(self) -> AdapterResult:
        return self._unsupported("getProviders")
