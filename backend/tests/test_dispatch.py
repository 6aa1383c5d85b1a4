"""Tests for the tool dispatch engine.

Covers:
  - Backend selection (active PMS, calendar fallback, not configured)
  - Tool name resolution and webhook authentication
  - Spoken results for success and failure
  - Audit trail for tools that touch patient data
  - Credential errors and human transfer
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest
import requests
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from sqlalchemy import select

from frontdesk.adapters.calendar import CalendarAdapter
from frontdesk.adapters.pms import PracticeManagementAdapter
from frontdesk.core.exceptions import AuditWriteError, UnauthorizedError
from frontdesk.models import PmsAuditLog, PmsIntegrationStatus
from frontdesk.schemas.tool_call import FailedResult, OkResult, ToolCallEnvelope
from frontdesk.services import speech
from frontdesk.services.dispatch import ToolDispatchEngine, to_payload
from frontdesk.services.staff_alerts import StaffAlertService
from frontdesk.services.tools import CATALOG, ToolName, canonicalize, resolve_tool


SIKKA_BASE = "https://api.sikkasoft.com/v4"
BACKEND_API_KEY = "test-backend-key"


def _envelope(binding, tool, **parameters) -> ToolCallEnvelope:
    return ToolCallEnvelope(
        call_id="call-1",
        dialed_number_id=binding.voice_session_id,
        caller_number="+16475550123",
        tool_name=tool,
        parameters=parameters,
    )


def _pms_factory(handler):
    def _factory(integration):
        client = httpx.Client(base_url=SIKKA_BASE, transport=httpx.MockTransport(handler))
        return PracticeManagementAdapter(integration, client=client)
    return _factory


def _calendar_factory(service):
    return lambda clinic: CalendarAdapter(clinic, service=service)


def _audit_rows(db):
    return db.scalars(select(PmsAuditLog)).all()


# ── Scenarios ────────────────────────────────────────────────────────


class TestCalendarBooking:
    def test_booking_on_calendar_speaks_confirmation(self, db, make_clinic, auth_headers):
        binding = make_clinic(timezone="UTC", calendar_connected=True)
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.return_value = {"id": "evt-1"}
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(service))

        result = engine.dispatch(
            _envelope(binding, "bookAppointment", startTime="2026-02-15T10:00:00", patientName="Jane Doe"),
            auth_headers,
        )

        assert isinstance(result, OkResult)
        assert "Sunday, February 15 at 10:00 AM" in result.spoken_message
        assert result.data["appointmentId"] == "evt-1"

        body = service.events.return_value.insert.call_args.kwargs["body"]
        assert body["start"]["dateTime"] == "2026-02-15T10:00:00+00:00"
        assert body["summary"] == "General - Jane Doe"

    def test_calendar_booking_is_audited_without_integration(self, db, make_clinic, auth_headers):
        binding = make_clinic(timezone="UTC", calendar_connected=True)
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.return_value = {"id": "evt-2"}
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(service))

        engine.dispatch(
            _envelope(binding, "bookAppointment", startTime="2026-02-15T10:00:00", patientName="Jane Doe"),
            auth_headers,
        )

        rows = _audit_rows(db)
        assert len(rows) == 1
        entry = rows[0]
        assert entry.pms_integration_id is None
        assert entry.action == "bookAppointment"
        assert entry.method == "POST"
        assert entry.response_status == 201
        assert entry.phi_accessed is True
        assert entry.request_summary["backend"] == "calendar"
        assert entry.request_summary["parameters"] == ["patientName", "startTime"]

    def test_naive_time_is_clinic_local(self, db, make_clinic, auth_headers):
        binding = make_clinic(timezone="America/Toronto", calendar_connected=True)
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.return_value = {"id": "evt-3"}
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(service))

        result = engine.dispatch(
            _envelope(binding, "bookAppointment", startTime="2026-02-16T09:30:00", patientName="Jane Doe"),
            auth_headers,
        )

        assert "Monday, February 16 at 9:30 AM" in result.spoken_message
        body = service.events.return_value.insert.call_args.kwargs["body"]
        assert body["start"]["dateTime"] == "2026-02-16T09:30:00-05:00"


class TestBalanceNotFound:
    def test_missing_balance_offers_billing_staff_and_is_audited(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(404, json={"error_message": "not found"})

        engine = ToolDispatchEngine(db, pms_adapter_factory=_pms_factory(handler))
        result = engine.dispatch(_envelope(binding, "getPatientBalance", patientId="12345"), auth_headers)

        assert isinstance(result, FailedResult)
        assert result.reason == "not_found"
        assert "billing staff" in result.spoken_message

        assert seen[0].url.path.endswith("/patient_balance")
        assert seen[0].url.params["patient_id"] == "12345"
        assert seen[0].headers["Request-Key"] == "request-key-1"

        rows = _audit_rows(db)
        assert len(rows) == 1
        entry = rows[0]
        assert entry.pms_integration_id == binding.pms_integration_id
        assert entry.response_status == 404
        assert entry.phi_accessed is False
        assert entry.phi_fields == []
        assert entry.call_id == "call-1"

    def test_balance_found_speaks_amount(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)

        def handler(request):
            return httpx.Response(200, json={"items": [{"patient_balance": "125.50", "total_balance": "200"}]})

        engine = ToolDispatchEngine(db, pms_adapter_factory=_pms_factory(handler))
        result = engine.dispatch(_envelope(binding, "getPatientBalance", patientId="12345"), auth_headers)

        assert isinstance(result, OkResult)
        assert result.spoken_message == "Your current balance is $125.50."
        entry = _audit_rows(db)[0]
        assert entry.phi_accessed is True
        assert entry.phi_fields == ["balance"]


# ── Backend selection ────────────────────────────────────────────────


class TestBackendSelection:
    def test_inactive_pms_falls_back_to_calendar(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ERROR, calendar_connected=True)
        pms_factory = MagicMock()
        service = MagicMock()
        service.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {"primary": {"busy": [
                {"start": "2026-02-16T14:00:00Z", "end": "2026-02-16T23:00:00Z"},
            ]}},
        }
        engine = ToolDispatchEngine(
            db, pms_adapter_factory=pms_factory, calendar_adapter_factory=_calendar_factory(service)
        )

        result = engine.dispatch(_envelope(binding, "checkAvailability", date="2026-02-16"), auth_headers)

        pms_factory.assert_not_called()
        assert isinstance(result, OkResult)
        assert result.data["count"] == 1
        assert "I have openings at 8:00 AM" in result.spoken_message

    def test_active_pms_wins_over_calendar(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE, calendar_connected=True)
        calendar_factory = MagicMock()

        def handler(request):
            return httpx.Response(200, json={"items": [{"provider_id": "p1", "first_name": "Ana", "last_name": "Silva", "title": "Dr."}]})

        engine = ToolDispatchEngine(
            db, pms_adapter_factory=_pms_factory(handler), calendar_adapter_factory=calendar_factory
        )
        result = engine.dispatch(_envelope(binding, "getProviders"), auth_headers)

        calendar_factory.assert_not_called()
        assert result.spoken_message == "Our providers include Dr. Ana Silva."

    def test_no_backend_is_not_configured(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.SETUP_REQUIRED)
        result = ToolDispatchEngine(db).dispatch(_envelope(binding, "getAppointments", patientId="1"), auth_headers)

        assert isinstance(result, FailedResult)
        assert result.reason == "not_configured"
        assert result.spoken_message == speech.NOT_CONFIGURED_MESSAGE
        assert _audit_rows(db) == []

    def test_patient_records_unsupported_on_calendar(self, db, make_clinic, auth_headers):
        binding = make_clinic(calendar_connected=True)
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(MagicMock()))

        result = engine.dispatch(_envelope(binding, "getPatientInsurance", patientId="1"), auth_headers)

        assert result.reason == "unsupported"
        assert result.spoken_message == speech.UNSUPPORTED_MESSAGE
        assert _audit_rows(db)[0].response_status == 501

    def test_binding_found_by_phone_number(self, db, make_clinic, auth_headers):
        make_clinic(phone_number="+14165550100")
        envelope = ToolCallEnvelope(tool_name="getProviders", dialed_number_id="+14165550100")
        result = ToolDispatchEngine(db).dispatch(envelope, auth_headers)
        assert result.reason == "not_configured"

    def test_unknown_binding(self, db, auth_headers):
        envelope = ToolCallEnvelope(tool_name="getProviders", dialed_number_id="vs-missing")
        result = ToolDispatchEngine(db).dispatch(envelope, auth_headers)

        assert result.reason == "configuration_not_found"
        assert result.spoken_message == speech.CONFIGURATION_NOT_FOUND_MESSAGE


# ── Resolution and authentication ────────────────────────────────────


class TestToolResolution:
    @pytest.mark.parametrize("name", ["getPatientBalance", "get_patient_balance", "GET-PATIENT-BALANCE", " getpatientbalance "])
    def test_name_variants_resolve(self, name):
        assert resolve_tool(name) == ToolName.GET_PATIENT_BALANCE

    def test_legacy_names(self):
        assert resolve_tool("transferCall") == ToolName.TRANSFER_TO_HUMAN
        assert resolve_tool("get_patient") == ToolName.GET_PATIENT_INFO

    def test_canonicalize(self):
        assert canonicalize("book.appointment_now") == "bookappointmentnow"

    def test_unknown_tool(self, db, make_clinic, auth_headers):
        binding = make_clinic()
        result = ToolDispatchEngine(db).dispatch(_envelope(binding, "launchRocket"), auth_headers)

        assert result.reason == "unknown_tool"
        assert result.spoken_message == speech.UNKNOWN_TOOL_MESSAGE

    def test_read_only_tools_are_not_audited(self):
        assert not CATALOG[ToolName.CHECK_AVAILABILITY].touches_phi
        assert not CATALOG[ToolName.GET_PROVIDERS].touches_phi
        assert not CATALOG[ToolName.TRANSFER_TO_HUMAN].touches_phi
        assert CATALOG[ToolName.GET_PATIENT_BALANCE].touches_phi


class TestAuthentication:
    def test_missing_credentials_rejected(self, db, make_clinic):
        binding = make_clinic()
        with pytest.raises(UnauthorizedError):
            ToolDispatchEngine(db).dispatch(_envelope(binding, "getProviders"), {})

    def test_wrong_secret_rejected(self, db, make_clinic):
        binding = make_clinic()
        with pytest.raises(UnauthorizedError):
            ToolDispatchEngine(db).dispatch(_envelope(binding, "getProviders"), {"x-vapi-secret": "nope"})

    def test_bearer_backend_key_accepted(self, db, make_clinic):
        binding = make_clinic()
        headers = {"Authorization": f"Bearer {BACKEND_API_KEY}"}
        result = ToolDispatchEngine(db).dispatch(_envelope(binding, "getProviders"), headers)
        assert result.reason == "not_configured"


# ── Failures and audit ───────────────────────────────────────────────


ALL_PARAMETERS = {
    "patientId": "p-1",
    "appointmentId": "a-1",
    "firstName": "Jane",
    "lastName": "Doe",
    "query": "Jane Doe",
    "startTime": "2026-02-15T10:00:00",
    "newStartTime": "2026-02-16T10:00:00",
    "date": "2026-02-15",
    "content": "Prefers morning visits",
}


class TestFailures:
    @pytest.mark.parametrize("tool", [t for t in ToolName if t != ToolName.TRANSFER_TO_HUMAN])
    def test_every_upstream_failure_is_speakable(self, db, make_clinic, auth_headers, tool):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        engine = ToolDispatchEngine(db, pms_adapter_factory=_pms_factory(lambda request: httpx.Response(500)))

        result = engine.dispatch(_envelope(binding, tool.value, **ALL_PARAMETERS), auth_headers)

        assert isinstance(result, FailedResult)
        assert result.reason == "upstream"
        assert result.spoken_message.strip()
        assert len(_audit_rows(db)) == (1 if CATALOG[tool].touches_phi else 0)

    def test_timeout(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        engine = ToolDispatchEngine(db, pms_adapter_factory=_pms_factory(handler))
        result = engine.dispatch(_envelope(binding, "searchPatients", query="Jane"), auth_headers)

        assert result.reason == "timeout"
        assert result.spoken_message == speech.FAILURE_MESSAGES[ToolName.SEARCH_PATIENTS]
        assert _audit_rows(db)[0].response_status == 504

    def test_rejected_credentials_mark_integration_error(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        engine = ToolDispatchEngine(
            db, pms_adapter_factory=_pms_factory(lambda request: httpx.Response(401))
        )

        result = engine.dispatch(_envelope(binding, "getPatientInfo", patientId="p-1"), auth_headers)

        assert result.reason == "unauthorized"
        integration = binding.pms_integration
        db.refresh(integration)
        assert integration.status == PmsIntegrationStatus.ERROR
        assert "401" in integration.last_error
        # Tokens are kept for the next refresh attempt
        assert integration.refresh_key == "refresh-key-1"

    def test_missing_parameters_ask_caller(self, db, make_clinic, auth_headers):
        binding = make_clinic(calendar_connected=True)
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(MagicMock()))

        result = engine.dispatch(_envelope(binding, "bookAppointment", patientName="Jane Doe"), auth_headers)

        assert result.reason == "invalid_parameters"
        assert result.spoken_message == speech.MISSING_PARAMETER_MESSAGES[ToolName.BOOK_APPOINTMENT]
        assert _audit_rows(db) == []

    def test_patient_not_found_by_search(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        engine = ToolDispatchEngine(
            db, pms_adapter_factory=_pms_factory(lambda request: httpx.Response(200, json={"items": []}))
        )

        result = engine.dispatch(_envelope(binding, "getPatientInfo", firstName="Jane", lastName="Doe"), auth_headers)

        assert result.reason == "not_found"
        assert result.spoken_message == speech.NOT_FOUND_MESSAGES[ToolName.GET_PATIENT_INFO]

    def test_audit_failure_carries_result(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)

        def handler(request):
            return httpx.Response(200, json={"items": [{"patient_balance": 0}]})

        engine = ToolDispatchEngine(db, pms_adapter_factory=_pms_factory(handler))
        engine.audit = MagicMock()
        engine.audit.log_access.side_effect = AuditWriteError("audit store down")

        with pytest.raises(AuditWriteError) as exc_info:
            engine.dispatch(_envelope(binding, "getPatientBalance", patientId="p-1"), auth_headers)

        assert isinstance(exc_info.value.result, OkResult)
        assert exc_info.value.result.spoken_message == "You don't have an outstanding balance with us."

    def test_adapter_is_closed_after_dispatch(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        adapter = MagicMock()
        adapter.name = "practice management"
        adapter.get_providers.side_effect = RuntimeError("boom")
        engine = ToolDispatchEngine(db, pms_adapter_factory=lambda integration: adapter)

        result = engine.dispatch(_envelope(binding, "getProviders"), auth_headers)

        assert result.reason == "upstream"
        assert result.spoken_message == speech.FAILURE_MESSAGES[ToolName.GET_PROVIDERS]
        adapter.close.assert_called_once()
        assert _audit_rows(db) == []

    def test_unexpected_adapter_error_is_audited(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        adapter = MagicMock()
        adapter.name = "practice management"
        adapter.get_patient.side_effect = KeyError("patient_id")
        engine = ToolDispatchEngine(db, pms_adapter_factory=lambda integration: adapter)

        result = engine.dispatch(_envelope(binding, "getPatientInfo", patientId="p-1"), auth_headers)

        assert result.reason == "upstream"
        rows = _audit_rows(db)
        assert len(rows) == 1
        assert rows[0].action == "getPatientInfo"
        assert rows[0].phi_accessed is False
        assert "KeyError" in rows[0].error_message

    def test_free_text_appointment_length_is_read(self, db, make_clinic, auth_headers):
        binding = make_clinic(pms_status=PmsIntegrationStatus.ACTIVE)
        body = {"items": [{"appointment_id": "a-9", "appointment_date": "2026-02-20T15:00:00Z", "length": "60 min"}]}
        engine = ToolDispatchEngine(
            db, pms_adapter_factory=_pms_factory(lambda request: httpx.Response(200, json=body))
        )

        result = engine.dispatch(_envelope(binding, "getAppointments", patientId="p-1"), auth_headers)

        assert isinstance(result, OkResult)
        assert len(_audit_rows(db)) == 1

    def test_calendar_auth_transport_error_is_audited(self, db, make_clinic, auth_headers):
        binding = make_clinic(calendar_connected=True)
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.side_effect = TransportError("connection reset")
        engine = ToolDispatchEngine(db, calendar_adapter_factory=_calendar_factory(service))

        result = engine.dispatch(
            _envelope(binding, "bookAppointment", startTime="2026-02-15T10:00:00", patientName="Jane Doe"),
            auth_headers,
        )

        assert result.reason == "upstream"
        rows = _audit_rows(db)
        assert len(rows) == 1
        assert rows[0].pms_integration_id is None

    def test_refreshed_calendar_token_is_stored(self, db, make_clinic, auth_headers):
        binding = make_clinic(calendar_connected=True)
        service = MagicMock()
        service.freebusy.return_value.query.return_value.execute.return_value = {"calendars": {}}
        credentials = Credentials(token="calendar-access-2", expiry=datetime(2026, 3, 1, 12, 0))
        engine = ToolDispatchEngine(
            db,
            calendar_adapter_factory=lambda clinic: CalendarAdapter(clinic, service=service, credentials=credentials),
        )

        engine.dispatch(_envelope(binding, "checkAvailability", date="2026-02-16"), auth_headers)

        clinic = binding.clinic
        db.refresh(clinic)
        assert clinic.calendar_access_token == "calendar-access-2"
        assert clinic.calendar_token_expiry == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Transfer ─────────────────────────────────────────────────────────


class TestTransfer:
    def test_transfer_alerts_staff(self, db, make_clinic, auth_headers):
        binding = make_clinic(transfer_enabled=True, staff_forward_number="+14165550999")
        alerts = MagicMock()
        alerts.send_transfer_alert.return_value = {"success": True, "message_sid": "SM1"}
        engine = ToolDispatchEngine(db, staff_alerts=alerts)

        result = engine.dispatch(
            _envelope(binding, "transferToHuman", reason="Billing dispute", summary="Wants to discuss invoice",
                      patientName="Jane Doe"),
            auth_headers,
        )

        assert isinstance(result, OkResult)
        assert result.spoken_message == speech.TRANSFER_MESSAGE
        assert result.data["action"] == "transfer"
        assert result.data["transferTo"] == "+14165550999"
        alerts.send_transfer_alert.assert_called_once_with(
            to_number="+14165550999",
            clinic_name="Maple Dental",
            reason="Billing dispute",
            summary="Wants to discuss invoice",
            patient_name="Jane Doe",
        )
        assert _audit_rows(db) == []

    def test_failed_alert_does_not_block_transfer(self, db, make_clinic, auth_headers):
        binding = make_clinic(transfer_enabled=True, staff_forward_number="+14165550999")
        alerts = MagicMock()
        alerts.send_transfer_alert.return_value = {"success": False, "error": "Twilio not configured"}

        result = ToolDispatchEngine(db, staff_alerts=alerts).dispatch(
            _envelope(binding, "transferCall"), auth_headers
        )
        assert result.data["action"] == "transfer"

    def test_sms_network_error_still_transfers(self, db, make_clinic, auth_headers):
        binding = make_clinic(transfer_enabled=True, staff_forward_number="+14165550999")
        client = MagicMock()
        client.messages.create.side_effect = requests.exceptions.ConnectionError("connection refused")
        alerts = StaffAlertService(client=client)
        alerts.messaging_service_sid = "MG123"

        result = ToolDispatchEngine(db, staff_alerts=alerts).dispatch(
            _envelope(binding, "transferToHuman", reason="Emergency"), auth_headers
        )

        assert isinstance(result, OkResult)
        assert result.data["action"] == "transfer"
        client.messages.create.assert_called_once()

    def test_transfer_disabled(self, db, make_clinic, auth_headers):
        binding = make_clinic(transfer_enabled=False, staff_forward_number="+14165550999")
        alerts = MagicMock()

        result = ToolDispatchEngine(db, staff_alerts=alerts).dispatch(
            _envelope(binding, "transferToHuman"), auth_headers
        )

        assert result.reason == "transfer_not_configured"
        assert result.spoken_message == speech.TRANSFER_UNAVAILABLE_MESSAGE
        alerts.send_transfer_alert.assert_not_called()


class TestPayload:
    def test_to_payload_camel_cases_records(self):
        from frontdesk.adapters.base import TimeSlot

        slot = TimeSlot(
            start_time=datetime(2026, 2, 15, 10, tzinfo=timezone.utc),
            end_time=datetime(2026, 2, 15, 10, 30, tzinfo=timezone.utc),
            provider_id="p1",
        )
        assert to_payload([slot]) == [{
            "startTime": "2026-02-15T10:00:00+00:00",
            "endTime": "2026-02-15T10:30:00+00:00",
            "providerId": "p1",
            "providerName": None,
        }]
