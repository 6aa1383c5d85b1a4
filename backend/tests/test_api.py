"""Tests for the HTTP surface.

Covers:
  - Health endpoints
  - Carrier voice webhooks (TwiML responses, call completion)
  - Tool endpoint (auth, payload shapes, error handling)
  - Voice-session lifecycle webhook
  - Cron-triggered credential sweeps
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from frontdesk.api.cron import get_credential_manager
from frontdesk.api.tools import UNAUTHORIZED_MESSAGE, get_dispatch_engine
from frontdesk.core.database import get_db
from frontdesk.core.exceptions import AuditWriteError
from frontdesk.main import app
from frontdesk.models import CallLog, CallStatus
from frontdesk.schemas.tool_call import failed, ok
from frontdesk.services import speech
from frontdesk.services.credentials import RefreshSummary
from frontdesk.services.telephony import ERROR_MESSAGE


CRON_SECRET = "test-cron-secret"


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def engine_stub(client):
    """Replace the dispatch engine with a mock."""
    engine = MagicMock()
    app.dependency_overrides[get_dispatch_engine] = lambda: engine
    return engine


# ── Health ───────────────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"

    def test_readiness_reports_unreachable_broker(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["components"]["database"]["connected"] is True
        assert body["components"]["broker"]["connected"] is False

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"


# ── Voice webhooks ───────────────────────────────────────────────────


class TestVoiceWebhooks:
    def test_inbound_bridges_bound_number(self, client, make_clinic):
        make_clinic(voice_session_id="vs-api")
        response = client.post(
            "/voice/inbound",
            data={"To": "+14165550100", "From": "+16475550123", "CallSid": "CA900"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        root = ET.fromstring(response.text)
        assert root.find("Dial/Sip").text == "sip:vs-api@sip.vapi.ai"

    def test_inbound_unbound_number(self, client):
        response = client.post("/voice/inbound", data={"To": "+18005550000", "CallSid": "CA901"})

        root = ET.fromstring(response.text)
        assert root.find("Say").text == ERROR_MESSAGE
        assert root.find("Hangup") is not None

    def test_call_complete_ends_call(self, client, db, make_clinic):
        make_clinic()
        client.post("/voice/inbound", data={"To": "+14165550100", "From": "+16475550123", "CallSid": "CA902"})

        response = client.post("/voice/call-complete", data={"CallSid": "CA902", "DialCallStatus": "completed"})

        assert response.status_code == 200
        assert ET.fromstring(response.text).tag == "Response"
        log = db.scalars(select(CallLog).where(CallLog.call_id == "CA902")).one()
        assert log.status == CallStatus.ENDED
        assert log.ended_reason == "completed"
        assert log.ended_at is not None

    def test_status_callback_ends_fallback_call(self, client, db, make_clinic):
        make_clinic(availability={"mode": "disabled"})
        client.post("/voice/inbound", data={"To": "+14165550100", "From": "+16475550123", "CallSid": "CA904"})

        client.post("/voice/status", data={"CallSid": "CA904", "CallStatus": "ringing"})
        log = db.scalars(select(CallLog).where(CallLog.call_id == "CA904")).one()
        assert log.status == CallStatus.IN_PROGRESS

        response = client.post("/voice/status", data={"CallSid": "CA904", "CallStatus": "completed"})
        assert response.status_code == 200
        db.refresh(log)
        assert log.status == CallStatus.ENDED
        assert log.ended_reason == "completed"

    def test_record_action_ends_voicemail_call(self, client, db, make_clinic):
        make_clinic(availability={"mode": "disabled"})
        client.post("/voice/inbound", data={"To": "+14165550100", "CallSid": "CA905"})

        client.post("/voice/call-complete", data={"CallSid": "CA905", "CallStatus": "in-progress"})

        log = db.scalars(select(CallLog).where(CallLog.call_id == "CA905")).one()
        assert log.status == CallStatus.ENDED

    def test_voicemail_callbacks(self, client):
        assert client.post("/voice/voicemail", data={"CallSid": "CA903", "RecordingSid": "RE1"}).status_code == 200
        assert client.post(
            "/voice/voicemail-transcription", data={"CallSid": "CA903", "TranscriptionStatus": "completed"}
        ).status_code == 200

    def test_unexpected_error_still_returns_twiml(self, client):
        with patch("frontdesk.api.voice.CallAdmissionRouter") as router_cls:
            router_cls.side_effect = RuntimeError("boom")
            response = client.post("/voice/inbound", data={"To": "+14165550100"})

        assert response.status_code == 200
        assert ET.fromstring(response.text).find("Say").text == ERROR_MESSAGE


# ── Tools ────────────────────────────────────────────────────────────


class TestToolEndpoint:
    def test_missing_credentials_is_401(self, client, engine_stub):
        response = client.post("/tools/getProviders", json={})

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": UNAUTHORIZED_MESSAGE}
        engine_stub.dispatch.assert_not_called()

    def test_flat_envelope(self, client, engine_stub, auth_headers):
        engine_stub.dispatch.return_value = ok({"count": 0}, "No providers found.")
        response = client.post(
            "/tools/get_providers",
            headers=auth_headers,
            json={"callId": "call-9", "dialedNumberId": "vs-1", "parameters": {"limit": 5}},
        )

        assert response.status_code == 200
        assert response.json() == {"result": {"count": 0, "success": True, "message": "No providers found."}}
        envelope = engine_stub.dispatch.call_args.args[0]
        assert envelope.tool_name == "get_providers"
        assert envelope.call_id == "call-9"
        assert envelope.parameters == {"limit": 5}

    def test_platform_payload_with_string_arguments(self, client, engine_stub, auth_headers):
        engine_stub.dispatch.return_value = failed("not_found", "I couldn't find that.")
        payload = {
            "message": {
                "call": {"id": "call-10", "phoneNumberId": "vs-2", "customer": {"number": "+16475550123"}},
                "toolCalls": [{"function": {"name": "ignored", "arguments": '{"patientId": "42"}'}}],
            }
        }
        response = client.post("/tools/getPatientBalance", headers=auth_headers, json=payload)

        assert response.status_code == 200
        assert response.json() == {"error": "not_found", "message": "I couldn't find that."}
        envelope = engine_stub.dispatch.call_args.args[0]
        assert envelope.tool_name == "getPatientBalance"
        assert envelope.dialed_number_id == "vs-2"
        assert envelope.caller_number == "+16475550123"
        assert envelope.parameters == {"patientId": "42"}

    def test_malformed_parameters(self, client, engine_stub, auth_headers):
        response = client.post(
            "/tools/getProviders", headers=auth_headers, json={"parameters": "{not json"}
        )

        assert response.status_code == 200
        assert response.json() == {"error": "invalid_request", "message": speech.INTERNAL_ERROR_MESSAGE}

    def test_audit_failure_still_answers(self, client, engine_stub, auth_headers):
        engine_stub.dispatch.side_effect = AuditWriteError(
            "audit store down", result=ok({"balance": {"patient": 0}}, "You don't have an outstanding balance with us.")
        )
        response = client.post("/tools/getPatientBalance", headers=auth_headers, json={})

        assert response.status_code == 200
        assert response.json()["result"]["message"] == "You don't have an outstanding balance with us."

    def test_unhandled_error_is_speakable(self, client, engine_stub, auth_headers):
        engine_stub.dispatch.side_effect = RuntimeError("boom")
        response = client.post("/tools/getProviders", headers=auth_headers, json={})

        assert response.status_code == 200
        assert response.json() == {"error": "internal_error", "message": speech.INTERNAL_ERROR_MESSAGE}

    def test_end_to_end_not_configured(self, client, make_clinic, auth_headers):
        binding = make_clinic()
        response = client.post(
            "/tools/checkAvailability",
            headers=auth_headers,
            json={"dialedNumberId": binding.voice_session_id, "parameters": {"date": "2026-02-16"}},
        )

        assert response.json() == {"error": "not_configured", "message": speech.NOT_CONFIGURED_MESSAGE}


# ── Voice-session webhook ────────────────────────────────────────────


def _status_update(call_id, status, phone_number_id=None, **extra):
    call = {"id": call_id, "customer": {"number": "+16475550123"}}
    if phone_number_id:
        call["phoneNumberId"] = phone_number_id
    return {"message": {"type": "status-update", "status": status, "call": call, **extra}}


class TestVoiceSessionWebhook:
    def test_requires_auth(self, client):
        response = client.post("/voice-session/webhook", json=_status_update("call-1", "in-progress"))
        assert response.status_code == 401

    def test_status_updates_create_and_advance_call(self, client, db, make_clinic, auth_headers):
        binding = make_clinic(voice_session_id="vs-hook")

        client.post("/voice-session/webhook", headers=auth_headers,
                    json=_status_update("call-20", "ringing", phone_number_id="vs-hook"))
        log = db.scalars(select(CallLog).where(CallLog.call_id == "call-20")).one()
        assert log.status == CallStatus.RINGING
        assert log.clinic_id == binding.clinic_id
        assert log.caller_number == "***-***-0123"

        response = client.post("/voice-session/webhook", headers=auth_headers,
                               json=_status_update("call-20", "in-progress"))
        assert response.json() == {"received": True}
        db.refresh(log)
        assert log.status == CallStatus.IN_PROGRESS

    def test_ended_call_never_regresses(self, client, db, auth_headers):
        client.post("/voice-session/webhook", headers=auth_headers, json={
            "message": {"type": "end-of-call-report", "endedReason": "customer-ended-call", "call": {"id": "call-21"}},
        })
        client.post("/voice-session/webhook", headers=auth_headers, json=_status_update("call-21", "in-progress"))

        log = db.scalars(select(CallLog).where(CallLog.call_id == "call-21")).one()
        assert log.status == CallStatus.ENDED
        assert log.ended_reason == "customer-ended-call"

    def test_unknown_status_is_ignored(self, client, db, auth_headers):
        response = client.post("/voice-session/webhook", headers=auth_headers,
                               json=_status_update("call-22", "teleporting"))
        assert response.status_code == 200
        assert db.scalars(select(CallLog)).first() is None


# ── Cron ─────────────────────────────────────────────────────────────


class TestCron:
    @pytest.fixture
    def manager(self, client):
        manager = MagicMock()
        summary = RefreshSummary()
        summary.record("8a1f4c8e-3d4b-4b8e-9a57-2f1d9c6a0b11", True)
        manager.refresh_expiring.return_value = summary
        manager.refresh_all.return_value = summary
        app.dependency_overrides[get_credential_manager] = lambda: manager
        return manager

    def test_rejects_missing_secret(self, client, manager):
        response = client.post("/api/cron/refresh-pms-tokens")
        assert response.status_code == 401
        manager.refresh_expiring.assert_not_called()

    def test_rejects_wrong_secret(self, client, manager):
        response = client.post("/api/cron/refresh-pms-tokens", headers={"x-cron-secret": "guess"})
        assert response.status_code == 401

    def test_expiring_sweep(self, client, manager):
        response = client.post("/api/cron/refresh-pms-tokens", headers={"x-cron-secret": CRON_SECRET})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "force": False,
            "summary": {
                "total": 1,
                "success": 1,
                "failed": 0,
                "results": {"8a1f4c8e-3d4b-4b8e-9a57-2f1d9c6a0b11": True},
            },
        }
        manager.refresh_expiring.assert_called_once_with(include_pending=True)
        manager.refresh_all.assert_not_called()

    def test_forced_full_sweep(self, client, manager):
        response = client.post("/api/cron/refresh-pms-tokens?force=true", headers={"x-cron-secret": CRON_SECRET})

        assert response.json()["force"] is True
        manager.refresh_all.assert_called_once_with(force=True)
