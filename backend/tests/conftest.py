"""Shared test fixtures for the receptionist backend test suite."""

from __future__ import annotations

import os
import uuid

import pytest


WEBHOOK_SECRET = "test-webhook-secret"
BACKEND_API_KEY = "test-backend-key"
CRON_SECRET = "test-cron-secret"


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any test module imports, so settings and the engine
    are built against an in-memory SQLite database.
    """
    os.environ["DATABASE_URL"] = "sqlite://"
    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-pytest-32")
    os.environ.setdefault("APP_BASE_URL", "https://frontdesk.test")
    os.environ.setdefault("VAPI_WEBHOOK_SECRET", WEBHOOK_SECRET)
    os.environ.setdefault("VAPI_API_KEY", "test-vapi-key")
    os.environ.setdefault("BACKEND_API_KEY", BACKEND_API_KEY)
    os.environ.setdefault("CRON_SECRET", CRON_SECRET)
    os.environ.setdefault("SIKKA_APP_ID", "test-app-id")
    os.environ.setdefault("SIKKA_APP_KEY", "test-app-key")
    os.environ.setdefault("CELERY_BROKER_URL", "redis://127.0.0.1:6399/0")
    os.environ.setdefault("TWILIO_ACCOUNT_SID", "")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "")


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    from frontdesk.core.database import Base, engine
    from frontdesk import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Database session; every table is emptied after the test."""
    from frontdesk.core.database import Base, SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture
def auth_headers():
    return {"x-vapi-secret": WEBHOOK_SECRET}


@pytest.fixture
def make_clinic(db):
    """Factory fixture: a clinic with one active phone binding.

    Returns the binding; ``binding.clinic`` and ``binding.pms_integration``
    are populated as requested.
    """
    from frontdesk.models import Clinic, ClinicPhoneBinding, PmsIntegration, PmsIntegrationStatus

    def _make(
        name: str = "Maple Dental",
        timezone: str = "America/Toronto",
        phone_number: str = "+14165550100",
        voice_session_id: str | None = None,
        sip_uri: str | None = None,
        availability: dict | None = None,
        fallback: dict | None = None,
        calendar_connected: bool = False,
        pms_status: PmsIntegrationStatus | None = None,
        transfer_enabled: bool = False,
        staff_forward_number: str | None = None,
    ):
        clinic = Clinic(
            name=name,
            timezone=timezone,
            calendar_connected=calendar_connected,
            calendar_id="primary" if calendar_connected else None,
            calendar_access_token="calendar-access" if calendar_connected else None,
            calendar_refresh_token="calendar-refresh" if calendar_connected else None,
        )
        db.add(clinic)
        db.flush()

        integration = None
        if pms_status is not None:
            integration = PmsIntegration(
                clinic_id=clinic.id,
                status=pms_status,
                office_id="office-1",
                secret_key="office-secret",
                request_key="request-key-1",
                refresh_key="refresh-key-1",
            )
            db.add(integration)
            db.flush()

        binding = ClinicPhoneBinding(
            clinic_id=clinic.id,
            phone_number=phone_number,
            voice_session_id=voice_session_id or f"vs-{uuid.uuid4().hex[:8]}",
            sip_uri=sip_uri,
            availability_settings=availability,
            fallback_settings=fallback,
            transfer_enabled=transfer_enabled,
            staff_forward_number=staff_forward_number,
            pms_integration_id=integration.id if integration else None,
        )
        db.add(binding)
        db.commit()
        db.refresh(binding)
        return binding

    return _make
