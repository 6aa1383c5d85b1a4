"""
Database models for the receptionist backend.

SQLAlchemy ORM models for clinics, phone bindings, PMS integrations,
call logs and the PHI audit trail.
"""

from .clinic import Clinic, ClinicPhoneBinding
from .pms_integration import PmsIntegration, PmsIntegrationStatus
from .call_log import CallLog, CallRoute, CallStatus
from .audit_log import PmsAuditLog

__all__ = [
    "Clinic",
    "ClinicPhoneBinding",
    "PmsIntegration",
    "PmsIntegrationStatus",
    "CallLog",
    "CallRoute",
    "CallStatus",
    "PmsAuditLog",
]
