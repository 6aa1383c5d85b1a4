"""
PMS audit log database model.

Tracks every tool invocation that touches patient data, for HIPAA
compliance. Rows are append-only: never updated, never deleted.
"""

import uuid
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String, Text, Uuid
from sqlalchemy.sql import func

from ..core.database import Base
from .types import UTCDateTime


class PmsAuditLog(Base):
    """
    HIPAA-compliant audit entry for a PMS or calendar access.

    Attributes:
        id: UUID primary key
        pms_integration_id: Integration that served the call (NULL for calendar)
        action: Tool that was invoked (e.g. ``getPatientBalance``)
        endpoint: Upstream endpoint hit
        method: HTTP method used upstream
        call_id: Voice call the invocation belongs to
        request_summary: Non-PHI context (clinic, backend, parameter names)
        response_status: HTTP-like status of the outcome
        response_time_ms: Wall-clock duration of the adapter call
        phi_accessed: Whether PHI was present in the response
        phi_fields: Names of the PHI fields returned (never values)
        error_message: Failure detail, if any
        created_at: Timestamp of the access
    """

    __tablename__ = "pms_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # What was accessed
    pms_integration_id = Column(
        Uuid, ForeignKey("pms_integrations.id"), nullable=True, index=True
    )
    action = Column(String(100), nullable=False, index=True)
    endpoint = Column(String(255), nullable=False)
    method = Column(String(10), nullable=False)

    # Context
    call_id = Column(String(255), nullable=True, index=True)
    # IMPORTANT: Never store actual PHI values here, only field names
    request_summary = Column(JSON, nullable=True)

    # Result
    response_status = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=False)
    phi_accessed = Column(Boolean, nullable=False, default=False)
    phi_fields = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)

    created_at = Column(
        UTCDateTime,
        nullable=False,
        server_default=func.current_timestamp(),
        index=True,
    )

    def __repr__(self) -> str:
        """String representation of audit log entry."""
        return (
            f"<PmsAuditLog(id={self.id}, "
            f"action={self.action}, "
            f"status={self.response_status}, "
            f"phi={self.phi_accessed})>"
        )

    @classmethod
    def create_entry(
        cls,
        action: str,
        endpoint: str,
        method: str,
        response_status: int,
        response_time_ms: int,
        pms_integration_id: Optional[UUID] = None,
        call_id: Optional[str] = None,
        request_summary: Optional[dict[str, Any]] = None,
        phi_accessed: bool = False,
        phi_fields: Optional[list[str]] = None,
        error_message: Optional[str] = None,
    ) -> "PmsAuditLog":
        """
        Factory method to create an audit entry.

        ``phi_fields`` is forced empty when ``phi_accessed`` is false so a
        failed lookup never claims PHI exposure.

        Returns:
            New PmsAuditLog instance (not yet persisted)
        """
        return cls(
            pms_integration_id=pms_integration_id,
            action=action,
            endpoint=endpoint,
            method=method.upper(),
            call_id=call_id,
            request_summary=request_summary,
            response_status=response_status,
            response_time_ms=max(0, int(response_time_ms)),
            phi_accessed=phi_accessed,
            phi_fields=list(phi_fields or []) if phi_accessed else [],
            error_message=error_message,
        )
