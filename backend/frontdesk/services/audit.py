"""
Audit logging service for HIPAA compliance.

Tracks every tool invocation that touches patient data. A missed audit
record is itself a reportable incident, so write failures are logged at
CRITICAL and raised as ``AuditWriteError``.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import AuditWriteError
from ..models.audit_log import PmsAuditLog


logger = logging.getLogger(__name__)


class PmsAuditService:
    """
    Service for creating HIPAA-compliant PMS audit entries.

    Entries are immutable: this service only inserts and reads.

    Example usage:
        audit = PmsAuditService(db)
        audit.log_access(
            action="getPatientBalance",
            endpoint="/patient_balance",
            method="GET",
            response_status=200,
            response_time_ms=143,
            pms_integration_id=integration.id,
            call_id="call-123",
            phi_accessed=True,
            phi_fields=["balance"],
        )
    """

    def __init__(self, db: Session):
        """
        Initialize audit service with database session.

        Args:
            db: SQLAlchemy session for database operations
        """
        self.db = db

    def log_access(
        self,
        action: str,
        endpoint: str,
        method: str,
        response_status: int,
        response_time_ms: int,
        pms_integration_id: Optional[UUID] = None,
        call_id: Optional[str] = None,
        request_summary: Optional[dict[str, Any]] = None,
        phi_accessed: bool = False,
        phi_fields: Optional[List[str]] = None,
        error_message: Optional[str] = None,
    ) -> PmsAuditLog:
        """
        Create and persist an audit entry.

        Args:
            action: Tool that was invoked
            endpoint: Upstream endpoint that served it
            method: HTTP method used upstream
            response_status: HTTP-like status of the outcome
            response_time_ms: Measured duration of the backend call
            pms_integration_id: Integration used, if the PMS served the call
            call_id: Voice call identifier
            request_summary: Non-PHI context (never PHI values!)
            phi_accessed: Whether PHI came back in the response
            phi_fields: PHI field names returned (never values)
            error_message: Failure detail, if any

        Returns:
            Created PmsAuditLog instance

        Raises:
            AuditWriteError: If the entry could not be committed
        """
        entry = PmsAuditLog.create_entry(
            action=action,
            endpoint=endpoint,
            method=method,
            response_status=response_status,
            response_time_ms=response_time_ms,
            pms_integration_id=pms_integration_id,
            call_id=call_id,
            request_summary=request_summary,
            phi_accessed=phi_accessed,
            phi_fields=phi_fields,
            error_message=error_message,
        )

        try:
            self.db.add(entry)
            self.db.commit()
            self.db.refresh(entry)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.critical(
                f"AUDIT WRITE FAILED for action={action} call_id={call_id}: {type(e).__name__}"
            )
            raise AuditWriteError(f"Failed to write audit entry for {action}") from e

        logger.info(
            f"Audit: {action} {method.upper()} {endpoint} -> {response_status} "
            f"({entry.response_time_ms}ms, phi={phi_accessed})"
        )
        return entry

    def get_audit_logs(
        self,
        pms_integration_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        phi_only: bool = False,
        call_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[PmsAuditLog]:
        """
        Query audit entries for compliance reporting.

        Returns newest first.
        """
        query = select(PmsAuditLog)
        if pms_integration_id is not None:
            query = query.where(PmsAuditLog.pms_integration_id == pms_integration_id)
        if call_id is not None:
            query = query.where(PmsAuditLog.call_id == call_id)
        if start_date is not None:
            query = query.where(PmsAuditLog.created_at >= start_date)
        if end_date is not None:
            query = query.where(PmsAuditLog.created_at <= end_date)
        if phi_only:
            query = query.where(PmsAuditLog.phi_accessed.is_(True))

        query = query.order_by(PmsAuditLog.created_at.desc()).limit(limit)
        return list(self.db.scalars(query))
