"""
Business logic services.

Call admission, tool dispatch, credential lifecycle and audit logging.
"""

from .audit import PmsAuditService
from .credentials import CredentialLifecycleManager, RefreshSummary, SikkaTokenClient
from .dispatch import ToolDispatchEngine
from .staff_alerts import StaffAlertService
from .telephony import CallAdmissionRouter
from .tools import ToolName, canonicalize, resolve_tool

__all__ = [
    "PmsAuditService",
    "CredentialLifecycleManager",
    "RefreshSummary",
    "SikkaTokenClient",
    "ToolDispatchEngine",
    "StaffAlertService",
    "CallAdmissionRouter",
    "ToolName",
    "canonicalize",
    "resolve_tool",
]
