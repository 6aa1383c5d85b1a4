"""
Pydantic schemas for request/response validation.

Defines webhook payloads, policies and tool call envelopes.
"""

from .common import HealthResponse, ErrorResponse, WebhookAck
from .policies import (
    AlwaysPolicy,
    DisabledPolicy,
    AfterHoursOnlyPolicy,
    OverflowOnlyPolicy,
    VoicemailFallback,
    ForwardFallback,
    BusySignalFallback,
    parse_availability_policy,
    parse_fallback_policy,
)
from .tool_call import ToolCallEnvelope, OkResult, FailedResult, ToolCallResult, ok, failed

__all__ = [
    "HealthResponse",
    "ErrorResponse",
    "WebhookAck",
    "AlwaysPolicy",
    "DisabledPolicy",
    "AfterHoursOnlyPolicy",
    "OverflowOnlyPolicy",
    "VoicemailFallback",
    "ForwardFallback",
    "BusySignalFallback",
    "parse_availability_policy",
    "parse_fallback_policy",
    "ToolCallEnvelope",
    "OkResult",
    "FailedResult",
    "ToolCallResult",
    "ok",
    "failed",
]
