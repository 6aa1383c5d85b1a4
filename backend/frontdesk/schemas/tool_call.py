"""
Tool call envelope and result schemas.

The voice platform posts either a flat envelope or its native webhook
payload; both are normalized into ``ToolCallEnvelope``. Every dispatch
ends in a ``ToolCallResult`` that carries a sentence safe to speak.
"""

import json
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Envelope
# =============================================================================

class ToolCallEnvelope(BaseModel):
    """
    Unit of work submitted by the voice platform.

    Never persisted beyond the audit trail it produces.
    """

    model_config = ConfigDict(populate_by_name=True)

    call_id: Optional[str] = Field(default=None, alias="callId")
    dialed_number_id: Optional[str] = Field(default=None, alias="dialedNumberId")
    caller_number: Optional[str] = Field(default=None, alias="callerNumber")
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def decode_parameters(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], tool_name: Optional[str] = None) -> "ToolCallEnvelope":
        """
        Build an envelope from a request body.

        Accepts the flat envelope or the platform's ``{"message": {...}}``
        payload carrying ``call``, and ``functionCall`` or ``toolCalls``.
        The path tool name wins over any name in the body.
        """
        message = payload.get("message") if isinstance(payload.get("message"), dict) else None
        if message is None:
            envelope = cls.model_validate(payload)
            if tool_name:
                envelope.tool_name = tool_name
            return envelope

        call = message.get("call") or payload.get("call") or {}
        customer = call.get("customer") or {}

        name = None
        parameters: Any = {}
        function_call = message.get("functionCall")
        tool_calls = message.get("toolCalls") or message.get("toolCallList") or []
        if function_call:
            name = function_call.get("name")
            parameters = function_call.get("parameters") or {}
        elif tool_calls:
            function = tool_calls[0].get("function") or {}
            name = function.get("name")
            parameters = function.get("arguments") or function.get("parameters") or {}

        return cls(
            call_id=call.get("id"),
            dialed_number_id=call.get("phoneNumberId") or call.get("phoneNumber"),
            caller_number=customer.get("number"),
            tool_name=tool_name or name,
            parameters=parameters,
        )


# =============================================================================
# Result
# =============================================================================

class OkResult(BaseModel):
    kind: Literal["ok"] = "ok"
    data: Dict[str, Any] = Field(default_factory=dict)
    spoken_message: str = Field(..., min_length=1)

    def to_response(self) -> Dict[str, Any]:
        return {"result": {**self.data, "success": True, "message": self.spoken_message}}


class FailedResult(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str = Field(..., min_length=1)
    spoken_message: str = Field(..., min_length=1)

    @field_validator("spoken_message")
    @classmethod
    def must_be_speakable(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("failed results must carry a spoken message")
        return v

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.reason, "message": self.spoken_message}


ToolCallResult = Union[OkResult, FailedResult]


def ok(data: Optional[Dict[str, Any]], spoken_message: str) -> OkResult:
    return OkResult(data=data or {}, spoken_message=spoken_message)


def failed(reason: str, spoken_message: str) -> FailedResult:
    return FailedResult(reason=reason, spoken_message=spoken_message)
