"""
Voice agent tool endpoint.

The voice platform calls ``POST /tools/{tool_name}`` whenever the agent
invokes a function mid-conversation. Responses are always HTTP 200 with
a speakable ``message`` except for authentication failures (401).
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import UnauthorizedError
from ..core.security import authenticate_webhook
from ..schemas.tool_call import ToolCallEnvelope, failed
from ..services import speech
from ..services.dispatch import ToolDispatchEngine


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tools", tags=["Tools"])

UNAUTHORIZED_MESSAGE = "I'm sorry, I'm unable to access our system right now."


def unauthorized_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "unauthorized", "message": UNAUTHORIZED_MESSAGE},
    )


def get_dispatch_engine(db: Session = Depends(get_db)) -> ToolDispatchEngine:
    return ToolDispatchEngine(db)


@router.post("/{tool_name}", summary="Execute a voice agent tool")
def execute_tool(
    tool_name: str,
    request: Request,
    payload: Dict[str, Any] = Body(default={}),
    engine: ToolDispatchEngine = Depends(get_dispatch_engine),
):
    """
    Execute one tool call.

    Accepts the flat envelope or the voice platform's message payload;
    the tool name in the path wins over any name in the body.
    """
    try:
        authenticate_webhook(request.headers)
    except UnauthorizedError:
        logger.warning(f"Unauthorized tool call to {tool_name}")
        return unauthorized_response()

    try:
        envelope = ToolCallEnvelope.from_payload(payload, tool_name=tool_name)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Malformed tool call payload for {tool_name}: {type(e).__name__}")
        return failed("invalid_request", speech.INTERNAL_ERROR_MESSAGE).to_response()

    try:
        result = engine.dispatch(envelope, request.headers)
    except UnauthorizedError:
        return unauthorized_response()
    return result.to_response()
