"""
Spoken phrasing for tool results.

Everything returned to the voice agent is read aloud, so failures carry a
graceful sentence that offers a human follow-up instead of an error code.
"""

from datetime import datetime, tzinfo
from typing import Dict, List

from ..adapters.base import AdapterErrorKind, TimeSlot
from .tools import ToolName


NOT_CONFIGURED_MESSAGE = (
    "I apologize, but our scheduling and records system isn't set up yet. "
    "I can take a message and have someone from our team call you back."
)
CONFIGURATION_NOT_FOUND_MESSAGE = (
    "I'm having trouble accessing our system right now. "
    "Let me take your information and have someone call you back."
)
UNKNOWN_TOOL_MESSAGE = (
    "I'm sorry, that function isn't available right now. "
    "Let me take a message and have someone from our team call you back."
)
UNSUPPORTED_MESSAGE = (
    "I'm not able to look that up right now, but I can take a message "
    "and have someone from our team call you back."
)
INTERNAL_ERROR_MESSAGE = (
    "I'm sorry, something went wrong on our end. "
    "Let me take your information and have someone call you back."
)
TRANSFER_MESSAGE = "Transferring you to our staff now. Please hold."
TRANSFER_UNAVAILABLE_MESSAGE = (
    "I apologize, but live assistance is not available right now. "
    "I can take a detailed message and have someone call you back within the hour."
)
TRANSFER_FAILED_MESSAGE = (
    "I apologize, but I'm having trouble with the transfer. "
    "Let me take your information and have someone call you right back."
)

FAILURE_MESSAGES: Dict[ToolName, str] = {
    ToolName.SEARCH_PATIENTS: (
        "I'm having trouble searching our records. Let me take your information manually."
    ),
    ToolName.GET_PATIENT_INFO: "Let me get your information manually.",
    ToolName.CREATE_PATIENT: (
        "I'm having trouble creating your profile. Let me transfer you to our front desk."
    ),
    ToolName.UPDATE_PATIENT: (
        "I'm having trouble updating your information. Let me transfer you to our front desk."
    ),
    ToolName.CHECK_AVAILABILITY: (
        "I'm having trouble checking the schedule right now. Let me transfer you to our scheduling team."
    ),
    ToolName.BOOK_APPOINTMENT: (
        "I'm sorry, I had trouble booking that appointment. "
        "Let me take your information and have someone call you back."
    ),
    ToolName.RESCHEDULE_APPOINTMENT: (
        "I'm having trouble rescheduling your appointment. Let me transfer you to our scheduling team."
    ),
    ToolName.CANCEL_APPOINTMENT: (
        "I'm having trouble cancelling your appointment. Let me transfer you to our scheduling team."
    ),
    ToolName.GET_APPOINTMENTS: (
        "I'm having trouble finding your appointments. Let me transfer you to our scheduling team."
    ),
    ToolName.ADD_PATIENT_NOTE: (
        "I wasn't able to save that note, but I'll make sure our staff gets the message."
    ),
    ToolName.GET_PATIENT_INSURANCE: (
        "I couldn't find insurance information on file. Our front desk can help verify your coverage."
    ),
    ToolName.GET_PATIENT_BALANCE: (
        "I wasn't able to find your balance information. "
        "Let me connect you with our billing staff who can help."
    ),
    ToolName.GET_PROVIDERS: "I'm having trouble pulling up our provider list right now.",
    ToolName.TRANSFER_TO_HUMAN: TRANSFER_FAILED_MESSAGE,
}

NOT_FOUND_MESSAGES: Dict[ToolName, str] = {
    ToolName.GET_PATIENT_INFO: "I don't see a record for you. Let me create a new patient profile.",
    ToolName.SEARCH_PATIENTS: "I don't see a record matching that. Let me create a new patient profile.",
    ToolName.CANCEL_APPOINTMENT: (
        "I couldn't find that appointment. Let me transfer you to our scheduling team."
    ),
}

MISSING_PARAMETER_MESSAGES: Dict[ToolName, str] = {
    ToolName.BOOK_APPOINTMENT: "What date and time would you like for your appointment?",
    ToolName.RESCHEDULE_APPOINTMENT: "Which appointment would you like to move, and to what time?",
    ToolName.CANCEL_APPOINTMENT: "Which appointment would you like to cancel?",
    ToolName.CREATE_PATIENT: "Could I get your first and last name, please?",
    ToolName.ADD_PATIENT_NOTE: "What would you like me to note for our staff?",
}
DEFAULT_MISSING_PARAMETER_MESSAGE = "Could you give me a few more details so I can look that up?"


def failure_message(tool: ToolName, kind: AdapterErrorKind) -> str:
    """Spoken sentence for a failed backend call."""
    if kind == AdapterErrorKind.UNSUPPORTED:
        return UNSUPPORTED_MESSAGE
    if kind == AdapterErrorKind.NOT_FOUND and tool in NOT_FOUND_MESSAGES:
        return NOT_FOUND_MESSAGES[tool]
    return FAILURE_MESSAGES[tool]


def missing_parameter_message(tool: ToolName) -> str:
    return MISSING_PARAMETER_MESSAGES.get(tool, DEFAULT_MISSING_PARAMETER_MESSAGE)


def speak_datetime(value: datetime, tz: tzinfo) -> str:
    """Render a time the way it is said aloud: ``Sunday, February 15 at 10:00 AM``."""
    local = value.astimezone(tz)
    return f"{local:%A}, {local:%B} {local.day} at {speak_time(local)}"


def speak_time(value: datetime) -> str:
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value:%M} {meridiem}"


def speak_money(amount: float) -> str:
    return f"${amount:,.2f}"


def speak_slots(slots: List[TimeSlot], tz: tzinfo, limit: int = 3) -> str:
    if not slots:
        return "I don't see any openings that day. Would you like to try another date?"
    times = [speak_time(slot.start_time.astimezone(tz)) for slot in slots[:limit]]
    if len(times) == 1:
        listed = times[0]
    else:
        listed = ", ".join(times[:-1]) + f" or {times[-1]}"
    day = slots[0].start_time.astimezone(tz)
    return f"On {day:%A}, {day:%B} {day.day}, I have openings at {listed}. Which works best for you?"
