"""
Backend adapters.

Interchangeable implementations of the patient/appointment operation
set: the Sikka practice-management gateway and Google Calendar.
"""

from .base import AdapterErrorKind, AdapterResult, BackendAdapter, BookingRequest, PatientDetails
from .pms import PracticeManagementAdapter
from .calendar import CalendarAdapter

__all__ = [
    "AdapterErrorKind",
    "AdapterResult",
    "BackendAdapter",
    "BookingRequest",
    "PatientDetails",
    "PracticeManagementAdapter",
    "CalendarAdapter",
]
