"""
Backend adapter interface.

The practice-management adapter and the calendar adapter implement the
same patient/appointment operation set. Adapters never raise for
upstream failures: every call returns an ``AdapterResult`` carrying an
``AdapterErrorKind`` the dispatch layer can match on.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional


# =============================================================================
# Result Type
# =============================================================================

class AdapterErrorKind(str, enum.Enum):
    """Known failure kinds of a backend call."""
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    UNSUPPORTED = "unsupported"
    WRITEBACK_FAILED = "writeback_failed"


_DEFAULT_STATUS = {
    AdapterErrorKind.NOT_FOUND: 404,
    AdapterErrorKind.INVALID_REQUEST: 400,
    AdapterErrorKind.UNAUTHORIZED: 401,
    AdapterErrorKind.TIMEOUT: 504,
    AdapterErrorKind.UPSTREAM: 502,
    AdapterErrorKind.UNSUPPORTED: 501,
    AdapterErrorKind.WRITEBACK_FAILED: 502,
}


@dataclass
class AdapterResult:
    """
    Outcome of one backend operation.

    ``endpoint`` and ``method`` describe the upstream call for the audit
    trail; ``status`` is the upstream HTTP status or its closest analogue.
    """

    ok: bool
    endpoint: str
    method: str
    status: int = 200
    data: Any = None
    error_kind: Optional[AdapterErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls, data: Any, endpoint: str, method: str = "GET", status: int = 200) -> "AdapterResult":
        return cls(ok=True, data=data, endpoint=endpoint, method=method, status=status)

    @classmethod
    def failure(
        cls,
        kind: AdapterErrorKind,
        message: str,
        endpoint: str,
        method: str = "GET",
        status: Optional[int] = None,
    ) -> "AdapterResult":
        return cls(
            ok=False,
            endpoint=endpoint,
            method=method,
            status=status if status is not None else _DEFAULT_STATUS[kind],
            error_kind=kind,
            error_message=message,
        )


# =============================================================================
# Domain Records
# =============================================================================

@dataclass
class Patient:
    id: str
    first_name: str = ""
    last_name: str = ""
    date_of_birth: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    balance: Optional[float] = None
    last_visit: Optional[date] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Appointment:
    id: str
    start_time: datetime
    patient_id: Optional[str] = None
    patient_name: str = ""
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    appointment_type: str = "General"
    end_time: Optional[datetime] = None
    duration: int = 30
    status: str = "Scheduled"
    notes: Optional[str] = None
    confirmation_number: Optional[str] = None


@dataclass
class TimeSlot:
    start_time: datetime
    end_time: datetime
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None


@dataclass
class Insurance:
    id: Optional[str]
    provider: Optional[str] = None
    policy_number: Optional[str] = None
    group_number: Optional[str] = None
    subscriber_name: Optional[str] = None
    is_primary: bool = True


@dataclass
class PatientBalance:
    total: float = 0.0
    insurance: float = 0.0
    patient: float = 0.0
    last_payment: Optional[Dict[str, Any]] = None


@dataclass
class Provider:
    id: str
    first_name: str = ""
    last_name: str = ""
    title: Optional[str] = None
    specialty: Optional[str] = None
    is_active: bool = True

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return f"{self.title} {name}".strip() if self.title else name


@dataclass
class PatientNote:
    id: str
    patient_id: str
    content: str
    category: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PatientDetails:
    """Caller-supplied patient info, used when booking without a PMS record."""

    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    patient_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class BookingRequest:
    start_time: datetime
    duration: int = 30
    appointment_type: str = "General"
    provider_id: Optional[str] = None
    notes: Optional[str] = None
    patient: PatientDetails = field(default_factory=PatientDetails)


# =============================================================================
# Adapter Interface
# =============================================================================

class BackendAdapter(ABC):
    """
    Operation set shared by every scheduling/records backend.

    Implementations must enforce their own request timeouts and map every
    upstream failure to an ``AdapterErrorKind``.
    """

    name: str = "backend"

    def _unsupported(self, operation: str, endpoint: str = "-", method: str = "GET") -> AdapterResult:
        return AdapterResult.failure(
            AdapterErrorKind.UNSUPPORTED,
            f"{operation} is not supported by the {self.name} backend",
            endpoint=endpoint,
            method=method,
        )

    @abstractmethod
    def search_patients(self, query: str, limit: int = 10) -> AdapterResult:
        """Data: ``List[Patient]``."""

    @abstractmethod
    def get_patient(self, patient_id: str) -> AdapterResult:
        """Data: ``Patient``."""

    @abstractmethod
    def create_patient(self, details: PatientDetails, address: Optional[Dict[str, Any]] = None) -> AdapterResult:
        """Data: ``Patient``."""

    @abstractmethod
    def update_patient(self, patient_id: str, updates: Dict[str, Any]) -> AdapterResult:
        """Data: ``Patient``."""

    @abstractmethod
    def check_availability(self, on_date: date, duration: int, provider_id: Optional[str] = None) -> AdapterResult:
        """Data: ``List[TimeSlot]``."""

    @abstractmethod
    def book_appointment(self, request: BookingRequest) -> AdapterResult:
        """Data: ``Appointment``."""

    @abstractmethod
    def reschedule_appointment(
        self, appointment_id: str, start_time: datetime, duration: Optional[int] = None
    ) -> AdapterResult:
        """Data: ``Appointment``."""

    @abstractmethod
    def cancel_appointment(self, appointment_id: str, reason: Optional[str] = None) -> AdapterResult:
        """Data: ``{"appointmentId": ..., "cancelled": True}``."""

    @abstractmethod
    def get_appointments(
        self,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        patient_query: Optional[str] = None,
    ) -> AdapterResult:
        """Data: ``List[Appointment]``."""

    @abstractmethod
    def add_patient_note(self, patient_id: str, content: str, category: Optional[str] = None) -> AdapterResult:
        """Data: ``PatientNote``."""

    @abstractmethod
    def get_patient_insurance(self, patient_id: str) -> AdapterResult:
        """Data: ``List[Insurance]``."""

    @abstractmethod
    def get_patient_balance(self, patient_id: str) -> AdapterResult:
        """Data: ``PatientBalance``."""

    @abstractmethod
    def get_providers(self) -> AdapterResult:
        """Data: ``List[Provider]``."""

    def close(self) -> None:
        """Release network resources."""


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def slots_from_busy(
    day_start: datetime,
    day_end: datetime,
    busy: List[tuple],
    duration_minutes: int,
) -> List[TimeSlot]:
    """
    Free windows of at least ``duration_minutes`` between busy periods.

    ``busy`` is a list of ``(start, end)`` datetimes sorted by start.
    """
    slots: List[TimeSlot] = []
    cursor = day_start
    for busy_start, busy_end in busy:
        gap = (busy_start - cursor).total_seconds() / 60
        if gap >= duration_minutes:
            slots.append(TimeSlot(start_time=cursor, end_time=busy_start))
        if busy_end > cursor:
            cursor = busy_end
    if (day_end - cursor).total_seconds() / 60 >= duration_minutes:
        slots.append(TimeSlot(start_time=cursor, end_time=day_end))
    return slots
