"""
Tool catalog.

The closed set of operations the voice agent may invoke, how incoming
tool names are canonicalized, and which tools touch patient data.
"""

import enum
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


class ToolName(str, enum.Enum):
    SEARCH_PATIENTS = "searchPatients"
    GET_PATIENT_INFO = "getPatientInfo"
    CREATE_PATIENT = "createPatient"
    UPDATE_PATIENT = "updatePatient"
    CHECK_AVAILABILITY = "checkAvailability"
    BOOK_APPOINTMENT = "bookAppointment"
    RESCHEDULE_APPOINTMENT = "rescheduleAppointment"
    CANCEL_APPOINTMENT = "cancelAppointment"
    GET_APPOINTMENTS = "getAppointments"
    ADD_PATIENT_NOTE = "addPatientNote"
    GET_PATIENT_INSURANCE = "getPatientInsurance"
    GET_PATIENT_BALANCE = "getPatientBalance"
    GET_PROVIDERS = "getProviders"
    TRANSFER_TO_HUMAN = "transferToHuman"


@dataclass(frozen=True)
class ToolSpec:
    """
    Catalog entry for one tool.

    ``phi_fields`` lists the patient-data fields the tool can expose;
    an empty tuple means the tool never touches patient data and is not
    audited.
    """

    name: ToolName
    phi_fields: Tuple[str, ...] = ()

    @property
    def touches_phi(self) -> bool:
        return bool(self.phi_fields)


CATALOG: Dict[ToolName, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(ToolName.SEARCH_PATIENTS, ("name", "phone", "dateOfBirth")),
        ToolSpec(ToolName.GET_PATIENT_INFO, ("name", "phone", "email", "dateOfBirth", "lastVisit", "balance")),
        ToolSpec(ToolName.CREATE_PATIENT, ("name", "phone", "email", "dateOfBirth", "address")),
        ToolSpec(ToolName.UPDATE_PATIENT, ("name", "phone", "email", "dateOfBirth", "address")),
        ToolSpec(ToolName.CHECK_AVAILABILITY),
        ToolSpec(ToolName.BOOK_APPOINTMENT, ("patientId", "name", "dateTime", "appointmentType")),
        ToolSpec(ToolName.RESCHEDULE_APPOINTMENT, ("appointmentId", "dateTime")),
        ToolSpec(ToolName.CANCEL_APPOINTMENT, ("appointmentId", "patientId")),
        ToolSpec(ToolName.GET_APPOINTMENTS, ("patientId", "name", "dateTime", "appointmentType")),
        ToolSpec(ToolName.ADD_PATIENT_NOTE, ("patientId", "note")),
        ToolSpec(ToolName.GET_PATIENT_INSURANCE, ("insuranceProvider", "policyNumber", "groupNumber")),
        ToolSpec(ToolName.GET_PATIENT_BALANCE, ("balance",)),
        ToolSpec(ToolName.GET_PROVIDERS),
        ToolSpec(ToolName.TRANSFER_TO_HUMAN),
    )
}


_SEPARATORS = re.compile(r"[\s_\-.]+")


def canonicalize(name: str) -> str:
    """Lowercase a tool name and drop separators: ``get_patient-info`` -> ``getpatientinfo``."""
    return _SEPARATORS.sub("", name or "").lower()


_BY_CANONICAL: Dict[str, ToolName] = {canonicalize(tool.value): tool for tool in ToolName}
# Names used by older assistant configurations
_BY_CANONICAL.update({
    "transfercall": ToolName.TRANSFER_TO_HUMAN,
    "getpatient": ToolName.GET_PATIENT_INFO,
})


def resolve_tool(name: Optional[str]) -> Optional[ToolName]:
    """Map an incoming tool name to the catalog, or None if unknown."""
    if not name:
        return None
    return _BY_CANONICAL.get(canonicalize(name))
