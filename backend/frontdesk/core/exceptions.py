"""
Exception hierarchy for the receptionist backend.

Upstream failures inside backend adapters are not raised; they are
returned as ``AdapterResult`` values. Exceptions here cover the cases
that must interrupt a request or surface to the process.
"""


class FrontdeskError(Exception):
    """Base class for all application errors."""


class ConfigurationError(FrontdeskError):
    """A clinic, binding or integration is missing or inconsistent."""


class UnauthorizedError(FrontdeskError):
    """A webhook request failed shared-secret or bearer authentication."""


class CredentialError(FrontdeskError):
    """The PMS rejected both the refresh and the initial credential grant."""


class AuditWriteError(FrontdeskError):
    """
    An audit entry could not be persisted.

    Carries the result that was already computed for the caller so the
    HTTP layer can still answer while the failure propagates.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
