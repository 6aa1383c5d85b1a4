"""
PMS integration model.

Holds the practice-management credentials for a clinic. This row is the
single source of truth for tokens: adapters read it at the start of each
dispatch and the credential lifecycle manager is the only writer of the
token fields.
"""

import enum
import uuid

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, JSON, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.database import Base
from ..core.security import EncryptedString
from .types import UTCDateTime, utcnow


# =============================================================================
# Enum Definitions
# =============================================================================

class PmsIntegrationStatus(str, enum.Enum):
    """Lifecycle states of a PMS connection."""
    SETUP_REQUIRED = "SETUP_REQUIRED"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


# =============================================================================
# PMS Integration Model
# =============================================================================

class PmsIntegration(Base):
    """
    Practice-management gateway connection for a clinic.

    Attributes:
        id: UUID primary key
        clinic_id: Owning clinic
        provider: Gateway name (``SIKKA``)
        config: Provider-specific settings (practice id, defaults)
        status: SETUP_REQUIRED, ACTIVE or ERROR
        office_id: Office identifier used for the initial grant
        secret_key: Encrypted office secret used for the initial grant
        request_key: Encrypted short-lived access token
        refresh_key: Encrypted refresh token
        token_expiry: When ``request_key`` stops working
        last_error: Last credential error, cleared on success
    """

    __tablename__ = "pms_integrations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid, ForeignKey("clinics.id"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="SIKKA")
    config = Column(JSON, nullable=True)

    status = Column(
        SQLEnum(PmsIntegrationStatus, name="pms_integration_status"),
        nullable=False,
        default=PmsIntegrationStatus.SETUP_REQUIRED,
        index=True,
    )

    # Credentials (encrypted at rest)
    office_id = Column(String(255), nullable=True)
    secret_key = Column(EncryptedString, nullable=True)
    request_key = Column(EncryptedString, nullable=True)
    refresh_key = Column(EncryptedString, nullable=True)
    token_expiry = Column(UTCDateTime, nullable=True, index=True)

    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    clinic = relationship("Clinic", back_populates="pms_integrations")

    @property
    def is_active(self) -> bool:
        return self.status == PmsIntegrationStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<PmsIntegration(id={self.id}, provider={self.provider}, "
            f"status={self.status.value if self.status else None})>"
        )
