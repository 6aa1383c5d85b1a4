"""
Clinic and phone binding models.

Both are owned by the clinic configuration collaborator; this service
only reads them (call admission, tool context) and never deletes a
binding. Bindings are deactivated through ``is_active``.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, JSON, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.database import Base
from ..core.security import EncryptedString
from .types import UTCDateTime


class Clinic(Base):
    """
    A clinic account served by the receptionist.

    Attributes:
        id: UUID primary key
        name: Display name, spoken in greetings and staff alerts
        timezone: IANA timezone name used for business-hours evaluation
        calendar_connected: Whether a Google Calendar is linked
        calendar_id: Calendar to book into (defaults to ``primary``)
        calendar_access_token: Encrypted OAuth access token
        calendar_refresh_token: Encrypted OAuth refresh token
        calendar_token_expiry: Access token expiry
    """

    __tablename__ = "clinics"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=True)

    # Calendar fallback backend
    calendar_connected = Column(Boolean, nullable=False, default=False)
    calendar_id = Column(String(255), nullable=True)
    calendar_access_token = Column(EncryptedString, nullable=True)
    calendar_refresh_token = Column(EncryptedString, nullable=True)
    calendar_token_expiry = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())

    phone_bindings = relationship("ClinicPhoneBinding", back_populates="clinic")
    pms_integrations = relationship("PmsIntegration", back_populates="clinic")

    def __repr__(self) -> str:
        return f"<Clinic(id={self.id}, name={self.name})>"


class ClinicPhoneBinding(Base):
    """
    Maps a dialed identity (PSTN number or SIP URI) to a clinic.

    ``availability_settings`` and ``fallback_settings`` hold the raw JSON
    policies; they are parsed at call time by ``schemas.policies``.
    """

    __tablename__ = "clinic_phone_bindings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid, ForeignKey("clinics.id"), nullable=False, index=True)

    # Identities the carrier may present as the dialed number
    phone_number = Column(String(64), nullable=True, index=True)
    original_phone_number = Column(String(64), nullable=True, index=True)
    sip_uri = Column(String(255), nullable=True, index=True)

    # Voice AI session this number is bridged to
    voice_session_id = Column(String(255), nullable=True, index=True)

    availability_settings = Column(JSON, nullable=True)
    fallback_settings = Column(JSON, nullable=True)

    # Human handoff
    transfer_enabled = Column(Boolean, nullable=False, default=False)
    staff_forward_number = Column(String(64), nullable=True)

    pms_integration_id = Column(Uuid, ForeignKey("pms_integrations.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())

    clinic = relationship("Clinic", back_populates="phone_bindings")
    pms_integration = relationship("PmsIntegration")

    def __repr__(self) -> str:
        return (
            f"<ClinicPhoneBinding(id={self.id}, clinic_id={self.clinic_id}, "
            f"active={self.is_active})>"
        )
