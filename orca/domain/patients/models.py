from sqlalchemy import Column, String, Date, Boolean, Text, Enum
from orca.infrastructure.database import Base
from orca.infrastructure.encryption import EncryptedString
from orca.models.mixins import ClinicScopedMixin
import enum


class ContactMethod(str, enum.Enum):
    """Preferred channel for patient communications"""
    EMAIL = "EMAIL"
    SMS = "SMS"
    PHONE = "PHONE"
    LETTER = "LETTER"
    PORTAL = "PORTAL"


class Patient(ClinicScopedMixin, Base):
    """Patient record; contact details are encrypted at rest"""
    __tablename__ = "patients"

    first_name = Column(String(100), nullable=False, index=True)
    last_name = Column(String(100), nullable=False, index=True)
    date_of_birth = Column(Date, nullable=True)

    email = Column(EncryptedString, nullable=True)
    phone = Column(EncryptedString, nullable=True)
    address = Column(Text, nullable=True)
    preferred_contact_method = Column(Enum(ContactMethod), default=ContactMethod.EMAIL)

    is_active = Column(Boolean, default=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
