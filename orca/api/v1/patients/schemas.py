from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, date
from orca.api.v1.common import ORMModel
from orca.domain.patients.models import ContactMethod


class BasePatientSchema(BaseModel):
    """Base schema for patient data"""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=500)
    preferred_contact_method: ContactMethod = ContactMethod.EMAIL

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v and '@' not in v:
            raise ValueError('Invalid email format')
        return v

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        if v and not v.replace('+', '').replace('-', '').replace(' ', '').isdigit():
            raise ValueError('Phone number must contain only digits, +, -, and spaces')
        return v


class PatientCreate(BasePatientSchema):
    """Schema for creating a new patient"""
    pass


class PatientUpdate(BaseModel):
    """Schema for updating patient information"""
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=500)
    preferred_contact_method: Optional[ContactMethod] = None
    is_active: Optional[bool] = None


class PatientResponse(ORMModel):
    id: str
    clinic_id: str
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    preferred_contact_method: Optional[ContactMethod] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime
