from datetime import datetime
import uuid

from sqlalchemy import Column, String, DateTime


def gen_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.utcnow()


class ClinicScopedMixin:
    """Primary key, tenant column, audit stamps and soft delete shared by business records"""

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    created_by = Column(String(36), nullable=True)
    updated_by = Column(String(36), nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)

    def soft_delete(self, user_id=None):
        self.deleted_at = utcnow()
        self.updated_by = user_id

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
