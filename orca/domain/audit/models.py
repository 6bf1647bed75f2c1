from sqlalchemy import Column, String, DateTime, JSON, Text, Enum, Index
from orca.infrastructure.database import Base
from orca.models.mixins import gen_uuid, utcnow
import enum


class AuditAction(str, enum.Enum):
    """Audit action types"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    LOGIN = "LOGIN"
    EXPORT = "EXPORT"


class AuditLog(Base):
    """Who changed which clinic record, from where"""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)

    action = Column(Enum(AuditAction), nullable=False, index=True)
    entity = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=True)
    details = Column(JSON, nullable=True)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity", "entity_id"),
    )
