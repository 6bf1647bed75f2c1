from sqlalchemy import Column, String, Boolean, DateTime, JSON, Enum, Integer
from orca.infrastructure.database import Base
from orca.models.mixins import gen_uuid, utcnow
import enum


class UserRole(str, enum.Enum):
    """Staff roles; each maps to a permission template"""
    SUPER_ADMIN = "SUPER_ADMIN"
    CLINIC_ADMIN = "CLINIC_ADMIN"
    BILLING_MANAGER = "BILLING_MANAGER"
    FRONT_DESK = "FRONT_DESK"
    TREATMENT_COORDINATOR = "TREATMENT_COORDINATOR"
    LAB_COORDINATOR = "LAB_COORDINATOR"
    CLINICAL_STAFF = "CLINICAL_STAFF"


class User(Base):
    """Staff user for authentication and authorization"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)

    # Role and permissions
    role = Column(Enum(UserRole), nullable=False, default=UserRole.FRONT_DESK)
    permissions = Column(JSON, default=list)

    is_active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_login_at = Column(DateTime)

    # Lockout
    failed_login_attempts = Column(Integer, default=0)
    locked_until = Column(DateTime)

    def set_password(self, password: str):
        from orca.core.security import get_password_hash
        self.password_hash = get_password_hash(password)

    def verify_password(self, password: str) -> bool:
        from orca.core.security import verify_password
        return verify_password(password, self.password_hash)

    def get_permissions(self) -> list:
        """Role template permissions merged with custom grants"""
        from orca.core.permissions import get_role_permissions
        role_permissions = get_role_permissions(self.role.value if self.role else "")
        custom_permissions = self.permissions or []
        return sorted(set(role_permissions + custom_permissions))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
