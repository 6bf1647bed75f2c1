from typing import Dict, Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from orca.domain.auth.models import User
from orca.domain.auth.repository import UserRepository
from orca.core.security import create_access_token, create_refresh_token, verify_token
from orca.core.exceptions import (
    AuthenticationError, AccountLockedError, AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from orca.core.permissions import Permissions
from orca.core.config import settings
from orca.models.mixins import utcnow

logger = logging.getLogger(__name__)


class AuthenticationService:
    """Service layer for authentication operations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    @staticmethod
    def _access_claims(user: User) -> Dict[str, Any]:
        return {
            "email": user.email,
            "clinic_id": user.clinic_id,
            "role": user.role.value,
            "permissions": user.get_permissions(),
        }

    def _token_response(self, user: User, refresh_token: str = None) -> Dict[str, Any]:
        return {
            "access_token": create_access_token(user.id, self._access_claims(user)),
            "refresh_token": refresh_token or create_refresh_token(user.id, {"clinic_id": user.clinic_id}),
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        }

    async def authenticate_user(self, email: str, password: str) -> Dict[str, Any]:
        """Authenticate user and return tokens"""
        user = await self.user_repo.get_by_email(email)
        if not user:
            raise AuthenticationError("Invalid email or password", error_code="INVALID_CREDENTIALS")

        if user.locked_until and user.locked_until > utcnow():
            raise AccountLockedError()

        if not user.is_active:
            raise AuthorizationError("Account is not active", error_code="ACCOUNT_INACTIVE")

        if not user.verify_password(password):
            await self.user_repo.record_failed_login(
                user, settings.MAX_FAILED_LOGIN_ATTEMPTS, settings.ACCOUNT_LOCK_MINUTES
            )
            if user.locked_until:
                logger.warning(f"User {user.id} locked after {user.failed_login_attempts} failed logins")
                raise AccountLockedError("Account locked due to multiple failed login attempts")
            raise AuthenticationError("Invalid email or password", error_code="INVALID_CREDENTIALS")

        await self.user_repo.record_successful_login(user)
        return self._token_response(user)

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        payload = verify_token(refresh_token, "refresh")
        if not payload:
            raise AuthenticationError("Invalid or expired refresh token", error_code="INVALID_TOKEN")

        user = await self.user_repo.get_by_id(payload.get("sub"))
        if not user or not user.is_active:
            raise AuthenticationError("User not found or inactive", error_code="INVALID_TOKEN")

        return self._token_response(user, refresh_token=refresh_token)


class UserService:
    """Staff user management within a clinic"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.user_repo = UserRepository(db)

    @staticmethod
    def _check_permissions(permissions: Optional[list]) -> None:
        unknown = sorted(set(permissions or []) - set(Permissions.all()))
        if unknown:
            raise ValidationError("Unknown permissions", details={"permissions": unknown}, error_code="INVALID_PERMISSIONS")

    async def create_user(self, clinic_id: str, user_data: dict) -> User:
        user_data["email"] = user_data["email"].lower()
        if await self.user_repo.get_by_email(user_data["email"]):
            raise ConflictError("Email already exists", error_code="EMAIL_EXISTS")
        self._check_permissions(user_data.get("permissions"))
        user_data["clinic_id"] = clinic_id
        user = await self.user_repo.create(user_data)
        logger.info(f"Created {user.role.value} user {user.id}")
        return user

    async def get_user(self, user_id: str) -> User:
        user = await self.user_repo.get_by_id(user_id)
        if not user:
            raise AuthenticationError("User not found", error_code="INVALID_TOKEN")
        return user

    async def get_clinic_user(self, clinic_id: str, user_id: str) -> User:
        user = await self.user_repo.get_in_clinic(clinic_id, user_id)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return user

    async def get_users(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.user_repo.get_all(clinic_id, **filters)

    async def update_user(self, clinic_id: str, user_id: str, changes: dict) -> User:
        user = await self.get_clinic_user(clinic_id, user_id)
        self._check_permissions(changes.get("permissions"))
        password = changes.pop("password", None)
        for field, value in changes.items():
            setattr(user, field, value)
        if password:
            user.set_password(password)
        await self.db.commit()
        return user
