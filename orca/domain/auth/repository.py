from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from datetime import timedelta

from orca.domain.auth.models import User, UserRole
from orca.models.mixins import utcnow
from orca.models.pagination import paginate, sort_column_for


class UserRepository:
    """Staff users, looked up globally by email and listed per clinic"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, user_data: dict) -> User:
        password = user_data.pop("password")
        user = User(**user_data)
        user.set_password(password)

        self.db.add(user)
        await self.db.commit()
        return user

    async def get_by_id(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_in_clinic(self, clinic_id: str, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id, User.clinic_id == clinic_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        role: Optional[UserRole] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "last_name",
        sort_order: str = "asc",
    ) -> Dict[str, Any]:
        query = select(User).where(User.clinic_id == clinic_id)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(User.first_name.ilike(pattern), User.last_name.ilike(pattern), User.email.ilike(pattern))
            )
        if role:
            query = query.where(User.role == role)
        if is_active is not None:
            query = query.where(User.is_active.is_(is_active))
        return await paginate(self.db, query, page, page_size, sort_column_for(User, sort_by, "last_name"), sort_order)

    async def record_failed_login(self, user: User, max_attempts: int, lock_minutes: int) -> User:
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= max_attempts:
            user.locked_until = utcnow() + timedelta(minutes=lock_minutes)
        await self.db.commit()
        return user

    async def record_successful_login(self, user: User) -> User:
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = utcnow()
        await self.db.commit()
        return user
