from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from orca.core.permissions import require_permissions, require_authenticated, Permissions
from orca.core.security import verify_token
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.auth.models import UserRole
from orca.domain.auth.service import AuthenticationService, UserService
from orca.api.v1.common import Page
from orca.api.v1.auth.schemas import (
    LoginRequest, RefreshRequest, TokenResponse, UserCreate, UserUpdate, UserResponse, CurrentUserResponse,
)
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/auth", tags=["Authentication"])

MANAGE_USERS = Depends(require_permissions([Permissions.USERS_MANAGE]))


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """Exchange email and password for an access/refresh token pair"""
    tokens = await AuthenticationService(db).authenticate_user(data.email, data.password)
    await AuditLogger.log(db, verify_token(tokens["access_token"]), AuditAction.LOGIN, "User", request=request)
    return tokens


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(data: RefreshRequest, db: AsyncSession = Depends(get_db)):
    return await AuthenticationService(db).refresh_access_token(data.refresh_token)


@router.get("/me", response_model=CurrentUserResponse)
async def me(db: AsyncSession = Depends(get_db), current_user: dict = Depends(require_authenticated())):
    user = await UserService(db).get_user(current_user["sub"])
    response = CurrentUserResponse.model_validate(user)
    response.effective_permissions = user.get_permissions()
    return response


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(data: UserCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE_USERS):
    user = await UserService(db).create_user(current_user["clinic_id"], data.model_dump())
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "User", user.id, {"email": user.email, "role": user.role.value}, request
    )
    return user


@router.get("/users", response_model=Page[UserResponse])
async def list_users(
    search: Optional[str] = None,
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE_USERS,
):
    return await UserService(db).get_users(
        current_user["clinic_id"], search=search, role=role, is_active=is_active, page=page, page_size=page_size
    )


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE_USERS):
    return await UserService(db).get_clinic_user(current_user["clinic_id"], user_id)


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str, data: UserUpdate, request: Request,
    db: AsyncSession = Depends(get_db), current_user: dict = MANAGE_USERS,
):
    changes = data.model_dump(exclude_unset=True)
    user = await UserService(db).update_user(current_user["clinic_id"], user_id, dict(changes))
    changes.pop("password", None)
    await AuditLogger.log(db, current_user, AuditAction.UPDATE, "User", user.id, changes, request)
    return user
