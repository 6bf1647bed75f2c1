from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from orca.core.permissions import require_permissions, Permissions
from orca.domain.audit.models import AuditAction
from orca.domain.audit.repository import AuditRepository
from orca.api.v1.common import Page
from orca.api.v1.audit.schemas import AuditLogResponse
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=Page[AuditLogResponse])
async def list_audit_logs(
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    user_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.AUDIT_READ])),
):
    """Who changed what in the caller's clinic, newest first"""
    return await AuditRepository(db).get_all(
        current_user["clinic_id"], entity=entity, entity_id=entity_id, action=action, user_id=user_id,
        date_from=date_from, date_to=date_to, page=page, page_size=page_size,
    )
