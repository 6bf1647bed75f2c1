from datetime import datetime
from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from orca.domain.audit.models import AuditLog, AuditAction
from orca.models.pagination import paginate


class AuditRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_all(
        self,
        clinic_id: str,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        query = select(AuditLog).where(AuditLog.clinic_id == clinic_id)
        if entity:
            query = query.where(AuditLog.entity == entity)
        if entity_id:
            query = query.where(AuditLog.entity_id == entity_id)
        if action:
            query = query.where(AuditLog.action == action)
        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if date_from:
            query = query.where(AuditLog.timestamp >= date_from)
        if date_to:
            query = query.where(AuditLog.timestamp <= date_to)
        return await paginate(self.db, query, page, page_size, AuditLog.timestamp, "desc")
