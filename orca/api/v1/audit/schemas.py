from typing import Optional, Dict, Any
from datetime import datetime

from orca.api.v1.common import ORMModel
from orca.domain.audit.models import AuditAction


class AuditLogResponse(ORMModel):
    id: str
    user_id: Optional[str] = None
    action: AuditAction
    entity: str
    entity_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
