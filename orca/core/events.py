from typing import Optional, Dict, Any, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from fastapi import Request
import logging

from orca.domain.audit.models import AuditLog, AuditAction


logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Get client IP address from request"""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    # Fall back to direct connection
    return request.client.host if request.client else "unknown"


def get_request_meta(request: Request) -> Tuple[str, Optional[str]]:
    """Return (ip_address, user_agent) for audit entries"""
    return get_client_ip(request), request.headers.get("user-agent")


class AuditLogger:
    """Service for creating audit log entries"""

    @staticmethod
    async def log(
        db: AsyncSession,
        current_user: Dict[str, Any],
        action: AuditAction,
        entity: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> Optional[AuditLog]:
        """Record a change made by the current user; failures are logged, never raised"""
        ip_address, user_agent = get_request_meta(request) if request is not None else (None, None)
        try:
            entry = AuditLog(
                clinic_id=current_user["clinic_id"],
                user_id=current_user.get("sub"),
                action=action,
                entity=entity,
                entity_id=str(entity_id) if entity_id else None,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db.add(entry)
            await db.commit()
            return entry
        except Exception as e:
            logger.error(f"Failed to write audit log for {entity} {entity_id}: {e}")
            await db.rollback()
            return None
