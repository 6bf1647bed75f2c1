from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from orca.core.security import verify_token
from orca.core.tenant import set_clinic_id, reset_clinic_id

class TenantMiddleware(BaseHTTPMiddleware):
    """Bind the caller's clinic to the request context for logging and tasks"""

    async def dispatch(self, request: Request, call_next):
        clinic_id = None
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            payload = verify_token(auth_header.split(" ", 1)[1], "access")
            if payload:
                clinic_id = payload.get("clinic_id")
        if not clinic_id:
            clinic_id = request.headers.get("X-Clinic-ID")

        token = set_clinic_id(clinic_id)
        try:
            response = await call_next(request)
        finally:
            reset_clinic_id(token)
        return response
