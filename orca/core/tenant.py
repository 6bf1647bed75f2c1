from contextvars import ContextVar
from typing import Optional

clinic_context: ContextVar[Optional[str]] = ContextVar("clinic_context", default=None)

def get_clinic_id() -> Optional[str]:
    return clinic_context.get()

def set_clinic_id(clinic_id: Optional[str]):
    return clinic_context.set(clinic_id)

def reset_clinic_id(token):
    clinic_context.reset(token)
