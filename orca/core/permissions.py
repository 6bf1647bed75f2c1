from typing import List, Dict, Any
from fastapi import Request

from orca.core.exceptions import AuthenticationError, AuthorizationError
from orca.core.security import verify_token


class Permissions:
    """Permission strings carried in the access token"""

    # Patients
    PATIENTS_CREATE = "patients:create"
    PATIENTS_READ = "patients:read"
    PATIENTS_UPDATE = "patients:update"
    PATIENTS_DELETE = "patients:delete"

    # Billing (accounts, invoices, plans, credits, estimates, statements)
    BILLING_READ = "billing:read"
    BILLING_CREATE = "billing:create"
    BILLING_UPDATE = "billing:update"
    BILLING_DELETE = "billing:delete"

    # Payments
    PAYMENT_READ = "payment:read"
    PAYMENT_PROCESS = "payment:process"
    PAYMENT_REFUND = "payment:refund"

    # Insurance
    INSURANCE_READ = "insurance:read"
    INSURANCE_CREATE = "insurance:create"
    INSURANCE_UPDATE = "insurance:update"
    INSURANCE_SUBMIT = "insurance:submit"
    INSURANCE_DELETE = "insurance:delete"

    # Collections
    COLLECTIONS_READ = "collections:read"
    COLLECTIONS_MANAGE = "collections:manage"
    COLLECTIONS_WRITE_OFF = "collections:write_off"

    # Lab
    LAB_READ = "lab:read"
    LAB_CREATE_ORDER = "lab:create_order"
    LAB_UPDATE = "lab:update"
    LAB_ADMIN = "lab:admin"

    # System
    USERS_MANAGE = "users:manage"
    AUDIT_READ = "audit:read"
    SYSTEM_ADMIN = "system:admin"

    @classmethod
    def all(cls) -> List[str]:
        return [
            value for key, value in vars(cls).items()
            if key.isupper() and isinstance(value, str)
        ]


ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "SUPER_ADMIN": [Permissions.SYSTEM_ADMIN],
    "CLINIC_ADMIN": [p for p in Permissions.all() if p != Permissions.SYSTEM_ADMIN],
    "BILLING_MANAGER": [
        Permissions.PATIENTS_READ,
        Permissions.BILLING_READ, Permissions.BILLING_CREATE, Permissions.BILLING_UPDATE, Permissions.BILLING_DELETE,
        Permissions.PAYMENT_READ, Permissions.PAYMENT_PROCESS, Permissions.PAYMENT_REFUND,
        Permissions.INSURANCE_READ, Permissions.INSURANCE_CREATE, Permissions.INSURANCE_UPDATE,
        Permissions.INSURANCE_SUBMIT, Permissions.INSURANCE_DELETE,
        Permissions.COLLECTIONS_READ, Permissions.COLLECTIONS_MANAGE, Permissions.COLLECTIONS_WRITE_OFF,
        Permissions.AUDIT_READ,
    ],
    "FRONT_DESK": [
        Permissions.PATIENTS_CREATE, Permissions.PATIENTS_READ, Permissions.PATIENTS_UPDATE,
        Permissions.BILLING_READ, Permissions.BILLING_CREATE,
        Permissions.PAYMENT_READ, Permissions.PAYMENT_PROCESS,
        Permissions.INSURANCE_READ,
        Permissions.LAB_READ,
    ],
    "TREATMENT_COORDINATOR": [
        Permissions.PATIENTS_READ, Permissions.PATIENTS_UPDATE,
        Permissions.BILLING_READ, Permissions.BILLING_CREATE, Permissions.BILLING_UPDATE,
        Permissions.PAYMENT_READ,
        Permissions.INSURANCE_READ, Permissions.INSURANCE_CREATE,
    ],
    "LAB_COORDINATOR": [
        Permissions.PATIENTS_READ,
        Permissions.LAB_READ, Permissions.LAB_CREATE_ORDER, Permissions.LAB_UPDATE, Permissions.LAB_ADMIN,
    ],
    "CLINICAL_STAFF": [
        Permissions.PATIENTS_READ,
        Permissions.LAB_READ, Permissions.LAB_CREATE_ORDER,
    ],
}


def get_role_permissions(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role, []))


def get_current_user(request: Request) -> Dict[str, Any]:
    """Extract and validate user from request"""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthenticationError("Authentication required", error_code="UNAUTHORIZED")

    token = auth_header.split(" ", 1)[1]
    payload = verify_token(token, "access")

    if not payload or not payload.get("clinic_id"):
        raise AuthenticationError("Invalid or expired token", error_code="INVALID_TOKEN")

    return payload


def require_permissions(required_permissions: List[str]):
    """Dependency granting access when the user holds any listed permission"""
    def permission_checker(request: Request) -> Dict[str, Any]:
        user_payload = get_current_user(request)
        request.state.user = user_payload

        user_permissions = user_payload.get("permissions", [])

        if Permissions.SYSTEM_ADMIN in user_permissions:
            return user_payload

        has_access = any(
            perm in user_permissions
            for perm in required_permissions
        )

        if not has_access:
            raise AuthorizationError(
                "Insufficient permissions",
                details={"required_permissions": required_permissions},
                error_code="FORBIDDEN"
            )

        return user_payload

    return permission_checker


def require_authenticated():
    """Dependency for endpoints open to any signed-in user"""
    def checker(request: Request) -> Dict[str, Any]:
        user_payload = get_current_user(request)
        request.state.user = user_payload
        return user_payload

    return checker
