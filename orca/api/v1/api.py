from fastapi import APIRouter

from orca.api.v1.auth import routes as auth
from orca.api.v1.audit import routes as audit
from orca.api.v1.patients import routes as patients
from orca.api.v1.billing import routes as billing
from orca.api.v1.payments import routes as payments
from orca.api.v1.insurance import routes as insurance
from orca.api.v1.collections import routes as collections
from orca.api.v1.lab import routes as lab

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(patients.router)
api_router.include_router(billing.router)
api_router.include_router(payments.router)
api_router.include_router(insurance.router)
api_router.include_router(collections.router)
api_router.include_router(lab.router)
api_router.include_router(audit.router)
