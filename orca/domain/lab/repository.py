from datetime import date
from typing import Optional, List, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from orca.domain.lab.models import LabVendor, LabProduct, LabOrder, LabOrderStatusLog
from orca.domain.patients.models import Patient
from orca.models.pagination import paginate, sort_column_for

EXPORT_LIMIT = 500


class LabVendorRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, vendor_id: str) -> Optional[LabVendor]:
        result = await self.db.execute(
            select(LabVendor).where(
                LabVendor.id == vendor_id,
                LabVendor.clinic_id == clinic_id,
                LabVendor.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, clinic_id: str, code: str) -> Optional[LabVendor]:
        result = await self.db.execute(
            select(LabVendor).where(LabVendor.clinic_id == clinic_id, LabVendor.code == code)
        )
        return result.scalars().first()

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        status=None,
        capability=None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "name",
        sort_order: str = "asc",
    ) -> Dict[str, Any]:
        query = select(LabVendor).where(LabVendor.clinic_id == clinic_id, LabVendor.deleted_at.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(LabVendor.name.ilike(pattern), LabVendor.code.ilike(pattern)))
        if status:
            query = query.where(LabVendor.status == status)
        result = await paginate(
            self.db, query, page, page_size, sort_column_for(LabVendor, sort_by, "name"), sort_order
        )
        # JSON array membership differs between backends; filter the page in Python
        if capability:
            value = getattr(capability, "value", capability)
            result["items"] = [v for v in result["items"] if value in (v.capabilities or [])]
        return result


class LabProductRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, product_id: str) -> Optional[LabProduct]:
        result = await self.db.execute(
            select(LabProduct).where(
                LabProduct.id == product_id,
                LabProduct.clinic_id == clinic_id,
                LabProduct.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_many(self, clinic_id: str, product_ids: List[str]) -> List[LabProduct]:
        result = await self.db.execute(
            select(LabProduct).where(
                LabProduct.id.in_(product_ids),
                LabProduct.clinic_id == clinic_id,
                LabProduct.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        category=None,
        vendor_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 50,
        sort_by: str = "name",
        sort_order: str = "asc",
    ) -> Dict[str, Any]:
        query = select(LabProduct).where(LabProduct.clinic_id == clinic_id, LabProduct.deleted_at.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(LabProduct.name.ilike(pattern), LabProduct.sku.ilike(pattern)))
        if category:
            query = query.where(LabProduct.category == category)
        if vendor_id:
            query = query.where(LabProduct.vendor_id == vendor_id)
        if is_active is not None:
            query = query.where(LabProduct.is_active.is_(is_active))
        return await paginate(
            self.db, query, page, page_size, sort_column_for(LabProduct, sort_by, "name"), sort_order
        )


class LabOrderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, order_id: str) -> Optional[LabOrder]:
        result = await self.db.execute(
            select(LabOrder).where(
                LabOrder.id == order_id,
                LabOrder.clinic_id == clinic_id,
                LabOrder.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_many(self, clinic_id: str, order_ids: List[str]) -> List[LabOrder]:
        result = await self.db.execute(
            select(LabOrder).where(
                LabOrder.id.in_(order_ids),
                LabOrder.clinic_id == clinic_id,
                LabOrder.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    def _filtered(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        status=None,
        vendor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        priority=None,
        due_from: Optional[date] = None,
        due_to: Optional[date] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ):
        query = select(LabOrder).where(LabOrder.clinic_id == clinic_id, LabOrder.deleted_at.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.join(Patient, Patient.id == LabOrder.patient_id).where(
                or_(
                    LabOrder.order_number.ilike(pattern),
                    Patient.first_name.ilike(pattern),
                    Patient.last_name.ilike(pattern),
                )
            )
        if status:
            query = query.where(LabOrder.status == status)
        if vendor_id:
            query = query.where(LabOrder.vendor_id == vendor_id)
        if patient_id:
            query = query.where(LabOrder.patient_id == patient_id)
        if priority:
            query = query.where(LabOrder.priority == priority)
        if due_from:
            query = query.where(LabOrder.needed_by_date >= due_from)
        if due_to:
            query = query.where(LabOrder.needed_by_date <= due_to)
        if date_from:
            query = query.where(LabOrder.order_date >= date_from)
        if date_to:
            query = query.where(LabOrder.order_date <= date_to)
        return query

    async def get_all(
        self,
        clinic_id: str,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "order_date",
        sort_order: str = "desc",
        **filters,
    ) -> Dict[str, Any]:
        query = self._filtered(clinic_id, **filters)
        return await paginate(
            self.db, query, page, page_size, sort_column_for(LabOrder, sort_by, "order_date"), sort_order
        )

    async def get_for_export(self, clinic_id: str, order_ids: Optional[List[str]] = None, **filters) -> List[LabOrder]:
        query = self._filtered(clinic_id, **filters)
        if order_ids:
            query = query.where(LabOrder.id.in_(order_ids))
        result = await self.db.execute(query.order_by(LabOrder.order_date.desc()).limit(EXPORT_LIMIT))
        return list(result.scalars().all())

    async def get_status_logs(self, order_id: str) -> List[LabOrderStatusLog]:
        result = await self.db.execute(
            select(LabOrderStatusLog)
            .where(LabOrderStatusLog.order_id == order_id)
            .order_by(LabOrderStatusLog.changed_at.asc())
        )
        return list(result.scalars().all())

    async def get_patient_names(self, clinic_id: str, patient_ids: List[str]) -> Dict[str, str]:
        """``"Last, First"`` keyed by patient id"""
        if not patient_ids:
            return {}
        result = await self.db.execute(
            select(Patient.id, Patient.first_name, Patient.last_name).where(
                Patient.id.in_(set(patient_ids)), Patient.clinic_id == clinic_id
            )
        )
        return {row.id: f"{row.last_name}, {row.first_name}" for row in result.all()}

    async def get_vendor_names(self, clinic_id: str, vendor_ids: List[str]) -> Dict[str, str]:
        ids = {vendor_id for vendor_id in vendor_ids if vendor_id}
        if not ids:
            return {}
        result = await self.db.execute(
            select(LabVendor.id, LabVendor.name).where(LabVendor.id.in_(ids), LabVendor.clinic_id == clinic_id)
        )
        return {row.id: row.name for row in result.all()}
