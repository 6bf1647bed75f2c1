from datetime import date
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.lab.schemas import (
    VendorCreate, VendorUpdate, ProductCreate, ProductUpdate, OrderCreate, OrderUpdate, OrderItemCreate,
    BatchRequest, BatchOperation,
)
from orca.core.exceptions import NotFoundError, ConflictError, BusinessLogicError
from orca.domain.billing.utils import round_currency
from orca.domain.lab.models import (
    LabVendor, LabProduct, LabOrder, LabOrderItem, LabOrderStatusLog, LabOrderStatus, StatusChangeSource,
    CANCELLABLE_ORDER_STATUSES, STATUS_TIMESTAMPS,
)
from orca.domain.lab.repository import LabVendorRepository, LabProductRepository, LabOrderRepository
from orca.domain.patients.service import PatientService
from orca.models.mixins import utcnow
from orca.models.numbering import generate_number

logger = logging.getLogger(__name__)

# Operations that apply unconditionally and so refuse a partial order list
ALL_ORDERS_REQUIRED = (BatchOperation.UPDATE_STATUS, BatchOperation.UPDATE_PRIORITY, BatchOperation.ASSIGN_VENDOR)


class LabVendorService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = LabVendorRepository(db)

    async def create_vendor(self, clinic_id: str, data: VendorCreate, created_by: str) -> LabVendor:
        if await self.repo.get_by_code(clinic_id, data.code):
            raise ConflictError(f"Vendor code {data.code} already exists", error_code="DUPLICATE_VENDOR_CODE")
        vendor = LabVendor(clinic_id=clinic_id, created_by=created_by, **data.model_dump(exclude={"capabilities"}))
        vendor.capabilities = [category.value for category in data.capabilities]
        self.db.add(vendor)
        await self.db.commit()
        logger.info(f"Created lab vendor {vendor.code}")
        return vendor

    async def get_vendor(self, clinic_id: str, vendor_id: str) -> LabVendor:
        vendor = await self.repo.get_by_id(clinic_id, vendor_id)
        if not vendor:
            raise NotFoundError("Lab vendor not found", error_code="VENDOR_NOT_FOUND")
        return vendor

    async def get_vendors(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_vendor(self, clinic_id: str, vendor_id: str, data: VendorUpdate, updated_by: str) -> LabVendor:
        vendor = await self.get_vendor(clinic_id, vendor_id)
        changes = data.model_dump(exclude_unset=True)
        if data.capabilities is not None:
            changes["capabilities"] = [category.value for category in data.capabilities]
        for field, value in changes.items():
            setattr(vendor, field, value)
        vendor.updated_by = updated_by
        await self.db.commit()
        return vendor

    async def delete_vendor(self, clinic_id: str, vendor_id: str, deleted_by: str) -> None:
        vendor = await self.get_vendor(clinic_id, vendor_id)
        vendor.soft_delete(deleted_by)
        await self.db.commit()


class LabProductService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = LabProductRepository(db)
        self.vendors = LabVendorService(db)

    async def create_product(self, clinic_id: str, data: ProductCreate, created_by: str) -> LabProduct:
        if data.vendor_id:
            await self.vendors.get_vendor(clinic_id, data.vendor_id)
        product = LabProduct(clinic_id=clinic_id, created_by=created_by, **data.model_dump())
        self.db.add(product)
        await self.db.commit()
        return product

    async def get_product(self, clinic_id: str, product_id: str) -> LabProduct:
        product = await self.repo.get_by_id(clinic_id, product_id)
        if not product:
            raise NotFoundError("Lab product not found", error_code="PRODUCT_NOT_FOUND")
        return product

    async def get_products(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_product(
        self, clinic_id: str, product_id: str, data: ProductUpdate, updated_by: str
    ) -> LabProduct:
        product = await self.get_product(clinic_id, product_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("vendor_id"):
            await self.vendors.get_vendor(clinic_id, changes["vendor_id"])
        for field, value in changes.items():
            setattr(product, field, value)
        product.updated_by = updated_by
        await self.db.commit()
        return product

    async def delete_product(self, clinic_id: str, product_id: str, deleted_by: str) -> None:
        product = await self.get_product(clinic_id, product_id)
        product.soft_delete(deleted_by)
        await self.db.commit()


def record_status_change(
    db: AsyncSession,
    order: LabOrder,
    new_status: LabOrderStatus,
    notes: Optional[str] = None,
    source: StatusChangeSource = StatusChangeSource.USER,
    changed_by: Optional[str] = None,
) -> LabOrderStatusLog:
    """Move ``order`` to ``new_status``, stamping milestone timestamps and logging the change"""
    now = utcnow()
    log = LabOrderStatusLog(
        order_id=order.id,
        from_status=order.status,
        to_status=new_status,
        source=source,
        notes=notes,
        changed_by=changed_by,
        changed_at=now,
    )
    order.status = new_status
    timestamp_field = STATUS_TIMESTAMPS.get(new_status)
    if timestamp_field:
        setattr(order, timestamp_field, now)
    order.updated_by = changed_by
    db.add(log)
    return log


class LabOrderService:
    """Lab orders from draft to pickup, plus bulk operations over a selection of orders"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = LabOrderRepository(db)
        self.vendors = LabVendorService(db)
        self.products = LabProductRepository(db)
        self.patients = PatientService(db)

    async def _build_items(self, clinic_id: str, items: List[OrderItemCreate]) -> List[LabOrderItem]:
        if not items:
            return []
        products = {
            product.id: product
            for product in await self.products.get_many(clinic_id, [item.product_id for item in items])
        }
        missing = [item.product_id for item in items if item.product_id not in products]
        if missing:
            raise NotFoundError(
                "Lab product not found", details={"product_ids": missing}, error_code="PRODUCT_NOT_FOUND"
            )
        built = []
        for line_number, item in enumerate(items, start=1):
            product = products[item.product_id]
            unit_price = item.unit_price if item.unit_price is not None else product.base_price
            built.append(LabOrderItem(
                line_number=line_number,
                product_id=product.id,
                product_name=product.name,
                quantity=item.quantity,
                unit_price=round_currency(unit_price),
                total=round_currency(item.quantity * unit_price),
                arch=item.arch,
                tooth_numbers=item.tooth_numbers,
                notes=item.notes,
            ))
        return built

    @staticmethod
    def _total(items: List[LabOrderItem]) -> float:
        return round_currency(sum(item.quantity * item.unit_price for item in items))

    async def create_order(self, clinic_id: str, data: OrderCreate, created_by: str) -> LabOrder:
        await self.patients.get_patient(clinic_id, data.patient_id)
        if data.vendor_id:
            await self.vendors.get_vendor(clinic_id, data.vendor_id)

        items = await self._build_items(clinic_id, data.items)
        order = LabOrder(
            clinic_id=clinic_id,
            order_number=await generate_number(self.db, LabOrder.order_number, clinic_id, "LAB"),
            status=LabOrderStatus.DRAFT,
            order_date=date.today(),
            total_cost=self._total(items),
            created_by=created_by,
            **data.model_dump(exclude={"items"}),
        )
        order.items = items
        self.db.add(order)
        await self.db.flush()
        self.db.add(LabOrderStatusLog(
            order_id=order.id,
            to_status=LabOrderStatus.DRAFT,
            source=StatusChangeSource.USER,
            notes="Order created",
            changed_by=created_by,
        ))
        await self.db.commit()
        logger.info(f"Created lab order {order.order_number} with {len(items)} items")
        return order

    async def get_order(self, clinic_id: str, order_id: str) -> LabOrder:
        order = await self.repo.get_by_id(clinic_id, order_id)
        if not order:
            raise NotFoundError("Lab order not found", error_code="ORDER_NOT_FOUND")
        return order

    async def get_orders(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def get_status_history(self, clinic_id: str, order_id: str) -> List[LabOrderStatusLog]:
        order = await self.get_order(clinic_id, order_id)
        return await self.repo.get_status_logs(order.id)

    @staticmethod
    def _require_draft(order: LabOrder, action: str) -> None:
        if order.status != LabOrderStatus.DRAFT:
            raise BusinessLogicError(
                f"Only draft orders can be {action}",
                details={"status": order.status.value},
                error_code="INVALID_STATUS",
            )

    async def update_order(self, clinic_id: str, order_id: str, data: OrderUpdate, updated_by: str) -> LabOrder:
        order = await self.get_order(clinic_id, order_id)
        self._require_draft(order, "updated")
        changes = data.model_dump(exclude_unset=True, exclude={"items"})
        if changes.get("vendor_id"):
            await self.vendors.get_vendor(clinic_id, changes["vendor_id"])
        for field, value in changes.items():
            setattr(order, field, value)
        if data.items is not None:
            order.items = await self._build_items(clinic_id, data.items)
            order.total_cost = self._total(order.items)
        order.updated_by = updated_by
        await self.db.commit()
        return order

    async def update_status(
        self,
        clinic_id: str,
        order_id: str,
        new_status: LabOrderStatus,
        notes: Optional[str] = None,
        source: StatusChangeSource = StatusChangeSource.USER,
        changed_by: Optional[str] = None,
    ) -> LabOrder:
        order = await self.get_order(clinic_id, order_id)
        if new_status == LabOrderStatus.SUBMITTED and not order.vendor_id:
            raise BusinessLogicError("Order has no vendor assigned", error_code="NO_VENDOR")
        if new_status == LabOrderStatus.CANCELLED:
            order.cancel_reason = notes
        old_status = order.status
        record_status_change(self.db, order, new_status, notes, source, changed_by)
        await self.db.commit()
        logger.info(f"Lab order {order.order_number}: {old_status.value} -> {new_status.value} ({source.value})")
        return order

    async def delete_order(self, clinic_id: str, order_id: str, deleted_by: str) -> None:
        order = await self.get_order(clinic_id, order_id)
        self._require_draft(order, "deleted")
        order.soft_delete(deleted_by)
        await self.db.commit()

    # Batch operations

    async def execute_batch(self, clinic_id: str, data: BatchRequest, user_id: str) -> Dict[str, Any]:
        if data.operation == BatchOperation.EXPORT:
            return await self._batch_export(clinic_id, data)

        orders = await self.repo.get_many(clinic_id, data.order_ids)
        if data.operation in ALL_ORDERS_REQUIRED:
            found = {order.id for order in orders}
            missing = [order_id for order_id in data.order_ids if order_id not in found]
            if missing:
                raise NotFoundError(
                    "Some orders were not found", details={"order_ids": missing}, error_code="ORDERS_NOT_FOUND"
                )

        handlers = {
            BatchOperation.UPDATE_STATUS: self._batch_update_status,
            BatchOperation.UPDATE_PRIORITY: self._batch_update_priority,
            BatchOperation.ASSIGN_VENDOR: self._batch_assign_vendor,
            BatchOperation.SUBMIT: self._batch_submit,
            BatchOperation.CANCEL: self._batch_cancel,
            BatchOperation.PRINT: self._batch_print,
        }
        result = await handlers[data.operation](clinic_id, orders, data, user_id)
        await self.db.commit()
        logger.info(
            f"Lab batch {data.operation.value}: {result['successful']} of {result['processed']} orders succeeded"
        )
        return result

    @staticmethod
    def _summarize(operation: BatchOperation, results: List[Dict[str, Any]], **extra) -> Dict[str, Any]:
        successful = sum(1 for r in results if r["success"])
        return {
            "operation": operation,
            "processed": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
            **extra,
        }

    @staticmethod
    def _ok(order: LabOrder) -> Dict[str, Any]:
        return {"order_id": order.id, "order_number": order.order_number, "success": True}

    @staticmethod
    def _failed(order: LabOrder, error: str) -> Dict[str, Any]:
        return {"order_id": order.id, "order_number": order.order_number, "success": False, "error": error}

    async def _batch_update_status(self, clinic_id, orders, data: BatchRequest, user_id):
        results = []
        for order in orders:
            if data.status == LabOrderStatus.CANCELLED:
                order.cancel_reason = data.notes
            record_status_change(
                self.db, order, data.status, data.notes or "Batch status update", StatusChangeSource.USER, user_id
            )
            results.append(self._ok(order))
        return self._summarize(data.operation, results)

    async def _batch_update_priority(self, clinic_id, orders, data: BatchRequest, user_id):
        for order in orders:
            order.priority = data.priority
            order.updated_by = user_id
        return self._summarize(data.operation, [self._ok(order) for order in orders])

    async def _batch_assign_vendor(self, clinic_id, orders, data: BatchRequest, user_id):
        vendor = await self.vendors.get_vendor(clinic_id, data.vendor_id)
        for order in orders:
            order.vendor_id = vendor.id
            order.updated_by = user_id
        return self._summarize(data.operation, [self._ok(order) for order in orders])

    async def _batch_submit(self, clinic_id, orders, data: BatchRequest, user_id):
        results = []
        for order in orders:
            if order.status != LabOrderStatus.DRAFT:
                results.append(self._failed(order, "Order must be in DRAFT status"))
            elif not order.vendor_id:
                results.append(self._failed(order, "Order has no vendor assigned"))
            else:
                record_status_change(
                    self.db, order, LabOrderStatus.SUBMITTED, "Batch submission", StatusChangeSource.USER, user_id
                )
                results.append(self._ok(order))
        return self._summarize(data.operation, results)

    async def _batch_cancel(self, clinic_id, orders, data: BatchRequest, user_id):
        if not data.reason:
            raise BusinessLogicError("A cancellation reason is required", error_code="REASON_REQUIRED")
        results = []
        for order in orders:
            if order.status not in CANCELLABLE_ORDER_STATUSES:
                results.append(self._failed(order, f"Cannot cancel order in {order.status.value} status"))
                continue
            order.cancel_reason = data.reason
            record_status_change(
                self.db, order, LabOrderStatus.CANCELLED, f"Cancelled: {data.reason}", StatusChangeSource.USER, user_id
            )
            results.append(self._ok(order))
        return self._summarize(data.operation, results)

    async def _batch_print(self, clinic_id, orders, data: BatchRequest, user_id):
        patients = await self.repo.get_patient_names(clinic_id, [order.patient_id for order in orders])
        vendors = await self.repo.get_vendor_names(clinic_id, [order.vendor_id for order in orders])
        documents = [
            {
                "format": data.format.value,
                "order_id": order.id,
                "order_number": order.order_number,
                "order_date": order.order_date.isoformat(),
                "status": order.status.value,
                "priority": order.priority.value,
                "is_rush": order.is_rush,
                "needed_by_date": order.needed_by_date.isoformat() if order.needed_by_date else None,
                "patient": patients.get(order.patient_id),
                "vendor": vendors.get(order.vendor_id),
                "notes": order.clinic_notes,
                "items": [
                    {
                        "product": item.product_name,
                        "quantity": item.quantity,
                        "arch": item.arch.value if item.arch else None,
                        "tooth_numbers": item.tooth_numbers,
                        "notes": item.notes,
                    }
                    for item in order.items
                ],
            }
            for order in orders
        ]
        return self._summarize(data.operation, [self._ok(order) for order in orders], documents=documents)

    async def _batch_export(self, clinic_id: str, data: BatchRequest) -> Dict[str, Any]:
        filters = data.filters.model_dump(exclude_none=True) if data.filters else {}
        orders = await self.repo.get_for_export(clinic_id, order_ids=data.order_ids or None, **filters)
        patients = await self.repo.get_patient_names(clinic_id, [order.patient_id for order in orders])
        vendors = await self.repo.get_vendor_names(clinic_id, [order.vendor_id for order in orders])
        rows = [
            {
                "order_number": order.order_number,
                "order_date": order.order_date.isoformat(),
                "status": order.status.value,
                "priority": order.priority.value,
                "patient": patients.get(order.patient_id),
                "vendor": vendors.get(order.vendor_id),
                "item_count": len(order.items),
                "items": "; ".join(f"{item.product_name} x{item.quantity}" for item in order.items),
                "total_cost": order.total_cost,
                "needed_by_date": order.needed_by_date.isoformat() if order.needed_by_date else None,
                "is_rush": order.is_rush,
            }
            for order in orders
        ]
        logger.info(f"Exported {len(rows)} lab orders")
        return self._summarize(data.operation, [self._ok(order) for order in orders], rows=rows)
