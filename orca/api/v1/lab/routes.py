from datetime import date
from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.lab.models import LabVendorStatus, LabProductCategory, LabOrderStatus, OrderPriority
from orca.domain.lab.service import LabVendorService, LabProductService, LabOrderService
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.lab.schemas import (
    VendorCreate, VendorUpdate, VendorResponse, ProductCreate, ProductUpdate, ProductResponse,
    OrderCreate, OrderUpdate, OrderStatusUpdate, OrderResponse, StatusLogResponse,
    BatchRequest, BatchResult, BatchOperation,
)
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/lab", tags=["Lab"])

READ = Depends(require_permissions([Permissions.LAB_READ]))
CREATE_ORDER = Depends(require_permissions([Permissions.LAB_CREATE_ORDER]))
UPDATE = Depends(require_permissions([Permissions.LAB_UPDATE]))
ADMIN = Depends(require_permissions([Permissions.LAB_ADMIN]))


# Vendors

@router.post("/vendors", response_model=VendorResponse, status_code=status.HTTP_201_CREATED)
async def create_vendor(
    data: VendorCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = ADMIN
):
    vendor = await LabVendorService(db).create_vendor(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.CREATE, "LabVendor", vendor.id, {"code": vendor.code}, request)
    return vendor


@router.get("/vendors", response_model=Page[VendorResponse])
async def list_vendors(
    search: Optional[str] = None,
    vendor_status: Optional[LabVendorStatus] = Query(None, alias="status"),
    capability: Optional[LabProductCategory] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = "name",
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await LabVendorService(db).get_vendors(
        current_user["clinic_id"], search=search, status=vendor_status, capability=capability,
        page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order,
    )


@router.get("/vendors/{vendor_id}", response_model=VendorResponse)
async def get_vendor(vendor_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await LabVendorService(db).get_vendor(current_user["clinic_id"], vendor_id)


@router.put("/vendors/{vendor_id}", response_model=VendorResponse)
async def update_vendor(
    vendor_id: str, data: VendorUpdate, request: Request,
    db: AsyncSession = Depends(get_db), current_user: dict = ADMIN,
):
    vendor = await LabVendorService(db).update_vendor(current_user["clinic_id"], vendor_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "LabVendor", vendor.id,
        data.model_dump(mode="json", exclude_unset=True), request
    )
    return vendor


@router.delete("/vendors/{vendor_id}", response_model=SuccessResponse)
async def delete_vendor(
    vendor_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = ADMIN
):
    await LabVendorService(db).delete_vendor(current_user["clinic_id"], vendor_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "LabVendor", vendor_id, None, request)
    return SuccessResponse(message="Lab vendor deleted")


# Products

@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    data: ProductCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = ADMIN
):
    product = await LabProductService(db).create_product(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "LabProduct", product.id, {"name": product.name}, request
    )
    return product


@router.get("/products", response_model=Page[ProductResponse])
async def list_products(
    search: Optional[str] = None,
    category: Optional[LabProductCategory] = None,
    vendor_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await LabProductService(db).get_products(
        current_user["clinic_id"], search=search, category=category, vendor_id=vendor_id,
        is_active=is_active, page=page, page_size=page_size,
    )


@router.get("/products/{product_id}", response_model=ProductResponse)
async def get_product(product_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await LabProductService(db).get_product(current_user["clinic_id"], product_id)


@router.put("/products/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: str, data: ProductUpdate, request: Request,
    db: AsyncSession = Depends(get_db), current_user: dict = ADMIN,
):
    product = await LabProductService(db).update_product(
        current_user["clinic_id"], product_id, data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "LabProduct", product.id,
        data.model_dump(mode="json", exclude_unset=True), request
    )
    return product


@router.delete("/products/{product_id}", response_model=SuccessResponse)
async def delete_product(
    product_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = ADMIN
):
    await LabProductService(db).delete_product(current_user["clinic_id"], product_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "LabProduct", product_id, None, request)
    return SuccessResponse(message="Lab product deleted")


# Batch

@router.post("/batch", response_model=BatchResult)
async def batch_operation(
    data: BatchRequest, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE
):
    result = await LabOrderService(db).execute_batch(current_user["clinic_id"], data, current_user["sub"])
    action = AuditAction.EXPORT if data.operation == BatchOperation.EXPORT else AuditAction.UPDATE
    await AuditLogger.log(
        db, current_user, action, "LabOrder", None,
        {
            "batch_operation": data.operation.value,
            "processed": result["processed"],
            "successful": result["successful"],
            "failed": result["failed"],
            "order_ids": [r["order_id"] for r in result["results"]],
        },
        request,
    )
    return result


# Orders

@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    data: OrderCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE_ORDER
):
    order = await LabOrderService(db).create_order(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "LabOrder", order.id,
        {"order_number": order.order_number, "patient_id": order.patient_id}, request
    )
    return order


@router.get("/orders", response_model=Page[OrderResponse])
async def list_orders(
    search: Optional[str] = None,
    order_status: Optional[LabOrderStatus] = Query(None, alias="status"),
    vendor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    priority: Optional[OrderPriority] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = "order_date",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await LabOrderService(db).get_orders(
        current_user["clinic_id"], search=search, status=order_status, vendor_id=vendor_id,
        patient_id=patient_id, priority=priority, due_from=due_from, due_to=due_to,
        page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order,
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await LabOrderService(db).get_order(current_user["clinic_id"], order_id)


@router.get("/orders/{order_id}/history", response_model=List[StatusLogResponse])
async def order_status_history(order_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await LabOrderService(db).get_status_history(current_user["clinic_id"], order_id)


@router.put("/orders/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: str, data: OrderUpdate, request: Request,
    db: AsyncSession = Depends(get_db), current_user: dict = CREATE_ORDER,
):
    order = await LabOrderService(db).update_order(current_user["clinic_id"], order_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "LabOrder", order.id,
        data.model_dump(mode="json", exclude_unset=True, exclude={"items"}), request
    )
    return order


@router.post("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: str, data: OrderStatusUpdate, request: Request,
    db: AsyncSession = Depends(get_db), current_user: dict = UPDATE,
):
    order = await LabOrderService(db).update_status(
        current_user["clinic_id"], order_id, data.status, data.notes, data.source, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "LabOrder", order.id,
        {"status": data.status.value, "source": data.source.value}, request
    )
    return order


@router.delete("/orders/{order_id}", response_model=SuccessResponse)
async def delete_order(
    order_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE_ORDER
):
    await LabOrderService(db).delete_order(current_user["clinic_id"], order_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "LabOrder", order_id, None, request)
    return SuccessResponse(message="Lab order deleted")
