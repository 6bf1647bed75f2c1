import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.lab.schemas import (
    VendorCreate, ProductCreate, OrderCreate, OrderItemCreate, BatchRequest, BatchOperation, ExportFilters,
)
from orca.core.exceptions import BusinessLogicError, ConflictError, NotFoundError
from orca.domain.audit.models import AuditLog, AuditAction
from orca.domain.lab.models import LabOrderStatus, LabProductCategory, OrderPriority, Arch
from orca.domain.lab.service import LabVendorService, LabProductService, LabOrderService
from orca.domain.patients.models import Patient
from conftest import CLINIC_ID, OTHER_CLINIC_ID, STAFF_ID


@pytest.fixture
async def vendor(db_session: AsyncSession):
    return await LabVendorService(db_session).create_vendor(
        CLINIC_ID,
        VendorCreate(
            name="Northern Ortho Lab",
            code="NOL",
            capabilities=[LabProductCategory.RETAINER, LabProductCategory.APPLIANCE],
        ),
        STAFF_ID,
    )


@pytest.fixture
async def retainer(db_session: AsyncSession, vendor):
    return await LabProductService(db_session).create_product(
        CLINIC_ID,
        ProductCreate(
            vendor_id=vendor.id,
            name="Hawley retainer",
            sku="HAW-01",
            category=LabProductCategory.RETAINER,
            base_price=185.0,
        ),
        STAFF_ID,
    )


@pytest.fixture
def order_service(db_session: AsyncSession) -> LabOrderService:
    return LabOrderService(db_session)


async def _draft(service: LabOrderService, patient: Patient, product, vendor_id=None, **extra):
    return await service.create_order(
        CLINIC_ID,
        OrderCreate(
            patient_id=patient.id,
            vendor_id=vendor_id,
            items=[OrderItemCreate(product_id=product.id, quantity=2, arch=Arch.UPPER)],
            **extra,
        ),
        STAFF_ID,
    )


@pytest.mark.lab
class TestLabCatalog:
    """Vendors and products"""

    @pytest.mark.asyncio
    async def test_duplicate_vendor_code_rejected(self, db_session: AsyncSession, vendor) -> None:
        """A clinic cannot reuse a vendor code."""
        with pytest.raises(ConflictError) as exc:
            await LabVendorService(db_session).create_vendor(
                CLINIC_ID, VendorCreate(name="Another lab", code="NOL"), STAFF_ID
            )
        assert exc.value.error_code == "DUPLICATE_VENDOR_CODE"

    @pytest.mark.asyncio
    async def test_vendor_capability_filter(self, db_session: AsyncSession, vendor) -> None:
        """Vendors are filtered by the categories they can produce."""
        await LabVendorService(db_session).create_vendor(
            CLINIC_ID,
            VendorCreate(name="Clear Aligner Co", code="CAC", capabilities=[LabProductCategory.ALIGNER]),
            STAFF_ID,
        )
        result = await LabVendorService(db_session).get_vendors(CLINIC_ID, capability=LabProductCategory.ALIGNER)
        assert [v.code for v in result["items"]] == ["CAC"]

    @pytest.mark.asyncio
    async def test_vendor_lookup_is_clinic_scoped(self, db_session: AsyncSession, vendor) -> None:
        """Another clinic cannot see the vendor."""
        with pytest.raises(NotFoundError) as exc:
            await LabVendorService(db_session).get_vendor(OTHER_CLINIC_ID, vendor.id)
        assert exc.value.error_code == "VENDOR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_product_requires_known_vendor(self, db_session: AsyncSession) -> None:
        """Products cannot point at a vendor that does not exist."""
        with pytest.raises(NotFoundError):
            await LabProductService(db_session).create_product(
                CLINIC_ID,
                ProductCreate(vendor_id="missing", name="Spring aligner", category=LabProductCategory.APPLIANCE),
                STAFF_ID,
            )


@pytest.mark.lab
class TestLabOrders:
    """Single-order lifecycle"""

    @pytest.mark.asyncio
    async def test_create_order_prices_items_from_catalog(
        self, order_service: LabOrderService, patient: Patient, retainer
    ) -> None:
        """Items default to the product base price and the order starts as DRAFT."""
        order = await _draft(order_service, patient, retainer)

        assert order.status == LabOrderStatus.DRAFT
        assert order.order_number.startswith("LAB-")
        assert order.items[0].unit_price == 185.0
        assert order.items[0].product_name == "Hawley retainer"
        assert order.total_cost == 370.0

        history = await order_service.get_status_history(CLINIC_ID, order.id)
        assert [log.to_status for log in history] == [LabOrderStatus.DRAFT]

    @pytest.mark.asyncio
    async def test_unknown_product_rejected(self, order_service: LabOrderService, patient: Patient) -> None:
        """Every item must reference a catalog product."""
        with pytest.raises(NotFoundError) as exc:
            await order_service.create_order(
                CLINIC_ID,
                OrderCreate(patient_id=patient.id, items=[OrderItemCreate(product_id="nope")]),
                STAFF_ID,
            )
        assert exc.value.error_code == "PRODUCT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_submit_without_vendor_rejected(
        self, order_service: LabOrderService, patient: Patient, retainer
    ) -> None:
        """An order cannot be submitted until a vendor is assigned."""
        order = await _draft(order_service, patient, retainer)
        with pytest.raises(BusinessLogicError) as exc:
            await order_service.update_status(CLINIC_ID, order.id, LabOrderStatus.SUBMITTED)
        assert exc.value.error_code == "NO_VENDOR"

    @pytest.mark.asyncio
    async def test_status_change_stamps_milestones(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Submitting and shipping record their timestamps and log entries."""
        order = await _draft(order_service, patient, retainer, vendor_id=vendor.id)
        await order_service.update_status(CLINIC_ID, order.id, LabOrderStatus.SUBMITTED, changed_by=STAFF_ID)
        order = await order_service.update_status(CLINIC_ID, order.id, LabOrderStatus.SHIPPED, "FedEx 1Z99")

        assert order.submitted_at is not None
        assert order.shipped_at is not None
        history = await order_service.get_status_history(CLINIC_ID, order.id)
        assert {log.to_status for log in history} == {
            LabOrderStatus.DRAFT, LabOrderStatus.SUBMITTED, LabOrderStatus.SHIPPED,
        }

    @pytest.mark.asyncio
    async def test_only_drafts_are_editable(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Submitted orders cannot be deleted."""
        order = await _draft(order_service, patient, retainer, vendor_id=vendor.id)
        await order_service.update_status(CLINIC_ID, order.id, LabOrderStatus.SUBMITTED)
        with pytest.raises(BusinessLogicError) as exc:
            await order_service.delete_order(CLINIC_ID, order.id, STAFF_ID)
        assert exc.value.error_code == "INVALID_STATUS"


@pytest.mark.lab
class TestLabBatch:
    """Bulk operations over selected orders"""

    @pytest.mark.asyncio
    async def test_batch_status_update_requires_all_orders(
        self, order_service: LabOrderService, patient: Patient, retainer
    ) -> None:
        """Unknown ids abort the whole status update."""
        order = await _draft(order_service, patient, retainer)
        with pytest.raises(NotFoundError) as exc:
            await order_service.execute_batch(
                CLINIC_ID,
                BatchRequest(
                    operation=BatchOperation.UPDATE_STATUS,
                    order_ids=[order.id, "ghost"],
                    status=LabOrderStatus.ON_HOLD,
                ),
                STAFF_ID,
            )
        assert exc.value.details["order_ids"] == ["ghost"]

    @pytest.mark.asyncio
    async def test_batch_submit_reports_per_order_failures(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Orders without a vendor fail individually while the rest are submitted."""
        ready = await _draft(order_service, patient, retainer, vendor_id=vendor.id)
        no_vendor = await _draft(order_service, patient, retainer)

        result = await order_service.execute_batch(
            CLINIC_ID,
            BatchRequest(operation=BatchOperation.SUBMIT, order_ids=[ready.id, no_vendor.id]),
            STAFF_ID,
        )

        assert result["processed"] == 2
        assert result["successful"] == 1
        assert result["failed"] == 1
        failure = next(r for r in result["results"] if not r["success"])
        assert failure["order_id"] == no_vendor.id
        assert failure["error"] == "Order has no vendor assigned"
        assert (await order_service.get_order(CLINIC_ID, ready.id)).status == LabOrderStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_batch_cancel_needs_reason_and_cancellable_status(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Shipped orders are not cancelled; drafts are, with the reason recorded."""
        draft = await _draft(order_service, patient, retainer, vendor_id=vendor.id)
        shipped = await _draft(order_service, patient, retainer, vendor_id=vendor.id)
        await order_service.update_status(CLINIC_ID, shipped.id, LabOrderStatus.SHIPPED)

        with pytest.raises(BusinessLogicError) as exc:
            await order_service.execute_batch(
                CLINIC_ID, BatchRequest(operation=BatchOperation.CANCEL, order_ids=[draft.id]), STAFF_ID
            )
        assert exc.value.error_code == "REASON_REQUIRED"

        result = await order_service.execute_batch(
            CLINIC_ID,
            BatchRequest(operation=BatchOperation.CANCEL, order_ids=[draft.id, shipped.id], reason="Patient moved"),
            STAFF_ID,
        )
        assert result["successful"] == 1
        cancelled = await order_service.get_order(CLINIC_ID, draft.id)
        assert cancelled.status == LabOrderStatus.CANCELLED
        assert cancelled.cancel_reason == "Patient moved"
        failure = next(r for r in result["results"] if not r["success"])
        assert failure["error"] == "Cannot cancel order in SHIPPED status"

    @pytest.mark.asyncio
    async def test_batch_priority_and_vendor(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Priority and vendor are applied to every selected order."""
        order = await _draft(order_service, patient, retainer)
        await order_service.execute_batch(
            CLINIC_ID,
            BatchRequest(operation=BatchOperation.UPDATE_PRIORITY, order_ids=[order.id], priority=OrderPriority.URGENT),
            STAFF_ID,
        )
        await order_service.execute_batch(
            CLINIC_ID,
            BatchRequest(operation=BatchOperation.ASSIGN_VENDOR, order_ids=[order.id], vendor_id=vendor.id),
            STAFF_ID,
        )
        order = await order_service.get_order(CLINIC_ID, order.id)
        assert order.priority == OrderPriority.URGENT
        assert order.vendor_id == vendor.id

    @pytest.mark.asyncio
    async def test_batch_priority_and_vendor_require_all_orders(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Unknown ids abort priority and vendor changes without touching the known orders."""
        order = await _draft(order_service, patient, retainer)
        with pytest.raises(NotFoundError) as exc:
            await order_service.execute_batch(
                CLINIC_ID,
                BatchRequest(
                    operation=BatchOperation.UPDATE_PRIORITY,
                    order_ids=[order.id, "ghost"],
                    priority=OrderPriority.URGENT,
                ),
                STAFF_ID,
            )
        assert exc.value.error_code == "ORDERS_NOT_FOUND"
        assert exc.value.details["order_ids"] == ["ghost"]

        with pytest.raises(NotFoundError):
            await order_service.execute_batch(
                CLINIC_ID,
                BatchRequest(operation=BatchOperation.ASSIGN_VENDOR, order_ids=["ghost"], vendor_id=vendor.id),
                STAFF_ID,
            )

        order = await order_service.get_order(CLINIC_ID, order.id)
        assert order.priority != OrderPriority.URGENT
        assert order.vendor_id is None

    @pytest.mark.asyncio
    async def test_batch_print_and_export(
        self, order_service: LabOrderService, patient: Patient, retainer, vendor
    ) -> None:
        """Print returns one document per order; export returns flat rows."""
        order = await _draft(order_service, patient, retainer, vendor_id=vendor.id)

        printed = await order_service.execute_batch(
            CLINIC_ID, BatchRequest(operation=BatchOperation.PRINT, order_ids=[order.id]), STAFF_ID
        )
        document = printed["documents"][0]
        assert document["format"] == "PRESCRIPTION"
        assert document["patient"] == "Lindqvist, Maya"
        assert document["vendor"] == "Northern Ortho Lab"
        assert document["items"][0]["arch"] == "UPPER"

        exported = await order_service.execute_batch(
            CLINIC_ID,
            BatchRequest(operation=BatchOperation.EXPORT, filters=ExportFilters(status=LabOrderStatus.DRAFT)),
            STAFF_ID,
        )
        assert exported["processed"] == 1
        row = exported["rows"][0]
        assert row["order_number"] == order.order_number
        assert row["items"] == "Hawley retainer x2"
        assert row["total_cost"] == 370.0

    def test_batch_request_validation(self) -> None:
        """Operation-specific fields and the id list are enforced up front."""
        with pytest.raises(ValueError):
            BatchRequest(operation=BatchOperation.SUBMIT, order_ids=[])
        with pytest.raises(ValueError):
            BatchRequest(operation=BatchOperation.UPDATE_STATUS, order_ids=["a"])
        with pytest.raises(ValueError):
            BatchRequest(operation=BatchOperation.CANCEL, order_ids=[str(i) for i in range(51)])
        assert BatchRequest(operation=BatchOperation.EXPORT).order_ids == []


@pytest.mark.lab
@pytest.mark.integration
class TestLabRoutes:
    """HTTP surface"""

    @pytest.mark.asyncio
    async def test_clinical_staff_cannot_manage_vendors(self, client: AsyncClient, clinical_headers) -> None:
        """Vendor writes need lab admin rights."""
        response = await client.post(
            "/api/v1/lab/vendors", json={"name": "Lab", "code": "LAB1"}, headers=clinical_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_order_flow_over_http(
        self, client: AsyncClient, db_session: AsyncSession, lab_headers, patient: Patient, retainer, vendor
    ) -> None:
        """Create, submit in batch and read back an order, with audit entries written."""
        response = await client.post(
            "/api/v1/lab/orders",
            json={
                "patient_id": patient.id,
                "vendor_id": vendor.id,
                "items": [{"product_id": retainer.id, "quantity": 1, "tooth_numbers": [8, 9]}],
            },
            headers=lab_headers,
        )
        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "DRAFT"
        assert order["items"][0]["tooth_numbers"] == [8, 9]

        response = await client.post(
            "/api/v1/lab/batch",
            json={"operation": "SUBMIT", "order_ids": [order["id"]]},
            headers=lab_headers,
        )
        assert response.status_code == 200
        assert response.json()["successful"] == 1

        response = await client.get(f"/api/v1/lab/orders/{order['id']}", headers=lab_headers)
        assert response.json()["status"] == "SUBMITTED"

        entries = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity == "LabOrder")
        )).scalars().all()
        assert {entry.action for entry in entries} == {AuditAction.CREATE, AuditAction.UPDATE}

    @pytest.mark.asyncio
    async def test_invalid_tooth_number_rejected(
        self, client: AsyncClient, lab_headers, patient: Patient, retainer
    ) -> None:
        """Tooth numbers outside 1-32 fail validation."""
        response = await client.post(
            "/api/v1/lab/orders",
            json={"patient_id": patient.id, "items": [{"product_id": retainer.id, "tooth_numbers": [33]}]},
            headers=lab_headers,
        )
        assert response.status_code == 422
