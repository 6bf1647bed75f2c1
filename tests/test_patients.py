from typing import Dict

import pytest
from httpx import AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import OTHER_CLINIC_ID, auth_headers
from orca.core.exceptions import EncryptionError
from orca.domain.auth.models import UserRole
from orca.domain.patients.models import Patient
from orca.infrastructure.encryption import FieldCipher

NEW_PATIENT = {
    "first_name": "Theo",
    "last_name": "Okafor",
    "date_of_birth": "2012-09-03",
    "email": "okafor.family@example.com",
    "phone": "+1 647 555 0199",
    "address": "88 Queen St E, Toronto ON",
    "preferred_contact_method": "SMS",
}


@pytest.mark.patients
@pytest.mark.integration
class TestPatientRegistry:
    """Patient CRUD through the API"""

    @pytest.mark.asyncio
    async def test_create_patient(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test front desk can register a patient"""
        response = await client.post("/api/v1/patients", json=NEW_PATIENT, headers=front_desk_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["first_name"] == "Theo"
        assert data["email"] == "okafor.family@example.com"
        assert data["preferred_contact_method"] == "SMS"
        assert data["is_active"] is True

    @pytest.mark.asyncio
    async def test_invalid_email(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test malformed contact details are rejected"""
        response = await client.post(
            "/api/v1/patients", json={**NEW_PATIENT, "email": "not-an-email"}, headers=front_desk_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_contact_details_encrypted_at_rest(
        self, client: AsyncClient, db_session: AsyncSession, front_desk_headers: Dict[str, str]
    ) -> None:
        """Test email and phone are stored encrypted and read back in plain text"""
        created = (await client.post("/api/v1/patients", json=NEW_PATIENT, headers=front_desk_headers)).json()

        raw = (await db_session.execute(
            text("SELECT email, phone FROM patients WHERE id = :id"), {"id": created["id"]}
        )).one()
        assert raw.email != NEW_PATIENT["email"]
        assert raw.phone != NEW_PATIENT["phone"]

        response = await client.get(f"/api/v1/patients/{created['id']}", headers=front_desk_headers)
        assert response.json()["phone"] == NEW_PATIENT["phone"]

    @pytest.mark.asyncio
    async def test_list_and_search(
        self, client: AsyncClient, front_desk_headers: Dict[str, str], patient: Patient
    ) -> None:
        """Test listing is paginated and searchable by name"""
        await client.post("/api/v1/patients", json=NEW_PATIENT, headers=front_desk_headers)

        response = await client.get("/api/v1/patients", headers=front_desk_headers)
        data = response.json()
        assert data["total"] == 2
        assert [item["last_name"] for item in data["items"]] == ["Lindqvist", "Okafor"]

        response = await client.get("/api/v1/patients", params={"search": "okaf"}, headers=front_desk_headers)
        assert [item["first_name"] for item in response.json()["items"]] == ["Theo"]

    @pytest.mark.asyncio
    async def test_update_patient(
        self, client: AsyncClient, front_desk_headers: Dict[str, str], patient: Patient
    ) -> None:
        """Test partial updates only touch the fields sent"""
        response = await client.patch(
            f"/api/v1/patients/{patient.id}", json={"phone": "+1 416 555 0102"}, headers=front_desk_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["phone"] == "+1 416 555 0102"
        assert data["email"] == "maya.parent@example.com"

    @pytest.mark.asyncio
    async def test_other_clinic_cannot_see_patient(self, client: AsyncClient, patient: Patient) -> None:
        """Test patients are scoped to their clinic"""
        headers = auth_headers(UserRole.FRONT_DESK, clinic_id=OTHER_CLINIC_ID)

        response = await client.get(f"/api/v1/patients/{patient.id}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "PATIENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_requires_permission(
        self,
        client: AsyncClient,
        front_desk_headers: Dict[str, str],
        admin_headers: Dict[str, str],
        patient: Patient,
    ) -> None:
        """Test only admins can delete, and deleted patients disappear"""
        response = await client.delete(f"/api/v1/patients/{patient.id}", headers=front_desk_headers)
        assert response.status_code == 403

        response = await client.delete(f"/api/v1/patients/{patient.id}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = await client.get(f"/api/v1/patients/{patient.id}", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_clinical_staff_read_only(
        self, client: AsyncClient, clinical_headers: Dict[str, str], patient: Patient
    ) -> None:
        """Test clinical staff can read but not register patients"""
        response = await client.get(f"/api/v1/patients/{patient.id}", headers=clinical_headers)
        assert response.status_code == 200

        response = await client.post("/api/v1/patients", json=NEW_PATIENT, headers=clinical_headers)
        assert response.status_code == 403


@pytest.mark.audit
@pytest.mark.integration
class TestAuditTrail:
    """Changes are recorded and readable by auditors"""

    @pytest.mark.asyncio
    async def test_patient_changes_are_audited(
        self, client: AsyncClient, front_desk_headers: Dict[str, str], admin_headers: Dict[str, str]
    ) -> None:
        """Test creating and updating a patient leaves audit entries"""
        created = (await client.post("/api/v1/patients", json=NEW_PATIENT, headers=front_desk_headers)).json()
        await client.patch(f"/api/v1/patients/{created['id']}", json={"address": "1 Bay St"}, headers=front_desk_headers)

        response = await client.get(
            "/api/v1/audit", params={"entity": "Patient", "entity_id": created["id"]}, headers=admin_headers
        )

        assert response.status_code == 200
        actions = sorted(entry["action"] for entry in response.json()["items"])
        assert actions == ["CREATE", "UPDATE"]

    @pytest.mark.asyncio
    async def test_audit_needs_permission(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test front desk cannot read the audit log"""
        response = await client.get("/api/v1/audit", headers=front_desk_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_audit_is_clinic_scoped(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test another clinic's auditors see none of this clinic's entries"""
        await client.post("/api/v1/patients", json=NEW_PATIENT, headers=front_desk_headers)
        headers = auth_headers(UserRole.BILLING_MANAGER, clinic_id=OTHER_CLINIC_ID)

        response = await client.get("/api/v1/audit", headers=headers)

        assert response.json()["total"] == 0


@pytest.mark.patients
@pytest.mark.unit
class TestFieldCipher:
    """Column encryption for contact details"""

    def test_round_trip(self) -> None:
        """Test values decrypt to what was stored"""
        cipher = FieldCipher("unit-test-secret", "unit-test-salt")
        token = cipher.encrypt("+1 416 555 0101")

        assert token != "+1 416 555 0101"
        assert cipher.decrypt(token) == "+1 416 555 0101"

    def test_plaintext_rows_pass_through(self) -> None:
        """Test legacy unencrypted values are returned as-is"""
        assert FieldCipher("unit-test-secret", "unit-test-salt").decrypt("legacy@example.com") == "legacy@example.com"

    def test_missing_key(self) -> None:
        """Test a blank key is a configuration failure"""
        with pytest.raises(EncryptionError) as exc:
            FieldCipher("", "unit-test-salt")
        assert exc.value.error_code == "ENCRYPTION_NOT_CONFIGURED"
