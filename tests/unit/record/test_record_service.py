"""Tests for updating, cancelling and deleting numbered records."""

from datetime import datetime
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest
from pymongo.errors import AutoReconnect

from labseq.core.modules.audit.models import Actor
from labseq.core.modules.issuance.models import ScopeContext
from labseq.core.modules.numbering.policies import EntityType
from labseq.errors import NotFoundError, ValidationError

KOLKATA = ZoneInfo("Asia/Kolkata")
CONTEXT = ScopeContext(when=datetime(2025, 1, 31, 11, 0, tzinfo=KOLKATA))
NURSE = Actor(user_id="n1", name="Nurse Joy", role="nurse")


async def create(services, entity_type=EntityType.APPOINTMENT, **payload):
    return await services.issuance.create_record(entity_type, CONTEXT, payload)


def audit_actions(database, entity_id):
    return [d["action"] for d in database["audit_logs"].docs if d["entity_id"] == str(entity_id)]


class TestGetRecord:
    """Tests for reading records."""

    async def test_get(self, services):
        created = await create(services, status="Scheduled")
        record = await services.record.get_record(EntityType.APPOINTMENT, created.id)
        assert record.appointmentId == "APT000001"
        assert record.status == "Scheduled"

    async def test_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.record.get_record(EntityType.APPOINTMENT, uuid4())


class TestUpdateRecord:
    """Tests for business field updates."""

    async def test_update_audited_with_history(self, services, database):
        created = await create(services, status="Scheduled", room="2")

        updated = await services.record.update_record(
            EntityType.APPOINTMENT, created.id, {"status": "Cancelled", "room": "2"}, NURSE
        )

        assert updated.status == "Cancelled"
        assert updated.edit_count == 1
        assert updated.edit_history[0].changes == {"status": {"before": "Scheduled", "after": "Cancelled"}}
        assert updated.edit_history[0].edited_by == "Nurse Joy"
        [entry] = [d for d in database["audit_logs"].docs if d["action"] == "UPDATE"]
        assert entry["field_changes"] == {"status": {"before": "Scheduled", "after": "Cancelled"}}
        assert entry["actor"]["role"] == "nurse"

    async def test_nested_field_diff(self, services, database):
        created = await create(services, EntityType.PATIENT, address={"city": "Pune", "post": "411001"})

        await services.record.update_record(
            EntityType.PATIENT, created.id, {"address": {"city": "Mumbai", "post": "411001"}}
        )

        [entry] = [d for d in database["audit_logs"].docs if d["action"] == "UPDATE"]
        assert entry["field_changes"] == {"address.city": {"before": "Pune", "after": "Mumbai"}}

    @pytest.mark.parametrize("field", ["appointmentNumber", "appointmentId", "dailyNo", "counter_names", "_id"])
    async def test_numbered_fields_immutable(self, services, field):
        created = await create(services)
        with pytest.raises(ValidationError, match=field):
            await services.record.update_record(EntityType.APPOINTMENT, created.id, {field: 5})

    @pytest.mark.parametrize(
        "key", ["counter_names.appointmentNumber", "edit_history.0", "appointmentId.x", "$inc", "notes.$"]
    )
    async def test_paths_into_protected_fields_rejected(self, services, database, key):
        """A dotted or operator key cannot reach fields the plain name guard protects."""
        created = await create(services)
        with pytest.raises(ValidationError):
            await services.record.update_record(EntityType.APPOINTMENT, created.id, {key: "2025"}, NURSE)

        [doc] = database["appointments"].docs
        assert doc["counter_names"]["appointmentNumber"] == "appointmentId_2025"
        assert doc["edit_history"] == []
        assert audit_actions(database, created.id) == ["CREATE"]

    async def test_empty_changes(self, services):
        created = await create(services)
        with pytest.raises(ValidationError):
            await services.record.update_record(EntityType.APPOINTMENT, created.id, {})

    async def test_missing_record(self, services):
        with pytest.raises(NotFoundError):
            await services.record.update_record(EntityType.APPOINTMENT, uuid4(), {"status": "Completed"})


class TestCancelRecord:
    """Tests for soft deletion."""

    async def test_cancel_keeps_counters(self, services, database):
        await create(services)
        latest = await create(services)

        cancelled = await services.record.cancel_record(EntityType.APPOINTMENT, latest.id, NURSE, "Patient left")

        assert cancelled.status == "Cancelled"
        assert cancelled.deleted is True
        assert cancelled.appointmentId == "APT000002"
        assert await services.counter.get_current_value("appointmentId_2025") == 2
        assert await services.counter.get_current_value("opd_today_2025-01-31") == 2
        assert audit_actions(database, latest.id) == ["CREATE", "UPDATE"]

    async def test_cancel_twice(self, services):
        created = await create(services)
        await services.record.cancel_record(EntityType.APPOINTMENT, created.id)
        with pytest.raises(ValidationError, match="already cancelled"):
            await services.record.cancel_record(EntityType.APPOINTMENT, created.id)


class TestDeleteRecord:
    """Tests for hard deletion with archive and undo-latest."""

    async def test_delete_latest_releases_numbers(self, services, database):
        await create(services, EntityType.PATIENT)
        latest = await create(services, EntityType.PATIENT)

        released = await services.record.delete_record(EntityType.PATIENT, latest.id, NURSE, "Duplicate entry")

        assert {c.name for c in released} == {"patientId_2025", "regNo_2025"}
        assert await services.counter.get_current_value("patientId_2025") == 1
        # The released number is handed out again
        again = await create(services, EntityType.PATIENT)
        assert again.patientId == "PAT000002"

    async def test_delete_earlier_keeps_counter(self, services):
        first = await create(services, EntityType.PATIENT)
        await create(services, EntityType.PATIENT)

        released = await services.record.delete_record(EntityType.PATIENT, first.id)

        assert released == []
        assert await services.counter.get_current_value("patientId_2025") == 2

    async def test_archive_and_audit(self, services, database):
        created = await create(services, EntityType.PATHOLOGY_INVOICE, status="Paid")

        await services.record.delete_record(EntityType.PATHOLOGY_INVOICE, created.id, NURSE, "Entered twice")

        assert database["pathology_invoices"].docs == []
        [archived] = await services.record.list_archived(EntityType.PATHOLOGY_INVOICE, created.id)
        assert await services.record.list_archived(EntityType.APPOINTMENT, created.id) == []
        assert archived.original_collection == "pathology_invoices"
        assert archived.numbers == {"receiptNumber": 1, "dbCrn": 1}
        assert archived.deleted_by == "Nurse Joy"
        assert archived.reason == "Entered twice"
        assert archived.data["invoiceNumber"] == "INV1"
        assert audit_actions(database, created.id) == ["CREATE", "DELETE"]
        # Global invoice numbers are never reused
        assert await services.counter.get_current_value("db_crn") == 1
        assert await services.counter.get_current_value("receipt_2025") == 0

    async def test_archive_failure_aborts(self, services, database):
        created = await create(services, EntityType.PATIENT)
        database["deleted_records"].fail_on("insert_one")

        with pytest.raises(AutoReconnect):
            await services.record.delete_record(EntityType.PATIENT, created.id)

        assert len(database["patients"].docs) == 1
        assert await services.counter.get_current_value("patientId_2025") == 1

    async def test_delete_missing(self, services):
        with pytest.raises(NotFoundError):
            await services.record.delete_record(EntityType.PATIENT, uuid4())
