"""Tests for the audit log and embedded edit history."""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

from labseq.core.modules.audit.models import Actor, AuditAction


class TestRecordAudit:
    """Tests for appending audit entries."""

    async def test_entry_written(self, services, database):
        record_id = uuid4()
        entry = await services.audit.record_audit(
            "Appointment",
            record_id,
            AuditAction.UPDATE,
            before={"status": "Scheduled"},
            after={"status": "Cancelled"},
            actor=Actor(user_id="d1", role="doctor"),
            fields=["status"],
        )

        assert entry is not None
        assert entry.field_changes == {"status": {"before": "Scheduled", "after": "Cancelled"}}
        assert entry.entity_id == str(record_id)
        [stored] = database["audit_logs"].docs
        assert stored["field_changes"] == entry.field_changes
        assert stored["meta"]["host"]

    async def test_missing_actor_is_system(self, services):
        entry = await services.audit.record_audit("Counter", "db_crn", AuditAction.MAINTENANCE)
        assert entry is not None
        assert entry.actor.display_name == "System"

    async def test_edit_history_not_in_snapshots(self, services):
        entry = await services.audit.record_audit(
            "Patient", uuid4(), AuditAction.DELETE, before={"firstName": "Asha", "edit_history": [{"x": 1}]}
        )
        assert entry is not None
        assert entry.before_snapshot == {"firstName": "Asha"}

    async def test_write_failure_returns_none(self, services, database):
        database["audit_logs"].fail_on("insert_one")
        entry = await services.audit.record_audit("Patient", uuid4(), AuditAction.CREATE, after={"a": 1})
        assert entry is None
        assert database["audit_logs"].docs == []

    async def test_background_writes_drained_on_stop(self, core, database):
        core.services.audit.record_audit_background("Patient", uuid4(), AuditAction.CREATE, after={"a": 1})
        await core.services.audit.on_stop()
        assert len(database["audit_logs"].docs) == 1


class TestRecordUpdate:
    """Tests for UPDATE audits mirrored into the record's history."""

    async def test_changes_pushed_to_history(self, services, database):
        record_id = uuid4()
        appointments = database["appointments"]
        before = {"_id": record_id, "status": "Scheduled", "room": "2", "edit_history": [], "edit_count": 0}
        appointments.docs.append(dict(before))
        after = {**before, "status": "Completed"}

        changes = await services.audit.record_update(
            "Appointment", "appointments", before, after, ["status", "room"], actor=Actor(name="Dr. Mehta")
        )

        assert changes == {"status": {"before": "Scheduled", "after": "Completed"}}
        [doc] = appointments.docs
        assert doc["edit_count"] == 1
        assert doc["edit_history"][0]["edited_by"] == "Dr. Mehta"
        assert doc["edit_history"][0]["changes"] == changes
        [entry] = database["audit_logs"].docs
        assert entry["action"] == "UPDATE"

    async def test_no_changes_no_history(self, services, database):
        record_id = uuid4()
        doc = {"_id": record_id, "status": "Scheduled", "edit_history": [], "edit_count": 0}
        database["appointments"].docs.append(dict(doc))

        changes = await services.audit.record_update("Appointment", "appointments", doc, dict(doc), ["status"])

        assert changes == {}
        assert database["appointments"].docs[0]["edit_count"] == 0
        # The UPDATE itself is still audited
        assert len(database["audit_logs"].docs) == 1

    async def test_history_failure_is_independent(self, services, database):
        record_id = uuid4()
        before = {"_id": record_id, "status": "Scheduled"}
        database["appointments"].docs.append(dict(before))
        database["appointments"].fail_on("update_one")

        changes = await services.audit.record_update(
            "Appointment", "appointments", before, {**before, "status": "Cancelled"}, ["status"]
        )

        assert changes
        assert len(database["audit_logs"].docs) == 1

    async def test_push_to_missing_record(self, services):
        assert not await services.audit.push_edit_history("appointments", uuid4(), "System", {"a": {}})


class TestListEntries:
    """Tests for paginated history."""

    async def test_newest_first(self, services, database):
        base = datetime(2025, 1, 1, tzinfo=UTC)
        for i in range(5):
            entry = await services.audit.record_audit("Counter", "db_crn", AuditAction.MAINTENANCE, meta={"i": i})
            assert entry is not None
            database["audit_logs"].docs[-1]["timestamp"] = base + timedelta(minutes=i)
        await services.audit.record_audit("Counter", "receipt_2025", AuditAction.MAINTENANCE)

        page = await services.audit.list_entries("Counter", "db_crn", limit=2, offset=0)

        assert page.total == 5
        assert [e.meta["i"] for e in page.items] == [4, 3]
        assert page.has_more

        last = await services.audit.list_entries("Counter", "db_crn", limit=2, offset=4)
        assert [e.meta["i"] for e in last.items] == [0]
        assert last.next_offset is None


async def write_at(services, database, entity_type, timestamp, entity_id="x"):
    await services.audit.record_audit(entity_type, entity_id, AuditAction.UPDATE)
    database["audit_logs"].docs[-1]["timestamp"] = timestamp


class TestDailyAndRecent:
    """Tests for the log-wide queries."""

    async def test_daily_uses_local_day(self, services, database):
        """Asia/Kolkata is UTC+05:30; 19:00 UTC on Jan 30 is already Jan 31 there."""
        await write_at(services, database, "Patient", datetime(2025, 1, 30, 18, 0, tzinfo=UTC), "late-30th")
        await write_at(services, database, "Patient", datetime(2025, 1, 30, 19, 0, tzinfo=UTC), "early-31st")
        await write_at(services, database, "Counter", datetime(2025, 1, 31, 12, 0, tzinfo=UTC), "noon-31st")
        await write_at(services, database, "Patient", datetime(2025, 1, 31, 18, 45, tzinfo=UTC), "1st")

        daily = await services.audit.list_daily(date(2025, 1, 31))

        assert [e.entity_id for e in daily.entries] == ["noon-31st", "early-31st"]
        assert daily.count == 2
        assert daily.by_entity_type == {"Counter": 1, "Patient": 1}

    async def test_daily_entity_filter(self, services, database):
        noon = datetime(2025, 1, 31, 6, 0, tzinfo=UTC)
        for entity_type in ("Patient", "Appointment", "Counter"):
            await write_at(services, database, entity_type, noon)

        daily = await services.audit.list_daily(date(2025, 1, 31), ["Patient", "Counter"])

        assert sorted(e.entity_type for e in daily.entries) == ["Counter", "Patient"]

    async def test_daily_limit(self, services, database):
        base = datetime(2025, 1, 31, 6, 0, tzinfo=UTC)
        for i in range(4):
            await write_at(services, database, "Patient", base + timedelta(minutes=i), str(i))

        daily = await services.audit.list_daily(date(2025, 1, 31), limit=2)

        assert [e.entity_id for e in daily.entries] == ["3", "2"]

    async def test_recent(self, services, database):
        base = datetime(2025, 1, 1, tzinfo=UTC)
        for i in range(3):
            await write_at(services, database, "Patient" if i % 2 else "Counter", base + timedelta(days=i), str(i))

        recent = await services.audit.list_recent(limit=2)

        assert [e.entity_id for e in recent] == ["2", "1"]
