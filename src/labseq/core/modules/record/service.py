from collections.abc import Mapping
from typing import Any
from uuid import UUID

import structlog
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from labseq.core.core import Service
from labseq.core.modules.audit.models import SYSTEM_ACTOR, Actor, AuditAction
from labseq.core.modules.counter.models import CounterCorrection
from labseq.core.modules.numbering.policies import EntityType, get_policy
from labseq.core.modules.record.models import DeletedRecord, NumberedRecord, protected_keys
from labseq.errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


class RecordService(Service):
    """Update, cancel and delete numbered records, auditing every mutation."""

    def __init__(self, database: AsyncDatabase[dict[str, Any]]) -> None:
        super().__init__(database)
        self._archive = database.get_collection("deleted_records")

    async def on_start(self) -> None:
        """Create indexes for archive lookups."""
        await self._archive.create_index([("original_id", 1)])
        await self._archive.create_index([("deleted_at", -1)])

    async def get_record(self, entity_type: EntityType | str, record_id: UUID) -> NumberedRecord:
        """Get a record by id; soft-deleted records are still returned."""
        policy = get_policy(entity_type)
        doc = await self.database.get_collection(policy.collection).find_one({"_id": record_id})
        if doc is None:
            raise NotFoundError(f"{policy.audit_name} not found")
        return NumberedRecord.model_validate(doc)

    async def update_record(
        self,
        entity_type: EntityType | str,
        record_id: UUID,
        changes: Mapping[str, Any],
        actor: Actor | None = None,
    ) -> NumberedRecord:
        """Apply business field changes; numbered fields are immutable here."""
        policy = get_policy(entity_type)
        forbidden = protected_keys(changes, policy.numbered_fields)
        if forbidden:
            raise ValidationError(f"Fields cannot be changed: {', '.join(forbidden)}")
        if not changes:
            raise ValidationError("No changes given")

        collection = self.database.get_collection(policy.collection)
        before = await collection.find_one({"_id": record_id})
        if before is None:
            raise NotFoundError(f"{policy.audit_name} not found")
        await collection.update_one({"_id": record_id}, {"$set": dict(changes)})
        after = await collection.find_one({"_id": record_id})
        if after is None:
            raise NotFoundError(f"{policy.audit_name} not found")

        await self.core.services.audit.record_update(
            policy.audit_name, policy.collection, before, after, policy.audit_fields, actor=actor
        )
        logger.info("record_updated", entity_type=policy.entity_type, record_id=str(record_id), fields=sorted(changes))
        return await self.get_record(policy.entity_type, record_id)

    async def cancel_record(
        self,
        entity_type: EntityType | str,
        record_id: UUID,
        actor: Actor | None = None,
        reason: str = "",
    ) -> NumberedRecord:
        """Soft-delete: the record keeps its numbers and no counter moves."""
        policy = get_policy(entity_type)
        collection = self.database.get_collection(policy.collection)
        before = await collection.find_one({"_id": record_id})
        if before is None:
            raise NotFoundError(f"{policy.audit_name} not found")
        if before.get("deleted"):
            raise ValidationError(f"{policy.audit_name} is already cancelled")

        update: dict[str, Any] = {"status": policy.cancelled_status, "deleted": True}
        if reason:
            update["cancellation_reason"] = reason
        await collection.update_one({"_id": record_id}, {"$set": update})
        after = await collection.find_one({"_id": record_id})
        if after is None:
            raise NotFoundError(f"{policy.audit_name} not found")

        await self.core.services.audit.record_update(
            policy.audit_name,
            policy.collection,
            before,
            after,
            (*policy.audit_fields, "deleted"),
            actor=actor,
            meta={"operation": "cancel", "reason": reason},
        )
        logger.info("record_cancelled", entity_type=policy.entity_type, record_id=str(record_id))
        return NumberedRecord.model_validate(after)

    async def delete_record(
        self,
        entity_type: EntityType | str,
        record_id: UUID,
        actor: Actor | None = None,
        reason: str = "",
    ) -> list[CounterCorrection]:
        """Archive, hard-delete, audit, then give back the latest numbers.

        The record is not deleted when the archive write fails.
        Returns the counters that were decremented.
        """
        policy = get_policy(entity_type)
        actor = actor or SYSTEM_ACTOR
        collection = self.database.get_collection(policy.collection)
        doc = await collection.find_one({"_id": record_id})
        if doc is None:
            raise NotFoundError(f"{policy.audit_name} not found")

        archived = DeletedRecord(
            entity_type=policy.entity_type,
            original_collection=policy.collection,
            original_id=record_id,
            numbers={rule.field: int(doc[rule.field]) for rule in policy.rules if doc.get(rule.field) is not None},
            counter_names=doc.get("counter_names") or {},
            reason=reason,
            deleted_by=actor.display_name,
            data=doc,
        )
        try:
            await self._archive.insert_one(archived.to_mongo())
        except PyMongoError:
            logger.exception("record_archive_failed", entity_type=policy.entity_type, record_id=str(record_id))
            raise

        await collection.delete_one({"_id": record_id})
        logger.info("record_deleted", entity_type=policy.entity_type, record_id=str(record_id), reason=reason)
        await self.core.services.audit.record_audit(
            policy.audit_name,
            record_id,
            AuditAction.DELETE,
            before=doc,
            actor=actor,
            meta={"reason": reason, "archive_id": str(archived.id)},
        )
        return await self.core.services.maintenance.release_latest(policy.entity_type, doc, actor=actor)

    async def list_archived(self, entity_type: EntityType | str, record_id: UUID) -> list[DeletedRecord]:
        """Get archive snapshots of a deleted record, newest first."""
        policy = get_policy(entity_type)
        cursor = self._archive.find({"entity_type": policy.entity_type, "original_id": record_id}).sort("deleted_at", -1)
        return await DeletedRecord.list_cursor(cursor)
