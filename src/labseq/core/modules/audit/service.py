import asyncio
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any
from uuid import UUID

import structlog
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from labseq.core.core import Service
from labseq.core.modules.audit.diff import build_diff
from labseq.core.modules.audit.models import SYSTEM_ACTOR, Actor, AuditAction, AuditEntry, DailyAudit, EditHistoryEntry
from labseq.core.modules.numbering.policies import Period, period_bounds
from labseq.core.pagination import PaginationResult
from labseq.utils import hostname, local_midnight

logger = structlog.get_logger(__name__)

# Embedded history stays on the record, not in snapshots
_SNAPSHOT_EXCLUDED = frozenset({"edit_history"})


def _snapshot(doc: Mapping[str, Any] | None) -> dict[str, Any]:
    if not doc:
        return {}
    return {k: v for k, v in doc.items() if k not in _SNAPSHOT_EXCLUDED}


class AuditService(Service):
    """Append-only audit log plus the per-record embedded edit history.

    Writes here are best-effort: a failed write is logged and swallowed so the
    business operation that triggered it still succeeds.
    """

    def __init__(self, database: AsyncDatabase[dict[str, Any]]) -> None:
        super().__init__(database)
        self._collection = database.get_collection("audit_logs")
        self._pending: set[asyncio.Task[AuditEntry | None]] = set()

    async def on_start(self) -> None:
        """Create indexes for entity history and time range queries."""
        await self._collection.create_index([("entity_type", 1), ("entity_id", 1), ("timestamp", -1)])
        await self._collection.create_index([("timestamp", -1)])

    async def on_stop(self) -> None:
        """Wait for background audit writes so they are not lost on shutdown."""
        await self.drain()

    async def drain(self) -> None:
        """Wait for every scheduled background write."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def record_audit(
        self,
        entity_type: str,
        entity_id: str | UUID,
        action: AuditAction,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        actor: Actor | None = None,
        meta: Mapping[str, Any] | None = None,
        fields: Iterable[str] | None = None,
        changes: Mapping[str, dict[str, Any]] | None = None,
    ) -> AuditEntry | None:
        """Append one audit entry; returns None when the write failed.

        ``field_changes`` is the diff over ``fields`` when given, else ``changes``.
        """
        if fields is not None:
            field_changes = build_diff(before, after, fields)
        else:
            field_changes = dict(changes or {})

        entry = AuditEntry(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            before_snapshot=_snapshot(before),
            after_snapshot=_snapshot(after),
            field_changes=field_changes,
            actor=actor or SYSTEM_ACTOR,
            meta={**(meta or {}), "host": hostname()},
        )
        try:
            await self._collection.insert_one(entry.to_mongo())
        except PyMongoError as e:
            logger.warning(
                "audit_write_failed", entity_type=entity_type, entity_id=str(entity_id), action=action, error=str(e)
            )
            return None
        logger.debug("audit_recorded", entity_type=entity_type, entity_id=str(entity_id), action=action)
        return entry

    def record_audit_background(
        self,
        entity_type: str,
        entity_id: str | UUID,
        action: AuditAction,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        actor: Actor | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        """Schedule an audit write without waiting for it."""
        task = asyncio.create_task(
            self.record_audit(entity_type, entity_id, action, before=before, after=after, actor=actor, meta=meta)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def push_edit_history(
        self, collection: str, entity_id: UUID, edited_by: str, changes: Mapping[str, dict[str, Any]]
    ) -> bool:
        """Append to the record's embedded history. Independent of the audit log write."""
        entry = EditHistoryEntry(edited_by=edited_by, changes=dict(changes))
        try:
            result = await self.database.get_collection(collection).update_one(
                {"_id": entity_id},
                {"$push": {"edit_history": entry.model_dump()}, "$inc": {"edit_count": 1}},
            )
        except PyMongoError as e:
            logger.warning("edit_history_write_failed", collection=collection, entity_id=str(entity_id), error=str(e))
            return False
        return result.matched_count == 1

    async def record_update(
        self,
        entity_type: str,
        collection: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        fields: Iterable[str],
        actor: Actor | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Audit an UPDATE and mirror non-empty changes into the embedded history.

        The two writes are separate steps; either may fail without affecting the other.
        """
        changes = build_diff(before, after, fields)
        actor = actor or SYSTEM_ACTOR
        await self.record_audit(
            entity_type, after["_id"], AuditAction.UPDATE, before=before, after=after, actor=actor, meta=meta, changes=changes
        )
        if changes:
            await self.push_edit_history(collection, after["_id"], actor.display_name, changes)
        return changes

    async def list_entries(
        self, entity_type: str, entity_id: str, limit: int = 50, offset: int = 0
    ) -> PaginationResult[AuditEntry]:
        """Get paginated audit entries for one entity, newest first."""
        query = {"entity_type": entity_type, "entity_id": entity_id}
        total = await self._collection.count_documents(query)
        cursor = self._collection.find(query).sort("timestamp", -1).skip(offset).limit(limit)
        items = await AuditEntry.list_cursor(cursor)
        return PaginationResult(items=items, total=total, limit=limit, offset=offset)

    async def list_daily(self, day: date, entity_types: Iterable[str] = (), limit: int = 2000) -> DailyAudit:
        """Get entries written on one local day, optionally only for some entity types."""
        start, end = period_bounds(Period.DAY, local_midnight(day, self.core.config.timezone))
        query: dict[str, Any] = {"timestamp": {"$gte": start, "$lt": end}}
        types = list(entity_types)
        if types:
            query["entity_type"] = {"$in": types}
        cursor = self._collection.find(query).sort("timestamp", -1).limit(limit)
        entries = await AuditEntry.list_cursor(cursor)
        return DailyAudit(
            day=day,
            count=len(entries),
            by_entity_type=dict(Counter(entry.entity_type for entry in entries)),
            entries=entries,
        )

    async def list_recent(self, limit: int = 200) -> list[AuditEntry]:
        """Get the latest entries across every entity, newest first."""
        cursor = self._collection.find({}).sort("timestamp", -1).limit(limit)
        return await AuditEntry.list_cursor(cursor)
