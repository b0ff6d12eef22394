from collections.abc import AsyncGenerator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any
from uuid import UUID

from pymongo.asynchronous.database import AsyncDatabase

from labseq.config import Config
from labseq.core.core import Core
from labseq.core.modules.audit.models import Actor, AuditEntry, DailyAudit
from labseq.core.modules.counter.models import Counter, CounterCorrection, CounterGroups
from labseq.core.modules.issuance.models import IssuedIdentifiers, ScopeContext
from labseq.core.modules.maintenance.models import RebuildReport, ResyncResult, Window
from labseq.core.modules.numbering.policies import EntityType, get_policy
from labseq.core.modules.record.models import DeletedRecord, NumberedRecord
from labseq.core.pagination import PaginationResult
from labseq.errors import NotFoundError


class App:
    """Facade for all application operations; the acting user is recorded, not authorized."""

    def __init__(self, config: Config, database: AsyncDatabase[dict[str, Any]] | None = None) -> None:
        self._core = Core(config, database)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Application lifespan management - delegates to Core."""
        async with self._core.lifespan():
            yield

    async def get_counters(self) -> CounterGroups:
        """Get all counters grouped by period."""
        return await self._core.services.counter.group_counters()

    async def get_counter(self, actor: Actor, name: str) -> Counter:
        """Get one counter; an absent counter reads as zero. The read is audited."""
        value = await self._core.services.maintenance.get_current_value(name, actor)
        return Counter(name=name, value=value)

    async def reset_counter(self, actor: Actor, name: str, value: int) -> CounterCorrection:
        """Force a counter to an explicit value."""
        return await self._core.services.maintenance.reset_counter(name, value, actor)

    async def resync_counter(self, actor: Actor, name: str) -> CounterCorrection:
        """Set a counter to the highest number found among the records it issued."""
        return await self._core.services.maintenance.resync_counter(name, actor)

    async def resync_all_counters(self, actor: Actor, when: datetime | None = None) -> ResyncResult:
        """Resync every scoped counter for the periods containing ``when`` (default now)."""
        return await self._core.services.maintenance.resync_all(when, actor)

    async def rebuild_sequence_fields(self, actor: Actor, entity_type: EntityType, window: Window) -> RebuildReport:
        """Renumber ordinal fields of records inside the window in chronological order."""
        return await self._core.services.maintenance.rebuild_sequence_fields_for_window(entity_type, window, actor)

    async def issue_identifiers(self, entity_type: EntityType, context: ScopeContext) -> IssuedIdentifiers:
        """Allocate identifiers without creating a record."""
        return await self._core.services.issuance.issue_identifiers(entity_type, context)

    async def create_record(
        self, actor: Actor, entity_type: EntityType, context: ScopeContext, payload: Mapping[str, Any]
    ) -> NumberedRecord:
        """Create a numbered record with freshly allocated identifiers."""
        return await self._core.services.issuance.create_record(entity_type, context, payload, actor)

    async def get_record(self, entity_type: EntityType, record_id: UUID) -> NumberedRecord:
        return await self._core.services.record.get_record(entity_type, record_id)

    async def update_record(
        self, actor: Actor, entity_type: EntityType, record_id: UUID, changes: Mapping[str, Any]
    ) -> NumberedRecord:
        """Update business fields of a record (partial update)."""
        return await self._core.services.record.update_record(entity_type, record_id, changes, actor)

    async def cancel_record(self, actor: Actor, entity_type: EntityType, record_id: UUID, reason: str) -> NumberedRecord:
        """Cancel a record; its numbers stay taken."""
        return await self._core.services.record.cancel_record(entity_type, record_id, actor, reason)

    async def delete_record(
        self, actor: Actor, entity_type: EntityType, record_id: UUID, reason: str
    ) -> list[CounterCorrection]:
        """Archive and delete a record, releasing its numbers when they are the latest."""
        return await self._core.services.record.delete_record(entity_type, record_id, actor, reason)

    async def get_audit_entries(
        self, entity_type: str, entity_id: str, limit: int = 50, offset: int = 0
    ) -> PaginationResult[AuditEntry]:
        """Get audit history of a record or counter, newest first.

        ``entity_type`` may be a numbered entity type (``patient``) or an audit
        name (``Patient``, ``Counter``).
        """
        return await self._core.services.audit.list_entries(_audit_name(entity_type), entity_id, limit, offset)

    async def get_daily_audit(self, day: date, entity_types: Iterable[str] = (), limit: int = 2000) -> DailyAudit:
        """Get audit entries written on one local day."""
        names = [_audit_name(entity_type) for entity_type in entity_types]
        return await self._core.services.audit.list_daily(day, names, limit)

    async def get_recent_audit(self, limit: int = 200) -> list[AuditEntry]:
        """Get the latest audit entries across all entities."""
        return await self._core.services.audit.list_recent(limit)

    async def get_archived_record(self, entity_type: EntityType, record_id: UUID) -> list[DeletedRecord]:
        """Get archive snapshots of a deleted record."""
        records = await self._core.services.record.list_archived(entity_type, record_id)
        if not records:
            raise NotFoundError("Archived record not found")
        return records


def _audit_name(entity_type: str) -> str:
    if entity_type in EntityType:
        return get_policy(entity_type).audit_name
    return entity_type
