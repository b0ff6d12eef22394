from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

import structlog
from pymongo import UpdateOne

from labseq.core.core import Service
from labseq.core.modules.audit.models import SYSTEM_ACTOR, Actor, AuditAction
from labseq.core.modules.counter.models import CounterCorrection
from labseq.core.modules.maintenance.models import RebuildReport, ResyncResult, Window
from labseq.core.modules.numbering.policies import POLICIES, EntityType, ScopeRule, counter_period, get_policy, period_bounds
from labseq.errors import AllocationFailure, ValidationError
from labseq.utils import to_local

logger = structlog.get_logger(__name__)

COUNTER_AUDIT_TYPE = "Counter"

_EVENTS = {"reset": "counter_reset", "resync": "counter_resynced", "release": "counter_released"}


class MaintenanceService(Service):
    """Privileged counter corrections: reset, resync, undo-latest and window rebuild.

    Never on the issuance hot path. Every change is written to the audit log
    as a MAINTENANCE entry keyed by the counter name.
    """

    async def get_current_value(self, name: str, actor: Actor | None = None) -> int:
        """Read a counter for an operator; the read is audited without waiting on the write."""
        value = await self.core.services.counter.get_current_value(name)
        logger.info("counter_read", counter=name, value=value)
        self.core.services.audit.record_audit_background(
            COUNTER_AUDIT_TYPE,
            name,
            AuditAction.MAINTENANCE,
            after={"value": value},
            actor=actor,
            meta={"operation": "read"},
        )
        return value

    async def reset_counter(self, name: str, value: int, actor: Actor | None = None) -> CounterCorrection:
        """Force a counter to an explicit value."""
        if value < 0:
            raise ValidationError("Counter value must not be negative")
        counters = self.core.services.counter
        before = await counters.get_current_value(name)
        after = await counters.reset_counter(name, value)
        return await self._corrected(name, before, after, actor, operation="reset")

    async def resync_to_max(
        self,
        name: str,
        recompute: Callable[[], Awaitable[int]],
        actor: Actor | None = None,
    ) -> CounterCorrection:
        """Set the counter to the true maximum found by ``recompute``.

        The counter may move down as well as up; the next allocation is max + 1.
        """
        counters = self.core.services.counter
        before = await counters.get_current_value(name)
        true_max = await recompute()
        after = await counters.reset_counter(name, true_max)
        return await self._corrected(name, before, after, actor, operation="resync")

    async def resync_scope(
        self,
        entity_type: EntityType | str,
        field: str,
        when: datetime | None = None,
        mode: str | None = None,
        actor: Actor | None = None,
    ) -> CounterCorrection:
        """Resync the counter that issues ``field`` for the scope containing ``when``."""
        policy = get_policy(entity_type)
        rule = policy.rule(field)
        issuance = self.core.services.issuance
        local = issuance.localize(when)
        name = rule.counter_name(local.date(), mode, self.core.config.default_mode)

        async def recompute() -> int:
            return await issuance.baseline_max(policy, rule, name)

        return await self.resync_to_max(name, recompute, actor)

    async def resync_counter(self, name: str, actor: Actor | None = None) -> CounterCorrection:
        """Resync a counter by name from the records it issued."""
        issuance = self.core.services.issuance
        owners = [(policy, rule) for policy in POLICIES.values() for rule in policy.rules if _issues(rule, name)]
        if not owners:
            raise ValidationError(f"Unknown counter: {name}")

        async def recompute() -> int:
            return max([await issuance.baseline_max(policy, rule, name) for policy, rule in owners])

        return await self.resync_to_max(name, recompute, actor)

    async def resync_all(self, when: datetime | None = None, actor: Actor | None = None) -> ResyncResult:
        """Resync every scoped counter of the default mode for the periods containing ``when``.

        Ordinals and global counters are left alone; a failing counter does
        not stop the others.
        """
        result = ResyncResult()
        for policy in POLICIES.values():
            for rule in policy.rules:
                if rule.is_global or rule.ordinal:
                    continue
                try:
                    correction = await self.resync_scope(policy.entity_type, rule.field, when, actor=actor)
                except AllocationFailure as e:
                    logger.warning("counter_resync_failed", counter=e.counter_name, error=str(e))
                    result.failures[e.counter_name] = str(e)
                    continue
                result.corrections.append(correction)
        logger.info("counters_resynced", changed=len(result.changed), failed=len(result.failures))
        return result

    async def release_latest(
        self, entity_type: EntityType | str, record: Mapping[str, Any], actor: Actor | None = None
    ) -> list[CounterCorrection]:
        """Give back the numbers of a deleted record when it holds the latest ones.

        Each scoped counter is decremented only while it still equals the
        record's number. Anything issued after the record keeps the counter
        where it is. Global counters are never decremented.
        """
        policy = get_policy(entity_type)
        counters = self.core.services.counter
        counter_names = record.get("counter_names") or {}
        released = []
        for rule in policy.rules:
            if rule.is_global:
                continue
            name = counter_names.get(rule.field)
            value = record.get(rule.field)
            if name is None or value is None:
                continue
            if await counters.decrement_if_current(name, int(value)):
                released.append(await self._corrected(name, int(value), int(value) - 1, actor, operation="release"))
            else:
                logger.info("counter_release_skipped", counter=name, value=value, record_id=str(record.get("_id")))
        return released

    async def rebuild_sequence_fields_for_window(
        self, entity_type: EntityType | str, window: Window, actor: Actor | None = None
    ) -> RebuildReport:
        """Renumber ordinal fields in chronological order inside ``window``.

        Only buckets (a year, month or day of one mode) that lie entirely
        inside the window are rewritten, so numbers outside it never shift.
        Cancelled and deleted records lose their place in the sequence.
        """
        policy = get_policy(entity_type)
        if not policy.ordinal_rules:
            raise ValidationError(f"{policy.entity_type} has no ordinal numbers to rebuild")

        issuance = self.core.services.issuance
        timezone = self.core.config.timezone
        default_mode = self.core.config.default_mode
        start, end = issuance.localize(window.start), issuance.localize(window.end)
        collection = issuance.collection(policy)

        cursor = collection.find(
            {
                "event_at": {"$gte": start, "$lt": end},
                "deleted": {"$ne": True},
                "status": {"$ne": policy.cancelled_status},
            }
        ).sort([("event_at", 1), ("created_at", 1)])
        records = [doc async for doc in cursor]

        counts: dict[str, int] = defaultdict(int)
        rebuilt_fields: set[str] = set()
        updates = []
        history = []
        for doc in records:
            local = to_local(doc["event_at"], timezone)
            changes: dict[str, dict[str, Any]] = {}
            assigned: dict[str, Any] = {}
            for rule in policy.ordinal_rules:
                if not _inside(rule, local, start, end):
                    continue
                rebuilt_fields.add(rule.field)
                name = rule.counter_name(local.date(), doc.get("mode"), default_mode)
                counts[name] += 1
                if doc.get(rule.field) != counts[name]:
                    changes[rule.field] = {"before": doc.get(rule.field), "after": counts[name]}
                    assigned[rule.field] = counts[name]
                if (doc.get("counter_names") or {}).get(rule.field) != name:
                    assigned[f"counter_names.{rule.field}"] = name
            if assigned:
                updates.append(UpdateOne({"_id": doc["_id"]}, {"$set": assigned}))
            if changes:
                history.append((doc["_id"], changes))

        if updates:
            await collection.bulk_write(updates, ordered=False)
        actor = actor or SYSTEM_ACTOR
        for record_id, changes in history:
            await self.core.services.audit.push_edit_history(policy.collection, record_id, actor.display_name, changes)

        counters = self.core.services.counter
        corrections = []
        for name, count in sorted(counts.items()):
            before = await counters.get_current_value(name)
            after = await counters.reset_counter(name, count)
            corrections.append(CounterCorrection(name=name, before=before, after=after))

        report = RebuildReport(
            entity_type=policy.entity_type,
            window=Window(start=start, end=end),
            fields=sorted(rebuilt_fields),
            records_scanned=len(records),
            records_changed=len(history),
            counters=corrections,
        )
        logger.info(
            "sequence_fields_rebuilt",
            entity_type=policy.entity_type,
            scanned=report.records_scanned,
            changed=report.records_changed,
            counters=len(corrections),
        )
        await self.core.services.audit.record_audit(
            COUNTER_AUDIT_TYPE,
            f"rebuild_{policy.entity_type}",
            AuditAction.MAINTENANCE,
            before={c.name: c.before for c in corrections},
            after={c.name: c.after for c in corrections},
            actor=actor,
            meta={"operation": "rebuild", **report.model_dump(mode="json", exclude={"counters"})},
        )
        return report

    async def _corrected(
        self, name: str, before: int, after: int, actor: Actor | None, operation: str
    ) -> CounterCorrection:
        correction = CounterCorrection(name=name, before=before, after=after)
        logger.info(_EVENTS[operation], counter=name, before=before, after=after)
        await self.core.services.audit.record_audit(
            COUNTER_AUDIT_TYPE,
            name,
            AuditAction.MAINTENANCE,
            before={"value": before},
            after={"value": after},
            actor=actor,
            meta={"operation": operation},
            fields=["value"],
        )
        return correction


def _issues(rule: ScopeRule, name: str) -> bool:
    if rule.is_global:
        return name == rule.counter
    return name.startswith(f"{rule.counter}_") and counter_period(name) is rule.period


def _inside(rule: ScopeRule, local: datetime, start: datetime, end: datetime) -> bool:
    bucket_start, bucket_end = period_bounds(rule.period, local)
    return start <= bucket_start and bucket_end <= end
