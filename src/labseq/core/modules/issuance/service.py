from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import DuplicateKeyError, PyMongoError

from labseq.core.core import Service
from labseq.core.db import duplicate_key_fields
from labseq.core.modules.audit.models import Actor, AuditAction
from labseq.core.modules.issuance.models import (
    CollisionExhausted,
    Inserted,
    InsertOutcome,
    IssuedIdentifiers,
    ScopeContext,
)
from labseq.core.modules.numbering.policies import POLICIES, EntityPolicy, EntityType, ScopeRule, get_policy
from labseq.core.modules.record.models import NumberedRecord, protected_keys
from labseq.errors import AllocationFailure, CouldNotAllocateIdentifier, IdentifierCollision, ValidationError
from labseq.utils import now, to_local

logger = structlog.get_logger(__name__)


class IssuanceService(Service):
    """Allocates scoped identifiers and persists records that carry them.

    A counter increment and the record insert are two operations. A number
    consumed by a failed insert becomes a gap; an insert that collides on a
    unique identifier re-allocates only the colliding counter and retries.
    """

    async def on_start(self) -> None:
        """Create the unique indexes that turn duplicate identifiers into DuplicateKeyError."""
        for policy in POLICIES.values():
            collection = self.collection(policy)
            for rule in policy.rules:
                scope_key = f"counter_names.{rule.field}"
                if rule.is_global:
                    # Unique across every record, soft-deleted ones included
                    for field in rule.unique_fields:
                        await collection.create_index([(field, 1)], unique=True)
                elif rule.ordinal:
                    await collection.create_index([(scope_key, 1), (rule.field, -1)])
                else:
                    for field in rule.unique_fields:
                        await collection.create_index(
                            [(scope_key, 1), (field, 1)],
                            unique=True,
                            partialFilterExpression={"deleted": False},
                        )
            await collection.create_index([("event_at", 1)])

    def collection(self, policy: EntityPolicy) -> AsyncCollection[dict[str, Any]]:
        return self.database.get_collection(policy.collection)

    def localize(self, when: datetime | None) -> datetime:
        """Wall-clock time in the lab's zone; scopes are derived from its calendar date."""
        return to_local(when or now(), self.core.config.timezone)

    async def baseline_max(self, policy: EntityPolicy, rule: ScopeRule, counter_name: str) -> int:
        """Highest value of ``rule.field`` among records issued by ``counter_name``.

        Scoped rules only count live records. Global identifiers stay unique
        across soft-deleted records too, so those are counted as well.
        """
        query: dict[str, Any] = {f"counter_names.{rule.field}": counter_name}
        if not rule.is_global:
            query["deleted"] = {"$ne": True}
        doc = await self.collection(policy).find_one(query, sort=[(rule.field, -1)])
        if doc is None or doc.get(rule.field) is None:
            return 0
        return int(doc[rule.field])

    async def issue_identifiers(self, entity_type: EntityType | str, context: ScopeContext) -> IssuedIdentifiers:
        """Allocate every number the entity needs without persisting anything."""
        policy = get_policy(entity_type)
        when = self.localize(context.when)
        issued = IssuedIdentifiers()
        for rule in policy.rules:
            await self._assign(issued, policy, rule, when, context.mode)
        logger.info(
            "identifiers_issued",
            entity_type=policy.entity_type,
            values=issued.values,
            formatted_ids=issued.formatted_ids,
        )
        return issued

    async def create_record(
        self,
        entity_type: EntityType | str,
        context: ScopeContext,
        payload: Mapping[str, Any],
        actor: Actor | None = None,
    ) -> NumberedRecord:
        """Allocate numbers, insert the record, and audit its creation.

        Raises CouldNotAllocateIdentifier when every insert attempt collided.
        """
        policy = get_policy(entity_type)
        reserved = protected_keys(payload, policy.numbered_fields)
        if reserved:
            raise ValidationError(f"Fields are assigned by the system: {', '.join(reserved)}")

        when = self.localize(context.when)
        issued = IssuedIdentifiers()
        for rule in policy.rules:
            await self._assign(issued, policy, rule, when, context.mode)

        outcome = await self._insert_with_retry(policy, context, when, payload, issued)
        if isinstance(outcome, CollisionExhausted):
            logger.error(
                "identifier_collision_exhausted",
                entity_type=policy.entity_type,
                field=outcome.field,
                attempts=outcome.attempts,
            )
            raise CouldNotAllocateIdentifier(policy.entity_type, outcome.attempts)

        record = outcome.record
        logger.info(
            "record_created",
            entity_type=policy.entity_type,
            record_id=record.id,
            attempts=outcome.attempts,
            **issued.formatted_ids,
        )
        await self.core.services.audit.record_audit(
            policy.audit_name,
            record.id,
            AuditAction.CREATE,
            after=record.to_mongo(),
            actor=actor,
            meta={"counter_names": issued.counter_names, **issued.values, **issued.formatted_ids},
        )
        return record

    async def _assign(
        self, issued: IssuedIdentifiers, policy: EntityPolicy, rule: ScopeRule, when: datetime, mode: str | None
    ) -> None:
        name = rule.counter_name(when.date(), mode, self.core.config.default_mode)
        counters = self.core.services.counter
        if rule.baseline_synced:
            # Repairs drift left by earlier failed attempts; $max never lowers the counter
            await counters.ensure_at_least(name, await self.baseline_max(policy, rule, name))
        value = await counters.get_next_value(name)

        issued.values[rule.field] = value
        issued.counter_names[rule.field] = name
        issued.formatted_ids.update(rule.format_all(value))

    async def _insert_with_retry(
        self,
        policy: EntityPolicy,
        context: ScopeContext,
        when: datetime,
        payload: Mapping[str, Any],
        issued: IssuedIdentifiers,
    ) -> InsertOutcome:
        limit = self.core.config.collision_retry_limit
        attempt = 0
        while True:
            attempt += 1
            record = NumberedRecord(
                entity_type=policy.entity_type,
                lab_id=context.lab_id,
                mode=(context.mode or self.core.config.default_mode).upper(),
                event_at=when,
                counter_names=dict(issued.counter_names),
                **issued.values,
                **issued.formatted_ids,
                **payload,
            )
            try:
                await self.collection(policy).insert_one(record.to_mongo())
            except DuplicateKeyError as e:
                collision = self._collision(policy, issued, e)
                logger.warning(
                    "identifier_collision",
                    entity_type=policy.entity_type,
                    field=collision.field,
                    value=collision.value,
                    attempt=attempt,
                )
                if attempt >= limit:
                    return CollisionExhausted(field=collision.field, attempts=attempt)
                # Only the colliding counter moves; numbers already assigned stay
                await self._assign(issued, policy, policy.rule(collision.field), when, context.mode)
                continue
            except PyMongoError as e:
                # The allocated numbers are left as gaps
                logger.warning("record_insert_failed", entity_type=policy.entity_type, values=issued.values, error=str(e))
                raise AllocationFailure(",".join(issued.counter_names.values())) from e
            return Inserted(record=record, attempts=attempt)

    def _collision(self, policy: EntityPolicy, issued: IssuedIdentifiers, error: DuplicateKeyError) -> IdentifierCollision:
        """Attribute a duplicate key to the rule that issued it; re-raise anything else."""
        for field in duplicate_key_fields(error):
            rule = policy.rule_for_field(field)
            if rule is not None:
                return IdentifierCollision(rule.field, issued.values[rule.field])
        raise error
