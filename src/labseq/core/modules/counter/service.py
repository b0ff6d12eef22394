from typing import Any

import structlog
from pymongo import ReturnDocument
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from labseq.core.core import Service
from labseq.core.modules.counter.models import Counter, CounterGroups
from labseq.core.modules.numbering.policies import Period, counter_period
from labseq.errors import AllocationFailure
from labseq.utils import now

logger = structlog.get_logger(__name__)


class CounterService(Service):
    """Sequence store: named integer counters with atomic increments.

    Every mutation is a single ``find_one_and_update`` on the counter document.
    Values are never cached in process. Storage errors surface as
    ``AllocationFailure``; retrying is the caller's decision.
    """

    def __init__(self, database: AsyncDatabase[dict[str, Any]]) -> None:
        super().__init__(database)
        self._collection = database.get_collection("counters")

    async def on_start(self) -> None:
        """Create indexes on startup."""
        await self._collection.create_index([("name", 1)], unique=True)

    async def get_current_value(self, name: str) -> int:
        """Return the counter value, 0 when the counter was never allocated."""
        try:
            doc = await self._collection.find_one({"name": name})
        except PyMongoError as e:
            raise AllocationFailure(name) from e
        return int(doc["value"]) if doc else 0

    async def get_next_value(self, name: str) -> int:
        """Atomically increment and return the new value, creating the counter at 1."""
        timestamp = now()
        result = await self._update(
            name,
            {"$inc": {"value": 1}, "$set": {"updated_at": timestamp}, "$setOnInsert": {"created_at": timestamp}},
        )
        value = int(result["value"])
        logger.debug("counter_allocated", counter=name, value=value)
        return value

    async def reset_counter(self, name: str, value: int) -> int:
        """Overwrite the counter with an explicit value. Maintenance only."""
        timestamp = now()
        result = await self._update(
            name,
            {"$set": {"value": value, "updated_at": timestamp}, "$setOnInsert": {"created_at": timestamp}},
        )
        return int(result["value"])

    async def ensure_at_least(self, name: str, value: int) -> int:
        """Raise the counter to ``value`` if it is lower; never lowers it."""
        timestamp = now()
        result = await self._update(
            name,
            {"$max": {"value": value}, "$set": {"updated_at": timestamp}, "$setOnInsert": {"created_at": timestamp}},
        )
        return int(result["value"])

    async def decrement_if_current(self, name: str, expected: int) -> bool:
        """Decrement by one only while the counter still equals ``expected``.

        Returns False when anything newer was issued or the counter is absent.
        """
        if expected < 1:
            return False
        try:
            result = await self._collection.find_one_and_update(
                {"name": name, "value": expected},
                {"$inc": {"value": -1}, "$set": {"updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise AllocationFailure(name) from e
        return result is not None

    async def list_counters(self) -> list[Counter]:
        """Get all counters sorted by name."""
        try:
            cursor = self._collection.find({}).sort("name", 1)
            return [Counter.model_validate(doc) async for doc in cursor]
        except PyMongoError as e:
            raise AllocationFailure("*") from e

    async def group_counters(self) -> CounterGroups:
        """Get all counters grouped by period."""
        groups = CounterGroups()
        buckets = {
            Period.YEAR: groups.yearly,
            Period.MONTH: groups.monthly,
            Period.DAY: groups.daily,
            Period.GLOBAL: groups.global_,
        }
        for counter in await self.list_counters():
            buckets[counter_period(counter.name)].append(counter)
        return groups

    async def _update(self, name: str, update: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await self._collection.find_one_and_update(
                {"name": name},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.warning("counter_store_unavailable", counter=name, error=str(e))
            raise AllocationFailure(name) from e
        return result
