from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import ConfigDict, Field

from labseq.core.db import MongoModel
from labseq.core.modules.audit.models import EditHistoryEntry
from labseq.core.modules.numbering.policies import EntityType
from labseq.utils import now

# Written by issuance and the record lifecycle, never by a caller's payload
SYSTEM_FIELDS = frozenset(
    {"_id", "id", "entity_type", "lab_id", "mode", "event_at", "created_at", "deleted", "counter_names", "edit_history", "edit_count"}
)


def protected_keys(keys: Iterable[str], numbered_fields: Iterable[str]) -> list[str]:
    """Keys that would write a system or numbered field, dotted paths into one included.

    Keys with a ``$`` segment are operators or positional paths and are never accepted.
    """
    protected = SYSTEM_FIELDS | set(numbered_fields)
    return sorted(
        key for key in keys if key.split(".", 1)[0] in protected or any(part.startswith("$") for part in key.split("."))
    )


class NumberedRecord(MongoModel):
    """Patient, appointment, invoice or registration carrying scoped numbers.

    Business fields and the numbered fields (``receiptNumber``, ``patientId``, ...)
    are stored as extra top-level keys next to the fields below.
    """

    entity_type: EntityType
    lab_id: str | None = None
    mode: str
    event_at: datetime  # date the numbering scopes were derived from
    created_at: datetime = Field(default_factory=now)
    status: str | None = None
    deleted: bool = False
    counter_names: dict[str, str] = Field(default_factory=dict)  # numeric field -> issuing counter
    edit_history: list[EditHistoryEntry] = Field(default_factory=list)
    edit_count: int = 0

    model_config = ConfigDict(extra="allow")

    def number(self, field: str) -> int | None:
        value = (self.model_extra or {}).get(field)
        return int(value) if value is not None else None


class DeletedRecord(MongoModel):
    """Snapshot of a hard-deleted record, kept for audit recovery. Never mutated.

    Indexed on original_id and deleted_at.
    """

    entity_type: EntityType
    original_collection: str
    original_id: UUID
    numbers: dict[str, int] = Field(default_factory=dict)
    counter_names: dict[str, str] = Field(default_factory=dict)
    reason: str = ""
    deleted_by: str = "System"
    deleted_at: datetime = Field(default_factory=now)
    data: dict[str, Any]
