from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from labseq.core.db import MongoModel
from labseq.utils import now


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MAINTENANCE = "MAINTENANCE"


class Actor(BaseModel):
    """Who performed a mutation. All parts optional; missing means the system itself."""

    user_id: str | None = None
    role: str | None = None
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id or "System"


SYSTEM_ACTOR = Actor(name="System")


class AuditEntry(MongoModel):
    """Immutable record of one mutation.

    Indexed on (entity_type, entity_id, timestamp) and timestamp.
    """

    entity_type: str  # Patient, Appointment, PathologyInvoice, Counter, ...
    entity_id: str  # record id or counter name
    action: AuditAction
    before_snapshot: dict[str, Any] = Field(default_factory=dict)
    after_snapshot: dict[str, Any] = Field(default_factory=dict)
    field_changes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    actor: Actor = Field(default_factory=Actor)
    timestamp: datetime = Field(default_factory=now)
    meta: dict[str, Any] = Field(default_factory=dict)


class EditHistoryEntry(BaseModel):
    """Entry of the history list embedded in a numbered record."""

    edited_at: datetime = Field(default_factory=now)
    edited_by: str
    changes: dict[str, dict[str, Any]]


class DailyAudit(BaseModel):
    """Audit entries written on one local calendar day, newest first."""

    day: date
    count: int = Field(..., description="Number of entries returned", ge=0)
    by_entity_type: dict[str, int] = Field(default_factory=dict, description="Entry count per entity type")
    entries: list[AuditEntry]
