from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from labseq.core.modules.record.models import NumberedRecord


class ScopeContext(BaseModel):
    """Inputs that select the counters for an allocation."""

    when: datetime | None = Field(None, description="Event time; defaults to now, converted to the lab's local date")
    mode: str | None = Field(None, description="OPD or IPD; modes other than the default get their own counters")
    lab_id: str | None = Field(None, description="Tenant stamp copied onto the record")


class IssuedIdentifiers(BaseModel):
    """Numbers allocated for one record."""

    values: dict[str, int] = Field(default_factory=dict, description="Numeric field -> allocated value")
    formatted_ids: dict[str, str] = Field(default_factory=dict, description="Display field -> identifier, e.g. PAT000123")
    counter_names: dict[str, str] = Field(default_factory=dict, description="Numeric field -> issuing counter")


@dataclass(frozen=True)
class Inserted:
    record: NumberedRecord
    attempts: int


@dataclass(frozen=True)
class CollisionExhausted:
    field: str
    attempts: int


InsertOutcome = Inserted | CollisionExhausted
