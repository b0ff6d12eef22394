from datetime import datetime
from typing import Self

from pydantic import BaseModel, Field, model_validator

from labseq.core.modules.counter.models import CounterCorrection
from labseq.core.modules.numbering.policies import EntityType


class Window(BaseModel):
    """Half-open time range ``[start, end)`` of a rebuild."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> Self:
        if self.end <= self.start:
            raise ValueError("Window end must be after its start")
        return self


class ResyncResult(BaseModel):
    """Outcome of resynchronizing every scoped counter for one period."""

    corrections: list[CounterCorrection] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict, description="Counter name -> error message")

    @property
    def changed(self) -> list[CounterCorrection]:
        return [c for c in self.corrections if c.changed]


class RebuildReport(BaseModel):
    """What a window rebuild rewrote."""

    entity_type: EntityType
    window: Window
    fields: list[str] = Field(default_factory=list, description="Ordinal fields whose buckets fit the window")
    records_scanned: int = 0
    records_changed: int = 0
    counters: list[CounterCorrection] = Field(default_factory=list)
