"""Named counters backing every sequential identifier."""

from datetime import datetime

from pydantic import BaseModel, Field


class Counter(BaseModel):
    """Atomic counter document, one per scope.

    Indexed on name - unique. ``value`` is the last number handed out;
    the next allocation returns ``value + 1``.
    """

    name: str
    value: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CounterGroups(BaseModel):
    """Counters grouped by the period segment of their name, for the admin listing."""

    yearly: list[Counter] = Field(default_factory=list)
    monthly: list[Counter] = Field(default_factory=list)
    daily: list[Counter] = Field(default_factory=list)
    global_: list[Counter] = Field(default_factory=list, alias="global", serialization_alias="global")

    model_config = {"populate_by_name": True}

    @property
    def total(self) -> int:
        return len(self.yearly) + len(self.monthly) + len(self.daily) + len(self.global_)


class CounterCorrection(BaseModel):
    """Before/after values of an administrative counter change."""

    name: str
    before: int
    after: int

    @property
    def changed(self) -> bool:
        return self.before != self.after
