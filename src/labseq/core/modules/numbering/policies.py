"""Scoped numbering policies.

Pure functions: no I/O, no clock. Callers pass the local wall-clock datetime
the scope is derived from, so a receipt written at 00:30 local time lands in
that local day even when it is still the previous day in UTC.

Counter names follow ``{entity}_{scope}[_{mode}]_{period}``, e.g.
``opd_year_2025``, ``opd_month_202501``, ``pathology_today_ipd_2025-01-31``.
Global counters are a single fixed name such as ``db_crn``. External
reports query counters by these names, so the format is part of the contract.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import StrEnum

from labseq.errors import ValidationError

DEFAULT_MODE = "OPD"

_YEAR_RE = re.compile(r"_\d{4}$")
_MONTH_RE = re.compile(r"_\d{6}$")
_DAY_RE = re.compile(r"_\d{4}-\d{2}-\d{2}$")


class Period(StrEnum):
    """Scope dimension of a counter. The value is the label used in counter names."""

    YEAR = "year"
    MONTH = "month"
    DAY = "today"
    GLOBAL = "global"


class EntityType(StrEnum):
    PATIENT = "patient"
    APPOINTMENT = "appointment"
    PATHOLOGY_INVOICE = "pathology_invoice"
    PATHOLOGY_REGISTRATION = "pathology_registration"


def period_key(period: Period, when: date) -> str:
    """Period segment of a counter name: ``2025``, ``202501`` or ``2025-01-31``."""
    match period:
        case Period.YEAR:
            return f"{when.year:04d}"
        case Period.MONTH:
            return f"{when.year:04d}{when.month:02d}"
        case Period.DAY:
            return f"{when.year:04d}-{when.month:02d}-{when.day:02d}"
        case Period.GLOBAL:
            return ""


def mode_segment(mode: str | None, default_mode: str = DEFAULT_MODE) -> str | None:
    """Lower-cased mode for counter names; the default mode adds no segment."""
    if not mode or mode.upper() == default_mode.upper():
        return None
    return mode.lower()


def counter_name(
    entity: str,
    period: Period,
    when: date | None = None,
    mode: str | None = None,
    labelled: bool = True,
    default_mode: str = DEFAULT_MODE,
) -> str:
    """Build the counter name for an entity scope.

    ``labelled=False`` drops the scope label for legacy names such as
    ``patientId_2025``.
    """
    if period is Period.GLOBAL:
        return entity
    if when is None:
        raise ValueError(f"A date is required for {period.name.lower()} scope")

    parts = [entity]
    if labelled:
        parts.append(period.value)
    segment = mode_segment(mode, default_mode)
    if segment:
        parts.append(segment)
    parts.append(period_key(period, when))
    return "_".join(parts)


def counter_period(name: str) -> Period:
    """Classify an existing counter name by its trailing period segment."""
    if _DAY_RE.search(name):
        return Period.DAY
    if _MONTH_RE.search(name):
        return Period.MONTH
    if _YEAR_RE.search(name):
        return Period.YEAR
    return Period.GLOBAL


def format_identifier(value: int, prefix: str = "", width: int = 0) -> str:
    """Zero-pad ``value`` to ``width`` digits behind a literal prefix.

    >>> format_identifier(123, "PAT", 6)
    'PAT000123'
    """
    if value < 0:
        raise ValueError(f"Identifier value must not be negative: {value}")
    return f"{prefix}{value:0{width}d}" if width else f"{prefix}{value}"


def period_bounds(period: Period, when: datetime) -> tuple[datetime, datetime]:
    """Half-open local range ``[start, end)`` of the period containing ``when``."""
    tz = when.tzinfo
    match period:
        case Period.YEAR:
            start = datetime(when.year, 1, 1, tzinfo=tz)
            end = datetime(when.year + 1, 1, 1, tzinfo=tz)
        case Period.MONTH:
            start = datetime(when.year, when.month, 1, tzinfo=tz)
            if when.month == 12:
                end = datetime(when.year + 1, 1, 1, tzinfo=tz)
            else:
                end = datetime(when.year, when.month + 1, 1, tzinfo=tz)
        case Period.DAY:
            start = datetime(when.year, when.month, when.day, tzinfo=tz)
            following = when.date() + timedelta(days=1)
            end = datetime(following.year, following.month, following.day, tzinfo=tz)
        case Period.GLOBAL:
            raise ValueError("Global scope has no period bounds")
    return start, end


@dataclass(frozen=True)
class IdentifierFormat:
    """Display identifier derived from a rule's numeric value, e.g. PAT000123."""

    field: str
    prefix: str
    width: int = 0


@dataclass(frozen=True)
class ScopeRule:
    """One numbered field of an entity and the counter that issues it."""

    field: str  # numeric field on the record
    counter: str  # entity segment of the counter name
    period: Period
    labelled: bool = True
    mode_aware: bool = False
    formats: tuple[IdentifierFormat, ...] = ()
    baseline_synced: bool = False  # resync from the collection maximum before every allocation
    ordinal: bool = False  # reassignable by window rebuild

    @property
    def is_global(self) -> bool:
        return self.period is Period.GLOBAL

    @property
    def unique_fields(self) -> tuple[str, ...]:
        return (self.field, *(f.field for f in self.formats))

    def counter_name(self, when: date, mode: str | None = None, default_mode: str = DEFAULT_MODE) -> str:
        return counter_name(
            self.counter,
            self.period,
            when,
            mode if self.mode_aware else None,
            labelled=self.labelled,
            default_mode=default_mode,
        )

    def format_all(self, value: int) -> dict[str, str]:
        return {f.field: format_identifier(value, f.prefix, f.width) for f in self.formats}


@dataclass(frozen=True)
class EntityPolicy:
    """Numbering and audit rules of one numbered entity type."""

    entity_type: EntityType
    audit_name: str  # entity_type written to the audit log
    collection: str
    rules: tuple[ScopeRule, ...]
    audit_fields: tuple[str, ...] = ()
    cancelled_status: str = "Cancelled"

    @property
    def numbered_fields(self) -> frozenset[str]:
        """Fields written by issuance; immutable outside maintenance."""
        fields = {"counter_names"}
        for rule in self.rules:
            fields.update(rule.unique_fields)
        return frozenset(fields)

    @property
    def ordinal_rules(self) -> tuple[ScopeRule, ...]:
        return tuple(rule for rule in self.rules if rule.ordinal)

    def rule_for_field(self, name: str) -> ScopeRule | None:
        """Find the rule that writes ``name``, either its number or a formatted id."""
        return next((rule for rule in self.rules if name in rule.unique_fields), None)

    def rule(self, name: str) -> ScopeRule:
        rule = self.rule_for_field(name)
        if rule is None:
            raise ValidationError(f"'{name}' is not a numbered field of {self.entity_type}")
        return rule


POLICIES: dict[EntityType, EntityPolicy] = {
    EntityType.PATIENT: EntityPolicy(
        entity_type=EntityType.PATIENT,
        audit_name="Patient",
        collection="patients",
        rules=(
            ScopeRule(
                field="patientNumber",
                counter="patientId",
                period=Period.YEAR,
                labelled=False,
                formats=(IdentifierFormat("patientId", "PAT", 6),),
            ),
            ScopeRule(field="registrationNumber", counter="regNo", period=Period.YEAR, labelled=False),
        ),
        audit_fields=(
            "firstName",
            "lastName",
            "age",
            "ageIn",
            "gender",
            "phone",
            "address.street",
            "address.city",
            "address.post",
            "bloodGroup",
            "remark",
            "status",
        ),
    ),
    EntityType.APPOINTMENT: EntityPolicy(
        entity_type=EntityType.APPOINTMENT,
        audit_name="Appointment",
        collection="appointments",
        rules=(
            ScopeRule(
                field="appointmentNumber",
                counter="appointmentId",
                period=Period.YEAR,
                labelled=False,
                formats=(IdentifierFormat("appointmentId", "APT", 6),),
            ),
            ScopeRule(field="yearlyNo", counter="opd", period=Period.YEAR, ordinal=True),
            ScopeRule(field="monthlyNo", counter="opd", period=Period.MONTH, ordinal=True),
            ScopeRule(field="dailyNo", counter="opd", period=Period.DAY, ordinal=True),
        ),
        audit_fields=(
            "patient",
            "doctor",
            "room",
            "department",
            "appointmentDate",
            "appointmentTime",
            "reason",
            "status",
            "type",
            "notes",
            "prescription",
            "followUpDate",
            "consultationFee",
            "paymentMethod",
            "isPaid",
        ),
    ),
    EntityType.PATHOLOGY_INVOICE: EntityPolicy(
        entity_type=EntityType.PATHOLOGY_INVOICE,
        audit_name="PathologyInvoice",
        collection="pathology_invoices",
        rules=(
            ScopeRule(
                field="receiptNumber",
                counter="receipt",
                period=Period.YEAR,
                labelled=False,
                baseline_synced=True,
            ),
            ScopeRule(
                field="dbCrn",
                counter="db_crn",
                period=Period.GLOBAL,
                formats=(IdentifierFormat("invoiceNumber", "INV"), IdentifierFormat("bookingId", "PB")),
            ),
        ),
        audit_fields=(
            "patient.name",
            "doctor.name",
            "department.name",
            "mode",
            "doctorRefNo",
            "tests",
            "payment.totalAmount",
            "payment.paymentStatus",
            "status",
        ),
    ),
    EntityType.PATHOLOGY_REGISTRATION: EntityPolicy(
        entity_type=EntityType.PATHOLOGY_REGISTRATION,
        audit_name="PathologyRegistration",
        collection="pathology_registrations",
        rules=(
            ScopeRule(field="yearNumber", counter="pathology", period=Period.YEAR, mode_aware=True, ordinal=True),
            ScopeRule(field="todayNumber", counter="pathology", period=Period.DAY, mode_aware=True, ordinal=True),
        ),
        audit_fields=("patient.name", "mode", "tests", "status", "receiptNumber"),
    ),
}


def get_policy(entity_type: EntityType | str) -> EntityPolicy:
    try:
        return POLICIES[EntityType(entity_type)]
    except ValueError as e:
        raise ValidationError(f"Unknown entity type: {entity_type}") from e
