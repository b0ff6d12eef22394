from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from labseq.core.modules.counter.models import Counter, CounterCorrection, CounterGroups
from labseq.core.modules.maintenance.models import RebuildReport, ResyncResult, Window
from labseq.core.modules.numbering.policies import EntityType
from labseq.web.deps import ActorDep, AppDep
from labseq.web.openapi import ErrorResponse

router: APIRouter = APIRouter(tags=["counters"])


class ResetCounterRequest(BaseModel):
    """Request to overwrite a counter value."""

    value: int = Field(..., ge=0, description="New counter value; the next allocation returns value + 1")

    model_config = {"json_schema_extra": {"examples": [{"value": 41}]}}


class ResyncAllRequest(BaseModel):
    """Request to resync every scoped counter."""

    when: datetime | None = Field(None, description="Any instant inside the periods to resync; defaults to now")


@router.get(
    "/counters",
    summary="List counters",
    description="Get all counters grouped into yearly, monthly, daily and global by the period segment of their name.",
    operation_id="listCounters",
    responses={
        200: {"description": "Counters grouped by period"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def list_counters(app: AppDep) -> CounterGroups:
    return await app.get_counters()


@router.get(
    "/counters/{name}",
    summary="Get counter",
    description="Get the current value of a counter. A counter that was never used reads as 0. The read is written to the audit log.",
    operation_id="getCounter",
    responses={
        200: {"description": "Counter value"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def get_counter(name: str, app: AppDep, actor: ActorDep) -> Counter:
    return await app.get_counter(actor, name)


@router.post(
    "/counters/{name}/reset",
    summary="Reset counter",
    description="Overwrite a counter value. The change is written to the audit log.",
    operation_id="resetCounter",
    responses={
        200: {"description": "Counter value before and after"},
        400: {"model": ErrorResponse, "description": "Invalid value"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def reset_counter(name: str, request: ResetCounterRequest, app: AppDep, actor: ActorDep) -> CounterCorrection:
    return await app.reset_counter(actor, name, request.value)


@router.post(
    "/counters/{name}/resync",
    summary="Resync counter",
    description=(
        "Set a counter to the highest number held by the records it issued, "
        "healing drift left by failed requests. The change is written to the audit log."
    ),
    operation_id="resyncCounter",
    responses={
        200: {"description": "Counter value before and after"},
        400: {"model": ErrorResponse, "description": "No numbered field is issued by this counter"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def resync_counter(name: str, app: AppDep, actor: ActorDep) -> CounterCorrection:
    return await app.resync_counter(actor, name)


@router.post(
    "/counters/resync-all",
    summary="Resync all scoped counters",
    description=(
        "Resync the patient, registration, appointment and receipt counters of the current "
        "(or given) periods. Counters that fail are reported without stopping the others."
    ),
    operation_id="resyncAllCounters",
    responses={200: {"description": "Corrections and failures per counter"}},
)
async def resync_all_counters(request: ResyncAllRequest, app: AppDep, actor: ActorDep) -> ResyncResult:
    return await app.resync_all_counters(actor, request.when)


@router.post(
    "/counters/rebuild/{entity_type}",
    summary="Rebuild ordinal numbers",
    description=(
        "Renumber yearly, monthly and daily ordinals of records inside the window in chronological order. "
        "Only periods that lie entirely inside the window are rewritten. Cancelled and deleted records are "
        "skipped. Counters of rebuilt periods are reset to their final count."
    ),
    operation_id="rebuildSequenceFields",
    responses={
        200: {"description": "Rebuild report"},
        400: {"model": ErrorResponse, "description": "Entity type has no ordinal numbers"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def rebuild_sequence_fields(
    entity_type: EntityType, window: Window, app: AppDep, actor: ActorDep
) -> RebuildReport:
    return await app.rebuild_sequence_fields(actor, entity_type, window)
