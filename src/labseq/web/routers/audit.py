from datetime import date
from typing import Annotated

from fastapi import APIRouter, Query

from labseq.core.modules.audit.models import AuditEntry, DailyAudit
from labseq.core.pagination import PaginationResult
from labseq.web.deps import AppDep

router: APIRouter = APIRouter(tags=["audit"])


@router.get(
    "/audit/daily",
    summary="Get daily audit log",
    description=(
        "Get the audit entries written on one calendar day in the lab's time zone, newest first. "
        "Filter by comma-separated entity types, e.g. `patient,Counter`."
    ),
    operation_id="getDailyAudit",
    responses={200: {"description": "Entries of the day with counts per entity type"}},
)
async def get_daily_audit(
    day: Annotated[date, Query(description="Local date, YYYY-MM-DD")],
    app: AppDep,
    entity: Annotated[str, Query(description="Comma-separated entity types")] = "",
    limit: Annotated[int, Query(ge=1, le=5000, description="Maximum items to return")] = 2000,
) -> DailyAudit:
    entity_types = [part.strip() for part in entity.split(",") if part.strip()]
    return await app.get_daily_audit(day, entity_types, limit)


@router.get(
    "/audit/recent",
    summary="Get recent audit entries",
    description="Get the latest audit entries across all records and counters, newest first.",
    operation_id="getRecentAudit",
    responses={200: {"description": "Latest audit entries"}},
)
async def get_recent_audit(
    app: AppDep,
    limit: Annotated[int, Query(ge=1, le=2000, description="Maximum items to return")] = 200,
) -> list[AuditEntry]:
    return await app.get_recent_audit(limit)


@router.get(
    "/audit/{entity_type}/{entity_id}",
    summary="Get audit history",
    description=(
        "Get the audit entries of one record or counter, newest first. "
        "Use an entity type such as `patient` with a record id, or `Counter` with a counter name."
    ),
    operation_id="listAuditEntries",
    responses={200: {"description": "Paginated audit entries"}},
)
async def list_audit_entries(
    entity_type: str,
    entity_id: str,
    app: AppDep,
    limit: Annotated[int, Query(ge=1, description="Maximum items to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of items to skip")] = 0,
) -> PaginationResult[AuditEntry]:
    return await app.get_audit_entries(entity_type, entity_id, limit, offset)
