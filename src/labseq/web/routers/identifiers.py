from fastapi import APIRouter

from labseq.core.modules.issuance.models import IssuedIdentifiers, ScopeContext
from labseq.core.modules.numbering.policies import EntityType
from labseq.web.deps import AppDep
from labseq.web.openapi import ErrorResponse

router: APIRouter = APIRouter(tags=["identifiers"])


@router.post(
    "/identifiers/{entity_type}",
    summary="Issue identifiers",
    description=(
        "Allocate every number an entity type needs for the given date and mode without creating a record. "
        "Numbers that are never used become gaps; they are not handed out again."
    ),
    operation_id="issueIdentifiers",
    status_code=201,
    responses={
        201: {"description": "Allocated values, formatted identifiers and counter names"},
        400: {"model": ErrorResponse, "description": "Unknown entity type"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def issue_identifiers(entity_type: EntityType, context: ScopeContext, app: AppDep) -> IssuedIdentifiers:
    return await app.issue_identifiers(entity_type, context)
