from typing import Any
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, Field

from labseq.core.modules.counter.models import CounterCorrection
from labseq.core.modules.issuance.models import ScopeContext
from labseq.core.modules.numbering.policies import EntityType
from labseq.core.modules.record.models import DeletedRecord, NumberedRecord
from labseq.web.deps import ActorDep, AppDep
from labseq.web.openapi import ErrorResponse

router: APIRouter = APIRouter(tags=["records"])


class CreateRecordRequest(BaseModel):
    """Request to create a numbered record."""

    context: ScopeContext = Field(default_factory=ScopeContext, description="Date and mode the numbers are scoped by")
    data: dict[str, Any] = Field(default_factory=dict, description="Business fields; numbered fields are assigned")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "context": {"when": "2025-01-31T10:15:00+05:30", "mode": "OPD"},
                    "data": {"firstName": "Asha", "lastName": "Rao", "age": 34, "gender": "Female"},
                }
            ]
        }
    }


class UpdateRecordRequest(BaseModel):
    """Request to update business fields (partial update)."""

    changes: dict[str, Any] = Field(..., description="Fields to set; numbered and system fields are rejected")

    model_config = {"json_schema_extra": {"examples": [{"changes": {"status": "Completed", "remark": "Reviewed"}}]}}


class ReasonRequest(BaseModel):
    """Reason recorded with a cancellation or deletion."""

    reason: str = Field("", description="Free text kept in the audit log")


@router.post(
    "/records/{entity_type}",
    summary="Create record",
    description=(
        "Create a patient, appointment, pathology invoice or pathology registration. "
        "Sequential numbers and formatted identifiers are allocated from the scoped counters."
    ),
    operation_id="createRecord",
    status_code=201,
    responses={
        201: {"description": "Record created"},
        400: {"model": ErrorResponse, "description": "Payload sets a system-assigned field"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable or identifiers kept colliding"},
    },
)
async def create_record(
    entity_type: EntityType, request: CreateRecordRequest, app: AppDep, actor: ActorDep
) -> NumberedRecord:
    return await app.create_record(actor, entity_type, request.context, request.data)


@router.get(
    "/records/{entity_type}/{record_id}",
    summary="Get record",
    operation_id="getRecord",
    responses={
        200: {"description": "Record details"},
        404: {"model": ErrorResponse, "description": "Record not found"},
    },
)
async def get_record(entity_type: EntityType, record_id: UUID, app: AppDep) -> NumberedRecord:
    return await app.get_record(entity_type, record_id)


@router.patch(
    "/records/{entity_type}/{record_id}",
    summary="Update record",
    description="Partially update business fields. The change is diffed into the audit log and the record's edit history.",
    operation_id="updateRecord",
    responses={
        200: {"description": "Record updated"},
        400: {"model": ErrorResponse, "description": "Change touches a numbered or system field"},
        404: {"model": ErrorResponse, "description": "Record not found"},
    },
)
async def update_record(
    entity_type: EntityType, record_id: UUID, request: UpdateRecordRequest, app: AppDep, actor: ActorDep
) -> NumberedRecord:
    return await app.update_record(actor, entity_type, record_id, request.changes)


@router.post(
    "/records/{entity_type}/{record_id}/cancel",
    summary="Cancel record",
    description="Mark a record cancelled. It keeps its numbers and no counter changes.",
    operation_id="cancelRecord",
    responses={
        200: {"description": "Record cancelled"},
        400: {"model": ErrorResponse, "description": "Record already cancelled"},
        404: {"model": ErrorResponse, "description": "Record not found"},
    },
)
async def cancel_record(
    entity_type: EntityType, record_id: UUID, request: ReasonRequest, app: AppDep, actor: ActorDep
) -> NumberedRecord:
    return await app.cancel_record(actor, entity_type, record_id, request.reason)


@router.delete(
    "/records/{entity_type}/{record_id}",
    summary="Delete record",
    description=(
        "Archive and permanently delete a record. When it holds the latest number of a scope, "
        "that counter is decremented so the number is reused."
    ),
    operation_id="deleteRecord",
    responses={
        200: {"description": "Counters that were decremented"},
        404: {"model": ErrorResponse, "description": "Record not found"},
        503: {"model": ErrorResponse, "description": "Counter store unavailable"},
    },
)
async def delete_record(
    entity_type: EntityType, record_id: UUID, app: AppDep, actor: ActorDep, reason: str = ""
) -> list[CounterCorrection]:
    return await app.delete_record(actor, entity_type, record_id, reason)


@router.get(
    "/records/{entity_type}/{record_id}/archive",
    summary="Get deleted record archive",
    description="Get the snapshots taken when a record was permanently deleted, newest first.",
    operation_id="getRecordArchive",
    responses={
        200: {"description": "Archive snapshots"},
        404: {"model": ErrorResponse, "description": "No archive for this record"},
    },
)
async def get_record_archive(entity_type: EntityType, record_id: UUID, app: AppDep) -> list[DeletedRecord]:
    return await app.get_archived_record(entity_type, record_id)
