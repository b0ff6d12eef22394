from typing import Any

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from pydantic import BaseModel, Field


def set_custom_openapi(app: FastAPI) -> None:
    def custom_openapi() -> dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title="Labseq API",
            version="0.1.0",
            summary="Sequential identifiers, counter maintenance and audit trail for lab records",
            routes=app.routes,
        )

        openapi_schema["tags"] = [
            {"name": "counters", "description": "Inspect and correct the counters behind sequential numbers"},
            {"name": "identifiers", "description": "Allocate identifiers without creating a record"},
            {"name": "records", "description": "Numbered patients, appointments, invoices and registrations"},
            {"name": "audit", "description": "Audit trail of records and counters"},
        ]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]


class ErrorResponse(BaseModel):
    """Standard error response format."""

    message: str = Field(..., description="Human-readable error message")
    type: str = Field(..., description="Machine-readable error type")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"message": "Patient not found", "type": "not_found"},
                {"message": "Fields cannot be changed: receiptNumber", "type": "validation_error"},
                {"message": "Could not allocate an identifier, please retry", "type": "allocation_failure"},
                {"message": "Could not allocate a unique identifier, please retry", "type": "identifier_collision"},
            ]
        }
    }
