import re
from typing import Any, Self
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pymongo.asynchronous.cursor import AsyncCursor
from pymongo.errors import DuplicateKeyError

# "... index: receiptNumber_1 dup key: { receiptNumber: 12 }"
_DUP_KEY_RE = re.compile(r"dup key: \{\s*(?P<body>.*?)\s*\}")


class MongoModel(BaseModel):
    id: UUID = Field(alias="_id", serialization_alias="id", default_factory=uuid4)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        json_schema_serialization_defaults_required=True,
    )

    def to_mongo(self) -> dict[str, Any]:
        """Convert the model to a dictionary for MongoDB storage with _id field."""
        data = self.model_dump()
        if "id" in data:
            data["_id"] = data.pop("id")  # Rename id → _id for MongoDB
        return data

    @classmethod
    async def list_cursor(cls, cursor: AsyncCursor[dict[str, Any]]) -> list[Self]:
        """Iterate over an AsyncCursor and return a list of model instances."""
        return [cls.model_validate(item) async for item in cursor]


def duplicate_key_fields(error: DuplicateKeyError) -> list[str]:
    """Return the field names of the unique index a DuplicateKeyError was raised on.

    Servers since 4.2 report ``keyPattern``; older ones only put the key in the message.
    """
    details = error.details or {}
    for key in ("keyPattern", "keyValue"):
        pattern = details.get(key)
        if isinstance(pattern, dict) and pattern:
            return list(pattern)

    match = _DUP_KEY_RE.search(str(error))
    if match is None:
        return []
    fields = []
    for part in match.group("body").split(","):
        name, _, _ = part.partition(":")
        if name.strip():
            fields.append(name.strip().strip('"'))
    return fields
