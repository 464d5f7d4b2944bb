"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that use `from_attributes=True` MUST inherit from BaseResponseSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - UUIDs and datetimes serialize as strings in JSON

    Usage:
        class BatchResponse(BaseResponseSchema):
            id: UUID
            batch_reference: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored so older admin clients keep working.
    """
    model_config = ConfigDict(
        extra='ignore',
    )


def page_count(total: int, size: int) -> int:
    return max(1, (total + size - 1) // size) if size else 1
