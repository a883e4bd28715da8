"""
Base schema classes.

RULE: response schemas that read from ORM rows or service dataclasses inherit
from BaseResponseSchema; request bodies inherit from BaseCreateSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas built from ORM models or dataclasses.

    Usage:
        class WriteOffResponse(BaseResponseSchema):
            id: UUID
            quantity_removed: int
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Base class for request bodies. Unknown fields are ignored."""
    model_config = ConfigDict(
        extra='ignore',
    )
