"""Pydantic schemas for scoped settings."""
from typing import Any, Optional, List, Dict

from pydantic import BaseModel

from app.schemas.base import BaseCreateSchema


class SettingValueUpdate(BaseCreateSchema):
    """Body for PUT /settings/{scope}/{key}."""
    value: Any
    scope_id: Optional[str] = None


class ResolvedSettingResponse(BaseModel):
    key: str
    value: Any
    scope: str


class SettingChangeResponse(BaseModel):
    key: str
    scope: str
    scope_id: Optional[str] = None
    before: Any = None
    after: Any = None
    rescheduled: bool = False


class SettingLevel(BaseModel):
    scope: str
    scope_id: Optional[str] = None
    value: Any = None
    is_effective: bool


class SettingHierarchyResponse(BaseModel):
    key: str
    levels: List[SettingLevel]


class ScopeSettingsResponse(BaseModel):
    scope: str
    scope_id: Optional[str] = None
    settings: Dict[str, Any]
