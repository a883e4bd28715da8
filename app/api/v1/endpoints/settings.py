"""API endpoints for scoped settings."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import DB, Actor, Scheduler
from app.models.setting import SettingScope
from app.schemas.settings import (
    SettingValueUpdate, ResolvedSettingResponse, SettingChangeResponse,
    SettingHierarchyResponse, ScopeSettingsResponse,
)
from app.services.settings_service import SettingsService, SettingsContext, SCHEDULE_KEYS

router = APIRouter()


def _context(
    hotel_id: Optional[UUID],
    department_id: Optional[UUID],
    user_id: Optional[str],
) -> SettingsContext:
    return SettingsContext(hotel_id=hotel_id, department_id=department_id, user_id=user_id)


@router.get(
    "/resolve/{key}",
    response_model=ResolvedSettingResponse,
    summary="Resolve a setting",
    description="Effective value for a context (user > department > hotel > system > default), with the scope that supplied it.",
)
async def resolve_setting(
    key: str,
    db: DB,
    hotel_id: Optional[UUID] = Query(None),
    department_id: Optional[UUID] = Query(None),
    user_id: Optional[str] = Query(None),
):
    service = SettingsService(db)
    resolved = await service.resolve(key, _context(hotel_id, department_id, user_id))
    return ResolvedSettingResponse(key=resolved.key, value=resolved.value, scope=resolved.scope)


@router.get(
    "/hierarchy/{key}",
    response_model=SettingHierarchyResponse,
    summary="Setting value at every scope",
)
async def get_setting_hierarchy(
    key: str,
    db: DB,
    hotel_id: Optional[UUID] = Query(None),
    department_id: Optional[UUID] = Query(None),
    user_id: Optional[str] = Query(None),
):
    service = SettingsService(db)
    levels = await service.get_hierarchy(key, _context(hotel_id, department_id, user_id))
    return SettingHierarchyResponse(key=key, levels=levels)


@router.get(
    "/{scope}",
    response_model=ScopeSettingsResponse,
    summary="Settings stored at one scope",
)
async def get_scope_settings(
    scope: SettingScope,
    db: DB,
    scope_id: Optional[str] = Query(None),
):
    service = SettingsService(db)
    values = await service.get_scope_settings(scope, scope_id)
    return ScopeSettingsResponse(scope=scope.value, scope_id=scope_id, settings=values)


@router.put(
    "/{scope}/{key}",
    response_model=SettingChangeResponse,
    summary="Set a setting",
    description=(
        "Create or update a setting at one scope. Threshold, send time and timezone values are validated (422). "
        "Changing the system send time or timezone re-arms the daily report timer."
    ),
)
async def set_setting(
    scope: SettingScope,
    key: str,
    data: SettingValueUpdate,
    db: DB,
    actor: Actor,
    scheduler: Scheduler,
):
    service = SettingsService(db)
    change = await service.set_setting(key, data.value, scope, data.scope_id, updated_by=actor)

    rescheduled = False
    if scope == SettingScope.SYSTEM and key in SCHEDULE_KEYS:
        # The scheduler reads through its own session, so the change must be committed first
        await db.commit()
        rescheduled = await scheduler.reschedule_daily_report()

    return SettingChangeResponse(**change, rescheduled=rescheduled)


@router.delete(
    "/{scope}/{key}",
    response_model=SettingChangeResponse,
    summary="Delete a setting",
    description="Remove a setting so the next scope up takes effect.",
)
async def delete_setting(
    scope: SettingScope,
    key: str,
    db: DB,
    scheduler: Scheduler,
    scope_id: Optional[str] = Query(None),
):
    service = SettingsService(db)
    before = (await service.get_scope_settings(scope, scope_id)).get(key)
    deleted = await service.delete_setting(key, scope, scope_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Setting '{key}' not set at {scope.value} scope")

    rescheduled = False
    if scope == SettingScope.SYSTEM and key in SCHEDULE_KEYS:
        await db.commit()
        rescheduled = await scheduler.reschedule_daily_report()

    return SettingChangeResponse(
        key=key, scope=scope.value, scope_id=scope_id, before=before, after=None, rescheduled=rescheduled
    )
