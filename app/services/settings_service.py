"""
Hierarchical settings resolution.

Settings are stored per scope (system, hotel, department, user). A lookup
walks the scopes that apply to a context from most to least specific and
returns the first defined value, falling back to the hard-coded default:

    user -> department -> hotel -> system -> default

Every lookup goes through SettingsService.resolve(), which also reports the
scope that supplied the value:

    service = SettingsService(db)
    resolved = await service.resolve(
        SettingsKey.EXPIRY_WARNING_DAYS,
        SettingsContext(hotel_id=hotel.id, department_id=dept.id),
    )
    resolved.value   # 5
    resolved.scope   # "hotel"

Writes are validated here, so invalid thresholds, send times or timezones
never reach the classifier or the scheduler.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, and_, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.hotel import Hotel, Department
from app.models.setting import Setting, SettingScope

logger = logging.getLogger(__name__)


class SettingsKey:
    """Known setting keys."""
    EXPIRY_WARNING_DAYS = "expiry.warning.days"
    EXPIRY_CRITICAL_DAYS = "expiry.critical.days"

    NOTIFY_SEND_TIME = "notify.sendTime"
    NOTIFY_TELEGRAM_ENABLED = "notify.telegram.enabled"
    NOTIFY_EMAIL_ENABLED = "notify.email.enabled"
    NOTIFY_EMAIL_RECIPIENTS = "notify.email.recipients"
    NOTIFY_TEMPLATE_DAILY_REPORT = "notify.template.dailyReport"
    TELEGRAM_CHAT_IDS = "telegram.chatIds"

    LOCALE_TIMEZONE = "locale.timezone"


DEFAULT_DAILY_REPORT_TEMPLATE = (
    "Daily expiry report: {hotel} / {department}\n"
    "Date: {date}\n"
    "\n"
    "Good: {good}\n"
    "Expiring soon: {warning}\n"
    "Expired: {expired}\n"
    "Total batches: {total}\n"
    "Collected today: {collectedToday}\n"
    "{expiringList}"
    "{expiredList}"
)

SYSTEM_DEFAULTS: Dict[str, Any] = {
    SettingsKey.EXPIRY_WARNING_DAYS: 7,
    SettingsKey.EXPIRY_CRITICAL_DAYS: 3,
    SettingsKey.NOTIFY_SEND_TIME: "09:00",
    SettingsKey.NOTIFY_TELEGRAM_ENABLED: False,
    SettingsKey.NOTIFY_EMAIL_ENABLED: False,
    SettingsKey.NOTIFY_EMAIL_RECIPIENTS: [],
    SettingsKey.NOTIFY_TEMPLATE_DAILY_REPORT: DEFAULT_DAILY_REPORT_TEMPLATE,
    SettingsKey.TELEGRAM_CHAT_IDS: [],
    SettingsKey.LOCALE_TIMEZONE: "Asia/Almaty",
}

THRESHOLD_KEYS = (SettingsKey.EXPIRY_WARNING_DAYS, SettingsKey.EXPIRY_CRITICAL_DAYS)

# Keys whose system-scope value drives the daily report timer
SCHEDULE_KEYS = (SettingsKey.NOTIFY_SEND_TIME, SettingsKey.LOCALE_TIMEZONE)

SEND_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

DEFAULT_SCOPE = "default"


# ==================== Errors ====================

class SettingsError(Exception):
    """Base class for settings errors."""


class InvalidSettingError(SettingsError):
    """A value or scope was rejected at write time."""


class InvalidThresholdConfigError(InvalidSettingError):
    """Expiry thresholds are negative or warning days do not exceed critical days."""


# ==================== Value types ====================

@dataclass(frozen=True)
class SettingsContext:
    """Who is asking. Unset ids skip their scope."""
    hotel_id: Optional[UUID] = None
    department_id: Optional[UUID] = None
    user_id: Optional[str] = None

    def scope_chain(self) -> List[Tuple[SettingScope, str]]:
        """(scope, scope_ref) pairs from most to least specific."""
        chain = []
        if self.user_id:
            chain.append((SettingScope.USER, str(self.user_id)))
        if self.department_id:
            chain.append((SettingScope.DEPARTMENT, str(self.department_id)))
        if self.hotel_id:
            chain.append((SettingScope.HOTEL, str(self.hotel_id)))
        chain.append((SettingScope.SYSTEM, ""))
        return chain


SYSTEM_CONTEXT = SettingsContext()


@dataclass(frozen=True)
class ResolvedSetting:
    key: str
    value: Any
    scope: str  # one of SettingScope values, or "default"


@dataclass(frozen=True)
class Thresholds:
    warning_days: int
    critical_days: int


# ==================== Validation ====================

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_send_time(value: Any) -> str:
    """Return the value if it is a 24h HH:MM string."""
    if not isinstance(value, str) or not SEND_TIME_PATTERN.match(value):
        raise InvalidSettingError(f"Invalid send time '{value}'. Expected HH:MM (00:00-23:59)")
    return value


def validate_timezone(value: Any) -> str:
    """Return the value if it names an IANA timezone."""
    if not isinstance(value, str) or not value:
        raise InvalidSettingError(f"Invalid timezone '{value}'")
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidSettingError(f"Unknown timezone '{value}'")
    return value


def parse_send_time(value: str) -> Tuple[int, int]:
    hour, minute = validate_send_time(value).split(":")
    return int(hour), int(minute)


def _validate_value(key: str, value: Any) -> None:
    if key in THRESHOLD_KEYS:
        if not _is_int(value) or value < 0:
            raise InvalidThresholdConfigError(f"{key} must be a non-negative integer, got {value!r}")
    elif key == SettingsKey.NOTIFY_SEND_TIME:
        validate_send_time(value)
    elif key == SettingsKey.LOCALE_TIMEZONE:
        validate_timezone(value)
    elif key in (SettingsKey.NOTIFY_TELEGRAM_ENABLED, SettingsKey.NOTIFY_EMAIL_ENABLED):
        if not isinstance(value, bool):
            raise InvalidSettingError(f"{key} must be true or false")
    elif key in (SettingsKey.TELEGRAM_CHAT_IDS, SettingsKey.NOTIFY_EMAIL_RECIPIENTS):
        if not isinstance(value, list):
            raise InvalidSettingError(f"{key} must be a list")
    elif key == SettingsKey.NOTIFY_TEMPLATE_DAILY_REPORT:
        if not isinstance(value, str) or not value.strip():
            raise InvalidSettingError(f"{key} must be a non-empty string")


def _scope_ref(scope: SettingScope, scope_id: Any) -> str:
    if scope == SettingScope.SYSTEM:
        if scope_id is not None:
            raise InvalidSettingError("System scope settings take no scope id")
        return ""
    if scope_id is None or str(scope_id) == "":
        raise InvalidSettingError(f"{scope.value} scope settings require a scope id")
    return str(scope_id)


def _describe(ctx: SettingsContext) -> str:
    if ctx.user_id:
        return f"user {ctx.user_id}"
    if ctx.department_id:
        return f"department {ctx.department_id}"
    return f"hotel {ctx.hotel_id}"


# ==================== Service ====================

class SettingsService:
    """Reads and writes scoped settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, key: str, ctx: SettingsContext) -> Dict[Tuple[str, str], Any]:
        chain = ctx.scope_chain()
        result = await self.db.execute(
            select(Setting.scope, Setting.scope_ref, Setting.value).where(
                and_(
                    Setting.key == key,
                    or_(*[
                        and_(Setting.scope == scope.value, Setting.scope_ref == ref)
                        for scope, ref in chain
                    ]),
                )
            )
        )
        return {(row.scope, row.scope_ref): row.value for row in result}

    async def resolve(self, key: str, ctx: SettingsContext = SYSTEM_CONTEXT) -> ResolvedSetting:
        """Resolve ``key`` for ``ctx``: the most specific defined value wins."""
        rows = await self._load(key, ctx)
        for scope, ref in ctx.scope_chain():
            value = rows.get((scope.value, ref))
            if value is not None:
                return ResolvedSetting(key=key, value=value, scope=scope.value)
        return ResolvedSetting(key=key, value=SYSTEM_DEFAULTS.get(key), scope=DEFAULT_SCOPE)

    async def get_value(self, key: str, ctx: SettingsContext = SYSTEM_CONTEXT) -> Any:
        return (await self.resolve(key, ctx)).value

    async def get_thresholds(self, ctx: SettingsContext = SYSTEM_CONTEXT) -> Thresholds:
        warning = await self.get_value(SettingsKey.EXPIRY_WARNING_DAYS, ctx)
        critical = await self.get_value(SettingsKey.EXPIRY_CRITICAL_DAYS, ctx)
        return Thresholds(warning_days=int(warning), critical_days=int(critical))

    async def get_hotel_timezone(self, hotel: Hotel) -> str:
        """The hotel's own timezone, else locale.timezone resolved at hotel scope."""
        if hotel.timezone:
            return hotel.timezone
        return await self.get_value(SettingsKey.LOCALE_TIMEZONE, SettingsContext(hotel_id=hotel.id))

    async def get_schedule_config(self) -> Tuple[str, str]:
        """(send_time, timezone) at system scope. This pair drives the report timer."""
        send_time = await self.get_value(SettingsKey.NOTIFY_SEND_TIME)
        tz_name = await self.get_value(SettingsKey.LOCALE_TIMEZONE)
        return send_time, tz_name

    async def get_hierarchy(self, key: str, ctx: SettingsContext) -> List[dict]:
        """Value of ``key`` at every scope of ``ctx``, marking the one in effect."""
        rows = await self._load(key, ctx)
        resolved = await self.resolve(key, ctx)
        levels = []
        for scope, ref in ctx.scope_chain():
            value = rows.get((scope.value, ref))
            levels.append({
                "scope": scope.value,
                "scope_id": ref or None,
                "value": value,
                "is_effective": resolved.scope == scope.value,
            })
        levels.append({
            "scope": DEFAULT_SCOPE,
            "scope_id": None,
            "value": SYSTEM_DEFAULTS.get(key),
            "is_effective": resolved.scope == DEFAULT_SCOPE,
        })
        return levels

    async def get_scope_settings(self, scope: SettingScope, scope_id: Any = None) -> Dict[str, Any]:
        """All settings stored directly at one scope (no fallback)."""
        ref = _scope_ref(scope, scope_id)
        result = await self.db.execute(
            select(Setting.key, Setting.value)
            .where(and_(Setting.scope == scope.value, Setting.scope_ref == ref))
            .order_by(Setting.key)
        )
        return {row.key: row.value for row in result}

    async def _context_for_scope(self, scope: SettingScope, ref: str) -> SettingsContext:
        """The context a write at this scope affects, used for cross-key validation."""
        if scope in (SettingScope.HOTEL, SettingScope.DEPARTMENT):
            try:
                entity_id = UUID(ref)
            except ValueError:
                raise InvalidSettingError(f"Invalid {scope.value} id '{ref}'")
        if scope == SettingScope.HOTEL:
            return SettingsContext(hotel_id=entity_id)
        if scope == SettingScope.DEPARTMENT:
            department_id = entity_id
            hotel_id = await self.db.scalar(
                select(Department.hotel_id).where(Department.id == department_id)
            )
            return SettingsContext(hotel_id=hotel_id, department_id=department_id)
        if scope == SettingScope.USER:
            return SettingsContext(user_id=ref)
        return SYSTEM_CONTEXT

    async def _threshold_contexts(
        self, scope: SettingScope, ctx: SettingsContext
    ) -> List[SettingsContext]:
        """
        ``ctx`` plus every narrower context that inherits from it and holds
        its own threshold override. A user context carries no hotel or
        department, so only system writes reach user overrides.
        """
        if scope == SettingScope.SYSTEM:
            narrower = (SettingScope.HOTEL, SettingScope.DEPARTMENT, SettingScope.USER)
        elif scope == SettingScope.HOTEL:
            narrower = (SettingScope.DEPARTMENT,)
        else:
            return [ctx]

        result = await self.db.execute(
            select(Setting.scope, Setting.scope_ref)
            .where(
                and_(
                    Setting.key.in_(THRESHOLD_KEYS),
                    Setting.scope.in_([s.value for s in narrower]),
                )
            )
            .distinct()
        )
        contexts = [ctx]
        for row in result.all():
            other = await self._context_for_scope(SettingScope(row.scope), row.scope_ref)
            if scope == SettingScope.HOTEL and other.hotel_id != ctx.hotel_id:
                continue
            if other not in contexts:
                contexts.append(other)
        return contexts

    async def _check_thresholds(self, scope: SettingScope, ctx: SettingsContext) -> None:
        for affected in await self._threshold_contexts(scope, ctx):
            thresholds = await self.get_thresholds(affected)
            if thresholds.warning_days <= thresholds.critical_days:
                where = "" if affected == ctx else f" for {_describe(affected)}"
                raise InvalidThresholdConfigError(
                    f"Warning days ({thresholds.warning_days}) must be greater than "
                    f"critical days ({thresholds.critical_days}){where}"
                )

    async def set_setting(
        self,
        key: str,
        value: Any,
        scope: SettingScope,
        scope_id: Any = None,
        updated_by: Optional[str] = None,
    ) -> dict:
        """
        Create or update one setting.

        Threshold writes are checked against the other threshold as it
        resolves for the same scope and for every narrower scope that
        overrides a threshold, inside a savepoint, so a rejected write leaves
        nothing behind.

        Returns:
            {"key", "scope", "scope_id", "before", "after"}

        Raises:
            InvalidSettingError / InvalidThresholdConfigError
        """
        if value is None:
            raise InvalidSettingError(f"{key} value must not be null, delete the setting instead")
        _validate_value(key, value)
        ref = _scope_ref(scope, scope_id)
        ctx = await self._context_for_scope(scope, ref)

        async with self.db.begin_nested():
            result = await self.db.execute(
                select(Setting).where(
                    and_(Setting.key == key, Setting.scope == scope.value, Setting.scope_ref == ref)
                )
            )
            setting = result.scalar_one_or_none()
            before = setting.value if setting else None

            if setting:
                setting.value = value
                setting.updated_by = updated_by
            else:
                setting = Setting(
                    key=key,
                    scope=scope.value,
                    scope_id=ref or None,
                    scope_ref=ref,
                    value=value,
                    updated_by=updated_by,
                )
                self.db.add(setting)
            await self.db.flush()

            if key in THRESHOLD_KEYS:
                await self._check_thresholds(scope, ctx)

        logger.info(f"Setting '{key}' updated at {scope.value} scope", extra={"scope_id": ref or None})
        return {
            "key": key,
            "scope": scope.value,
            "scope_id": ref or None,
            "before": before,
            "after": value,
        }

    async def delete_setting(self, key: str, scope: SettingScope, scope_id: Any = None) -> bool:
        """
        Remove a setting so the next scope up takes effect.

        Returns False if nothing was stored. Deleting a threshold is refused
        when the inherited values would be inconsistent.
        """
        ref = _scope_ref(scope, scope_id)
        ctx = await self._context_for_scope(scope, ref)

        async with self.db.begin_nested():
            result = await self.db.execute(
                delete(Setting).where(
                    and_(Setting.key == key, Setting.scope == scope.value, Setting.scope_ref == ref)
                )
            )
            if key in THRESHOLD_KEYS and result.rowcount:
                await self._check_thresholds(scope, ctx)

        if result.rowcount:
            logger.info(f"Setting '{key}' deleted at {scope.value} scope", extra={"scope_id": ref or None})
        return bool(result.rowcount)
