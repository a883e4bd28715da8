"""Scoped key/value configuration rows."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import String, DateTime, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class SettingScope(str, Enum):
    """Scopes in ascending precedence."""
    SYSTEM = "system"
    HOTEL = "hotel"
    DEPARTMENT = "department"
    USER = "user"


class Setting(Base):
    """
    One value of one key at one scope.

    scope_id is NULL for system scope. scope_ref mirrors it as text ("" for
    system) so the unique key works on backends where NULLs are distinct.
    User ids come from the external auth layer and are opaque strings.
    """
    __tablename__ = "settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    scope_ref: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    value: Mapped[Any] = mapped_column(JSON, nullable=True)

    updated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint("key", "scope", "scope_ref", name="uq_settings_key_scope"),
        Index("ix_settings_scope", "scope", "scope_ref"),
    )

    def __repr__(self) -> str:
        return f"<Setting(key='{self.key}', scope='{self.scope}', scope_id='{self.scope_id}')>"
