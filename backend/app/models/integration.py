"""External integrations (Jira) and the campaign calendar they feed.

An ``ExternalIntegration`` is unique per (user, org, type).  Calendars and
calendar events created from it are deleted with it.
"""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base

INTEGRATION_TYPE_JIRA = "JIRA"

EVENT_STATUS_PENDING = "pending"
EVENT_STATUS_PROCESSING = "processing"
EVENT_STATUS_COMPLETED = "completed"
EVENT_STATUS_FAILED = "failed"

VALID_EVENT_STATUSES: list[str] = [
    EVENT_STATUS_PENDING,
    EVENT_STATUS_PROCESSING,
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_FAILED,
]


def _uuid() -> str:
    return str(uuid.uuid4())


class ExternalIntegration(Base):
    __tablename__ = "external_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "org_id", "type", name="uq_integration_user_org_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    org_id: Mapped[str] = mapped_column(String(64), default="")
    type: Mapped[str] = mapped_column(String(20))
    # domain, username, apiKey, projectName, issueType, fetchLimit, triggerTiming...
    config: Mapped[dict] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    calendars: Mapped[list["Calendar"]] = relationship(
        back_populates="integration", cascade="all, delete-orphan"
    )


class Calendar(Base):
    __tablename__ = "calendars"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    integration_id: Mapped[str | None] = mapped_column(
        ForeignKey("external_integrations.id", ondelete="CASCADE"), default=None
    )
    provider: Mapped[str] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(255))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    config: Mapped[dict | None] = mapped_column(JSON, default=None)
    last_synced: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    integration: Mapped[ExternalIntegration | None] = relationship(back_populates="calendars")
    events: Mapped[list["CalendarEvent"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan"
    )


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_id", "external_event_id", name="uq_event_calendar_external"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    calendar_id: Mapped[str] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE"), index=True
    )
    # Jira issue key, e.g. "MKT-42"
    external_event_id: Mapped[str] = mapped_column(String(64))
    summary: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    due_date: Mapped[date | None] = mapped_column(Date, default=None, index=True)
    trigger_start: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    trigger_end: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    raw_data: Mapped[dict | None] = mapped_column(JSON, default=None)
    status: Mapped[str] = mapped_column(String(20), default=EVENT_STATUS_PENDING, index=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), default=None)
    tags: Mapped[list | None] = mapped_column(JSON, default=None)
    number_of_variations: Mapped[int] = mapped_column(Integer, default=1)
    styles: Mapped[list | None] = mapped_column(JSON, default=None)
    color: Mapped[str] = mapped_column(String(20), default="amber")
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    calendar: Mapped[Calendar] = relationship(back_populates="events")
