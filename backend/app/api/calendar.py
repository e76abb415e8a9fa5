"""Calendar events API — campaign events imported from Jira.

GET   /api/calendar-events       — a user's events ordered by due date
PATCH /api/calendar-events/{id}  — update status / processed_by
"""

from datetime import date, datetime

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from app.database import get_db
from app.models.integration import VALID_EVENT_STATUSES, Calendar, CalendarEvent

router = APIRouter(prefix="/api/calendar-events", tags=["calendar"])


class CalendarEventResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    calendar_id: str
    external_event_id: str
    summary: str
    description: str | None
    due_date: date | None
    trigger_start: datetime | None
    trigger_end: datetime | None
    status: str
    processed_by: str | None
    tags: list | None
    number_of_variations: int
    styles: list | None
    color: str
    fetched_at: datetime | None
    calendar_name: str
    calendar_provider: str


class CalendarEventList(BaseModel):
    events: list[CalendarEventResponse]


class CalendarEventUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    status: str | None = None
    processed_by: str | None = None


def _to_response(event: CalendarEvent) -> CalendarEventResponse:
    return CalendarEventResponse(
        id=event.id,
        calendar_id=event.calendar_id,
        external_event_id=event.external_event_id,
        summary=event.summary,
        description=event.description,
        due_date=event.due_date,
        trigger_start=event.trigger_start,
        trigger_end=event.trigger_end,
        status=event.status,
        processed_by=event.processed_by,
        tags=event.tags,
        number_of_variations=event.number_of_variations,
        styles=event.styles,
        color=event.color,
        fetched_at=event.fetched_at,
        calendar_name=event.calendar.name,
        calendar_provider=event.calendar.provider,
    )


@router.get("", response_model=CalendarEventList)
def list_events(
    user_id: str = Query(..., min_length=1),
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    status: str | None = Query(default=None),
    calendar_id: str | None = Query(default=None),
) -> CalendarEventList:
    """Return a user's events (due date ascending), optionally filtered."""
    db = get_db()
    try:
        query = (
            db.query(CalendarEvent)
            .join(Calendar, CalendarEvent.calendar_id == Calendar.id)
            .filter(CalendarEvent.user_id == user_id)
        )
        if start:
            query = query.filter(CalendarEvent.due_date >= start)
        if end:
            query = query.filter(CalendarEvent.due_date <= end)
        if status:
            query = query.filter(CalendarEvent.status == status)
        if calendar_id:
            query = query.filter(CalendarEvent.calendar_id == calendar_id)
        events = query.order_by(CalendarEvent.due_date.asc(), CalendarEvent.id).all()
        return CalendarEventList(events=[_to_response(e) for e in events])
    finally:
        db.close()


@router.patch("/{event_id}", response_model=CalendarEventResponse)
def update_event(event_id: str, body: CalendarEventUpdate) -> CalendarEventResponse:
    """Update an event's status and/or processor; only the owner may update it."""
    if body.status is not None and body.status not in VALID_EVENT_STATUSES:
        raise HTTPException(
            400, f"Invalid status: {body.status}. Expected one of: {', '.join(VALID_EVENT_STATUSES)}"
        )

    db = get_db()
    try:
        event = db.get(CalendarEvent, event_id)
        if not event or event.user_id != body.user_id:
            raise HTTPException(status_code=404, detail="Event not found")
        if body.status is not None:
            event.status = body.status
        if body.processed_by is not None:
            event.processed_by = body.processed_by
        db.commit()
        db.refresh(event)
        return _to_response(event)
    finally:
        db.close()
