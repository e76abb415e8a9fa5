"""Jira → campaign calendar sync.

``connect`` validates credentials, pulls this month's issues of one project
and issue type, and stores them as calendar events.  ``sync`` repeats the
fetch with the stored credentials, excluding issue keys already imported.
``disconnect`` removes the integration together with its calendars and
events.

Each event gets a trigger window: the whole UTC day that lies
``trigger_timing`` before the issue's due date.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import date, datetime, time, timedelta, timezone

import httpx
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.integrations.jira import DEFAULT_FETCH_LIMIT, JiraAuthError, JiraClient
from app.models.integration import (
    EVENT_STATUS_PENDING,
    INTEGRATION_TYPE_JIRA,
    Calendar,
    CalendarEvent,
    ExternalIntegration,
)

logger = logging.getLogger(__name__)

TRIGGER_TIMING_DAYS = {
    "2 days": 2,
    "3 days": 3,
    "1 week": 7,
    "2 weeks": 14,
}
DEFAULT_TRIGGER_DAYS = 2
DEFAULT_STYLES = ["Lifestyle + Subject"]
MAX_EXCLUDED_KEYS = 200
EVENT_COLOR = "amber"

SYNC_FULL = "full"
SYNC_INCREMENTAL = "incremental"

ClientFactory = Callable[[str, str, str], JiraClient]


class JiraSyncError(Exception):
    """A connect/sync step failed; ``status_code`` is the HTTP status to return."""

    def __init__(self, message: str, status_code: int, details: str = "") -> None:
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class JiraConfig(BaseModel):
    """Connection settings and calendar preferences for one Jira project."""

    jira_url: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    api_token: str = Field(..., min_length=1)
    project_name: str = Field(..., min_length=1)
    issue_type: str = Field(..., min_length=1)
    fetch_limit: int = Field(default=DEFAULT_FETCH_LIMIT, ge=1, le=1000)
    trigger_timing: str = "2 days"
    number_of_variations: int = Field(default=1, ge=1)
    styles: list[str] = Field(default_factory=lambda: list(DEFAULT_STYLES))

    def to_stored(self) -> dict:
        return {
            "domain": self.jira_url,
            "username": self.username,
            "apiKey": self.api_token,
            "projectName": self.project_name,
            "issueType": self.issue_type,
            "fetchLimit": self.fetch_limit,
            "triggerTiming": self.trigger_timing,
            "numberOfVariations": self.number_of_variations,
            "styles": self.styles,
        }

    @classmethod
    def from_stored(cls, config: dict) -> "JiraConfig":
        return cls(
            jira_url=config["domain"],
            username=config["username"],
            api_token=config["apiKey"],
            project_name=config["projectName"],
            issue_type=config["issueType"],
            fetch_limit=config.get("fetchLimit") or DEFAULT_FETCH_LIMIT,
            trigger_timing=config.get("triggerTiming") or "2 days",
            number_of_variations=config.get("numberOfVariations") or 1,
            styles=config.get("styles") or list(DEFAULT_STYLES),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _quote(value: str) -> str:
    return '"' + value.replace('"', '\\"') + '"'


def build_jql(project: str, issue_type: str, exclude_keys: Sequence[str] = ()) -> str:
    """JQL for this month's issues; at most 200 keys are excluded."""
    jql = (
        f"project = {_quote(project)} AND issuetype = {_quote(issue_type)} "
        "AND due > startOfMonth() AND due < endOfMonth()"
    )
    keys = list(exclude_keys)[:MAX_EXCLUDED_KEYS]
    if keys:
        jql += f" AND key NOT IN ({', '.join(_quote(k) for k in keys)})"
    return jql


def trigger_window(due: date | None, timing: str) -> tuple[datetime | None, datetime | None]:
    """Start and end of the UTC day ``timing`` before ``due``.

    Unknown timings fall back to 2 days.
    """
    if due is None:
        return None, None
    day = due - timedelta(days=TRIGGER_TIMING_DAYS.get(timing, DEFAULT_TRIGGER_DAYS))
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time(23, 59, 59, 999000))
    return start, end


def _parse_due(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("Ignoring unparseable Jira due date %r", value)
        return None


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------


def _get_integration(db: Session, user_id: str, org_id: str) -> ExternalIntegration | None:
    return db.scalar(
        select(ExternalIntegration).where(
            ExternalIntegration.user_id == user_id,
            ExternalIntegration.org_id == org_id,
            ExternalIntegration.type == INTEGRATION_TYPE_JIRA,
        )
    )


def _existing_keys(db: Session, user_id: str) -> list[str]:
    return list(
        db.scalars(
            select(CalendarEvent.external_event_id)
            .join(Calendar, CalendarEvent.calendar_id == Calendar.id)
            .where(
                CalendarEvent.user_id == user_id,
                Calendar.provider == INTEGRATION_TYPE_JIRA,
            )
            .order_by(CalendarEvent.created_at)
        )
    )


def _find_or_create_calendar(
    db: Session, integration: ExternalIntegration, config: JiraConfig
) -> Calendar:
    for calendar in integration.calendars:
        if (calendar.config or {}).get("projectName") == config.project_name:
            return calendar
    calendar = Calendar(
        user_id=integration.user_id,
        provider=INTEGRATION_TYPE_JIRA,
        name=config.project_name,
        timezone="UTC",
        config={
            "jiraUrl": config.jira_url,
            "projectName": config.project_name,
            "issueType": config.issue_type,
        },
    )
    integration.calendars.append(calendar)
    db.flush()
    logger.info("Created Jira calendar %s for project %s", calendar.id, config.project_name)
    return calendar


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def _fetch_issues(client: JiraClient, jql: str, limit: int) -> list[dict]:
    try:
        return await client.search(jql, max_results=limit)
    except httpx.HTTPStatusError as exc:
        raise JiraSyncError(
            "Failed to fetch Jira issues", 502, exc.response.text[:500]
        ) from exc
    except httpx.RequestError as exc:
        raise JiraSyncError("Network error while fetching Jira issues", 502, str(exc)) from exc


async def _run_sync(
    db: Session,
    user_id: str,
    org_id: str,
    config: JiraConfig,
    *,
    incremental: bool,
    client_factory: ClientFactory,
) -> dict:
    client = client_factory(config.jira_url, config.username, config.api_token)

    try:
        await client.myself()
    except JiraAuthError as exc:
        raise JiraSyncError("Invalid Jira credentials", 401, exc.detail) from exc
    except httpx.HTTPError as exc:
        raise JiraSyncError("Failed to connect to Jira", 502, str(exc)) from exc

    existing = _existing_keys(db, user_id) if incremental else []
    strategy = SYNC_INCREMENTAL if existing else SYNC_FULL
    jql = build_jql(config.project_name, config.issue_type, existing)
    logger.info("Jira %s sync for user %s: %s", strategy, user_id, jql)

    issues = await _fetch_issues(client, jql, config.fetch_limit)
    if not issues:
        return {
            "success": True,
            "sync_strategy": strategy,
            "message": (
                f"No {config.issue_type} issues found in project "
                f"{config.project_name} for the current month"
            ),
            "total_fetched": 0,
            "newly_inserted": 0,
            "skipped_existing": 0,
        }

    now = _utcnow()
    try:
        integration = _get_integration(db, user_id, org_id)
        if integration is None:
            integration = ExternalIntegration(
                user_id=user_id, org_id=org_id, type=INTEGRATION_TYPE_JIRA, config={}
            )
            db.add(integration)
        integration.config = config.to_stored()
        integration.is_active = True
        integration.last_synced = now

        calendar = _find_or_create_calendar(db, integration, config)
        calendar.last_synced = now
        in_calendar = {event.external_event_id for event in calendar.events}

        inserted = 0
        skipped = 0
        for issue in issues:
            key = issue.get("key")
            if not key or key in in_calendar:
                skipped += 1
                continue
            fields = issue.get("fields") or {}
            due = _parse_due(fields.get("duedate"))
            start, end = trigger_window(due, config.trigger_timing)
            calendar.events.append(
                CalendarEvent(
                    user_id=user_id,
                    external_event_id=key,
                    summary=fields.get("summary") or "",
                    description=None,
                    due_date=due,
                    trigger_start=start,
                    trigger_end=end,
                    raw_data=issue,
                    status=EVENT_STATUS_PENDING,
                    tags=[],
                    number_of_variations=config.number_of_variations,
                    styles=list(config.styles),
                    color=EVENT_COLOR,
                    fetched_at=now,
                )
            )
            in_calendar.add(key)
            inserted += 1
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to store Jira sync for user %s", user_id)
        raise JiraSyncError("Failed to store integration", 500, str(exc)) from exc

    if strategy == SYNC_INCREMENTAL:
        skipped += len(existing)
        message = f"Incremental sync completed - checked {len(issues)} updated/new issues"
    else:
        message = f"Full sync completed - processed {len(issues)} issues"

    logger.info(
        "Jira sync for user %s: fetched=%d inserted=%d skipped=%d",
        user_id,
        len(issues),
        inserted,
        skipped,
    )
    return {
        "success": True,
        "sync_strategy": strategy,
        "message": message,
        "total_fetched": len(issues),
        "newly_inserted": inserted,
        "skipped_existing": skipped,
    }


async def connect(
    db: Session,
    user_id: str,
    config: JiraConfig,
    *,
    org_id: str = "",
    client_factory: ClientFactory = JiraClient,
) -> dict:
    """Validate credentials, import this month's issues and store the integration."""
    return await _run_sync(
        db, user_id, org_id, config, incremental=False, client_factory=client_factory
    )


async def sync(
    db: Session,
    user_id: str,
    *,
    org_id: str = "",
    client_factory: ClientFactory = JiraClient,
) -> dict:
    """Incremental re-sync using the stored credentials."""
    integration = _get_integration(db, user_id, org_id)
    if integration is None or not integration.is_active:
        raise JiraSyncError("No Jira integration found", 404)
    config = JiraConfig.from_stored(integration.config)
    return await _run_sync(
        db, user_id, org_id, config, incremental=True, client_factory=client_factory
    )


def disconnect(db: Session, user_id: str, *, org_id: str = "") -> bool:
    """Delete the integration with its calendars and events; False if none existed."""
    integration = _get_integration(db, user_id, org_id)
    if integration is None:
        return False
    db.delete(integration)
    db.commit()
    logger.info("Disconnected Jira for user %s", user_id)
    return True
