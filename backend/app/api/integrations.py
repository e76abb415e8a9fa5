"""Integrations API — Jira connection management.

POST   /api/integrations/jira/connect — validate credentials and import issues
POST   /api/integrations/jira/sync    — incremental re-sync with stored credentials
DELETE /api/integrations/jira         — disconnect (deletes calendars and events)
"""

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from app.database import get_db
from app.services import jira_sync
from app.services.jira_sync import JiraConfig, JiraSyncError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


class JiraConnectRequest(JiraConfig):
    user_id: str = Field(..., min_length=1)
    org_id: str = ""


class JiraSyncRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    org_id: str = ""


class JiraSyncResponse(BaseModel):
    success: bool
    sync_strategy: str
    message: str
    total_fetched: int
    newly_inserted: int
    skipped_existing: int


def _to_http(exc: JiraSyncError) -> HTTPException:
    detail = f"{exc.message}: {exc.details}" if exc.details else exc.message
    return HTTPException(status_code=exc.status_code, detail=detail)


@router.post("/jira/connect", response_model=JiraSyncResponse)
async def connect_jira(body: JiraConnectRequest) -> JiraSyncResponse:
    """Connect a Jira project and import this month's issues as calendar events.

    Returns 401 when Jira rejects the credentials and 502 when Jira cannot
    be reached.
    """
    config = JiraConfig.model_validate(body.model_dump(exclude={"user_id", "org_id"}))
    db = get_db()
    try:
        result = await jira_sync.connect(db, body.user_id, config, org_id=body.org_id)
    except JiraSyncError as exc:
        raise _to_http(exc) from exc
    finally:
        db.close()
    return JiraSyncResponse(**result)


@router.post("/jira/sync", response_model=JiraSyncResponse)
async def sync_jira(body: JiraSyncRequest) -> JiraSyncResponse:
    """Fetch issues not yet imported, using the stored credentials."""
    db = get_db()
    try:
        result = await jira_sync.sync(db, body.user_id, org_id=body.org_id)
    except JiraSyncError as exc:
        raise _to_http(exc) from exc
    finally:
        db.close()
    return JiraSyncResponse(**result)


@router.delete("/jira")
def disconnect_jira(
    user_id: str = Query(..., min_length=1),
    org_id: str = Query(default=""),
) -> dict:
    """Remove the Jira integration and everything imported from it."""
    db = get_db()
    try:
        removed = jira_sync.disconnect(db, user_id, org_id=org_id)
    finally:
        db.close()
    if not removed:
        raise HTTPException(status_code=404, detail="No Jira integration found")
    return {"success": True}
