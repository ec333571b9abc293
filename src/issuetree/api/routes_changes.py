"""Change tracking API routes — detect, save and clear checkpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from issuetree.api.deps import get_loader, load_or_raise
from issuetree.loader import IssueLoader

router = APIRouter()


class QueryRequest(BaseModel):
    jql: Optional[str] = None


class TrackingSettings(BaseModel):
    enabled: Optional[bool] = None
    activity_period: Optional[str] = None


@router.post("/changes/{query_id}")
async def detect_changes(
    query_id: str,
    req: QueryRequest = QueryRequest(),
    loader: IssueLoader = Depends(get_loader),
):
    """Fetch the query and diff it against its checkpoint."""
    load_or_raise(loader, req.jql or loader.settings.jira_jql, query_id)
    changes = loader.changes
    tracker = loader.tracker
    return {
        "queryId": query_id,
        "enabled": tracker.is_enabled,
        "changes": asdict(changes) if changes else None,
        "since": tracker.get_time_since_checkpoint(query_id),
    }


@router.get("/checkpoints/{query_id}")
async def get_checkpoint(query_id: str, loader: IssueLoader = Depends(get_loader)):
    tracker = loader.tracker
    checkpoint = tracker.get_checkpoint(query_id)
    flags = tracker.get_query_change_types(query_id)
    return {
        "queryId": query_id,
        "exists": checkpoint is not None,
        "timestamp": checkpoint.timestamp if checkpoint else None,
        "issueCount": checkpoint.issue_count if checkpoint else 0,
        "since": tracker.get_time_since_checkpoint(query_id),
        "pending": flags.model_dump() if flags else None,
    }


@router.post("/checkpoints/{query_id}")
async def save_checkpoint(
    query_id: str,
    req: QueryRequest = QueryRequest(),
    loader: IssueLoader = Depends(get_loader),
):
    """Make the query's current issues its new baseline."""
    tracker = loader.tracker
    if not tracker.is_enabled:
        raise HTTPException(status_code=409, detail="Change tracking is disabled")

    if req.jql or loader.current_query_id != query_id:
        load_or_raise(loader, req.jql or loader.settings.jira_jql, query_id)
    loader.save_checkpoint()
    return {"queryId": query_id, "timestamp": tracker.get_checkpoint_timestamp(query_id)}


@router.delete("/checkpoints/{query_id}")
async def clear_checkpoint(query_id: str, loader: IssueLoader = Depends(get_loader)):
    loader.tracker.clear_checkpoint(query_id)
    return {"queryId": query_id, "cleared": True}


@router.put("/tracking")
async def update_tracking(req: TrackingSettings, loader: IssueLoader = Depends(get_loader)):
    """Enable/disable tracking or change the activity period."""
    tracker = loader.tracker
    if req.enabled is not None:
        tracker.set_enabled(req.enabled)
    if req.activity_period is not None:
        try:
            tracker.set_activity_period(req.activity_period)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
    return {"enabled": tracker.is_enabled, "activityPeriod": tracker.activity_period}
