from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from dareboard.core.auth import get_current_user
from dareboard.core.errors import ValidationError
from dareboard.features.dares import ranking
from dareboard.features.dares.engagements import engagement_ledger
from dareboard.features.dares.lifecycle import last_sweep_run, run_sweep
from dareboard.features.dares.service import dare_service, serialize_completion, serialize_dare
from dareboard.features.dares.store import get_profiles
from dareboard.features.dares.timeutils import ensure_utc
from dareboard.models.dare import ActingUser, EngagementTarget, to_dict

router = APIRouter()


class CreateDareRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    vibe: Optional[str] = None
    hashtag: Optional[str] = None
    expiry_date: Optional[datetime] = None


class CompleteDareRequest(BaseModel):
    media_urls: Optional[List[str]] = None
    caption: Optional[str] = None
    location: Optional[str] = None


class EngagementRequest(BaseModel):
    dare_id: Optional[str] = None
    completed_dare_id: Optional[str] = None
    engagement_type: Optional[str] = None
    content: Optional[str] = None


def _parse_now(now: Optional[str]) -> Optional[datetime]:
    """Optional ISO timestamp override (deterministic tests, backfills)."""
    if not now:
        return None
    try:
        return ensure_utc(now)
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {now}")


@router.get("/v1/dares")
def list_dares(
    section: Literal["trending", "new", "expiring"] = Query("trending"),
    vibe: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    now: Optional[str] = Query(None),
):
    """Open dares for the feed sections."""
    items = dare_service.list_dares(section=section, vibe=vibe, limit=limit, offset=offset, now=_parse_now(now))
    return {"dares": items, "section": section}


@router.post("/v1/dares", status_code=201)
def create_dare(req: CreateDareRequest, user: ActingUser = Depends(get_current_user)):
    dare = dare_service.create_dare(
        user,
        title=req.title,
        description=req.description,
        vibe=req.vibe,
        hashtag=req.hashtag,
        expiry=req.expiry_date,
    )
    creator = get_profiles([user.user_id]).get(user.user_id)
    return {"dare": serialize_dare(dare, creator=creator)}


@router.get("/v1/dares/completed")
def list_completed_dares(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    dare_id: Optional[str] = Query(None),
    now: Optional[str] = Query(None),
):
    """Active completions, newest first."""
    items = dare_service.list_completions(limit=limit, offset=offset, dare_id=dare_id, now=_parse_now(now))
    return {"completed_dares": items}


@router.post("/v1/dares/engagements", status_code=201)
def create_engagement(req: EngagementRequest, user: ActingUser = Depends(get_current_user)):
    engagement = engagement_ledger.create_engagement(
        user,
        EngagementTarget(dare_id=req.dare_id, completed_dare_id=req.completed_dare_id),
        req.engagement_type,
        req.content,
    )
    return {"engagement": to_dict(engagement)}


@router.delete("/v1/dares/engagements")
def delete_engagement(
    engagement_type: Optional[str] = Query(None),
    dare_id: Optional[str] = Query(None),
    completed_dare_id: Optional[str] = Query(None),
    user: ActingUser = Depends(get_current_user),
):
    """Toggle off a smile or tag. Removing one that is not there succeeds with deleted=false."""
    return engagement_ledger.delete_engagement(
        user,
        EngagementTarget(dare_id=dare_id, completed_dare_id=completed_dare_id),
        engagement_type,
    )


@router.get("/v1/dares/engagements/comments")
def list_comments(
    dare_id: Optional[str] = Query(None),
    completed_dare_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    comments = engagement_ledger.list_comments(
        EngagementTarget(dare_id=dare_id, completed_dare_id=completed_dare_id),
        limit=limit,
        offset=offset,
    )
    return {"comments": [to_dict(c) for c in comments]}


@router.get("/v1/dares/trending/completions")
def trending_completions(limit: int = Query(20, ge=1, le=100)):
    items = ranking.trending(limit=limit, kind="completions")
    people = get_profiles([c.completer_id for c in items])
    return {
        "completed_dares": [serialize_completion(c, completer=people.get(c.completer_id)) for c in items]
    }


@router.post("/v1/dares/cleanup")
def cleanup():
    """Run one lifecycle sweep at the current time. Clock overrides live in the sweep worker."""
    result = run_sweep()
    return result.to_payload()


@router.get("/v1/dares/cleanup/last")
def cleanup_last_run():
    return {"last_run": last_sweep_run()}


@router.get("/v1/dares/{dare_id}")
def get_dare(dare_id: str, now: Optional[str] = Query(None)):
    return {"dare": dare_service.get_dare(dare_id, now=_parse_now(now))}


@router.delete("/v1/dares/{dare_id}")
def delete_dare(dare_id: str, user: ActingUser = Depends(get_current_user)):
    """Creator-only soft delete."""
    deleted = dare_service.delete_dare(user, dare_id)
    return {"success": True, "deleted": deleted}


@router.post("/v1/dares/{dare_id}/complete", status_code=201)
def complete_dare(dare_id: str, req: CompleteDareRequest, user: ActingUser = Depends(get_current_user)):
    completion = dare_service.complete_dare(
        user,
        dare_id,
        media_urls=req.media_urls,
        caption=req.caption,
        location=req.location,
    )
    completer = get_profiles([user.user_id]).get(user.user_id)
    return {"completed_dare": serialize_completion(completion, completer=completer)}
