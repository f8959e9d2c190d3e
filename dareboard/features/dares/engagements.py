"""
Engagement ledger: smiles, comments, shares and tags on dares and completions.

Each engagement write is one unit of work: the ledger row and the relative
counter change on its target commit together or not at all, and the unit is
replayed on transient store failures.

Rules:
- exactly one target (dare or completion), which must exist and be active
- smile/tag are unique per (user, target, type); duplicates raise ConflictError
- comment/share are append-only
- deleting a smile/tag that is not there is a no-op (toggle semantics)
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dareboard.core.database import dare_engagements
from dareboard.core.errors import (
    AuthenticationRequiredError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from dareboard.core.logging import log_event
from dareboard.core.metrics import dare_engagements_total
from dareboard.features.dares.counters import apply_counter_delta, run_with_retries
from dareboard.features.dares.store import (
    CompletionStore,
    DareStore,
    completion_store,
    dare_store,
    get_profiles,
    session_scope,
)
from dareboard.features.dares.timeutils import ensure_utc, utc_now
from dareboard.models.dare import (
    COUNTER_COLUMNS,
    ENGAGEMENT_TYPES,
    UNIQUE_ENGAGEMENT_TYPES,
    ActingUser,
    Engagement,
    EngagementTarget,
)

MAX_CONTENT_LENGTH = 1000
CONTENT_REQUIRED_TYPES = ("comment", "tag")


def validate_target(target: Optional[EngagementTarget]) -> EngagementTarget:
    if target is None or bool(target.dare_id) == bool(target.completed_dare_id):
        raise ValidationError("Must specify either dare_id or completed_dare_id")
    return target


def _require_user(acting_user: Optional[ActingUser]) -> ActingUser:
    if acting_user is None or not acting_user.user_id:
        raise AuthenticationRequiredError("Authentication required")
    return acting_user


def _validate_type(engagement_type: Optional[str]) -> str:
    if not engagement_type:
        raise ValidationError("Engagement type is required")
    if engagement_type not in ENGAGEMENT_TYPES:
        raise ValidationError(f"Invalid engagement type: {engagement_type}")
    return engagement_type


def _clean_content(engagement_type: str, content: Optional[str]) -> Optional[str]:
    cleaned = (content or "").strip() or None
    if engagement_type in CONTENT_REQUIRED_TYPES and not cleaned:
        raise ValidationError(f"Content is required for {engagement_type}")
    if cleaned and len(cleaned) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Content must be at most {MAX_CONTENT_LENGTH} characters")
    return cleaned


def _target_column(target: EngagementTarget):
    if target.dare_id:
        return dare_engagements.c.dare_id
    return dare_engagements.c.completed_dare_id


def _row_to_engagement(row, author: Optional[dict] = None) -> Engagement:
    return Engagement(
        id=row.id,
        user_id=row.user_id,
        dare_id=row.dare_id,
        completed_dare_id=row.completed_dare_id,
        engagement_type=row.engagement_type,
        content=row.content,
        created_at=ensure_utc(row.created_at),
        author=author,
    )


class EngagementLedger:
    """Create/delete engagements and keep target counters in step."""

    def __init__(self, dares: Optional[DareStore] = None, completions: Optional[CompletionStore] = None):
        self.dares = dares or dare_store
        self.completions = completions or completion_store

    def create_engagement(
        self,
        acting_user: Optional[ActingUser],
        target: Optional[EngagementTarget],
        engagement_type: Optional[str],
        content: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Engagement:
        user = _require_user(acting_user)
        etype = _validate_type(engagement_type)
        tgt = validate_target(target)
        text = _clean_content(etype, content)
        created_at = ensure_utc(now) if now is not None else utc_now()

        def _unit(session: Session) -> Engagement:
            self._ensure_target_active(session, tgt)

            if etype in UNIQUE_ENGAGEMENT_TYPES and self._find(session, user.user_id, tgt, etype):
                raise ConflictError(f"Already {_past_tense(etype)} this {tgt.kind}")

            engagement_id = str(uuid4())
            try:
                session.execute(
                    insert(dare_engagements).values(
                        id=engagement_id,
                        user_id=user.user_id,
                        dare_id=tgt.dare_id,
                        completed_dare_id=tgt.completed_dare_id,
                        engagement_type=etype,
                        content=text,
                        created_at=created_at,
                    )
                )
            except IntegrityError:
                # Lost a race against a concurrent identical smile/tag
                raise ConflictError(f"Already {_past_tense(etype)} this {tgt.kind}")

            column = COUNTER_COLUMNS.get(etype)
            if column:
                apply_counter_delta(session, tgt.kind, tgt.target_id, column, +1)

            author = get_profiles([user.user_id], session=session).get(user.user_id)
            if author and not author.get("display_name") and user.display_name:
                author = {**author, "display_name": user.display_name}
            return Engagement(
                id=engagement_id,
                user_id=user.user_id,
                dare_id=tgt.dare_id,
                completed_dare_id=tgt.completed_dare_id,
                engagement_type=etype,
                content=text,
                created_at=created_at,
                author=author,
            )

        engagement = run_with_retries(_unit, operation="engagement.create")
        dare_engagements_total.inc(labels={"type": etype, "action": "create"})
        log_event(
            "info",
            "engagement.created",
            user_id=user.user_id,
            dare_id=tgt.dare_id,
            completed_dare_id=tgt.completed_dare_id,
            event_type=f"engagement.{etype}",
        )
        return engagement

    def delete_engagement(
        self,
        acting_user: Optional[ActingUser],
        target: Optional[EngagementTarget],
        engagement_type: Optional[str],
    ) -> Dict[str, object]:
        """Remove a smile/tag; returns {"deleted": bool}. Absent records are a no-op."""
        user = _require_user(acting_user)
        etype = _validate_type(engagement_type)
        if etype not in UNIQUE_ENGAGEMENT_TYPES:
            raise ValidationError(f"{etype} engagements cannot be removed")
        tgt = validate_target(target)

        def _unit(session: Session) -> bool:
            result = session.execute(
                delete(dare_engagements)
                .where(dare_engagements.c.user_id == user.user_id)
                .where(dare_engagements.c.engagement_type == etype)
                .where(_target_column(tgt) == tgt.target_id)
            )
            removed = result.rowcount or 0
            column = COUNTER_COLUMNS.get(etype)
            if removed and column:
                apply_counter_delta(session, tgt.kind, tgt.target_id, column, -removed)
            return bool(removed)

        deleted = run_with_retries(_unit, operation="engagement.delete")
        if deleted:
            dare_engagements_total.inc(labels={"type": etype, "action": "delete"})
            log_event(
                "info",
                "engagement.deleted",
                user_id=user.user_id,
                dare_id=tgt.dare_id,
                completed_dare_id=tgt.completed_dare_id,
                event_type=f"engagement.{etype}",
            )
        return {"deleted": deleted}

    def has_engaged(self, user_id: str, target: EngagementTarget, engagement_type: str) -> bool:
        tgt = validate_target(target)
        with session_scope() as session:
            return self._find(session, user_id, tgt, engagement_type) is not None

    def list_comments(
        self, target: Optional[EngagementTarget], *, limit: int = 50, offset: int = 0
    ) -> List[Engagement]:
        """Comments on a target, newest first, with author identity attached."""
        tgt = validate_target(target)
        stmt = (
            select(dare_engagements)
            .where(_target_column(tgt) == tgt.target_id)
            .where(dare_engagements.c.engagement_type == "comment")
            .order_by(dare_engagements.c.created_at.desc(), dare_engagements.c.id.asc())
            .offset(offset)
            .limit(limit)
        )
        with session_scope() as session:
            rows = session.execute(stmt).fetchall()
            authors = get_profiles([r.user_id for r in rows], session=session)
        return [_row_to_engagement(r, authors.get(r.user_id)) for r in rows]

    # Internal helpers -------------------------------------------------
    def _ensure_target_active(self, session: Session, target: EngagementTarget) -> None:
        if target.dare_id:
            if self.dares.get(target.dare_id, session=session) is None:
                raise NotFoundError("Dare not found")
        elif self.completions.get(target.completed_dare_id, session=session) is None:
            raise NotFoundError("Completed dare not found")

    @staticmethod
    def _find(session: Session, user_id: str, target: EngagementTarget, engagement_type: str):
        return session.execute(
            select(dare_engagements.c.id)
            .where(dare_engagements.c.user_id == user_id)
            .where(dare_engagements.c.engagement_type == engagement_type)
            .where(_target_column(target) == target.target_id)
        ).first()


def _past_tense(engagement_type: str) -> str:
    return {"smile": "smiled at", "tag": "tagged someone on"}.get(engagement_type, engagement_type)


engagement_ledger = EngagementLedger()
