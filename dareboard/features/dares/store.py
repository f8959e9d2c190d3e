"""
dareboard/features/dares/store.py

Persistence for dares and completions (SQLAlchemy Core).

Both stores are thin accessors: soft delete via ``is_active``, counters read
as ``Aggregates``. Every method accepts an optional ``session`` so callers can
compose several calls into one transaction; without one, a short-lived
session is opened.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.orm import Session

from dareboard.core.database import completed_dares, dares, get_db_session, profiles
from dareboard.features.dares.timeutils import ensure_utc, utc_now
from dareboard.models.dare import Aggregates, CompletedDare, Dare


@contextmanager
def session_scope(session: Optional[Session] = None) -> Iterator[Session]:
    """Reuse the caller's session, or open (and commit) a new one."""
    if session is not None:
        yield session
        return
    with get_db_session() as owned:
        yield owned


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def row_to_dare(row) -> Dare:
    return Dare(
        id=row.id,
        creator_id=row.creator_id,
        title=row.title,
        description=row.description,
        hashtag=row.hashtag,
        vibe=row.vibe,
        expiry_date=ensure_utc(row.expiry_date),
        created_at=ensure_utc(row.created_at),
        is_active=bool(row.is_active),
        deactivation_reason=row.deactivation_reason,
        deactivated_at=_utc_or_none(row.deactivated_at),
        completion_count=row.completion_count or 0,
        smile_count=row.smile_count or 0,
        comment_count=row.comment_count or 0,
        share_count=row.share_count or 0,
    )


def row_to_completion(row) -> CompletedDare:
    return CompletedDare(
        id=row.id,
        dare_id=row.dare_id,
        completer_id=row.completer_id,
        media_urls=list(row.media_urls or []),
        caption=row.caption,
        location=row.location,
        created_at=ensure_utc(row.created_at),
        is_active=bool(row.is_active),
        deactivation_reason=row.deactivation_reason,
        deactivated_at=_utc_or_none(row.deactivated_at),
        smile_count=row.smile_count or 0,
        comment_count=row.comment_count or 0,
        share_count=row.share_count or 0,
    )


@dataclass
class DareFilter:
    vibe: Optional[str] = None
    creator_id: Optional[str] = None
    # Only dares whose expiry is after this instant (still open)
    open_at: Optional[datetime] = None
    # Only dares whose expiry is at or before this instant
    expired_at: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class CompletionFilter:
    dare_id: Optional[str] = None
    completer_id: Optional[str] = None
    created_before: Optional[datetime] = None
    max_smiles_exclusive: Optional[int] = None
    # Skip completions whose dare was deleted or pruned
    visible_parent_only: bool = False
    limit: Optional[int] = None
    offset: int = 0


class DareStore:
    """Dares table accessors."""

    def insert(self, dare: Dare, *, session: Optional[Session] = None) -> Dare:
        with session_scope(session) as s:
            s.execute(
                insert(dares).values(
                    id=dare.id,
                    creator_id=dare.creator_id,
                    title=dare.title,
                    description=dare.description,
                    hashtag=dare.hashtag,
                    vibe=dare.vibe,
                    expiry_date=ensure_utc(dare.expiry_date),
                    created_at=ensure_utc(dare.created_at),
                    is_active=dare.is_active,
                    completion_count=dare.completion_count,
                    smile_count=dare.smile_count,
                    comment_count=dare.comment_count,
                    share_count=dare.share_count,
                )
            )
        return dare

    def get(self, dare_id: str, *, include_inactive: bool = False, session: Optional[Session] = None) -> Optional[Dare]:
        stmt = select(dares).where(dares.c.id == dare_id)
        if not include_inactive:
            stmt = stmt.where(dares.c.is_active.is_(True))
        with session_scope(session) as s:
            row = s.execute(stmt).first()
        return row_to_dare(row) if row else None

    def list_active(self, filters: Optional[DareFilter] = None, *, session: Optional[Session] = None) -> List[Dare]:
        """Active dares, newest first."""
        f = filters or DareFilter()
        stmt = select(dares).where(dares.c.is_active.is_(True))
        if f.vibe:
            stmt = stmt.where(dares.c.vibe == f.vibe)
        if f.creator_id:
            stmt = stmt.where(dares.c.creator_id == f.creator_id)
        if f.open_at is not None:
            stmt = stmt.where(dares.c.expiry_date > ensure_utc(f.open_at))
        if f.expired_at is not None:
            stmt = stmt.where(dares.c.expiry_date <= ensure_utc(f.expired_at))
        stmt = stmt.order_by(dares.c.created_at.desc(), dares.c.id.asc())
        if f.offset:
            stmt = stmt.offset(f.offset)
        if f.limit is not None:
            stmt = stmt.limit(f.limit)
        with session_scope(session) as s:
            rows = s.execute(stmt).fetchall()
        return [row_to_dare(r) for r in rows]

    def list_prunable(
        self, *, expired_before: datetime, min_completions: int, session: Optional[Session] = None
    ) -> List[Dare]:
        """Dares past the grace cutoff with too few completions, not yet pruned."""
        stmt = (
            select(dares)
            .where(self._prunable_clause(expired_before, min_completions))
            .order_by(dares.c.expiry_date.asc(), dares.c.id.asc())
        )
        with session_scope(session) as s:
            rows = s.execute(stmt).fetchall()
        return [row_to_dare(r) for r in rows]

    @staticmethod
    def _prunable_clause(expired_before: datetime, min_completions: int):
        return and_(
            dares.c.expiry_date <= ensure_utc(expired_before),
            dares.c.completion_count < min_completions,
            or_(
                dares.c.is_active.is_(True),
                dares.c.deactivation_reason == "expired",
            ),
        )

    def set_active(
        self,
        dare_id: str,
        active: bool,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> bool:
        """Soft delete (or restore). Idempotent; returns True if the row changed."""
        return _set_active(dares, dare_id, active, reason=reason, now=now, session=session)

    def expire(self, dare_id: str, *, now: datetime, session: Optional[Session] = None) -> bool:
        """Deactivate an active dare whose expiry has passed."""
        stmt = (
            update(dares)
            .where(dares.c.id == dare_id)
            .where(dares.c.is_active.is_(True))
            .where(dares.c.expiry_date <= ensure_utc(now))
            .values(is_active=False, deactivation_reason="expired", deactivated_at=ensure_utc(now))
        )
        with session_scope(session) as s:
            return bool(s.execute(stmt).rowcount)

    def prune_low_engagement(
        self,
        dare_id: str,
        *,
        expired_before: datetime,
        min_completions: int,
        now: datetime,
        session: Optional[Session] = None,
    ) -> bool:
        """Hide a dare judged on engagement; re-checks the rule in the UPDATE itself."""
        stmt = (
            update(dares)
            .where(dares.c.id == dare_id)
            .where(self._prunable_clause(expired_before, min_completions))
            .values(is_active=False, deactivation_reason="low_engagement", deactivated_at=ensure_utc(now))
        )
        with session_scope(session) as s:
            return bool(s.execute(stmt).rowcount)

    def get_aggregates(self, dare_id: str, *, session: Optional[Session] = None) -> Optional[Aggregates]:
        stmt = select(
            dares.c.completion_count,
            dares.c.smile_count,
            dares.c.comment_count,
            dares.c.share_count,
        ).where(dares.c.id == dare_id)
        with session_scope(session) as s:
            row = s.execute(stmt).first()
        if not row:
            return None
        return Aggregates(
            completion_count=row.completion_count or 0,
            smile_count=row.smile_count or 0,
            comment_count=row.comment_count or 0,
            share_count=row.share_count or 0,
        )

    def get_created_at(self, dare_id: str, *, session: Optional[Session] = None) -> Optional[datetime]:
        with session_scope(session) as s:
            value = s.execute(select(dares.c.created_at).where(dares.c.id == dare_id)).scalar()
        return _utc_or_none(value)

    def get_expiry(self, dare_id: str, *, session: Optional[Session] = None) -> Optional[datetime]:
        with session_scope(session) as s:
            value = s.execute(select(dares.c.expiry_date).where(dares.c.id == dare_id)).scalar()
        return _utc_or_none(value)


class CompletionStore:
    """Completed dares table accessors."""

    def insert(self, completion: CompletedDare, *, session: Optional[Session] = None) -> CompletedDare:
        with session_scope(session) as s:
            s.execute(
                insert(completed_dares).values(
                    id=completion.id,
                    dare_id=completion.dare_id,
                    completer_id=completion.completer_id,
                    media_urls=list(completion.media_urls),
                    caption=completion.caption,
                    location=completion.location,
                    created_at=ensure_utc(completion.created_at),
                    is_active=completion.is_active,
                    smile_count=completion.smile_count,
                    comment_count=completion.comment_count,
                    share_count=completion.share_count,
                )
            )
        return completion

    def get(
        self, completed_dare_id: str, *, include_inactive: bool = False, session: Optional[Session] = None
    ) -> Optional[CompletedDare]:
        stmt = select(completed_dares).where(completed_dares.c.id == completed_dare_id)
        if not include_inactive:
            stmt = stmt.where(completed_dares.c.is_active.is_(True))
        with session_scope(session) as s:
            row = s.execute(stmt).first()
        return row_to_completion(row) if row else None

    def list_active(
        self, filters: Optional[CompletionFilter] = None, *, session: Optional[Session] = None
    ) -> List[CompletedDare]:
        """Active completions, newest first."""
        f = filters or CompletionFilter()
        stmt = select(completed_dares).where(completed_dares.c.is_active.is_(True))
        if f.dare_id:
            stmt = stmt.where(completed_dares.c.dare_id == f.dare_id)
        if f.completer_id:
            stmt = stmt.where(completed_dares.c.completer_id == f.completer_id)
        if f.created_before is not None:
            stmt = stmt.where(completed_dares.c.created_at <= ensure_utc(f.created_before))
        if f.max_smiles_exclusive is not None:
            stmt = stmt.where(completed_dares.c.smile_count < f.max_smiles_exclusive)
        if f.visible_parent_only:
            stmt = stmt.where(visible_parent_clause())
        stmt = stmt.order_by(completed_dares.c.created_at.desc(), completed_dares.c.id.asc())
        if f.offset:
            stmt = stmt.offset(f.offset)
        if f.limit is not None:
            stmt = stmt.limit(f.limit)
        with session_scope(session) as s:
            rows = s.execute(stmt).fetchall()
        return [row_to_completion(r) for r in rows]

    def find_active_for_user(
        self, dare_id: str, user_id: str, *, session: Optional[Session] = None
    ) -> Optional[CompletedDare]:
        items = self.list_active(CompletionFilter(dare_id=dare_id, completer_id=user_id, limit=1), session=session)
        return items[0] if items else None

    def set_active(
        self,
        completed_dare_id: str,
        active: bool,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> bool:
        return _set_active(completed_dares, completed_dare_id, active, reason=reason, now=now, session=session)

    def prune_low_smiles(
        self,
        completed_dare_id: str,
        *,
        created_before: datetime,
        min_smiles: int,
        now: datetime,
        session: Optional[Session] = None,
    ) -> bool:
        """Hide an old completion that never gathered enough smiles."""
        stmt = (
            update(completed_dares)
            .where(completed_dares.c.id == completed_dare_id)
            .where(completed_dares.c.is_active.is_(True))
            .where(completed_dares.c.created_at <= ensure_utc(created_before))
            .where(completed_dares.c.smile_count < min_smiles)
            .values(is_active=False, deactivation_reason="low_smiles", deactivated_at=ensure_utc(now))
        )
        with session_scope(session) as s:
            return bool(s.execute(stmt).rowcount)

    def get_aggregates(self, completed_dare_id: str, *, session: Optional[Session] = None) -> Optional[Aggregates]:
        stmt = select(
            completed_dares.c.smile_count,
            completed_dares.c.comment_count,
            completed_dares.c.share_count,
        ).where(completed_dares.c.id == completed_dare_id)
        with session_scope(session) as s:
            row = s.execute(stmt).first()
        if not row:
            return None
        return Aggregates(
            smile_count=row.smile_count or 0,
            comment_count=row.comment_count or 0,
            share_count=row.share_count or 0,
        )

    def get_created_at(self, completed_dare_id: str, *, session: Optional[Session] = None) -> Optional[datetime]:
        with session_scope(session) as s:
            value = s.execute(
                select(completed_dares.c.created_at).where(completed_dares.c.id == completed_dare_id)
            ).scalar()
        return _utc_or_none(value)


def visible_parent_clause():
    """Completions stay listed while their dare is live or merely expired."""
    return completed_dares.c.dare_id.in_(
        select(dares.c.id).where(
            or_(dares.c.is_active.is_(True), dares.c.deactivation_reason == "expired")
        )
    )


def _set_active(table, record_id: str, active: bool, *, reason, now, session) -> bool:
    if active:
        stmt = (
            update(table)
            .where(table.c.id == record_id)
            .where(table.c.is_active.is_(False))
            .values(is_active=True, deactivation_reason=None, deactivated_at=None)
        )
    else:
        stmt = (
            update(table)
            .where(table.c.id == record_id)
            .where(table.c.is_active.is_(True))
            .values(
                is_active=False,
                deactivation_reason=reason,
                deactivated_at=ensure_utc(now or utc_now()),
            )
        )
    with session_scope(session) as s:
        return bool(s.execute(stmt).rowcount)


def get_profiles(user_ids: List[str], *, session: Optional[Session] = None) -> dict:
    """user_id -> {"display_name", "avatar_url"} for the given ids."""
    ids = sorted({u for u in user_ids if u})
    if not ids:
        return {}
    with session_scope(session) as s:
        rows = s.execute(select(profiles).where(profiles.c.user_id.in_(ids))).fetchall()
    found = {r.user_id: {"display_name": r.display_name, "avatar_url": r.avatar_url} for r in rows}
    return {uid: found.get(uid, {"display_name": None, "avatar_url": None}) for uid in ids}


dare_store = DareStore()
completion_store = CompletionStore()
