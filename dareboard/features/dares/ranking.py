"""
Read-only rankings over active dares and completions.

- expiring_soon: open dares closing within the window, soonest first.
- trending: weighted engagement score, ties broken by created_at desc then
  id asc so unchanged data always yields the same order.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional, Union

from sqlalchemy import select

from dareboard.core.config import settings
from dareboard.core.database import completed_dares, dares
from dareboard.features.dares.store import row_to_completion, row_to_dare, session_scope, visible_parent_clause
from dareboard.features.dares.timeutils import ensure_utc, utc_now
from dareboard.models.dare import Aggregates, CompletedDare, Dare

RankKind = Literal["dares", "completions"]


def score_weights(kind: RankKind = "dares") -> Dict[str, int]:
    weights = {
        "completion_count": settings.TRENDING_WEIGHT_COMPLETIONS,
        "smile_count": settings.TRENDING_WEIGHT_SMILES,
        "comment_count": settings.TRENDING_WEIGHT_COMMENTS,
        "share_count": settings.TRENDING_WEIGHT_SHARES,
    }
    if kind == "completions":
        weights.pop("completion_count")
    return weights


def engagement_score(aggregates: Aggregates, kind: RankKind = "dares") -> int:
    return sum(getattr(aggregates, name) * weight for name, weight in score_weights(kind).items())


def _score_expression(table, kind: RankKind):
    terms = [table.c[name] * weight for name, weight in score_weights(kind).items()]
    return sum(terms[1:], terms[0])


def expiring_soon(
    hours_ahead: int = 24,
    *,
    now: Optional[datetime] = None,
    vibe: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dare]:
    """Active dares with 0 < expiry - now <= hours_ahead, soonest first."""
    current = ensure_utc(now) if now is not None else utc_now()
    horizon = current + timedelta(hours=hours_ahead)
    stmt = (
        select(dares)
        .where(dares.c.is_active.is_(True))
        .where(dares.c.expiry_date > current)
        .where(dares.c.expiry_date <= horizon)
        .order_by(dares.c.expiry_date.asc(), dares.c.id.asc())
    )
    if vibe:
        stmt = stmt.where(dares.c.vibe == vibe)
    if limit is not None:
        stmt = stmt.limit(limit)
    with session_scope() as session:
        rows = session.execute(stmt).fetchall()
    return [row_to_dare(r) for r in rows]


def trending(
    limit: int = 20,
    *,
    kind: RankKind = "dares",
    now: Optional[datetime] = None,
    vibe: Optional[str] = None,
    offset: int = 0,
) -> List[Union[Dare, CompletedDare]]:
    """Top ``limit`` active dares (still open) or active completions by engagement score."""
    if kind not in ("dares", "completions"):
        raise ValueError(f"Unknown ranking kind: {kind}")
    if limit <= 0:
        return []
    current = ensure_utc(now) if now is not None else utc_now()

    if kind == "dares":
        table = dares
        stmt = (
            select(dares)
            .where(dares.c.is_active.is_(True))
            .where(dares.c.expiry_date > current)
        )
        if vibe:
            stmt = stmt.where(dares.c.vibe == vibe)
        convert = row_to_dare
    else:
        table = completed_dares
        stmt = (
            select(completed_dares)
            .where(completed_dares.c.is_active.is_(True))
            .where(visible_parent_clause())
        )
        convert = row_to_completion

    # score desc, created_at desc, id asc
    stmt = stmt.order_by(
        _score_expression(table, kind).desc(),
        table.c.created_at.desc(),
        table.c.id.asc(),
    ).limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    with session_scope() as session:
        rows = session.execute(stmt).fetchall()
    return [convert(r) for r in rows]
