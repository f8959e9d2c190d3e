"""
Counter reconciliation.

Compares the denormalised counters on dares and completions with what the
ledger says they should be and reports the drift. completion_count counts
every completion ever recorded, so a completion pruned for low smiles still
counts toward its dare. With ``fix=True`` the drifted counters are
overwritten with the recounted value; this is the only place a counter is
ever written absolutely.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from dareboard.core.database import completed_dares, dare_engagements, dares, get_db_session
from dareboard.features.dares.timeutils import utc_now
from dareboard.models.dare import COUNTER_COLUMNS

logger = logging.getLogger("dareboard.reconciliation")


def _engagement_counts(db: Session, target_col) -> Dict[str, Dict[str, int]]:
    rows = db.execute(
        select(target_col, dare_engagements.c.engagement_type, func.count())
        .where(target_col.is_not(None))
        .group_by(target_col, dare_engagements.c.engagement_type)
    ).fetchall()
    counts: Dict[str, Dict[str, int]] = {}
    for target_id, etype, total in rows:
        column = COUNTER_COLUMNS.get(etype)
        if column:
            counts.setdefault(target_id, {})[column] = int(total)
    return counts


def _completion_counts(db: Session) -> Dict[str, int]:
    rows = db.execute(
        select(completed_dares.c.dare_id, func.count())
        .group_by(completed_dares.c.dare_id)
    ).fetchall()
    return {dare_id: int(total) for dare_id, total in rows}


def _drift(kind: str, row, expected: Dict[str, int], columns: List[str]) -> List[Dict]:
    found = []
    for column in columns:
        stored = getattr(row, column) or 0
        want = expected.get(column, 0)
        if stored != want:
            found.append(
                {
                    "kind": kind,
                    "id": row.id,
                    "column": column,
                    "stored": stored,
                    "expected": want,
                    "difference": want - stored,
                }
            )
    return found


def find_counter_drift(db: Session) -> List[Dict]:
    mismatches: List[Dict] = []

    dare_engagement_counts = _engagement_counts(db, dare_engagements.c.dare_id)
    completion_totals = _completion_counts(db)
    dare_columns = ["completion_count", "smile_count", "comment_count", "share_count"]
    for row in db.execute(select(dares.c.id, *[dares.c[c] for c in dare_columns])).fetchall():
        expected = dict(dare_engagement_counts.get(row.id, {}))
        expected["completion_count"] = completion_totals.get(row.id, 0)
        mismatches.extend(_drift("dare", row, expected, dare_columns))

    completion_engagement_counts = _engagement_counts(db, dare_engagements.c.completed_dare_id)
    completion_columns = ["smile_count", "comment_count", "share_count"]
    for row in db.execute(
        select(completed_dares.c.id, *[completed_dares.c[c] for c in completion_columns])
    ).fetchall():
        expected = completion_engagement_counts.get(row.id, {})
        mismatches.extend(_drift("completion", row, expected, completion_columns))

    return mismatches


def reconcile_counters(fix: bool = False) -> Dict:
    """
    Recount every counter from the ledger.

    Returns a report: {"checked_at", "mismatches", "fixed"}.
    """
    checked_at: datetime = utc_now()
    with get_db_session() as db:
        mismatches = find_counter_drift(db)
        fixed = 0
        if fix:
            for item in mismatches:
                table = dares if item["kind"] == "dare" else completed_dares
                db.execute(
                    update(table).where(table.c.id == item["id"]).values({item["column"]: item["expected"]})
                )
                fixed += 1

    if mismatches:
        logger.warning(
            f"[reconcile] {len(mismatches)} counter mismatches found (fixed={fixed})",
            extra={"event_type": "counters.drift_detected"},
        )
    else:
        logger.info("[reconcile] counters consistent", extra={"event_type": "counters.reconciled"})

    return {
        "checked_at": checked_at.isoformat(),
        "mismatches": mismatches,
        "fixed": fixed,
    }
