"""
Denormalised engagement counters on dares and completions.

Counters are only ever changed by a relative delta, never overwritten from a
value read earlier in a request:

- ``atomic``: one ``UPDATE ... SET col = col + :delta`` statement.
- ``optimistic``: read the counter, write ``WHERE col = :observed``, and
  re-read/retry when a concurrent writer got there first.

``run_with_retries`` wraps a whole unit of work (ledger insert + counter
delta) so a transient store failure rolls back both halves and the unit is
replayed in a fresh session with exponential backoff.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import case, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from dareboard.core.config import settings
from dareboard.core.database import completed_dares, dares, get_db_session
from dareboard.core.errors import NotFoundError, TransientStoreError
from dareboard.core.metrics import counter_write_retries_total, store_retries_total

logger = logging.getLogger("dareboard.counters")

T = TypeVar("T")

_TABLES = {
    "dare": dares,
    "completion": completed_dares,
}

_COLUMNS = {
    "dare": {"completion_count", "smile_count", "comment_count", "share_count"},
    "completion": {"smile_count", "comment_count", "share_count"},
}


def _resolve(kind: str, column: str):
    table = _TABLES.get(kind)
    if table is None:
        raise ValueError(f"Unknown counter owner: {kind}")
    if column not in _COLUMNS[kind]:
        raise ValueError(f"{kind} has no counter {column}")
    return table, table.c[column]


def apply_counter_delta(
    session: Session,
    kind: str,
    record_id: str,
    column: str,
    delta: int,
    *,
    strategy: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> None:
    """Add ``delta`` to a counter inside the caller's transaction.

    Counters never drop below zero. Raises NotFoundError when the record does
    not exist and TransientStoreError when optimistic writes keep losing.
    """
    if delta == 0:
        return
    mode = (strategy or settings.COUNTER_STRATEGY).lower()
    if mode == "optimistic":
        _apply_optimistic(session, kind, record_id, column, delta, max_attempts or settings.COUNTER_MAX_ATTEMPTS)
    else:
        _apply_atomic(session, kind, record_id, column, delta)


def _apply_atomic(session: Session, kind: str, record_id: str, column: str, delta: int) -> None:
    table, col = _resolve(kind, column)
    result = session.execute(
        update(table)
        .where(table.c.id == record_id)
        .values({column: case((col + delta < 0, 0), else_=col + delta)})
    )
    if not result.rowcount:
        raise NotFoundError(f"{kind} {record_id} not found")


def _apply_optimistic(
    session: Session, kind: str, record_id: str, column: str, delta: int, max_attempts: int
) -> None:
    table, col = _resolve(kind, column)
    for attempt in range(max_attempts):
        observed = session.execute(select(col).where(table.c.id == record_id)).scalar()
        if observed is None:
            raise NotFoundError(f"{kind} {record_id} not found")

        result = session.execute(
            update(table)
            .where(table.c.id == record_id)
            .where(col == observed)
            .values({column: max(0, observed + delta)})
        )
        if result.rowcount:
            return

        counter_write_retries_total.inc(labels={"strategy": "optimistic"})
        logger.debug(
            "counter.write_conflict",
            extra={"event_type": f"{kind}.{column}", "attempt": attempt + 1},
        )

    raise TransientStoreError(f"Could not update {column} on {kind} {record_id} after {max_attempts} attempts")


def backoff_seconds(attempt: int, base_ms: Optional[int] = None) -> float:
    base = settings.STORE_RETRY_BACKOFF_MS if base_ms is None else base_ms
    return (base * (2 ** attempt)) / 1000.0


def run_with_retries(
    fn: Callable[[Session], T],
    *,
    attempts: Optional[int] = None,
    backoff_ms: Optional[int] = None,
    operation: str = "store.write",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn(session)`` in its own transaction, replaying it on transient failures.

    Domain errors (validation, conflict, not found) propagate immediately.
    """
    total = attempts or settings.STORE_RETRY_ATTEMPTS
    last_error: Optional[Exception] = None
    for attempt in range(total):
        try:
            with get_db_session() as session:
                return fn(session)
        except (OperationalError, TransientStoreError) as exc:
            last_error = exc
            store_retries_total.inc()
            logger.warning(
                f"[{operation}] transient store failure (attempt {attempt + 1}/{total}): {exc}",
                extra={"event_type": operation},
            )
            if attempt + 1 < total:
                sleep(backoff_seconds(attempt, backoff_ms))

    raise TransientStoreError(f"{operation} failed after {total} attempts") from last_error
