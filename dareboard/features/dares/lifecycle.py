"""
Dare lifecycle sweep.

Run periodically (see workers/dare_sweep.py or POST /v1/dares/cleanup). The
sweep keeps no state of its own: every decision is a function of the stored
records and the clock, and every write is a conditional UPDATE that re-checks
its rule, so overlapping or repeated runs never deactivate (or count) the same
record twice.

Per run:
1. expire: active dares with expiry <= now stop accepting completions
   (is_active=False, reason "expired").
2. prune dares: dares at least low_engagement_days past expiry with fewer
   than min_completions completions are hidden for good
   (reason "low_engagement").
3. prune completions: active completions at least completion_low_smiles_days
   old with fewer than min_smiles smiles are hidden (reason "low_smiles").

A failure on one record is logged and skipped; the rest of the run carries on.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import insert, select

from dareboard.core.config import settings
from dareboard.core.database import dare_sweep_runs
from dareboard.core.metrics import (
    dare_sweep_deactivations_total,
    dare_sweep_failures_total,
    dare_sweep_last_run_timestamp,
)
from dareboard.features.dares.store import (
    CompletionFilter,
    CompletionStore,
    DareFilter,
    DareStore,
    completion_store,
    dare_store,
    session_scope,
)
from dareboard.features.dares.timeutils import ensure_utc, utc_now
from dareboard.models.dare import SweepResult

logger = logging.getLogger("dareboard.lifecycle")


@dataclass(frozen=True)
class LifecycleConfig:
    dare_expiry_days: int = 3
    low_engagement_days: int = 7
    completion_low_smiles_days: int = 3
    min_completions: int = 10
    min_smiles: int = 10

    @classmethod
    def from_settings(cls, cfg=None) -> "LifecycleConfig":
        cfg = cfg or settings
        return cls(
            dare_expiry_days=cfg.DARE_EXPIRY_DAYS,
            low_engagement_days=cfg.DARE_LOW_ENGAGEMENT_DAYS,
            completion_low_smiles_days=cfg.COMPLETION_LOW_SMILES_DAYS,
            min_completions=cfg.DARE_MIN_COMPLETIONS,
            min_smiles=cfg.COMPLETION_MIN_SMILES,
        )


class LifecycleManager:
    def __init__(
        self,
        config: Optional[LifecycleConfig] = None,
        dares: Optional[DareStore] = None,
        completions: Optional[CompletionStore] = None,
    ):
        self.config = config
        self.dares = dares or dare_store
        self.completions = completions or completion_store

    def run_sweep(self, now: Optional[datetime] = None, *, record_run: bool = True) -> SweepResult:
        cfg = self.config or LifecycleConfig.from_settings()
        current = ensure_utc(now) if now is not None else utc_now()
        started = time.perf_counter()
        result = SweepResult(ran_at=current)

        # 1. Expire
        for dare in self.dares.list_active(DareFilter(expired_at=current)):
            if self._apply(result, "dare", dare.id, lambda d=dare: self.dares.expire(d.id, now=current)):
                result.expired_dares += 1

        # 2. Prune low-engagement dares
        grace_cutoff = current - timedelta(days=cfg.low_engagement_days)
        for dare in self.dares.list_prunable(expired_before=grace_cutoff, min_completions=cfg.min_completions):
            changed = self._apply(
                result,
                "dare",
                dare.id,
                lambda d=dare: self.dares.prune_low_engagement(
                    d.id,
                    expired_before=grace_cutoff,
                    min_completions=cfg.min_completions,
                    now=current,
                ),
            )
            if changed:
                result.low_engagement_dares += 1

        # 3. Prune low-smile completions
        age_cutoff = current - timedelta(days=cfg.completion_low_smiles_days)
        candidates = self.completions.list_active(
            CompletionFilter(created_before=age_cutoff, max_smiles_exclusive=cfg.min_smiles)
        )
        for completion in candidates:
            changed = self._apply(
                result,
                "completion",
                completion.id,
                lambda c=completion: self.completions.prune_low_smiles(
                    c.id,
                    created_before=age_cutoff,
                    min_smiles=cfg.min_smiles,
                    now=current,
                ),
            )
            if changed:
                result.low_smiles_completions += 1

        duration_ms = int((time.perf_counter() - started) * 1000)
        self._record_metrics(result)
        logger.info(
            "[sweep] dare lifecycle sweep complete",
            extra={
                "event_type": "dare.sweep",
                "expired_dares": result.expired_dares,
                "low_engagement_dares": result.low_engagement_dares,
                "low_smiles_completions": result.low_smiles_completions,
                "failures": result.failures,
                "duration_ms": duration_ms,
            },
        )
        if record_run:
            self._record_run(result, duration_ms)
        return result

    @staticmethod
    def _apply(result: SweepResult, kind: str, record_id: str, action: Callable[[], bool]) -> bool:
        try:
            return bool(action())
        except Exception:
            result.failures += 1
            result.failed_ids.append(record_id)
            logger.exception(
                f"[sweep] failed to update {kind} {record_id}; skipping",
                extra={"event_type": "dare.sweep.record_failed"},
            )
            return False

    @staticmethod
    def _record_metrics(result: SweepResult) -> None:
        dare_sweep_deactivations_total.inc(labels={"category": "expired_dares"}, amount=result.expired_dares)
        dare_sweep_deactivations_total.inc(
            labels={"category": "low_engagement_dares"}, amount=result.low_engagement_dares
        )
        dare_sweep_deactivations_total.inc(
            labels={"category": "low_smiles_completions"}, amount=result.low_smiles_completions
        )
        if result.failures:
            dare_sweep_failures_total.inc(amount=result.failures)
        if result.ran_at is not None:
            dare_sweep_last_run_timestamp.set(result.ran_at.timestamp())

    @staticmethod
    def _record_run(result: SweepResult, duration_ms: int) -> None:
        try:
            with session_scope() as session:
                session.execute(
                    insert(dare_sweep_runs).values(
                        ran_at=result.ran_at,
                        expired_dares=result.expired_dares,
                        low_engagement_dares=result.low_engagement_dares,
                        low_smiles_completions=result.low_smiles_completions,
                        failures=result.failures,
                        duration_ms=duration_ms,
                    )
                )
        except Exception as e:
            logger.warning(f"[sweep] could not record sweep run: {e}")


def last_sweep_run() -> Optional[Dict]:
    with session_scope() as session:
        row = session.execute(
            select(dare_sweep_runs).order_by(dare_sweep_runs.c.ran_at.desc(), dare_sweep_runs.c.id.desc()).limit(1)
        ).first()
    if not row:
        return None
    return {
        "ran_at": ensure_utc(row.ran_at).isoformat(),
        "expired_dares": row.expired_dares,
        "low_engagement_dares": row.low_engagement_dares,
        "low_smiles_completions": row.low_smiles_completions,
        "failures": row.failures,
        "duration_ms": row.duration_ms,
    }


def run_sweep(now: Optional[datetime] = None, config: Optional[LifecycleConfig] = None) -> SweepResult:
    """Entry point for schedulers: one idempotent sweep."""
    return LifecycleManager(config=config).run_sweep(now)


def sweep_history(limit: int = 10) -> List[Dict]:
    with session_scope() as session:
        rows = session.execute(
            select(dare_sweep_runs).order_by(dare_sweep_runs.c.ran_at.desc(), dare_sweep_runs.c.id.desc()).limit(limit)
        ).fetchall()
    return [
        {
            "ran_at": ensure_utc(r.ran_at).isoformat(),
            "expired_dares": r.expired_dares,
            "low_engagement_dares": r.low_engagement_dares,
            "low_smiles_completions": r.low_smiles_completions,
            "failures": r.failures,
        }
        for r in rows
    ]
