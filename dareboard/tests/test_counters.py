"""Relative counter writes and unit-of-work retries."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from dareboard.core.database import get_db_session
from dareboard.core.errors import NotFoundError, TransientStoreError, ValidationError
from dareboard.core.metrics import counter_write_retries_total, store_retries_total
from dareboard.features.dares.counters import apply_counter_delta, backoff_seconds, run_with_retries
from dareboard.tests.mocks import counter, make_dare, set_counters


@pytest.mark.parametrize("strategy", ["atomic", "optimistic"])
def test_delta_is_relative(strategy, fixed_now):
    dare = make_dare(fixed_now)
    set_counters("dare", dare.id, smile_count=4)

    with get_db_session() as session:
        apply_counter_delta(session, "dare", dare.id, "smile_count", +1, strategy=strategy)
        apply_counter_delta(session, "dare", dare.id, "smile_count", +1, strategy=strategy)
        apply_counter_delta(session, "dare", dare.id, "smile_count", -1, strategy=strategy)

    assert counter("dare", dare.id, "smile_count") == 5


@pytest.mark.parametrize("strategy", ["atomic", "optimistic"])
def test_counter_floors_at_zero(strategy, fixed_now):
    dare = make_dare(fixed_now)
    with get_db_session() as session:
        apply_counter_delta(session, "dare", dare.id, "share_count", -1, strategy=strategy)
    assert counter("dare", dare.id, "share_count") == 0


@pytest.mark.parametrize("strategy", ["atomic", "optimistic"])
def test_unknown_record_raises_not_found(strategy):
    with pytest.raises(NotFoundError):
        with get_db_session() as session:
            apply_counter_delta(session, "dare", "missing", "smile_count", +1, strategy=strategy)


def test_completion_has_no_completion_counter():
    with pytest.raises(ValueError):
        with get_db_session() as session:
            apply_counter_delta(session, "completion", "x", "completion_count", +1)


def test_optimistic_retries_then_gives_up():
    """Every conditional write loses the race: TransientStoreError after max attempts."""
    session = MagicMock()
    read = MagicMock()
    read.scalar.return_value = 3
    lost = MagicMock()
    lost.rowcount = 0
    session.execute.side_effect = [read, lost, read, lost, read, lost]
    before = counter_write_retries_total.value({"strategy": "optimistic"})

    with pytest.raises(TransientStoreError):
        apply_counter_delta(session, "dare", "d1", "smile_count", +1, strategy="optimistic", max_attempts=3)

    assert session.execute.call_count == 6
    assert counter_write_retries_total.value({"strategy": "optimistic"}) == before + 3


def test_optimistic_succeeds_after_one_conflict():
    session = MagicMock()
    first_read, second_read = MagicMock(), MagicMock()
    first_read.scalar.return_value = 3
    second_read.scalar.return_value = 4  # someone else incremented
    lost, won = MagicMock(), MagicMock()
    lost.rowcount = 0
    won.rowcount = 1
    session.execute.side_effect = [first_read, lost, second_read, won]

    apply_counter_delta(session, "dare", "d1", "smile_count", +1, strategy="optimistic", max_attempts=3)

    assert session.execute.call_count == 4


def test_backoff_is_exponential():
    assert backoff_seconds(0, base_ms=50) == pytest.approx(0.05)
    assert backoff_seconds(1, base_ms=50) == pytest.approx(0.1)
    assert backoff_seconds(3, base_ms=50) == pytest.approx(0.4)


def test_run_with_retries_replays_transient_failures():
    calls = []
    sleeps = []

    def unit(session):
        calls.append(session)
        if len(calls) < 3:
            raise OperationalError("UPDATE dares", {}, Exception("database is locked"))
        return "ok"

    before = store_retries_total.value()
    result = run_with_retries(unit, attempts=3, backoff_ms=10, sleep=sleeps.append)

    assert result == "ok"
    assert len(calls) == 3
    # Each attempt gets a fresh session
    assert calls[0] is not calls[1]
    assert sleeps == [pytest.approx(0.01), pytest.approx(0.02)]
    assert store_retries_total.value() == before + 2


def test_run_with_retries_surfaces_transient_error():
    sleeps = []

    def unit(session):
        raise TransientStoreError("contention")

    with pytest.raises(TransientStoreError):
        run_with_retries(unit, attempts=2, backoff_ms=10, sleep=sleeps.append)
    assert len(sleeps) == 1


def test_run_with_retries_does_not_retry_domain_errors():
    calls = []

    def unit(session):
        calls.append(1)
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        run_with_retries(unit, attempts=3, backoff_ms=0, sleep=lambda s: None)
    assert calls == [1]
