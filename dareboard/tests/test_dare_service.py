from datetime import timedelta
from unittest.mock import patch

import pytest

from dareboard.core.errors import (
    AuthenticationRequiredError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from dareboard.features.dares.service import DareService
from dareboard.features.dares.store import CompletionStore, completion_store, dare_store
from dareboard.features.dares.timeutils import format_remaining, is_expired, is_expiring_soon
from dareboard.tests.mocks import counter, make_completion, make_dare


@pytest.fixture
def service():
    return DareService()


def test_create_defaults_expiry_to_three_days(service, alice, fixed_now):
    dare = service.create_dare(
        alice, title="  Hug a tree ", description="Any tree", vibe="Chill", hashtag="#nature", now=fixed_now
    )
    assert dare.title == "Hug a tree"
    assert dare.hashtag == "nature"
    assert dare.expiry_date == fixed_now + timedelta(days=3)
    assert dare.created_at == fixed_now

    stored = dare_store.get(dare.id)
    assert stored.expiry_date == dare.expiry_date
    assert stored.creator_id == "alice"
    assert stored.is_active is True


@pytest.mark.parametrize(
    "fields",
    [
        {"title": "", "description": "d", "vibe": "Bold"},
        {"title": "t", "description": "  ", "vibe": "Bold"},
        {"title": "t", "description": "d", "vibe": "Angry"},
        {"title": "t" * 121, "description": "d", "vibe": "Bold"},
    ],
)
def test_create_validation(service, alice, fixed_now, fields):
    with pytest.raises(ValidationError):
        service.create_dare(alice, now=fixed_now, **fields)


def test_create_requires_user(service, fixed_now):
    with pytest.raises(AuthenticationRequiredError):
        service.create_dare(None, title="t", description="d", vibe="Bold", now=fixed_now)


def test_explicit_expiry_must_leave_minimum_lifetime(service, alice, fixed_now):
    with pytest.raises(ValidationError):
        service.create_dare(
            alice, title="t", description="d", vibe="Bold", expiry=fixed_now + timedelta(minutes=30), now=fixed_now
        )
    with pytest.raises(ValidationError):
        service.create_dare(
            alice, title="t", description="d", vibe="Bold", expiry=fixed_now - timedelta(days=1), now=fixed_now
        )
    dare = service.create_dare(
        alice, title="t", description="d", vibe="Bold", expiry=fixed_now + timedelta(hours=2), now=fixed_now
    )
    assert dare.expiry_date == fixed_now + timedelta(hours=2)


def test_bold_dare_scenario_timeline(alice, fixed_now):
    """Create, approach expiry, pass expiry."""
    dare = make_dare(fixed_now, creator="alice", vibe="Bold")

    assert is_expired(dare.expiry_date, fixed_now) is False
    assert is_expiring_soon(dare.expiry_date, fixed_now) is False

    almost = dare.expiry_date - timedelta(hours=1) + timedelta(seconds=1)
    assert is_expiring_soon(dare.expiry_date, almost) is True
    assert format_remaining(dare.expiry_date, almost) == "59m left"

    assert is_expired(dare.expiry_date, dare.expiry_date + timedelta(seconds=1)) is True


def test_get_dare_detail(service, fixed_now):
    dare = make_dare(fixed_now, creator="alice")
    make_completion(dare, "bob", fixed_now + timedelta(hours=1))

    detail = service.get_dare(dare.id, now=fixed_now + timedelta(days=2, hours=23))

    assert detail["id"] == dare.id
    assert detail["completion_count"] == 1
    assert detail["time_remaining"]["label"] == "1h 0m left"
    assert detail["time_remaining"]["is_expiring_soon"] is True
    assert [c["completer_id"] for c in detail["completed_dares"]] == ["bob"]


def test_get_missing_dare(service):
    with pytest.raises(NotFoundError):
        service.get_dare("missing")


def test_delete_creator_only(service, alice, bob, fixed_now):
    dare = make_dare(fixed_now, creator="alice")

    with pytest.raises(ForbiddenError):
        service.delete_dare(bob, dare.id)

    assert service.delete_dare(alice, dare.id, now=fixed_now) is True
    # Idempotent
    assert service.delete_dare(alice, dare.id, now=fixed_now) is False

    stored = dare_store.get(dare.id, include_inactive=True)
    assert stored.is_active is False
    assert stored.deactivation_reason == "deleted"
    assert stored.deactivated_at == fixed_now
    with pytest.raises(NotFoundError):
        service.get_dare(dare.id)


class TestComplete:
    def test_complete_increments_counter(self, service, bob, fixed_now):
        dare = make_dare(fixed_now)
        completion = service.complete_dare(
            bob, dare.id, media_urls=["https://cdn/a.jpg"], caption=" yes ", location="Park", now=fixed_now
        )
        assert completion.caption == "yes"
        assert completion.media_urls == ["https://cdn/a.jpg"]
        assert counter("dare", dare.id, "completion_count") == 1

    @pytest.mark.parametrize("media", [None, [], [""], "https://cdn/a.jpg"])
    def test_media_required(self, service, bob, fixed_now, media):
        dare = make_dare(fixed_now)
        with pytest.raises(ValidationError):
            service.complete_dare(bob, dare.id, media_urls=media, now=fixed_now)

    def test_one_completion_per_user(self, service, bob, fixed_now):
        dare = make_dare(fixed_now)
        service.complete_dare(bob, dare.id, media_urls=["a"], now=fixed_now)
        with pytest.raises(ConflictError):
            service.complete_dare(bob, dare.id, media_urls=["b"], now=fixed_now)
        assert counter("dare", dare.id, "completion_count") == 1

    def test_unique_index_backs_precheck(self, service, bob, fixed_now):
        """A second completion that slips past the pre-check still conflicts."""
        dare = make_dare(fixed_now)
        service.complete_dare(bob, dare.id, media_urls=["a"], now=fixed_now)
        with patch.object(CompletionStore, "find_active_for_user", return_value=None):
            with pytest.raises(ConflictError):
                service.complete_dare(bob, dare.id, media_urls=["b"], now=fixed_now)
        assert counter("dare", dare.id, "completion_count") == 1

    def test_recomplete_after_completion_removed(self, service, bob, fixed_now):
        dare = make_dare(fixed_now)
        first = service.complete_dare(bob, dare.id, media_urls=["a"], now=fixed_now)
        completion_store.set_active(first.id, False, reason="deleted", now=fixed_now)

        second = service.complete_dare(bob, dare.id, media_urls=["b"], now=fixed_now)

        assert second.id != first.id
        assert counter("dare", dare.id, "completion_count") == 2

    def test_expired_dare_rejected(self, service, bob, fixed_now):
        dare = make_dare(fixed_now)
        with pytest.raises(NotFoundError):
            service.complete_dare(bob, dare.id, media_urls=["a"], now=dare.expiry_date)

    def test_missing_dare_rejected(self, service, bob, fixed_now):
        with pytest.raises(NotFoundError):
            service.complete_dare(bob, "missing", media_urls=["a"], now=fixed_now)


class TestListing:
    def test_new_section_newest_first_and_open_only(self, service, fixed_now):
        old = make_dare(fixed_now - timedelta(days=5), title="old")
        first = make_dare(fixed_now - timedelta(hours=2), title="first")
        second = make_dare(fixed_now - timedelta(hours=1), title="second")

        items = service.list_dares(section="new", now=fixed_now)

        assert [d["id"] for d in items] == [second.id, first.id]
        assert old.id not in {d["id"] for d in items}

    def test_vibe_filter(self, service, fixed_now):
        make_dare(fixed_now, vibe="Happy")
        social = make_dare(fixed_now, vibe="Social")
        items = service.list_dares(section="new", vibe="Social", now=fixed_now)
        assert [d["id"] for d in items] == [social.id]

    def test_invalid_section_or_vibe(self, service):
        with pytest.raises(ValidationError):
            service.list_dares(section="hot")
        with pytest.raises(ValidationError):
            service.list_dares(section="new", vibe="Sleepy")

    def test_expiring_section(self, service, fixed_now):
        soon = make_dare(fixed_now - timedelta(days=2, hours=12))
        make_dare(fixed_now)
        items = service.list_dares(section="expiring", now=fixed_now)
        assert [d["id"] for d in items] == [soon.id]
        assert items[0]["time_remaining"]["label"] == "12h 0m left"

    def test_list_completions_with_parent(self, service, fixed_now):
        dare = make_dare(fixed_now, creator="alice", title="Cartwheel")
        make_completion(dare, "bob", fixed_now + timedelta(minutes=1))
        make_completion(dare, "carol", fixed_now + timedelta(minutes=2))

        items = service.list_completions(now=fixed_now)

        assert [c["completer_id"] for c in items] == ["carol", "bob"]
        assert items[0]["dare"]["title"] == "Cartwheel"
        assert items[0]["dare"]["time_remaining"] == "72h 0m left"

    def test_list_completions_hides_removed_parents(self, service, alice, fixed_now):
        live = make_dare(fixed_now, creator="alice", title="Live")
        deleted = make_dare(fixed_now, creator="alice", title="Deleted")
        pruned = make_dare(fixed_now - timedelta(days=11), title="Pruned")
        expired = make_dare(fixed_now - timedelta(days=4), title="Expired")
        for dare in (live, deleted):
            make_completion(dare, "bob", fixed_now + timedelta(minutes=1))
        make_completion(pruned, "bob", fixed_now - timedelta(days=10))
        make_completion(expired, "bob", fixed_now - timedelta(days=3, hours=23))
        service.delete_dare(alice, deleted.id, now=fixed_now)
        dare_store.set_active(pruned.id, False, reason="low_engagement", now=fixed_now)
        dare_store.set_active(expired.id, False, reason="expired", now=fixed_now)

        titles = [c["dare"]["title"] for c in service.list_completions(now=fixed_now)]

        assert titles == ["Live", "Expired"]
