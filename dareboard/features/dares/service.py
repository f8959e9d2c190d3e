from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dareboard.core.config import settings
from dareboard.core.errors import (
    AuthenticationRequiredError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from dareboard.core.logging import log_event
from dareboard.features.dares import ranking
from dareboard.features.dares.counters import apply_counter_delta, run_with_retries
from dareboard.features.dares.store import (
    CompletionFilter,
    CompletionStore,
    DareFilter,
    DareStore,
    completion_store,
    dare_store,
    get_profiles,
)
from dareboard.features.dares.timeutils import (
    ensure_utc,
    format_remaining,
    is_expired,
    time_remaining,
    utc_now,
)
from dareboard.models.dare import VIBES, ActingUser, CompletedDare, Dare, to_dict

MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 1000
MAX_HASHTAG_LENGTH = 100
MAX_CAPTION_LENGTH = 1000
MAX_LOCATION_LENGTH = 200
MAX_MEDIA_URLS = 10

SECTIONS = ("trending", "new", "expiring")


def _require_user(acting_user: Optional[ActingUser]) -> ActingUser:
    if acting_user is None or not acting_user.user_id:
        raise AuthenticationRequiredError("Authentication required")
    return acting_user


def _required_text(value: Optional[str], name: str, max_length: int) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{name} is required")
    if len(cleaned) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")
    return cleaned


def _optional_text(value: Optional[str], name: str, max_length: int) -> Optional[str]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")
    return cleaned


class DareService:
    """Create, read, complete and soft-delete dares."""

    def __init__(self, dares: Optional[DareStore] = None, completions: Optional[CompletionStore] = None):
        self.dares = dares or dare_store
        self.completions = completions or completion_store

    def create_dare(
        self,
        acting_user: Optional[ActingUser],
        *,
        title: Optional[str],
        description: Optional[str],
        vibe: Optional[str],
        hashtag: Optional[str] = None,
        expiry: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Dare:
        """
        Create a dare.

        Expiry defaults to now + DARE_EXPIRY_DAYS. An explicit expiry must be
        at least DARE_MIN_LIFETIME_MINUTES away, so expiry > created_at holds.
        """
        user = _require_user(acting_user)
        clean_title = _required_text(title, "Title", MAX_TITLE_LENGTH)
        clean_description = _required_text(description, "Description", MAX_DESCRIPTION_LENGTH)
        if vibe not in VIBES:
            raise ValidationError(f"Invalid vibe: {vibe}. Expected one of {', '.join(VIBES)}")
        clean_hashtag = _optional_text((hashtag or "").strip().lstrip("#"), "Hashtag", MAX_HASHTAG_LENGTH)

        created_at = ensure_utc(now) if now is not None else utc_now()
        if expiry is None:
            expiry_date = created_at + timedelta(days=settings.DARE_EXPIRY_DAYS)
        else:
            expiry_date = ensure_utc(expiry)
            min_expiry = created_at + timedelta(minutes=settings.DARE_MIN_LIFETIME_MINUTES)
            if expiry_date <= created_at or expiry_date < min_expiry:
                raise ValidationError(
                    f"Expiry must be at least {settings.DARE_MIN_LIFETIME_MINUTES} minutes from now"
                )

        dare = Dare(
            id=str(uuid4()),
            creator_id=user.user_id,
            title=clean_title,
            description=clean_description,
            hashtag=clean_hashtag,
            vibe=vibe,  # type: ignore[arg-type]
            expiry_date=expiry_date,
            created_at=created_at,
        )
        run_with_retries(lambda session: self.dares.insert(dare, session=session), operation="dare.create")
        log_event("info", "dare.created", user_id=user.user_id, dare_id=dare.id, event_type="dare.created")
        return dare

    def get_dare(self, dare_id: str, *, now: Optional[datetime] = None) -> Dict:
        """Detail view: dare, creator identity, time remaining and its active completions."""
        dare = self.dares.get(dare_id)
        if dare is None:
            raise NotFoundError("Dare not found")
        completions = self.completions.list_active(CompletionFilter(dare_id=dare_id))
        people = get_profiles([dare.creator_id] + [c.completer_id for c in completions])

        payload = serialize_dare(dare, now=now, creator=people.get(dare.creator_id))
        payload["completed_dares"] = [
            serialize_completion(c, completer=people.get(c.completer_id)) for c in completions
        ]
        return payload

    def delete_dare(self, acting_user: Optional[ActingUser], dare_id: str, *, now: Optional[datetime] = None) -> bool:
        """Creator-only soft delete."""
        user = _require_user(acting_user)
        dare = self.dares.get(dare_id, include_inactive=True)
        if dare is None:
            raise NotFoundError("Dare not found")
        if dare.creator_id != user.user_id:
            raise ForbiddenError("Only the creator can delete this dare")

        changed = self.dares.set_active(dare_id, False, reason="deleted", now=now or utc_now())
        if changed:
            log_event("info", "dare.deleted", user_id=user.user_id, dare_id=dare_id, event_type="dare.deleted")
        return changed

    def complete_dare(
        self,
        acting_user: Optional[ActingUser],
        dare_id: str,
        *,
        media_urls: Optional[Sequence[str]],
        caption: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CompletedDare:
        """Record a completion and bump the dare's completion_count in one transaction."""
        user = _require_user(acting_user)
        if not media_urls or isinstance(media_urls, str):
            raise ValidationError("Media URLs are required")
        urls = [u.strip() for u in media_urls if isinstance(u, str) and u.strip()]
        if len(urls) != len(media_urls):
            raise ValidationError("Media URLs must be non-empty strings")
        if len(urls) > MAX_MEDIA_URLS:
            raise ValidationError(f"At most {MAX_MEDIA_URLS} media URLs are allowed")
        clean_caption = _optional_text(caption, "Caption", MAX_CAPTION_LENGTH)
        clean_location = _optional_text(location, "Location", MAX_LOCATION_LENGTH)
        created_at = ensure_utc(now) if now is not None else utc_now()

        def _unit(session: Session) -> CompletedDare:
            dare = self.dares.get(dare_id, session=session)
            if dare is None or is_expired(dare.expiry_date, created_at):
                raise NotFoundError("Dare not found or expired")
            if self.completions.find_active_for_user(dare_id, user.user_id, session=session):
                raise ConflictError("You have already completed this dare")

            completion = CompletedDare(
                id=str(uuid4()),
                dare_id=dare_id,
                completer_id=user.user_id,
                media_urls=urls,
                caption=clean_caption,
                location=clean_location,
                created_at=created_at,
            )
            try:
                self.completions.insert(completion, session=session)
            except IntegrityError:
                # Lost a race against a concurrent completion by the same user
                raise ConflictError("You have already completed this dare")
            apply_counter_delta(session, "dare", dare_id, "completion_count", +1)
            return completion

        completion = run_with_retries(_unit, operation="dare.complete")
        log_event(
            "info",
            "dare.completed",
            user_id=user.user_id,
            dare_id=dare_id,
            completed_dare_id=completion.id,
            event_type="dare.completed",
        )
        return completion

    def list_dares(
        self,
        *,
        section: str = "trending",
        vibe: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> List[Dict]:
        if section not in SECTIONS:
            raise ValidationError(f"Invalid section: {section}")
        if vibe is not None and vibe not in VIBES:
            raise ValidationError(f"Invalid vibe: {vibe}")
        current = ensure_utc(now) if now is not None else utc_now()

        if section == "trending":
            items = ranking.trending(limit=limit, offset=offset, now=current, vibe=vibe)
        elif section == "expiring":
            items = ranking.expiring_soon(settings.EXPIRING_SOON_HOURS, now=current, vibe=vibe)
            items = items[offset:offset + limit]
        else:
            items = self.dares.list_active(DareFilter(vibe=vibe, open_at=current, limit=limit, offset=offset))

        people = get_profiles([d.creator_id for d in items])
        return [serialize_dare(d, now=current, creator=people.get(d.creator_id)) for d in items]

    def list_completions(
        self, *, limit: int = 20, offset: int = 0, dare_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[Dict]:
        """Active completions newest first, with parent dare summary and completer identity.

        Completions of expired dares stay listed until pruned; those of deleted
        or low-engagement dares are hidden.
        """
        items = self.completions.list_active(
            CompletionFilter(dare_id=dare_id, visible_parent_only=True, limit=limit, offset=offset)
        )
        parents = {}
        for dare_key in {c.dare_id for c in items}:
            parent = self.dares.get(dare_key, include_inactive=True)
            if parent is not None:
                parents[dare_key] = parent
        people = get_profiles(
            [c.completer_id for c in items] + [d.creator_id for d in parents.values()]
        )

        results = []
        for completion in items:
            payload = serialize_completion(completion, completer=people.get(completion.completer_id))
            parent = parents.get(completion.dare_id)
            if parent is not None:
                payload["dare"] = {
                    "title": parent.title,
                    "description": parent.description,
                    "hashtag": parent.hashtag,
                    "vibe": parent.vibe,
                    "expiry_date": parent.expiry_date.isoformat(),
                    "time_remaining": format_remaining(parent.expiry_date, now),
                    "creator": people.get(parent.creator_id),
                }
            results.append(payload)
        return results


def serialize_dare(dare: Dare, *, now: Optional[datetime] = None, creator: Optional[dict] = None) -> Dict:
    payload = to_dict(dare)
    remaining = time_remaining(dare.expiry_date, now)
    payload["creator"] = creator
    payload["time_remaining"] = {
        "hours": remaining.hours,
        "minutes": remaining.minutes,
        "is_expired": remaining.is_expired,
        "is_expiring_soon": remaining.is_expiring_soon,
        "label": format_remaining(dare.expiry_date, now),
    }
    return payload


def serialize_completion(completion: CompletedDare, *, completer: Optional[dict] = None) -> Dict:
    payload = to_dict(completion)
    payload["completer"] = completer
    return payload


# Singleton service
dare_service = DareService()
