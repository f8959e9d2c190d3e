from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Literal, Optional

Vibe = Literal["Happy", "Chill", "Bold", "Social"]
EngagementType = Literal["smile", "comment", "share", "tag"]
DeactivationReason = Literal["expired", "low_engagement", "low_smiles", "deleted"]

VIBES = ("Happy", "Chill", "Bold", "Social")
ENGAGEMENT_TYPES = ("smile", "comment", "share", "tag")
# At most one per (user, target, type); removable by toggling off
UNIQUE_ENGAGEMENT_TYPES = ("smile", "tag")

# Engagement type -> denormalised counter column (tag has none)
COUNTER_COLUMNS = {
    "smile": "smile_count",
    "comment": "comment_count",
    "share": "share_count",
}


@dataclass(frozen=True)
class ActingUser:
    """Authenticated caller as supplied by the identity provider."""

    user_id: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class EngagementTarget:
    """Exactly one of dare_id / completed_dare_id is expected to be set."""

    dare_id: Optional[str] = None
    completed_dare_id: Optional[str] = None

    @property
    def kind(self) -> str:
        return "dare" if self.dare_id else "completion"

    @property
    def target_id(self) -> Optional[str]:
        return self.dare_id or self.completed_dare_id


@dataclass
class Aggregates:
    completion_count: int = 0
    smile_count: int = 0
    comment_count: int = 0
    share_count: int = 0


@dataclass
class Dare:
    """Domain model for a time-bounded public dare."""

    id: str
    creator_id: str
    title: str
    description: str
    vibe: Vibe
    expiry_date: datetime
    created_at: datetime
    hashtag: Optional[str] = None
    is_active: bool = True
    deactivation_reason: Optional[DeactivationReason] = None
    deactivated_at: Optional[datetime] = None
    completion_count: int = 0
    smile_count: int = 0
    comment_count: int = 0
    share_count: int = 0

    @property
    def aggregates(self) -> Aggregates:
        return Aggregates(
            completion_count=self.completion_count,
            smile_count=self.smile_count,
            comment_count=self.comment_count,
            share_count=self.share_count,
        )


@dataclass
class CompletedDare:
    """A user's proof of having done a dare."""

    id: str
    dare_id: str
    completer_id: str
    media_urls: List[str]
    created_at: datetime
    caption: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True
    deactivation_reason: Optional[DeactivationReason] = None
    deactivated_at: Optional[datetime] = None
    smile_count: int = 0
    comment_count: int = 0
    share_count: int = 0

    @property
    def aggregates(self) -> Aggregates:
        return Aggregates(
            smile_count=self.smile_count,
            comment_count=self.comment_count,
            share_count=self.share_count,
        )


@dataclass
class Engagement:
    id: str
    user_id: str
    engagement_type: EngagementType
    created_at: datetime
    dare_id: Optional[str] = None
    completed_dare_id: Optional[str] = None
    content: Optional[str] = None
    author: Optional[dict] = None  # {"display_name", "avatar_url"} read-through join


@dataclass(frozen=True)
class TimeRemaining:
    hours: int
    minutes: int
    is_expired: bool
    is_expiring_soon: bool


@dataclass
class SweepResult:
    """Counts of records deactivated by one lifecycle sweep."""

    expired_dares: int = 0
    low_engagement_dares: int = 0
    low_smiles_completions: int = 0
    failures: int = 0
    ran_at: Optional[datetime] = None
    failed_ids: List[str] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "expiredDares": self.expired_dares,
            "lowEngagementDares": self.low_engagement_dares,
            "lowSmilesCompletions": self.low_smiles_completions,
            "failures": self.failures,
            "ranAt": self.ran_at.isoformat() if self.ran_at else None,
        }


def to_dict(obj) -> dict:
    """Dataclass -> JSON-friendly dict (datetimes as ISO strings)."""
    data = asdict(obj)
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data
