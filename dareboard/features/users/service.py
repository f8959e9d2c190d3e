"""
Profile service.
- get_profile(user_id)
- upsert_profile(user_id, display_name=None)
"""

from typing import Dict, Optional
from sqlalchemy import select, insert, update

from dareboard.core.database import get_db_session, profiles
from dareboard.features.dares.timeutils import utc_now


def get_profile(user_id: str) -> Optional[Dict]:
    with get_db_session() as session:
        row = session.execute(select(profiles).where(profiles.c.user_id == user_id)).first()
        if not row:
            return None
        return {
            "user_id": row.user_id,
            "display_name": row.display_name,
            "avatar_url": row.avatar_url,
        }


def upsert_profile(user_id: str, display_name: Optional[str] = None, avatar_url: Optional[str] = None) -> Dict:
    """Create the caller's profile on first sight; refresh identity fields when supplied."""
    existing = get_profile(user_id)
    if existing is None:
        with get_db_session() as session:
            session.execute(
                insert(profiles).values(
                    user_id=user_id,
                    display_name=display_name,
                    avatar_url=avatar_url,
                    created_at=utc_now(),
                )
            )
        return {"user_id": user_id, "display_name": display_name, "avatar_url": avatar_url}

    changes = {}
    if display_name and display_name != existing["display_name"]:
        changes["display_name"] = display_name
    if avatar_url and avatar_url != existing["avatar_url"]:
        changes["avatar_url"] = avatar_url
    if changes:
        with get_db_session() as session:
            session.execute(update(profiles).where(profiles.c.user_id == user_id).values(**changes))
        existing.update(changes)
    return existing
