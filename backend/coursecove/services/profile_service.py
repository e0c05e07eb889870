"""Caller profile read/update. Identity fields stay owned by Clerk."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from coursecove.models.user import User
from coursecove.platform.errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100


def get_user(db: Session, clerk_user_id: str) -> User:
    user = db.query(User).filter(User.clerk_user_id == clerk_user_id).first()
    if user is None or not user.is_active:
        raise NotFound("Profile not found")
    return user


def update_profile(
    db: Session,
    clerk_user_id: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> User:
    user = get_user(db, clerk_user_id)
    for field_name, value in (("first_name", first_name), ("last_name", last_name)):
        if value is None:
            continue
        value = value.strip()
        if len(value) > MAX_NAME_LENGTH:
            raise ValidationFailed(f"{field_name} must be {MAX_NAME_LENGTH} characters or less")
        setattr(user, field_name, value or None)
    db.flush()
    logger.info("Profile updated", extra={"user_id": user.id})
    return user


def serialize_profile(user: User) -> Dict[str, Any]:
    memberships = [
        {
            "membership_id": m.id,
            "organization_id": m.organization_id,
            "organization_name": m.organization.name if m.organization else None,
            "role": m.role,
        }
        for m in user.memberships
        if m.is_active
    ]
    return {
        "id": user.id,
        "clerk_user_id": user.clerk_user_id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "memberships": memberships,
    }
