"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.auth import User
from affiliate_desk.core.actors import Actor
from affiliate_desk.database import get_session
from affiliate_desk.services import AffiliateDesk
from affiliate_desk.services.cache import ProfileAggregateCache, profile_cache
from affiliate_desk.services.notifications import AdminNotifier, DatabaseNotifier

get_db = get_session


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Dependency to get current authenticated user."""
    user_id = request.cookies.get("user_id")

    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user_id = int(user_id)
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure user is admin."""
    if not user.is_admin():
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_notifier() -> AdminNotifier:
    return DatabaseNotifier()


def get_cache() -> ProfileAggregateCache:
    return profile_cache


def get_desk(
    db: Session = Depends(get_db),
    notifier: AdminNotifier = Depends(get_notifier),
    cache: ProfileAggregateCache = Depends(get_cache),
) -> AffiliateDesk:
    return AffiliateDesk(db, notifier=notifier, cache=cache)


def get_actor(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Actor:
    """Admins act as HQ; everyone else through their linked, active profile."""
    if user.is_admin():
        return Actor.hq(user_id=user.id)
    profile = crud.get_profile_for_user(db, user.id)
    if profile is None:
        raise HTTPException(status_code=403, detail="No affiliate profile is linked to this account")
    if not profile.is_active:
        raise HTTPException(status_code=403, detail="Affiliate profile is inactive")
    return Actor.for_profile(profile, user_id=user.id)
