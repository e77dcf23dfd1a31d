"""Login attempt tracking and account lockout."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from affiliate_desk.auth import User
from affiliate_desk.core.formatting import format_display_datetime
from affiliate_desk.models import LoginAttempt

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 15


def _get_user(db: Session, username: str) -> User | None:
    return db.execute(select(User).where(User.username == username)).scalars().first()


def record_login_attempt(db: Session, username: str, success: bool, ip_address: str | None = None) -> None:
    db.add(LoginAttempt(username=username, success=success, ip_address=ip_address))
    db.commit()


def is_account_locked(db: Session, username: str) -> tuple[bool, str | None]:
    """Return ``(locked, reason)``; expired lockouts are lifted on the way."""
    user = _get_user(db, username)
    if not user or not user.is_locked:
        return False, None
    if user.lock_active():
        return True, f"Account is locked until {format_display_datetime(user.locked_until)}"

    user.unlock()
    db.commit()
    logger.info("Lockout of account %s expired", username)
    return False, None


def increment_failed_login(db: Session, username: str) -> int:
    """Count a failed login and lock the account at the threshold. Returns attempts left."""
    user = _get_user(db, username)
    if not user:
        return MAX_FAILED_ATTEMPTS

    remaining = user.register_failed_login(MAX_FAILED_ATTEMPTS, LOCKOUT_DURATION_MINUTES)
    db.commit()
    if remaining == 0:
        logger.warning("Locked account %s after %d failed logins", username, MAX_FAILED_ATTEMPTS)
    return remaining


def reset_failed_login(db: Session, username: str) -> None:
    user = _get_user(db, username)
    if user and user.failed_login_count:
        user.failed_login_count = 0
        db.commit()
