"""Desk login accounts.

Admins act as HQ. Any other account acts through the affiliate profile whose
``user_id`` points at it; an account without one can log in but cannot touch
leads, sales or settlements.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import bcrypt
from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_desk.database import Base

ADMIN_ROLE = "admin"
AFFILIATE_ROLE = "user"
USER_ROLES = (ADMIN_ROLE, AFFILIATE_ROLE)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=AFFILIATE_ROLE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    is_locked: Mapped[bool] = mapped_column(default=False, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_login_count: Mapped[int] = mapped_column(default=0, nullable=False)

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    def verify_password(self, password: str) -> bool:
        # a hash that bcrypt cannot parse never matches
        try:
            return bcrypt.checkpw(password.encode("utf-8"), self.password_hash.encode("utf-8"))
        except ValueError:
            return False

    @classmethod
    def create_user(cls, username: str, password: str, role: str = AFFILIATE_ROLE) -> User:
        username = (username or "").strip()
        if not username:
            raise ValueError("Username is required")
        if not password:
            raise ValueError("Password is required")
        if role not in USER_ROLES:
            raise ValueError(f"Unknown role {role!r}")
        return cls(username=username, password_hash=cls.hash_password(password), role=role)

    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def lock(self, minutes: int, now: datetime | None = None) -> None:
        self.is_locked = True
        self.locked_until = (now or datetime.now()) + timedelta(minutes=minutes)
        self.failed_login_count = 0

    def unlock(self) -> None:
        self.is_locked = False
        self.locked_until = None
        self.failed_login_count = 0

    def lock_active(self, now: datetime | None = None) -> bool:
        """True while a lock is set and has not run out yet."""
        if not self.is_locked or self.locked_until is None:
            return False
        return self.locked_until > (now or datetime.now())

    def register_failed_login(self, max_attempts: int, lockout_minutes: int) -> int:
        """Count a failure, locking at ``max_attempts``. Returns the attempts left."""
        self.failed_login_count += 1
        if self.failed_login_count >= max_attempts:
            self.lock(lockout_minutes)
            return 0
        return max_attempts - self.failed_login_count
