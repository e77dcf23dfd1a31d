"""Admin alerts for conditions a human has to look at.

Delivery is fire-and-forget: :func:`notify_admin` never raises, so a broken
notifier cannot roll back the sale or payslip that triggered it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from affiliate_desk.database import SessionLocal
from affiliate_desk.models import AdminNotification

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    COMMISSION_TIER_MISSING = "COMMISSION_TIER_MISSING"
    DB_RECOVERY_SUCCESS = "DB_RECOVERY_SUCCESS"
    DB_RECOVERY_FAILED = "DB_RECOVERY_FAILED"
    CONTRACT_TERMINATED = "CONTRACT_TERMINATED"
    PAYSLIP_NEEDS_REVIEW = "PAYSLIP_NEEDS_REVIEW"
    PAYSLIP_EXPORT_FAILED = "PAYSLIP_EXPORT_FAILED"


@dataclass(frozen=True)
class NotificationPayload:
    type: NotificationType
    title: str
    message: str
    priority: str = "medium"
    sale_id: int | None = None
    profile_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def as_details(self) -> dict[str, Any]:
        data = dict(self.details)
        if self.sale_id is not None:
            data["sale_id"] = self.sale_id
        if self.profile_id is not None:
            data["profile_id"] = self.profile_id
        return data


class AdminNotifier(Protocol):
    def notify(self, payload: NotificationPayload) -> None:
        ...


class DatabaseNotifier:
    """Persist alerts as ``AdminNotification`` rows in a session of their own."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def notify(self, payload: NotificationPayload) -> None:
        session = self._session_factory()
        try:
            session.add(
                AdminNotification(
                    notification_type=payload.type.value,
                    title=payload.title,
                    message=payload.message,
                    priority=payload.priority,
                    details=json.dumps(payload.as_details(), default=str),
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class LoggingNotifier:
    def notify(self, payload: NotificationPayload) -> None:
        logger.warning("[%s] %s: %s", payload.type.value, payload.title, payload.message)


def notify_admin(notifier: AdminNotifier | None, payload: NotificationPayload) -> bool:
    """Deliver ``payload``; log and swallow any delivery failure."""

    if notifier is None:
        logger.info("No admin notifier configured, dropping %s", payload.type.value)
        return False
    try:
        notifier.notify(payload)
    except Exception:
        logger.exception("Failed to deliver admin notification %s", payload.type.value)
        return False
    logger.info("Admin notified: %s (%s)", payload.type.value, payload.title)
    return True
