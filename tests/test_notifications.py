import json
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from affiliate_desk import crud
from affiliate_desk import models  # noqa: F401
from affiliate_desk.database import Base
from affiliate_desk.services.notifications import (
    DatabaseNotifier,
    LoggingNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)


def _make_session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _payload(**overrides):
    data = {
        "type": NotificationType.COMMISSION_TIER_MISSING,
        "title": "Commission tier missing",
        "message": "No commission tier for product ICN-NRT",
        "priority": "high",
        "sale_id": 7,
        "details": {"product_code": "ICN-NRT"},
    }
    data.update(overrides)
    return NotificationPayload(**data)


class _BrokenNotifier:
    def notify(self, payload):
        raise RuntimeError("mail server down")


def test_database_notifier_persists_alert():
    factory = _make_session_factory()
    assert notify_admin(DatabaseNotifier(factory), _payload()) is True

    session = factory()
    try:
        (row,) = crud.list_admin_notifications(session, unread_only=True)
        assert row.notification_type == "COMMISSION_TIER_MISSING"
        assert row.priority == "high"
        assert json.loads(row.details) == {"product_code": "ICN-NRT", "sale_id": 7}
    finally:
        session.close()


def test_delivery_failures_are_swallowed(caplog):
    with caplog.at_level(logging.ERROR, logger="affiliate_desk.services.notifications"):
        assert notify_admin(_BrokenNotifier(), _payload()) is False
    assert "Failed to deliver admin notification" in caplog.text

    assert notify_admin(None, _payload()) is False


def test_logging_notifier(caplog):
    with caplog.at_level(logging.WARNING, logger="affiliate_desk.services.notifications"):
        notify_admin(LoggingNotifier(), _payload(type=NotificationType.PAYSLIP_NEEDS_REVIEW, title="Payslip needs review"))
    assert "[PAYSLIP_NEEDS_REVIEW] Payslip needs review" in caplog.text
