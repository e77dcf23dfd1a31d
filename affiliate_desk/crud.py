"""Database access helpers."""
from __future__ import annotations

import json
from datetime import date
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from affiliate_desk.auth import User
from affiliate_desk.core.enums import PayslipStatus, ProfileType, SaleStatus
from affiliate_desk.models import (
    AdminNotification,
    AffiliateCommissionTier,
    AffiliateInteraction,
    AffiliateLead,
    AffiliatePayslip,
    AffiliateProfile,
    AffiliateRelation,
    AffiliateSale,
    AuditLog,
    LeadTransferEvent,
    LoginAttempt,
)


def list_profiles(
    db: Session,
    profile_type: ProfileType | None = None,
    code: str | None = None,
) -> Sequence[AffiliateProfile]:
    stmt = select(AffiliateProfile)
    if profile_type:
        stmt = stmt.where(AffiliateProfile.type == profile_type)
    if code:
        stmt = stmt.where(AffiliateProfile.affiliate_code.ilike(f"%{code.strip()}%"))
    stmt = stmt.order_by(AffiliateProfile.affiliate_code)
    return db.execute(stmt).scalars().all()


def get_profile_by_code(db: Session, code: str) -> AffiliateProfile | None:
    stmt = select(AffiliateProfile).where(AffiliateProfile.affiliate_code == code.strip().upper())
    return db.execute(stmt).scalars().first()


def get_profile_for_user(db: Session, user_id: int) -> AffiliateProfile | None:
    stmt = select(AffiliateProfile).where(AffiliateProfile.user_id == user_id)
    return db.execute(stmt).scalars().first()


def get_tier(
    db: Session,
    product_code: str,
    cabin_type: str,
    fare_category: str,
    fare_label: str | None,
) -> AffiliateCommissionTier | None:
    stmt = select(AffiliateCommissionTier).where(
        AffiliateCommissionTier.product_code == product_code,
        AffiliateCommissionTier.cabin_type == cabin_type,
        AffiliateCommissionTier.fare_category == fare_category,
        AffiliateCommissionTier.fare_label == (fare_label or ""),
    )
    return db.execute(stmt).scalars().first()


def list_tiers(db: Session, product_code: str | None = None) -> Sequence[AffiliateCommissionTier]:
    stmt = select(AffiliateCommissionTier)
    if product_code:
        stmt = stmt.where(AffiliateCommissionTier.product_code == product_code)
    stmt = stmt.order_by(
        AffiliateCommissionTier.product_code,
        AffiliateCommissionTier.cabin_type,
        AffiliateCommissionTier.fare_category,
        AffiliateCommissionTier.fare_label,
    )
    return db.execute(stmt).scalars().all()


def list_leads(
    db: Session,
    manager_id: int | None = None,
    agent_id: int | None = None,
) -> Sequence[AffiliateLead]:
    stmt = select(AffiliateLead)
    if manager_id is not None:
        stmt = stmt.where(AffiliateLead.manager_id == manager_id)
    if agent_id is not None:
        stmt = stmt.where(AffiliateLead.agent_id == agent_id)
    return db.execute(stmt.order_by(AffiliateLead.id)).scalars().all()


def list_transfer_events(db: Session, lead_id: int) -> Sequence[LeadTransferEvent]:
    stmt = (
        select(LeadTransferEvent)
        .where(LeadTransferEvent.lead_id == lead_id)
        .order_by(LeadTransferEvent.occurred_at, LeadTransferEvent.id)
    )
    return db.execute(stmt).scalars().all()


def list_sales(
    db: Session,
    status: SaleStatus | None = None,
    profile_id: int | None = None,
) -> Sequence[AffiliateSale]:
    stmt = select(AffiliateSale)
    if status:
        stmt = stmt.where(AffiliateSale.status == status)
    if profile_id is not None:
        stmt = stmt.where(
            (AffiliateSale.manager_id == profile_id) | (AffiliateSale.agent_id == profile_id)
        )
    stmt = stmt.order_by(AffiliateSale.sale_date.desc(), AffiliateSale.id.desc())
    return db.execute(stmt).scalars().all()


def list_confirmed_sales_for_profile(
    db: Session, profile_id: int, start: date, end: date
) -> Sequence[AffiliateSale]:
    """CONFIRMED sales attributed to the profile with ``start <= sale_date < end``."""

    stmt = (
        select(AffiliateSale)
        .where(
            AffiliateSale.status == SaleStatus.CONFIRMED,
            AffiliateSale.sale_date >= start,
            AffiliateSale.sale_date < end,
            (AffiliateSale.manager_id == profile_id) | (AffiliateSale.agent_id == profile_id),
        )
        .order_by(AffiliateSale.sale_date, AffiliateSale.id)
    )
    return db.execute(stmt).scalars().all()


def profiles_with_confirmed_sales(db: Session, start: date, end: date) -> list[int]:
    base = select(AffiliateSale).where(
        AffiliateSale.status == SaleStatus.CONFIRMED,
        AffiliateSale.sale_date >= start,
        AffiliateSale.sale_date < end,
    )
    managers = db.execute(
        base.with_only_columns(AffiliateSale.manager_id).where(AffiliateSale.manager_id.is_not(None))
    ).scalars()
    agents = db.execute(
        base.with_only_columns(AffiliateSale.agent_id).where(AffiliateSale.agent_id.is_not(None))
    ).scalars()
    return sorted(set(managers) | set(agents))


def get_payslip(db: Session, profile_id: int, period: str) -> AffiliatePayslip | None:
    stmt = select(AffiliatePayslip).where(
        AffiliatePayslip.profile_id == profile_id,
        AffiliatePayslip.period == period,
    )
    return db.execute(stmt).scalars().first()


def list_payslips(
    db: Session,
    period: str | None = None,
    status: PayslipStatus | None = None,
) -> Sequence[AffiliatePayslip]:
    stmt = select(AffiliatePayslip)
    if period:
        stmt = stmt.where(AffiliatePayslip.period == period)
    if status:
        stmt = stmt.where(AffiliatePayslip.status == status)
    stmt = stmt.order_by(AffiliatePayslip.period, AffiliatePayslip.profile_id)
    return db.execute(stmt).scalars().all()


def list_interactions(
    db: Session,
    lead_id: int | None = None,
    sale_id: int | None = None,
) -> Sequence[AffiliateInteraction]:
    stmt = select(AffiliateInteraction)
    if lead_id is not None:
        stmt = stmt.where(AffiliateInteraction.lead_id == lead_id)
    if sale_id is not None:
        stmt = stmt.where(AffiliateInteraction.sale_id == sale_id)
    return db.execute(stmt.order_by(AffiliateInteraction.id)).scalars().all()


def list_admin_notifications(db: Session, unread_only: bool = False) -> Sequence[AdminNotification]:
    stmt = select(AdminNotification)
    if unread_only:
        stmt = stmt.where(AdminNotification.is_read.is_(False))
    return db.execute(stmt.order_by(AdminNotification.id.desc())).scalars().all()


def log_admin_action(db: Session, user_id: int | None, action: str, details: dict | None = None) -> None:
    payload = AuditLog(
        user_id=user_id,
        action=action,
        details=json.dumps(details or {}, default=str),
    )
    db.add(payload)
    db.commit()


def reset_application_data(db: Session) -> None:
    """Delete every affiliate record, keeping user accounts."""

    for model in (
        AffiliateInteraction,
        LeadTransferEvent,
        AffiliatePayslip,
        AffiliateSale,
        AffiliateCommissionTier,
        AffiliateLead,
        AffiliateRelation,
        AffiliateProfile,
        AdminNotification,
        AuditLog,
        LoginAttempt,
    ):
        db.execute(delete(model))
    db.execute(delete(User).where(User.username != "admin"))
    db.commit()
