"""Monthly settlement of CONFIRMED sales into payslips."""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_desk import config, crud
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.commission import ZERO, calculate_withholding, own_commission, to_decimal
from affiliate_desk.core.enums import PayslipStatus
from affiliate_desk.core.periods import format_period, parse_period, period_bounds
from affiliate_desk.database import unit_of_work
from affiliate_desk.errors import AffiliateError, InvalidState, NotFound, ValidationFailure
from affiliate_desk.models import AffiliatePayslip, AffiliateProfile
from affiliate_desk.schemas import PayslipRead, SettlementFailure, SettlementRunResult
from affiliate_desk.services.notifications import (
    AdminNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)
from affiliate_desk.services.profiles import ProfileStore, SqlProfileStore

logger = logging.getLogger(__name__)


def _normalize_period(period: str) -> str:
    try:
        return format_period(*parse_period(period))
    except ValueError as exc:
        raise ValidationFailure(str(exc), {"period": period}) from exc


class SettlementEngine:
    def __init__(
        self,
        db: Session,
        store: ProfileStore | None = None,
        notifier: AdminNotifier | None = None,
        withholding_rate: Decimal = config.WITHHOLDING_RATE,
    ):
        self.db = db
        self.store = store or SqlProfileStore(db)
        self.notifier = notifier
        self.withholding_rate = withholding_rate

    def get_payslip(self, payslip_id: int, for_update: bool = False) -> AffiliatePayslip:
        stmt = select(AffiliatePayslip).where(AffiliatePayslip.id == payslip_id)
        if for_update:
            stmt = stmt.with_for_update()
        payslip = self.db.execute(stmt).scalars().first()
        if payslip is None:
            raise NotFound(f"Payslip {payslip_id} not found", {"payslip_id": payslip_id})
        return payslip

    def _compute(self, profile: AffiliateProfile, period: str) -> dict:
        start, end = period_bounds(period)
        sales = crud.list_confirmed_sales_for_profile(self.db, profile.id, start, end)

        total_sales = sum((to_decimal(sale.sale_amount) for sale in sales), ZERO)
        total_commission = sum((own_commission(sale, profile.id) for sale in sales), ZERO)
        rate = to_decimal(profile.withholding_rate) if profile.withholding_rate is not None else self.withholding_rate
        total_withholding = calculate_withholding(total_commission, rate)

        missing = profile.missing_bank_fields
        return {
            "total_sales": total_sales,
            "sales_count": len(sales),
            "total_commission": total_commission,
            "total_withholding": total_withholding,
            "net_payment": total_commission - total_withholding,
            "withholding_rate": rate,
            "bank_name": profile.bank_name,
            "bank_account": profile.bank_account,
            "bank_account_holder": profile.bank_account_holder,
            "needs_review": bool(missing),
            "review_notes": f"Missing bank details: {', '.join(missing)}" if missing else None,
        }

    def _upsert(self, profile_id: int, period: str, values: dict) -> AffiliatePayslip:
        stmt = (
            select(AffiliatePayslip)
            .where(AffiliatePayslip.profile_id == profile_id, AffiliatePayslip.period == period)
            .with_for_update()
        )
        payslip = self.db.execute(stmt).scalars().first()
        if payslip is None:
            payslip = AffiliatePayslip(profile_id=profile_id, period=period, **values)
            self.db.add(payslip)
            self.db.flush()
            return payslip

        if payslip.status is PayslipStatus.SENT:
            raise InvalidState(
                f"Payslip {payslip.id} for {period} was already sent",
                {"payslip_id": payslip.id, "profile_id": profile_id, "period": period},
            )
        for key, value in values.items():
            setattr(payslip, key, value)
        payslip.status = PayslipStatus.DRAFT
        payslip.approved_at = None
        return payslip

    def run_settlement(self, profile_id: int, period: str, actor: Actor | None = None) -> AffiliatePayslip:
        """Recompute the DRAFT payslip of ``profile_id`` for ``period`` from scratch."""

        period = _normalize_period(period)
        profile = self.store.get_profile(profile_id)
        values = self._compute(profile, period)

        try:
            with unit_of_work(self.db):
                payslip = self._upsert(profile.id, period, values)
        except IntegrityError:
            logger.info("Payslip for profile %s %s inserted concurrently, updating instead", profile.id, period)
            with unit_of_work(self.db):
                payslip = self._upsert(profile.id, period, values)

        logger.info(
            "Settled profile %s for %s: %s sales, commission %s, net %s",
            profile.id,
            period,
            payslip.sales_count,
            payslip.total_commission,
            payslip.net_payment,
        )
        if payslip.needs_review:
            logger.warning("Payslip %s needs review: %s", payslip.id, payslip.review_notes)
            notify_admin(
                self.notifier,
                NotificationPayload(
                    type=NotificationType.PAYSLIP_NEEDS_REVIEW,
                    title="Payslip needs review",
                    message=f"{profile.display_name} ({period}): {payslip.review_notes}",
                    priority="high",
                    profile_id=profile.id,
                    details={"payslip_id": payslip.id, "period": period},
                ),
            )
        crud.log_admin_action(
            self.db,
            actor.user_id if actor else None,
            "settlement_run",
            {"payslip_id": payslip.id, "profile_id": profile.id, "period": period},
        )
        return payslip

    def approve_settlement(self, payslip_id: int, actor: Actor | None = None) -> AffiliatePayslip:
        """DRAFT to APPROVED. Approving an APPROVED payslip changes nothing."""

        with unit_of_work(self.db):
            payslip = self.get_payslip(payslip_id, for_update=True)
            if payslip.status is PayslipStatus.APPROVED:
                logger.debug("Payslip %s already approved", payslip_id)
                return payslip
            if payslip.status is not PayslipStatus.DRAFT:
                raise InvalidState(
                    f"Payslip {payslip_id} is {payslip.status.value} and cannot be approved",
                    {"payslip_id": payslip_id, "status": payslip.status.value},
                )
            self._transition(payslip, PayslipStatus.DRAFT, PayslipStatus.APPROVED, approved_at=datetime.now())

        crud.log_admin_action(
            self.db,
            actor.user_id if actor else None,
            "settlement_approved",
            {"payslip_id": payslip.id, "profile_id": payslip.profile_id, "period": payslip.period},
        )
        return payslip

    def mark_sent(self, payslip_id: int, export_path: str | None = None) -> AffiliatePayslip:
        with unit_of_work(self.db):
            payslip = self.get_payslip(payslip_id, for_update=True)
            if payslip.status is not PayslipStatus.APPROVED:
                raise InvalidState(
                    f"Payslip {payslip_id} is {payslip.status.value}; only APPROVED payslips can be sent",
                    {"payslip_id": payslip_id, "status": payslip.status.value},
                )
            self._transition(
                payslip,
                PayslipStatus.APPROVED,
                PayslipStatus.SENT,
                sent_at=datetime.now(),
                export_path=export_path,
            )
        logger.info("Payslip %s marked as sent", payslip_id)
        return payslip

    def _transition(self, payslip: AffiliatePayslip, current: PayslipStatus, target: PayslipStatus, **values) -> None:
        stmt = (
            update(AffiliatePayslip)
            .where(AffiliatePayslip.id == payslip.id, AffiliatePayslip.status == current)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise InvalidState(
                f"Payslip {payslip.id} changed status concurrently",
                {"payslip_id": payslip.id, "expected": current.value},
            )
        self.db.refresh(payslip)

    def run_period(self, period: str, actor: Actor | None = None) -> SettlementRunResult:
        """Settle every profile with activity in ``period``, one at a time."""

        period = _normalize_period(period)
        start, end = period_bounds(period)
        payslips = crud.list_payslips(self.db, period=period)
        sent = {payslip.profile_id for payslip in payslips if payslip.status is PayslipStatus.SENT}
        profile_ids = set(crud.profiles_with_confirmed_sales(self.db, start, end))
        profile_ids.update(payslip.profile_id for payslip in payslips)

        result = SettlementRunResult(period=period)
        for profile_id in sorted(profile_ids):
            if profile_id in sent:
                logger.info("Payslip of profile %s for %s was already sent, skipping", profile_id, period)
                result.skipped.append(profile_id)
                continue
            try:
                payslip = self.run_settlement(profile_id, period, actor)
            except AffiliateError as exc:
                logger.warning("Settlement of profile %s for %s failed: %s", profile_id, period, exc.message)
                result.failures.append(
                    SettlementFailure(profile_id=profile_id, kind=exc.kind.value, message=exc.message)
                )
            else:
                result.payslips.append(PayslipRead.model_validate(payslip))
        logger.info(
            "Settlement run for %s finished: %d payslips, %d skipped, %d failures",
            period,
            len(result.payslips),
            len(result.skipped),
            len(result.failures),
        )
        return result
