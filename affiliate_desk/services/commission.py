"""Commission tier lookup and three-way split of a sale's net revenue."""
from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_desk import config, crud
from affiliate_desk.core.commission import (
    CommissionDistribution,
    CommissionResult,
    TierMissingWarning,
    calculate_net_revenue,
    split_net_revenue,
    to_decimal,
)
from affiliate_desk.core.enums import CommissionSource
from affiliate_desk.database import unit_of_work
from affiliate_desk.errors import ValidationFailure
from affiliate_desk.models import AffiliateCommissionTier
from affiliate_desk.schemas import TierCreate
from affiliate_desk.services.notifications import (
    AdminNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)

logger = logging.getLogger(__name__)


def _validate_amounts(sale_amount: Decimal, cost_amount: Decimal) -> None:
    if sale_amount < 0 or cost_amount < 0:
        raise ValidationFailure(
            "Sale and cost amounts must be non-negative",
            {"sale_amount": str(sale_amount), "cost_amount": str(cost_amount)},
        )
    if cost_amount > sale_amount:
        raise ValidationFailure(
            "Cost amount cannot exceed sale amount",
            {"sale_amount": str(sale_amount), "cost_amount": str(cost_amount)},
        )


class CommissionResolver:
    """Resolve (product, cabin, fare) into a commission split.

    A missing tier never blocks a sale. The result carries a
    :class:`TierMissingWarning` and a zero distribution instead.
    """

    def __init__(
        self,
        db: Session,
        notifier: AdminNotifier | None = None,
        hq_rate: Decimal = config.HQ_RATE,
        branch_rate: Decimal = config.BRANCH_RATE,
    ):
        if hq_rate < 0 or branch_rate < 0 or hq_rate + branch_rate > 1:
            raise ValueError("hq_rate and branch_rate must be non-negative and sum to at most 1")
        self.db = db
        self.notifier = notifier
        self.hq_rate = hq_rate
        self.branch_rate = branch_rate

    def compute(
        self,
        product_code: str,
        cabin_type: str,
        fare_category: str,
        fare_label: str | None,
        sale_amount,
        cost_amount,
        notify: bool = True,
    ) -> CommissionResult:
        sale_amount = to_decimal(sale_amount)
        cost_amount = to_decimal(cost_amount)
        _validate_amounts(sale_amount, cost_amount)
        net_revenue = calculate_net_revenue(sale_amount, cost_amount)

        tier = crud.get_tier(self.db, product_code, cabin_type, fare_category, fare_label)
        if tier is None:
            warning = TierMissingWarning(product_code, cabin_type, fare_category, fare_label)
            logger.warning("%s; sale proceeds with a zero split", warning.message)
            result = CommissionResult(
                distribution=CommissionDistribution.zero(),
                net_revenue=net_revenue,
                source=CommissionSource.TIER_MISSING,
                warning=warning,
            )
            if notify:
                self.report_missing(result)
            return result

        if tier.has_override_shares:
            tier_net = calculate_net_revenue(tier.sale_amount, tier.cost_amount)
            if tier_net == net_revenue:
                distribution = CommissionDistribution(
                    hq_share=to_decimal(tier.hq_share),
                    branch_share=to_decimal(tier.branch_share),
                    sales_share=to_decimal(tier.sales_share),
                )
                return CommissionResult(distribution, net_revenue, CommissionSource.TIER, tier_id=tier.id)
            logger.info(
                "Tier %s net %s differs from sale net %s; splitting with default rates",
                tier.id,
                tier_net,
                net_revenue,
            )

        distribution = split_net_revenue(net_revenue, self.hq_rate, self.branch_rate)
        return CommissionResult(distribution, net_revenue, CommissionSource.DEFAULT_RATES, tier_id=tier.id)

    def report_missing(self, result: CommissionResult, sale_id: int | None = None) -> None:
        if result.warning is None:
            return
        warning = result.warning
        notify_admin(
            self.notifier,
            NotificationPayload(
                type=NotificationType.COMMISSION_TIER_MISSING,
                title="Commission tier missing",
                message=warning.message,
                priority="high",
                sale_id=sale_id,
                details={
                    "product_code": warning.product_code,
                    "cabin_type": warning.cabin_type,
                    "fare_category": warning.fare_category,
                    "fare_label": warning.fare_label,
                    "net_revenue": str(result.net_revenue),
                },
            ),
        )

    def create_tier(self, payload: TierCreate) -> AffiliateCommissionTier:
        """Register a tier. Override shares must be complete and add up to net revenue."""

        _validate_amounts(payload.sale_amount, payload.cost_amount)
        shares = (payload.hq_share, payload.branch_share, payload.sales_share)
        provided = [share is not None for share in shares]
        if any(provided) and not all(provided):
            raise ValidationFailure("Provide all three shares or none of them")
        if all(provided):
            net_revenue = calculate_net_revenue(payload.sale_amount, payload.cost_amount)
            total = sum(shares, Decimal("0"))
            if total != net_revenue:
                raise ValidationFailure(
                    f"Tier shares add up to {total}, expected net revenue {net_revenue}",
                    {"total": str(total), "net_revenue": str(net_revenue)},
                )

        data = payload.model_dump()
        data["fare_label"] = payload.fare_label or ""
        tier = AffiliateCommissionTier(**data)
        try:
            with unit_of_work(self.db):
                self.db.add(tier)
        except IntegrityError as exc:
            raise ValidationFailure(
                "A tier already exists for this product, cabin and fare",
                {
                    "product_code": payload.product_code,
                    "cabin_type": payload.cabin_type,
                    "fare_category": payload.fare_category,
                    "fare_label": payload.fare_label,
                },
            ) from exc
        logger.info("Created commission tier %s for %s", tier.id, payload.product_code)
        return tier
