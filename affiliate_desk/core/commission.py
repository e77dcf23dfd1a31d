"""Pure commission arithmetic shared by the resolver and settlement."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from affiliate_desk.core.enums import CommissionSource

ZERO = Decimal("0")
# Shares and withholding are floored to whole currency units.
SHARE_QUANT = Decimal("1")
CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Coerce numeric input (int, str, float, Decimal, None) to Decimal."""

    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def floor_amount(value) -> Decimal:
    return to_decimal(value).quantize(SHARE_QUANT, rounding=ROUND_FLOOR)


def calculate_net_revenue(sale_amount, cost_amount) -> Decimal:
    """Net revenue is sale amount minus cost amount."""

    return to_decimal(sale_amount) - to_decimal(cost_amount)


@dataclass(frozen=True)
class CommissionDistribution:
    hq_share: Decimal = ZERO
    branch_share: Decimal = ZERO
    sales_share: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.hq_share + self.branch_share + self.sales_share

    @classmethod
    def zero(cls) -> "CommissionDistribution":
        return cls()


@dataclass(frozen=True)
class TierMissingWarning:
    """No commission tier matched; the sale carries a zero split."""

    product_code: str
    cabin_type: str
    fare_category: str
    fare_label: str | None

    @property
    def message(self) -> str:
        label = self.fare_label or "-"
        return (
            f"No commission tier for product {self.product_code} "
            f"({self.cabin_type}/{self.fare_category}/{label})"
        )


@dataclass(frozen=True)
class CommissionResult:
    distribution: CommissionDistribution
    net_revenue: Decimal
    source: CommissionSource
    warning: TierMissingWarning | None = None
    tier_id: int | None = None

    @property
    def hq_share(self) -> Decimal:
        return self.distribution.hq_share

    @property
    def branch_share(self) -> Decimal:
        return self.distribution.branch_share

    @property
    def sales_share(self) -> Decimal:
        return self.distribution.sales_share

    @property
    def is_tier_missing(self) -> bool:
        return self.warning is not None


def split_net_revenue(net_revenue, hq_rate, branch_rate) -> CommissionDistribution:
    """Split net revenue three ways with HQ and branch floored.

    The agent receives the remainder so the shares always add back up to the
    net revenue exactly.
    """

    net = to_decimal(net_revenue)
    hq_rate = to_decimal(hq_rate)
    branch_rate = to_decimal(branch_rate)
    if hq_rate < 0 or branch_rate < 0 or hq_rate + branch_rate > 1:
        raise ValueError("Commission rates must be non-negative and sum to at most 1")
    if net < 0:
        raise ValueError(f"Net revenue cannot be negative, got {net}")

    hq_share = floor_amount(net * hq_rate)
    branch_share = floor_amount(net * branch_rate)
    sales_share = net - hq_share - branch_share
    return CommissionDistribution(hq_share=hq_share, branch_share=branch_share, sales_share=sales_share)


@dataclass(frozen=True)
class SaleAllocation:
    """A distribution mapped onto the people attributed to a sale.

    Shares with nobody to receive them fall back to HQ, and a manager selling
    without an agent takes the agent share as override commission.
    """

    hq_commission: Decimal
    branch_commission: Decimal
    sales_commission: Decimal
    override_commission: Decimal

    @property
    def total(self) -> Decimal:
        return self.hq_commission + self.branch_commission + self.sales_commission + self.override_commission

    @classmethod
    def zero(cls) -> "SaleAllocation":
        return cls(ZERO, ZERO, ZERO, ZERO)


def allocate(distribution: CommissionDistribution, manager_id: int | None, agent_id: int | None) -> SaleAllocation:
    hq, branch, sales = distribution.hq_share, distribution.branch_share, distribution.sales_share
    if manager_id is not None and agent_id is not None:
        return SaleAllocation(hq, branch, sales, ZERO)
    if agent_id is not None:
        return SaleAllocation(hq + branch, ZERO, sales, ZERO)
    if manager_id is not None:
        return SaleAllocation(hq, branch, ZERO, sales)
    return SaleAllocation(distribution.total, ZERO, ZERO, ZERO)


def own_commission(sale, profile_id: int) -> Decimal:
    """Commission on ``sale`` payable to ``profile_id``.

    The sale's manager earns branch plus override commission and the sale's
    agent earns the sales commission.
    """

    total = ZERO
    if sale.manager_id == profile_id:
        total += to_decimal(sale.branch_commission) + to_decimal(sale.override_commission)
    if sale.agent_id == profile_id:
        total += to_decimal(sale.sales_commission)
    return total


def calculate_withholding(amount, rate_percent) -> Decimal:
    """Withholding on a gross amount, ``rate_percent`` given as e.g. 3.3."""

    gross = to_decimal(amount)
    if gross <= 0:
        return ZERO
    return floor_amount(gross * to_decimal(rate_percent) / Decimal("100"))


__all__ = [
    "CENT",
    "CommissionDistribution",
    "CommissionResult",
    "SHARE_QUANT",
    "SaleAllocation",
    "TierMissingWarning",
    "ZERO",
    "allocate",
    "calculate_net_revenue",
    "calculate_withholding",
    "floor_amount",
    "own_commission",
    "split_net_revenue",
    "to_decimal",
]
