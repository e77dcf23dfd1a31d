from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from affiliate_desk import models  # noqa: F401
from affiliate_desk.core.enums import CommissionSource
from affiliate_desk.database import Base
from affiliate_desk.errors import ValidationFailure
from affiliate_desk.schemas import TierCreate
from affiliate_desk.services import AffiliateDesk
from affiliate_desk.services.cache import ProfileAggregateCache
from affiliate_desk.services.commission import CommissionResolver
from affiliate_desk.services.notifications import NotificationType


def _make_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()


def _tier(**overrides) -> TierCreate:
    data = {
        "product_code": "ICN-NRT",
        "cabin_type": "ECONOMY",
        "fare_category": "STANDARD",
        "sale_amount": Decimal("1000000"),
        "cost_amount": Decimal("400000"),
    }
    data.update(overrides)
    return TierCreate(**data)


def test_missing_tier_gives_zero_split_and_alerts(notifier):
    session = _make_session()
    try:
        resolver = CommissionResolver(session, notifier=notifier)
        result = resolver.compute("ICN-NRT", "ECONOMY", "PROMO", None, 1000000, 400000)

        assert result.source is CommissionSource.TIER_MISSING
        assert result.is_tier_missing
        assert result.net_revenue == Decimal("600000")
        assert result.hq_share == result.branch_share == result.sales_share == Decimal("0")
        assert result.distribution.total == Decimal("0")
        assert "ICN-NRT" in result.warning.message

        assert notifier.types == [NotificationType.COMMISSION_TIER_MISSING]
        assert notifier.payloads[0].details["net_revenue"] == "600000"
    finally:
        session.close()


def test_missing_tier_without_notify_stays_quiet(notifier):
    session = _make_session()
    try:
        resolver = CommissionResolver(session, notifier=notifier)
        result = resolver.compute("ICN-NRT", "ECONOMY", "PROMO", None, 1000000, 400000, notify=False)

        assert result.is_tier_missing
        assert notifier.payloads == []
    finally:
        session.close()


def test_tier_without_shares_uses_default_rates(notifier):
    session = _make_session()
    try:
        resolver = CommissionResolver(session, notifier=notifier)
        tier = resolver.create_tier(_tier())

        result = resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", None, 1000000, 400000)

        assert result.source is CommissionSource.DEFAULT_RATES
        assert result.tier_id == tier.id
        assert result.hq_share == Decimal("180000")
        assert result.branch_share == Decimal("240000")
        assert result.sales_share == Decimal("180000")
        assert notifier.payloads == []
    finally:
        session.close()


def test_tier_shares_apply_when_net_matches():
    session = _make_session()
    try:
        resolver = CommissionResolver(session)
        resolver.create_tier(
            _tier(
                fare_label="Early bird",
                hq_share=Decimal("100000"),
                branch_share=Decimal("300000"),
                sales_share=Decimal("200000"),
            )
        )

        matching = resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", "Early bird", 1000000, 400000)
        assert matching.source is CommissionSource.TIER
        assert matching.hq_share == Decimal("100000")
        assert matching.branch_share == Decimal("300000")
        assert matching.sales_share == Decimal("200000")

        other_price = resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", "Early bird", 1100000, 400000)
        assert other_price.source is CommissionSource.DEFAULT_RATES
        assert other_price.distribution.total == Decimal("700000")
    finally:
        session.close()


def test_fare_label_is_part_of_the_key():
    session = _make_session()
    try:
        resolver = CommissionResolver(session)
        resolver.create_tier(_tier())

        assert resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", "", 1000000, 400000).source is (
            CommissionSource.DEFAULT_RATES
        )
        assert resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", "Flex", 1000000, 400000).source is (
            CommissionSource.TIER_MISSING
        )
    finally:
        session.close()


def test_invalid_amounts_are_rejected():
    session = _make_session()
    try:
        resolver = CommissionResolver(session)
        with pytest.raises(ValidationFailure):
            resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", None, 100, 200)
        with pytest.raises(ValidationFailure):
            resolver.compute("ICN-NRT", "ECONOMY", "STANDARD", None, -100, 0)
    finally:
        session.close()


def test_create_tier_validation():
    session = _make_session()
    try:
        resolver = CommissionResolver(session)

        with pytest.raises(ValidationFailure):
            resolver.create_tier(_tier(hq_share=Decimal("100000")))
        with pytest.raises(ValidationFailure):
            resolver.create_tier(
                _tier(hq_share=Decimal("1"), branch_share=Decimal("1"), sales_share=Decimal("1"))
            )
        with pytest.raises(ValidationFailure):
            resolver.create_tier(_tier(cost_amount=Decimal("2000000")))

        resolver.create_tier(_tier())
        with pytest.raises(ValidationFailure):
            resolver.create_tier(_tier())
    finally:
        session.close()


def test_rates_must_fit_in_net_revenue():
    session = _make_session()
    try:
        with pytest.raises(ValueError):
            CommissionResolver(session, hq_rate=Decimal("0.6"), branch_rate=Decimal("0.5"))
    finally:
        session.close()


def test_desk_compute_commission_uses_default_rates(notifier):
    session = _make_session()
    try:
        desk = AffiliateDesk(session, notifier=notifier, cache=ProfileAggregateCache())
        desk.resolver.create_tier(_tier())

        result = desk.compute_commission("ICN-NRT", "ECONOMY", "STANDARD", None, 1000000, 400000)

        assert result.source is CommissionSource.DEFAULT_RATES
        assert (result.hq_share, result.branch_share, result.sales_share) == (
            Decimal("180000"),
            Decimal("240000"),
            Decimal("180000"),
        )
        assert result.distribution.total == result.net_revenue
        assert notifier.payloads == []
    finally:
        session.close()
