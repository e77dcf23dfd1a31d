from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from affiliate_desk import crud
from affiliate_desk import models
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import PayslipStatus, ProfileType
from affiliate_desk.database import Base
from affiliate_desk.errors import InvalidState, NotFound, ValidationFailure
from affiliate_desk.schemas import LeadCreate, ProductDetails, ProfileBankUpdate, ProfileCreate, TierCreate
from affiliate_desk.services import AffiliateDesk
from affiliate_desk.services.cache import ProfileAggregateCache
from affiliate_desk.services.notifications import LoggingNotifier, NotificationType

HQ = Actor.hq()
REVIEWER = Actor.hq(user_id=2)
PRODUCT = ProductDetails(product_code="ICN-NRT", cabin_type="ECONOMY", fare_category="STANDARD")
BANK = {"bank_name": "KB", "bank_account": "110-222-333444", "bank_account_holder": "Holder"}


def _make_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()


def _setup(session, notifier=None, agent_bank=True):
    notifier = notifier if notifier is not None else LoggingNotifier()
    desk = AffiliateDesk(session, notifier=notifier, cache=ProfileAggregateCache())
    manager = desk.relations.onboard(
        ProfileCreate(type=ProfileType.BRANCH_MANAGER, affiliate_code="M1", display_name="Manager", **BANK),
        HQ,
    )
    agent = desk.relations.onboard(
        ProfileCreate(
            type=ProfileType.SALES_AGENT,
            affiliate_code="A1",
            display_name="Agent",
            manager_id=manager.id,
            **(BANK if agent_bank else {}),
        ),
        HQ,
    )
    desk.resolver.create_tier(
        TierCreate(
            product_code="ICN-NRT",
            cabin_type="ECONOMY",
            fare_category="STANDARD",
            sale_amount=Decimal("1000000"),
            cost_amount=Decimal("400000"),
        )
    )
    return desk, manager, agent


def _sale(desk, agent, sale_amount, cost_amount, sale_date, confirm=True):
    lead = desk.ownership.create_lead(LeadCreate(customer_name="Customer", agent_id=agent.id), HQ)
    actor = Actor.for_profile(agent)
    sale = desk.submit_sale(lead.id, None, sale_amount, cost_amount, PRODUCT, actor, sale_date=sale_date)
    if confirm:
        desk.sales.request_approval(sale.id, actor)
        desk.approve_sale(sale.id, REVIEWER)
        desk.confirm_sale(sale.id, REVIEWER)
    return sale


def _march_activity(desk, agent):
    _sale(desk, agent, 1000000, 400000, date(2025, 3, 3))
    _sale(desk, agent, 1000001, 400000, date(2025, 3, 31))
    _sale(desk, agent, 1000000, 400000, date(2025, 4, 1))
    _sale(desk, agent, 1000000, 400000, date(2025, 3, 15), confirm=False)


def test_settlement_totals_per_role():
    session = _make_session()
    try:
        desk, manager, agent = _setup(session)
        _march_activity(desk, agent)

        agent_slip = desk.run_settlement(agent.id, "2025-03", HQ)
        assert agent_slip.status is PayslipStatus.DRAFT
        assert agent_slip.sales_count == 2
        assert agent_slip.total_sales == Decimal("2000001")
        assert agent_slip.total_commission == Decimal("360001")
        assert agent_slip.withholding_rate == Decimal("3.3")
        assert agent_slip.total_withholding == Decimal("11880")
        assert agent_slip.net_payment == Decimal("348121")
        assert agent_slip.bank_account == BANK["bank_account"]
        assert agent_slip.needs_review is False

        manager_slip = desk.run_settlement(manager.id, "2025-03", HQ)
        assert manager_slip.total_commission == Decimal("480000")
        assert manager_slip.total_withholding == Decimal("15840")
        assert manager_slip.net_payment == Decimal("464160")
    finally:
        session.close()


def test_rerun_replaces_the_same_payslip():
    session = _make_session()
    try:
        desk, _, agent = _setup(session)
        _march_activity(desk, agent)

        first = desk.run_settlement(agent.id, "2025-03")
        first_id, first_net = first.id, first.net_payment
        second = desk.run_settlement(agent.id, "2025-03")

        assert second.id == first_id
        assert second.net_payment == first_net
        assert len(crud.list_payslips(session, period="2025-03")) == 1
    finally:
        session.close()


def test_profile_withholding_rate_overrides_default():
    session = _make_session()
    try:
        desk, _, agent = _setup(session)
        _march_activity(desk, agent)
        desk.relations.update_bank_details(agent.id, ProfileBankUpdate(withholding_rate=Decimal("8.8")), HQ)

        payslip = desk.run_settlement(agent.id, "2025-03")

        assert payslip.withholding_rate == Decimal("8.8")
        assert payslip.total_withholding == Decimal("31680")
        assert payslip.net_payment == Decimal("328321")
    finally:
        session.close()


def test_profile_without_sales_gets_an_empty_payslip():
    session = _make_session()
    try:
        desk, manager, _ = _setup(session)

        payslip = desk.run_settlement(manager.id, "2025-03")

        assert payslip.sales_count == 0
        assert payslip.total_commission == Decimal("0")
        assert payslip.net_payment == Decimal("0")
    finally:
        session.close()


def test_payslip_lifecycle():
    session = _make_session()
    try:
        desk, _, agent = _setup(session)
        _march_activity(desk, agent)
        payslip = desk.run_settlement(agent.id, "2025-03")

        desk.approve_settlement(payslip.id, HQ)
        assert payslip.status is PayslipStatus.APPROVED
        approved_at = payslip.approved_at
        desk.approve_settlement(payslip.id, HQ)
        assert payslip.approved_at == approved_at

        # Re-running an approved payslip sends it back for approval.
        desk.run_settlement(agent.id, "2025-03")
        assert payslip.status is PayslipStatus.DRAFT
        assert payslip.approved_at is None

        desk.approve_settlement(payslip.id, HQ)
        desk.settlement.mark_sent(payslip.id, "exports/2025-03/payslip.xlsx")
        assert payslip.status is PayslipStatus.SENT
        assert payslip.sent_at is not None

        with pytest.raises(InvalidState):
            desk.run_settlement(agent.id, "2025-03")
        with pytest.raises(InvalidState):
            desk.approve_settlement(payslip.id, HQ)
        with pytest.raises(InvalidState):
            desk.settlement.mark_sent(payslip.id)
    finally:
        session.close()


def test_missing_bank_details_flag_review(notifier):
    session = _make_session()
    try:
        desk, _, agent = _setup(session, notifier=notifier, agent_bank=False)
        _sale(desk, agent, 1000000, 400000, date(2025, 3, 3))

        payslip = desk.run_settlement(agent.id, "2025-03")

        assert payslip.needs_review is True
        assert payslip.review_notes == "Missing bank details: bank_name, bank_account, bank_account_holder"
        assert NotificationType.PAYSLIP_NEEDS_REVIEW in notifier.types
    finally:
        session.close()


def test_invalid_period_and_unknown_profile():
    session = _make_session()
    try:
        desk, _, agent = _setup(session)

        with pytest.raises(ValidationFailure):
            desk.run_settlement(agent.id, "2025-13")
        with pytest.raises(ValidationFailure):
            desk.settlement.run_period("March")
        with pytest.raises(NotFound):
            desk.run_settlement(9999, "2025-03")
        with pytest.raises(NotFound):
            desk.approve_settlement(9999)
    finally:
        session.close()


def test_run_period_skips_sent_payslips():
    session = _make_session()
    try:
        desk, manager, agent = _setup(session)
        _march_activity(desk, agent)

        result = desk.settlement.run_period("2025-03", HQ)
        assert sorted(item.profile_id for item in result.payslips) == [manager.id, agent.id]
        assert result.failures == []
        assert result.skipped == []

        agent_slip = next(item for item in result.payslips if item.profile_id == agent.id)
        desk.approve_settlement(agent_slip.id)
        desk.settlement.mark_sent(agent_slip.id)

        rerun = desk.settlement.run_period("2025-03", HQ)
        assert [item.profile_id for item in rerun.payslips] == [manager.id]
        assert rerun.skipped == [agent.id]
        assert rerun.failures == []
        assert desk.settlement.get_payslip(agent_slip.id).status is PayslipStatus.SENT

        audit_actions = {entry.action for entry in session.query(models.AuditLog).all()}
        assert {"settlement_run", "settlement_approved"} <= audit_actions
    finally:
        session.close()


def test_run_period_collects_failures(monkeypatch):
    session = _make_session()
    try:
        desk, manager, agent = _setup(session)
        _march_activity(desk, agent)
        compute = desk.settlement._compute

        def broken_for_agent(profile, period):
            if profile.id == agent.id:
                raise ValidationFailure("Bank details unreadable", {"profile_id": profile.id})
            return compute(profile, period)

        monkeypatch.setattr(desk.settlement, "_compute", broken_for_agent)

        result = desk.settlement.run_period("2025-03", HQ)
        assert [item.profile_id for item in result.payslips] == [manager.id]
        assert [(item.profile_id, item.kind) for item in result.failures] == [(agent.id, "DATA")]
        assert result.skipped == []
    finally:
        session.close()
