from datetime import date
from decimal import Decimal
from io import BytesIO
from pathlib import Path

import pandas as pd
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from affiliate_desk import models  # noqa: F401
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import PayslipStatus, ProfileType
from affiliate_desk.database import Base
from affiliate_desk.errors import InvalidState
from affiliate_desk.exporting.payslips import (
    SALE_COLUMNS,
    build_payslip_workbook,
    export_payslip,
    payslip_download,
    send_approved_payslips,
)
from affiliate_desk.schemas import LeadCreate, ProductDetails, ProfileCreate, TierCreate
from affiliate_desk.services import AffiliateDesk
from affiliate_desk.services.cache import ProfileAggregateCache
from affiliate_desk.services.notifications import LoggingNotifier, NotificationType

HQ = Actor.hq()
REVIEWER = Actor.hq(user_id=2)


def _make_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()


def _settled_agent(session, notifier=None, with_sale=True):
    desk = AffiliateDesk(
        session,
        notifier=notifier if notifier is not None else LoggingNotifier(),
        cache=ProfileAggregateCache(),
    )
    manager = desk.relations.onboard(
        ProfileCreate(type=ProfileType.BRANCH_MANAGER, affiliate_code="M1", display_name="Manager"), HQ
    )
    agent = desk.relations.onboard(
        ProfileCreate(
            type=ProfileType.SALES_AGENT,
            affiliate_code="A1",
            display_name="Agent Kim",
            manager_id=manager.id,
            bank_name="KB",
            bank_account="110-222-333444",
            bank_account_holder="Kim",
        ),
        HQ,
    )
    if with_sale:
        desk.resolver.create_tier(
            TierCreate(
                product_code="ICN-NRT",
                cabin_type="ECONOMY",
                fare_category="STANDARD",
                fare_label="Early bird",
                sale_amount=Decimal("1000000"),
                cost_amount=Decimal("400000"),
            )
        )
        lead = desk.ownership.create_lead(LeadCreate(customer_name="Customer", agent_id=agent.id), HQ)
        actor = Actor.for_profile(agent)
        product = ProductDetails(
            product_code="ICN-NRT", cabin_type="ECONOMY", fare_category="STANDARD", fare_label="Early bird"
        )
        sale = desk.submit_sale(lead.id, None, 1000000, 400000, product, actor, sale_date=date(2025, 3, 10))
        desk.sales.request_approval(sale.id, actor)
        desk.approve_sale(sale.id, REVIEWER)
        desk.confirm_sale(sale.id, REVIEWER)
    payslip = desk.run_settlement(agent.id, "2025-03", HQ)
    return desk, agent, payslip


def test_workbook_has_summary_and_sales_sheets():
    session = _make_session()
    try:
        _, _, payslip = _settled_agent(session)

        sheets = pd.read_excel(BytesIO(build_payslip_workbook(session, payslip, currency="KRW")), sheet_name=None)

        assert list(sheets) == ["Summary", "Sales"]
        summary = dict(zip(sheets["Summary"]["Field"], sheets["Summary"]["Value"]))
        assert summary["Affiliate Code"] == "A1"
        assert summary["Period"] == "2025-03"
        assert float(summary["Gross Commission (KRW)"]) == 180000
        assert summary["Account"] == "**********3444"

        sales = sheets["Sales"]
        assert list(sales.columns) == SALE_COLUMNS
        assert len(sales) == 1
        assert sales.loc[0, "Role"] == "agent"
        assert sales.loc[0, "Fare"] == "STANDARD / Early bird"
        assert sales.loc[0, "Commission"] == 180000
    finally:
        session.close()


def test_workbook_for_empty_payslip_keeps_columns():
    session = _make_session()
    try:
        _, _, payslip = _settled_agent(session, with_sale=False)

        sheets = pd.read_excel(BytesIO(build_payslip_workbook(session, payslip)), sheet_name=None)

        assert list(sheets["Sales"].columns) == SALE_COLUMNS
        assert sheets["Sales"].empty
    finally:
        session.close()


def test_only_approved_payslips_are_exported(tmp_path):
    session = _make_session()
    try:
        _, _, payslip = _settled_agent(session)

        with pytest.raises(InvalidState):
            export_payslip(session, payslip, tmp_path)
    finally:
        session.close()


def test_download_refuses_draft_payslips(tmp_path):
    session = _make_session()
    try:
        desk, _, payslip = _settled_agent(session)

        with pytest.raises(InvalidState):
            payslip_download(session, payslip)

        desk.approve_settlement(payslip.id, HQ)
        filename, content = payslip_download(session, payslip)
        assert filename == f"payslip_2025-03_{payslip.profile_id}.xlsx"
        assert set(pd.read_excel(BytesIO(content), sheet_name=None)) == {"Summary", "Sales"}

        send_approved_payslips(session, "2025-03", engine=desk.settlement, export_dir=tmp_path)
        assert payslip.status is PayslipStatus.SENT
        assert payslip_download(session, payslip)[0] == filename
    finally:
        session.close()


def test_send_marks_approved_payslips_sent(tmp_path):
    session = _make_session()
    try:
        desk, _, payslip = _settled_agent(session)
        desk.approve_settlement(payslip.id, HQ)

        result = send_approved_payslips(session, "2025-03", engine=desk.settlement, export_dir=tmp_path)

        assert (result.sent, result.failed) == (1, 0)
        assert payslip.status is PayslipStatus.SENT
        assert payslip.export_path == str(tmp_path / "2025-03" / "payslip_2025-03_A1.xlsx")
        assert Path(payslip.export_path).exists()

        again = send_approved_payslips(session, "2025-03", engine=desk.settlement, export_dir=tmp_path)
        assert (again.sent, again.failed) == (0, 0)
    finally:
        session.close()


def test_failed_delivery_leaves_payslip_approved(tmp_path, notifier):
    session = _make_session()
    try:
        desk, _, payslip = _settled_agent(session, notifier=notifier)
        desk.approve_settlement(payslip.id, HQ)
        blocked = tmp_path / "blocked"
        blocked.write_text("not a directory")

        result = send_approved_payslips(
            session, "2025-03", engine=desk.settlement, export_dir=blocked, notifier=notifier
        )

        assert (result.sent, result.failed) == (0, 1)
        assert payslip.status is PayslipStatus.APPROVED
        assert NotificationType.PAYSLIP_EXPORT_FAILED in notifier.types
    finally:
        session.close()
