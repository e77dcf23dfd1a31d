from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Iterable

import pandas as pd
from sqlalchemy.orm import Session

from affiliate_desk import config, crud
from affiliate_desk.core.commission import own_commission
from affiliate_desk.core.enums import PayslipStatus
from affiliate_desk.core.formatting import format_display_date, mask_account_number
from affiliate_desk.core.periods import period_bounds
from affiliate_desk.errors import InvalidState
from affiliate_desk.models import AffiliatePayslip, AffiliateProfile, AffiliateSale
from affiliate_desk.schemas import SendResult
from affiliate_desk.services.notifications import (
    AdminNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)
from affiliate_desk.services.settlement import SettlementEngine

logger = logging.getLogger(__name__)

DOWNLOADABLE_STATUSES = (PayslipStatus.APPROVED, PayslipStatus.SENT)

SALE_COLUMNS = [
    "Sale ID",
    "Sale Date",
    "Product",
    "Cabin",
    "Fare",
    "Role",
    "Sale Amount",
    "Net Revenue",
    "Commission",
]


def _summary_df(payslip: AffiliatePayslip, profile: AffiliateProfile, currency: str) -> pd.DataFrame:
    rows = [
        ("Affiliate Code", profile.affiliate_code),
        ("Name", profile.display_name),
        ("Type", profile.type.value),
        ("Period", payslip.period),
        ("Sales Count", payslip.sales_count),
        (f"Total Sales ({currency})", float(payslip.total_sales)),
        (f"Gross Commission ({currency})", float(payslip.total_commission)),
        ("Withholding Rate (%)", float(payslip.withholding_rate)),
        (f"Withholding ({currency})", float(payslip.total_withholding)),
        (f"Net Payment ({currency})", float(payslip.net_payment)),
        ("Bank", payslip.bank_name or ""),
        ("Account", mask_account_number(payslip.bank_account)),
        ("Account Holder", payslip.bank_account_holder or ""),
        ("Status", payslip.status.value),
        ("Review Notes", payslip.review_notes or ""),
    ]
    return pd.DataFrame(rows, columns=["Field", "Value"])


def _role(sale: AffiliateSale, profile_id: int) -> str:
    roles = []
    if sale.manager_id == profile_id:
        roles.append("manager")
    if sale.agent_id == profile_id:
        roles.append("agent")
    return "/".join(roles)


def _sales_df(sales: Iterable[AffiliateSale], profile_id: int) -> pd.DataFrame:
    rows = []
    for sale in sales:
        rows.append(
            {
                "Sale ID": sale.id,
                "Sale Date": format_display_date(sale.sale_date),
                "Product": sale.product_code,
                "Cabin": sale.cabin_type,
                "Fare": sale.fare_category if not sale.fare_label else f"{sale.fare_category} / {sale.fare_label}",
                "Role": _role(sale, profile_id),
                "Sale Amount": float(sale.sale_amount),
                "Net Revenue": float(sale.net_revenue),
                "Commission": float(own_commission(sale, profile_id)),
            }
        )
    if not rows:
        return pd.DataFrame(columns=SALE_COLUMNS)
    return pd.DataFrame(rows, columns=SALE_COLUMNS)


def build_payslip_workbook(db: Session, payslip: AffiliatePayslip, currency: str = config.CURRENCY) -> bytes:
    """Return an XLSX workbook (bytes) with a summary sheet and the sale detail."""

    profile = db.get(AffiliateProfile, payslip.profile_id)
    start, end = period_bounds(payslip.period)
    sales = crud.list_confirmed_sales_for_profile(db, payslip.profile_id, start, end)

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        _summary_df(payslip, profile, currency).to_excel(writer, sheet_name="Summary", index=False)
        _sales_df(sales, payslip.profile_id).to_excel(writer, sheet_name="Sales", index=False)

    buffer.seek(0)
    return buffer.getvalue()


def _require_status(payslip: AffiliatePayslip, allowed: tuple[PayslipStatus, ...]) -> None:
    if payslip.status not in allowed:
        names = " or ".join(status.value for status in allowed)
        raise InvalidState(
            f"Payslip {payslip.id} is {payslip.status.value}; only {names} payslips are exported",
            {"payslip_id": payslip.id, "status": payslip.status.value},
        )


def payslip_download(db: Session, payslip: AffiliatePayslip) -> tuple[str, bytes]:
    """Filename and workbook bytes for an approved (or already sent) payslip."""

    _require_status(payslip, DOWNLOADABLE_STATUSES)
    return f"payslip_{payslip.period}_{payslip.profile_id}.xlsx", build_payslip_workbook(db, payslip)


def export_payslip(db: Session, payslip: AffiliatePayslip, export_dir: Path | None = None) -> Path:
    """Write an APPROVED payslip to ``export_dir`` and return the file path."""

    _require_status(payslip, (PayslipStatus.APPROVED,))
    target_dir = Path(export_dir or config.EXPORT_DIR) / payslip.period
    target_dir.mkdir(parents=True, exist_ok=True)
    profile = db.get(AffiliateProfile, payslip.profile_id)
    path = target_dir / f"payslip_{payslip.period}_{profile.affiliate_code}.xlsx"
    path.write_bytes(build_payslip_workbook(db, payslip))
    logger.info("Exported payslip %s to %s", payslip.id, path)
    return path


def send_approved_payslips(
    db: Session,
    period: str,
    engine: SettlementEngine | None = None,
    export_dir: Path | None = None,
    notifier: AdminNotifier | None = None,
) -> SendResult:
    """Export every APPROVED payslip of ``period`` and mark it SENT.

    A payslip that fails to export stays APPROVED so the next run retries it.
    """

    engine = engine or SettlementEngine(db, notifier=notifier)
    sent = failed = 0
    for payslip in crud.list_payslips(db, period=period, status=PayslipStatus.APPROVED):
        payslip_id = payslip.id
        try:
            path = export_payslip(db, payslip, export_dir)
            engine.mark_sent(payslip_id, str(path))
        except Exception as exc:
            failed += 1
            logger.exception("Failed to send payslip %s for %s", payslip_id, period)
            notify_admin(
                notifier,
                NotificationPayload(
                    type=NotificationType.PAYSLIP_EXPORT_FAILED,
                    title="Payslip delivery failed",
                    message=f"Payslip {payslip_id} ({period}) could not be sent: {exc}",
                    priority="high",
                    details={"payslip_id": payslip_id, "period": period},
                ),
            )
        else:
            sent += 1
    logger.info("Sent %d payslips for %s (%d failed)", sent, period, failed)
    return SendResult(period=period, sent=sent, failed=failed)
