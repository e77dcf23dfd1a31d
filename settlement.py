"""Monthly settlement CLI.

Settles CONFIRMED sales of a month into DRAFT payslips, optionally approves
them and sends the approved ones as XLSX workbooks.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from affiliate_desk import config
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import PayslipStatus
from affiliate_desk.core.formatting import format_amount
from affiliate_desk.core.periods import parse_period, previous_period
from affiliate_desk.database import SessionLocal, init_db
from affiliate_desk.errors import AffiliateError
from affiliate_desk.exporting.payslips import send_approved_payslips
from affiliate_desk.schemas import PayslipRead, SettlementRunResult
from affiliate_desk.services import AffiliateDesk

logger = logging.getLogger("settlement")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(description="Settle confirmed affiliate sales into monthly payslips.")
    parser.add_argument(
        "--month",
        default=None,
        help="Settlement period in YYYY-MM format (default: the previous month).",
    )
    parser.add_argument("--profile", type=int, default=None, help="Settle a single affiliate profile id.")
    parser.add_argument("--approve", action="store_true", help="Approve the DRAFT payslips that were produced.")
    parser.add_argument("--send", action="store_true", help="Export and mark every APPROVED payslip as sent.")
    parser.add_argument(
        "--out",
        default=None,
        help=f"Export directory for payslip workbooks (default: {config.EXPORT_DIR}).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""

    args = parse_args(argv)
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    period = args.month or previous_period()
    try:
        parse_period(period)
    except ValueError as exc:
        raise SystemExit("--month must be provided in YYYY-MM format.") from exc

    init_db()
    session = SessionLocal()
    try:
        desk = AffiliateDesk(session)
        actor = Actor.hq()
        if args.profile is not None:
            try:
                payslip = desk.run_settlement(args.profile, period, actor)
            except AffiliateError as exc:
                raise SystemExit(f"Settlement failed for profile {args.profile}: {exc.message}") from exc
            result = SettlementRunResult(period=period, payslips=[PayslipRead.model_validate(payslip)])
        else:
            result = desk.settlement.run_period(period, actor)

        approved = 0
        if args.approve:
            for item in result.payslips:
                if item.status is PayslipStatus.DRAFT:
                    desk.approve_settlement(item.id, actor)
                    approved += 1

        total_net = sum((item.net_payment for item in result.payslips), 0)
        print(
            f"Settled {len(result.payslips)} payslips for {period}, net payment {format_amount(total_net)}"
            f" ({len(result.failures)} failures, {approved} approved)."
        )
        if result.skipped:
            print(f"  already sent, skipped: {', '.join(str(profile_id) for profile_id in result.skipped)}")
        for failure in result.failures:
            print(f"  profile {failure.profile_id}: {failure.kind} {failure.message}")

        if args.send:
            sent = send_approved_payslips(
                session,
                period,
                engine=desk.settlement,
                export_dir=Path(args.out) if args.out else None,
                notifier=desk.notifier,
            )
            print(f"Sent {sent.sent} payslips ({sent.failed} failed).")
        return 1 if result.failures else 0
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
