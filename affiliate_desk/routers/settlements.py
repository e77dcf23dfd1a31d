"""Settlement runs, approval, export and delivery (admin only)."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from affiliate_desk import crud
from affiliate_desk.auth import User
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import PayslipStatus
from affiliate_desk.dependencies import get_admin_user, get_desk
from affiliate_desk.exporting.payslips import payslip_download, send_approved_payslips
from affiliate_desk.schemas import (
    PayslipRead,
    SendResult,
    SettlementRunRequest,
    SettlementRunResult,
)
from affiliate_desk.services import AffiliateDesk

router = APIRouter(prefix="/settlements", tags=["Settlements"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.get("", response_model=list[PayslipRead])
def list_payslips(
    period: str | None = None,
    status: PayslipStatus | None = None,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return crud.list_payslips(desk.db, period=period, status=status)


@router.post("/run", response_model=SettlementRunResult)
def run_settlement(
    payload: SettlementRunRequest,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    actor = Actor.hq(user_id=admin.id)
    if payload.profile_id is not None:
        payslip = desk.run_settlement(payload.profile_id, payload.period, actor)
        return SettlementRunResult(period=payload.period, payslips=[PayslipRead.model_validate(payslip)])
    return desk.settlement.run_period(payload.period, actor)


@router.get("/{payslip_id}", response_model=PayslipRead)
def get_payslip(payslip_id: int, desk: AffiliateDesk = Depends(get_desk), admin: User = Depends(get_admin_user)):
    return desk.settlement.get_payslip(payslip_id)


@router.post("/{payslip_id}/approve", response_model=PayslipRead)
def approve_payslip(payslip_id: int, desk: AffiliateDesk = Depends(get_desk), admin: User = Depends(get_admin_user)):
    return desk.approve_settlement(payslip_id, Actor.hq(user_id=admin.id))


@router.get("/{payslip_id}/export")
def export_payslip(payslip_id: int, desk: AffiliateDesk = Depends(get_desk), admin: User = Depends(get_admin_user)):
    payslip = desk.settlement.get_payslip(payslip_id)
    filename, content = payslip_download(desk.db, payslip)
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/send", response_model=SendResult)
def send_payslips(
    payload: SettlementRunRequest,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return send_approved_payslips(desk.db, payload.period, engine=desk.settlement, notifier=desk.notifier)
