"""Sale workflow routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import SaleStatus
from affiliate_desk.dependencies import get_actor, get_db, get_desk
from affiliate_desk.schemas import SaleCreate, SaleRead, SaleRejectRequest
from affiliate_desk.services import AffiliateDesk

router = APIRouter(prefix="/sales", tags=["Sales"])


@router.get("", response_model=list[SaleRead])
def list_sales(
    status_filter: SaleStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return crud.list_sales(db, status=status_filter, profile_id=actor.profile_id)


@router.post("", response_model=SaleRead, status_code=status.HTTP_201_CREATED)
def submit_sale(payload: SaleCreate, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.submit_sale(
        payload.lead_id,
        payload.attribution,
        payload.sale_amount,
        payload.cost_amount,
        payload.product_details(),
        actor,
        sale_date=payload.sale_date,
    )


@router.get("/{sale_id}", response_model=SaleRead)
def get_sale(sale_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    sale = desk.sales.get_sale(sale_id)
    if not actor.is_hq and actor.profile_id not in (sale.manager_id, sale.agent_id, sale.submitted_by_id):
        raise HTTPException(status_code=403, detail="Sale is outside your team")
    return sale


@router.post("/{sale_id}/request-approval", response_model=SaleRead)
def request_approval(sale_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.sales.request_approval(sale_id, actor)


@router.post("/{sale_id}/approve", response_model=SaleRead)
def approve_sale(sale_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.approve_sale(sale_id, actor)


@router.post("/{sale_id}/reject", response_model=SaleRead)
def reject_sale(
    sale_id: int,
    payload: SaleRejectRequest,
    desk: AffiliateDesk = Depends(get_desk),
    actor: Actor = Depends(get_actor),
):
    return desk.reject_sale(sale_id, actor, payload.reason)


@router.post("/{sale_id}/confirm", response_model=SaleRead)
def confirm_sale(sale_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.confirm_sale(sale_id, actor)


@router.post("/{sale_id}/recompute", response_model=SaleRead)
def recompute_commission(sale_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.sales.recompute_commission(sale_id, actor)
