"""Commission tier administration and split preview."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.auth import User
from affiliate_desk.core.actors import Actor
from affiliate_desk.dependencies import get_actor, get_admin_user, get_db, get_desk
from affiliate_desk.schemas import CommissionPreviewRead, CommissionPreviewRequest, TierCreate, TierRead
from affiliate_desk.services import AffiliateDesk

router = APIRouter(prefix="/commissions", tags=["Commissions"])


@router.get("/tiers", response_model=list[TierRead])
def list_tiers(
    product_code: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return crud.list_tiers(db, product_code=product_code)


@router.post("/tiers", response_model=TierRead, status_code=status.HTTP_201_CREATED)
def create_tier(
    payload: TierCreate,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return desk.resolver.create_tier(payload)


@router.post("/preview", response_model=CommissionPreviewRead)
def preview_commission(
    payload: CommissionPreviewRequest,
    desk: AffiliateDesk = Depends(get_desk),
    actor: Actor = Depends(get_actor),
):
    result = desk.resolver.compute(
        payload.product_code,
        payload.cabin_type,
        payload.fare_category,
        payload.fare_label,
        payload.sale_amount,
        payload.cost_amount,
        notify=False,
    )
    return CommissionPreviewRead(
        hq_share=result.hq_share,
        branch_share=result.branch_share,
        sales_share=result.sales_share,
        total=result.distribution.total,
        net_revenue=result.net_revenue,
        source=result.source,
        warning=result.warning.message if result.warning else None,
    )
