"""Lead capture and ownership routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.core.actors import Actor, LeadOwner
from affiliate_desk.core.enums import OwnerType
from affiliate_desk.dependencies import get_actor, get_db, get_desk
from affiliate_desk.models import AffiliateLead
from affiliate_desk.schemas import (
    LeadAssignRequest,
    LeadCreate,
    LeadRead,
    LeadTransferRequest,
    OwnerRead,
    RecallRequest,
    RecallResult,
    TransferEventRead,
)
from affiliate_desk.services import AffiliateDesk

router = APIRouter(prefix="/leads", tags=["Leads"])


def _visible_lead(desk: AffiliateDesk, actor: Actor, lead_id: int) -> AffiliateLead:
    lead = desk.ownership.get_lead(lead_id)
    if not actor.is_hq and actor.profile_id not in (lead.manager_id, lead.agent_id):
        raise HTTPException(status_code=403, detail="Lead is outside your team")
    return lead


@router.get("", response_model=list[LeadRead])
def list_leads(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    if actor.kind is OwnerType.HQ:
        return crud.list_leads(db)
    if actor.kind is OwnerType.BRANCH_MANAGER:
        return crud.list_leads(db, manager_id=actor.profile_id)
    return crud.list_leads(db, agent_id=actor.profile_id)


@router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(payload: LeadCreate, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.ownership.create_lead(payload, actor)


@router.post("/recall", response_model=RecallResult)
def recall_leads(payload: RecallRequest, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.recall_leads(payload.lead_ids, actor)


@router.get("/{lead_id}", response_model=LeadRead)
def get_lead(lead_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return _visible_lead(desk, actor, lead_id)


@router.get("/{lead_id}/owner", response_model=OwnerRead)
def get_owner(lead_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    owner = desk.ownership.resolve_owner(_visible_lead(desk, actor, lead_id))
    return OwnerRead(owner_type=owner.owner_type, profile_id=owner.profile_id)


@router.get("/{lead_id}/history", response_model=list[TransferEventRead])
def lead_history(lead_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    _visible_lead(desk, actor, lead_id)
    return desk.ownership.history(lead_id)


@router.post("/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    lead_id: int,
    payload: LeadAssignRequest,
    desk: AffiliateDesk = Depends(get_desk),
    actor: Actor = Depends(get_actor),
):
    expected = None
    if payload.expected_owner_type is not None:
        expected = LeadOwner(payload.expected_owner_type, payload.expected_profile_id)
    return desk.ownership.assign(lead_id, payload.to_profile_id, actor, expected_owner=expected)


@router.post("/{lead_id}/transfer", response_model=LeadRead)
def transfer_lead(
    lead_id: int,
    payload: LeadTransferRequest,
    desk: AffiliateDesk = Depends(get_desk),
    actor: Actor = Depends(get_actor),
):
    return desk.transfer_lead(lead_id, payload.from_profile_id, payload.to_profile_id, actor)


@router.post("/{lead_id}/recall", response_model=LeadRead)
def recall_lead(lead_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    return desk.ownership.recall(lead_id, actor)
