"""Affiliate profile and hierarchy routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.auth import User
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import ProfileType
from affiliate_desk.dependencies import get_actor, get_admin_user, get_db, get_desk
from affiliate_desk.schemas import (
    ProfileBankUpdate,
    ProfileCreate,
    ProfileRead,
    ProfileSummaryRead,
    RelationCreate,
    RelationRead,
)
from affiliate_desk.services import AffiliateDesk

router = APIRouter(prefix="/profiles", tags=["Profiles"])


def _hq(admin: User) -> Actor:
    return Actor.hq(user_id=admin.id)


def _ensure_visible(desk: AffiliateDesk, actor: Actor, profile_id: int) -> None:
    """HQ sees everyone; managers see themselves and their agents; agents see themselves."""
    if actor.is_hq or actor.profile_id == profile_id:
        return
    manager = desk.store.get_active_manager(profile_id)
    if manager is None or manager.id != actor.profile_id:
        raise HTTPException(status_code=403, detail="Profile is outside your team")


@router.get("", response_model=list[ProfileRead])
def list_profiles(
    profile_type: ProfileType | None = None,
    code: str | None = None,
    db: Session = Depends(get_db),
    admin: User = Depends(get_admin_user),
):
    return crud.list_profiles(db, profile_type=profile_type, code=code)


@router.post("", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
def onboard_profile(
    payload: ProfileCreate,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return desk.relations.onboard(payload, _hq(admin))


@router.get("/{profile_id}", response_model=ProfileRead)
def get_profile(profile_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    _ensure_visible(desk, actor, profile_id)
    return desk.store.get_profile(profile_id)


@router.get("/{profile_id}/agents", response_model=list[ProfileRead])
def list_agents(profile_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    _ensure_visible(desk, actor, profile_id)
    desk.store.get_profile(profile_id)
    return desk.store.get_active_agents(profile_id)


@router.get("/{profile_id}/summary", response_model=ProfileSummaryRead)
def profile_summary(profile_id: int, desk: AffiliateDesk = Depends(get_desk), actor: Actor = Depends(get_actor)):
    _ensure_visible(desk, actor, profile_id)
    return desk.sales.profile_summary(profile_id)


@router.patch("/{profile_id}/bank", response_model=ProfileRead)
def update_bank_details(
    profile_id: int,
    payload: ProfileBankUpdate,
    desk: AffiliateDesk = Depends(get_desk),
    actor: Actor = Depends(get_actor),
):
    return desk.relations.update_bank_details(profile_id, payload, actor)


@router.post("/{profile_id}/deactivate", response_model=ProfileRead)
def deactivate_profile(
    profile_id: int,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return desk.relations.deactivate(profile_id, _hq(admin))


@router.post("/relations", response_model=RelationRead, status_code=status.HTTP_201_CREATED)
def attach_agent(
    payload: RelationCreate,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return desk.relations.attach_agent(payload.manager_id, payload.agent_id, _hq(admin))


@router.post("/relations/{agent_id}/detach", response_model=RelationRead)
def detach_agent(
    agent_id: int,
    desk: AffiliateDesk = Depends(get_desk),
    admin: User = Depends(get_admin_user),
):
    return desk.relations.detach_agent(agent_id, _hq(admin))
