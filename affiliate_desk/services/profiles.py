"""Profile lookups and the manager/agent relation graph."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.enums import ProfileStatus, ProfileType, RelationStatus
from affiliate_desk.database import unit_of_work
from affiliate_desk.errors import InvalidState, NotFound, PermissionDenied, ValidationFailure
from affiliate_desk.models import AffiliateLead, AffiliateProfile, AffiliateRelation
from affiliate_desk.schemas import ProfileBankUpdate, ProfileCreate
from affiliate_desk.services import audit
from affiliate_desk.services.cache import ProfileAggregateCache, profile_cache
from affiliate_desk.services.notifications import (
    AdminNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    """Read-only view of profiles and the hierarchy."""

    def get_profile(self, profile_id: int) -> AffiliateProfile:
        ...

    def get_active_manager(self, agent_id: int) -> AffiliateProfile | None:
        ...

    def get_active_agents(self, manager_id: int) -> Sequence[AffiliateProfile]:
        ...


class SqlProfileStore:
    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, profile_id: int) -> AffiliateProfile:
        profile = self.db.get(AffiliateProfile, profile_id)
        if profile is None:
            raise NotFound(f"Affiliate profile {profile_id} not found", {"profile_id": profile_id})
        return profile

    def get_active_manager(self, agent_id: int) -> AffiliateProfile | None:
        stmt = (
            select(AffiliateProfile)
            .join(AffiliateRelation, AffiliateRelation.manager_id == AffiliateProfile.id)
            .where(
                AffiliateRelation.agent_id == agent_id,
                AffiliateRelation.status == RelationStatus.ACTIVE,
            )
        )
        return self.db.execute(stmt).scalars().first()

    def get_active_agents(self, manager_id: int) -> Sequence[AffiliateProfile]:
        stmt = (
            select(AffiliateProfile)
            .join(AffiliateRelation, AffiliateRelation.agent_id == AffiliateProfile.id)
            .where(
                AffiliateRelation.manager_id == manager_id,
                AffiliateRelation.status == RelationStatus.ACTIVE,
            )
            .order_by(AffiliateProfile.id)
        )
        return self.db.execute(stmt).scalars().all()


def manages(store: ProfileStore, manager_id: int, agent_id: int) -> bool:
    """True when ``manager_id`` is the agent's current ACTIVE manager."""

    manager = store.get_active_manager(agent_id)
    return manager is not None and manager.id == manager_id


class RelationManager:
    """Write side of the hierarchy: onboarding, attach/detach, termination."""

    def __init__(
        self,
        db: Session,
        cache: ProfileAggregateCache | None = None,
        notifier: AdminNotifier | None = None,
    ):
        self.db = db
        self.store = SqlProfileStore(db)
        self.cache = cache if cache is not None else profile_cache
        self.notifier = notifier

    @staticmethod
    def _require_hq(actor: Actor, action: str) -> None:
        if not actor.is_hq:
            raise PermissionDenied(f"Only HQ can {action}", {"actor": actor.describe()})

    def onboard(self, payload: ProfileCreate, actor: Actor) -> AffiliateProfile:
        self._require_hq(actor, "onboard affiliate profiles")
        if crud.get_profile_by_code(self.db, payload.affiliate_code):
            raise ValidationFailure(
                f"Affiliate code {payload.affiliate_code} is already in use",
                {"affiliate_code": payload.affiliate_code},
            )

        data = payload.model_dump(exclude={"manager_id"})
        profile = AffiliateProfile(**data, status=ProfileStatus.ACTIVE)
        try:
            with unit_of_work(self.db):
                self.db.add(profile)
                self.db.flush()
                if payload.manager_id is not None:
                    self._attach(payload.manager_id, profile, actor)
        except IntegrityError as exc:
            raise ValidationFailure("Profile could not be created", {"error": str(exc.orig)}) from exc

        logger.info("Onboarded %s %s (%s)", profile.type.value, profile.id, profile.affiliate_code)
        self.cache.invalidate([profile.id, payload.manager_id])
        return profile

    def attach_agent(self, manager_id: int, agent_id: int, actor: Actor) -> AffiliateRelation:
        self._require_hq(actor, "change the hierarchy")
        agent = self.store.get_profile(agent_id)
        try:
            with unit_of_work(self.db):
                relation = self._attach(manager_id, agent, actor)
        except IntegrityError as exc:
            raise InvalidState(
                f"Agent {agent_id} was attached to another manager concurrently",
                {"agent_id": agent_id},
            ) from exc
        self.cache.invalidate([manager_id, agent_id])
        return relation

    def _attach(self, manager_id: int, agent: AffiliateProfile, actor: Actor) -> AffiliateRelation:
        manager = self.store.get_profile(manager_id)
        if manager.type is not ProfileType.BRANCH_MANAGER:
            raise ValidationFailure(f"Profile {manager_id} is not a branch manager", {"profile_id": manager_id})
        if agent.type is not ProfileType.SALES_AGENT:
            raise ValidationFailure(f"Profile {agent.id} is not a sales agent", {"profile_id": agent.id})
        if not manager.is_active or not agent.is_active:
            raise InvalidState("Inactive profiles cannot be attached", {"manager_id": manager_id, "agent_id": agent.id})

        current = self.store.get_active_manager(agent.id)
        if current is not None:
            if current.id == manager_id:
                return self._relation(manager_id, agent.id)
            raise InvalidState(
                f"Agent {agent.id} already reports to manager {current.id}",
                {"agent_id": agent.id, "manager_id": current.id},
            )

        relation = self._relation(manager_id, agent.id)
        now = datetime.now()
        if relation is None:
            relation = AffiliateRelation(
                manager_id=manager_id,
                agent_id=agent.id,
                status=RelationStatus.ACTIVE,
                connected_at=now,
            )
            self.db.add(relation)
        else:
            relation.status = RelationStatus.ACTIVE
            relation.connected_at = now
            relation.disconnected_at = None
        self.db.flush()
        self._repoint_agent_leads(agent.id, manager_id, actor)
        logger.info("Attached agent %s to manager %s", agent.id, manager_id)
        return relation

    def _relation(self, manager_id: int, agent_id: int) -> AffiliateRelation | None:
        stmt = select(AffiliateRelation).where(
            AffiliateRelation.manager_id == manager_id,
            AffiliateRelation.agent_id == agent_id,
        )
        return self.db.execute(stmt).scalars().first()

    def detach_agent(self, agent_id: int, actor: Actor) -> AffiliateRelation:
        self._require_hq(actor, "change the hierarchy")
        with unit_of_work(self.db):
            relation = self._active_relation_for_agent(agent_id)
            if relation is None:
                raise InvalidState(f"Agent {agent_id} has no active manager", {"agent_id": agent_id})
            self._disconnect(relation, actor)
        self.cache.invalidate([relation.manager_id, agent_id])
        return relation

    def _active_relation_for_agent(self, agent_id: int) -> AffiliateRelation | None:
        stmt = (
            select(AffiliateRelation)
            .where(
                AffiliateRelation.agent_id == agent_id,
                AffiliateRelation.status == RelationStatus.ACTIVE,
            )
            .with_for_update()
        )
        return self.db.execute(stmt).scalars().first()

    def _disconnect(self, relation: AffiliateRelation, actor: Actor) -> None:
        relation.status = RelationStatus.DISCONNECTED
        relation.disconnected_at = datetime.now()
        self._repoint_agent_leads(relation.agent_id, None, actor)
        logger.info("Detached agent %s from manager %s", relation.agent_id, relation.manager_id)

    def _repoint_agent_leads(self, agent_id: int, manager_id: int | None, actor: Actor) -> list[int]:
        """Keep the team pointer of leads an agent holds in step with the agent's manager.

        Ownership does not move, so no transfer event is written; each touched
        lead gets a ``LEAD_TEAM_CHANGED`` interaction instead.
        """

        stmt = select(AffiliateLead.id).where(
            AffiliateLead.agent_id == agent_id,
            AffiliateLead.manager_id.is_distinct_from(manager_id),
        )
        lead_ids = list(self.db.execute(stmt).scalars())
        if not lead_ids:
            return []

        self.db.execute(
            update(AffiliateLead)
            .where(AffiliateLead.id.in_(lead_ids))
            .values(manager_id=manager_id, updated_at=datetime.now())
            .execution_options(synchronize_session="fetch")
        )
        for lead_id in lead_ids:
            audit.record_interaction(
                self.db,
                audit.LEAD_TEAM_CHANGED,
                actor,
                lead_id=lead_id,
                profile_id=agent_id,
                details={"manager_id": manager_id},
            )
        logger.info("Moved %s leads of agent %s to manager %s", len(lead_ids), agent_id, manager_id)
        return lead_ids

    def deactivate(self, profile_id: int, actor: Actor) -> AffiliateProfile:
        """Terminate a contract. Managers lose every agent; agents lose their manager."""

        self._require_hq(actor, "terminate affiliate contracts")
        touched: set[int] = {profile_id}
        with unit_of_work(self.db):
            profile = self.store.get_profile(profile_id)
            if not profile.is_active:
                raise InvalidState(f"Profile {profile_id} is already inactive", {"profile_id": profile_id})
            profile.status = ProfileStatus.INACTIVE
            profile.contract_terminated_at = datetime.now()

            if profile.type is ProfileType.BRANCH_MANAGER:
                stmt = select(AffiliateRelation).where(
                    AffiliateRelation.manager_id == profile_id,
                    AffiliateRelation.status == RelationStatus.ACTIVE,
                )
                relations = list(self.db.execute(stmt).scalars())
            elif profile.type is ProfileType.SALES_AGENT:
                relation = self._active_relation_for_agent(profile_id)
                relations = [relation] if relation else []
            else:
                raise ValueError(f"Unhandled profile type {profile.type!r}")

            for relation in relations:
                self._disconnect(relation, actor)
                touched.update({relation.manager_id, relation.agent_id})

        self.cache.invalidate(touched)
        notify_admin(
            self.notifier,
            NotificationPayload(
                type=NotificationType.CONTRACT_TERMINATED,
                title="Affiliate contract terminated",
                message=f"{profile.display_name} ({profile.affiliate_code}) is now inactive",
                priority="high",
                profile_id=profile.id,
                details={"disconnected_relations": len(relations)},
            ),
        )
        return profile

    def update_bank_details(self, profile_id: int, payload: ProfileBankUpdate, actor: Actor) -> AffiliateProfile:
        if not actor.is_hq and actor.profile_id != profile_id:
            raise PermissionDenied("Bank details can only be changed by HQ or the profile owner")
        with unit_of_work(self.db):
            profile = self.store.get_profile(profile_id)
            for key, value in payload.model_dump(exclude_unset=True).items():
                setattr(profile, key, value)
        return profile
