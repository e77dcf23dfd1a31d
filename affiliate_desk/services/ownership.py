"""Lead ownership: assign, transfer and recall with an append-only history.

Pointers are written with a guarded UPDATE that only matches while the row
still holds the pointers we read, so two concurrent moves of the same lead
cannot both succeed. The loser gets :class:`AlreadyOwned`.
"""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from affiliate_desk import crud
from affiliate_desk.core.actors import Actor, LeadOwner
from affiliate_desk.core.enums import OwnerType, ProfileType, TransferAction
from affiliate_desk.database import unit_of_work
from affiliate_desk.errors import (
    AffiliateError,
    AlreadyOwned,
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationFailure,
)
from affiliate_desk.models import AffiliateLead, AffiliateProfile, LeadTransferEvent
from affiliate_desk.schemas import LeadCreate, RecallError, RecallResult
from affiliate_desk.services import audit
from affiliate_desk.services.cache import ProfileAggregateCache, profile_cache
from affiliate_desk.services.notifications import (
    AdminNotifier,
    NotificationPayload,
    NotificationType,
    notify_admin,
)
from affiliate_desk.services.profiles import ProfileStore, SqlProfileStore, manages

logger = logging.getLogger(__name__)

Pointers = tuple[int | None, int | None]


def resolve_owner(lead: AffiliateLead) -> LeadOwner:
    """The agent if set, else the manager, else HQ."""

    if lead.agent_id is not None:
        return LeadOwner(OwnerType.SALES_AGENT, lead.agent_id)
    if lead.manager_id is not None:
        return LeadOwner(OwnerType.BRANCH_MANAGER, lead.manager_id)
    return LeadOwner.hq()


def _pointers(lead: AffiliateLead) -> Pointers:
    return lead.manager_id, lead.agent_id


def _matches(column, value):
    return column.is_(None) if value is None else column == value


class LeadOwnershipService:
    def __init__(
        self,
        db: Session,
        store: ProfileStore | None = None,
        cache: ProfileAggregateCache | None = None,
        notifier: AdminNotifier | None = None,
    ):
        self.db = db
        self.store = store or SqlProfileStore(db)
        self.cache = cache if cache is not None else profile_cache
        self.notifier = notifier

    # --- reads ---------------------------------------------------------------

    def get_lead(self, lead_id: int, for_update: bool = False) -> AffiliateLead:
        stmt = select(AffiliateLead).where(AffiliateLead.id == lead_id)
        if for_update:
            stmt = stmt.with_for_update()
        lead = self.db.execute(stmt).scalars().first()
        if lead is None:
            raise NotFound(f"Lead {lead_id} not found", {"lead_id": lead_id})
        return lead

    def resolve_owner(self, lead: AffiliateLead) -> LeadOwner:
        return resolve_owner(lead)

    def history(self, lead_id: int) -> Sequence[LeadTransferEvent]:
        self.get_lead(lead_id)
        return crud.list_transfer_events(self.db, lead_id)

    # --- helpers -------------------------------------------------------------

    def _owner_for(self, profile: AffiliateProfile) -> LeadOwner:
        return LeadOwner(OwnerType.from_profile_type(profile.type), profile.id)

    def _pointers_for(self, profile: AffiliateProfile) -> Pointers:
        """Pointers that make ``profile`` the effective owner."""

        if profile.type is ProfileType.BRANCH_MANAGER:
            return profile.id, None
        if profile.type is ProfileType.SALES_AGENT:
            manager = self.store.get_active_manager(profile.id)
            return (manager.id if manager else None), profile.id
        raise ValueError(f"Unhandled profile type {profile.type!r}")

    def _active_profile(self, profile_id: int) -> AffiliateProfile:
        profile = self.store.get_profile(profile_id)
        if not profile.is_active:
            raise InvalidState(f"Profile {profile_id} is inactive", {"profile_id": profile_id})
        return profile

    def _covers(self, actor: Actor, profile_id: int) -> bool:
        """HQ covers everyone; a manager covers themself and their ACTIVE agents."""

        if actor.kind is OwnerType.HQ:
            return True
        if actor.kind is OwnerType.BRANCH_MANAGER:
            return profile_id == actor.profile_id or manages(self.store, actor.profile_id, profile_id)
        if actor.kind is OwnerType.SALES_AGENT:
            return False
        raise ValueError(f"Unhandled actor kind {actor.kind!r}")

    def _swap(self, lead: AffiliateLead, expected: Pointers, new: Pointers) -> None:
        stmt = (
            update(AffiliateLead)
            .where(
                AffiliateLead.id == lead.id,
                _matches(AffiliateLead.manager_id, expected[0]),
                _matches(AffiliateLead.agent_id, expected[1]),
            )
            .values(manager_id=new[0], agent_id=new[1])
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise AlreadyOwned(
                f"Lead {lead.id} changed owner concurrently",
                {"lead_id": lead.id, "expected_manager_id": expected[0], "expected_agent_id": expected[1]},
            )
        self.db.refresh(lead)

    def _record(
        self,
        lead: AffiliateLead,
        action: TransferAction,
        source: LeadOwner,
        target: LeadOwner,
        actor: Actor,
    ) -> LeadTransferEvent:
        event = LeadTransferEvent(
            lead_id=lead.id,
            action=action,
            from_profile_id=source.profile_id,
            from_type=source.owner_type,
            to_profile_id=target.profile_id,
            to_type=target.owner_type,
            actor_type=actor.kind,
            actor_profile_id=actor.profile_id,
            actor_user_id=actor.user_id,
        )
        self.db.add(event)
        self.db.flush()
        return event

    @staticmethod
    def _event_details(event: LeadTransferEvent) -> dict:
        return {
            "transfer_event_id": event.id,
            "from_profile": event.from_profile_id,
            "from_type": event.from_type.value,
            "to_profile": event.to_profile_id,
            "to_type": event.to_type.value,
        }

    def _invalidate(self, *pointer_sets: Iterable[int | None]) -> None:
        touched: set[int | None] = set()
        for pointers in pointer_sets:
            touched.update(pointers)
        self.cache.invalidate(touched)

    # --- writes --------------------------------------------------------------

    def create_lead(self, payload: LeadCreate, actor: Actor) -> AffiliateLead:
        manager_id, agent_id = payload.manager_id, payload.agent_id
        if actor.kind is OwnerType.SALES_AGENT:
            if agent_id not in (None, actor.profile_id) or (manager_id is not None and agent_id is None):
                raise PermissionDenied("Agents can only capture leads for themselves")
            agent_id = actor.profile_id
        elif actor.kind is OwnerType.BRANCH_MANAGER:
            if manager_id not in (None, actor.profile_id):
                raise PermissionDenied("Managers can only capture leads for their own team")
            if agent_id is not None and not manages(self.store, actor.profile_id, agent_id):
                raise PermissionDenied(f"Agent {agent_id} is not on this manager's team")
            if agent_id is None:
                manager_id = actor.profile_id

        if agent_id is not None:
            agent = self._active_profile(agent_id)
            if agent.type is not ProfileType.SALES_AGENT:
                raise ValidationFailure(f"Profile {agent_id} is not a sales agent", {"profile_id": agent_id})
            supervisor = self.store.get_active_manager(agent_id)
            if manager_id is not None and (supervisor is None or supervisor.id != manager_id):
                raise ValidationFailure(
                    f"Manager {manager_id} does not supervise agent {agent_id}",
                    {"manager_id": manager_id, "agent_id": agent_id},
                )
            manager_id = supervisor.id if supervisor else None
        elif manager_id is not None:
            manager = self._active_profile(manager_id)
            if manager.type is not ProfileType.BRANCH_MANAGER:
                raise ValidationFailure(f"Profile {manager_id} is not a branch manager", {"profile_id": manager_id})

        with unit_of_work(self.db):
            lead = AffiliateLead(
                customer_name=payload.customer_name,
                customer_phone=payload.customer_phone,
                group_id=payload.group_id,
                notes=payload.notes,
                manager_id=manager_id,
                agent_id=agent_id,
            )
            self.db.add(lead)
            self.db.flush()
            owner = resolve_owner(lead)
            if not owner.is_hq:
                event = self._record(lead, TransferAction.ASSIGN, LeadOwner.hq(), owner, actor)
                audit.record_interaction(
                    self.db,
                    audit.LEAD_ASSIGNED,
                    actor,
                    lead_id=lead.id,
                    profile_id=owner.profile_id,
                    details=self._event_details(event),
                )
        self._invalidate((manager_id, agent_id))
        return lead

    def assign(
        self,
        lead_id: int,
        to_profile_id: int,
        actor: Actor,
        expected_owner: LeadOwner | None = None,
    ) -> AffiliateLead:
        """Point the lead at ``to_profile_id``.

        ``expected_owner`` is the owner the caller saw; when the stored owner
        differs the call fails with :class:`AlreadyOwned` and nothing changes.
        """

        if actor.kind is OwnerType.SALES_AGENT:
            raise PermissionDenied("Sales agents cannot assign leads", {"actor": actor.describe()})

        with unit_of_work(self.db):
            lead = self.get_lead(lead_id, for_update=True)
            current = resolve_owner(lead)
            if expected_owner is not None and expected_owner != current:
                raise AlreadyOwned(
                    f"Lead {lead_id} is no longer held by the expected owner",
                    {"lead_id": lead_id, "owner_type": current.owner_type.value, "profile_id": current.profile_id},
                )

            target = self._active_profile(to_profile_id)
            if actor.kind is OwnerType.BRANCH_MANAGER:
                if current.profile_id is None or not self._covers(actor, current.profile_id):
                    raise PermissionDenied(
                        f"Lead {lead_id} does not belong to this manager's team",
                        {"lead_id": lead_id, "actor": actor.describe()},
                    )
                if not self._covers(actor, target.id):
                    raise PermissionDenied(
                        f"Profile {target.id} is not on this manager's team",
                        {"profile_id": target.id, "actor": actor.describe()},
                    )

            expected = _pointers(lead)
            new = self._pointers_for(target)
            if new == expected:
                return lead
            self._swap(lead, expected, new)
            event = self._record(lead, TransferAction.ASSIGN, current, self._owner_for(target), actor)
            audit.record_interaction(
                self.db,
                audit.LEAD_ASSIGNED,
                actor,
                lead_id=lead.id,
                profile_id=target.id,
                details=self._event_details(event),
            )

        logger.info("Lead %s assigned to profile %s by %s", lead_id, to_profile_id, actor.describe())
        self._invalidate(expected, new)
        return lead

    def transfer(self, lead_id: int, from_profile_id: int, to_profile_id: int, actor: Actor) -> AffiliateLead:
        """Move a lead sideways or down within the actor's team."""

        if actor.kind is OwnerType.SALES_AGENT:
            raise PermissionDenied("Sales agents cannot transfer leads", {"actor": actor.describe()})
        if from_profile_id == to_profile_id:
            raise ValidationFailure("Source and destination profiles are the same", {"profile_id": to_profile_id})

        with unit_of_work(self.db):
            source_profile = self.store.get_profile(from_profile_id)
            target = self._active_profile(to_profile_id)
            if not (self._covers(actor, source_profile.id) and self._covers(actor, target.id)):
                raise PermissionDenied(
                    "Transfers require managing both the source and the destination",
                    {"from_profile_id": from_profile_id, "to_profile_id": to_profile_id, "actor": actor.describe()},
                )

            lead = self.get_lead(lead_id, for_update=True)
            current = resolve_owner(lead)
            if current.profile_id != from_profile_id:
                raise AlreadyOwned(
                    f"Lead {lead_id} is not held by profile {from_profile_id}",
                    {"lead_id": lead_id, "owner_type": current.owner_type.value, "profile_id": current.profile_id},
                )

            expected = _pointers(lead)
            new = self._pointers_for(target)
            self._swap(lead, expected, new)
            event = self._record(lead, TransferAction.TRANSFER, current, self._owner_for(target), actor)
            audit.record_interaction(
                self.db,
                audit.LEAD_TRANSFER,
                actor,
                lead_id=lead.id,
                profile_id=target.id,
                details=self._event_details(event),
            )

        logger.info(
            "Lead %s transferred from %s to %s by %s", lead_id, from_profile_id, to_profile_id, actor.describe()
        )
        self._invalidate(expected, new)
        return lead

    def recall(self, lead_id: int, actor: Actor) -> AffiliateLead:
        """Move ownership one level up: agent to their manager, or anyone to HQ."""

        with unit_of_work(self.db):
            lead = self.get_lead(lead_id, for_update=True)
            current = resolve_owner(lead)

            if actor.kind is OwnerType.HQ:
                if current.is_hq:
                    raise InvalidState(f"Lead {lead_id} is already held by HQ", {"lead_id": lead_id})
                new: Pointers = (None, None)
                target = LeadOwner.hq()
            elif actor.kind is OwnerType.BRANCH_MANAGER:
                if current.owner_type is OwnerType.BRANCH_MANAGER and current.profile_id == actor.profile_id:
                    raise InvalidState(f"Lead {lead_id} is already held by this manager", {"lead_id": lead_id})
                if current.owner_type is not OwnerType.SALES_AGENT or not manages(
                    self.store, actor.profile_id, current.profile_id
                ):
                    raise PermissionDenied(
                        f"Lead {lead_id} is not held by one of this manager's active agents",
                        {"lead_id": lead_id, "actor": actor.describe()},
                    )
                new = (actor.profile_id, None)
                target = LeadOwner(OwnerType.BRANCH_MANAGER, actor.profile_id)
            elif actor.kind is OwnerType.SALES_AGENT:
                raise PermissionDenied("Sales agents cannot recall leads", {"actor": actor.describe()})
            else:
                raise ValueError(f"Unhandled actor kind {actor.kind!r}")

            expected = _pointers(lead)
            self._swap(lead, expected, new)
            event = self._record(lead, TransferAction.RECALL, current, target, actor)
            audit.record_interaction(
                self.db,
                audit.DB_RECALL,
                actor,
                lead_id=lead.id,
                profile_id=current.profile_id,
                details=self._event_details(event),
            )

        logger.info("Lead %s recalled from %s by %s", lead_id, current.profile_id, actor.describe())
        self._invalidate(expected, new)
        return lead

    def recall_many(self, lead_ids: Sequence[int], actor: Actor) -> RecallResult:
        """Recall each lead in its own transaction and report per-lead failures."""

        success_count = 0
        errors: list[RecallError] = []
        for lead_id in lead_ids:
            try:
                self.recall(lead_id, actor)
            except AffiliateError as exc:
                logger.warning("Recall of lead %s failed: %s", lead_id, exc.message)
                errors.append(RecallError(lead_id=lead_id, kind=exc.kind.value, message=exc.message))
            else:
                success_count += 1

        notification_type = NotificationType.DB_RECOVERY_FAILED if errors else NotificationType.DB_RECOVERY_SUCCESS
        notify_admin(
            self.notifier,
            NotificationPayload(
                type=notification_type,
                title="Lead recall finished",
                message=f"{success_count} of {len(lead_ids)} leads recalled by {actor.describe()}",
                priority="medium" if errors else "low",
                profile_id=actor.profile_id,
                details={"failed_lead_ids": [error.lead_id for error in errors]},
            ),
        )
        return RecallResult(success_count=success_count, errors=errors)
