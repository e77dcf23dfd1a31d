import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from affiliate_desk import crud
from affiliate_desk import models  # noqa: F401
from affiliate_desk.core.actors import Actor, LeadOwner
from affiliate_desk.core.enums import OwnerType, ProfileType, TransferAction
from affiliate_desk.database import Base
from affiliate_desk.errors import AlreadyOwned, InvalidState, PermissionDenied, ValidationFailure
from affiliate_desk.schemas import LeadCreate, ProfileCreate
from affiliate_desk.services import audit
from affiliate_desk.services.cache import ProfileAggregateCache
from affiliate_desk.services.notifications import NotificationType
from affiliate_desk.services.ownership import LeadOwnershipService, resolve_owner
from affiliate_desk.services.profiles import RelationManager

HQ = Actor.hq(user_id=1)


def _make_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()


class _Team:
    """Two managers; A1 and A2 report to M1, B1 reports to M2."""

    def __init__(self, session, notifier=None):
        self.cache = ProfileAggregateCache()
        self.relations = RelationManager(session, cache=self.cache, notifier=notifier)
        self.service = LeadOwnershipService(session, cache=self.cache, notifier=notifier)
        self.m1 = self._onboard(ProfileType.BRANCH_MANAGER, "M1")
        self.m2 = self._onboard(ProfileType.BRANCH_MANAGER, "M2")
        self.a1 = self._onboard(ProfileType.SALES_AGENT, "A1", self.m1.id)
        self.a2 = self._onboard(ProfileType.SALES_AGENT, "A2", self.m1.id)
        self.b1 = self._onboard(ProfileType.SALES_AGENT, "B1", self.m2.id)

    def _onboard(self, profile_type, code, manager_id=None):
        payload = ProfileCreate(type=profile_type, affiliate_code=code, display_name=code, manager_id=manager_id)
        return self.relations.onboard(payload, HQ)

    def actor(self, profile):
        return Actor.for_profile(profile)

    def lead_for(self, profile, name="Customer"):
        if profile.type is ProfileType.SALES_AGENT:
            payload = LeadCreate(customer_name=name, agent_id=profile.id)
        else:
            payload = LeadCreate(customer_name=name, manager_id=profile.id)
        return self.service.create_lead(payload, HQ)


def test_resolve_owner_precedence():
    lead = models.AffiliateLead(customer_name="x", manager_id=3, agent_id=7)
    assert resolve_owner(lead) == LeadOwner(OwnerType.SALES_AGENT, 7)
    lead.agent_id = None
    assert resolve_owner(lead) == LeadOwner(OwnerType.BRANCH_MANAGER, 3)
    lead.manager_id = None
    assert resolve_owner(lead) == LeadOwner.hq()


def test_create_lead_records_assignment():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        assert lead.agent_id == team.a1.id
        assert lead.manager_id == team.m1.id
        events = team.service.history(lead.id)
        assert len(events) == 1
        assert events[0].action is TransferAction.ASSIGN
        assert events[0].from_type is OwnerType.HQ
        assert events[0].to_profile_id == team.a1.id

        unowned = team.service.create_lead(LeadCreate(customer_name="Walk-in"), HQ)
        assert resolve_owner(unowned).is_hq
        assert team.service.history(unowned.id) == []
    finally:
        session.close()


def test_create_lead_scoping_by_actor():
    session = _make_session()
    try:
        team = _Team(session)

        own = team.service.create_lead(LeadCreate(customer_name="Lee"), team.actor(team.a1))
        assert (own.manager_id, own.agent_id) == (team.m1.id, team.a1.id)

        managed = team.service.create_lead(LeadCreate(customer_name="Park"), team.actor(team.m1))
        assert (managed.manager_id, managed.agent_id) == (team.m1.id, None)

        with pytest.raises(PermissionDenied):
            team.service.create_lead(LeadCreate(customer_name="Choi", agent_id=team.a2.id), team.actor(team.a1))
        with pytest.raises(PermissionDenied):
            team.service.create_lead(LeadCreate(customer_name="Choi", agent_id=team.b1.id), team.actor(team.m1))
        with pytest.raises(ValidationFailure):
            team.service.create_lead(
                LeadCreate(customer_name="Choi", manager_id=team.m2.id, agent_id=team.a1.id), HQ
            )
    finally:
        session.close()


def test_manager_recalls_lead_from_own_agent():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)
        team.cache.set(team.a1.id, "stale")

        team.service.recall(lead.id, team.actor(team.m1))

        assert resolve_owner(lead) == LeadOwner(OwnerType.BRANCH_MANAGER, team.m1.id)
        assert team.cache.get(team.a1.id) is None

        event = team.service.history(lead.id)[-1]
        assert event.action is TransferAction.RECALL
        assert (event.from_type, event.from_profile_id) == (OwnerType.SALES_AGENT, team.a1.id)
        assert (event.to_type, event.to_profile_id) == (OwnerType.BRANCH_MANAGER, team.m1.id)
        assert event.actor_type is OwnerType.BRANCH_MANAGER

        interaction = crud.list_interactions(session, lead_id=lead.id)[-1]
        assert interaction.interaction_type == audit.DB_RECALL
        assert json.loads(interaction.details)["transfer_event_id"] == event.id

        with pytest.raises(InvalidState):
            team.service.recall(lead.id, team.actor(team.m1))
    finally:
        session.close()


def test_recall_is_denied_outside_the_hierarchy():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        with pytest.raises(PermissionDenied):
            team.service.recall(lead.id, team.actor(team.m2))
        with pytest.raises(PermissionDenied):
            team.service.recall(lead.id, team.actor(team.a1))

        # Once the relation is gone the old manager loses the right to recall.
        team.relations.detach_agent(team.a1.id, HQ)
        with pytest.raises(PermissionDenied):
            team.service.recall(lead.id, team.actor(team.m1))

        assert resolve_owner(lead) == LeadOwner(OwnerType.SALES_AGENT, team.a1.id)
        assert len(team.service.history(lead.id)) == 1
    finally:
        session.close()


def test_agent_leads_follow_the_agent_to_a_new_manager():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        team.relations.detach_agent(team.a1.id, HQ)
        assert (lead.manager_id, lead.agent_id) == (None, team.a1.id)
        team.relations.attach_agent(team.m2.id, team.a1.id, HQ)
        assert (lead.manager_id, lead.agent_id) == (team.m2.id, team.a1.id)
        assert resolve_owner(lead) == LeadOwner(OwnerType.SALES_AGENT, team.a1.id)

        changes = [
            json.loads(item.details)["manager_id"]
            for item in crud.list_interactions(session, lead_id=lead.id)
            if item.interaction_type == audit.LEAD_TEAM_CHANGED
        ]
        assert changes == [None, team.m2.id]
        # the owner never changed, so no transfer events beyond the creation
        assert len(team.service.history(lead.id)) == 1

        with pytest.raises(PermissionDenied):
            team.service.assign(lead.id, team.a2.id, team.actor(team.m1))
        with pytest.raises(PermissionDenied):
            team.service.recall(lead.id, team.actor(team.m1))

        team.service.recall(lead.id, team.actor(team.m2))
        assert (lead.manager_id, lead.agent_id) == (team.m2.id, None)
    finally:
        session.close()


def test_assign_checks_the_live_hierarchy_not_the_lead_pointer():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)
        team.relations.detach_agent(team.a1.id, HQ)
        team.relations.attach_agent(team.m2.id, team.a1.id, HQ)

        # a row written before the hierarchy moved still names the old manager
        lead.manager_id = team.m1.id
        session.commit()

        with pytest.raises(PermissionDenied):
            team.service.assign(lead.id, team.a2.id, team.actor(team.m1))
        assert lead.agent_id == team.a1.id

        team.service.assign(lead.id, team.b1.id, team.actor(team.m2))
        assert (lead.manager_id, lead.agent_id) == (team.m2.id, team.b1.id)
    finally:
        session.close()


def test_hq_recall_returns_lead_to_hq():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        team.service.recall(lead.id, HQ)
        assert (lead.manager_id, lead.agent_id) == (None, None)
        assert team.service.history(lead.id)[-1].to_type is OwnerType.HQ

        with pytest.raises(InvalidState):
            team.service.recall(lead.id, HQ)
    finally:
        session.close()


def test_transfer_within_team():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)
        manager = team.actor(team.m1)

        team.service.transfer(lead.id, team.a1.id, team.a2.id, manager)
        assert (lead.manager_id, lead.agent_id) == (team.m1.id, team.a2.id)
        assert team.service.history(lead.id)[-1].action is TransferAction.TRANSFER

        with pytest.raises(AlreadyOwned):
            team.service.transfer(lead.id, team.a1.id, team.a2.id, manager)
        with pytest.raises(PermissionDenied):
            team.service.transfer(lead.id, team.a2.id, team.b1.id, manager)
        with pytest.raises(PermissionDenied):
            team.service.transfer(lead.id, team.a2.id, team.a1.id, team.actor(team.a2))
        with pytest.raises(ValidationFailure):
            team.service.transfer(lead.id, team.a2.id, team.a2.id, manager)

        team.service.transfer(lead.id, team.a2.id, team.b1.id, HQ)
        assert (lead.manager_id, lead.agent_id) == (team.m2.id, team.b1.id)
    finally:
        session.close()


def test_assign_with_stale_expected_owner_fails():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        with pytest.raises(AlreadyOwned):
            team.service.assign(
                lead.id,
                team.a2.id,
                HQ,
                expected_owner=LeadOwner(OwnerType.BRANCH_MANAGER, team.m1.id),
            )
        assert lead.agent_id == team.a1.id

        team.service.assign(
            lead.id,
            team.a2.id,
            HQ,
            expected_owner=LeadOwner(OwnerType.SALES_AGENT, team.a1.id),
        )
        assert lead.agent_id == team.a2.id

        with pytest.raises(PermissionDenied):
            team.service.assign(lead.id, team.a1.id, team.actor(team.a2))
        with pytest.raises(PermissionDenied):
            team.service.assign(lead.id, team.b1.id, team.actor(team.m1))
    finally:
        session.close()


def test_assign_to_current_owner_is_a_no_op():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        team.service.assign(lead.id, team.a1.id, team.actor(team.m1))

        assert lead.agent_id == team.a1.id
        assert len(team.service.history(lead.id)) == 1
    finally:
        session.close()


def test_guarded_swap_rejects_moved_pointers():
    session = _make_session()
    try:
        team = _Team(session)
        lead = team.lead_for(team.a1)

        with pytest.raises(AlreadyOwned):
            team.service._swap(lead, (team.m1.id, team.a2.id), (team.m1.id, None))
        session.rollback()
        assert (lead.manager_id, lead.agent_id) == (team.m1.id, team.a1.id)
    finally:
        session.close()


def test_batch_recall_reports_per_lead_failures(notifier):
    session = _make_session()
    try:
        team = _Team(session, notifier=notifier)
        leads = [team.lead_for(team.a1, name=f"Customer {n}") for n in range(3)]

        # The second lead moves to another team before the batch runs.
        team.service.transfer(leads[1].id, team.a1.id, team.b1.id, HQ)

        result = team.service.recall_many([lead.id for lead in leads], team.actor(team.m1))

        assert result.success_count == 2
        assert [error.lead_id for error in result.errors] == [leads[1].id]
        assert result.errors[0].kind == "PERMISSION"
        assert resolve_owner(leads[0]) == LeadOwner(OwnerType.BRANCH_MANAGER, team.m1.id)
        assert resolve_owner(leads[1]) == LeadOwner(OwnerType.SALES_AGENT, team.b1.id)
        assert notifier.types == [NotificationType.DB_RECOVERY_FAILED]
    finally:
        session.close()


def test_batch_recall_success_notifies(notifier):
    session = _make_session()
    try:
        team = _Team(session, notifier=notifier)
        leads = [team.lead_for(team.b1, name=f"Customer {n}") for n in range(2)]

        result = team.service.recall_many([lead.id for lead in leads] + [9999], HQ)

        assert result.success_count == 2
        assert result.errors[0].kind == "NOT_FOUND"

        notifier.payloads.clear()
        result = team.service.recall_many([team.lead_for(team.a2).id], HQ)
        assert result.success_count == 1
        assert result.errors == []
        assert notifier.types == [NotificationType.DB_RECOVERY_SUCCESS]
    finally:
        session.close()
