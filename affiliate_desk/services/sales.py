"""Sale approval workflow.

``PENDING -> PENDING_APPROVAL -> APPROVED | REJECTED`` and ``APPROVED ->
CONFIRMED``. Status changes are guarded UPDATEs on the expected status, so a
sale can only leave a state once.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from affiliate_desk import config
from affiliate_desk.core.actors import Actor
from affiliate_desk.core.commission import ZERO, CommissionResult, allocate, own_commission, to_decimal
from affiliate_desk.core.enums import (
    LeadStatus,
    OwnerType,
    ProfileType,
    SaleStatus,
    can_transition,
)
from affiliate_desk.database import unit_of_work
from affiliate_desk.errors import InvalidState, NotFound, PermissionDenied, ValidationFailure
from affiliate_desk.models import AffiliateLead, AffiliateSale
from affiliate_desk.schemas import Attribution, ProductDetails, ProfileSummaryRead
from affiliate_desk.services import audit
from affiliate_desk.services.cache import ProfileAggregateCache, profile_cache
from affiliate_desk.services.commission import CommissionResolver
from affiliate_desk.services.notifications import AdminNotifier
from affiliate_desk.services.ownership import LeadOwnershipService, resolve_owner
from affiliate_desk.services.profiles import manages

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoApprovalRule:
    """Configured exception that lets a sale skip manual approval."""

    name: str
    submitter_type: OwnerType | None = None
    contract_type: str | None = None
    require_sole_owner: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoApprovalRule":
        submitter = data.get("submitter_type")
        contract_type = data.get("contract_type")
        return cls(
            name=str(data.get("name") or "auto-approval"),
            submitter_type=OwnerType(submitter) if submitter else None,
            contract_type=contract_type.lower() if contract_type else None,
            require_sole_owner=bool(data.get("require_sole_owner", False)),
        )

    def matches(self, sale: AffiliateSale, lead: AffiliateLead) -> bool:
        if self.submitter_type is not None and sale.submitted_by_type is not self.submitter_type:
            return False
        if self.contract_type is not None and sale.contract_type != self.contract_type:
            return False
        if self.require_sole_owner:
            owner = resolve_owner(lead)
            if owner.owner_type is not OwnerType.BRANCH_MANAGER or owner.profile_id != sale.submitted_by_id:
                return False
            if sale.agent_id is not None or sale.manager_id != sale.submitted_by_id:
                return False
        return True


def load_rules(raw: Iterable[dict[str, Any]] | None = None) -> list[AutoApprovalRule]:
    return [AutoApprovalRule.from_dict(item) for item in (config.AUTO_APPROVAL_RULES if raw is None else raw)]


def _split_of(sale: AffiliateSale) -> tuple:
    return (
        sale.commission_source,
        sale.tier_id,
        to_decimal(sale.hq_commission),
        to_decimal(sale.branch_commission),
        to_decimal(sale.sales_commission),
        to_decimal(sale.override_commission),
    )


class SaleWorkflow:
    def __init__(
        self,
        db: Session,
        resolver: CommissionResolver | None = None,
        ownership: LeadOwnershipService | None = None,
        cache: ProfileAggregateCache | None = None,
        notifier: AdminNotifier | None = None,
        auto_approval_rules: Sequence[AutoApprovalRule] | None = None,
        review_exempt_contract_types: Iterable[str] | None = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else profile_cache
        self.resolver = resolver or CommissionResolver(db, notifier=notifier)
        self.ownership = ownership or LeadOwnershipService(db, cache=self.cache, notifier=notifier)
        self.store = self.ownership.store
        self.auto_approval_rules = list(load_rules() if auto_approval_rules is None else auto_approval_rules)
        exempt = config.REVIEW_EXEMPT_CONTRACT_TYPES if review_exempt_contract_types is None else review_exempt_contract_types
        self.review_exempt_contract_types = frozenset(item.lower() for item in exempt)

    # --- reads ---------------------------------------------------------------

    def get_sale(self, sale_id: int, for_update: bool = False) -> AffiliateSale:
        stmt = select(AffiliateSale).where(AffiliateSale.id == sale_id)
        if for_update:
            stmt = stmt.with_for_update()
        sale = self.db.execute(stmt).scalars().first()
        if sale is None:
            raise NotFound(f"Sale {sale_id} not found", {"sale_id": sale_id})
        return sale

    def profile_summary(self, profile_id: int) -> ProfileSummaryRead:
        self.store.get_profile(profile_id)
        return self.cache.get_or_compute(profile_id, lambda: self._summarize(profile_id))

    def _summarize(self, profile_id: int) -> ProfileSummaryRead:
        attributed = (AffiliateSale.manager_id == profile_id) | (AffiliateSale.agent_id == profile_id)
        rows = self.db.execute(
            select(AffiliateSale.status, func.count()).where(attributed).group_by(AffiliateSale.status)
        ).all()
        counts = {status.value: 0 for status in SaleStatus}
        for status, count in rows:
            counts[SaleStatus(status).value] = count

        confirmed = self.db.execute(
            select(AffiliateSale).where(attributed, AffiliateSale.status == SaleStatus.CONFIRMED)
        ).scalars().all()
        lead_count = self.db.execute(
            select(func.count())
            .select_from(AffiliateLead)
            .where((AffiliateLead.manager_id == profile_id) | (AffiliateLead.agent_id == profile_id))
        ).scalar_one()

        return ProfileSummaryRead(
            profile_id=profile_id,
            counts_by_status=counts,
            total_sale_amount=sum((to_decimal(sale.sale_amount) for sale in confirmed), ZERO),
            total_own_commission=sum((own_commission(sale, profile_id) for sale in confirmed), ZERO),
            lead_count=lead_count,
            active_agent_count=len(self.store.get_active_agents(profile_id)),
        )

    # --- helpers -------------------------------------------------------------

    def _invalidate(self, sale: AffiliateSale) -> None:
        self.cache.invalidate([sale.manager_id, sale.agent_id, sale.submitted_by_id])

    def _transition(self, sale: AffiliateSale, target: SaleStatus, **values: Any) -> None:
        current = sale.status
        if not can_transition(current, target):
            raise InvalidState(
                f"Sale {sale.id} cannot move from {current.value} to {target.value}",
                {"sale_id": sale.id, "status": current.value, "target": target.value},
            )
        stmt = (
            update(AffiliateSale)
            .where(AffiliateSale.id == sale.id, AffiliateSale.status == current)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise InvalidState(
                f"Sale {sale.id} changed status concurrently",
                {"sale_id": sale.id, "expected": current.value},
            )
        self.db.refresh(sale)

    def _reprice(self, sale: AffiliateSale) -> tuple[CommissionResult, bool]:
        """Resolve the split again from the current tiers and write it onto the sale.

        Returns the resolution and whether anything on the sale changed. The
        new values are flushed so a following guarded status UPDATE and refresh
        keeps them.
        """

        result = self.resolver.compute(
            sale.product_code,
            sale.cabin_type,
            sale.fare_category,
            sale.fare_label,
            sale.sale_amount,
            sale.cost_amount,
            notify=False,
        )
        allocation = allocate(result.distribution, sale.manager_id, sale.agent_id)
        before = _split_of(sale)
        sale.net_revenue = result.net_revenue
        sale.hq_commission = allocation.hq_commission
        sale.branch_commission = allocation.branch_commission
        sale.sales_commission = allocation.sales_commission
        sale.override_commission = allocation.override_commission
        sale.commission_source = result.source
        sale.tier_id = result.tier_id
        self.db.flush()
        changed = before != _split_of(sale)
        if changed:
            logger.info("Sale %s repriced from %s to %s", sale.id, before[0].value, result.source.value)
        return result, changed

    def _lead_attribution(self, lead: AffiliateLead) -> Attribution:
        """Team snapshot for a sale: an agent-held lead credits the agent's current manager."""

        if lead.agent_id is None:
            return Attribution(manager_id=lead.manager_id, agent_id=None)
        manager = self.store.get_active_manager(lead.agent_id)
        return Attribution(manager_id=manager.id if manager else None, agent_id=lead.agent_id)

    def _holds(self, lead: AffiliateLead, actor: Actor) -> bool:
        owner = resolve_owner(lead)
        if owner.profile_id is None:
            return False
        if owner.profile_id == actor.profile_id:
            return True
        return actor.kind is OwnerType.BRANCH_MANAGER and manages(self.store, actor.profile_id, owner.profile_id)

    def _check_attribution(self, lead: AffiliateLead, attribution: Attribution | None, actor: Actor) -> Attribution:
        lead_attribution = self._lead_attribution(lead)
        if attribution is None or attribution == lead_attribution:
            return lead_attribution
        if not actor.is_hq:
            raise PermissionDenied(
                "Only HQ can attribute a sale differently from the lead's ownership",
                {"lead_id": lead.id},
            )
        if attribution.manager_id is not None:
            manager = self.store.get_profile(attribution.manager_id)
            if manager.type is not ProfileType.BRANCH_MANAGER:
                raise ValidationFailure(f"Profile {manager.id} is not a branch manager", {"profile_id": manager.id})
        if attribution.agent_id is not None:
            agent = self.store.get_profile(attribution.agent_id)
            if agent.type is not ProfileType.SALES_AGENT:
                raise ValidationFailure(f"Profile {agent.id} is not a sales agent", {"profile_id": agent.id})
        return attribution

    def _can_review(self, sale: AffiliateSale, actor: Actor) -> bool:
        if actor.kind is OwnerType.HQ:
            return True
        if actor.kind is OwnerType.BRANCH_MANAGER:
            return sale.manager_id == actor.profile_id
        if actor.kind is OwnerType.SALES_AGENT:
            return False
        raise ValueError(f"Unhandled actor kind {actor.kind!r}")

    def requires_review(self, sale: AffiliateSale) -> bool:
        return sale.contract_type not in self.review_exempt_contract_types

    def _is_involved(self, sale: AffiliateSale, actor: Actor) -> bool:
        if actor.is_hq:
            return (
                sale.submitted_by_type is OwnerType.HQ
                and actor.user_id is not None
                and sale.submitted_by_user_id == actor.user_id
            )
        return actor.profile_id in {sale.submitted_by_id, sale.manager_id, sale.agent_id}

    # --- transitions ---------------------------------------------------------

    def submit_sale(
        self,
        lead_id: int,
        actor: Actor,
        sale_amount,
        cost_amount,
        product: ProductDetails,
        attribution: Attribution | None = None,
        sale_date: date | None = None,
    ) -> AffiliateSale:
        """Record a sale in PENDING with a provisional commission split."""

        lead = self.ownership.get_lead(lead_id)
        if not actor.is_hq and not self._holds(lead, actor):
            raise PermissionDenied(
                f"Lead {lead_id} is not held by {actor.describe()} or their team",
                {"lead_id": lead_id, "actor": actor.describe()},
            )
        attribution = self._check_attribution(lead, attribution, actor)

        result = self.resolver.compute(
            product.product_code,
            product.cabin_type,
            product.fare_category,
            product.fare_label,
            sale_amount,
            cost_amount,
            notify=False,
        )
        allocation = allocate(result.distribution, attribution.manager_id, attribution.agent_id)

        with unit_of_work(self.db):
            sale = AffiliateSale(
                lead_id=lead.id,
                manager_id=attribution.manager_id,
                agent_id=attribution.agent_id,
                product_code=product.product_code,
                cabin_type=product.cabin_type,
                fare_category=product.fare_category,
                fare_label=product.fare_label,
                contract_type=product.contract_type,
                sale_amount=to_decimal(sale_amount),
                cost_amount=to_decimal(cost_amount),
                net_revenue=result.net_revenue,
                hq_commission=allocation.hq_commission,
                branch_commission=allocation.branch_commission,
                sales_commission=allocation.sales_commission,
                override_commission=allocation.override_commission,
                commission_source=result.source,
                tier_id=result.tier_id,
                status=SaleStatus.PENDING,
                sale_date=sale_date or date.today(),
                submitted_by_type=actor.kind,
                submitted_by_id=actor.profile_id,
                submitted_by_user_id=actor.user_id,
            )
            self.db.add(sale)
            self.db.flush()
            if lead.status is LeadStatus.NEW:
                lead.status = LeadStatus.IN_PROGRESS
            audit.record_interaction(
                self.db,
                audit.SALE_SUBMITTED,
                actor,
                lead_id=lead.id,
                sale_id=sale.id,
                profile_id=attribution.agent_id or attribution.manager_id,
                note=result.warning.message if result.warning else None,
                details={"source": result.source.value, "net_revenue": result.net_revenue, **asdict(allocation)},
            )

        logger.info("Sale %s submitted for lead %s (%s)", sale.id, lead.id, result.source.value)
        if result.is_tier_missing:
            self.resolver.report_missing(result, sale_id=sale.id)
        self._invalidate(sale)
        return sale

    def request_approval(self, sale_id: int, actor: Actor) -> AffiliateSale:
        """PENDING to PENDING_APPROVAL, or straight to APPROVED when a rule matches.

        The split is resolved again first, so a tier added after submission is
        picked up; an auto-approval locks it.
        """

        with unit_of_work(self.db):
            sale = self.get_sale(sale_id, for_update=True)
            if not actor.is_hq and actor.profile_id not in {sale.submitted_by_id, sale.manager_id, sale.agent_id}:
                raise PermissionDenied(f"{actor.describe()} cannot request approval for sale {sale_id}")
            if sale.status is not SaleStatus.PENDING:
                raise InvalidState(
                    f"Sale {sale_id} is {sale.status.value}, approval can only be requested from PENDING",
                    {"sale_id": sale_id, "status": sale.status.value},
                )

            result, repriced = self._reprice(sale)
            pricing = {"source": result.source.value, "repriced": repriced}
            lead = self.ownership.get_lead(sale.lead_id)
            rule = next((rule for rule in self.auto_approval_rules if rule.matches(sale, lead)), None)
            if rule is not None:
                self._transition(sale, SaleStatus.APPROVED, auto_approved=True, approved_at=datetime.now())
                audit.record_interaction(
                    self.db,
                    audit.SALE_AUTO_APPROVED,
                    actor,
                    lead_id=sale.lead_id,
                    sale_id=sale.id,
                    note=f"Auto-approved by rule {rule.name}",
                    details={"rule": rule.name, "auto_approved": True, **pricing},
                )
            else:
                self._transition(sale, SaleStatus.PENDING_APPROVAL)
                audit.record_interaction(
                    self.db,
                    audit.SALE_APPROVAL_REQUESTED,
                    actor,
                    lead_id=sale.lead_id,
                    sale_id=sale.id,
                    details=pricing,
                )

        if rule is not None:
            logger.info("Sale %s auto-approved by rule %s", sale.id, rule.name)
        if repriced and result.is_tier_missing:
            self.resolver.report_missing(result, sale_id=sale.id)
        self._invalidate(sale)
        return sale

    def approve_sale(self, sale_id: int, approver: Actor) -> AffiliateSale:
        with unit_of_work(self.db):
            sale = self.get_sale(sale_id, for_update=True)
            if not self._can_review(sale, approver):
                raise PermissionDenied(f"{approver.describe()} cannot approve sale {sale_id}")
            if sale.status is not SaleStatus.PENDING_APPROVAL:
                raise InvalidState(
                    f"Sale {sale_id} is {sale.status.value}, only PENDING_APPROVAL sales can be approved",
                    {"sale_id": sale_id, "status": sale.status.value},
                )
            if self.requires_review(sale) and self._is_involved(sale, approver):
                raise PermissionDenied(
                    f"Sale {sale_id} needs an approver other than its submitter or attributed profiles",
                    {"sale_id": sale_id, "contract_type": sale.contract_type},
                )
            # last chance to pick up a tier; the split is locked from APPROVED on
            result, repriced = self._reprice(sale)
            self._transition(
                sale,
                SaleStatus.APPROVED,
                approved_by_type=approver.kind,
                approved_by_id=approver.profile_id,
                approved_at=datetime.now(),
            )
            audit.record_interaction(
                self.db,
                audit.SALE_APPROVED,
                approver,
                lead_id=sale.lead_id,
                sale_id=sale.id,
                details={"source": result.source.value, "repriced": repriced},
            )

        logger.info("Sale %s approved by %s", sale.id, approver.describe())
        if repriced and result.is_tier_missing:
            self.resolver.report_missing(result, sale_id=sale.id)
        self._invalidate(sale)
        return sale

    def reject_sale(self, sale_id: int, approver: Actor, reason: str) -> AffiliateSale:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailure("A rejection reason is required", {"sale_id": sale_id})

        with unit_of_work(self.db):
            sale = self.get_sale(sale_id, for_update=True)
            if not self._can_review(sale, approver):
                raise PermissionDenied(f"{approver.describe()} cannot reject sale {sale_id}")
            if sale.status not in (SaleStatus.PENDING, SaleStatus.PENDING_APPROVAL):
                raise InvalidState(
                    f"Sale {sale_id} is {sale.status.value} and can no longer be rejected",
                    {"sale_id": sale_id, "status": sale.status.value},
                )
            self._transition(
                sale,
                SaleStatus.REJECTED,
                rejection_reason=reason,
                hq_commission=ZERO,
                branch_commission=ZERO,
                sales_commission=ZERO,
                override_commission=ZERO,
            )
            audit.record_interaction(
                self.db, audit.SALE_REJECTED, approver, lead_id=sale.lead_id, sale_id=sale.id, note=reason
            )

        logger.info("Sale %s rejected by %s", sale.id, approver.describe())
        self._invalidate(sale)
        return sale

    def confirm_sale(self, sale_id: int, actor: Actor | None = None) -> AffiliateSale:
        """APPROVED to CONFIRMED. Confirming a CONFIRMED sale is a no-op."""

        with unit_of_work(self.db):
            sale = self.get_sale(sale_id, for_update=True)
            if actor is not None and not self._can_review(sale, actor):
                raise PermissionDenied(f"{actor.describe()} cannot confirm sale {sale_id}")
            if sale.status is SaleStatus.CONFIRMED:
                logger.debug("Sale %s already confirmed, nothing to do", sale_id)
                return sale
            if sale.status is not SaleStatus.APPROVED:
                raise InvalidState(
                    f"Sale {sale_id} is {sale.status.value}, only APPROVED sales can be confirmed",
                    {"sale_id": sale_id, "status": sale.status.value},
                )
            try:
                self._transition(sale, SaleStatus.CONFIRMED, confirmed_at=datetime.now())
            except InvalidState:
                self.db.refresh(sale)
                if sale.status is SaleStatus.CONFIRMED:
                    logger.debug("Sale %s confirmed concurrently, nothing to do", sale_id)
                    return sale
                raise
            lead = self.ownership.get_lead(sale.lead_id)
            lead.status = LeadStatus.PURCHASED
            audit.record_interaction(self.db, audit.SALE_CONFIRMED, actor, lead_id=sale.lead_id, sale_id=sale.id)

        logger.info("Sale %s confirmed", sale.id)
        self._invalidate(sale)
        return sale

    def recompute_commission(self, sale_id: int, actor: Actor) -> AffiliateSale:
        """Re-resolve the split of a sale that has not been decided yet."""

        if not actor.is_hq:
            raise PermissionDenied("Only HQ can recompute commissions")
        with unit_of_work(self.db):
            sale = self.get_sale(sale_id, for_update=True)
            if sale.status not in (SaleStatus.PENDING, SaleStatus.PENDING_APPROVAL):
                raise InvalidState(
                    f"Sale {sale_id} is {sale.status.value}; commissions are locked",
                    {"sale_id": sale_id, "status": sale.status.value},
                )
            result, repriced = self._reprice(sale)
            audit.record_interaction(
                self.db,
                audit.SALE_COMMISSION_RECOMPUTED,
                actor,
                lead_id=sale.lead_id,
                sale_id=sale.id,
                details={"source": result.source.value, "repriced": repriced},
            )

        if result.is_tier_missing:
            self.resolver.report_missing(result, sale_id=sale.id)
        self._invalidate(sale)
        return sale


__all__ = ["AutoApprovalRule", "SaleWorkflow", "load_rules"]
