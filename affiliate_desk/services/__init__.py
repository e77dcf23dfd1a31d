"""Service layer and the operation-level entry points of the desk.

The module-level functions wire the services together over one session, the
way request handlers and the settlement CLI use them.
"""
from __future__ import annotations

from datetime import date
from typing import Sequence

from sqlalchemy.orm import Session

from affiliate_desk.core.actors import Actor
from affiliate_desk.core.commission import CommissionResult
from affiliate_desk.models import AffiliateLead, AffiliatePayslip, AffiliateSale
from affiliate_desk.schemas import Attribution, ProductDetails, RecallResult
from affiliate_desk.services.cache import ProfileAggregateCache, profile_cache
from affiliate_desk.services.commission import CommissionResolver
from affiliate_desk.services.notifications import AdminNotifier, DatabaseNotifier
from affiliate_desk.services.ownership import LeadOwnershipService
from affiliate_desk.services.profiles import RelationManager, SqlProfileStore
from affiliate_desk.services.sales import SaleWorkflow
from affiliate_desk.services.settlement import SettlementEngine


class AffiliateDesk:
    """All services bound to one session, notifier and cache."""

    def __init__(
        self,
        db: Session,
        notifier: AdminNotifier | None = None,
        cache: ProfileAggregateCache | None = None,
    ):
        self.db = db
        self.notifier = notifier if notifier is not None else DatabaseNotifier()
        self.cache = cache if cache is not None else profile_cache
        self.store = SqlProfileStore(db)
        self.relations = RelationManager(db, cache=self.cache, notifier=self.notifier)
        self.resolver = CommissionResolver(db, notifier=self.notifier)
        self.ownership = LeadOwnershipService(db, store=self.store, cache=self.cache, notifier=self.notifier)
        self.sales = SaleWorkflow(
            db,
            resolver=self.resolver,
            ownership=self.ownership,
            cache=self.cache,
            notifier=self.notifier,
        )
        self.settlement = SettlementEngine(db, store=self.store, notifier=self.notifier)

    def compute_commission(
        self,
        product_code: str,
        cabin_type: str,
        fare_category: str,
        fare_label: str | None,
        sale_amount,
        cost_amount,
    ) -> CommissionResult:
        return self.resolver.compute(product_code, cabin_type, fare_category, fare_label, sale_amount, cost_amount)

    def submit_sale(
        self,
        lead_id: int,
        attribution: Attribution | None,
        sale_amount,
        cost_amount,
        product_details: ProductDetails,
        actor: Actor,
        sale_date: date | None = None,
    ) -> AffiliateSale:
        return self.sales.submit_sale(
            lead_id,
            actor,
            sale_amount,
            cost_amount,
            product_details,
            attribution=attribution,
            sale_date=sale_date,
        )

    def approve_sale(self, sale_id: int, approver: Actor) -> AffiliateSale:
        return self.sales.approve_sale(sale_id, approver)

    def reject_sale(self, sale_id: int, approver: Actor, reason: str) -> AffiliateSale:
        return self.sales.reject_sale(sale_id, approver, reason)

    def confirm_sale(self, sale_id: int, actor: Actor | None = None) -> AffiliateSale:
        return self.sales.confirm_sale(sale_id, actor)

    def transfer_lead(self, lead_id: int, from_profile_id: int, to_profile_id: int, actor: Actor) -> AffiliateLead:
        return self.ownership.transfer(lead_id, from_profile_id, to_profile_id, actor)

    def recall_leads(self, lead_ids: Sequence[int], actor: Actor) -> RecallResult:
        return self.ownership.recall_many(lead_ids, actor)

    def run_settlement(self, profile_id: int, period: str, actor: Actor | None = None) -> AffiliatePayslip:
        return self.settlement.run_settlement(profile_id, period, actor)

    def approve_settlement(self, payslip_id: int, actor: Actor | None = None) -> AffiliatePayslip:
        return self.settlement.approve_settlement(payslip_id, actor)


__all__ = [
    "AffiliateDesk",
    "CommissionResolver",
    "LeadOwnershipService",
    "RelationManager",
    "SaleWorkflow",
    "SettlementEngine",
    "SqlProfileStore",
]
