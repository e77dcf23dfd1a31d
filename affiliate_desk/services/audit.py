"""Interaction trail for lead and sale events."""
from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from affiliate_desk.core.actors import Actor
from affiliate_desk.models import AffiliateInteraction

DB_RECALL = "DB_RECALL"
LEAD_ASSIGNED = "LEAD_ASSIGNED"
LEAD_TRANSFER = "LEAD_TRANSFER"
LEAD_TEAM_CHANGED = "LEAD_TEAM_CHANGED"
SALE_SUBMITTED = "SALE_SUBMITTED"
SALE_APPROVAL_REQUESTED = "SALE_APPROVAL_REQUESTED"
SALE_AUTO_APPROVED = "SALE_AUTO_APPROVED"
SALE_APPROVED = "SALE_APPROVED"
SALE_REJECTED = "SALE_REJECTED"
SALE_CONFIRMED = "SALE_CONFIRMED"
SALE_COMMISSION_RECOMPUTED = "SALE_COMMISSION_RECOMPUTED"


def record_interaction(
    db: Session,
    interaction_type: str,
    actor: Actor | None,
    *,
    lead_id: int | None = None,
    sale_id: int | None = None,
    profile_id: int | None = None,
    note: str | None = None,
    details: dict[str, Any] | None = None,
) -> AffiliateInteraction:
    """Stage an interaction row in the caller's unit of work."""

    interaction = AffiliateInteraction(
        interaction_type=interaction_type,
        lead_id=lead_id,
        sale_id=sale_id,
        profile_id=profile_id,
        note=note,
        details=json.dumps(details or {}, default=str),
        actor_type=actor.kind if actor else None,
        actor_profile_id=actor.profile_id if actor else None,
        actor_user_id=actor.user_id if actor else None,
    )
    db.add(interaction)
    return interaction
