"""Closed vocabularies for roles, ownership and workflow states."""
from __future__ import annotations

from enum import Enum


class ProfileType(str, Enum):
    """Hierarchy tier of an affiliate profile."""

    BRANCH_MANAGER = "BRANCH_MANAGER"
    SALES_AGENT = "SALES_AGENT"


class ProfileStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class RelationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


class LeadStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    PURCHASED = "PURCHASED"
    CANCELLED = "CANCELLED"


class OwnerType(str, Enum):
    """Who holds a lead, or who acts on one. HQ sits above every manager."""

    HQ = "HQ"
    BRANCH_MANAGER = "BRANCH_MANAGER"
    SALES_AGENT = "SALES_AGENT"

    @classmethod
    def from_profile_type(cls, profile_type: ProfileType) -> "OwnerType":
        if profile_type is ProfileType.BRANCH_MANAGER:
            return cls.BRANCH_MANAGER
        if profile_type is ProfileType.SALES_AGENT:
            return cls.SALES_AGENT
        raise ValueError(f"Unhandled profile type {profile_type!r}")


class TransferAction(str, Enum):
    ASSIGN = "ASSIGN"
    TRANSFER = "TRANSFER"
    RECALL = "RECALL"


class SaleStatus(str, Enum):
    PENDING = "PENDING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CONFIRMED = "CONFIRMED"


class CommissionSource(str, Enum):
    """Where the stored commission split came from."""

    TIER = "TIER"
    DEFAULT_RATES = "DEFAULT_RATES"
    TIER_MISSING = "TIER_MISSING"


class PayslipStatus(str, Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SENT = "SENT"


# Allowed sale transitions. Terminal states map to an empty set.
SALE_TRANSITIONS: dict[SaleStatus, frozenset[SaleStatus]] = {
    SaleStatus.PENDING: frozenset({SaleStatus.PENDING_APPROVAL, SaleStatus.APPROVED, SaleStatus.REJECTED}),
    SaleStatus.PENDING_APPROVAL: frozenset({SaleStatus.APPROVED, SaleStatus.REJECTED}),
    SaleStatus.APPROVED: frozenset({SaleStatus.CONFIRMED}),
    SaleStatus.REJECTED: frozenset(),
    SaleStatus.CONFIRMED: frozenset(),
}


def can_transition(current: SaleStatus, target: SaleStatus) -> bool:
    """Return True when the sale state machine allows ``current -> target``."""

    if current not in SALE_TRANSITIONS:
        raise ValueError(f"Unhandled sale status {current!r}")
    return target in SALE_TRANSITIONS[current]


__all__ = [
    "CommissionSource",
    "LeadStatus",
    "OwnerType",
    "PayslipStatus",
    "ProfileStatus",
    "ProfileType",
    "RelationStatus",
    "SALE_TRANSITIONS",
    "SaleStatus",
    "TransferAction",
    "can_transition",
]
