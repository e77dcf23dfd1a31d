"""Who is acting on a record, and who owns a lead."""
from __future__ import annotations

from dataclasses import dataclass

from affiliate_desk.core.enums import OwnerType, ProfileType


@dataclass(frozen=True)
class Actor:
    """The caller of a mutating operation.

    HQ actors carry no profile; hierarchy actors always do. ``user_id`` is the
    authenticated account, when there is one, and is only used for audit rows.
    """

    kind: OwnerType
    profile_id: int | None = None
    user_id: int | None = None

    def __post_init__(self) -> None:
        if self.kind is OwnerType.HQ:
            if self.profile_id is not None:
                raise ValueError("HQ actors do not carry a profile id")
        elif self.profile_id is None:
            raise ValueError(f"{self.kind.value} actor requires a profile id")

    @classmethod
    def hq(cls, user_id: int | None = None) -> "Actor":
        return cls(kind=OwnerType.HQ, user_id=user_id)

    @classmethod
    def for_profile(cls, profile, user_id: int | None = None) -> "Actor":
        return cls(
            kind=OwnerType.from_profile_type(ProfileType(profile.type)),
            profile_id=profile.id,
            user_id=user_id,
        )

    @property
    def is_hq(self) -> bool:
        return self.kind is OwnerType.HQ

    def describe(self) -> str:
        if self.is_hq:
            return "HQ"
        return f"{self.kind.value}:{self.profile_id}"


@dataclass(frozen=True)
class LeadOwner:
    """Exactly one holder of a lead: a profile, or HQ when unowned."""

    owner_type: OwnerType
    profile_id: int | None = None

    @classmethod
    def hq(cls) -> "LeadOwner":
        return cls(owner_type=OwnerType.HQ)

    @property
    def is_hq(self) -> bool:
        return self.owner_type is OwnerType.HQ


__all__ = ["Actor", "LeadOwner"]
