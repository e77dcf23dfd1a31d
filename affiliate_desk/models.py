"""SQLAlchemy models for the affiliate desk."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_desk.auth import User  # noqa: F401  (registers users table for foreign keys)
from affiliate_desk.core.enums import (
    CommissionSource,
    LeadStatus,
    OwnerType,
    PayslipStatus,
    ProfileStatus,
    ProfileType,
    RelationStatus,
    SaleStatus,
    TransferAction,
)
from affiliate_desk.database import Base


def _enum(enum_cls) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=30, validate_strings=True)


def _money(nullable: bool = False):
    return mapped_column(Numeric(14, 2), nullable=nullable, default=Decimal("0") if not nullable else None)


class AffiliateProfile(Base):
    __tablename__ = "affiliate_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), unique=True, nullable=True)
    type: Mapped[ProfileType] = mapped_column(_enum(ProfileType), nullable=False)
    status: Mapped[ProfileStatus] = mapped_column(
        _enum(ProfileStatus), nullable=False, default=ProfileStatus.ACTIVE
    )
    affiliate_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account_holder: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Percent, e.g. 3.3. Null means the desk-wide default applies.
    withholding_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    contract_terminated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    payslips: Mapped[list["AffiliatePayslip"]] = relationship(back_populates="profile")

    __table_args__ = (
        CheckConstraint(
            "withholding_rate IS NULL OR (withholding_rate >= 0 AND withholding_rate <= 100)",
            name="ck_affiliate_profiles_withholding_rate",
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status is ProfileStatus.ACTIVE

    @property
    def missing_bank_fields(self) -> list[str]:
        fields = ("bank_name", "bank_account", "bank_account_holder")
        return [name for name in fields if not (getattr(self, name) or "").strip()]


class AffiliateRelation(Base):
    __tablename__ = "affiliate_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manager_id: Mapped[int] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=False)
    agent_id: Mapped[int] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=False)
    status: Mapped[RelationStatus] = mapped_column(
        _enum(RelationStatus), nullable=False, default=RelationStatus.ACTIVE
    )
    connected_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    manager: Mapped[AffiliateProfile] = relationship(foreign_keys=[manager_id])
    agent: Mapped[AffiliateProfile] = relationship(foreign_keys=[agent_id])

    __table_args__ = (
        UniqueConstraint("manager_id", "agent_id", name="uq_affiliate_relations_pair"),
        CheckConstraint("manager_id <> agent_id", name="ck_affiliate_relations_distinct"),
        # At most one ACTIVE manager per agent.
        Index(
            "uq_affiliate_relations_active_agent",
            "agent_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class AffiliateLead(Base):
    __tablename__ = "affiliate_leads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manager_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=True)
    agent_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=True)
    status: Mapped[LeadStatus] = mapped_column(_enum(LeadStatus), nullable=False, default=LeadStatus.NEW)
    group_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    transfer_events: Mapped[list["LeadTransferEvent"]] = relationship(
        back_populates="lead",
        order_by=lambda: (LeadTransferEvent.occurred_at, LeadTransferEvent.id),
    )
    sales: Mapped[list["AffiliateSale"]] = relationship(back_populates="lead")


class LeadTransferEvent(Base):
    """Append-only ownership history of a lead."""

    __tablename__ = "lead_transfer_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("affiliate_leads.id"), nullable=False, index=True)
    action: Mapped[TransferAction] = mapped_column(_enum(TransferAction), nullable=False)
    from_profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_type: Mapped[OwnerType] = mapped_column(_enum(OwnerType), nullable=False)
    to_profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_type: Mapped[OwnerType] = mapped_column(_enum(OwnerType), nullable=False)
    actor_type: Mapped[OwnerType] = mapped_column(_enum(OwnerType), nullable=False)
    actor_profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    lead: Mapped[AffiliateLead] = relationship(back_populates="transfer_events")


class AffiliateCommissionTier(Base):
    __tablename__ = "affiliate_commission_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_code: Mapped[str] = mapped_column(String(50), nullable=False)
    cabin_type: Mapped[str] = mapped_column(String(50), nullable=False)
    fare_category: Mapped[str] = mapped_column(String(50), nullable=False)
    # Empty string stands for "no fare label" so the unique key stays comparable.
    fare_label: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    sale_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cost_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    hq_share: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    branch_share: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    sales_share: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "product_code",
            "cabin_type",
            "fare_category",
            "fare_label",
            name="uq_affiliate_commission_tiers_key",
        ),
        CheckConstraint("sale_amount >= cost_amount", name="ck_affiliate_commission_tiers_margin"),
    )

    @property
    def has_override_shares(self) -> bool:
        return None not in (self.hq_share, self.branch_share, self.sales_share)


class AffiliateSale(Base):
    __tablename__ = "affiliate_sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("affiliate_leads.id"), nullable=False, index=True)
    manager_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=True, index=True)
    agent_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=True, index=True)
    product_code: Mapped[str] = mapped_column(String(50), nullable=False)
    cabin_type: Mapped[str] = mapped_column(String(50), nullable=False)
    fare_category: Mapped[str] = mapped_column(String(50), nullable=False)
    fare_label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contract_type: Mapped[str] = mapped_column(String(50), nullable=False, default="purchase")
    sale_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cost_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_revenue: Mapped[Decimal] = _money()
    branch_commission: Mapped[Decimal] = _money()
    sales_commission: Mapped[Decimal] = _money()
    override_commission: Mapped[Decimal] = _money()
    hq_commission: Mapped[Decimal] = _money()
    commission_source: Mapped[CommissionSource] = mapped_column(_enum(CommissionSource), nullable=False)
    tier_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_commission_tiers.id"), nullable=True)
    status: Mapped[SaleStatus] = mapped_column(_enum(SaleStatus), nullable=False, default=SaleStatus.PENDING)
    sale_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    submitted_by_type: Mapped[OwnerType] = mapped_column(_enum(OwnerType), nullable=False)
    submitted_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submitted_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_by_type: Mapped[OwnerType | None] = mapped_column(_enum(OwnerType), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    lead: Mapped[AffiliateLead] = relationship(back_populates="sales")

    __table_args__ = (
        CheckConstraint("sale_amount >= 0", name="ck_affiliate_sales_amount_non_negative"),
        Index("ix_affiliate_sales_status_date", "status", "sale_date"),
    )

    @property
    def commission_total(self) -> Decimal:
        return (
            (self.hq_commission or Decimal("0"))
            + (self.branch_commission or Decimal("0"))
            + (self.sales_commission or Decimal("0"))
            + (self.override_commission or Decimal("0"))
        )


class AffiliatePayslip(Base):
    __tablename__ = "affiliate_payslips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[int] = mapped_column(ForeignKey("affiliate_profiles.id"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    total_sales: Mapped[Decimal] = _money()
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_commission: Mapped[Decimal] = _money()
    total_withholding: Mapped[Decimal] = _money()
    net_payment: Mapped[Decimal] = _money()
    withholding_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account_holder: Mapped[str | None] = mapped_column(String(100), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[PayslipStatus] = mapped_column(
        _enum(PayslipStatus), nullable=False, default=PayslipStatus.DRAFT
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    export_path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    profile: Mapped[AffiliateProfile] = relationship(back_populates="payslips")

    __table_args__ = (
        UniqueConstraint("profile_id", "period", name="uq_affiliate_payslips_profile_period"),
    )


class AffiliateInteraction(Base):
    __tablename__ = "affiliate_interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_leads.id"), nullable=True, index=True)
    sale_id: Mapped[int | None] = mapped_column(ForeignKey("affiliate_sales.id"), nullable=True, index=True)
    profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    interaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    actor_type: Mapped[OwnerType | None] = mapped_column(_enum(OwnerType), nullable=True)
    actor_profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)


class AdminNotification(Base):
    __tablename__ = "admin_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="normal")
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)


class AuditLog(Base):
    """Record of administrative actions such as settlement runs and approvals."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
