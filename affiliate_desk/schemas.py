"""Pydantic schemas for API requests and responses."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

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
from affiliate_desk.core.periods import parse_period


def _strip_required(value: Any, info: ValidationInfo) -> str:
    label = info.field_name.replace("_", " ").capitalize()
    if value is None:
        raise ValueError(f"{label} is required.")
    value_str = str(value).strip()
    if not value_str:
        raise ValueError(f"{label} cannot be empty.")
    return value_str


def _strip_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


# --- Profiles ---------------------------------------------------------------


class ProfileCreate(BaseModel):
    type: ProfileType
    affiliate_code: str = Field(..., max_length=50)
    display_name: str = Field(..., max_length=200)
    phone: Optional[str] = Field(None, max_length=50)
    bank_name: Optional[str] = Field(None, max_length=100)
    bank_account: Optional[str] = Field(None, max_length=100)
    bank_account_holder: Optional[str] = Field(None, max_length=100)
    withholding_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    user_id: Optional[int] = None
    manager_id: Optional[int] = None

    @field_validator("affiliate_code", "display_name", mode="before")
    def strip_required_strings(cls, value: Any, info: ValidationInfo) -> str:
        return _strip_required(value, info)

    @field_validator("phone", "bank_name", "bank_account", "bank_account_holder", mode="before")
    def strip_optional_strings(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)

    @field_validator("affiliate_code")
    def upper_code(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def manager_only_for_agents(self) -> "ProfileCreate":
        if self.manager_id is not None and self.type is not ProfileType.SALES_AGENT:
            raise ValueError("Only sales agents can be attached to a manager.")
        return self


class ProfileBankUpdate(BaseModel):
    bank_name: Optional[str] = Field(None, max_length=100)
    bank_account: Optional[str] = Field(None, max_length=100)
    bank_account_holder: Optional[str] = Field(None, max_length=100)
    withholding_rate: Optional[Decimal] = Field(None, ge=0, le=100)

    @field_validator("bank_name", "bank_account", "bank_account_holder", mode="before")
    def strip_optional_strings(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)


class ProfileRead(BaseModel):
    id: int
    type: ProfileType
    status: ProfileStatus
    affiliate_code: str
    display_name: str
    phone: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account: Optional[str] = None
    bank_account_holder: Optional[str] = None
    withholding_rate: Optional[Decimal] = None
    user_id: Optional[int] = None
    contract_terminated_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RelationCreate(BaseModel):
    manager_id: int
    agent_id: int


class RelationRead(BaseModel):
    id: int
    manager_id: int
    agent_id: int
    status: RelationStatus
    connected_at: datetime
    disconnected_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ProfileSummaryRead(BaseModel):
    profile_id: int
    counts_by_status: dict[str, int]
    total_sale_amount: Decimal
    total_own_commission: Decimal
    lead_count: int
    active_agent_count: int


# --- Commission tiers -------------------------------------------------------


class ProductDetails(BaseModel):
    product_code: str = Field(..., max_length=50)
    cabin_type: str = Field(..., max_length=50)
    fare_category: str = Field(..., max_length=50)
    fare_label: Optional[str] = Field(None, max_length=100)
    contract_type: str = Field("purchase", max_length=50)

    @field_validator("product_code", "cabin_type", "fare_category", "contract_type", mode="before")
    def strip_required_strings(cls, value: Any, info: ValidationInfo) -> str:
        return _strip_required(value, info)

    @field_validator("fare_label", mode="before")
    def strip_fare_label(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)

    @field_validator("contract_type")
    def lower_contract_type(cls, value: str) -> str:
        return value.lower()


class TierCreate(BaseModel):
    product_code: str = Field(..., max_length=50)
    cabin_type: str = Field(..., max_length=50)
    fare_category: str = Field(..., max_length=50)
    fare_label: Optional[str] = Field(None, max_length=100)
    sale_amount: Decimal = Field(..., ge=0)
    cost_amount: Decimal = Field(..., ge=0)
    hq_share: Optional[Decimal] = Field(None, ge=0)
    branch_share: Optional[Decimal] = Field(None, ge=0)
    sales_share: Optional[Decimal] = Field(None, ge=0)

    @field_validator("product_code", "cabin_type", "fare_category", mode="before")
    def strip_required_strings(cls, value: Any, info: ValidationInfo) -> str:
        return _strip_required(value, info)

    @field_validator("fare_label", mode="before")
    def strip_fare_label(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)


class TierRead(BaseModel):
    id: int
    product_code: str
    cabin_type: str
    fare_category: str
    fare_label: str
    sale_amount: Decimal
    cost_amount: Decimal
    hq_share: Optional[Decimal] = None
    branch_share: Optional[Decimal] = None
    sales_share: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class CommissionPreviewRequest(ProductDetails):
    sale_amount: Decimal = Field(..., ge=0)
    cost_amount: Decimal = Field(..., ge=0)


class CommissionPreviewRead(BaseModel):
    hq_share: Decimal
    branch_share: Decimal
    sales_share: Decimal
    total: Decimal
    net_revenue: Decimal
    source: CommissionSource
    warning: Optional[str] = None


# --- Leads ------------------------------------------------------------------


class LeadCreate(BaseModel):
    customer_name: str = Field(..., max_length=200)
    customer_phone: Optional[str] = Field(None, max_length=50)
    manager_id: Optional[int] = None
    agent_id: Optional[int] = None
    group_id: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("customer_name", mode="before")
    def strip_required_strings(cls, value: Any, info: ValidationInfo) -> str:
        return _strip_required(value, info)

    @field_validator("customer_phone", "notes", mode="before")
    def strip_optional_strings(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)


class LeadRead(BaseModel):
    id: int
    manager_id: Optional[int] = None
    agent_id: Optional[int] = None
    status: LeadStatus
    group_id: Optional[int] = None
    customer_name: str
    customer_phone: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OwnerRead(BaseModel):
    owner_type: OwnerType
    profile_id: Optional[int] = None


class LeadAssignRequest(BaseModel):
    to_profile_id: int
    expected_owner_type: Optional[OwnerType] = None
    expected_profile_id: Optional[int] = None


class LeadTransferRequest(BaseModel):
    from_profile_id: int
    to_profile_id: int


class RecallRequest(BaseModel):
    lead_ids: list[int] = Field(..., min_length=1)


class RecallError(BaseModel):
    lead_id: int
    kind: str
    message: str


class RecallResult(BaseModel):
    success_count: int
    errors: list[RecallError] = Field(default_factory=list)


class TransferEventRead(BaseModel):
    id: int
    lead_id: int
    action: TransferAction
    from_profile_id: Optional[int] = None
    from_type: OwnerType
    to_profile_id: Optional[int] = None
    to_type: OwnerType
    actor_type: OwnerType
    actor_profile_id: Optional[int] = None
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


# --- Sales ------------------------------------------------------------------


class Attribution(BaseModel):
    manager_id: Optional[int] = None
    agent_id: Optional[int] = None


class SaleCreate(ProductDetails):
    lead_id: int
    sale_amount: Decimal = Field(..., ge=0)
    cost_amount: Decimal = Field(..., ge=0)
    sale_date: Optional[date] = None
    attribution: Optional[Attribution] = None

    def product_details(self) -> ProductDetails:
        return ProductDetails(
            product_code=self.product_code,
            cabin_type=self.cabin_type,
            fare_category=self.fare_category,
            fare_label=self.fare_label,
            contract_type=self.contract_type,
        )


class SaleRejectRequest(BaseModel):
    reason: str = Field(..., max_length=1000)

    @field_validator("reason", mode="before")
    def strip_reason(cls, value: Any, info: ValidationInfo) -> str:
        return _strip_required(value, info)


class SaleRead(BaseModel):
    id: int
    lead_id: int
    manager_id: Optional[int] = None
    agent_id: Optional[int] = None
    product_code: str
    cabin_type: str
    fare_category: str
    fare_label: Optional[str] = None
    contract_type: str
    sale_amount: Decimal
    cost_amount: Decimal
    net_revenue: Decimal
    branch_commission: Decimal
    sales_commission: Decimal
    override_commission: Decimal
    hq_commission: Decimal
    commission_source: CommissionSource
    status: SaleStatus
    sale_date: date
    submitted_by_type: OwnerType
    submitted_by_id: Optional[int] = None
    approved_by_type: Optional[OwnerType] = None
    approved_by_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    auto_approved: bool
    rejection_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# --- Settlement -------------------------------------------------------------


class SettlementRunRequest(BaseModel):
    period: str
    profile_id: Optional[int] = None

    @field_validator("period")
    def validate_period(cls, value: str) -> str:
        year, month = parse_period(value)
        return f"{year:04d}-{month:02d}"


class PayslipRead(BaseModel):
    id: int
    profile_id: int
    period: str
    total_sales: Decimal
    sales_count: int
    total_commission: Decimal
    total_withholding: Decimal
    net_payment: Decimal
    withholding_rate: Decimal
    bank_name: Optional[str] = None
    bank_account: Optional[str] = None
    bank_account_holder: Optional[str] = None
    needs_review: bool
    review_notes: Optional[str] = None
    status: PayslipStatus
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    export_path: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SettlementFailure(BaseModel):
    profile_id: int
    kind: str
    message: str


class SettlementRunResult(BaseModel):
    period: str
    payslips: list[PayslipRead] = Field(default_factory=list)
    # profiles whose payslip for the period is already SENT
    skipped: list[int] = Field(default_factory=list)
    failures: list[SettlementFailure] = Field(default_factory=list)


class SendResult(BaseModel):
    period: str
    sent: int
    failed: int
