from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models import PricingStrategy, Supplier


class RollupResponse(BaseModel):
    product_id: uuid.UUID
    public_price_incl_tax: Optional[Decimal] = None
    public_price_source: Optional[str] = None
    is_available: bool
    available_qty_total: int
    offer_count: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RollupBatchRequest(BaseModel):
    product_ids: Optional[List[uuid.UUID]] = None


class BatchResponse(BaseModel):
    processed: int
    errors: List[uuid.UUID] = []
    cancelled: bool = False

    model_config = ConfigDict(from_attributes=True)


class OfferUpsert(BaseModel):
    product_id: uuid.UUID
    supplier: Supplier
    supplier_product_id: str = Field(min_length=1)
    list_price_incl_tax: Optional[Decimal] = Field(default=None, ge=0)
    purchase_price_excl_tax: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Decimal = Field(default=Decimal("20.00"), ge=0)
    stock_qty: Optional[int] = Field(default=None, ge=0)
    lead_time_days: Optional[int] = Field(default=None, ge=0)
    min_order_qty: int = Field(default=1, ge=1)


class OfferActiveUpdate(BaseModel):
    is_active: bool


class OfferResponse(BaseModel):
    id: uuid.UUID
    supplier: str
    product_id: uuid.UUID
    supplier_product_id: str
    list_price_incl_tax: Optional[Decimal] = None
    purchase_price_excl_tax: Optional[Decimal] = None
    tax_rate: Decimal
    stock_qty: Optional[int] = None
    lead_time_days: Optional[int] = None
    min_order_qty: int
    is_active: bool
    last_seen_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PricingRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    strategy: PricingStrategy
    category: Optional[str] = None
    product_ids: Optional[List[uuid.UUID]] = None
    supplier_ids: Optional[List[str]] = None
    min_margin_percent: Optional[Decimal] = None
    max_margin_percent: Optional[Decimal] = None
    target_margin_percent: Optional[Decimal] = None
    competitor_offset_percent: Optional[Decimal] = None
    competitor_offset_fixed: Optional[Decimal] = None
    min_competitor_count: int = 1
    min_price_incl_tax: Optional[Decimal] = None
    max_price_incl_tax: Optional[Decimal] = None
    max_price_change_percent: Optional[Decimal] = None
    require_approval: bool = True
    priority: int = 100
    is_active: bool = True

    @field_validator("supplier_ids")
    @classmethod
    def validate_supplier_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        codes = [code.strip().upper() for code in v if code.strip()]
        unknown = [code for code in codes if code not in Supplier.__members__]
        if unknown:
            raise ValueError(f"unknown supplier(s): {unknown}")
        return codes


class PricingRuleResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    strategy: str
    category: Optional[str] = None
    product_ids: Optional[List[str]] = None
    supplier_ids: Optional[List[str]] = None
    min_margin_percent: Optional[Decimal] = None
    max_margin_percent: Optional[Decimal] = None
    target_margin_percent: Optional[Decimal] = None
    competitor_offset_percent: Optional[Decimal] = None
    competitor_offset_fixed: Optional[Decimal] = None
    min_competitor_count: int
    min_price_incl_tax: Optional[Decimal] = None
    max_price_incl_tax: Optional[Decimal] = None
    max_price_change_percent: Optional[Decimal] = None
    require_approval: bool
    priority: int
    is_active: bool
    last_applied_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EvaluateRequest(BaseModel):
    rule_id: Optional[uuid.UUID] = None
    product_ids: Optional[List[uuid.UUID]] = None
    dry_run: bool = False


class PriceProposalResponse(BaseModel):
    product_id: uuid.UUID
    pricing_rule_id: uuid.UUID
    rule_name: str
    strategy: str
    old_price_excl_tax: Decimal
    new_price_excl_tax: Decimal
    price_change_percent: Decimal
    old_margin_percent: Optional[Decimal] = None
    new_margin_percent: Optional[Decimal] = None
    competitor_avg_price: Optional[Decimal] = None
    supplier_price: Optional[Decimal] = None
    reason: str
    blocked_by_guard: bool = False

    model_config = ConfigDict(from_attributes=True)


class EvaluationResponse(BaseModel):
    proposed: int
    skipped: int
    auto_applied: int
    errors: List[uuid.UUID] = []
    auto_apply_errors: List[uuid.UUID] = []
    cancelled: bool = False
    dry_run: bool = False
    adjustment_ids: List[uuid.UUID] = []
    proposals: List[PriceProposalResponse] = []
    skip_reasons: dict[str, int] = {}

    model_config = ConfigDict(from_attributes=True)


class PriceAdjustmentResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    pricing_rule_id: Optional[uuid.UUID] = None
    strategy: Optional[str] = None
    old_price_excl_tax: Decimal
    new_price_excl_tax: Decimal
    price_change_percent: Decimal
    old_margin_percent: Optional[Decimal] = None
    new_margin_percent: Optional[Decimal] = None
    competitor_avg_price: Optional[Decimal] = None
    supplier_price: Optional[Decimal] = None
    reason: str
    status: str
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PriceChangeLogResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    adjustment_id: Optional[uuid.UUID] = None
    old_price_excl_tax: Optional[Decimal] = None
    new_price_excl_tax: Decimal
    source: str
    applied_by: str
    is_rollback: bool = False
    rollback_of: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CompetitorIngestRequest(BaseModel):
    product_ids: List[uuid.UUID] = Field(min_length=1)


class CompetitorPriceCreate(BaseModel):
    competitor_name: str = Field(min_length=1)
    competitor_price: Decimal = Field(gt=0)
    competitor_url: Optional[str] = None
    scraped_at: Optional[datetime] = None


class CompetitorPriceResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    competitor_name: str
    competitor_price: Decimal
    competitor_url: Optional[str] = None
    price_difference: Optional[Decimal] = None
    price_difference_percent: Optional[Decimal] = None
    product_ean: Optional[str] = None
    scraped_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AlertDetectionResponse(BaseModel):
    created: int
    updated: int
    errors: int = 0


class PricingAlertResponse(BaseModel):
    id: uuid.UUID
    alert_type: str
    severity: str
    product_id: uuid.UUID
    competitor_name: Optional[str] = None
    our_price: Optional[Decimal] = None
    competitor_price: Optional[Decimal] = None
    price_difference: Optional[Decimal] = None
    price_difference_percent: Optional[Decimal] = None
    suggested_action: Optional[str] = None
    details: Optional[dict] = None
    is_read: bool
    is_resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
