from datetime import datetime
from decimal import Decimal
from enum import Enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import expression, func


Money = Numeric(12, 2)
Percent = Numeric(7, 2)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Supplier(str, Enum):
    ALKOR = "ALKOR"
    COMLANDI = "COMLANDI"
    SOFT = "SOFT"


class PricingStrategy(str, Enum):
    MARGIN_TARGET = "margin_target"
    COMPETITOR_MATCH = "competitor_match"
    COMPETITOR_UNDERCUT = "competitor_undercut"
    HYBRID = "hybrid"


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"


class AlertType(str, Enum):
    COMPETITOR_LOWER_PRICE = "competitor_lower_price"
    PRICING_OPPORTUNITY = "pricing_opportunity"
    MARGIN_BELOW_THRESHOLD = "margin_below_threshold"
    PRICE_CHANGE_RECOMMENDED = "price_change_recommended"
    ROLLUP_PRICE_MISSING = "rollup_price_missing"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Product(Base):
    """
    Catalog record. Owned by the catalog; this subsystem writes the rollup
    fields and the price fields only.
    """
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    ean: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    family: Mapped[str | None] = mapped_column(Text, nullable=True)
    subfamily: Mapped[str | None] = mapped_column(Text, nullable=True)

    cost_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)  # excl. tax
    price_excl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    price_incl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    tax_rate: Mapped[Decimal] = mapped_column(Percent, default=Decimal("20.00"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Rollup (derived, never hand-edited)
    public_price_incl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    public_price_source: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    available_qty_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollup_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    offers: Mapped[list["SupplierOffer"]] = relationship(back_populates="product")


class SupplierOffer(Base):
    """
    One supplier's listing for one product. Stale offers are deactivated, never deleted.
    """
    __tablename__ = "supplier_offers"
    __table_args__ = (
        Index(
            "uq_supplier_offers_active_product_supplier",
            "product_id",
            "supplier",
            unique=True,
            sqlite_where=expression.text("is_active = 1"),
            postgresql_where=expression.text("is_active"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    supplier: Mapped[str] = mapped_column(Text, nullable=False)  # ALKOR, COMLANDI, SOFT
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    supplier_product_id: Mapped[str] = mapped_column(Text, nullable=False)

    list_price_incl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)  # supplier public resale price
    purchase_price_excl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    tax_rate: Mapped[Decimal] = mapped_column(Percent, default=Decimal("20.00"), nullable=False)
    stock_qty: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = undefined / unlimited
    lead_time_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_order_qty: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product: Mapped["Product"] = relationship(back_populates="offers")


class CategoryCoefficient(Base):
    """
    Markup multiplier applied to the purchase price when no supplier public price exists.
    """
    __tablename__ = "category_coefficients"
    __table_args__ = (
        UniqueConstraint("family", "subfamily", name="uq_category_coefficients_family_subfamily"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    family: Mapped[str] = mapped_column(Text, nullable=False)
    subfamily: Mapped[str | None] = mapped_column(Text, nullable=True)
    coefficient: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CompetitorPrice(Base):
    """
    Append-only competitor price snapshot.
    """
    __tablename__ = "competitor_prices"
    __table_args__ = (
        Index("ix_competitor_prices_product_competitor_scraped", "product_id", "competitor_name", "scraped_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    competitor_name: Mapped[str] = mapped_column(Text, nullable=False)
    competitor_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    competitor_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Snapshot against our public price at write time; never recomputed.
    price_difference: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    price_difference_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    product_ean: Mapped[str | None] = mapped_column(Text, nullable=True)

    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PricingRule(Base):
    """
    Named pricing policy. Lower priority value is evaluated first.
    """
    __tablename__ = "pricing_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[str] = mapped_column(Text, nullable=False)

    # Scope
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_ids: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    supplier_ids: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)

    # Guardrails
    min_margin_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    max_margin_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    target_margin_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    competitor_offset_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    competitor_offset_fixed: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    min_competitor_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    min_price_incl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    max_price_incl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    max_price_change_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)

    require_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PriceAdjustment(Base):
    """
    Proposed price change. Rows are never reused: every evaluation run creates new ones.
    """
    __tablename__ = "price_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    pricing_rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("pricing_rules.id"), nullable=True)
    strategy: Mapped[str | None] = mapped_column(Text, nullable=True)

    old_price_excl_tax: Mapped[Decimal] = mapped_column(Money, nullable=False)
    new_price_excl_tax: Mapped[Decimal] = mapped_column(Money, nullable=False)
    price_change_percent: Mapped[Decimal] = mapped_column(Percent, nullable=False)
    old_margin_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    new_margin_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    competitor_avg_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    supplier_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(Text, default=AdjustmentStatus.PENDING.value, nullable=False, index=True)
    applied_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PriceChangeLog(Base):
    """
    Immutable record of every price written onto a product.
    """
    __tablename__ = "price_change_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    adjustment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("price_adjustments.id"), nullable=True)

    old_price_excl_tax: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    new_price_excl_tax: Mapped[Decimal] = mapped_column(Money, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)  # MANUAL_APPROVAL, AUTO_APPROVAL, ROLLBACK
    applied_by: Mapped[str] = mapped_column(Text, nullable=False)

    # A rollback row restores old_price_excl_tax of the row it points to; each row is rolled back at most once.
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rollback_of: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("price_change_logs.id"), nullable=True, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PricingAlert(Base):
    """
    Advisory signal. Never mutates price data; resolved alerts are kept for history.
    """
    __tablename__ = "pricing_alerts"
    __table_args__ = (
        Index("ix_pricing_alerts_open", "product_id", "alert_type", "is_resolved"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    alert_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    competitor_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    our_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    competitor_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    price_difference: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    price_difference_percent: Mapped[Decimal | None] = mapped_column(Percent, nullable=True)
    suggested_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
