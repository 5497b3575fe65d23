"""create_pricing_pipeline_tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
NOW = sa.text("CURRENT_TIMESTAMP")


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=True)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=True))
    return columns


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("ean", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("family", sa.Text(), nullable=True),
        sa.Column("subfamily", sa.Text(), nullable=True),
        sa.Column("cost_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_excl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_incl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(7, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("public_price_incl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("public_price_source", sa.Text(), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("available_qty_total", sa.Integer(), nullable=False),
        sa.Column("rollup_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_products_ean", "products", ["ean"])
    op.create_index("ix_products_category", "products", ["category"])

    op.create_table(
        "supplier_offers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("supplier", sa.Text(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("supplier_product_id", sa.Text(), nullable=False),
        sa.Column("list_price_incl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("purchase_price_excl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(7, 2), nullable=False),
        sa.Column("stock_qty", sa.Integer(), nullable=True),
        sa.Column("lead_time_days", sa.Integer(), nullable=True),
        sa.Column("min_order_qty", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_supplier_offers_product_id", "supplier_offers", ["product_id"])
    op.create_index(
        "uq_supplier_offers_active_product_supplier",
        "supplier_offers",
        ["product_id", "supplier"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "category_coefficients",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("family", sa.Text(), nullable=False),
        sa.Column("subfamily", sa.Text(), nullable=True),
        sa.Column("coefficient", sa.Numeric(8, 4), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("family", "subfamily", name="uq_category_coefficients_family_subfamily"),
    )

    op.create_table(
        "competitor_prices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("competitor_name", sa.Text(), nullable=False),
        sa.Column("competitor_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("competitor_url", sa.Text(), nullable=True),
        sa.Column("price_difference", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_difference_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("product_ean", sa.Text(), nullable=True),
        sa.Column("scraped_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_competitor_prices_product_competitor_scraped",
        "competitor_prices",
        ["product_id", "competitor_name", "scraped_at"],
    )

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("strategy", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("product_ids", JSON_TYPE, nullable=True),
        sa.Column("supplier_ids", JSON_TYPE, nullable=True),
        sa.Column("min_margin_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("max_margin_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("target_margin_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("competitor_offset_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("competitor_offset_fixed", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_competitor_count", sa.Integer(), nullable=False),
        sa.Column("min_price_incl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_price_incl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_price_change_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("require_approval", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_applied_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "price_adjustments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("pricing_rule_id", sa.Uuid(), nullable=True),
        sa.Column("strategy", sa.Text(), nullable=True),
        sa.Column("old_price_excl_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("new_price_excl_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("price_change_percent", sa.Numeric(7, 2), nullable=False),
        sa.Column("old_margin_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("new_margin_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("competitor_avg_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("supplier_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("applied_by", sa.Text(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["pricing_rule_id"], ["pricing_rules.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_price_adjustments_product_id", "price_adjustments", ["product_id"])
    op.create_index("ix_price_adjustments_status", "price_adjustments", ["status"])

    op.create_table(
        "price_change_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("adjustment_id", sa.Uuid(), nullable=True),
        sa.Column("old_price_excl_tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("new_price_excl_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("applied_by", sa.Text(), nullable=False),
        sa.Column("is_rollback", sa.Boolean(), nullable=False),
        sa.Column("rollback_of", sa.Uuid(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["adjustment_id"], ["price_adjustments.id"]),
        sa.ForeignKeyConstraint(["rollback_of"], ["price_change_logs.id"]),
        sa.UniqueConstraint("rollback_of"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_price_change_logs_product_id", "price_change_logs", ["product_id"])

    op.create_table(
        "pricing_alerts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("alert_type", sa.Text(), nullable=False),
        sa.Column("severity", sa.Text(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("competitor_name", sa.Text(), nullable=True),
        sa.Column("our_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("competitor_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_difference", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_difference_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("suggested_action", sa.Text(), nullable=True),
        sa.Column("details", JSON_TYPE, nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("is_resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_by", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_alerts_open", "pricing_alerts", ["product_id", "alert_type", "is_resolved"])


def downgrade() -> None:
    op.drop_table("pricing_alerts")
    op.drop_table("price_change_logs")
    op.drop_table("price_adjustments")
    op.drop_table("pricing_rules")
    op.drop_table("competitor_prices")
    op.drop_table("category_coefficients")
    op.drop_index("uq_supplier_offers_active_product_supplier", table_name="supplier_offers")
    op.drop_table("supplier_offers")
    op.drop_table("products")
