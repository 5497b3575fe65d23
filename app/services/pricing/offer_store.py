import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models import Product, Supplier, SupplierOffer
from app.services.pricing.errors import NotFoundError, PricingValidationError
from app.services.pricing.rollup import RollupEngine
from app.services.pricing.utils import ensure_aware, to_money, utcnow
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class OfferInput:
    product_id: uuid.UUID
    supplier: str
    supplier_product_id: str
    list_price_incl_tax: Optional[Decimal] = None
    purchase_price_excl_tax: Optional[Decimal] = None
    tax_rate: Decimal = Decimal("20.00")
    stock_qty: Optional[int] = None
    lead_time_days: Optional[int] = None
    min_order_qty: int = 1


class OfferStore:
    """
    Keeps at most one active offer per (product, supplier) and triggers a
    rollup recompute for every product whose view of the offers changed.
    """

    def __init__(self, session: Session, rollup: RollupEngine | None = None):
        self.session = session
        self.rollup = rollup or RollupEngine(session)

    def upsert_offer(self, data: OfferInput, seen_at: datetime | None = None) -> SupplierOffer:
        supplier = self._validate_supplier(data.supplier)
        if data.stock_qty is not None and data.stock_qty < 0:
            raise PricingValidationError("stock_qty must be >= 0 or null", field="stock_qty")
        if data.min_order_qty < 1:
            raise PricingValidationError("min_order_qty must be >= 1", field="min_order_qty")

        now = seen_at or utcnow()
        try:
            product = self.session.get(Product, data.product_id)
            if not product:
                raise NotFoundError("product", data.product_id)

            current = self._active_offer(data.product_id, supplier)
            if current and current.supplier_product_id == data.supplier_product_id:
                offer = current
                logger.debug(f"[OfferStore] Refreshing {supplier} offer {offer.id} for product {data.product_id}")
            else:
                if current:
                    logger.info(
                        f"[OfferStore] Replacing {supplier} offer {current.supplier_product_id} -> "
                        f"{data.supplier_product_id} for product {data.product_id}"
                    )
                    current.is_active = False
                    current.updated_at = now
                    # Deactivation must reach the DB before the insert to keep the partial unique index happy.
                    self.session.flush()
                offer = SupplierOffer(
                    supplier=supplier,
                    product_id=data.product_id,
                    supplier_product_id=data.supplier_product_id,
                    is_active=True,
                    created_at=now,
                )
                self.session.add(offer)

            offer.list_price_incl_tax = to_money(data.list_price_incl_tax)
            offer.purchase_price_excl_tax = to_money(data.purchase_price_excl_tax)
            offer.tax_rate = data.tax_rate
            offer.stock_qty = data.stock_qty
            offer.lead_time_days = data.lead_time_days
            offer.min_order_qty = data.min_order_qty
            offer.last_seen_at = now
            offer.updated_at = now
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self._recompute_affected([product])
        return offer

    def set_offer_active(self, offer_id: uuid.UUID, is_active: bool) -> SupplierOffer:
        try:
            offer = self.session.get(SupplierOffer, offer_id)
            if not offer:
                raise NotFoundError("supplier_offer", offer_id)

            if is_active and not offer.is_active:
                # Activating an offer retires whatever else is active for the pair.
                self.session.execute(
                    update(SupplierOffer)
                    .where(
                        SupplierOffer.product_id == offer.product_id,
                        SupplierOffer.supplier == offer.supplier,
                        SupplierOffer.is_active.is_(True),
                        SupplierOffer.id != offer.id,
                    )
                    .values(is_active=False, updated_at=utcnow())
                    .execution_options(synchronize_session="fetch")
                )
                self.session.flush()
                offer.last_seen_at = utcnow()

            offer.is_active = is_active
            offer.updated_at = utcnow()
            self.session.commit()
            self.session.refresh(offer)
        except Exception:
            self.session.rollback()
            raise

        product = self.session.get(Product, offer.product_id)
        self._recompute_affected([product])
        return offer

    def deactivate_stale_offers(self, now: datetime | None = None) -> dict[str, int]:
        """
        Ghost offer cleanup: retire active offers a supplier feed stopped
        reporting. Thresholds come from `settings.ghost_offer_threshold_days`.
        """
        now = ensure_aware(now) or utcnow()
        counts: dict[str, int] = {}
        affected: dict[uuid.UUID, Product] = {}

        try:
            for supplier, days in settings.ghost_offer_threshold_days.items():
                cutoff = now - timedelta(days=days)
                stale = self.session.execute(
                    select(SupplierOffer).where(
                        SupplierOffer.supplier == supplier.upper(),
                        SupplierOffer.is_active.is_(True),
                    )
                ).scalars().all()

                count = 0
                for offer in stale:
                    seen = ensure_aware(offer.last_seen_at)
                    if seen is not None and seen >= cutoff:
                        continue
                    offer.is_active = False
                    offer.updated_at = now
                    affected.setdefault(offer.product_id, offer.product)
                    count += 1
                counts[supplier.upper()] = count
                if count:
                    logger.info(f"[OfferStore] Deactivated {count} stale {supplier} offers (older than {days}d)")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self._recompute_affected(list(affected.values()))
        return counts

    def list_offers(self, product_id: uuid.UUID, include_inactive: bool = False) -> list[SupplierOffer]:
        stmt = select(SupplierOffer).where(SupplierOffer.product_id == product_id)
        if not include_inactive:
            stmt = stmt.where(SupplierOffer.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(SupplierOffer.supplier)).scalars().all())

    def _active_offer(self, product_id: uuid.UUID, supplier: str) -> SupplierOffer | None:
        return self.session.execute(
            select(SupplierOffer).where(
                SupplierOffer.product_id == product_id,
                SupplierOffer.supplier == supplier,
                SupplierOffer.is_active.is_(True),
            )
        ).scalars().first()

    def _recompute_affected(self, products: list[Product]) -> None:
        """Recompute the given products and every product sharing one of their EANs."""
        product_ids: list[uuid.UUID] = []
        eans: set[str] = set()
        for product in products:
            if product is None:
                continue
            if product.id not in product_ids:
                product_ids.append(product.id)
            ean = (product.ean or "").strip()
            if ean:
                eans.add(ean)

        if eans:
            siblings = self.session.execute(
                select(Product.id).where(Product.ean.in_(eans)).order_by(Product.id)
            ).scalars().all()
            for sibling_id in siblings:
                if sibling_id not in product_ids:
                    product_ids.append(sibling_id)

        for product_id in product_ids:
            self.rollup.recompute_rollup(product_id)

    @staticmethod
    def _validate_supplier(supplier: str) -> str:
        code = (supplier or "").strip().upper()
        if code not in Supplier.__members__:
            raise PricingValidationError(f"unknown supplier '{supplier}'", field="supplier")
        return code
