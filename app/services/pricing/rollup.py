import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import CategoryCoefficient, Product, SupplierOffer
from app.services.pricing.errors import NotFoundError
from app.services.pricing.utils import ensure_aware, to_money, utcnow
from app.settings import settings

logger = logging.getLogger(__name__)

COEFFICIENT_SOURCE = "coefficient"


@dataclass(frozen=True)
class RollupResult:
    product_id: uuid.UUID
    public_price_incl_tax: Optional[Decimal]
    public_price_source: Optional[str]
    is_available: bool
    available_qty_total: int
    offer_count: int
    updated_at: datetime


@dataclass
class BatchResult:
    processed: int = 0
    errors: list[uuid.UUID] = field(default_factory=list)
    cancelled: bool = False


class RollupEngine:
    """
    Reduces every active supplier offer of a product (plus offers reachable
    through a shared EAN) into one public price, availability flag and stock
    figure. The result is always a pure function of the current active offers
    and the category coefficients.
    """

    def __init__(self, session: Session, supplier_priority: Iterable[str] | None = None,
                 default_coefficient: Decimal | None = None):
        self.session = session
        self.supplier_priority = [s.upper() for s in (supplier_priority or settings.supplier_priority)]
        self.default_coefficient = default_coefficient if default_coefficient is not None else settings.default_price_coefficient

    def recompute_rollup(self, product_id: uuid.UUID) -> RollupResult:
        try:
            result = self._recompute(product_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return result

    def recompute_rollups(
        self,
        product_ids: Iterable[uuid.UUID] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """
        Batch recompute, committed per product. Checks `cancel_event`
        between products so a long nightly run can be interrupted. Without
        explicit ids, active products are read in pages of `rollup_batch_size`.
        """
        if product_ids is None:
            product_ids = self.iter_active_product_ids()

        batch = BatchResult()
        for product_id in product_ids:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[RollupEngine] Batch cancelled after {batch.processed} products")
                batch.cancelled = True
                break
            try:
                self.recompute_rollup(product_id)
                batch.processed += 1
            except Exception as e:
                logger.error(f"[RollupEngine] Rollup failed for product {product_id}: {e}")
                batch.errors.append(product_id)

        logger.info(f"[RollupEngine] Batch done: processed={batch.processed} errors={len(batch.errors)}")
        return batch

    def iter_active_product_ids(self, batch_size: int | None = None) -> Iterator[uuid.UUID]:
        """Active product ids in pages of `batch_size`, keyset-paginated by id."""
        batch_size = batch_size or settings.rollup_batch_size
        last_id: uuid.UUID | None = None
        while True:
            stmt = select(Product.id).where(Product.is_active.is_(True)).order_by(Product.id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(Product.id > last_id)
            page = self.session.execute(stmt).scalars().all()
            if not page:
                return
            logger.debug(f"[RollupEngine] Loaded page of {len(page)} product ids")
            yield from page
            if len(page) < batch_size:
                return
            last_id = page[-1]

    def _recompute(self, product_id: uuid.UUID) -> RollupResult:
        # Row lock serializes concurrent recomputes of the same product (no-op on SQLite).
        product = self.session.execute(
            select(Product).where(Product.id == product_id).with_for_update()
        ).scalars().first()
        if not product:
            raise NotFoundError("product", product_id)

        offers = self.collect_offers(product)
        price, source = self._select_price(product, offers)
        is_available = any(o.stock_qty is None or o.stock_qty > 0 for o in offers)
        qty_total = sum(o.stock_qty for o in offers if o.stock_qty is not None and o.stock_qty > 0)

        now = utcnow()
        product.public_price_incl_tax = price
        product.public_price_source = source
        product.is_available = is_available
        product.available_qty_total = qty_total
        product.rollup_updated_at = now
        self.session.flush()

        if price is None:
            logger.warning(f"[RollupEngine] No public price for product {product_id} ({len(offers)} active offers)")

        return RollupResult(
            product_id=product.id,
            public_price_incl_tax=price,
            public_price_source=source,
            is_available=is_available,
            available_qty_total=qty_total,
            offer_count=len(offers),
            updated_at=now,
        )

    def collect_offers(self, product: Product) -> list[SupplierOffer]:
        """
        Own active offers plus active offers of other products sharing the EAN,
        merged then de-duplicated by offer id. Own offers sort first.
        """
        stmt = select(SupplierOffer).where(
            SupplierOffer.product_id == product.id,
            SupplierOffer.is_active.is_(True),
        )
        merged: dict[uuid.UUID, SupplierOffer] = {
            offer.id: offer for offer in self.session.execute(stmt).scalars().all()
        }

        ean = (product.ean or "").strip()
        if ean:
            xref_stmt = (
                select(SupplierOffer)
                .join(Product, Product.id == SupplierOffer.product_id)
                .where(
                    Product.ean == ean,
                    Product.id != product.id,
                    SupplierOffer.is_active.is_(True),
                )
            )
            for offer in self.session.execute(xref_stmt).scalars().all():
                merged.setdefault(offer.id, offer)

        return sorted(merged.values(), key=lambda o: self._offer_sort_key(o, product.id))

    def _offer_sort_key(self, offer: SupplierOffer, product_id: uuid.UUID) -> tuple:
        supplier = (offer.supplier or "").upper()
        rank = self.supplier_priority.index(supplier) if supplier in self.supplier_priority else len(self.supplier_priority)
        seen = ensure_aware(offer.last_seen_at)
        return (
            rank,
            0 if offer.product_id == product_id else 1,
            -(seen.timestamp() if seen else 0.0),
            str(offer.id),
        )

    def _select_price(self, product: Product, offers: list[SupplierOffer]) -> tuple[Optional[Decimal], Optional[str]]:
        known = [o for o in offers if (o.supplier or "").upper() in self.supplier_priority]

        for offer in known:
            if offer.list_price_incl_tax is not None and offer.list_price_incl_tax > 0:
                return to_money(offer.list_price_incl_tax), offer.supplier.upper()

        for offer in known:
            if offer.purchase_price_excl_tax is not None and offer.purchase_price_excl_tax > 0:
                coefficient = self.lookup_coefficient(product.family, product.subfamily)
                if coefficient is None:
                    logger.info(f"[RollupEngine] No coefficient for family={product.family} subfamily={product.subfamily}")
                    return None, None
                return to_money(offer.purchase_price_excl_tax * coefficient), COEFFICIENT_SOURCE

        return None, None

    def lookup_coefficient(self, family: Optional[str], subfamily: Optional[str]) -> Optional[Decimal]:
        """
        Ordered fallback: (family, subfamily) -> (family, any) -> global default.
        """
        lookup_keys: list[tuple[str, Optional[str]]] = []
        if family and subfamily:
            lookup_keys.append((family, subfamily))
        if family:
            lookup_keys.append((family, None))

        for key_family, key_subfamily in lookup_keys:
            stmt = select(CategoryCoefficient.coefficient).where(CategoryCoefficient.family == key_family)
            if key_subfamily is None:
                stmt = stmt.where(CategoryCoefficient.subfamily.is_(None))
            else:
                stmt = stmt.where(CategoryCoefficient.subfamily == key_subfamily)
            coefficient = self.session.execute(stmt).scalars().first()
            if coefficient is not None:
                return Decimal(coefficient)

        return self.default_coefficient
