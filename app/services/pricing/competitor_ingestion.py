import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.competitors.base import CompetitorCollector, CompetitorQuote, ProductQuery
from app.models import CompetitorPrice, Product
from app.services.pricing.errors import NotFoundError, PricingValidationError
from app.services.pricing.utils import HUNDRED, ensure_aware, to_money, to_percent, utcnow

logger = logging.getLogger(__name__)


def latest_competitor_prices(
    session: Session, product_id: uuid.UUID, since: Optional[datetime] = None
) -> list[CompetitorPrice]:
    """
    Most recent snapshot per competitor, optionally ignoring snapshots older
    than `since`. Sorted by competitor name.

    A competitor whose latest snapshot is older than `since` is dropped; an
    older snapshot never stands in for it.
    """
    ranked = (
        select(
            CompetitorPrice.id,
            func.row_number()
            .over(
                partition_by=CompetitorPrice.competitor_name,
                order_by=(CompetitorPrice.scraped_at.desc(), CompetitorPrice.id.desc()),
            )
            .label("recency"),
        )
        .where(CompetitorPrice.product_id == product_id)
        .subquery()
    )
    stmt = (
        select(CompetitorPrice)
        .join(ranked, ranked.c.id == CompetitorPrice.id)
        .where(ranked.c.recency == 1)
        .order_by(CompetitorPrice.competitor_name)
    )
    since = ensure_aware(since)
    if since is not None:
        stmt = stmt.where(CompetitorPrice.scraped_at >= since)
    return list(session.execute(stmt).scalars().all())


class CompetitorIngestionService:
    """
    Appends competitor price snapshots. Rows are never updated; the
    difference against our public price is frozen at write time.
    """

    def __init__(self, session: Session, collectors: Iterable[CompetitorCollector] | None = None):
        self.session = session
        if collectors is None:
            from app.competitors.collector_factory import get_competitor_collectors

            collectors = get_competitor_collectors()
        self.collectors = list(collectors)

    async def ingest_competitor_prices(self, product_ids: Iterable[uuid.UUID]) -> dict:
        product_ids = list(product_ids)
        products = self.session.execute(
            select(Product).where(Product.id.in_(product_ids))
        ).scalars().all()
        missing = [pid for pid in product_ids if pid not in {p.id for p in products}]
        if missing:
            logger.warning(f"[CompetitorIngestion] {len(missing)} unknown product(s) skipped")

        logger.info(
            f"[CompetitorIngestion] Scraping {len(products)} product(s) across {len(self.collectors)} competitor(s)"
        )
        scraped = 0
        failed = 0
        for product in products:
            query = ProductQuery(product_id=product.id, name=product.name, ean=product.ean)
            for collector in self.collectors:
                try:
                    quote = await collector.fetch_quote(query)
                except Exception as e:
                    logger.error(f"[CompetitorIngestion] {collector.name} failed for product {product.id}: {e}")
                    failed += 1
                    continue
                if quote is None:
                    continue
                try:
                    self._append(product.id, quote)
                    self.session.commit()
                    scraped += 1
                except Exception as e:
                    self.session.rollback()
                    logger.error(f"[CompetitorIngestion] Could not store {collector.name} price for {product.id}: {e}")
                    failed += 1

        logger.info(f"[CompetitorIngestion] Done: scraped={scraped} failed={failed}")
        return {
            "scraped": scraped,
            "failed": failed,
            "products": len(products),
            "missing": [str(pid) for pid in missing],
        }

    def record_competitor_price(
        self,
        product_id: uuid.UUID,
        competitor_name: str,
        price: Decimal,
        url: Optional[str] = None,
        scraped_at: Optional[datetime] = None,
    ) -> CompetitorPrice:
        if not competitor_name or not competitor_name.strip():
            raise PricingValidationError("competitor_name is required", field="competitor_name")
        if price is None or price <= 0:
            raise PricingValidationError("competitor price must be positive", field="competitor_price")
        try:
            row = self._append(
                product_id,
                CompetitorQuote(competitor_name=competitor_name.strip(), price=to_money(price), url=url),
                scraped_at=scraped_at,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return row

    def latest_competitor_prices(self, product_id: uuid.UUID) -> list[CompetitorPrice]:
        if not self.session.get(Product, product_id):
            raise NotFoundError("product", product_id)
        return latest_competitor_prices(self.session, product_id)

    def _append(self, product_id: uuid.UUID, quote: CompetitorQuote, scraped_at: Optional[datetime] = None) -> CompetitorPrice:
        # Re-read so the difference is computed against the rollup price as of now.
        product = self.session.get(Product, product_id, populate_existing=True)
        if not product:
            raise NotFoundError("product", product_id)

        our_price = product.public_price_incl_tax
        difference = None
        difference_percent = None
        if our_price is not None and our_price > 0:
            difference = quote.price - our_price
            difference_percent = difference / our_price * HUNDRED

        row = CompetitorPrice(
            product_id=product.id,
            competitor_name=quote.competitor_name,
            competitor_price=to_money(quote.price),
            competitor_url=quote.url,
            price_difference=to_money(difference),
            price_difference_percent=to_percent(difference_percent),
            product_ean=product.ean,
            scraped_at=scraped_at or utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return row
