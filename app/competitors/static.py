from __future__ import annotations

from decimal import Decimal

from app.competitors.base import CompetitorQuote, ProductQuery
from app.services.pricing.utils import to_money


class StaticCompetitorCollector:
    """
    Serves manually supplied quotes, keyed by EAN or product id.
    """

    def __init__(self, name: str, prices: dict[str, Decimal | str | float], url: str | None = None) -> None:
        self.name = name
        self.url = url
        self._prices = {str(key).strip(): to_money(value) for key, value in prices.items()}

    async def fetch_quote(self, query: ProductQuery) -> CompetitorQuote | None:
        price = None
        if query.ean:
            price = self._prices.get(query.ean.strip())
        if price is None:
            price = self._prices.get(str(query.product_id))
        if price is None or price <= 0:
            return None
        return CompetitorQuote(competitor_name=self.name, price=price, url=self.url)
