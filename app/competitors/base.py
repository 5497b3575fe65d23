from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class ProductQuery:
    product_id: uuid.UUID
    name: str
    ean: str | None = None


@dataclass(frozen=True)
class CompetitorQuote:
    competitor_name: str
    price: Decimal
    url: str | None = None


class CompetitorCollector(Protocol):
    name: str

    async def fetch_quote(self, query: ProductQuery) -> CompetitorQuote | None:
        ...
