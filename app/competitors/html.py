from __future__ import annotations

import asyncio
import logging
import re
from decimal import Decimal, InvalidOperation
from urllib.parse import quote_plus, urljoin

import httpx
from bs4 import BeautifulSoup
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.competitors.base import CompetitorQuote, ProductQuery
from app.settings import settings


logger = logging.getLogger(__name__)

_PRICE_RE = re.compile(r"(\d{1,3}(?:[  .]\d{3})*(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?)")


def parse_price(text: str | None) -> Decimal | None:
    """
    Extracts the first price from a display string such as "12,50 €",
    "1 234,56 EUR" or "€12.50".
    """
    if not text:
        return None
    match = _PRICE_RE.search(text.replace(" ", " "))
    if not match:
        return None
    raw = match.group(1).replace(" ", "").replace(" ", "")
    if "," in raw:
        raw = raw.replace(".", "").replace(",", ".")
    elif raw.count(".") > 1 or re.search(r"\.\d{3}$", raw):
        raw = raw.replace(".", "")
    try:
        price = Decimal(raw)
    except InvalidOperation:
        return None
    return price if price > 0 else None


class HtmlCompetitorCollector:
    """
    Looks a product up on a competitor's search page and reads the first price
    matched by a CSS selector. The query is the EAN when known, else the name.
    """

    def __init__(
        self,
        name: str,
        search_url: str,
        price_selector: str,
        link_selector: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.search_url = search_url
        self.price_selector = price_selector
        self.link_selector = link_selector
        self._client = client
        self.headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "fr-FR,fr;q=0.9,en;q=0.7",
        }

    def build_url(self, query: ProductQuery) -> str:
        term = quote_plus((query.ean or query.name or "").strip())
        if "{query}" in self.search_url:
            return self.search_url.replace("{query}", term)
        return f"{self.search_url}{term}"

    async def fetch_quote(self, query: ProductQuery) -> CompetitorQuote | None:
        url = self.build_url(query)
        html = await self._fetch_html(url)
        if settings.competitor_request_sleep:
            await asyncio.sleep(settings.competitor_request_sleep)
        if not html:
            return None

        soup = BeautifulSoup(html, "html.parser")
        node = soup.select_one(self.price_selector)
        if node is None:
            logger.info(f"[{self.name}] No price element ({self.price_selector}) for product {query.product_id}")
            return None

        price = parse_price(node.get("content") or node.get_text(" ", strip=True))
        if price is None:
            logger.warning(f"[{self.name}] Unparseable price '{node.get_text(strip=True)}' (url={url})")
            return None

        product_url = url
        if self.link_selector:
            link = soup.select_one(self.link_selector)
            href = (link.get("href") or "").strip() if link is not None else ""
            if href:
                product_url = urljoin(url, href)

        return CompetitorQuote(competitor_name=self.name, price=price, url=product_url)

    @retry(
        stop=stop_after_attempt(settings.competitor_retry_count),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TransportError, RuntimeError)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Competitor fetch retry ({retry_state.attempt_number}): {retry_state.outcome.exception()}"
        ),
    )
    async def _fetch_html(self, url: str) -> str | None:
        if self._client is not None:
            resp = await self._client.get(url, headers=self.headers, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=settings.competitor_http_timeout) as client:
                resp = await client.get(url, headers=self.headers, follow_redirects=True)

        if resp.status_code == 429 or resp.status_code >= 500:
            # 429 / 5xx are retried
            raise RuntimeError(f"HTTP {resp.status_code} from {self.name} (url={url})")
        if resp.status_code != 200:
            logger.error(f"[{self.name}] Search page failed: HTTP {resp.status_code} (url={url})")
            return None
        return resp.text or ""
