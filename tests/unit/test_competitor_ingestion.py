import uuid
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from app.competitors.base import ProductQuery
from app.competitors.collector_factory import get_competitor_collector, get_competitor_collectors
from app.competitors.html import HtmlCompetitorCollector, parse_price
from app.competitors.static import StaticCompetitorCollector
from app.models import CompetitorPrice
from app.services.pricing.competitor_ingestion import CompetitorIngestionService, latest_competitor_prices
from app.services.pricing.errors import NotFoundError, PricingValidationError
from app.services.pricing.utils import utcnow


pytestmark = pytest.mark.unit

EAN = "3020120014234"

SEARCH_PAGE = """
<html><body>
  <div class="product">
    <a class="title" href="/p/stylo-bille-bleu-123">Stylo bille bleu</a>
    <span class="price">2,49&nbsp;€</span>
  </div>
</body></html>
"""


class BrokenCollector:
    name = "Broken"

    async def fetch_quote(self, query):
        raise httpx.ConnectError("connection refused")


def _rows(session):
    return session.execute(select(CompetitorPrice)).scalars().all()


@pytest.mark.parametrize(
    "text,expected",
    [
        ("12,50 €", Decimal("12.50")),
        ("1 234,56 EUR", Decimal("1234.56")),
        ("€12.50", Decimal("12.50")),
        ("Prix : 3,9 €", Decimal("3.9")),
        ("0,00 €", None),
        ("gratuit", None),
        (None, None),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


@pytest.mark.asyncio
async def test_static_collector_matches_ean_then_product_id():
    product_id = uuid.uuid4()
    collector = StaticCompetitorCollector("Cultura", {EAN: "4.10", str(product_id): "5.00"})

    by_ean = await collector.fetch_quote(ProductQuery(product_id=uuid.uuid4(), name="x", ean=EAN))
    by_id = await collector.fetch_quote(ProductQuery(product_id=product_id, name="x"))
    unknown = await collector.fetch_quote(ProductQuery(product_id=uuid.uuid4(), name="x"))

    assert by_ean.price == Decimal("4.10")
    assert by_id.price == Decimal("5.00")
    assert unknown is None


@pytest.mark.asyncio
async def test_ingest_appends_snapshot_with_difference(test_session, make_product):
    product = make_product(ean=EAN, public_price_incl_tax=Decimal("10.00"))
    service = CompetitorIngestionService(
        test_session,
        collectors=[StaticCompetitorCollector("Cultura", {EAN: "9.00"}), StaticCompetitorCollector("Amazon", {})],
    )

    summary = await service.ingest_competitor_prices([product.id])

    assert summary == {"scraped": 1, "failed": 0, "products": 1, "missing": []}
    row = _rows(test_session)[0]
    assert row.competitor_name == "Cultura"
    assert row.competitor_price == Decimal("9.00")
    assert row.price_difference == Decimal("-1.00")
    assert row.price_difference_percent == Decimal("-10.00")
    assert row.product_ean == EAN


@pytest.mark.asyncio
async def test_ingest_without_public_price_leaves_difference_empty(test_session, make_product):
    product = make_product(ean=EAN)
    service = CompetitorIngestionService(test_session, collectors=[StaticCompetitorCollector("Cultura", {EAN: "9.00"})])

    await service.ingest_competitor_prices([product.id])

    row = _rows(test_session)[0]
    assert row.price_difference is None
    assert row.price_difference_percent is None


@pytest.mark.asyncio
async def test_ingest_counts_failures_and_unknown_products(test_session, make_product):
    product = make_product(ean=EAN)
    missing = uuid.uuid4()
    service = CompetitorIngestionService(
        test_session,
        collectors=[BrokenCollector(), StaticCompetitorCollector("Cultura", {EAN: "9.00"})],
    )

    summary = await service.ingest_competitor_prices([product.id, missing])

    assert summary["scraped"] == 1
    assert summary["failed"] == 1
    assert summary["missing"] == [str(missing)]


@pytest.mark.asyncio
async def test_snapshots_are_append_only(test_session, make_product):
    product = make_product(ean=EAN, public_price_incl_tax=Decimal("10.00"))
    await CompetitorIngestionService(
        test_session, collectors=[StaticCompetitorCollector("Cultura", {EAN: "9.00"})]
    ).ingest_competitor_prices([product.id])

    product.public_price_incl_tax = Decimal("8.00")
    test_session.commit()
    await CompetitorIngestionService(
        test_session, collectors=[StaticCompetitorCollector("Cultura", {EAN: "9.20"})]
    ).ingest_competitor_prices([product.id])

    rows = sorted(_rows(test_session), key=lambda r: r.competitor_price)
    assert [r.competitor_price for r in rows] == [Decimal("9.00"), Decimal("9.20")]
    # The first snapshot keeps the difference computed against 10.00
    assert rows[0].price_difference == Decimal("-1.00")
    assert rows[1].price_difference == Decimal("1.20")

    latest = CompetitorIngestionService(test_session, collectors=[]).latest_competitor_prices(product.id)
    assert [r.competitor_price for r in latest] == [Decimal("9.20")]


def test_latest_price_per_competitor_across_history(test_session, make_product, make_competitor_price):
    product = make_product()
    for age_days, price in [(20, "3.10"), (10, "2.95"), (2, "2.80")]:
        make_competitor_price(product, "Cultura", price, age_days=age_days)
    make_competitor_price(product, "Amazon", "2.60", age_days=50)
    make_competitor_price(product, "Amazon", "2.70", age_days=40)
    make_competitor_price(product, "Bureau Vallee", "3.00", age_days=5)
    make_competitor_price(make_product(name="Autre"), "Cultura", "1.00")

    latest = latest_competitor_prices(test_session, product.id)
    assert [(r.competitor_name, r.competitor_price) for r in latest] == [
        ("Amazon", Decimal("2.70")),
        ("Bureau Vallee", Decimal("3.00")),
        ("Cultura", Decimal("2.80")),
    ]

    # Amazon's newest snapshot is 40 days old
    fresh = latest_competitor_prices(test_session, product.id, since=utcnow() - timedelta(days=30))
    assert [r.competitor_name for r in fresh] == ["Bureau Vallee", "Cultura"]


def test_record_competitor_price(test_session, make_product):
    product = make_product(public_price_incl_tax=Decimal("5.00"))
    service = CompetitorIngestionService(test_session, collectors=[])

    row = service.record_competitor_price(product.id, " Bureau Vallee ", Decimal("4.5"), url="https://bv.example/p/1")

    assert row.competitor_name == "Bureau Vallee"
    assert row.competitor_price == Decimal("4.50")
    assert row.price_difference == Decimal("-0.50")
    assert row.competitor_url == "https://bv.example/p/1"


def test_record_competitor_price_rejects_bad_input(test_session, make_product):
    product = make_product()
    service = CompetitorIngestionService(test_session, collectors=[])

    with pytest.raises(PricingValidationError):
        service.record_competitor_price(product.id, "", Decimal("4.50"))
    with pytest.raises(PricingValidationError):
        service.record_competitor_price(product.id, "Cultura", Decimal("0"))
    with pytest.raises(NotFoundError):
        service.record_competitor_price(uuid.uuid4(), "Cultura", Decimal("4.50"))
    with pytest.raises(NotFoundError):
        service.latest_competitor_prices(uuid.uuid4())
    assert _rows(test_session) == []


@pytest.mark.asyncio
async def test_html_collector_reads_price_and_link():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, text=SEARCH_PAGE)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        collector = HtmlCompetitorCollector(
            "Shop",
            "https://shop.example/search?q={query}",
            price_selector=".product .price",
            link_selector=".product a.title",
            client=client,
        )
        quote = await collector.fetch_quote(ProductQuery(product_id=uuid.uuid4(), name="Stylo", ean=EAN))

    assert seen == [f"https://shop.example/search?q={EAN}"]
    assert quote.competitor_name == "Shop"
    assert quote.price == Decimal("2.49")
    assert quote.url == "https://shop.example/p/stylo-bille-bleu-123"


@pytest.mark.asyncio
async def test_html_collector_prefers_content_attribute():
    page = '<html><head><meta itemprop="price" content="4.20"></head><body>4,50 €</body></html>'

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text=page))) as client:
        collector = HtmlCompetitorCollector("Shop", "https://shop.example/s?q=", 'meta[itemprop="price"]', client=client)
        quote = await collector.fetch_quote(ProductQuery(product_id=uuid.uuid4(), name="Agenda 2026"))

    assert quote.price == Decimal("4.20")
    assert quote.url == "https://shop.example/s?q=Agenda+2026"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body",
    [(404, "not found"), (200, "<html><body>Aucun résultat</body></html>")],
)
async def test_html_collector_returns_none_without_price(status, body):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status, text=body))) as client:
        collector = HtmlCompetitorCollector("Shop", "https://shop.example/search?q={query}", ".price", client=client)
        quote = await collector.fetch_quote(ProductQuery(product_id=uuid.uuid4(), name="Stylo", ean=EAN))

    assert quote is None


def test_collector_factory_builds_configured_sources(pricing_settings):
    pricing_settings.competitor_sources = [
        {"type": "static", "name": "Cultura", "prices": {EAN: "3.00"}},
        {"name": "Shop", "search_url": "https://shop.example/search?q=", "price_selector": ".price"},
    ]

    collectors = get_competitor_collectors()

    assert [type(c) for c in collectors] == [StaticCompetitorCollector, HtmlCompetitorCollector]
    assert [c.name for c in collectors] == ["Cultura", "Shop"]
    assert isinstance(get_competitor_collector({"type": "STATIC", "name": "X"}), StaticCompetitorCollector)
    assert get_competitor_collectors([]) == []
