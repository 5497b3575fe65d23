"""Pytest configuration and fixtures."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from app.db import get_session
from app.models import Base, CategoryCoefficient, CompetitorPrice, PricingRule, Product, SupplierOffer
from app.services.pricing.utils import utcnow
from app.settings import settings


# In-memory SQLite shared by every connection (TestClient runs endpoints in worker threads)
TEST_DATABASE_URL = "sqlite://"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    Fresh schema per test.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """Alias of test_session."""
    yield test_session


@pytest.fixture(autouse=True)
def pricing_settings(monkeypatch):
    """Deterministic settings regardless of the local .env."""
    monkeypatch.setattr(settings, "supplier_priority", ["ALKOR", "COMLANDI", "SOFT"])
    monkeypatch.setattr(settings, "default_price_coefficient", None)
    monkeypatch.setattr(settings, "ghost_offer_threshold_days", {"ALKOR": 3, "COMLANDI": 3, "SOFT": 8})
    monkeypatch.setattr(settings, "rollup_batch_size", 500)
    monkeypatch.setattr(settings, "pricing_min_change_percent", Decimal("0.5"))
    monkeypatch.setattr(settings, "default_max_price_change_percent", Decimal("10"))
    monkeypatch.setattr(settings, "competitor_price_max_age_days", 30)
    monkeypatch.setattr(settings, "competitor_prices_include_tax", True)
    monkeypatch.setattr(settings, "competitor_request_sleep", 0.0)
    monkeypatch.setattr(settings, "competitor_sources", [])
    monkeypatch.setattr(settings, "alert_competitor_lower_threshold_percent", Decimal("5"))
    monkeypatch.setattr(settings, "alert_opportunity_threshold_percent", Decimal("15"))
    monkeypatch.setattr(settings, "alert_min_margin_percent", Decimal("15"))
    monkeypatch.setattr(settings, "auto_apply_actor", "system:auto-approve")
    yield settings


@pytest.fixture
def make_product(test_session: Session):
    def _make(**kwargs) -> Product:
        values = {
            "name": "Stylo bille bleu",
            "tax_rate": Decimal("20.00"),
            "is_active": True,
        }
        values.update(kwargs)
        product = Product(**values)
        test_session.add(product)
        test_session.commit()
        return product

    return _make


@pytest.fixture
def make_offer(test_session: Session):
    def _make(product: Product, supplier: str, **kwargs) -> SupplierOffer:
        values = {
            "supplier": supplier,
            "product_id": product.id,
            "supplier_product_id": f"{supplier}-{str(product.id)[:8]}",
            "tax_rate": Decimal("20.00"),
            "min_order_qty": 1,
            "is_active": True,
            "last_seen_at": utcnow(),
        }
        values.update(kwargs)
        offer = SupplierOffer(**values)
        test_session.add(offer)
        test_session.commit()
        return offer

    return _make


@pytest.fixture
def make_coefficient(test_session: Session):
    def _make(family: str, subfamily: str | None, coefficient: str) -> CategoryCoefficient:
        row = CategoryCoefficient(family=family, subfamily=subfamily, coefficient=Decimal(coefficient))
        test_session.add(row)
        test_session.commit()
        return row

    return _make


@pytest.fixture
def make_rule(test_session: Session):
    counter = {"n": 0}

    def _make(**kwargs) -> PricingRule:
        counter["n"] += 1
        values = {
            "name": f"rule-{counter['n']}",
            "strategy": "margin_target",
            "min_competitor_count": 1,
            "require_approval": True,
            "priority": 100,
            "is_active": True,
            # Distinct creation times keep the (priority, created_at) order deterministic
            "created_at": utcnow() + timedelta(microseconds=counter["n"]),
        }
        values.update(kwargs)
        rule = PricingRule(**values)
        test_session.add(rule)
        test_session.commit()
        return rule

    return _make


@pytest.fixture
def make_competitor_price(test_session: Session):
    def _make(product: Product, competitor_name: str, price: str, age_days: float = 0) -> CompetitorPrice:
        row = CompetitorPrice(
            product_id=product.id,
            competitor_name=competitor_name,
            competitor_price=Decimal(price),
            scraped_at=utcnow() - timedelta(days=age_days),
        )
        test_session.add(row)
        test_session.commit()
        return row

    return _make


@pytest.fixture
def client(test_session: Session):
    from app.main import app

    def _override_session():
        yield test_session

    app.dependency_overrides[get_session] = _override_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def pytest_configure(config):
    """Register test markers."""
    config.addinivalue_line("markers", "unit: unit tests (in-memory DB at most)")
    config.addinivalue_line("markers", "integration: integration tests (API / full pipeline)")
    config.addinivalue_line("markers", "slow: slow tests")
