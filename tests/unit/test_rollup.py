import threading
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from app.services.pricing.errors import NotFoundError
from app.services.pricing.rollup import COEFFICIENT_SOURCE, RollupEngine
from app.services.pricing.utils import utcnow


pytestmark = pytest.mark.unit


def test_inactive_higher_priority_offer_is_ignored(test_session, make_product, make_offer):
    product = make_product(ean="3210000000011")
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("10.00"), is_active=False)
    make_offer(product, "COMLANDI", list_price_incl_tax=Decimal("12.00"), stock_qty=5)

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_incl_tax == Decimal("12.00")
    assert result.public_price_source == "COMLANDI"
    assert result.is_available is True
    assert result.available_qty_total == 5


def test_supplier_priority_wins_over_cheaper_offer(test_session, make_product, make_offer):
    product = make_product()
    make_offer(product, "SOFT", list_price_incl_tax=Decimal("8.00"))
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("11.50"))

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_source == "ALKOR"
    assert result.public_price_incl_tax == Decimal("11.50")


def test_zero_list_price_falls_through_to_next_supplier(test_session, make_product, make_offer):
    product = make_product()
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("0"))
    make_offer(product, "SOFT", list_price_incl_tax=Decimal("9.90"))

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_source == "SOFT"
    assert result.public_price_incl_tax == Decimal("9.90")


def test_coefficient_fallback_uses_subfamily_coefficient(test_session, make_product, make_offer, make_coefficient):
    product = make_product(family="ECRITURE", subfamily="STYLOS")
    make_offer(product, "ALKOR", purchase_price_excl_tax=Decimal("4.00"))
    make_coefficient("ECRITURE", None, "1.8")
    make_coefficient("ECRITURE", "STYLOS", "2.5")

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_incl_tax == Decimal("10.00")
    assert result.public_price_source == COEFFICIENT_SOURCE


def test_coefficient_lookup_falls_back_to_family_then_default(test_session, make_product, make_coefficient):
    make_coefficient("PAPIER", None, "1.6")
    engine = RollupEngine(test_session, default_coefficient=Decimal("2.0"))

    assert engine.lookup_coefficient("PAPIER", "RAMETTES") == Decimal("1.6")
    assert engine.lookup_coefficient("CLASSEMENT", "CLASSEURS") == Decimal("2.0")
    assert RollupEngine(test_session).lookup_coefficient("CLASSEMENT", None) is None


def test_purchase_price_without_coefficient_leaves_price_empty(test_session, make_product, make_offer):
    product = make_product(family="INCONNUE")
    make_offer(product, "COMLANDI", purchase_price_excl_tax=Decimal("3.00"), stock_qty=0)

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_incl_tax is None
    assert result.public_price_source is None
    assert result.is_available is False
    assert result.available_qty_total == 0


def test_no_offers_gives_null_price_and_unavailable(test_session, make_product):
    product = make_product(public_price_incl_tax=Decimal("5.00"), public_price_source="ALKOR", is_available=True)

    result = RollupEngine(test_session).recompute_rollup(product.id)

    test_session.refresh(product)
    assert result.offer_count == 0
    assert product.public_price_incl_tax is None
    assert product.public_price_source is None
    assert product.is_available is False
    assert product.available_qty_total == 0
    assert product.rollup_updated_at is not None


def test_undefined_stock_counts_as_available(test_session, make_product, make_offer):
    product = make_product()
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("3.00"), stock_qty=0)
    make_offer(product, "SOFT", list_price_incl_tax=Decimal("3.20"), stock_qty=None)

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.is_available is True
    assert result.available_qty_total == 0


def test_offers_are_shared_across_products_with_same_ean(test_session, make_product, make_offer):
    product = make_product(ean="3020120014234")
    twin = make_product(name="Stylo bille bleu (doublon)", ean="3020120014234")
    make_offer(product, "SOFT", list_price_incl_tax=Decimal("2.40"), stock_qty=4)
    make_offer(twin, "ALKOR", list_price_incl_tax=Decimal("2.10"), stock_qty=6)

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.offer_count == 2
    assert result.public_price_source == "ALKOR"
    assert result.public_price_incl_tax == Decimal("2.10")
    assert result.available_qty_total == 10


def test_own_offer_beats_cross_referenced_offer_of_same_supplier(test_session, make_product, make_offer):
    product = make_product(ean="3020120014999")
    twin = make_product(name="Twin", ean="3020120014999")
    make_offer(twin, "ALKOR", list_price_incl_tax=Decimal("1.00"), last_seen_at=utcnow())
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("1.50"), last_seen_at=utcnow() - timedelta(days=1))

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.public_price_incl_tax == Decimal("1.50")


def test_blank_ean_does_not_cross_reference(test_session, make_product, make_offer):
    product = make_product(ean="")
    other = make_product(name="Other", ean="")
    make_offer(other, "ALKOR", list_price_incl_tax=Decimal("7.00"))

    result = RollupEngine(test_session).recompute_rollup(product.id)

    assert result.offer_count == 0
    assert result.public_price_incl_tax is None


def test_recompute_is_idempotent(test_session, make_product, make_offer):
    product = make_product()
    make_offer(product, "COMLANDI", list_price_incl_tax=Decimal("6.60"), stock_qty=3)
    engine = RollupEngine(test_session)

    first = engine.recompute_rollup(product.id)
    second = engine.recompute_rollup(product.id)

    assert (first.public_price_incl_tax, first.public_price_source, first.is_available, first.available_qty_total) == (
        second.public_price_incl_tax,
        second.public_price_source,
        second.is_available,
        second.available_qty_total,
    )


def test_unknown_product_raises_not_found(test_session):
    with pytest.raises(NotFoundError):
        RollupEngine(test_session).recompute_rollup(uuid.uuid4())


def test_batch_reports_errors_and_continues(test_session, make_product, make_offer):
    product = make_product()
    make_offer(product, "ALKOR", list_price_incl_tax=Decimal("4.00"))
    missing = uuid.uuid4()

    batch = RollupEngine(test_session).recompute_rollups([missing, product.id])

    assert batch.processed == 1
    assert batch.errors == [missing]
    test_session.refresh(product)
    assert product.public_price_incl_tax == Decimal("4.00")


def test_batch_stops_when_cancelled(test_session, make_product):
    products = [make_product(name=f"P{i}") for i in range(3)]
    cancel = threading.Event()
    cancel.set()

    batch = RollupEngine(test_session).recompute_rollups([p.id for p in products], cancel_event=cancel)

    assert batch.cancelled is True
    assert batch.processed == 0


def test_nightly_batch_pages_through_active_products(test_session, make_product, make_offer, pricing_settings):
    pricing_settings.rollup_batch_size = 2
    products = [make_product(name=f"Gomme {i}") for i in range(5)]
    for product in products:
        make_offer(product, "SOFT", list_price_incl_tax=Decimal("1.50"))
    make_product(name="Gomme retiree", is_active=False)
    engine = RollupEngine(test_session)

    assert list(engine.iter_active_product_ids()) == sorted(p.id for p in products)

    batch = engine.recompute_rollups()

    assert batch.processed == 5
    assert batch.errors == []
    for product in products:
        test_session.refresh(product)
        assert product.public_price_incl_tax == Decimal("1.50")
