import threading
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

from app.models import Base, PriceAdjustment, PriceChangeLog, Product
from app.services.pricing.errors import ConflictError, NotFoundError, PricingValidationError
from app.services.pricing.utils import utcnow
from app.services.pricing.workflow import MANUAL_APPROVAL, ROLLBACK, AdjustmentWorkflow


pytestmark = pytest.mark.unit


def _adjustment(product: Product, new_price: str = "11.00", **kwargs) -> PriceAdjustment:
    values = {
        "product_id": product.id,
        "strategy": "margin_target",
        "old_price_excl_tax": product.price_excl_tax,
        "new_price_excl_tax": Decimal(new_price),
        "price_change_percent": Decimal("10.00"),
        "reason": "[test] margin_target: target margin",
        "status": "pending",
        "created_at": utcnow(),
    }
    values.update(kwargs)
    return PriceAdjustment(**values)


@pytest.fixture
def make_adjustment(test_session):
    def _make(product: Product, new_price: str = "11.00", **kwargs) -> PriceAdjustment:
        adjustment = _adjustment(product, new_price, **kwargs)
        test_session.add(adjustment)
        test_session.commit()
        return adjustment

    return _make


@pytest.fixture
def product(make_product):
    return make_product(price_excl_tax=Decimal("10.00"), tax_rate=Decimal("20.00"))


def test_approve_writes_price_and_change_log(test_session, product, make_adjustment):
    adjustment = make_adjustment(product)

    result = AdjustmentWorkflow(test_session).approve_adjustment(adjustment.id, "alice")

    assert result.status == "applied"
    assert result.applied_by == "alice"
    assert result.applied_at is not None
    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("11.00")
    assert product.price_incl_tax == Decimal("13.20")

    log = test_session.execute(select(PriceChangeLog)).scalars().one()
    assert log.adjustment_id == adjustment.id
    assert log.old_price_excl_tax == Decimal("10.00")
    assert log.new_price_excl_tax == Decimal("11.00")
    assert log.source == MANUAL_APPROVAL
    assert log.applied_by == "alice"


def test_reject_leaves_price_untouched(test_session, product, make_adjustment):
    adjustment = make_adjustment(product)

    result = AdjustmentWorkflow(test_session).reject_adjustment(adjustment.id, "bob")

    assert result.status == "rejected"
    assert result.rejected_by == "bob"
    assert result.rejected_at is not None
    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("10.00")
    assert test_session.execute(select(PriceChangeLog)).scalars().all() == []


@pytest.mark.parametrize("first", ["approve", "reject"])
def test_second_decision_is_a_conflict(test_session, product, make_adjustment, first):
    adjustment = make_adjustment(product)
    workflow = AdjustmentWorkflow(test_session)
    getattr(workflow, f"{first}_adjustment")(adjustment.id, "alice")

    with pytest.raises(ConflictError) as excinfo:
        workflow.approve_adjustment(adjustment.id, "bob")

    assert excinfo.value.current == ("applied" if first == "approve" else "rejected")
    assert excinfo.value.requested == "approve"
    assert len(test_session.execute(select(PriceChangeLog)).scalars().all()) == (1 if first == "approve" else 0)


def test_unknown_adjustment_is_not_found(test_session):
    with pytest.raises(NotFoundError):
        AdjustmentWorkflow(test_session).approve_adjustment(uuid.uuid4(), "alice")
    with pytest.raises(NotFoundError):
        AdjustmentWorkflow(test_session).get_adjustment(uuid.uuid4())


@pytest.mark.parametrize("actor", ["", "   "])
def test_actor_is_required(test_session, product, make_adjustment, actor):
    adjustment = make_adjustment(product)

    with pytest.raises(PricingValidationError) as excinfo:
        AdjustmentWorkflow(test_session).approve_adjustment(adjustment.id, actor)

    assert excinfo.value.field == "actor"
    test_session.refresh(adjustment)
    assert adjustment.status == "pending"


def test_failed_price_write_keeps_adjustment_pending(test_session, product, make_adjustment, monkeypatch):
    adjustment = make_adjustment(product)

    def _boom(self, adjustment, actor, source):
        raise RuntimeError("database went away")

    monkeypatch.setattr(AdjustmentWorkflow, "_write_product_price", _boom)

    with pytest.raises(RuntimeError):
        AdjustmentWorkflow(test_session).approve_adjustment(adjustment.id, "alice")

    stored = test_session.get(PriceAdjustment, adjustment.id, populate_existing=True)
    assert stored.status == "pending"
    assert stored.applied_by is None
    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("10.00")


def test_concurrent_approvals_apply_exactly_once(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False)

    with Session() as setup:
        product = Product(name="Classeur A4", price_excl_tax=Decimal("10.00"), tax_rate=Decimal("20.00"))
        setup.add(product)
        setup.flush()
        adjustment = _adjustment(product)
        setup.add(adjustment)
        setup.commit()
        adjustment_id = adjustment.id

    first, second = Session(), Session()
    try:
        # Both reviewers see the adjustment as pending before either acts.
        assert first.get(PriceAdjustment, adjustment_id).status == "pending"
        assert second.get(PriceAdjustment, adjustment_id).status == "pending"

        AdjustmentWorkflow(first).approve_adjustment(adjustment_id, "alice")
        with pytest.raises(ConflictError) as excinfo:
            AdjustmentWorkflow(second).approve_adjustment(adjustment_id, "bob")
        assert excinfo.value.current == "applied"

        logs = second.execute(select(PriceChangeLog)).scalars().all()
        assert [log.applied_by for log in logs] == ["alice"]
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_list_adjustments_filters_and_orders(test_session, product, make_product, make_adjustment):
    other = make_product(name="Agenda 2026", price_excl_tax=Decimal("8.00"))
    now = utcnow()
    oldest = make_adjustment(product, created_at=now - timedelta(minutes=2))
    newest = make_adjustment(product, "10.50", created_at=now)
    rejected = make_adjustment(other, "8.40", status="rejected", created_at=now - timedelta(minutes=1))
    workflow = AdjustmentWorkflow(test_session)

    assert [a.id for a in workflow.list_adjustments()] == [newest.id, rejected.id, oldest.id]
    assert [a.id for a in workflow.list_adjustments(status="pending")] == [newest.id, oldest.id]
    assert [a.id for a in workflow.list_adjustments(product_id=other.id)] == [rejected.id]
    assert len(workflow.list_adjustments(limit=1)) == 1

    with pytest.raises(PricingValidationError):
        workflow.list_adjustments(status="archived")


def test_concurrent_approvals_from_two_threads(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'threads.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # BEGIN IMMEDIATE: the second writer waits for the lock instead of failing with "database is locked"
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False)

    with Session() as setup:
        product = Product(name="Trieur 12 cases", price_excl_tax=Decimal("10.00"), tax_rate=Decimal("20.00"))
        setup.add(product)
        setup.flush()
        adjustment = _adjustment(product)
        setup.add(adjustment)
        setup.commit()
        adjustment_id = adjustment.id

    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def _approve(actor: str) -> None:
        session = Session()
        try:
            barrier.wait(timeout=10)
            AdjustmentWorkflow(session).approve_adjustment(adjustment_id, actor)
            outcomes[actor] = "applied"
        except ConflictError as e:
            outcomes[actor] = e
        except Exception as e:
            outcomes[actor] = repr(e)
        finally:
            session.close()

    threads = [threading.Thread(target=_approve, args=(actor,)) for actor in ("alice", "bob")]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted("conflict" if isinstance(o, ConflictError) else o for o in outcomes.values()) == ["applied", "conflict"]
        winner = next(actor for actor, o in outcomes.items() if o == "applied")
        loser = next(o for o in outcomes.values() if isinstance(o, ConflictError))
        assert loser.current == "applied"

        with Session() as check:
            assert check.get(PriceAdjustment, adjustment_id).applied_by == winner
            logs = check.execute(select(PriceChangeLog)).scalars().all()
            assert [log.applied_by for log in logs] == [winner]
            assert check.get(Product, product.id).price_excl_tax == Decimal("11.00")
    finally:
        engine.dispose()


@pytest.fixture
def applied_change(test_session, product, make_adjustment):
    adjustment = make_adjustment(product)
    AdjustmentWorkflow(test_session).approve_adjustment(adjustment.id, "alice")
    return test_session.execute(select(PriceChangeLog)).scalars().one()


def test_rollback_restores_previous_price(test_session, product, applied_change):
    inverse = AdjustmentWorkflow(test_session).rollback_price_change(applied_change.id, "carol")

    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("10.00")
    assert product.price_incl_tax == Decimal("12.00")

    assert inverse.is_rollback is True
    assert inverse.rollback_of == applied_change.id
    assert inverse.source == ROLLBACK
    assert inverse.applied_by == "carol"
    assert (inverse.old_price_excl_tax, inverse.new_price_excl_tax) == (Decimal("11.00"), Decimal("10.00"))
    assert inverse.adjustment_id == applied_change.adjustment_id

    # The originating adjustment keeps its terminal status, the original log row is untouched
    adjustment = test_session.get(PriceAdjustment, applied_change.adjustment_id, populate_existing=True)
    assert adjustment.status == "applied"
    test_session.refresh(applied_change)
    assert applied_change.is_rollback is False
    assert len(AdjustmentWorkflow(test_session).list_price_changes(product_id=product.id)) == 2


def test_rollback_twice_is_a_conflict(test_session, applied_change):
    workflow = AdjustmentWorkflow(test_session)
    inverse = workflow.rollback_price_change(applied_change.id, "carol")

    with pytest.raises(ConflictError) as excinfo:
        workflow.rollback_price_change(applied_change.id, "dave")
    assert excinfo.value.current == "rolled_back"

    with pytest.raises(ConflictError) as excinfo:
        workflow.rollback_price_change(inverse.id, "dave")
    assert excinfo.value.current == "rollback"


def test_rollback_of_superseded_change_is_refused(test_session, product, applied_change, make_adjustment):
    later = make_adjustment(product, "12.00", old_price_excl_tax=Decimal("11.00"))
    workflow = AdjustmentWorkflow(test_session)
    workflow.approve_adjustment(later.id, "alice")

    with pytest.raises(ConflictError) as excinfo:
        workflow.rollback_price_change(applied_change.id, "carol")

    assert excinfo.value.current == "superseded"
    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("12.00")


def test_rollback_validation(test_session, product, applied_change):
    workflow = AdjustmentWorkflow(test_session)
    first_price = PriceChangeLog(
        product_id=product.id,
        old_price_excl_tax=None,
        new_price_excl_tax=Decimal("11.00"),
        source=MANUAL_APPROVAL,
        applied_by="import",
        created_at=utcnow(),
    )
    test_session.add(first_price)
    test_session.commit()

    with pytest.raises(NotFoundError):
        workflow.rollback_price_change(uuid.uuid4(), "carol")
    with pytest.raises(PricingValidationError) as excinfo:
        workflow.rollback_price_change(applied_change.id, " ")
    assert excinfo.value.field == "actor"
    with pytest.raises(PricingValidationError) as excinfo:
        workflow.rollback_price_change(first_price.id, "carol")
    assert excinfo.value.field == "old_price_excl_tax"


def test_non_positive_price_is_never_written(test_session, product, make_adjustment):
    adjustment = make_adjustment(product, "-1.00")

    with pytest.raises(PricingValidationError):
        AdjustmentWorkflow(test_session).approve_adjustment(adjustment.id, "alice")

    test_session.refresh(adjustment)
    assert adjustment.status == "pending"
    test_session.refresh(product)
    assert product.price_excl_tax == Decimal("10.00")
