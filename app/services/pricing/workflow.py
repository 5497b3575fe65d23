import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import AdjustmentStatus, PriceAdjustment, PriceChangeLog, Product
from app.services.pricing.errors import ConflictError, NotFoundError, PricingValidationError
from app.services.pricing.utils import excl_to_incl, to_money, utcnow

logger = logging.getLogger(__name__)

MANUAL_APPROVAL = "MANUAL_APPROVAL"
AUTO_APPROVAL = "AUTO_APPROVAL"
ROLLBACK = "ROLLBACK"


class AdjustmentWorkflow:
    """
    Moves price adjustments through pending -> applied or pending -> rejected,
    and rolls applied price changes back from the change log.

    Every transition is a conditional UPDATE on the current status, so when
    two reviewers act on the same adjustment exactly one of them wins and the
    other gets a ConflictError. Approval writes the product price in the same
    transaction; if anything fails the adjustment stays pending.
    """

    def __init__(self, session: Session):
        self.session = session

    def approve_adjustment(self, adjustment_id: uuid.UUID, actor: str, source: str = MANUAL_APPROVAL) -> PriceAdjustment:
        self._require_actor(actor)
        now = utcnow()
        try:
            self._transition(
                adjustment_id,
                AdjustmentStatus.PENDING,
                AdjustmentStatus.APPROVED,
                "approve",
                applied_by=actor,
                applied_at=now,
            )
            adjustment = self.session.get(PriceAdjustment, adjustment_id, populate_existing=True)
            self._write_product_price(adjustment, actor, source)
            self._transition(adjustment_id, AdjustmentStatus.APPROVED, AdjustmentStatus.APPLIED, "apply")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        adjustment = self.session.get(PriceAdjustment, adjustment_id, populate_existing=True)
        logger.info(
            f"[AdjustmentWorkflow] Applied adjustment {adjustment_id} by {actor}: "
            f"{adjustment.old_price_excl_tax} -> {adjustment.new_price_excl_tax}"
        )
        return adjustment

    def reject_adjustment(self, adjustment_id: uuid.UUID, actor: str) -> PriceAdjustment:
        self._require_actor(actor)
        try:
            self._transition(
                adjustment_id,
                AdjustmentStatus.PENDING,
                AdjustmentStatus.REJECTED,
                "reject",
                rejected_by=actor,
                rejected_at=utcnow(),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"[AdjustmentWorkflow] Rejected adjustment {adjustment_id} by {actor}")
        return self.session.get(PriceAdjustment, adjustment_id, populate_existing=True)

    def list_adjustments(
        self,
        status: Optional[str] = None,
        product_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> list[PriceAdjustment]:
        stmt = select(PriceAdjustment)
        if status:
            if status not in {s.value for s in AdjustmentStatus}:
                raise PricingValidationError(f"unknown adjustment status '{status}'", field="status")
            stmt = stmt.where(PriceAdjustment.status == status)
        if product_id:
            stmt = stmt.where(PriceAdjustment.product_id == product_id)
        stmt = stmt.order_by(PriceAdjustment.created_at.desc(), PriceAdjustment.id.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def get_adjustment(self, adjustment_id: uuid.UUID) -> PriceAdjustment:
        adjustment = self.session.get(PriceAdjustment, adjustment_id)
        if not adjustment:
            raise NotFoundError("price_adjustment", adjustment_id)
        return adjustment

    def rollback_price_change(self, log_id: uuid.UUID, actor: str) -> PriceChangeLog:
        """
        Restores the price a change log row replaced and appends the inverse
        row. The adjustment that produced the change keeps its terminal status.
        Refusals are ConflictErrors whose `current` is rollback, rolled_back
        or superseded (the product price changed again since).
        """
        self._require_actor(actor)
        try:
            log = self.session.get(PriceChangeLog, log_id)
            if not log:
                raise NotFoundError("price_change_log", log_id)
            if log.is_rollback:
                raise ConflictError("price_change_log", log_id, "rollback", "rollback")
            if self._rolled_back(log_id):
                raise ConflictError("price_change_log", log_id, "rolled_back", "rollback")
            if log.old_price_excl_tax is None or log.old_price_excl_tax <= 0:
                raise PricingValidationError(
                    f"price change {log_id} has no previous price to restore", field="old_price_excl_tax"
                )

            product = self.session.get(Product, log.product_id, with_for_update=True, populate_existing=True)
            if not product:
                raise NotFoundError("product", log.product_id)
            if product.price_excl_tax != log.new_price_excl_tax:
                raise ConflictError("price_change_log", log_id, "superseded", "rollback")

            product.price_excl_tax = log.old_price_excl_tax
            product.price_incl_tax = to_money(excl_to_incl(log.old_price_excl_tax, product.tax_rate))
            product.updated_at = utcnow()
            inverse = PriceChangeLog(
                product_id=product.id,
                adjustment_id=log.adjustment_id,
                old_price_excl_tax=log.new_price_excl_tax,
                new_price_excl_tax=log.old_price_excl_tax,
                source=ROLLBACK,
                applied_by=actor,
                is_rollback=True,
                rollback_of=log.id,
                created_at=utcnow(),
            )
            self.session.add(inverse)
            self.session.commit()
        except IntegrityError:
            # unique rollback_of: someone else rolled this row back first
            self.session.rollback()
            raise ConflictError("price_change_log", log_id, "rolled_back", "rollback")
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"[AdjustmentWorkflow] Rolled back price change {log_id} by {actor}: "
            f"{inverse.old_price_excl_tax} -> {inverse.new_price_excl_tax}"
        )
        return inverse

    def list_price_changes(self, product_id: Optional[uuid.UUID] = None, limit: int = 100) -> list[PriceChangeLog]:
        stmt = select(PriceChangeLog)
        if product_id:
            stmt = stmt.where(PriceChangeLog.product_id == product_id)
        stmt = stmt.order_by(PriceChangeLog.created_at.desc(), PriceChangeLog.id.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def _rolled_back(self, log_id: uuid.UUID) -> bool:
        return self.session.execute(
            select(PriceChangeLog.id).where(PriceChangeLog.rollback_of == log_id)
        ).first() is not None

    def _transition(
        self,
        adjustment_id: uuid.UUID,
        expected: AdjustmentStatus,
        target: AdjustmentStatus,
        requested: str,
        **values,
    ) -> None:
        result = self.session.execute(
            update(PriceAdjustment)
            .where(PriceAdjustment.id == adjustment_id, PriceAdjustment.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = self.session.execute(
            select(PriceAdjustment.status).where(PriceAdjustment.id == adjustment_id)
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError("price_adjustment", adjustment_id)
        logger.warning(f"[AdjustmentWorkflow] Refused to {requested} adjustment {adjustment_id}: status is {current}")
        raise ConflictError("price_adjustment", adjustment_id, current, requested)

    def _write_product_price(self, adjustment: PriceAdjustment, actor: str, source: str) -> None:
        product = self.session.get(Product, adjustment.product_id, with_for_update=True)
        if not product:
            raise NotFoundError("product", adjustment.product_id)

        if adjustment.new_price_excl_tax is None or adjustment.new_price_excl_tax <= 0:
            raise PricingValidationError(
                f"refusing to write non-positive price {adjustment.new_price_excl_tax} on product {product.id}",
                field="new_price_excl_tax",
            )

        old_price = product.price_excl_tax
        product.price_excl_tax = adjustment.new_price_excl_tax
        product.price_incl_tax = to_money(excl_to_incl(adjustment.new_price_excl_tax, product.tax_rate))
        product.updated_at = utcnow()

        self.session.add(
            PriceChangeLog(
                product_id=product.id,
                adjustment_id=adjustment.id,
                old_price_excl_tax=old_price,
                new_price_excl_tax=adjustment.new_price_excl_tax,
                source=source,
                applied_by=actor,
                created_at=utcnow(),
            )
        )
        self.session.flush()

    @staticmethod
    def _require_actor(actor: str) -> None:
        if not actor or not actor.strip():
            raise PricingValidationError("actor is required", field="actor")
