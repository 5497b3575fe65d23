from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import func, select, text
import logging

from app.db import get_session
from app.models import AdjustmentStatus, PriceAdjustment, PricingAlert, Product

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/system")
def get_system_health(session: Session = Depends(get_session)):
    """
    Database connectivity check.
    """
    db_ok = False
    try:
        session.execute(text("SELECT 1")).scalar()
        db_ok = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "database": "ok" if db_ok else "error",
    }


@router.get("/pricing")
def get_pricing_health(session: Session = Depends(get_session)):
    """
    Backlog counters for the pricing pipeline: products the rollup could not
    price, adjustments awaiting review, unresolved alerts.
    """
    unpriced = session.execute(
        select(func.count(Product.id)).where(
            Product.is_active.is_(True),
            Product.public_price_incl_tax.is_(None),
        )
    ).scalar()
    pending = session.execute(
        select(func.count(PriceAdjustment.id)).where(PriceAdjustment.status == AdjustmentStatus.PENDING.value)
    ).scalar()
    open_alerts = session.execute(
        select(func.count(PricingAlert.id)).where(PricingAlert.is_resolved.is_(False))
    ).scalar()
    last_rollup = session.execute(select(func.max(Product.rollup_updated_at))).scalar()

    return {
        "unpriced_products": unpriced or 0,
        "pending_adjustments": pending or 0,
        "open_alerts": open_alerts or 0,
        "last_rollup_at": last_rollup.isoformat() if last_rollup else None,
    }
