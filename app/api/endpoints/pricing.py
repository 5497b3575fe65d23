import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import get_session
from app.models import AdjustmentStatus, AlertSeverity, AlertType, PricingRule
from app.schemas.pricing import (
    AlertDetectionResponse,
    BatchResponse,
    CompetitorIngestRequest,
    CompetitorPriceCreate,
    CompetitorPriceResponse,
    EvaluateRequest,
    EvaluationResponse,
    OfferActiveUpdate,
    OfferResponse,
    OfferUpsert,
    PriceAdjustmentResponse,
    PriceChangeLogResponse,
    PriceProposalResponse,
    PricingAlertResponse,
    PricingRuleCreate,
    PricingRuleResponse,
    RollupBatchRequest,
    RollupResponse,
)
from app.services.pricing.alerts import AlertEngine
from app.services.pricing.competitor_ingestion import CompetitorIngestionService
from app.services.pricing.errors import (
    ConflictError,
    DataUnavailableError,
    NotFoundError,
    PricingError,
    PricingValidationError,
)
from app.services.pricing.offer_store import OfferInput, OfferStore
from app.services.pricing.rollup import RollupEngine
from app.services.pricing.rule_engine import PricingRuleEngine
from app.services.pricing.strategies import validate_rule
from app.services.pricing.utils import utcnow
from app.services.pricing.workflow import AdjustmentWorkflow

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: PricingError) -> HTTPException:
    if isinstance(e, NotFoundError):
        status_code = 404
    elif isinstance(e, ConflictError):
        status_code = 409
    elif isinstance(e, (PricingValidationError, DataUnavailableError)):
        status_code = 422
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=e.to_dict())


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(status_code=422, detail="X-Actor-Id header is required")
    return actor


# --- Rollup -----------------------------------------------------------------

@router.post("/rollups/recompute", response_model=BatchResponse)
def recompute_rollups(payload: Optional[RollupBatchRequest] = None, session: Session = Depends(get_session)):
    product_ids = payload.product_ids if payload else None
    return RollupEngine(session).recompute_rollups(product_ids)


@router.post("/rollups/{product_id}/recompute", response_model=RollupResponse)
def recompute_rollup(product_id: uuid.UUID, session: Session = Depends(get_session)):
    try:
        return RollupEngine(session).recompute_rollup(product_id)
    except PricingError as e:
        raise _http_error(e)


# --- Offers -----------------------------------------------------------------

@router.put("/offers", response_model=OfferResponse)
def upsert_offer(payload: OfferUpsert, session: Session = Depends(get_session)):
    data = OfferInput(**payload.model_dump(exclude={"supplier"}), supplier=payload.supplier.value)
    try:
        return OfferStore(session).upsert_offer(data)
    except PricingError as e:
        raise _http_error(e)


@router.get("/offers/{product_id}", response_model=List[OfferResponse])
def list_offers(
    product_id: uuid.UUID,
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    session: Session = Depends(get_session),
):
    return OfferStore(session).list_offers(product_id, include_inactive=include_inactive)


@router.patch("/offers/{offer_id}/active", response_model=OfferResponse)
def set_offer_active(offer_id: uuid.UUID, payload: OfferActiveUpdate, session: Session = Depends(get_session)):
    try:
        return OfferStore(session).set_offer_active(offer_id, payload.is_active)
    except PricingError as e:
        raise _http_error(e)


# --- Rules ------------------------------------------------------------------

@router.get("/rules", response_model=List[PricingRuleResponse])
def list_rules(
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    session: Session = Depends(get_session),
):
    stmt = select(PricingRule)
    if is_active is not None:
        stmt = stmt.where(PricingRule.is_active.is_(is_active))
    stmt = stmt.order_by(PricingRule.priority.asc(), PricingRule.created_at.asc(), PricingRule.id.asc())
    return session.execute(stmt).scalars().all()


@router.post("/rules", response_model=PricingRuleResponse, status_code=201)
def create_rule(payload: PricingRuleCreate, session: Session = Depends(get_session)):
    values = payload.model_dump()
    values["strategy"] = payload.strategy.value
    if payload.product_ids is not None:
        values["product_ids"] = [str(pid) for pid in payload.product_ids]
    rule = PricingRule(**values, created_at=utcnow())

    try:
        validate_rule(rule)
    except PricingError as e:
        raise _http_error(e)

    session.add(rule)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=409, detail=f"pricing rule '{payload.name}' already exists")
    session.refresh(rule)
    logger.info(f"[PricingAPI] Created pricing rule '{rule.name}' ({rule.strategy})")
    return rule


@router.post("/rules/evaluate", response_model=EvaluationResponse)
def evaluate_rules(payload: Optional[EvaluateRequest] = None, session: Session = Depends(get_session)):
    payload = payload or EvaluateRequest()
    try:
        result = PricingRuleEngine(session).evaluate_rules(
            rule_id=payload.rule_id, product_ids=payload.product_ids, dry_run=payload.dry_run
        )
    except PricingError as e:
        raise _http_error(e)
    return EvaluationResponse(
        proposed=result.proposed,
        skipped=result.skipped,
        auto_applied=result.auto_applied,
        errors=result.errors,
        auto_apply_errors=result.auto_apply_errors,
        cancelled=result.cancelled,
        dry_run=result.dry_run,
        adjustment_ids=result.adjustment_ids,
        proposals=[PriceProposalResponse.model_validate(p) for p in result.proposals],
        skip_reasons=dict(result.skip_reasons),
    )


# --- Adjustments ------------------------------------------------------------

@router.get("/adjustments", response_model=List[PriceAdjustmentResponse])
def list_adjustments(
    status: Optional[AdjustmentStatus] = Query(default=None),
    product_id: Optional[uuid.UUID] = Query(default=None, alias="productId"),
    limit: int = Query(default=100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return AdjustmentWorkflow(session).list_adjustments(
        status=status.value if status else None, product_id=product_id, limit=limit
    )


@router.post("/adjustments/{adjustment_id}/approve", response_model=PriceAdjustmentResponse)
def approve_adjustment(
    adjustment_id: uuid.UUID,
    actor: str = Depends(get_actor),
    session: Session = Depends(get_session),
):
    try:
        return AdjustmentWorkflow(session).approve_adjustment(adjustment_id, actor)
    except PricingError as e:
        raise _http_error(e)


@router.post("/adjustments/{adjustment_id}/reject", response_model=PriceAdjustmentResponse)
def reject_adjustment(
    adjustment_id: uuid.UUID,
    actor: str = Depends(get_actor),
    session: Session = Depends(get_session),
):
    try:
        return AdjustmentWorkflow(session).reject_adjustment(adjustment_id, actor)
    except PricingError as e:
        raise _http_error(e)


# --- Price change log -------------------------------------------------------

@router.get("/price-changes", response_model=List[PriceChangeLogResponse])
def list_price_changes(
    product_id: Optional[uuid.UUID] = Query(default=None, alias="productId"),
    limit: int = Query(default=100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return AdjustmentWorkflow(session).list_price_changes(product_id=product_id, limit=limit)


@router.post("/price-changes/{log_id}/rollback", response_model=PriceChangeLogResponse)
def rollback_price_change(log_id: uuid.UUID, actor: str = Depends(get_actor), session: Session = Depends(get_session)):
    try:
        return AdjustmentWorkflow(session).rollback_price_change(log_id, actor)
    except PricingError as e:
        raise _http_error(e)


# --- Competitors ------------------------------------------------------------


@router.post("/competitors/ingest")
async def ingest_competitor_prices(payload: CompetitorIngestRequest, session: Session = Depends(get_session)):
    return await CompetitorIngestionService(session).ingest_competitor_prices(payload.product_ids)


@router.get("/competitors/{product_id}", response_model=List[CompetitorPriceResponse])
def latest_competitor_prices(product_id: uuid.UUID, session: Session = Depends(get_session)):
    try:
        return CompetitorIngestionService(session, collectors=[]).latest_competitor_prices(product_id)
    except PricingError as e:
        raise _http_error(e)


@router.post("/competitors/{product_id}", response_model=CompetitorPriceResponse, status_code=201)
def record_competitor_price(
    product_id: uuid.UUID, payload: CompetitorPriceCreate, session: Session = Depends(get_session)
):
    try:
        return CompetitorIngestionService(session, collectors=[]).record_competitor_price(
            product_id,
            payload.competitor_name,
            payload.competitor_price,
            url=payload.competitor_url,
            scraped_at=payload.scraped_at,
        )
    except PricingError as e:
        raise _http_error(e)


# --- Alerts -----------------------------------------------------------------

@router.post("/alerts/detect", response_model=AlertDetectionResponse)
def detect_alerts(session: Session = Depends(get_session)):
    return AlertEngine(session).detect_alerts()


@router.get("/alerts", response_model=List[PricingAlertResponse])
def list_alerts(
    is_resolved: Optional[bool] = Query(default=None, alias="isResolved"),
    severity: Optional[AlertSeverity] = Query(default=None),
    alert_type: Optional[AlertType] = Query(default=None, alias="alertType"),
    limit: int = Query(default=100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return AlertEngine(session).list_alerts(
        is_resolved=is_resolved,
        severity=severity.value if severity else None,
        alert_type=alert_type.value if alert_type else None,
        limit=limit,
    )


@router.post("/alerts/{alert_id}/resolve", response_model=PricingAlertResponse)
def resolve_alert(alert_id: uuid.UUID, actor: str = Depends(get_actor), session: Session = Depends(get_session)):
    try:
        return AlertEngine(session).resolve_alert(alert_id, actor)
    except PricingError as e:
        raise _http_error(e)


@router.post("/alerts/{alert_id}/read", response_model=PricingAlertResponse)
def mark_alert_read(alert_id: uuid.UUID, session: Session = Depends(get_session)):
    try:
        return AlertEngine(session).mark_alert_read(alert_id)
    except PricingError as e:
        raise _http_error(e)
