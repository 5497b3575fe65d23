import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.models import (
    AdjustmentStatus,
    AlertSeverity,
    AlertType,
    PriceAdjustment,
    PricingAlert,
    Product,
    SupplierOffer,
)
from app.services.pricing.competitor_ingestion import latest_competitor_prices
from app.services.pricing.errors import ConflictError, NotFoundError, PricingValidationError
from app.services.pricing.rule_resolver import RuleResolver, RuleSet
from app.services.pricing.utils import HUNDRED, margin_percent, to_money, to_percent, utcnow
from app.settings import settings

logger = logging.getLogger(__name__)


def severity_for(magnitude: Decimal, ladder: list[tuple[Decimal, str]], inclusive: bool = False) -> str:
    """
    Walks a (threshold, severity) ladder, highest threshold first, and returns
    the first severity whose threshold the magnitude exceeds. The lowest rung
    always matches.
    """
    for threshold, severity in ladder:
        if magnitude > threshold or (inclusive and magnitude == threshold):
            return severity
    return ladder[-1][1]


@dataclass
class AlertCandidate:
    product_id: uuid.UUID
    alert_type: AlertType
    severity: str
    competitor_name: Optional[str] = None
    our_price: Optional[Decimal] = None
    competitor_price: Optional[Decimal] = None
    price_difference: Optional[Decimal] = None
    price_difference_percent: Optional[Decimal] = None
    suggested_action: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class AlertEngine:
    """
    Raises advisory alerts about competitor gaps, thin margins, pending
    adjustments and products the rollup could not price. Alerts never modify
    prices. An unresolved alert for the same (product, type, competitor) is
    refreshed instead of duplicated.
    """

    def __init__(self, session: Session):
        self.session = session

    def detect_alerts(self, product_ids: Optional[list[uuid.UUID]] = None) -> dict[str, int]:
        rule_set = self._load_rules()
        stmt = select(Product).where(Product.is_active.is_(True)).order_by(Product.id)
        if product_ids is not None:
            stmt = stmt.where(Product.id.in_(product_ids))
        products = self.session.execute(stmt).scalars().all()

        counts = {"created": 0, "updated": 0, "errors": 0}
        for product in products:
            try:
                candidates = self.scan_product(product, rule_set)
                for candidate in candidates:
                    created = self._upsert(candidate)
                    counts["created" if created else "updated"] += 1
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                logger.error(f"[AlertEngine] Detection failed for product {product.id}: {e}")
                counts["errors"] += 1

        logger.info(
            f"[AlertEngine] Scanned {len(products)} product(s): created={counts['created']} "
            f"updated={counts['updated']} errors={counts['errors']}"
        )
        return counts

    def scan_product(self, product: Product, rule_set: RuleSet) -> list[AlertCandidate]:
        candidates: list[AlertCandidate] = []
        candidates.extend(self._competitor_alerts(product))
        margin_alert = self._margin_alert(product, rule_set)
        if margin_alert:
            candidates.append(margin_alert)
        candidates.extend(self._pending_adjustment_alerts(product))
        missing = self._missing_price_alert(product)
        if missing:
            candidates.append(missing)
        return candidates

    def _competitor_alerts(self, product: Product) -> list[AlertCandidate]:
        our_price = product.public_price_incl_tax or product.price_incl_tax
        if our_price is None or our_price <= 0:
            return []

        since = utcnow() - timedelta(days=settings.competitor_price_max_age_days)
        alerts = []
        for row in latest_competitor_prices(self.session, product.id, since=since):
            difference = row.competitor_price - our_price
            percent = difference / our_price * HUNDRED
            details = {
                "product_name": product.name,
                "competitor_url": row.competitor_url,
                "scraped_at": row.scraped_at.isoformat() if row.scraped_at else None,
            }

            if percent < -settings.alert_competitor_lower_threshold_percent:
                alerts.append(AlertCandidate(
                    product_id=product.id,
                    alert_type=AlertType.COMPETITOR_LOWER_PRICE,
                    severity=severity_for(-percent, settings.alert_competitor_gap_severity),
                    competitor_name=row.competitor_name,
                    our_price=to_money(our_price),
                    competitor_price=to_money(row.competitor_price),
                    price_difference=to_money(difference),
                    price_difference_percent=to_percent(percent),
                    suggested_action=f"Consider lowering the price by {to_money(-difference)} to stay competitive",
                    details=details,
                ))
            elif percent > settings.alert_opportunity_threshold_percent:
                target = to_money(row.competitor_price * Decimal("0.95"))
                details["potential_gain"] = str(to_money(target - our_price))
                alerts.append(AlertCandidate(
                    product_id=product.id,
                    alert_type=AlertType.PRICING_OPPORTUNITY,
                    severity=severity_for(percent, settings.alert_opportunity_gap_severity),
                    competitor_name=row.competitor_name,
                    our_price=to_money(our_price),
                    competitor_price=to_money(row.competitor_price),
                    price_difference=to_money(difference),
                    price_difference_percent=to_percent(percent),
                    suggested_action=f"Room to raise the price up to {target}",
                    details=details,
                ))
        return alerts

    def _margin_alert(self, product: Product, rule_set: RuleSet) -> Optional[AlertCandidate]:
        cost = product.cost_price
        if cost is None or cost <= 0:
            cost = self.session.execute(
                select(func.min(SupplierOffer.purchase_price_excl_tax)).where(
                    SupplierOffer.product_id == product.id,
                    SupplierOffer.is_active.is_(True),
                    SupplierOffer.purchase_price_excl_tax > 0,
                )
            ).scalar()
        margin = margin_percent(product.price_excl_tax, cost)
        if margin is None:
            return None

        rule = RuleResolver(self.session).resolve_rule(rule_set, product)
        threshold = settings.alert_min_margin_percent
        threshold_source = "settings"
        if rule is not None and rule.min_margin_percent is not None:
            threshold = rule.min_margin_percent
            threshold_source = f"rule:{rule.name}"

        if margin >= threshold:
            return None

        deficit = threshold - margin
        return AlertCandidate(
            product_id=product.id,
            alert_type=AlertType.MARGIN_BELOW_THRESHOLD,
            severity=severity_for(deficit, settings.alert_margin_deficit_severity, inclusive=True),
            our_price=to_money(product.price_excl_tax),
            suggested_action=f"Margin {to_percent(margin)}% is below the {threshold}% threshold",
            details={
                "product_name": product.name,
                "current_margin": str(to_percent(margin)),
                "threshold": str(threshold),
                "threshold_source": threshold_source,
                "cost": str(to_money(cost)),
            },
        )

    def _pending_adjustment_alerts(self, product: Product) -> list[AlertCandidate]:
        pending = self.session.execute(
            select(PriceAdjustment)
            .where(
                PriceAdjustment.product_id == product.id,
                PriceAdjustment.status == AdjustmentStatus.PENDING.value,
            )
            .order_by(PriceAdjustment.created_at.desc(), PriceAdjustment.id.desc())
        ).scalars().first()
        if pending is None:
            return []

        return [AlertCandidate(
            product_id=product.id,
            alert_type=AlertType.PRICE_CHANGE_RECOMMENDED,
            severity=severity_for(abs(pending.price_change_percent), settings.alert_price_change_severity),
            our_price=pending.old_price_excl_tax,
            price_difference=to_money(pending.new_price_excl_tax - pending.old_price_excl_tax),
            price_difference_percent=pending.price_change_percent,
            suggested_action=f"Review adjustment {pending.old_price_excl_tax} -> {pending.new_price_excl_tax}",
            details={
                "product_name": product.name,
                "adjustment_id": str(pending.id),
                "new_price_excl_tax": str(pending.new_price_excl_tax),
                "reason": pending.reason,
            },
        )]

    def _missing_price_alert(self, product: Product) -> Optional[AlertCandidate]:
        if product.public_price_incl_tax is not None:
            return None
        offer_count = self.session.execute(
            select(func.count(SupplierOffer.id)).where(
                SupplierOffer.product_id == product.id,
                SupplierOffer.is_active.is_(True),
            )
        ).scalar()
        if offer_count:
            severity = AlertSeverity.HIGH.value
            action = "Add a category coefficient or a supplier list price"
        else:
            severity = AlertSeverity.MEDIUM.value
            action = "Link a supplier offer or deactivate the product"
        return AlertCandidate(
            product_id=product.id,
            alert_type=AlertType.ROLLUP_PRICE_MISSING,
            severity=severity,
            suggested_action=action,
            details={
                "product_name": product.name,
                "family": product.family,
                "subfamily": product.subfamily,
                "active_offers": offer_count,
            },
        )

    def _upsert(self, candidate: AlertCandidate) -> bool:
        stmt = select(PricingAlert).where(
            PricingAlert.product_id == candidate.product_id,
            PricingAlert.alert_type == candidate.alert_type.value,
            PricingAlert.is_resolved.is_(False),
        )
        if candidate.competitor_name is None:
            stmt = stmt.where(PricingAlert.competitor_name.is_(None))
        else:
            stmt = stmt.where(PricingAlert.competitor_name == candidate.competitor_name)
        alert = self.session.execute(stmt).scalars().first()

        now = utcnow()
        created = alert is None
        if created:
            alert = PricingAlert(
                product_id=candidate.product_id,
                alert_type=candidate.alert_type.value,
                competitor_name=candidate.competitor_name,
                is_read=False,
                is_resolved=False,
                created_at=now,
            )
            self.session.add(alert)

        alert.severity = candidate.severity
        alert.our_price = candidate.our_price
        alert.competitor_price = candidate.competitor_price
        alert.price_difference = candidate.price_difference
        alert.price_difference_percent = candidate.price_difference_percent
        alert.suggested_action = candidate.suggested_action
        alert.details = candidate.details
        alert.updated_at = now
        self.session.flush()
        return created

    def resolve_alert(self, alert_id: uuid.UUID, actor: str) -> PricingAlert:
        if not actor or not actor.strip():
            raise PricingValidationError("actor is required", field="actor")
        try:
            result = self.session.execute(
                update(PricingAlert)
                .where(PricingAlert.id == alert_id, PricingAlert.is_resolved.is_(False))
                .values(is_resolved=True, resolved_by=actor, resolved_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if self.session.get(PricingAlert, alert_id) is None:
                    raise NotFoundError("pricing_alert", alert_id)
                raise ConflictError("pricing_alert", alert_id, "resolved", "resolve")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"[AlertEngine] Alert {alert_id} resolved by {actor}")
        return self.session.get(PricingAlert, alert_id, populate_existing=True)

    def mark_alert_read(self, alert_id: uuid.UUID) -> PricingAlert:
        alert = self.session.get(PricingAlert, alert_id)
        if not alert:
            raise NotFoundError("pricing_alert", alert_id)
        try:
            alert.is_read = True
            alert.updated_at = utcnow()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return alert

    def list_alerts(
        self,
        is_resolved: Optional[bool] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
        product_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> list[PricingAlert]:
        stmt = select(PricingAlert)
        if is_resolved is not None:
            stmt = stmt.where(PricingAlert.is_resolved.is_(is_resolved))
        if severity:
            stmt = stmt.where(PricingAlert.severity == severity)
        if alert_type:
            stmt = stmt.where(PricingAlert.alert_type == alert_type)
        if product_id:
            stmt = stmt.where(PricingAlert.product_id == product_id)
        stmt = stmt.order_by(PricingAlert.created_at.desc(), PricingAlert.id.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def _load_rules(self) -> RuleSet:
        try:
            return RuleResolver(self.session).load_rule_set()
        except PricingValidationError as e:
            logger.warning(f"[AlertEngine] Ignoring pricing rules for margin thresholds: {e}")
            return RuleSet(rules=())
