import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import AdjustmentStatus, PriceAdjustment, PricingRule, Product, SupplierOffer
from app.services.pricing.competitor_ingestion import latest_competitor_prices
from app.services.pricing.errors import DataUnavailableError, PricingError
from app.services.pricing.rule_resolver import RuleResolver, RuleSet
from app.services.pricing.strategies import PricingInputs, compute_price
from app.services.pricing.utils import (
    ceil_money,
    change_percent,
    floor_money,
    incl_to_excl,
    margin_percent,
    to_money,
    to_percent,
    utcnow,
)
from app.services.pricing.workflow import AUTO_APPROVAL, AdjustmentWorkflow
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PriceProposal:
    product_id: uuid.UUID
    pricing_rule_id: uuid.UUID
    rule_name: str
    strategy: str
    old_price_excl_tax: Decimal
    new_price_excl_tax: Decimal
    price_change_percent: Decimal
    old_margin_percent: Optional[Decimal]
    new_margin_percent: Optional[Decimal]
    competitor_avg_price: Optional[Decimal]
    supplier_price: Optional[Decimal]
    reason: str
    blocked_by_guard: bool = False


@dataclass
class EvaluationResult:
    """
    `errors` lists products whose evaluation failed, so no adjustment exists
    for them. `auto_apply_errors` lists products whose adjustment was created
    (and counted in `proposed`) but could not be applied; it stays pending.
    """
    proposed: int = 0
    skipped: int = 0
    auto_applied: int = 0
    errors: list[uuid.UUID] = field(default_factory=list)
    auto_apply_errors: list[uuid.UUID] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False
    adjustment_ids: list[uuid.UUID] = field(default_factory=list)
    proposals: list[PriceProposal] = field(default_factory=list)
    skip_reasons: Counter = field(default_factory=Counter)


class PricingRuleEngine:
    """
    Evaluates the active pricing rules against products and emits pending
    price adjustments. The first matching rule (by priority) wins for each
    product. Nothing here writes a product price directly; rules that do not
    require approval go through the adjustment workflow like everyone else.

    With `dry_run=True` the same evaluation runs but only returns proposals:
    no adjustment is stored, nothing is auto-applied and rules are not stamped.
    """

    def __init__(self, session: Session, workflow: AdjustmentWorkflow | None = None):
        self.session = session
        self.resolver = RuleResolver(session)
        self.workflow = workflow or AdjustmentWorkflow(session)

    def evaluate_rules(
        self,
        rule_id: Optional[uuid.UUID] = None,
        product_ids: Optional[Iterable[uuid.UUID]] = None,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
    ) -> EvaluationResult:
        rule_set = self.resolver.load_rule_set(rule_id)
        result = EvaluationResult(dry_run=dry_run)
        if not rule_set:
            logger.info("[PricingRuleEngine] No active pricing rules")
            return result

        mode = "Simulating" if dry_run else "Evaluating"
        logger.info(f"[PricingRuleEngine] {mode} {len(rule_set)} rule(s)")
        fired: dict[uuid.UUID, PricingRule] = {}

        for product_id in self._target_product_ids(product_ids):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[PricingRuleEngine] Evaluation cancelled after {result.proposed} proposals")
                result.cancelled = True
                break

            try:
                product = self.session.get(Product, product_id)
                if not product:
                    logger.warning(f"[PricingRuleEngine] Unknown product {product_id}")
                    result.errors.append(product_id)
                    continue
                proposal, rule = self._evaluate_product(rule_set, product, result)
                if proposal is None:
                    continue
                adjustment = None if dry_run else self._store(proposal)
            except Exception as e:
                self.session.rollback()
                logger.error(f"[PricingRuleEngine] Evaluation failed for product {product_id}: {e}")
                result.errors.append(product_id)
                continue

            result.proposed += 1
            result.proposals.append(proposal)
            if adjustment is None:
                continue
            result.adjustment_ids.append(adjustment.id)
            fired[rule.id] = rule

            if not rule.require_approval:
                try:
                    self.workflow.approve_adjustment(adjustment.id, settings.auto_apply_actor, source=AUTO_APPROVAL)
                    result.auto_applied += 1
                except PricingError as e:
                    logger.error(f"[PricingRuleEngine] Auto-apply failed for adjustment {adjustment.id}: {e}")
                    result.auto_apply_errors.append(product_id)

        if not dry_run:
            self._stamp_rules(fired.values())
        logger.info(
            f"[PricingRuleEngine] Done{' (dry run)' if dry_run else ''}: proposed={result.proposed} "
            f"skipped={result.skipped} auto_applied={result.auto_applied} errors={len(result.errors)} "
            f"auto_apply_errors={len(result.auto_apply_errors)}"
        )
        return result

    def _target_product_ids(self, product_ids: Optional[Iterable[uuid.UUID]]) -> list[uuid.UUID]:
        if product_ids is not None:
            return list(product_ids)
        stmt = select(Product.id).where(Product.is_active.is_(True)).order_by(Product.id)
        return list(self.session.execute(stmt).scalars().all())

    def _evaluate_product(
        self, rule_set: RuleSet, product: Product, result: EvaluationResult
    ) -> tuple[Optional[PriceProposal], Optional[PricingRule]]:
        if not product.is_active:
            return self._skip(result, product, "inactive_product")

        rule = self.resolver.resolve_rule(rule_set, product)
        if rule is None:
            return self._skip(result, product, "no_matching_rule")

        try:
            inputs = self.gather_inputs(product, rule)
            quote = compute_price(rule, inputs)
        except DataUnavailableError as e:
            return self._skip(result, product, e.details.get("reason", "data_unavailable"), e.message)

        price = quote.price
        notes = list(quote.notes)
        guarded = False
        tax_rate = product.tax_rate or Decimal("0")

        # Guardrail 1: absolute price bounds (configured incl. tax)
        if rule.min_price_incl_tax is not None:
            low = ceil_money(incl_to_excl(rule.min_price_incl_tax, tax_rate))
            if price < low:
                price = low
                guarded = True
                notes.append(f"min price {rule.min_price_incl_tax} incl. tax applied")
        if rule.max_price_incl_tax is not None:
            high = floor_money(incl_to_excl(rule.max_price_incl_tax, tax_rate))
            if price > high:
                price = high
                guarded = True
                notes.append(f"max price {rule.max_price_incl_tax} incl. tax applied")

        # Guardrail 2: bounded step from the current price
        current = inputs.current_price
        max_change = rule.max_price_change_percent or settings.default_max_price_change_percent
        lower = ceil_money(current * (1 - max_change / 100))
        upper = floor_money(current * (1 + max_change / 100))
        if price < lower:
            price = lower
            guarded = True
            notes.append(f"change limited to -{max_change}%")
        elif price > upper:
            price = upper
            guarded = True
            notes.append(f"change limited to +{max_change}%")

        if price <= 0:
            return self._skip(result, product, "non_positive_price", f"price {price}")

        # Guardrail 3: noise filter
        change = change_percent(current, price)
        if abs(change) < settings.pricing_min_change_percent:
            return self._skip(result, product, "change_below_threshold")

        # Guardrail 4: final margin must stay inside the rule's bounds
        new_margin = margin_percent(price, inputs.cost)
        if rule.min_margin_percent is not None or rule.max_margin_percent is not None:
            if new_margin is None:
                return self._skip(result, product, "missing_cost")
            if rule.min_margin_percent is not None and new_margin < rule.min_margin_percent:
                return self._skip(result, product, "margin_below_min", f"margin {to_percent(new_margin)}%")
            if rule.max_margin_percent is not None and new_margin > rule.max_margin_percent:
                return self._skip(result, product, "margin_above_max", f"margin {to_percent(new_margin)}%")

        proposal = PriceProposal(
            product_id=product.id,
            pricing_rule_id=rule.id,
            rule_name=rule.name,
            strategy=rule.strategy,
            old_price_excl_tax=current,
            new_price_excl_tax=price,
            price_change_percent=to_percent(change),
            old_margin_percent=to_percent(margin_percent(current, inputs.cost)),
            new_margin_percent=to_percent(new_margin),
            competitor_avg_price=to_money(inputs.competitor_avg),
            supplier_price=to_money(inputs.cost),
            reason=f"[{rule.name}] {rule.strategy}: " + "; ".join(notes),
            blocked_by_guard=guarded,
        )
        logger.info(
            f"[PricingRuleEngine] Proposed {current} -> {price} ({to_percent(change)}%) "
            f"for product {product.id} via rule '{rule.name}'"
        )
        return proposal, rule

    def _store(self, proposal: PriceProposal) -> PriceAdjustment:
        adjustment = PriceAdjustment(
            product_id=proposal.product_id,
            pricing_rule_id=proposal.pricing_rule_id,
            strategy=proposal.strategy,
            old_price_excl_tax=proposal.old_price_excl_tax,
            new_price_excl_tax=proposal.new_price_excl_tax,
            price_change_percent=proposal.price_change_percent,
            old_margin_percent=proposal.old_margin_percent,
            new_margin_percent=proposal.new_margin_percent,
            competitor_avg_price=proposal.competitor_avg_price,
            supplier_price=proposal.supplier_price,
            reason=proposal.reason,
            status=AdjustmentStatus.PENDING.value,
            created_at=utcnow(),
        )
        self.session.add(adjustment)
        self.session.commit()
        return adjustment

    def gather_inputs(self, product: Product, rule: PricingRule, now: datetime | None = None) -> PricingInputs:
        tax_rate = product.tax_rate or Decimal("0")

        current = product.price_excl_tax
        if current is None or current <= 0:
            if product.public_price_incl_tax is None or product.public_price_incl_tax <= 0:
                raise DataUnavailableError(f"product {product.id} has no current price", reason="missing_current_price")
            current = incl_to_excl(product.public_price_incl_tax, tax_rate)
        current = to_money(current)

        cost = product.cost_price if product.cost_price is not None and product.cost_price > 0 else None
        if cost is None:
            cost = self.session.execute(
                select(func.min(SupplierOffer.purchase_price_excl_tax)).where(
                    SupplierOffer.product_id == product.id,
                    SupplierOffer.is_active.is_(True),
                    SupplierOffer.purchase_price_excl_tax > 0,
                )
            ).scalar()

        since = (now or utcnow()) - timedelta(days=settings.competitor_price_max_age_days)
        latest = latest_competitor_prices(self.session, product.id, since=since)
        competitor_avg = None
        if latest and len(latest) >= (rule.min_competitor_count or 1):
            competitor_avg = sum((row.competitor_price for row in latest), Decimal("0")) / len(latest)
            if settings.competitor_prices_include_tax:
                competitor_avg = incl_to_excl(competitor_avg, tax_rate)

        return PricingInputs(
            current_price=current,
            cost=cost,
            competitor_avg=competitor_avg,
            competitor_count=len(latest),
            tax_rate=tax_rate,
        )

    def _skip(self, result: EvaluationResult, product: Product, reason: str, detail: str = "") -> tuple[None, None]:
        result.skipped += 1
        result.skip_reasons[reason] += 1
        logger.debug(f"[PricingRuleEngine] Skipped product {product.id}: {reason} {detail}".rstrip())
        return None, None

    def _stamp_rules(self, rules: Iterable[PricingRule]) -> None:
        rules = list(rules)
        if not rules:
            return
        now = utcnow()
        try:
            for rule in rules:
                rule.last_applied_at = now
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
