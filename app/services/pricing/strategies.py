"""
Price computation for each pricing strategy.

All prices handled here are excl. tax. Margin is always margin on selling
price: (price - cost) / price * 100. Functions here never touch the session.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from app.models import PricingRule, PricingStrategy
from app.services.pricing.errors import DataUnavailableError, PricingValidationError
from app.services.pricing.utils import HUNDRED, ceil_money, floor_money, price_for_margin, to_money


@dataclass(frozen=True)
class PricingInputs:
    current_price: Decimal
    cost: Optional[Decimal]
    competitor_avg: Optional[Decimal]
    competitor_count: int
    tax_rate: Decimal


@dataclass
class StrategyQuote:
    price: Decimal
    notes: list[str] = field(default_factory=list)


def validate_rule(rule: PricingRule) -> None:
    """
    Raises PricingValidationError for a misconfigured rule. Called for the
    whole rule set before any product is evaluated.
    """
    strategies = {s.value for s in PricingStrategy}
    if rule.strategy not in strategies:
        raise PricingValidationError(
            f"rule '{rule.name}': unknown strategy '{rule.strategy}'", field="strategy", rule_id=str(rule.id)
        )

    for name in ("min_margin_percent", "max_margin_percent", "target_margin_percent"):
        value = getattr(rule, name)
        if value is not None and (value < 0 or value >= HUNDRED):
            raise PricingValidationError(
                f"rule '{rule.name}': {name} must be in [0, 100), got {value}", field=name, rule_id=str(rule.id)
            )

    min_margin, max_margin, target = rule.min_margin_percent, rule.max_margin_percent, rule.target_margin_percent
    if min_margin is not None and max_margin is not None and min_margin > max_margin:
        raise PricingValidationError(
            f"rule '{rule.name}': min margin {min_margin}% > max margin {max_margin}%",
            field="min_margin_percent",
            rule_id=str(rule.id),
        )
    if target is not None:
        if (min_margin is not None and target < min_margin) or (max_margin is not None and target > max_margin):
            raise PricingValidationError(
                f"rule '{rule.name}': target margin {target}% outside [{min_margin}, {max_margin}]",
                field="target_margin_percent",
                rule_id=str(rule.id),
            )

    if rule.strategy in (PricingStrategy.MARGIN_TARGET.value, PricingStrategy.HYBRID.value) and target is None:
        raise PricingValidationError(
            f"rule '{rule.name}': strategy {rule.strategy} needs target_margin_percent",
            field="target_margin_percent",
            rule_id=str(rule.id),
        )

    if rule.strategy == PricingStrategy.COMPETITOR_UNDERCUT.value:
        if rule.competitor_offset_percent is None and rule.competitor_offset_fixed is None:
            raise PricingValidationError(
                f"rule '{rule.name}': undercut needs competitor_offset_percent or competitor_offset_fixed",
                field="competitor_offset_percent",
                rule_id=str(rule.id),
            )

    if rule.competitor_offset_percent is not None and not (0 <= rule.competitor_offset_percent < HUNDRED):
        raise PricingValidationError(
            f"rule '{rule.name}': competitor_offset_percent must be in [0, 100)",
            field="competitor_offset_percent",
            rule_id=str(rule.id),
        )
    if rule.competitor_offset_fixed is not None and rule.competitor_offset_fixed < 0:
        raise PricingValidationError(
            f"rule '{rule.name}': competitor_offset_fixed must be >= 0",
            field="competitor_offset_fixed",
            rule_id=str(rule.id),
        )

    if (rule.min_competitor_count or 0) < 1:
        raise PricingValidationError(
            f"rule '{rule.name}': min_competitor_count must be >= 1", field="min_competitor_count", rule_id=str(rule.id)
        )

    low, high = rule.min_price_incl_tax, rule.max_price_incl_tax
    if (low is not None and low <= 0) or (high is not None and high <= 0):
        raise PricingValidationError(
            f"rule '{rule.name}': price bounds must be positive", field="min_price_incl_tax", rule_id=str(rule.id)
        )
    if low is not None and high is not None and low > high:
        raise PricingValidationError(
            f"rule '{rule.name}': min price {low} > max price {high}", field="min_price_incl_tax", rule_id=str(rule.id)
        )

    if rule.max_price_change_percent is not None and not (0 < rule.max_price_change_percent < HUNDRED):
        raise PricingValidationError(
            f"rule '{rule.name}': max_price_change_percent must be in (0, 100)",
            field="max_price_change_percent",
            rule_id=str(rule.id),
        )


def min_margin_price(rule: PricingRule, cost: Optional[Decimal]) -> Optional[Decimal]:
    """Lowest price honouring the rule's min margin, rounded up to the cent."""
    if rule.min_margin_percent is None or cost is None:
        return None
    return ceil_money(price_for_margin(cost, rule.min_margin_percent))


def max_margin_price(rule: PricingRule, cost: Optional[Decimal]) -> Optional[Decimal]:
    """Highest price honouring the rule's max margin, rounded down to the cent."""
    if rule.max_margin_percent is None or cost is None:
        return None
    return floor_money(price_for_margin(cost, rule.max_margin_percent))


def _require_cost(rule: PricingRule, inputs: PricingInputs) -> Decimal:
    if inputs.cost is None or inputs.cost <= 0:
        raise DataUnavailableError(f"no cost available for rule '{rule.name}'", reason="missing_cost")
    return inputs.cost


def _require_competitors(rule: PricingRule, inputs: PricingInputs) -> Decimal:
    needed = rule.min_competitor_count or 1
    if inputs.competitor_avg is None or inputs.competitor_count < needed:
        raise DataUnavailableError(
            f"{inputs.competitor_count} live competitor prices, rule '{rule.name}' needs {needed}",
            reason="missing_competitors",
        )
    return inputs.competitor_avg


def _competitor_ceiling(rule: PricingRule, avg: Decimal) -> tuple[Decimal, str]:
    if rule.competitor_offset_percent is not None:
        return avg * (1 - rule.competitor_offset_percent / HUNDRED), f"-{rule.competitor_offset_percent}%"
    if rule.competitor_offset_fixed is not None:
        return avg - rule.competitor_offset_fixed, f"-{rule.competitor_offset_fixed}"
    return avg, "no offset"


def margin_target(rule: PricingRule, inputs: PricingInputs) -> StrategyQuote:
    cost = _require_cost(rule, inputs)
    price = ceil_money(price_for_margin(cost, rule.target_margin_percent))
    notes = [f"target margin {rule.target_margin_percent}% on cost {cost}"]

    floor = min_margin_price(rule, cost)
    ceiling = max_margin_price(rule, cost)
    if floor is not None and price < floor:
        price = floor
        notes.append("min margin applied")
    if ceiling is not None and price > ceiling:
        price = ceiling
        notes.append("max margin applied")
    return StrategyQuote(price=price, notes=notes)


def competitor_match(rule: PricingRule, inputs: PricingInputs) -> StrategyQuote:
    avg = _require_competitors(rule, inputs)
    return StrategyQuote(
        price=to_money(avg),
        notes=[f"match competitor average {to_money(avg)} ({inputs.competitor_count} competitors)"],
    )


def competitor_undercut(rule: PricingRule, inputs: PricingInputs) -> StrategyQuote:
    avg = _require_competitors(rule, inputs)
    raw, offset_label = _competitor_ceiling(rule, avg)
    price = to_money(raw)
    notes = [f"undercut competitor average {to_money(avg)} by {offset_label}"]

    floor = min_margin_price(rule, inputs.cost)
    if rule.min_margin_percent is not None and floor is None:
        raise DataUnavailableError(f"no cost to enforce min margin of rule '{rule.name}'", reason="missing_cost")
    if floor is not None and price < floor:
        price = floor
        notes.append(f"min margin {rule.min_margin_percent}% floor applied")
    return StrategyQuote(price=price, notes=notes)


def hybrid(rule: PricingRule, inputs: PricingInputs) -> StrategyQuote:
    """
    Margin floor is hard, competitor price is a soft ceiling:
    max(floor, min(margin_target_price, competitor_ceiling)), capped by the max margin price.
    """
    cost = _require_cost(rule, inputs)
    avg = _require_competitors(rule, inputs)

    margin_price = ceil_money(price_for_margin(cost, rule.target_margin_percent))
    ceiling_raw, offset_label = _competitor_ceiling(rule, avg)
    ceiling = floor_money(ceiling_raw)
    price = min(margin_price, ceiling)
    notes = [
        f"target margin {rule.target_margin_percent}% -> {margin_price}",
        f"competitor ceiling {ceiling} (avg {to_money(avg)}, {offset_label})",
    ]

    floor = min_margin_price(rule, cost)
    if floor is not None and price < floor:
        price = floor
        notes.append("min margin floor applied")
    cap = max_margin_price(rule, cost)
    if cap is not None and price > cap:
        price = cap
        notes.append("max margin cap applied")
    return StrategyQuote(price=price, notes=notes)


STRATEGIES: dict[str, Callable[[PricingRule, PricingInputs], StrategyQuote]] = {
    PricingStrategy.MARGIN_TARGET.value: margin_target,
    PricingStrategy.COMPETITOR_MATCH.value: competitor_match,
    PricingStrategy.COMPETITOR_UNDERCUT.value: competitor_undercut,
    PricingStrategy.HYBRID.value: hybrid,
}


def compute_price(rule: PricingRule, inputs: PricingInputs) -> StrategyQuote:
    quote = STRATEGIES[rule.strategy](rule, inputs)
    if quote.price <= 0:
        # e.g. a fixed undercut offset larger than the competitor average
        raise DataUnavailableError(
            f"rule '{rule.name}' computed a non-positive price {quote.price}", reason="non_positive_price"
        )
    return quote
