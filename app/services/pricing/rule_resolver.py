import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import PricingRule, Product, SupplierOffer
from app.services.pricing.errors import ConflictError, NotFoundError
from app.services.pricing.strategies import validate_rule


@dataclass(frozen=True)
class RuleSet:
    """Active rules in evaluation order. Built once per run and passed explicitly."""
    rules: tuple[PricingRule, ...]

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)


class RuleResolver:
    def __init__(self, session: Session):
        self.session = session

    def load_rule_set(self, rule_id: Optional[uuid.UUID] = None) -> RuleSet:
        """
        Loads and validates the active rules.
        Order: priority asc, then created_at, then id.
        """
        if rule_id is not None:
            rule = self.session.get(PricingRule, rule_id)
            if not rule:
                raise NotFoundError("pricing_rule", rule_id)
            if not rule.is_active:
                raise ConflictError("pricing_rule", rule_id, "inactive", "evaluate")
            rules = [rule]
        else:
            stmt = (
                select(PricingRule)
                .where(PricingRule.is_active.is_(True))
                .order_by(PricingRule.priority.asc(), PricingRule.created_at.asc(), PricingRule.id.asc())
            )
            rules = list(self.session.execute(stmt).scalars().all())

        for rule in rules:
            validate_rule(rule)
        return RuleSet(rules=tuple(rules))

    def resolve_rule(self, rule_set: RuleSet, product: Product) -> Optional[PricingRule]:
        """
        First rule whose scope matches the product wins. An empty scope
        dimension matches every product.
        """
        supplier_codes: Optional[set[str]] = None
        for rule in rule_set:
            if rule.category and rule.category != product.category:
                continue
            if rule.product_ids and str(product.id) not in {str(pid) for pid in rule.product_ids}:
                continue
            if rule.supplier_ids:
                if supplier_codes is None:
                    supplier_codes = self._active_suppliers(product.id)
                if not supplier_codes & {s.upper() for s in rule.supplier_ids}:
                    continue
            return rule
        return None

    def _active_suppliers(self, product_id: uuid.UUID) -> set[str]:
        stmt = select(SupplierOffer.supplier).where(
            SupplierOffer.product_id == product_id,
            SupplierOffer.is_active.is_(True),
        )
        return {code.upper() for code in self.session.execute(stmt).scalars().all()}
