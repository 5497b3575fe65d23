"""
Error taxonomy for the pricing pipeline.

Every error carries enough detail to explain *why* an operation was refused:
the current vs requested state for conflicts, the offending guardrail for
validation errors.
"""
from __future__ import annotations

from typing import Any


class PricingError(Exception):
    """Base class for pricing pipeline errors."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error_type": type(self).__name__, "message": self.message, "details": self.details}


class NotFoundError(PricingError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, id=str(entity_id))


class ConflictError(PricingError):
    """Invalid state transition."""

    def __init__(self, entity: str, entity_id: Any, current: str, requested: str):
        super().__init__(
            f"{entity} {entity_id} is {current}, cannot {requested}",
            entity=entity,
            id=str(entity_id),
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class PricingValidationError(PricingError):
    """Guardrail misconfiguration."""

    def __init__(self, message: str, field: str | None = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class DataUnavailableError(PricingError):
    """Missing inputs for an evaluation. Not fatal: the product is skipped."""
