"""Exceptions raised by the pricing service layer."""

from __future__ import annotations


class PricingError(Exception):
    """Base class for pricing domain errors."""


class InvalidRuleDefinition(PricingError):
    """Raised when a rule's bounds, window or configuration are inconsistent."""

    def __init__(self, detail: str, *, message: str | None = None) -> None:
        super().__init__(message or detail)
        self.detail = detail


class InvalidRuleConfig(InvalidRuleDefinition):
    """Raised when a rule's configuration does not fit its rule type."""

    def __init__(self, rule_type: str, detail: str) -> None:
        super().__init__(detail, message=f"invalid {rule_type} configuration: {detail}")
        self.rule_type = rule_type


class RuleNotApplicable(PricingError):
    """Raised when a rule is applied outside its status, window or conditions."""


class ProductPriceNotFound(PricingError):
    """Raised when no authoritative price exists for a SKU."""

    def __init__(self, sku: str) -> None:
        super().__init__(f"no price recorded for sku {sku}")
        self.sku = sku


class NothingToRollback(PricingError):
    """Raised when a rule has no rule-driven price change to revert."""


class BatchTooLarge(PricingError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"batch of {size} contexts exceeds the limit of {limit}")
        self.size = size
        self.limit = limit
