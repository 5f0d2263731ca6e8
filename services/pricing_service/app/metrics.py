"""Prometheus metrics for the pricing service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

# Rule evaluation ----------------------------------------------------------------------------
PRICING_RULE_EVALUATIONS_TOTAL: Final = Counter(
    "pricing_rule_evaluations_total",
    "Pricing rule evaluations by rule type and outcome (changed, unchanged, failed_closed).",
    labelnames=("rule_type", "outcome"),
)

PRICING_RULE_CONFIG_ERRORS_TOTAL: Final = Counter(
    "pricing_rule_config_errors_total",
    "Evaluations that kept the base price because the rule configuration was malformed.",
    labelnames=("rule_type",),
)

PRICING_RULES_NOT_APPLICABLE_TOTAL: Final = Counter(
    "pricing_rules_not_applicable_total",
    "Rule applications rejected because the rule was inactive, out of window or unmet.",
    labelnames=("rule_type",),
)

# Price change log ---------------------------------------------------------------------------
PRICE_CHANGES_TOTAL: Final = Counter(
    "pricing_price_changes_total",
    "Price change records appended, by origin and direction.",
    labelnames=("change_type", "direction"),
)

# Prediction collaborator --------------------------------------------------------------------
PRICING_PREDICTION_REQUESTS_TOTAL: Final = Counter(
    "pricing_prediction_requests_total",
    "Optimal price lookups against the prediction service by outcome.",
    labelnames=("outcome",),
)

PRICING_PREDICTION_CACHE_EVENTS_TOTAL: Final = Counter(
    "pricing_prediction_cache_events_total",
    "Prediction cache hits, misses, writes and errors.",
    labelnames=("event",),
)

PRICING_PREDICTION_LATENCY_SECONDS: Final = Histogram(
    "pricing_prediction_latency_seconds",
    "Latency of calls to the prediction service.",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)


def price_direction(old_price: int, new_price: int) -> str:
    """Return the bounded direction label for a price change."""

    if new_price > old_price:
        return "increase"
    if new_price < old_price:
        return "decrease"
    return "unchanged"
