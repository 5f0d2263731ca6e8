#!/usr/bin/env python3
"""Synthetic probe for the pricing service.

Seeds a price for a throwaway SKU, creates a low-stock clearance rule, then
previews, applies and rolls it back, checking that every step agrees on the
resulting price. Optionally verifies that the pricing Prometheus counters
moved. Exits non-zero on the first failed check.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx

_METRIC_LINE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)$"
)
_LABEL = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>(?:[^"\\]|\\.)*)"')


@dataclass(slots=True)
class MetricSample:
    name: str
    labels: Mapping[str, str]
    value: float


class ProbeError(RuntimeError):
    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = dict(context or {})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synthetic probe for pricing service")
    parser.add_argument(
        "--base-url",
        default=os.getenv("PRICING_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the pricing service (default: %(default)s or PRICING_BASE_URL)",
    )
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("PRICING_METRICS_PATH", "/metrics"),
        help="Path to Prometheus metrics endpoint (default: %(default)s or PRICING_METRICS_PATH)",
    )
    parser.add_argument(
        "--skip-metrics",
        action="store_true",
        help="Skip verification of Prometheus metric deltas",
    )
    parser.add_argument(
        "--base-price",
        default=os.getenv("PRICING_PROBE_BASE_PRICE", "100.00"),
        help="Price seeded for the probe SKU (default: %(default)s or PRICING_PROBE_BASE_PRICE)",
    )
    parser.add_argument(
        "--stock-level",
        type=int,
        default=5,
        help="Stock level sent in the evaluation context (default: %(default)s)",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=5.0,
        help="HTTP client timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--max-apply-ms",
        type=float,
        default=float(os.getenv("PRICING_PROBE_MAX_APPLY_MS", "1000")),
        help="Maximum allowed rule application latency in milliseconds (default: %(default)s)",
    )
    return parser.parse_args()


def parse_metrics(text: str) -> List[MetricSample]:
    samples: List[MetricSample] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _METRIC_LINE.match(stripped)
        if not match:
            continue
        labels = {label.group("key"): label.group("value") for label in _LABEL.finditer(match.group("labels") or "")}
        samples.append(MetricSample(name=match.group("name"), labels=labels, value=float(match.group("value"))))
    return samples


def find_metric_value(samples: Sequence[MetricSample], name: str, *, labels: Mapping[str, str]) -> float:
    for sample in samples:
        if sample.name != name:
            continue
        if all(sample.labels.get(key) == value for key, value in labels.items()):
            return sample.value
    return 0.0


async def fetch_metrics(client: httpx.AsyncClient, path: str) -> List[MetricSample]:
    response = await client.get(path)
    response.raise_for_status()
    return parse_metrics(response.text)


async def _call(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    expected: int,
    payload: Mapping[str, Any] | None = None,
) -> tuple[Dict[str, Any], float]:
    start = time.monotonic()
    response = await client.request(method, path, json=payload)
    duration = (time.monotonic() - start) * 1000.0
    if response.status_code != expected:
        raise ProbeError(
            f"{method} {path} failed",
            context={"status_code": response.status_code, "body": response.text},
        )
    return response.json(), duration


def build_rule(sku: str) -> Dict[str, Any]:
    return {
        "sku": sku,
        "name": f"Synthetic clearance {sku}",
        "ruleType": "inventory_based",
        "status": "active",
        "priority": "medium",
        "config": {"low_stock_threshold": 10, "clearance_discount": 25},
    }


async def run_probe(args: argparse.Namespace) -> Dict[str, Any]:
    sku = f"PROBE-{uuid.uuid4().hex[:8].upper()}"
    context = {"stockLevel": args.stock_level}
    timeout = httpx.Timeout(args.request_timeout)
    async with httpx.AsyncClient(base_url=args.base_url, timeout=timeout) as client:
        metrics_before: Sequence[MetricSample] = ()
        if not args.skip_metrics:
            metrics_before = await fetch_metrics(client, args.metrics_path)

        await _call(client, "PUT", f"/prices/{sku}", expected=200, payload={"price": args.base_price})
        rule, _ = await _call(client, "POST", "/pricing-rules", expected=201, payload=build_rule(sku))
        rule_id = rule["id"]

        preview, preview_ms = await _call(
            client, "POST", f"/pricing-rules/{rule_id}/preview", expected=200, payload=context
        )
        applied, apply_ms = await _call(client, "POST", f"/pricing-rules/{rule_id}/apply", expected=200, payload=context)
        if applied["price"] != preview["newPrice"]:
            raise ProbeError(
                "Applied price differs from preview",
                context={"preview": preview["newPrice"], "applied": applied["price"], "ruleId": rule_id},
            )
        if preview["wouldApply"] and not applied["applied"]:
            raise ProbeError("Rule was expected to change the price", context={"ruleId": rule_id})
        if apply_ms > args.max_apply_ms:
            raise ProbeError(
                "Rule application latency exceeded threshold",
                context={"apply_ms": round(apply_ms, 2), "threshold_ms": args.max_apply_ms},
            )

        rollback_ms = 0.0
        if applied["applied"]:
            rollback, rollback_ms = await _call(client, "POST", f"/pricing-rules/{rule_id}/rollback", expected=200)
            if rollback["newPrice"] != preview["currentPrice"]:
                raise ProbeError(
                    "Rollback did not restore the seeded price",
                    context={"expected": preview["currentPrice"], "actual": rollback["newPrice"]},
                )

        changes, _ = await _call(client, "GET", f"/prices/{sku}/changes", expected=200)

        metric_results: List[Dict[str, Any]] = []
        if not args.skip_metrics and applied["applied"]:
            metrics_after = await fetch_metrics(client, args.metrics_path)
            for name, labels in (
                ("pricing_rule_evaluations_total", {"rule_type": "inventory_based", "outcome": "changed"}),
                ("pricing_price_changes_total", {"change_type": "rule"}),
                ("pricing_price_changes_total", {"change_type": "rollback"}),
            ):
                before = find_metric_value(metrics_before, name, labels=labels)
                after = find_metric_value(metrics_after, name, labels=labels)
                if after - before < 1:
                    raise ProbeError(f"{name} did not increment", context={"labels": labels, "delta": after - before})
                metric_results.append({"name": name, "labels": labels, "delta": after - before})

        # The rule now has history, so this archives it rather than removing it.
        await client.delete(f"/pricing-rules/{rule_id}")
        return {
            "status": "ok",
            "sku": sku,
            "ruleId": rule_id,
            "previewPrice": preview["newPrice"],
            "changesRecorded": changes["total"],
            "durationsMs": {
                "preview": round(preview_ms, 2),
                "apply": round(apply_ms, 2),
                "rollback": round(rollback_ms, 2),
            },
            "metrics": metric_results,
        }


async def main_async() -> int:
    args = parse_args()
    try:
        result = await run_probe(args)
    except ProbeError as exc:
        payload = {"status": "error", "message": str(exc), "context": exc.context}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1
    except httpx.HTTPError as exc:
        payload = {"status": "error", "message": str(exc), "context": {"exc_type": exc.__class__.__name__}}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
