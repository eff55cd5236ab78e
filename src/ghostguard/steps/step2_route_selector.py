#!/usr/bin/env python3
"""
step2_route_selector.py – Step 2/4 Route Selection
==================================================

Choose the generation backend for a session and commit to a fallback plan
before anything executes.

Routes:
- primary:  fast image model (Gemini Flash), cheap, sensitive to problematic content
- fallback: ComfyUI workflow, slower, more robust

Decision order:
1. Explicit ``routing.primary_route`` override (anything but "auto") always wins
2. Problematic content ratio > 0.70 -> fallback
3. Quality-score estimate < 0.85 -> fallback
4. Otherwise primary (moderate content above 0.05, low content below)

``confidence``, ``reasoning`` and ``expected_performance`` are for logs and
reports only; the executor never reads them.
"""

from __future__ import annotations

import json
import argparse
import logging
from typing import Dict, Optional, Tuple

from ..config import (
    FailSafeConfig,
    RoutingConfig,
    ensure_valid,
    load_config,
    validate_fail_safe,
    validate_routing,
)
from ..models import (
    ExpectedPerformance,
    FallbackPlan,
    Route,
    RouteDecision,
    RoutingSignals,
)

logger = logging.getLogger("ghostguard.router")

EXPECTED_PERFORMANCE: Dict[Route, ExpectedPerformance] = {
    Route.PRIMARY: ExpectedPerformance(estimated_time_ms=60_000, quality_score=0.85, success_rate=0.90),
    Route.FALLBACK: ExpectedPerformance(estimated_time_ms=120_000, quality_score=0.95, success_rate=0.88),
}

FALLBACK_CONDITIONS: Tuple[str, ...] = ("primary_route_failure", "retry_exhausted")


class RouteSelector:
    """Maps routing signals and static configuration to a RouteDecision."""

    def __init__(
        self,
        routing: Optional[RoutingConfig] = None,
        fail_safe: Optional[FailSafeConfig] = None,
    ):
        self.routing = routing or RoutingConfig()
        self.fail_safe = fail_safe or FailSafeConfig()
        ensure_valid(validate_routing(self.routing) + validate_fail_safe(self.fail_safe))

    def decide(self, signals: Optional[RoutingSignals] = None) -> RouteDecision:
        signals = signals or RoutingSignals()

        if self.routing.primary_route != "auto":
            selected = Route(self.routing.primary_route)
            confidence = 0.95
            reasoning = f"configuration override: {selected.value}"
        else:
            selected, confidence, reasoning = self._from_signals(signals)

        if signals.reason_code:
            reasoning = f"{reasoning} [{signals.reason_code}]"

        has_fallback = self.fail_safe.guaranteed_completion
        decision = RouteDecision(
            selected_route=selected,
            confidence=confidence,
            reasoning=reasoning,
            fallback_plan=FallbackPlan(
                has_fallback=has_fallback,
                fallback_route=selected.complement() if has_fallback else None,
                conditions=FALLBACK_CONDITIONS if has_fallback else (),
            ),
            expected_performance=EXPECTED_PERFORMANCE[selected],
        )
        logger.info(
            f"Route decision: {selected.value} (confidence {confidence:.2f}) - {reasoning}; "
            f"fallback: {decision.fallback_plan.fallback_route.value if has_fallback else 'none'}"
        )
        return decision

    def _from_signals(self, signals: RoutingSignals) -> Tuple[Route, float, str]:
        cfg = self.routing
        ratio = signals.problematic_content_ratio
        estimate = signals.quality_score_estimate

        if ratio > cfg.fallback_required_threshold:
            return Route.FALLBACK, 0.85, (
                f"problematic content {ratio * 100:.1f}% above "
                f"{cfg.fallback_required_threshold * 100:.0f}% requires fallback"
            )
        if estimate is not None and estimate < cfg.quality_score_threshold:
            return Route.FALLBACK, 0.75, (
                f"estimated quality {estimate:.2f} below {cfg.quality_score_threshold:.2f}"
            )
        if ratio > cfg.primary_preferred_threshold:
            return Route.PRIMARY, 0.9, f"moderate problematic content {ratio * 100:.1f}%, primary preferred"
        if ratio > 0 or estimate is not None:
            return Route.PRIMARY, 0.9, f"low problematic content {ratio * 100:.1f}%, primary safe"
        return Route.PRIMARY, 0.8, "default primary route"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    ap = argparse.ArgumentParser(description="Step 2/4 Route Selection")
    ap.add_argument("--content-ratio", type=float, default=0.0, help="Problematic (skin) content ratio 0-1")
    ap.add_argument("--quality-estimate", type=float, default=None, help="Upstream quality-score estimate 0-1")
    ap.add_argument("--config", default=None, help="Pipeline configuration YAML")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    config = load_config(args.config)
    signals = RoutingSignals.from_content_ratio(
        args.content_ratio,
        args.quality_estimate,
        fallback_threshold=config.routing.fallback_required_threshold,
        preferred_threshold=config.routing.primary_preferred_threshold,
    )
    decision = RouteSelector(config.routing, config.fail_safe).decide(signals)
    print(json.dumps(decision.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    main()
