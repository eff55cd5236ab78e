"""
Unit tests for Step 2: Route Selection.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from ghostguard.config import FailSafeConfig, RoutingConfig
from ghostguard.errors import ConfigError, ValidationError
from ghostguard.models import Route, RoutingSignals
from ghostguard.steps.step2_route_selector import EXPECTED_PERFORMANCE, RouteSelector


class TestRouteSelector:
    """Decision order: override, content ratio, quality estimate, default."""

    def test_default_is_primary(self):
        decision = RouteSelector().decide()

        assert decision.selected_route == Route.PRIMARY
        assert decision.confidence == 0.8
        assert decision.fallback_plan.has_fallback
        assert decision.fallback_plan.fallback_route == Route.FALLBACK
        assert decision.expected_performance == EXPECTED_PERFORMANCE[Route.PRIMARY]

    def test_high_content_ratio_selects_fallback(self):
        decision = RouteSelector().decide(RoutingSignals(problematic_content_ratio=0.8))

        assert decision.selected_route == Route.FALLBACK
        assert decision.confidence == 0.85
        assert decision.fallback_plan.fallback_route == Route.PRIMARY

    def test_low_quality_estimate_selects_fallback(self):
        decision = RouteSelector().decide(RoutingSignals(0.01, quality_score_estimate=0.6))
        assert decision.selected_route == Route.FALLBACK
        assert decision.confidence == 0.75

    def test_moderate_content_stays_primary(self):
        decision = RouteSelector().decide(RoutingSignals(0.3))
        assert decision.selected_route == Route.PRIMARY
        assert "moderate" in decision.reasoning

    def test_low_content_stays_primary(self):
        decision = RouteSelector().decide(RoutingSignals(0.02, quality_score_estimate=0.9))
        assert decision.selected_route == Route.PRIMARY
        assert decision.confidence == 0.9
        assert "low" in decision.reasoning

    @pytest.mark.parametrize("override", ["primary", "fallback"])
    def test_override_always_wins(self, override):
        selector = RouteSelector(RoutingConfig(primary_route=override))
        decision = selector.decide(RoutingSignals(0.95, quality_score_estimate=0.1))

        assert decision.selected_route == Route(override)
        assert decision.confidence == 0.95

    def test_no_fallback_without_guaranteed_completion(self):
        selector = RouteSelector(fail_safe=FailSafeConfig(guaranteed_completion=False))
        plan = selector.decide().fallback_plan

        assert not plan.has_fallback
        assert plan.fallback_route is None
        assert plan.conditions == ()

    def test_reason_code_in_reasoning(self):
        signals = RoutingSignals.from_content_ratio(0.75)
        decision = RouteSelector().decide(signals)

        assert signals.reason_code == "high_skin_content_75.0pct"
        assert decision.reasoning.endswith("[high_skin_content_75.0pct]")

    def test_decision_is_deterministic(self):
        signals = RoutingSignals(0.2, 0.9)
        assert RouteSelector().decide(signals) == RouteSelector().decide(signals)

    def test_invalid_routing_rejected(self):
        with pytest.raises(ConfigError):
            RouteSelector(RoutingConfig(primary_route="gpu-farm"))
        with pytest.raises(ConfigError):
            RouteSelector(RoutingConfig(fallback_required_threshold=-0.5))


class TestRoutingSignals:
    """Signal validation and reason codes."""

    def test_reason_codes(self):
        assert RoutingSignals.from_content_ratio(0.2).reason_code == "moderate_skin_content_20.0pct"
        assert RoutingSignals.from_content_ratio(0.01).reason_code == "low_skin_safe_primary"

    def test_out_of_range_ratio_rejected(self):
        with pytest.raises(ValidationError):
            RoutingSignals(problematic_content_ratio=1.5)

    def test_out_of_range_estimate_rejected(self):
        with pytest.raises(ValidationError):
            RoutingSignals(quality_score_estimate=-0.1)

    def test_complement(self):
        assert Route.PRIMARY.complement() == Route.FALLBACK
        assert Route.FALLBACK.complement() == Route.PRIMARY
