"""
models.py – Value types shared by every stage
=============================================

All types are frozen dataclasses created fresh per session. Sequences are
stored as tuples so two evaluations of the same input compare equal.

Inputs:   QualityMetrics, MaskPolygon, MaskArtifacts, RoutingSignals,
          GenerationRequest
Verdicts: QualityGateResult, RouteDecision, RouteExecutionResult,
          QualityAssessmentResult
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Mask artifacts
# ---------------------------------------------------------------------------

CAVITY_REGIONS: Tuple[str, ...] = ("neck", "sleeve_l", "sleeve_r")


def _unit_interval(name: str, value: float) -> float:
    value = float(value)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be within [0, 1], got {value}")
    return value


@dataclass(frozen=True)
class QualityMetrics:
    """Mask geometry measurements produced once per session by a MetricsSource."""
    symmetry: float
    edge_roughness_px: float
    shoulder_width_ratio: float
    neck_inner_ratio: float
    skin_pct: Optional[float] = None

    def __post_init__(self):
        for name in ("symmetry", "shoulder_width_ratio", "neck_inner_ratio"):
            object.__setattr__(self, name, _unit_interval(name, getattr(self, name)))
        roughness = float(self.edge_roughness_px)
        if math.isnan(roughness) or roughness < 0:
            raise ValidationError(f"edge_roughness_px must be >= 0, got {roughness}")
        object.__setattr__(self, "edge_roughness_px", roughness)
        if self.skin_pct is not None:
            object.__setattr__(self, "skin_pct", _unit_interval("skin_pct", self.skin_pct))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QualityMetrics":
        try:
            return cls(
                symmetry=data["symmetry"],
                edge_roughness_px=data["edge_roughness_px"],
                shoulder_width_ratio=data["shoulder_width_ratio"],
                neck_inner_ratio=data["neck_inner_ratio"],
                skin_pct=data.get("skin_pct"),
            )
        except KeyError as e:
            raise ValidationError(f"Quality metrics missing field: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Quality metrics malformed: {e}") from e


@dataclass(frozen=True)
class MaskPolygon:
    """Named mask region. ``is_hole`` marks a cavity rather than solid fill."""
    name: str
    points: Tuple[Tuple[float, float], ...] = ()
    is_hole: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MaskPolygon":
        if "name" not in data:
            raise ValidationError("Mask polygon missing 'name'")
        points = tuple((float(p[0]), float(p[1])) for p in data.get("points", ()))
        is_hole = data.get("is_hole", data.get("isHole", False))
        return cls(name=str(data["name"]), points=points, is_hole=bool(is_hole))


@dataclass(frozen=True)
class MaskArtifacts:
    refined_silhouette_url: str
    polygons: Tuple[MaskPolygon, ...]
    metrics: QualityMetrics

    def __post_init__(self):
        object.__setattr__(self, "polygons", tuple(self.polygons))

    def find(self, name: str) -> Optional[MaskPolygon]:
        for polygon in self.polygons:
            if polygon.name == name:
                return polygon
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MaskArtifacts":
        """Build from the JSON bundle written by the mask refinement step."""
        if "metrics" not in data:
            raise ValidationError("Mask artifacts missing 'metrics'")
        url = data.get("refined_silhouette_url", data.get("refinedSilhouetteUrl", "")) or ""
        return cls(
            refined_silhouette_url=str(url),
            polygons=tuple(MaskPolygon.from_dict(p) for p in data.get("polygons", ())),
            metrics=QualityMetrics.from_dict(data["metrics"]),
        )


# ---------------------------------------------------------------------------
# Gate verdict
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GateMetricsSummary:
    symmetry_score: float
    edge_roughness: float
    hole_validation: Dict[str, bool]
    completeness_score: float


@dataclass(frozen=True)
class QualityGateResult:
    """Verdict of one gate evaluation. ``passed`` is derived, never stored."""
    failed_checks: Tuple[str, ...]
    warnings: Tuple[str, ...]
    metrics: GateMetricsSummary
    recommendations: Tuple[str, ...]
    details: Tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return len(self.failed_checks) == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["passed"] = self.passed
        return data


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class Route(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"

    def complement(self) -> "Route":
        return Route.FALLBACK if self is Route.PRIMARY else Route.PRIMARY


@dataclass(frozen=True)
class RoutingSignals:
    """Upstream analysis signals consumed by the route selector."""
    problematic_content_ratio: float = 0.0
    quality_score_estimate: Optional[float] = None
    reason_code: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(
            self,
            "problematic_content_ratio",
            _unit_interval("problematic_content_ratio", self.problematic_content_ratio),
        )
        if self.quality_score_estimate is not None:
            object.__setattr__(
                self,
                "quality_score_estimate",
                _unit_interval("quality_score_estimate", self.quality_score_estimate),
            )

    @classmethod
    def from_content_ratio(
        cls,
        ratio: float,
        quality_score_estimate: Optional[float] = None,
        fallback_threshold: float = 0.70,
        preferred_threshold: float = 0.05,
    ) -> "RoutingSignals":
        """Tag a measured skin/problematic content ratio with an analysis reason code."""
        pct = ratio * 100
        if ratio > fallback_threshold:
            reason = f"high_skin_content_{pct:.1f}pct"
        elif ratio > preferred_threshold:
            reason = f"moderate_skin_content_{pct:.1f}pct"
        else:
            reason = "low_skin_safe_primary"
        return cls(ratio, quality_score_estimate, reason)


@dataclass(frozen=True)
class FallbackPlan:
    has_fallback: bool
    fallback_route: Optional[Route]
    conditions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ExpectedPerformance:
    estimated_time_ms: int
    quality_score: float
    success_rate: float


@dataclass(frozen=True)
class RouteDecision:
    """Committed before execution. ``confidence`` and ``reasoning`` are for logs only."""
    selected_route: Route
    confidence: float
    reasoning: str
    fallback_plan: FallbackPlan
    expected_performance: Optional[ExpectedPerformance] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Backend I/O
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    reference_images: Tuple[str, ...] = ()
    session_id: str = ""
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "reference_images", tuple(self.reference_images))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def with_options(self, **options: Any) -> "GenerationRequest":
        merged = dict(self.options)
        merged.update(options)
        return replace(self, options=merged)


@dataclass(frozen=True)
class GenerationOutcome:
    """What a backend returns. A backend may also raise a BackendFailure."""
    success: bool
    result: Any = None
    error_details: Optional[str] = None
    retryable: Optional[bool] = None

    @classmethod
    def ok(cls, result: Any) -> "GenerationOutcome":
        return cls(True, result)

    @classmethod
    def failed(cls, error_details: str, retryable: Optional[bool] = None) -> "GenerationOutcome":
        return cls(False, None, error_details, retryable)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

USER_UNAVAILABLE_MESSAGE = "Generation temporarily unavailable. Please try again later."


@dataclass(frozen=True)
class AttemptRecord:
    route: Route
    attempt: int
    success: bool
    execution_time: float
    failure_reason: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class RouteExecutionResult:
    """Terminal outcome of the route executor. ``final_result`` is always True."""
    route: Route
    success: bool
    attempt: int
    execution_time: float
    failure_reason: Optional[str] = None
    fallback_triggered: bool = False
    final_result: bool = True
    result: Any = None
    attempts: Tuple[AttemptRecord, ...] = ()

    @property
    def user_message(self) -> Optional[str]:
        # Backend error text never reaches end users.
        return None if self.success else USER_UNAVAILABLE_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("result")
        return data


# ---------------------------------------------------------------------------
# Quality assessment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DimensionScore:
    score: float
    issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IssueBuckets:
    critical: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QualityAssessmentResult:
    overall_score: float
    commercial_acceptability: bool
    visual: DimensionScore
    geometric: DimensionScore
    technical: DimensionScore
    commercial: DimensionScore
    issues: IssueBuckets
    commercial_validation: Dict[str, Any] = field(default_factory=dict)
    technical_validation: Dict[str, Any] = field(default_factory=dict)
    processing_time: float = 0.0

    @property
    def severity(self) -> str:
        if self.issues.critical:
            return "critical"
        if self.issues.warnings:
            return "warning"
        return "pass"

    @property
    def dimensions(self) -> Dict[str, DimensionScore]:
        return {
            "visual": self.visual,
            "geometric": self.geometric,
            "technical": self.technical,
            "commercial": self.commercial,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity
        return data


def dedupe(values: Sequence[str]) -> Tuple[str, ...]:
    """Drop repeated strings while keeping first-seen order."""
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return tuple(seen)
