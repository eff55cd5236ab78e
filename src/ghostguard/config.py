"""
config.py – Immutable pipeline configuration
============================================

Configuration is built once, validated, and then passed by value to every
stage. Sources, lowest precedence first:

1. Dataclass defaults below
2. YAML file (``load_config(path)``)
3. ``GHOSTGUARD_*`` environment variables (plus ``COMFYUI_URL``)

Invalid or unknown keys fail fast with ``ConfigError``; nothing is validated
lazily at request time.

Example YAML:

    gates:
      symmetry: {min_threshold: 0.95, tolerance: 0.02}
      edges: {max_roughness: 2.0}
    routing:
      primary_route: auto
    retry:
      max_retries: 1
      delay_ms: 3000
    qa:
      commercial: {overall_quality_threshold: 0.95}
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields, is_dataclass, MISSING
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import ConfigError
from .models import CAVITY_REGIONS, Route

logger = logging.getLogger("ghostguard.config")

# ---------------------------------------------------------------------------
# Quality gates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SymmetryConfig:
    min_threshold: float = 0.95
    tolerance: float = 0.02


@dataclass(frozen=True)
class EdgeConfig:
    max_roughness: float = 2.0
    warning_ratio: float = 0.8


@dataclass(frozen=True)
class CompletenessConfig:
    min_coverage: float = 0.90
    expected_polygons: int = 4


@dataclass(frozen=True)
class CavityConfig:
    required_holes: Tuple[str, ...] = CAVITY_REGIONS


@dataclass(frozen=True)
class StructureConfig:
    shoulder_range: Tuple[float, float] = (0.3, 0.7)
    neck_range: Tuple[float, float] = (0.05, 0.25)


@dataclass(frozen=True)
class GateConfig:
    symmetry: SymmetryConfig = field(default_factory=SymmetryConfig)
    edges: EdgeConfig = field(default_factory=EdgeConfig)
    completeness: CompletenessConfig = field(default_factory=CompletenessConfig)
    cavities: CavityConfig = field(default_factory=CavityConfig)
    structure: StructureConfig = field(default_factory=StructureConfig)


# ---------------------------------------------------------------------------
# Routing, retry, fail-safe
# ---------------------------------------------------------------------------

ROUTE_CHOICES = ("auto", Route.PRIMARY.value, Route.FALLBACK.value)


@dataclass(frozen=True)
class RoutingConfig:
    primary_route: str = "auto"
    primary_preferred_threshold: float = 0.05
    fallback_required_threshold: float = 0.70
    quality_score_threshold: float = 0.85


@dataclass(frozen=True)
class RetryConfig:
    enabled: bool = True
    max_retries: int = 1
    delay_ms: int = 3000
    retry_conditions: Tuple[str, ...] = ("api failure", "quality failure", "policy violation", "timeout")
    route_conditions: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: {
        Route.PRIMARY.value: ("transport", "size", "timeout", "quota", "rate limit", "network"),
        Route.FALLBACK.value: ("gpu", "memory", "workflow", "resource", "timeout"),
    })

    def conditions_for(self, route: Route) -> Tuple[str, ...]:
        return tuple(self.retry_conditions) + tuple(self.route_conditions.get(route.value, ()))


@dataclass(frozen=True)
class FailSafeConfig:
    guaranteed_completion: bool = True
    max_total_attempts: int = 3
    route_timeouts_ms: Dict[str, int] = field(default_factory=lambda: {
        Route.PRIMARY.value: 60_000,
        Route.FALLBACK.value: 180_000,
    })

    def timeout_for(self, route: Route) -> float:
        """Per-call timeout in seconds."""
        return self.route_timeouts_ms[route.value] / 1000.0


@dataclass(frozen=True)
class PerformanceConfig:
    # Reserved flags; none of them changes behavior.
    enable_caching: bool = False
    parallel_evaluation: bool = False
    route_optimization: bool = False


# ---------------------------------------------------------------------------
# Post-generation QA
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VisualCriteria:
    edge_sharpness: float = 0.85
    texture_preservation: float = 0.80
    noise_reduction: float = 0.90
    color_accuracy_delta_e: float = 3.0


@dataclass(frozen=True)
class GeometricCriteria:
    proportion_accuracy: float = 0.95
    symmetry_consistency: float = 0.95
    dimensional_stability: float = 0.90
    structural_integrity: float = 0.92


@dataclass(frozen=True)
class TechnicalCriteria:
    min_resolution: int = 2048
    allowed_formats: Tuple[str, ...] = ("PNG", "JPEG", "WEBP")
    max_file_size_mb: float = 10.0
    pass_threshold: float = 0.95


@dataclass(frozen=True)
class CommercialCriteria:
    overall_quality_threshold: float = 0.95
    brand_compliance: float = 0.90
    market_readiness: float = 0.88
    technical_standards: float = 0.92


@dataclass(frozen=True)
class RecommendationFloors:
    visual: float = 0.85
    geometric: float = 0.90
    technical: float = 0.95
    commercial: float = 0.90


@dataclass(frozen=True)
class SeverityBands:
    critical_below: float = 0.70
    warning_below: float = 0.85


@dataclass(frozen=True)
class FallbackTriggers:
    # Advisory: logged by the scorer, never acted on.
    automatic_fallback: bool = True
    quality_threshold: float = 0.80


@dataclass(frozen=True)
class QAConfig:
    visual: VisualCriteria = field(default_factory=VisualCriteria)
    geometric: GeometricCriteria = field(default_factory=GeometricCriteria)
    technical: TechnicalCriteria = field(default_factory=TechnicalCriteria)
    commercial: CommercialCriteria = field(default_factory=CommercialCriteria)
    recommendation_floors: RecommendationFloors = field(default_factory=RecommendationFloors)
    severity: SeverityBands = field(default_factory=SeverityBands)
    fallback_triggers: FallbackTriggers = field(default_factory=FallbackTriggers)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendConfig:
    gemini_model: str = "gemini-2.5-flash-image-preview"
    comfyui_url: str = "http://127.0.0.1:8188"
    comfyui_poll_interval: float = 1.0
    max_prompt_chars: int = 700


@dataclass(frozen=True)
class AlertConfig:
    webhook_url: Optional[str] = None
    timeout: float = 10.0
    notify_on_warning: bool = False


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    gates: GateConfig = field(default_factory=GateConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    fail_safe: FailSafeConfig = field(default_factory=FailSafeConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    qa: QAConfig = field(default_factory=QAConfig)
    backends: BackendConfig = field(default_factory=BackendConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    def __post_init__(self):
        ensure_valid(self.validate())

    def validate(self) -> List[str]:
        errors = validate_gates(self.gates)
        errors += validate_routing(self.routing)
        errors += validate_retry(self.retry)
        errors += validate_fail_safe(self.fail_safe, self.retry)

        if self.performance.parallel_evaluation:
            errors.append("performance.parallel_evaluation is not supported; routes run sequentially")

        errors += validate_qa(self.qa)
        return errors

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PipelineConfig":
        return _build(cls, data, "config")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
# Each function returns a list of problems for one section. PipelineConfig
# runs them all; components built from a bare section run their own.

def _unit(errors: List[str], name: str, value: float):
    if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        errors.append(f"{name} must be within [0, 1]")


def ensure_valid(errors: List[str]):
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))


def validate_gates(g: GateConfig) -> List[str]:
    errors: List[str] = []
    _unit(errors, "gates.symmetry.min_threshold", g.symmetry.min_threshold)
    _unit(errors, "gates.symmetry.tolerance", g.symmetry.tolerance)
    _unit(errors, "gates.edges.warning_ratio", g.edges.warning_ratio)
    _unit(errors, "gates.completeness.min_coverage", g.completeness.min_coverage)
    if g.edges.max_roughness <= 0:
        errors.append("gates.edges.max_roughness must be > 0")
    if g.completeness.expected_polygons < 1:
        errors.append("gates.completeness.expected_polygons must be >= 1")
    for name, pair in (("shoulder_range", g.structure.shoulder_range),
                       ("neck_range", g.structure.neck_range)):
        if len(pair) != 2 or pair[0] < 0 or pair[0] > pair[1]:
            errors.append(f"gates.structure.{name} must be a non-negative (low, high) pair")
    return errors


def validate_routing(r: RoutingConfig) -> List[str]:
    errors: List[str] = []
    if r.primary_route not in ROUTE_CHOICES:
        errors.append(f"routing.primary_route must be one of {', '.join(ROUTE_CHOICES)}")
    _unit(errors, "routing.primary_preferred_threshold", r.primary_preferred_threshold)
    _unit(errors, "routing.fallback_required_threshold", r.fallback_required_threshold)
    _unit(errors, "routing.quality_score_threshold", r.quality_score_threshold)
    if r.primary_preferred_threshold > r.fallback_required_threshold:
        errors.append("routing.primary_preferred_threshold exceeds fallback_required_threshold")
    return errors


def validate_retry(retry: RetryConfig) -> List[str]:
    errors: List[str] = []
    if retry.max_retries < 0:
        errors.append("retry.max_retries must be >= 0")
    if retry.delay_ms < 0:
        errors.append("retry.delay_ms must be >= 0")
    unknown_routes = set(retry.route_conditions) - {route.value for route in Route}
    if unknown_routes:
        errors.append(f"retry.route_conditions has unknown routes: {', '.join(sorted(unknown_routes))}")
    return errors


def validate_fail_safe(fs: FailSafeConfig, retry: Optional[RetryConfig] = None) -> List[str]:
    errors: List[str] = []
    for route in Route:
        timeout = fs.route_timeouts_ms.get(route.value)
        if timeout is None or timeout <= 0:
            errors.append(f"fail_safe.route_timeouts_ms.{route.value} must be > 0")
    if fs.max_total_attempts < 2:
        errors.append("fail_safe.max_total_attempts must be >= 2")
    if retry is not None:
        # primary attempts + one fallback attempt
        needed = 1 + (retry.max_retries if retry.enabled else 0) + 1
        if needed > fs.max_total_attempts:
            errors.append(
                f"retry.max_retries={retry.max_retries} needs {needed} attempts, "
                f"above fail_safe.max_total_attempts={fs.max_total_attempts}"
            )
    return errors


def validate_qa(qa: QAConfig) -> List[str]:
    errors: List[str] = []
    _unit(errors, "qa.commercial.overall_quality_threshold", qa.commercial.overall_quality_threshold)
    _unit(errors, "qa.fallback_triggers.quality_threshold", qa.fallback_triggers.quality_threshold)
    if qa.severity.critical_below > qa.severity.warning_below:
        errors.append("qa.severity.critical_below exceeds warning_below")
    if qa.visual.color_accuracy_delta_e <= 0:
        errors.append("qa.visual.color_accuracy_delta_e must be > 0")
    return errors


def _sequence(value: Any, path: str) -> Tuple[Any, ...]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{path} must be a list, got {type(value).__name__}")
    return tuple(value)


def _build(cls, data: Optional[Mapping[str, Any]], path: str):
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path} must be a mapping, got {type(data).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        f = known[name]
        default = f.default if f.default is not MISSING else f.default_factory()
        if is_dataclass(default):
            kwargs[name] = _build(type(default), value, f"{path}.{name}")
        elif isinstance(default, tuple):
            kwargs[name] = _sequence(value, f"{path}.{name}")
        elif isinstance(default, dict):
            if not isinstance(value, Mapping):
                raise ConfigError(f"{path}.{name} must be a mapping, got {type(value).__name__}")
            listy = any(isinstance(v, tuple) for v in default.values())
            kwargs[name] = {
                k: _sequence(v, f"{path}.{name}.{k}") if listy else v for k, v in value.items()
            }
        else:
            kwargs[name] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Malformed configuration at {path}: {e}", cause=e) from e


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], type]] = {
    "GHOSTGUARD_PRIMARY_ROUTE": (("routing", "primary_route"), str),
    "GHOSTGUARD_MAX_RETRIES": (("retry", "max_retries"), int),
    "GHOSTGUARD_RETRY_DELAY_MS": (("retry", "delay_ms"), int),
    "GHOSTGUARD_COMMERCIAL_THRESHOLD": (("qa", "commercial", "overall_quality_threshold"), float),
    "GHOSTGUARD_GEMINI_MODEL": (("backends", "gemini_model"), str),
    "GHOSTGUARD_REVIEW_WEBHOOK_URL": (("alerts", "webhook_url"), str),
    "COMFYUI_URL": (("backends", "comfyui_url"), str),
}


def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    for var, (keys, caster) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError as e:
            raise ConfigError(f"{var}={raw!r} is not a valid {caster.__name__}", cause=e) from e
        section = data
        for key in keys[:-1]:
            section = section.setdefault(key, {})
        section[keys[-1]] = value
        logger.debug(f"Config override from {var}: {'.'.join(keys)}={value!r}")
    return data


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """Load YAML config (optional), apply environment overrides, validate."""
    data: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {config_path} is not valid YAML: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        logger.info(f"Loaded configuration from {config_path}")

    data = apply_env_overrides(data, os.environ if env is None else env)
    return PipelineConfig.from_dict(data)
