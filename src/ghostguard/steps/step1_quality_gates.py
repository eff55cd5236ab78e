#!/usr/bin/env python3
"""
step1_quality_gates.py – Step 1/4 Pre-Generation Quality Gates
==============================================================

Decide whether the mask artifacts are good enough to justify an expensive
generation call. Every gate runs on every call so one evaluation surfaces
every problem at once.

Gates:
1. Completeness: silhouette reference, "garment" polygon, polygon coverage
2. Symmetry: >= 95% (warning inside the +2% tolerance band)
3. Edge roughness: <= 2.0px (warning above 80% of the limit)
4. Cavity polarity (critical): neck, sleeve_l, sleeve_r must be holes
5. Structural sanity: shoulder/neck ratio bands (warnings), garment + neck present

Failure policy:
- ``inspect()`` returns the verdict and never raises for a bad mask
- ``evaluate()`` raises ``QualityGateFailure`` when any gate failed, so the
  generation stage cannot be reached by ignoring a return value

Outputs (CLI):
- step1/quality_gates.json

Dependencies: pyyaml (config file only)
"""

from __future__ import annotations

import json
import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..config import GateConfig, ensure_valid, load_config, validate_gates
from ..errors import QualityGateFailure
from ..models import (
    CAVITY_REGIONS,
    GateMetricsSummary,
    MaskArtifacts,
    QualityGateResult,
    dedupe,
)

logger = logging.getLogger("ghostguard.quality_gates")

# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

HOLE_ADVICE = "Convert neck and sleeve regions to holes for ghost mannequin effect"

RECOMMENDATIONS: Dict[str, str] = {
    "symmetry_below_threshold": "Apply bilateral symmetry correction to mask",
    "edges_too_rough": "Apply Gaussian smoothing or morphological operations to edges",
    "silhouette_missing": "Generate refined silhouette mask before proceeding",
    "incomplete_silhouette": "Improve segmentation to capture complete garment boundary",
    "garment_polygon_missing": "Ensure main garment polygon is generated",
    "incorrect_cavity_polarity": HOLE_ADVICE,
    "missing_critical_regions": "Regenerate mask polygons including garment and neck regions",
}


def recommendation_for(code: str) -> str:
    if code.endswith("_must_be_hole"):
        return HOLE_ADVICE
    return RECOMMENDATIONS.get(code, f"Address quality issue: {code}")


def validate_metric(value: float, threshold: float, operator: str = "gte") -> bool:
    """Compare a metric to a threshold with ``gte``, ``lte`` or ``eq`` (1e-4 tolerance)."""
    if operator == "gte":
        return value >= threshold
    if operator == "lte":
        return value <= threshold
    if operator == "eq":
        return abs(value - threshold) < 1e-4
    raise ValueError(f"Unknown operator: {operator}")


def quality_gate_summary(artifacts: MaskArtifacts) -> str:
    m = artifacts.metrics
    holes = sum(1 for p in artifacts.polygons if p.is_hole)
    parts = [
        f"Symmetry: {m.symmetry * 100:.1f}%",
        f"Edge roughness: {m.edge_roughness_px:.1f}px",
        f"Shoulder ratio: {m.shoulder_width_ratio:.2f}",
        f"Neck ratio: {m.neck_inner_ratio:.2f}",
        f"Polygons: {len(artifacts.polygons)}",
        f"Holes: {holes}",
    ]
    return "[QualityGates] " + " | ".join(parts)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class _Verdict:
    """Mutable scratchpad used while the gates run; frozen into a QualityGateResult."""

    def __init__(self):
        self.failed: List[str] = []
        self.warnings: List[str] = []
        self.details: List[str] = []
        self.holes: Dict[str, bool] = {}
        self.completeness = 0.0

    def fail(self, code: str, detail: str):
        self.failed.append(code)
        self.details.append(detail)


class QualityGateEngine:
    """Pure evaluator of the five pre-generation gates."""

    def __init__(self, config: Optional[GateConfig] = None):
        self.config = config or GateConfig()
        ensure_valid(validate_gates(self.config))

    def evaluate(self, artifacts: MaskArtifacts) -> QualityGateResult:
        result = self.inspect(artifacts)
        if not result.passed:
            logger.error(f"❌ Quality gates failed: {', '.join(result.failed_checks)}")
            raise QualityGateFailure(result)
        logger.info("✅ All quality gates passed")
        return result

    def inspect(self, artifacts: MaskArtifacts) -> QualityGateResult:
        logger.info(quality_gate_summary(artifacts))
        v = _Verdict()

        self._check_completeness(artifacts, v)
        self._check_symmetry(artifacts, v)
        self._check_edges(artifacts, v)
        self._check_cavity_polarity(artifacts, v)
        self._check_structure(artifacts, v)

        for warning in v.warnings:
            logger.warning(f"Quality gate warning: {warning}")

        return QualityGateResult(
            failed_checks=dedupe(v.failed),
            warnings=tuple(v.warnings),
            metrics=GateMetricsSummary(
                symmetry_score=artifacts.metrics.symmetry,
                edge_roughness=artifacts.metrics.edge_roughness_px,
                hole_validation=dict(v.holes),
                completeness_score=round(v.completeness, 4),
            ),
            recommendations=dedupe([recommendation_for(code) for code in v.failed]),
            details=tuple(v.details),
        )

    # Gate 1
    def _check_completeness(self, artifacts: MaskArtifacts, v: _Verdict):
        if not artifacts.refined_silhouette_url:
            v.fail("silhouette_missing", "Refined silhouette is missing")
            return

        if artifacts.find("garment") is None:
            v.fail("garment_polygon_missing", "Main garment polygon is missing")

        cfg = self.config.completeness
        v.completeness = min(len(artifacts.polygons) / cfg.expected_polygons, 1.0)
        if v.completeness < cfg.min_coverage:
            v.fail(
                "incomplete_silhouette",
                f"Silhouette completeness {v.completeness * 100:.1f}% below "
                f"{cfg.min_coverage * 100:.1f}% threshold",
            )

    # Gate 2
    def _check_symmetry(self, artifacts: MaskArtifacts, v: _Verdict):
        cfg = self.config.symmetry
        score = artifacts.metrics.symmetry
        if score < cfg.min_threshold:
            v.fail(
                "symmetry_below_threshold",
                f"Symmetry {score * 100:.1f}% below {cfg.min_threshold * 100:.1f}% threshold",
            )
        elif score < cfg.min_threshold + cfg.tolerance:
            v.warnings.append(f"Symmetry {score * 100:.1f}% is marginal")

    # Gate 3
    def _check_edges(self, artifacts: MaskArtifacts, v: _Verdict):
        cfg = self.config.edges
        roughness = artifacts.metrics.edge_roughness_px
        if roughness > cfg.max_roughness:
            v.fail(
                "edges_too_rough",
                f"Edge roughness {roughness:.1f}px exceeds {cfg.max_roughness}px threshold",
            )
        elif roughness > cfg.max_roughness * cfg.warning_ratio:
            v.warnings.append(f"Edge roughness {roughness:.1f}px is near threshold")

    # Gate 4
    def _check_cavity_polarity(self, artifacts: MaskArtifacts, v: _Verdict):
        holes = {p.name for p in artifacts.polygons if p.is_hole}
        for name in self.config.cavities.required_holes:
            v.holes[name] = name in holes
            if name not in holes:
                v.fail(f"{name}_must_be_hole", f"{name} must be marked as hole for ghost mannequin effect")

        solid = [p.name for p in artifacts.polygons if p.name in CAVITY_REGIONS and not p.is_hole]
        if solid:
            v.fail("incorrect_cavity_polarity", f"Solid cavities must be holes: {', '.join(solid)}")

    # Gate 5
    def _check_structure(self, artifacts: MaskArtifacts, v: _Verdict):
        cfg = self.config.structure
        m = artifacts.metrics
        low, high = cfg.shoulder_range
        if not low <= m.shoulder_width_ratio <= high:
            v.warnings.append(f"Shoulder width ratio {m.shoulder_width_ratio:.2f} may be unrealistic")
        low, high = cfg.neck_range
        if not low <= m.neck_inner_ratio <= high:
            v.warnings.append(f"Neck inner ratio {m.neck_inner_ratio:.2f} may be unrealistic")

        missing = [name for name in ("garment", "neck") if artifacts.find(name) is None]
        if missing:
            v.fail("missing_critical_regions", f"Missing critical regions: {', '.join(missing)}")


def pre_generation_checklist(
    artifacts: MaskArtifacts,
    config: Optional[GateConfig] = None,
) -> QualityGateResult:
    """Evaluate all gates; raises QualityGateFailure on any failure."""
    return QualityGateEngine(config).evaluate(artifacts)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    from .step0_mask_metrics import MaskImageMetricsSource, StaticMetricsSource

    ap = argparse.ArgumentParser(description="Step 1/4 Pre-Generation Quality Gates")
    source = ap.add_mutually_exclusive_group(required=True)
    source.add_argument("--artifacts", help="Mask artifacts JSON (from Step 0 or upstream)")
    source.add_argument("--mask", help="Binary garment mask PNG to measure")
    ap.add_argument("--config", default=None, help="Pipeline configuration YAML")
    ap.add_argument("--out", default="step1", help="Output directory")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    config = load_config(args.config)
    src = StaticMetricsSource(args.artifacts) if args.artifacts else MaskImageMetricsSource(args.mask)
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    result = QualityGateEngine(config.gates).inspect(src.collect())
    report_path = out_dir / "quality_gates.json"
    report_path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")

    if result.passed:
        print(f"✅ Quality gates passed: {report_path}")
        return
    print(f"❌ Quality gates failed: {', '.join(result.failed_checks)}")
    for detail in result.details:
        print(f"   - {detail}")
    raise SystemExit(2)


if __name__ == "__main__":
    main()
