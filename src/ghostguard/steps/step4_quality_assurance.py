#!/usr/bin/env python3
"""
step4_quality_assurance.py – Step 4/4 Post-Generation Quality Assurance
=======================================================================

Score the generated image for commercial acceptability.

Dimensions (each a weighted sum of sub-measurements in [0, 1]):
- Visual:     color accuracy 0.3, edge sharpness 0.3, texture 0.2, noise reduction 0.2
- Geometric:  proportion 0.3, symmetry 0.3, dimensional stability 0.2, structure 0.2
- Technical:  fraction of passed checks (resolution, format, file size, metadata)
- Commercial: brand compliance 0.4, market readiness 0.3, technical standards 0.3

Overall = visual 30% + geometric 25% + technical 20% + commercial 25%
Commercially acceptable when overall >= 0.95.

Severity (overall score): < 0.70 critical, [0.70, 0.85) warning, >= 0.85 pass.

Image measurements (optional, when only the rendered file is available):
- Color: CIEDE2000 mean vs primary hex (LAB space)
- Sharpness: Laplacian variance on the garment region
- Texture: local contrast on the garment region
- Noise: median-filter residual on the garment region

The automatic-fallback flag in the QA configuration is advisory only: a low
score is logged, never fed back into routing.

Dependencies: opencv-python numpy pillow
"""

from __future__ import annotations

import json
import argparse
import logging
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import cv2
from PIL import Image

from ..config import QAConfig, TechnicalCriteria, ensure_valid, load_config, validate_qa
from ..errors import GhostPipelineError, QualityValidationError
from ..models import (
    DimensionScore,
    IssueBuckets,
    QualityAssessmentResult,
    QualityMetrics,
)

logger = logging.getLogger("ghostguard.qa")

DIMENSION_WEIGHTS: Dict[str, float] = {
    "visual": 0.30,
    "geometric": 0.25,
    "technical": 0.20,
    "commercial": 0.25,
}

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VisualMeasurements:
    color_accuracy: float
    edge_sharpness: float
    texture_preservation: float
    noise_reduction: float
    color_delta_e: Optional[float] = None

    @property
    def delta_e(self) -> float:
        """Measured ΔE, or the estimate implied by color accuracy (1.0 -> 0, 0.7 -> 3)."""
        if self.color_delta_e is not None:
            return self.color_delta_e
        return (1.0 - self.color_accuracy) * 10.0


@dataclass(frozen=True)
class RefinementMetrics:
    """Geometric measurements carried over from mask refinement."""
    proportion_score: float
    symmetry_score: float
    edge_quality: float
    dimensional_stability: float = 1.0

    @classmethod
    def from_quality_metrics(
        cls,
        metrics: QualityMetrics,
        completeness: float = 1.0,
        max_roughness: float = 2.0,
    ) -> "RefinementMetrics":
        # 0.8 at the gate's roughness limit
        edge_quality = max(0.0, 1.0 - metrics.edge_roughness_px / (max_roughness * 5.0))
        shoulder = _band_score(metrics.shoulder_width_ratio, 0.3, 0.7)
        neck = _band_score(metrics.neck_inner_ratio, 0.05, 0.25)
        return cls(
            proportion_score=round((shoulder + neck) / 2.0, 4),
            symmetry_score=metrics.symmetry,
            edge_quality=round(edge_quality, 4),
            dimensional_stability=completeness,
        )


@dataclass(frozen=True)
class TechnicalChecks:
    resolution_maintenance: bool = True
    format_compliance: bool = True
    file_size_optimization: bool = True
    metadata_integrity: bool = True

    @property
    def score(self) -> float:
        checks = list(asdict(self).values())
        return sum(1 for ok in checks if ok) / len(checks)


@dataclass(frozen=True)
class CommercialMeasurements:
    brand_compliance: float
    market_readiness: float
    technical_standards: float


@dataclass(frozen=True)
class RenderedOutput:
    """The generated image, either pre-measured or as a file to measure."""
    image_path: Optional[Path] = None
    mask_path: Optional[Path] = None
    target_hex: Optional[str] = None
    visual: Optional[VisualMeasurements] = None
    technical: Optional[TechnicalChecks] = None


@dataclass(frozen=True)
class ScoringContext:
    session_id: str = ""
    commercial: Optional[CommercialMeasurements] = None


def _band_score(value: float, low: float, high: float) -> float:
    if low <= value <= high:
        return 1.0
    distance = (low - value) if value < low else (value - high)
    return max(0.0, 1.0 - distance / (high - low))


def combine_dimension_scores(visual: float, geometric: float, technical: float, commercial: float) -> float:
    return (
        visual * DIMENSION_WEIGHTS["visual"]
        + geometric * DIMENSION_WEIGHTS["geometric"]
        + technical * DIMENSION_WEIGHTS["technical"]
        + commercial * DIMENSION_WEIGHTS["commercial"]
    )


def brand_compliance_level(score: float) -> str:
    if score >= 0.95:
        return "excellent"
    if score >= 0.90:
        return "good"
    if score >= 0.80:
        return "acceptable"
    return "poor"


# ---------------------------------------------------------------------------
# Image measurements
# ---------------------------------------------------------------------------

def _rgb_to_lab(rgb_u8: np.ndarray) -> np.ndarray:
    bgr = rgb_u8[..., ::-1]
    return cv2.cvtColor(np.ascontiguousarray(bgr), cv2.COLOR_BGR2LAB).astype(np.float32)


def delta_e_ciede2000(lab1: np.ndarray, lab2: np.ndarray) -> np.ndarray:
    """CIEDE2000 color difference, vectorised over the leading axes."""
    L1, a1, b1 = lab1[..., 0], lab1[..., 1], lab1[..., 2]
    L2, a2, b2 = lab2[..., 0], lab2[..., 1], lab2[..., 2]
    C1 = np.sqrt(a1**2 + b1**2)
    C2 = np.sqrt(a2**2 + b2**2)
    avg_C = (C1 + C2) / 2.0
    G = 0.5 * (1 - np.sqrt((avg_C**7) / (avg_C**7 + 25**7 + 1e-12)))
    a1p = (1 + G) * a1
    a2p = (1 + G) * a2
    C1p = np.sqrt(a1p**2 + b1**2)
    C2p = np.sqrt(a2p**2 + b2**2)
    avg_Cp = (C1p + C2p) / 2.0
    h1p = np.degrees(np.arctan2(b1, a1p)) % 360.0
    h2p = np.degrees(np.arctan2(b2, a2p)) % 360.0
    dhp = h2p - h1p
    dhp = np.where(dhp > 180, dhp - 360, dhp)
    dhp = np.where(dhp < -180, dhp + 360, dhp)
    dLp = L2 - L1
    dCp = C2p - C1p
    dHp = 2 * np.sqrt(C1p * C2p + 1e-12) * np.sin(np.radians(dhp) / 2.0)
    avg_Lp = (L1 + L2) / 2.0
    avg_hp = (h1p + h2p) / 2.0
    avg_hp = np.where(np.abs(h1p - h2p) > 180, avg_hp + 180, avg_hp) % 360.0
    T = (
        1
        - 0.17 * np.cos(np.radians(avg_hp - 30))
        + 0.24 * np.cos(np.radians(2 * avg_hp))
        + 0.32 * np.cos(np.radians(3 * avg_hp + 6))
        - 0.20 * np.cos(np.radians(4 * avg_hp - 63))
    )
    Sl = 1 + (0.015 * (avg_Lp - 50) ** 2) / np.sqrt(20 + (avg_Lp - 50) ** 2 + 1e-12)
    Sc = 1 + 0.045 * avg_Cp
    Sh = 1 + 0.015 * avg_Cp * T
    d_ro = 30 * np.exp(-((avg_hp - 275) / 25) ** 2)
    Rc = 2 * np.sqrt((avg_Cp**7) / (avg_Cp**7 + 25**7 + 1e-12))
    Rt = -Rc * np.sin(np.radians(2 * d_ro))
    dE = np.sqrt(
        (dLp / (Sl + 1e-12)) ** 2
        + (dCp / (Sc + 1e-12)) ** 2
        + (dHp / (Sh + 1e-12)) ** 2
        + Rt * (dCp / (Sc + 1e-12)) * (dHp / (Sh + 1e-12))
    )
    return dE.astype(np.float32)


def hex_to_rgb(hex_str: str) -> Tuple[int, int, int]:
    h = hex_str.strip().lstrip("#")
    if len(h) != 6:
        raise ValueError(f"Expected a 6-digit hex color, got {hex_str!r}")
    return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)


def _garment_mask(image: Image.Image, mask: Optional[np.ndarray]) -> np.ndarray:
    w, h = image.size
    if mask is None:
        # No mask: treat every non-white pixel as garment
        gray = np.array(image.convert("L"))
        return ((gray < 240) * 255).astype(np.uint8)
    if mask.shape != (h, w):
        mask = cv2.resize(mask, (w, h), interpolation=cv2.INTER_NEAREST)
    return np.where(mask > 127, 255, 0).astype(np.uint8)


def measure_visual_quality(
    image: Image.Image,
    target_hex: str,
    mask: Optional[np.ndarray] = None,
) -> VisualMeasurements:
    rgb = np.array(image.convert("RGB"), dtype=np.uint8)
    gray = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
    garment = _garment_mask(image, mask)
    region = garment > 0
    if np.count_nonzero(region) < 10:
        raise QualityValidationError("Rendered image has no measurable garment region")

    target = np.full_like(rgb, hex_to_rgb(target_hex), dtype=np.uint8)
    dE = delta_e_ciede2000(_rgb_to_lab(rgb)[region], _rgb_to_lab(target)[region])
    mean_delta_e = float(np.mean(dE))

    laplacian = cv2.Laplacian(cv2.bitwise_and(gray, gray, mask=garment), cv2.CV_64F)
    sharpness = min(1.0, float(np.var(laplacian[region])) / 1000.0)

    texture = min(1.0, float(np.std(gray[region])) / 40.0)

    residual = gray.astype(np.float32) - cv2.medianBlur(gray, 3).astype(np.float32)
    noise = max(0.0, 1.0 - float(np.std(residual[region])) / 20.0)

    return VisualMeasurements(
        color_accuracy=round(max(0.0, 1.0 - mean_delta_e / 10.0), 4),
        edge_sharpness=round(sharpness, 4),
        texture_preservation=round(texture, 4),
        noise_reduction=round(noise, 4),
        color_delta_e=round(mean_delta_e, 3),
    )


def check_technical_output(path: Path, criteria: Optional[TechnicalCriteria] = None) -> TechnicalChecks:
    criteria = criteria or TechnicalCriteria()
    path = Path(path)
    with Image.open(path) as img:
        fmt = (img.format or "").upper()
        width, height = img.size
        mode = img.mode
        try:
            img.verify()
            intact = True
        except (OSError, SyntaxError) as e:
            logger.warning(f"Image verification failed for {path.name}: {e}")
            intact = False
    size_mb = path.stat().st_size / (1024 * 1024)
    return TechnicalChecks(
        resolution_maintenance=min(width, height) >= criteria.min_resolution,
        format_compliance=fmt in criteria.allowed_formats,
        file_size_optimization=size_mb <= criteria.max_file_size_mb,
        metadata_integrity=intact and mode in ("RGB", "RGBA"),
    )


# ---------------------------------------------------------------------------
# QA Scorer
# ---------------------------------------------------------------------------

class QualityAssuranceScorer:
    """Combine visual, geometric, technical and commercial sub-scores."""

    def __init__(self, config: Optional[QAConfig] = None):
        self.config = config or QAConfig()
        ensure_valid(validate_qa(self.config))

    def score(
        self,
        rendered: RenderedOutput,
        refinement: RefinementMetrics,
        context: Optional[ScoringContext] = None,
    ) -> QualityAssessmentResult:
        context = context or ScoringContext()
        start = time.perf_counter()
        try:
            visual_m = rendered.visual or self._measure_visual(rendered)
            technical_m = rendered.technical or self._check_technical(rendered)
            result = self._assess(visual_m, refinement, technical_m, context, start)
        except GhostPipelineError:
            raise
        except Exception as e:
            logger.error(f"Quality validation failed after {time.perf_counter() - start:.2f}s: {e}")
            raise QualityValidationError(f"Quality validation failed: {e}", cause=e) from e

        logger.info(quality_summary(result))
        triggers = self.config.fallback_triggers
        if triggers.automatic_fallback and result.overall_score < triggers.quality_threshold:
            logger.warning(
                f"[{context.session_id}] Overall {result.overall_score:.3f} below automatic-fallback "
                f"threshold {triggers.quality_threshold:.2f}; advisory only, no re-route"
            )
        return result

    def _measure_visual(self, rendered: RenderedOutput) -> VisualMeasurements:
        if rendered.image_path is None or rendered.target_hex is None:
            raise QualityValidationError("Visual measurements need either pre-measured values or image_path + target_hex")
        mask = None
        if rendered.mask_path is not None:
            with Image.open(rendered.mask_path) as mask_img:
                mask = np.array(mask_img.convert("L"))
        with Image.open(rendered.image_path) as img:
            return measure_visual_quality(img, rendered.target_hex, mask)

    def _check_technical(self, rendered: RenderedOutput) -> TechnicalChecks:
        if rendered.image_path is None:
            raise QualityValidationError("Technical checks need either pre-computed checks or image_path")
        return check_technical_output(rendered.image_path, self.config.technical)

    def _assess(
        self,
        visual_m: VisualMeasurements,
        refinement: RefinementMetrics,
        technical_m: TechnicalChecks,
        context: ScoringContext,
        start: float,
    ) -> QualityAssessmentResult:
        visual = self._visual(visual_m)
        geometric = self._geometric(refinement)
        technical = self._technical(technical_m)
        commercial_m = context.commercial or CommercialMeasurements(
            brand_compliance=visual_m.color_accuracy,
            market_readiness=(visual.score + geometric.score) / 2.0,
            technical_standards=technical.score,
        )
        commercial = self._commercial(commercial_m)

        overall = combine_dimension_scores(visual.score, geometric.score, technical.score, commercial.score)
        criteria = self.config.commercial
        acceptable = overall >= criteria.overall_quality_threshold

        return QualityAssessmentResult(
            overall_score=overall,
            commercial_acceptability=acceptable,
            visual=visual,
            geometric=geometric,
            technical=technical,
            commercial=commercial,
            issues=IssueBuckets(
                critical=tuple(self._critical(overall)),
                warnings=tuple(self._warnings(overall)),
                recommendations=tuple(self._recommendations(visual, geometric, technical, commercial, overall)),
            ),
            commercial_validation={
                "acceptability_score": commercial.score,
                "passes_commercial_standards": commercial.score >= criteria.overall_quality_threshold,
                "market_readiness": commercial_m.market_readiness >= criteria.market_readiness,
                "brand_compliance_level": brand_compliance_level(commercial_m.brand_compliance),
            },
            technical_validation={
                "color_accuracy_delta_e": round(visual_m.delta_e, 3),
                "edge_quality_score": visual_m.edge_sharpness,
                "geometric_consistency": geometric.score,
                "passes_quality_gates": technical.score >= self.config.technical.pass_threshold,
            },
            processing_time=round(time.perf_counter() - start, 4),
        )

    def _visual(self, m: VisualMeasurements) -> DimensionScore:
        c = self.config.visual
        score = m.color_accuracy * 0.3 + m.edge_sharpness * 0.3 + m.texture_preservation * 0.2 + m.noise_reduction * 0.2
        issues: List[str] = []
        if m.delta_e > c.color_accuracy_delta_e:
            issues.append("Color accuracy below commercial standards")
        if m.edge_sharpness < c.edge_sharpness:
            issues.append("Edge sharpness below quality threshold")
        if m.texture_preservation < c.texture_preservation:
            issues.append("Texture preservation below quality threshold")
        if m.noise_reduction < c.noise_reduction:
            issues.append("Noise reduction below quality threshold")
        return DimensionScore(score, tuple(issues))

    def _geometric(self, m: RefinementMetrics) -> DimensionScore:
        c = self.config.geometric
        score = m.proportion_score * 0.3 + m.symmetry_score * 0.3 + m.dimensional_stability * 0.2 + m.edge_quality * 0.2
        issues: List[str] = []
        if m.proportion_score < c.proportion_accuracy:
            issues.append("Proportion accuracy below threshold")
        if m.symmetry_score < c.symmetry_consistency:
            issues.append("Symmetry consistency below requirement")
        if m.dimensional_stability < c.dimensional_stability:
            issues.append("Dimensional stability below threshold")
        if m.edge_quality < c.structural_integrity:
            issues.append("Structural integrity below threshold")
        return DimensionScore(score, tuple(issues))

    def _technical(self, m: TechnicalChecks) -> DimensionScore:
        issues: List[str] = []
        if not m.resolution_maintenance:
            issues.append("Resolution not properly maintained")
        if not m.format_compliance:
            issues.append("Output format not compliant")
        if not m.file_size_optimization:
            issues.append("File size exceeds optimization limit")
        if not m.metadata_integrity:
            issues.append("Image metadata integrity check failed")
        return DimensionScore(m.score, tuple(issues))

    def _commercial(self, m: CommercialMeasurements) -> DimensionScore:
        c = self.config.commercial
        score = m.brand_compliance * 0.4 + m.market_readiness * 0.3 + m.technical_standards * 0.3
        issues: List[str] = []
        if m.brand_compliance < c.brand_compliance:
            issues.append("Brand compliance below threshold")
        if m.market_readiness < c.market_readiness:
            issues.append("Market readiness below threshold")
        if m.technical_standards < c.technical_standards:
            issues.append("Technical standards below threshold")
        return DimensionScore(score, tuple(issues))

    def _critical(self, overall: float) -> List[str]:
        if overall < self.config.severity.critical_below:
            return ["Overall quality below commercial minimum"]
        return []

    def _warnings(self, overall: float) -> List[str]:
        bands = self.config.severity
        if bands.critical_below <= overall < bands.warning_below:
            return ["Quality marginally acceptable, improvements recommended"]
        return []

    def _recommendations(
        self,
        visual: DimensionScore,
        geometric: DimensionScore,
        technical: DimensionScore,
        commercial: DimensionScore,
        overall: float,
    ) -> List[str]:
        floors = self.config.recommendation_floors
        recs: List[str] = []
        if visual.score < floors.visual:
            recs.append("Improve color accuracy and edge sharpness through better reference image quality")
        if geometric.score < floors.geometric:
            recs.append("Enhance mask refinement process for better proportion and symmetry")
        if technical.score < floors.technical:
            recs.append("Review technical pipeline for format compliance and resolution maintenance")
        if commercial.score < floors.commercial:
            recs.append("Enhance commercial quality standards alignment and brand compliance")
        if overall < self.config.commercial.overall_quality_threshold:
            recs.append("Consider fallback pipeline or additional processing passes for commercial readiness")
        return recs


def quality_summary(result: QualityAssessmentResult) -> str:
    parts = [
        f"Overall: {result.overall_score * 100:.1f}%",
        f"Visual: {result.visual.score * 100:.1f}%",
        f"Geometric: {result.geometric.score * 100:.1f}%",
        f"Technical: {result.technical.score * 100:.1f}%",
        f"Commercial: {'PASS' if result.commercial_acceptability else 'FAIL'}",
    ]
    return "[QualityAssurance] " + " | ".join(parts)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    from .step0_mask_metrics import StaticMetricsSource

    ap = argparse.ArgumentParser(description="Step 4/4 Post-Generation Quality Assurance")
    ap.add_argument("--image", required=True, help="Generated image to score")
    ap.add_argument("--artifacts", required=True, help="Mask artifacts JSON (geometry metrics)")
    ap.add_argument("--target-hex", required=True, help="Primary garment color, e.g. #4682B4")
    ap.add_argument("--mask", default=None, help="Optional garment mask PNG")
    ap.add_argument("--config", default=None, help="Pipeline configuration YAML")
    ap.add_argument("--out", default="step4", help="Output directory")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    config = load_config(args.config)
    artifacts = StaticMetricsSource(args.artifacts).collect()
    refinement = RefinementMetrics.from_quality_metrics(
        artifacts.metrics, max_roughness=config.gates.edges.max_roughness
    )
    rendered = RenderedOutput(
        image_path=Path(args.image),
        mask_path=Path(args.mask) if args.mask else None,
        target_hex=args.target_hex,
    )
    result = QualityAssuranceScorer(config.qa).score(rendered, refinement)

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    report_path = out_dir / "qa_report.json"
    report_path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")

    print(f"{'✅' if result.commercial_acceptability else '⚠️'} {quality_summary(result)}")
    print("📊 QA saved:", report_path)


if __name__ == "__main__":
    main()
