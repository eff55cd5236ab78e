#!/usr/bin/env python3
"""
step0_mask_metrics.py – Step 0/4 Mask Metrics Source
====================================================

Supplies the mask artifacts (silhouette reference, named polygons, geometry
metrics) that the quality gate consumes.

Sources:
- StaticMetricsSource: artifacts already measured upstream (JSON bundle)
- MaskImageMetricsSource: measure a binary garment mask (PNG) directly

Measurements (MaskImageMetricsSource):
- Symmetry: IoU of the garment mask and its horizontal mirror
- Edge roughness: mean px distance between outer contour and its smoothed copy
- Shoulder width ratio: mask width at 20% height / widest row
- Neck inner ratio: neck opening width / garment width
- Polygons: outer contour -> "garment"; interior holes -> neck / sleeve_l / sleeve_r

Dependencies: opencv-python numpy pillow
"""

from __future__ import annotations

import json
import argparse
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import cv2
from PIL import Image

from ..errors import ValidationError
from ..models import MaskArtifacts, MaskPolygon, QualityMetrics

logger = logging.getLogger("ghostguard.mask_metrics")

# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class MetricsSource(ABC):
    """Produces one immutable MaskArtifacts bundle per session."""

    @abstractmethod
    def collect(self) -> MaskArtifacts:
        ...


class StaticMetricsSource(MetricsSource):
    """Artifacts measured elsewhere, handed over as a dict or JSON file."""

    def __init__(self, data: Union[Mapping[str, Any], str, Path]):
        self._data = data

    def collect(self) -> MaskArtifacts:
        data = self._data
        if isinstance(data, (str, Path)):
            path = Path(data)
            if not path.exists():
                raise ValidationError(f"Mask artifacts file not found: {path}")
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValidationError(f"Mask artifacts file {path} is not valid JSON: {e}") from e
        return MaskArtifacts.from_dict(data)


# ---------------------------------------------------------------------------
# Mask measurements
# ---------------------------------------------------------------------------

def load_binary_mask(path: Path) -> np.ndarray:
    """Load a mask image as uint8 {0, 255}."""
    with Image.open(path) as img:
        mask = np.array(img.convert("L"))
    return np.where(mask > 127, 255, 0).astype(np.uint8)


def _bbox(mask: np.ndarray) -> Tuple[int, int, int, int]:
    ys, xs = np.nonzero(mask)
    if xs.size == 0:
        raise ValidationError("Garment mask is empty")
    return int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1


def compute_symmetry(mask: np.ndarray) -> float:
    """IoU between the garment and its left-right mirror inside the bbox."""
    x0, y0, x1, y1 = _bbox(mask)
    crop = mask[y0:y1, x0:x1] > 0
    mirrored = crop[:, ::-1]
    union = np.count_nonzero(crop | mirrored)
    if union == 0:
        return 0.0
    return float(np.count_nonzero(crop & mirrored) / union)


def _outer_contour(mask: np.ndarray) -> np.ndarray:
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    if not contours:
        raise ValidationError("Garment mask has no contour")
    return max(contours, key=cv2.contourArea)


def compute_edge_roughness(mask: np.ndarray, window: int = 15) -> float:
    """Mean distance (px) between contour points and a circular moving average of them."""
    contour = _outer_contour(mask).reshape(-1, 2).astype(np.float64)
    n = len(contour)
    if n < window:
        return 0.0
    pad = window // 2
    wrapped = np.concatenate([contour[-pad:], contour, contour[:pad]])
    kernel = np.ones(window) / window
    smooth_x = np.convolve(wrapped[:, 0], kernel, mode="valid")
    smooth_y = np.convolve(wrapped[:, 1], kernel, mode="valid")
    smoothed = np.stack([smooth_x, smooth_y], axis=1)[:n]
    return float(np.mean(np.linalg.norm(contour - smoothed, axis=1)))


def _row_width(row: np.ndarray) -> int:
    xs = np.nonzero(row)[0]
    return int(xs.max() - xs.min() + 1) if xs.size else 0


def compute_shoulder_width_ratio(mask: np.ndarray) -> float:
    x0, y0, x1, y1 = _bbox(mask)
    widest = max(_row_width(mask[y]) for y in range(y0, y1))
    shoulder_row = y0 + int((y1 - y0) * 0.2)
    if widest == 0:
        return 0.0
    return min(1.0, _row_width(mask[shoulder_row]) / widest)


def _holes(mask: np.ndarray) -> List[np.ndarray]:
    contours, hierarchy = cv2.findContours(mask, cv2.RETR_CCOMP, cv2.CHAIN_APPROX_SIMPLE)
    if hierarchy is None:
        return []
    return [c for c, h in zip(contours, hierarchy[0]) if h[3] != -1 and cv2.contourArea(c) > 4]


def classify_holes(mask: np.ndarray) -> Dict[str, np.ndarray]:
    """Name interior holes by position: top-centre -> neck, otherwise left/right sleeve."""
    x0, y0, x1, y1 = _bbox(mask)
    width, height = x1 - x0, y1 - y0
    named: Dict[str, np.ndarray] = {}
    for hole in _holes(mask):
        m = cv2.moments(hole)
        if m["m00"] == 0:
            continue
        cx = (m["m10"] / m["m00"] - x0) / width
        cy = (m["m01"] / m["m00"] - y0) / height
        if cy < 0.35 and 0.3 <= cx <= 0.7:
            name = "neck"
        else:
            name = "sleeve_l" if cx < 0.5 else "sleeve_r"
        if name not in named or cv2.contourArea(hole) > cv2.contourArea(named[name]):
            named[name] = hole
    return named


def compute_neck_inner_ratio(mask: np.ndarray, holes: Optional[Dict[str, np.ndarray]] = None) -> float:
    holes = classify_holes(mask) if holes is None else holes
    if "neck" not in holes:
        return 0.0
    x0, _, x1, _ = _bbox(mask)
    _, _, neck_w, _ = cv2.boundingRect(holes["neck"])
    return min(1.0, neck_w / float(x1 - x0))


def _to_points(contour: np.ndarray) -> Tuple[Tuple[float, float], ...]:
    epsilon = 0.002 * cv2.arcLength(contour, True)
    approx = cv2.approxPolyDP(contour, epsilon, True).reshape(-1, 2)
    return tuple((float(x), float(y)) for x, y in approx)


class MaskImageMetricsSource(MetricsSource):
    """Measure a binary garment mask with OpenCV."""

    def __init__(self, mask_path: Union[str, Path], silhouette_url: Optional[str] = None):
        self.mask_path = Path(mask_path)
        self.silhouette_url = silhouette_url

    def collect(self) -> MaskArtifacts:
        if not self.mask_path.exists():
            raise ValidationError(f"Mask not found: {self.mask_path}")
        mask = load_binary_mask(self.mask_path)
        holes = classify_holes(mask)

        metrics = QualityMetrics(
            symmetry=round(compute_symmetry(mask), 4),
            edge_roughness_px=round(compute_edge_roughness(mask), 3),
            shoulder_width_ratio=round(compute_shoulder_width_ratio(mask), 4),
            neck_inner_ratio=round(compute_neck_inner_ratio(mask, holes), 4),
        )
        polygons = [MaskPolygon("garment", _to_points(_outer_contour(mask)), is_hole=False)]
        for name in sorted(holes):
            polygons.append(MaskPolygon(name, _to_points(holes[name]), is_hole=True))

        logger.info(
            f"Measured {self.mask_path.name}: symmetry={metrics.symmetry:.3f}, "
            f"roughness={metrics.edge_roughness_px:.2f}px, holes={sorted(holes)}"
        )
        return MaskArtifacts(
            refined_silhouette_url=self.silhouette_url or self.mask_path.resolve().as_uri(),
            polygons=tuple(polygons),
            metrics=metrics,
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    ap = argparse.ArgumentParser(description="Step 0/4 Mask Metrics: measure a garment mask")
    ap.add_argument("--mask", required=True, help="Binary garment mask (PNG)")
    ap.add_argument("--silhouette-url", default=None, help="Reference to the refined silhouette")
    ap.add_argument("--out", default="step0/mask_artifacts.json", help="Output JSON path")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    artifacts = MaskImageMetricsSource(args.mask, args.silhouette_url).collect()
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "refined_silhouette_url": artifacts.refined_silhouette_url,
        "polygons": [
            {"name": p.name, "points": [list(pt) for pt in p.points], "is_hole": p.is_hole}
            for p in artifacts.polygons
        ],
        "metrics": {
            "symmetry": artifacts.metrics.symmetry,
            "edge_roughness_px": artifacts.metrics.edge_roughness_px,
            "shoulder_width_ratio": artifacts.metrics.shoulder_width_ratio,
            "neck_inner_ratio": artifacts.metrics.neck_inner_ratio,
        },
    }
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(f"✅ Mask artifacts saved: {out_path}")


if __name__ == "__main__":
    main()
