"""
Pytest configuration and fixtures for the ghost-mannequin control layer tests.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ghostguard.backends.base import GenerationBackend
from ghostguard.config import PipelineConfig
from ghostguard.models import (
    GenerationOutcome,
    GenerationRequest,
    MaskArtifacts,
    MaskPolygon,
    QualityMetrics,
)
from ghostguard.utils.cancellation import CancellationToken

SQUARE = ((0.0, 0.0), (100.0, 0.0), (100.0, 100.0), (0.0, 100.0))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_mask():
    """Symmetric shirt mask with a neck opening and two sleeve openings."""
    pixels = np.zeros((512, 512), dtype=np.uint8)
    # Main body
    pixels[106:406, 156:356] = 255
    # Sleeves
    pixels[106:256, 56:156] = 255
    pixels[106:256, 356:456] = 255
    # Openings (mirror images of each other around x=255.5)
    pixels[120:150, 226:286] = 0
    pixels[200:240, 76:116] = 0
    pixels[200:240, 396:436] = 0
    return Image.fromarray(pixels)


@pytest.fixture
def sample_image():
    """Steel blue garment on a white background, matching sample_mask."""
    rgb = np.full((512, 512, 3), 255, dtype=np.uint8)
    rgb[106:406, 156:356] = [70, 130, 180]
    rgb[106:256, 56:156] = [70, 130, 180]
    rgb[106:256, 356:456] = [70, 130, 180]
    return Image.fromarray(rgb)


@pytest.fixture
def good_metrics():
    return QualityMetrics(
        symmetry=0.98,
        edge_roughness_px=1.2,
        shoulder_width_ratio=0.5,
        neck_inner_ratio=0.15,
    )


@pytest.fixture
def good_artifacts(good_metrics):
    """Mask artifacts that pass every gate."""
    return MaskArtifacts(
        refined_silhouette_url="silhouette.png",
        polygons=(
            MaskPolygon("garment", SQUARE, is_hole=False),
            MaskPolygon("neck", SQUARE, is_hole=True),
            MaskPolygon("sleeve_l", SQUARE, is_hole=True),
            MaskPolygon("sleeve_r", SQUARE, is_hole=True),
        ),
        metrics=good_metrics,
    )


@pytest.fixture
def artifacts_json(good_artifacts) -> Dict[str, Any]:
    return {
        "refined_silhouette_url": good_artifacts.refined_silhouette_url,
        "polygons": [
            {"name": p.name, "points": [list(pt) for pt in p.points], "isHole": p.is_hole}
            for p in good_artifacts.polygons
        ],
        "metrics": {
            "symmetry": 0.98,
            "edge_roughness_px": 1.2,
            "shoulder_width_ratio": 0.5,
            "neck_inner_ratio": 0.15,
        },
    }


@pytest.fixture
def generation_request():
    return GenerationRequest(
        prompt="professional product photography, steel blue cotton shirt, ghost mannequin effect",
        reference_images=("garment.jpg",),
        session_id="test-session",
    )


@pytest.fixture
def fast_config():
    """Default configuration with the retry delay removed."""
    return PipelineConfig.from_dict({"retry": {"delay_ms": 0}})


class ScriptedBackend(GenerationBackend):
    """Backend that plays back a fixed list of outcomes/exceptions/coroutine functions."""

    def __init__(self, *steps: Any):
        self.steps: List[Any] = list(steps)
        self.calls: List[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        self.calls.append(request)
        step = self.steps.pop(0) if self.steps else GenerationOutcome.failed("no scripted outcome")
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(request)
        return step


class RecordingToken(CancellationToken):
    """Token that records retry delays instead of sleeping."""

    def __init__(self):
        super().__init__()
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float):
        self.raise_if_cancelled()
        self.sleeps.append(seconds)


@pytest.fixture
def scripted_backend():
    return ScriptedBackend


@pytest.fixture
def recording_token():
    return RecordingToken()


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Setup test environment variables."""
    original_env = os.environ.copy()

    for key in list(os.environ):
        if key.startswith("GHOSTGUARD_") or key == "COMFYUI_URL":
            del os.environ[key]
    os.environ['TESTING'] = '1'
    os.environ['GOOGLE_API_KEY'] = 'test-api-key'

    yield

    os.environ.clear()
    os.environ.update(original_env)

