"""
Ghostguard: Ghost-Mannequin Generation Control Layer
====================================================

Decides, for every garment session, whether the mask artifacts justify an
expensive generation call, which backend to use, how to retry and fall back,
and whether the final render is commercially acceptable.

Core Pipeline:
0. Mask Metrics (pluggable source)
1. Pre-Generation Quality Gates
2. Route Selection
3. Bounded-Retry / Fail-Safe Execution
4. Post-Generation Quality Assurance
5. Human-Review Alerts

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import PipelineConfig, load_config
from .errors import GhostPipelineError, QualityGateFailure
from .pipeline import GhostPipeline, PipelineResult

__all__ = [
    "GhostPipeline",
    "GhostPipelineError",
    "PipelineConfig",
    "PipelineResult",
    "QualityGateFailure",
    "load_config",
]
