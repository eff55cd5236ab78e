"""
Session-scoped helpers: cancellation tokens and timed stage execution.
"""

from .cancellation import CancellationToken
from .stage import StageRunner

__all__ = [
    "CancellationToken",
    "StageRunner",
]
