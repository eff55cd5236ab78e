"""
Generation backends. The core depends only on ``GenerationBackend``;
the adapters are imported lazily by callers that need them.
"""

from .base import GenerationBackend

__all__ = ["GenerationBackend"]
