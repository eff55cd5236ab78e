"""
errors.py – Domain error taxonomy
=================================

Every error raised by the control layer is a ``GhostPipelineError`` carrying a
stable ``code`` and the ``stage`` in which it happened:

- VALIDATION_FAILED         bad input data (metrics out of range, malformed JSON)
- CONFIG_INVALID            configuration rejected at build time
- QUALITY_GATES_FAILED      pre-generation gate hard stop (carries the result)
- PIPELINE_ROUTING_FAILED   unexpected error inside the route executor
- PIPELINE_CANCELLED        session cancelled or past its deadline
- QUALITY_VALIDATION_FAILED post-generation scorer could not score the output

Backends report failures with ``TransientBackendFailure`` (retry-eligible) or
``PermanentBackendFailure`` (never retried, go straight to fallback).
Exhaustion of all routes is *not* an error, it is a returned value.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import QualityGateResult


class GhostPipelineError(Exception):
    """Base error for the ghost-mannequin control layer."""

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_ERROR",
        stage: str = "pipeline",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "stage": self.stage}

    def __str__(self) -> str:
        return f"[{self.code}@{self.stage}] {self.message}"


class ValidationError(GhostPipelineError):
    def __init__(self, message: str, stage: str = "preprocessing", cause: Optional[BaseException] = None):
        super().__init__(message, "VALIDATION_FAILED", stage, cause)


class ConfigError(GhostPipelineError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "CONFIG_INVALID", "configuration", cause)


class QualityGateFailure(GhostPipelineError):
    """Hard stop raised when any pre-generation gate fails.

    The full ``QualityGateResult`` is attached so callers can show the
    per-check details and recommendations.
    """

    def __init__(self, result: "QualityGateResult"):
        message = "Pre-generation quality gates failed: " + ", ".join(result.failed_checks)
        super().__init__(message, "QUALITY_GATES_FAILED", "preprocessing")
        self.result = result

    @property
    def user_message(self) -> str:
        return "; ".join(self.result.details) or self.message


class BackendFailure(GhostPipelineError):
    """Failure reported by a generation backend."""

    retryable: Optional[bool] = None

    def __init__(self, reason: str, route: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(reason, "BACKEND_FAILED", "generation", cause)
        self.reason = reason
        self.route = route


class TransientBackendFailure(BackendFailure):
    """Failure the backend expects to clear up on retry (timeouts, 5xx, quota)."""

    retryable = True


class PermanentBackendFailure(BackendFailure):
    """Failure that will not clear up on retry (bad request, auth, unsupported input)."""

    retryable = False


class PipelineRoutingError(GhostPipelineError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "PIPELINE_ROUTING_FAILED", "generation", cause)


class PipelineCancelled(GhostPipelineError):
    def __init__(self, message: str = "Pipeline session cancelled", stage: str = "generation"):
        super().__init__(message, "PIPELINE_CANCELLED", stage)


class QualityValidationError(GhostPipelineError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "QUALITY_VALIDATION_FAILED", "qa", cause)
