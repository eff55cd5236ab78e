"""
pipeline.py – Session orchestrator
==================================

gate -> route selection -> bounded-retry execution -> quality assurance

One ``GhostPipeline`` can serve many concurrent sessions: it holds only
immutable configuration and the injected backends, and every ``run`` builds
its own values.

Terminal statuses:
- completed:   output generated and scored
- gate_failed: pre-generation gates stopped the session (no backend called)
- exhausted:   every route failed; the caller gets a user-safe message
- scoring_failed: output generated but could not be scored; the execution
  result (and saved image path) is kept and a review is requested

Webhook delivery and image scoring run in worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .backends.base import GenerationBackend
from .config import PipelineConfig
from .errors import GhostPipelineError, QualityGateFailure, QualityValidationError
from .models import (
    USER_UNAVAILABLE_MESSAGE,
    GenerationRequest,
    MaskArtifacts,
    QualityAssessmentResult,
    QualityGateResult,
    Route,
    RouteDecision,
    RouteExecutionResult,
    RoutingSignals,
)
from .steps.step1_quality_gates import QualityGateEngine
from .steps.step2_route_selector import RouteSelector
from .steps.step3_bounded_retry import BoundedRetryExecutor
from .steps.step4_quality_assurance import (
    CommercialMeasurements,
    QualityAssuranceScorer,
    RefinementMetrics,
    RenderedOutput,
    ScoringContext,
)
from .steps.step5_review_alerts import ReviewNotifier
from .utils.cancellation import CancellationToken
from .utils.stage import StageRunner

logger = logging.getLogger("ghostguard.pipeline")

STATUS_COMPLETED = "completed"
STATUS_GATE_FAILED = "gate_failed"
STATUS_EXHAUSTED = "exhausted"
STATUS_SCORING_FAILED = "scoring_failed"

SCORING_FAILED_MESSAGE = "The image was generated but could not be quality-checked; it has been held for review."


@dataclass(frozen=True)
class PipelineResult:
    session_id: str
    status: str
    gate: Optional[QualityGateResult] = None
    decision: Optional[RouteDecision] = None
    execution: Optional[RouteExecutionResult] = None
    assessment: Optional[QualityAssessmentResult] = None
    error: Optional[Dict[str, Any]] = None
    output_path: Optional[str] = None
    review_requested: bool = False
    stage_timings: Dict[str, float] = field(default_factory=dict)

    @property
    def user_message(self) -> Optional[str]:
        if self.status == STATUS_GATE_FAILED and self.gate is not None:
            return "; ".join(self.gate.details)
        if self.status == STATUS_EXHAUSTED:
            return USER_UNAVAILABLE_MESSAGE
        if self.status == STATUS_SCORING_FAILED:
            return SCORING_FAILED_MESSAGE
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "gate": self.gate.to_dict() if self.gate else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "error": self.error,
            "output_path": self.output_path,
            "user_message": self.user_message,
            "review_requested": self.review_requested,
            "stage_timings": {k: round(v, 4) for k, v in self.stage_timings.items()},
        }


class GhostPipeline:
    def __init__(
        self,
        backends: Mapping[Route, GenerationBackend],
        config: Optional[PipelineConfig] = None,
        notifier: Optional[ReviewNotifier] = None,
        output_dir: Path = Path("pipeline_output"),
    ):
        self.config = config or PipelineConfig()
        self.backends = dict(backends)
        self.gate_engine = QualityGateEngine(self.config.gates)
        self.selector = RouteSelector(self.config.routing, self.config.fail_safe)
        self.executor = BoundedRetryExecutor(self.backends, self.config.retry, self.config.fail_safe)
        self.scorer = QualityAssuranceScorer(self.config.qa)
        self.notifier = notifier or ReviewNotifier(self.config.alerts)
        self.output_dir = Path(output_dir)

    async def run(
        self,
        artifacts: MaskArtifacts,
        request: GenerationRequest,
        signals: Optional[RoutingSignals] = None,
        target_hex: Optional[str] = None,
        commercial: Optional[CommercialMeasurements] = None,
        token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        session_id = request.session_id or f"session_{uuid.uuid4().hex[:8]}"
        runner = StageRunner(session_id)
        logger.info(f"🚀 Starting session {session_id}")

        try:
            gate = await runner.run("quality_gates", self.gate_engine.evaluate, artifacts)
        except QualityGateFailure as e:
            return PipelineResult(
                session_id, STATUS_GATE_FAILED, gate=e.result, error=e.to_dict(),
                stage_timings=dict(runner.timings),
            )

        if signals is None and artifacts.metrics.skin_pct is not None:
            signals = RoutingSignals.from_content_ratio(
                artifacts.metrics.skin_pct,
                fallback_threshold=self.config.routing.fallback_required_threshold,
                preferred_threshold=self.config.routing.primary_preferred_threshold,
            )
        decision = await runner.run("route_selection", self.selector.decide, signals)

        request = GenerationRequest(request.prompt, request.reference_images, session_id, request.options)
        execution = await runner.run("generation", self.executor.execute, decision, request, token)

        if not execution.success:
            review = await asyncio.to_thread(self.notifier.notify, session_id, None, execution)
            return PipelineResult(
                session_id, STATUS_EXHAUSTED, gate=gate, decision=decision, execution=execution,
                review_requested=review, stage_timings=dict(runner.timings),
            )

        try:
            assessment = await runner.run(
                "quality_assurance", asyncio.to_thread,
                self._score, session_id, artifacts, gate, execution, target_hex, commercial,
            )
        except GhostPipelineError as e:
            output_path = self._output_path(execution, session_id)
            if output_path is not None and not output_path.exists():
                output_path = None
            logger.error(f"❌ Session {session_id} generated on {execution.route.value} but could not be scored: {e}")
            review = await asyncio.to_thread(self.notifier.notify, session_id, None, execution, e.message)
            return PipelineResult(
                session_id, STATUS_SCORING_FAILED, gate=gate, decision=decision, execution=execution,
                error=e.to_dict(), output_path=str(output_path) if output_path else None,
                review_requested=review, stage_timings=dict(runner.timings),
            )
        output_path = self._output_path(execution, session_id)
        review = await asyncio.to_thread(self.notifier.notify, session_id, assessment, execution)
        logger.info(
            f"🎉 Session {session_id} completed on {execution.route.value}: "
            f"overall {assessment.overall_score:.3f}, acceptable={assessment.commercial_acceptability}"
        )
        return PipelineResult(
            session_id, STATUS_COMPLETED, gate=gate, decision=decision, execution=execution,
            assessment=assessment, output_path=str(output_path) if output_path else None,
            review_requested=review, stage_timings=dict(runner.timings),
        )

    def _score(
        self,
        session_id: str,
        artifacts: MaskArtifacts,
        gate: QualityGateResult,
        execution: RouteExecutionResult,
        target_hex: Optional[str],
        commercial: Optional[CommercialMeasurements],
    ) -> QualityAssessmentResult:
        rendered = self._rendered_output(execution, session_id, target_hex)
        refinement = RefinementMetrics.from_quality_metrics(
            artifacts.metrics,
            completeness=gate.metrics.completeness_score,
            max_roughness=self.config.gates.edges.max_roughness,
        )
        return self.scorer.score(rendered, refinement, ScoringContext(session_id, commercial))

    def _rendered_output(
        self,
        execution: RouteExecutionResult,
        session_id: str,
        target_hex: Optional[str],
    ) -> RenderedOutput:
        result = execution.result
        if isinstance(result, RenderedOutput):
            return result
        path = self._output_path(execution, session_id)
        if path is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(result["image_bytes"])
            logger.info(f"Generated image saved: {path}")
            return RenderedOutput(image_path=path, target_hex=target_hex)
        raise QualityValidationError(f"Cannot score backend result of type {type(result).__name__}")

    def _output_path(self, execution: RouteExecutionResult, session_id: str) -> Optional[Path]:
        """Where image bytes from the backend are saved; None for other results."""
        result = execution.result
        if not (isinstance(result, Mapping) and result.get("image_bytes")):
            return None
        suffix = mimetypes.guess_extension(result.get("mime_type") or "image/png") or ".png"
        return self.output_dir / f"{session_id}_{execution.route.value}{suffix}"

    async def aclose(self):
        for backend in self.backends.values():
            await backend.aclose()
