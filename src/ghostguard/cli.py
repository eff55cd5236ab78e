#!/usr/bin/env python3
"""
CLI entry point for the ghost-mannequin generation control layer.

Provides command-line interfaces for each step and the end-to-end session.
"""

import argparse
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path

from ghostguard.steps.step0_mask_metrics import main as step0_main
from ghostguard.steps.step1_quality_gates import main as step1_main
from ghostguard.steps.step2_route_selector import main as step2_main
from ghostguard.steps.step4_quality_assurance import main as step4_main


def ghostguard_measure():
    """CLI entry point for Step 0: Mask Metrics."""
    step0_main()


def ghostguard_gate():
    """CLI entry point for Step 1: Pre-Generation Quality Gates."""
    step1_main()


def ghostguard_route():
    """CLI entry point for Step 2: Route Selection."""
    step2_main()


def ghostguard_score():
    """CLI entry point for Step 4: Post-Generation Quality Assurance."""
    step4_main()


def ghostguard_pipeline():
    """Run one complete session: gate, route, generate, score."""
    from ghostguard.backends.comfyui import ComfyUIBackend
    from ghostguard.backends.gemini_flash import GeminiFlashBackend
    from ghostguard.config import load_config
    from ghostguard.errors import GhostPipelineError
    from ghostguard.models import GenerationRequest, Route, RoutingSignals
    from ghostguard.pipeline import STATUS_COMPLETED, GhostPipeline
    from ghostguard.steps.step0_mask_metrics import MaskImageMetricsSource, StaticMetricsSource
    from ghostguard.utils.cancellation import CancellationToken

    parser = argparse.ArgumentParser(
        description="Ghost-Mannequin Generation Control Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Gate a measured mask, generate, and score
    ghostguard-pipeline --mask mask.png --prompt prompt.txt --reference garment.jpg \\
        --target-hex "#4682B4" --workflow ghost_workflow.json --prompt-node 6

    # Force the fallback route and give the session a 5 minute deadline
    GHOSTGUARD_PRIMARY_ROUTE=fallback ghostguard-pipeline --artifacts artifacts.json ... --deadline 300
        """
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--artifacts", help="Mask artifacts JSON")
    source.add_argument("--mask", help="Binary garment mask PNG to measure")
    parser.add_argument("--prompt", required=True, help="Prompt text file")
    parser.add_argument("--reference", action="append", default=[], help="Reference image path/URL (repeatable)")
    parser.add_argument("--target-hex", required=True, help="Primary garment color for QA")

    parser.add_argument("--content-ratio", type=float, default=None, help="Problematic (skin) content ratio 0-1")
    parser.add_argument("--quality-estimate", type=float, default=None, help="Upstream quality-score estimate 0-1")

    parser.add_argument("--workflow", required=True, help="ComfyUI workflow JSON for the fallback route")
    parser.add_argument("--prompt-node", required=True, help="Workflow node id receiving the prompt text")
    parser.add_argument("--image-node", default=None, help="Workflow node id receiving the reference image")

    parser.add_argument("--config", help="Pipeline configuration YAML file")
    parser.add_argument("--session-id", help="Custom session ID (auto-generated if not provided)")
    parser.add_argument("--deadline", type=float, default=None, help="Session deadline in seconds")
    parser.add_argument("--out", default="./pipeline_output", help="Output directory")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    session_id = args.session_id or f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{str(uuid.uuid4())[:8]}"

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger("ghostguard.cli")

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    summary_path = out_dir / "pipeline_summary.json"
    start = time.time()

    config = load_config(args.config)
    source = StaticMetricsSource(args.artifacts) if args.artifacts else MaskImageMetricsSource(args.mask)
    request = GenerationRequest(
        prompt=Path(args.prompt).read_text(encoding="utf-8").strip(),
        reference_images=tuple(args.reference),
        session_id=session_id,
    )
    signals = None
    if args.content_ratio is not None or args.quality_estimate is not None:
        signals = RoutingSignals.from_content_ratio(
            args.content_ratio or 0.0,
            args.quality_estimate,
            fallback_threshold=config.routing.fallback_required_threshold,
            preferred_threshold=config.routing.primary_preferred_threshold,
        )

    async def run_session():
        backends = {
            Route.PRIMARY: GeminiFlashBackend.from_env(config.backends),
            Route.FALLBACK: ComfyUIBackend.from_workflow_file(
                args.workflow, args.prompt_node, config.backends, image_node=args.image_node
            ),
        }
        pipeline = GhostPipeline(backends, config, output_dir=out_dir)
        token = CancellationToken.with_timeout(args.deadline) if args.deadline else None
        try:
            return await pipeline.run(
                source.collect(), request, signals=signals, target_hex=args.target_hex, token=token
            )
        finally:
            await pipeline.aclose()

    try:
        logger.info(f"🚀 Starting pipeline session: {session_id}")
        result = asyncio.run(run_session())
    except GhostPipelineError as e:
        summary = {
            "session_id": session_id,
            "status": "failed",
            "error": e.to_dict(),
            "processing_time_seconds": round(time.time() - start, 2),
        }
        summary_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        logger.error(f"❌ Pipeline failed: {e}")
        raise

    summary = result.to_dict()
    summary["processing_time_seconds"] = round(time.time() - start, 2)
    summary_path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")

    if result.status == STATUS_COMPLETED:
        logger.info(f"🎉 Session {session_id} completed in {summary['processing_time_seconds']:.1f}s")
        print(f"✅ Summary saved: {summary_path}")
        return
    logger.error(f"❌ Session {session_id} ended with status {result.status}: {result.user_message}")
    print(f"❌ {result.user_message}")
    raise SystemExit(2)


if __name__ == "__main__":
    ghostguard_pipeline()
