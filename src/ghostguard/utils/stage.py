"""
Timed, logged stage execution used by the pipeline orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict

from ..errors import GhostPipelineError

logger = logging.getLogger("ghostguard.stage")


class StageRunner:
    """Runs named stages for one session and records their wall-clock time."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.timings: Dict[str, float] = {}

    async def run(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        logger.info(f"[{self.session_id}] Starting stage: {name}")
        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except GhostPipelineError as e:
            self.timings[name] = time.perf_counter() - start
            logger.error(f"[{self.session_id}] Stage {name} failed after {self.timings[name]:.2f}s: {e}")
            raise
        except Exception as e:
            self.timings[name] = time.perf_counter() - start
            logger.error(f"[{self.session_id}] Stage {name} crashed after {self.timings[name]:.2f}s: {e}")
            raise GhostPipelineError(f"Stage {name} failed: {e}", "STAGE_FAILED", name, e) from e

        self.timings[name] = time.perf_counter() - start
        logger.info(f"✅ [{self.session_id}] Stage {name} completed in {self.timings[name]:.2f}s")
        return result
