#!/usr/bin/env python3
"""
step3_bounded_retry.py – Step 3/4 Bounded-Retry / Fail-Safe Execution
=====================================================================

Execute the selected route with at most one retry, then the fallback route
once, and always return a terminal ``RouteExecutionResult``.

State machine:
    attempt 1 (selected) -- ok --> Done
        | retryable failure
        v  wait retry.delay_ms
    attempt 2 (selected) -- ok --> Done
        | failure / non-retryable failure at attempt 1
        v
    attempt 1 (fallback, never retried) -- ok --> Done(fallback_triggered)
        | failure
        v
    Exhausted(success=False, failure_reason="all routes exhausted")

Guarantees:
- Attempts run strictly one after another; at most 3 backend calls
- Every call is bounded by the route timeout; a timeout is a retryable failure
- A non-domain exception aborts the call with PipelineRoutingError
- Cancellation (token) is checked before each attempt and races every call
  and the retry delay
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Mapping, Optional, Tuple

from ..backends.base import GenerationBackend
from ..config import FailSafeConfig, RetryConfig, ensure_valid, validate_fail_safe, validate_retry
from ..errors import BackendFailure, ConfigError, GhostPipelineError, PipelineRoutingError
from ..models import (
    AttemptRecord,
    GenerationOutcome,
    GenerationRequest,
    Route,
    RouteDecision,
    RouteExecutionResult,
)
from ..utils.cancellation import CancellationToken

logger = logging.getLogger("ghostguard.retry_executor")

EXHAUSTED_REASON = "all routes exhausted"


def classify_failure(
    reason: str,
    route: Route,
    retry: RetryConfig,
    hint: Optional[bool] = None,
) -> bool:
    """True when the failure is worth retrying on the same route.

    An explicit hint from the backend wins; otherwise the reason is matched
    case-insensitively against the shared and per-route allow-lists.
    """
    if hint is not None:
        return hint
    text = reason.lower().replace("_", " ")
    return any(cond.lower().replace("_", " ") in text for cond in retry.conditions_for(route))


class BoundedRetryExecutor:
    """Runs one RouteDecision against injected backends."""

    def __init__(
        self,
        backends: Mapping[Route, GenerationBackend],
        retry: Optional[RetryConfig] = None,
        fail_safe: Optional[FailSafeConfig] = None,
    ):
        missing = [route.value for route in Route if route not in backends]
        if missing:
            raise ConfigError(f"No backend configured for route(s): {', '.join(missing)}")
        self.backends = dict(backends)
        self.retry = retry or RetryConfig()
        self.fail_safe = fail_safe or FailSafeConfig()
        ensure_valid(validate_retry(self.retry) + validate_fail_safe(self.fail_safe))

    async def execute(
        self,
        decision: RouteDecision,
        request: GenerationRequest,
        token: Optional[CancellationToken] = None,
    ) -> RouteExecutionResult:
        token = token or CancellationToken()
        start = time.perf_counter()
        attempts: List[AttemptRecord] = []
        try:
            result = await self._run(decision, request, token, attempts, start)
        except GhostPipelineError:
            raise
        except Exception as e:
            logger.error(f"❌ Unexpected routing error after {len(attempts)} attempt(s): {e}")
            raise PipelineRoutingError(f"Pipeline routing failed: {e}", cause=e) from e

        if result.success:
            logger.info(
                f"✅ Generation succeeded on {result.route.value} "
                f"(attempt {result.attempt}, fallback={result.fallback_triggered}, {result.execution_time:.1f}s)"
            )
        else:
            logger.error(f"❌ Generation exhausted after {len(attempts)} attempt(s): {result.failure_reason}")
        return result

    async def _run(
        self,
        decision: RouteDecision,
        request: GenerationRequest,
        token: CancellationToken,
        attempts: List[AttemptRecord],
        start: float,
    ) -> RouteExecutionResult:
        route = decision.selected_route
        plan = decision.fallback_plan
        reserved = 1 if plan.has_fallback and plan.fallback_route is not None else 0
        max_attempts = 1 + (self.retry.max_retries if self.retry.enabled else 0)
        budget = self.fail_safe.max_total_attempts - reserved
        if max_attempts > budget:
            logger.warning(
                f"Capping {route.value} at {budget} attempt(s) to stay within "
                f"max_total_attempts={self.fail_safe.max_total_attempts}"
            )
            max_attempts = max(1, budget)
        current = request

        for attempt in range(1, max_attempts + 1):
            record, outcome = await self._attempt(route, attempt, current, token)
            attempts.append(record)
            if record.success:
                return self._result(route, True, attempt, start, attempts, result=outcome.result)
            if not record.retryable or attempt == max_attempts:
                break
            delay = self.retry.delay_ms / 1000.0
            logger.warning(f"Retrying {route.value} in {delay:.1f}s after: {record.failure_reason}")
            await token.sleep(delay)
            current = request.with_options(retry=True, attempt=attempt + 1)

        if not plan.has_fallback or plan.fallback_route is None:
            return self._result(route, False, attempts[-1].attempt, start, attempts, failure_reason=EXHAUSTED_REASON)

        fallback = plan.fallback_route
        logger.warning(f"Falling back to {fallback.value} after {route.value} failure: {attempts[-1].failure_reason}")
        record, outcome = await self._attempt(fallback, 1, request.with_options(fallback=True), token)
        attempts.append(record)
        if record.success:
            return self._result(fallback, True, 1, start, attempts, fallback_triggered=True, result=outcome.result)
        return self._result(
            fallback, False, 1, start, attempts, fallback_triggered=True, failure_reason=EXHAUSTED_REASON
        )

    async def _attempt(
        self,
        route: Route,
        attempt: int,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> Tuple[AttemptRecord, Optional[GenerationOutcome]]:
        token.raise_if_cancelled()
        timeout = self.fail_safe.timeout_for(route)
        logger.info(f"🎨 {route.value} attempt {attempt} (timeout {timeout:.0f}s)")
        t0 = time.perf_counter()
        outcome: Optional[GenerationOutcome] = None
        try:
            outcome = await token.run(self.backends[route].generate(request), timeout=timeout)
        except (asyncio.TimeoutError, TimeoutError):
            reason, hint = f"timeout after {timeout:.0f}s", True
        except BackendFailure as e:
            reason, hint = e.reason, e.retryable
        else:
            if not isinstance(outcome, GenerationOutcome):
                raise TypeError(f"{route.value} backend returned {type(outcome).__name__}, expected GenerationOutcome")
            if outcome.success:
                return AttemptRecord(route, attempt, True, time.perf_counter() - t0), outcome
            reason, hint = outcome.error_details or "unknown failure", outcome.retryable

        retryable = classify_failure(reason, route, self.retry, hint)
        logger.warning(f"{route.value} attempt {attempt} failed ({'retryable' if retryable else 'not retryable'}): {reason}")
        record = AttemptRecord(route, attempt, False, time.perf_counter() - t0, reason, retryable)
        return record, outcome

    @staticmethod
    def _result(
        route: Route,
        success: bool,
        attempt: int,
        start: float,
        attempts: List[AttemptRecord],
        fallback_triggered: bool = False,
        failure_reason: Optional[str] = None,
        result=None,
    ) -> RouteExecutionResult:
        return RouteExecutionResult(
            route=route,
            success=success,
            attempt=attempt,
            execution_time=round(time.perf_counter() - start, 3),
            failure_reason=failure_reason,
            fallback_triggered=fallback_triggered,
            final_result=True,
            result=result,
            attempts=tuple(attempts),
        )
