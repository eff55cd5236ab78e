"""
step5_review_alerts.py – Human-review alerts
============================================

Post a webhook (Slack-style attachment) when a session needs a human look:

- the generated output is not commercially acceptable, or
- the assessment carries critical issues, or
- every route was exhausted (no output at all)

Warnings-band scores alert only when ``alerts.notify_on_warning`` is set.
No webhook URL configured -> the decision is logged and nothing is sent.

Dependencies: requests
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import AlertConfig
from ..models import QualityAssessmentResult, RouteExecutionResult

logger = logging.getLogger("ghostguard.review_alerts")


class ReviewNotifier:
    """Decide whether a session needs review and notify the webhook."""

    def __init__(self, config: Optional[AlertConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or AlertConfig()
        self.session = session or requests.Session()

    def review_reasons(
        self,
        assessment: Optional[QualityAssessmentResult],
        execution: Optional[RouteExecutionResult] = None,
        scoring_error: Optional[str] = None,
    ) -> List[str]:
        reasons: List[str] = []
        if execution is not None and not execution.success:
            reasons.append(f"Generation failed: {execution.failure_reason}")
        if scoring_error:
            reasons.append(f"Quality scoring failed: {scoring_error}")
        if assessment is None:
            return reasons
        reasons.extend(assessment.issues.critical)
        if not assessment.commercial_acceptability:
            reasons.append(f"Overall score {assessment.overall_score:.3f} below commercial threshold")
        if self.config.notify_on_warning:
            reasons.extend(assessment.issues.warnings)
        return reasons

    def notify(
        self,
        session_id: str,
        assessment: Optional[QualityAssessmentResult],
        execution: Optional[RouteExecutionResult] = None,
        scoring_error: Optional[str] = None,
    ) -> bool:
        """Returns True when an alert was delivered."""
        reasons = self.review_reasons(assessment, execution, scoring_error)
        if not reasons:
            return False

        logger.warning(f"[{session_id}] Review needed: {'; '.join(reasons)}")
        if not self.config.webhook_url:
            return False
        return self._send_webhook(self._payload(session_id, reasons, assessment, execution))

    def _payload(
        self,
        session_id: str,
        reasons: List[str],
        assessment: Optional[QualityAssessmentResult],
        execution: Optional[RouteExecutionResult],
    ) -> Dict[str, Any]:
        critical = execution is not None and not execution.success
        critical = critical or (assessment is not None and bool(assessment.issues.critical))
        fields = [
            {"title": "Reasons", "value": "\n".join(reasons), "short": False},
            {"title": "Session", "value": session_id, "short": True},
        ]
        if assessment is not None:
            fields.append({"title": "Overall Score", "value": f"{assessment.overall_score:.3f}", "short": True})
        if execution is not None:
            fields.append({
                "title": "Route",
                "value": f"{execution.route.value} (fallback={execution.fallback_triggered})",
                "short": True,
            })
        return {
            "text": "🚨 Ghost-mannequin output needs review",
            "attachments": [{"color": "danger" if critical else "warning", "fields": fields}],
        }

    def _send_webhook(self, payload: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(self.config.webhook_url, json=payload, timeout=self.config.timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to send review alert: {e}")
            return False
        if response.status_code == 200:
            logger.info("Review alert sent successfully")
            return True
        logger.error(f"Review alert webhook failed: {response.status_code}")
        return False
