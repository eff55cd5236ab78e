"""
Unit tests for Step 5: Human-review alerts.
"""

import pytest
import requests
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from ghostguard.config import AlertConfig
from ghostguard.models import Route, RouteExecutionResult
from ghostguard.steps.step4_quality_assurance import (
    QualityAssuranceScorer,
    RefinementMetrics,
    RenderedOutput,
    TechnicalChecks,
    VisualMeasurements,
)
from ghostguard.steps.step5_review_alerts import ReviewNotifier

WEBHOOK = "https://hooks.example.com/services/T000/B000/XXXX"


def assessment(value):
    rendered = RenderedOutput(visual=VisualMeasurements(value, value, value, value), technical=TechnicalChecks())
    return QualityAssuranceScorer().score(rendered, RefinementMetrics(value, value, value, value))


@pytest.fixture
def session():
    mock_session = MagicMock(spec=requests.Session)
    mock_session.post.return_value = MagicMock(status_code=200)
    return mock_session


@pytest.fixture
def exhausted():
    return RouteExecutionResult(
        route=Route.FALLBACK,
        success=False,
        attempt=1,
        execution_time=4.2,
        failure_reason="all routes exhausted",
        fallback_triggered=True,
    )


class TestReviewNotifier:
    """Which sessions need a human look, and what gets posted."""

    def test_acceptable_output_needs_no_review(self, session):
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)

        assert notifier.review_reasons(assessment(1.0)) == []
        assert notifier.notify("s1", assessment(1.0)) is False
        session.post.assert_not_called()

    def test_critical_output_posts_alert(self, session):
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)

        assert notifier.notify("s1", assessment(0.5)) is True

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == WEBHOOK
        assert payload["text"] == "🚨 Ghost-mannequin output needs review"
        assert payload["attachments"][0]["color"] == "danger"
        reasons = payload["attachments"][0]["fields"][0]["value"]
        assert "Overall quality below commercial minimum" in reasons

    def test_exhausted_session_posts_alert(self, session, exhausted):
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)

        assert notifier.notify("s2", None, exhausted) is True
        fields = session.post.call_args.kwargs["json"]["attachments"][0]["fields"]
        assert fields[0]["value"] == "Generation failed: all routes exhausted"
        assert fields[-1]["value"] == "fallback (fallback=True)"

    def test_warnings_only_when_enabled(self):
        warning = assessment(0.75)
        assert warning.severity == "warning"

        quiet = ReviewNotifier(AlertConfig(), MagicMock())
        loud = ReviewNotifier(AlertConfig(notify_on_warning=True), MagicMock())

        assert "Quality marginally acceptable, improvements recommended" not in quiet.review_reasons(warning)
        assert "Quality marginally acceptable, improvements recommended" in loud.review_reasons(warning)

    def test_no_webhook_only_logs(self, session):
        notifier = ReviewNotifier(AlertConfig(), session)

        assert notifier.notify("s3", assessment(0.5)) is False
        session.post.assert_not_called()

    def test_webhook_error_is_reported(self, session):
        session.post.side_effect = requests.ConnectionError("unreachable")
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)

        assert notifier.notify("s4", assessment(0.5)) is False

    def test_webhook_non_200(self, session):
        session.post.return_value = MagicMock(status_code=500)
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)

        assert notifier.notify("s5", assessment(0.5)) is False

    def test_scoring_failure_posts_alert(self, session):
        notifier = ReviewNotifier(AlertConfig(webhook_url=WEBHOOK), session)
        generated = RouteExecutionResult(route=Route.PRIMARY, success=True, attempt=1, execution_time=2.0)

        assert notifier.notify("s6", None, generated, "no target colour") is True
        fields = session.post.call_args.kwargs["json"]["attachments"][0]["fields"]
        assert fields[0]["value"] == "Quality scoring failed: no target colour"
