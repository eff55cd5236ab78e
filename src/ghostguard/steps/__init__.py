"""
Pipeline Steps Module
=====================

- step0_mask_metrics: MetricsSource interface + OpenCV mask measurements
- step1_quality_gates: pre-generation quality gate engine
- step2_route_selector: primary / fallback route decision
- step3_bounded_retry: bounded-retry, fail-safe route executor
- step4_quality_assurance: post-generation multi-dimensional scorer
- step5_review_alerts: human-review webhook alerts
"""
